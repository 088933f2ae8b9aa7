# s3unzip/metrics.py
from prometheus_client import Counter, Histogram

# ---------------------------
# Multipart upload metrics
# ---------------------------
PARTS_UPLOADED = Counter(
    "s3unzip_parts_uploaded_total",
    "Total number of multipart parts uploaded",
)

PART_BYTES = Counter(
    "s3unzip_part_bytes_total",
    "Total number of bytes uploaded as multipart parts",
)

MULTIPART_UPLOADS = Counter(
    "s3unzip_multipart_uploads_total",
    "Multipart uploads by terminal status",
    ["status"],  # completed | aborted
)

# ---------------------------
# Unzip metrics
# ---------------------------
ENTRIES_UNZIPPED = Counter(
    "s3unzip_entries_total",
    "Archive entries processed",
    ["strategy", "status"],  # status: ok | failed
)

ENTRY_DURATION = Histogram(
    "s3unzip_entry_duration_seconds",
    "Time spent unzipping and uploading one archive entry",
    ["strategy"],
    buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0, 900.0],
)

OBJECTS_SKIPPED = Counter(
    "s3unzip_objects_skipped_total",
    "Input objects skipped by the driver",
    ["reason"],  # content_type | directory
)
