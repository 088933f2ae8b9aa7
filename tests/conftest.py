import io
import os
import zipfile

# Dummy env zodat boto3/moto niet zeurt
os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")

import boto3
import pytest
from moto import mock_aws

from s3unzip.services.storage import InMemoryObjectStore
from s3unzip.upload.multipart import MultipartUploadConfig

MB = 1024 * 1024
BUCKET = "test-bucket"


class _Unseekable(io.RawIOBase):
    """Write-only sink without seek, forces zipfile to use data descriptors."""

    def __init__(self):
        self.buf = io.BytesIO()

    def writable(self):
        return True

    def write(self, b):
        return self.buf.write(b)


def build_zip(entries, compression=zipfile.ZIP_DEFLATED, streamed=False) -> bytes:
    """entries: list of (name, bytes) in archive order."""
    if streamed:
        sink = _Unseekable()
        with zipfile.ZipFile(sink, "w", compression=compression) as zf:
            for name, data in entries:
                with zf.open(name, "w") as fh:
                    fh.write(data)
        return sink.buf.getvalue()

    out = io.BytesIO()
    with zipfile.ZipFile(out, "w", compression=compression) as zf:
        for name, data in entries:
            zf.writestr(name, data)
    return out.getvalue()


def generate_csv(rows: int) -> bytes:
    lines = ["COL1, COL2, COL3, COL4\n"]
    lines.extend(f"{i},{i},{i},{i}\n" for i in range(1, rows + 1))
    return "".join(lines).encode("utf-8")


@pytest.fixture
def store():
    return InMemoryObjectStore()


@pytest.fixture
def small_config():
    return MultipartUploadConfig(upload_part_bytes_limit=5 * MB, thread_count=2, queue_size=2)


@pytest.fixture
def s3_client():
    with mock_aws():
        client = boto3.client("s3", region_name="us-east-1")
        client.create_bucket(Bucket=BUCKET)
        yield client
