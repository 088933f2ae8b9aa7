"""
s3unzip

Streams ZIP archives out of S3 and writes their entries back as new objects
with concurrent multipart uploads, without holding an entry in memory or on disk.

Key Components:
- S3UnzipManager: driver over one object or a prefix of objects
- NoSplitUnzipStrategy / SplitTextUnzipStrategy: entry -> object(s) mapping
- MultipartUpload: bounded, concurrent multipart upload session
- ArchiveReader: forward-only ZIP entry iterator
- S3ObjectStore / InMemoryObjectStore: object store adapters
"""

from .errors import (
    ArchiveMalformed,
    InitiationFailed,
    InvalidConfiguration,
    InvalidContentType,
    S3UnzipError,
    UnzipFailed,
    UploadAborted,
    UploadCancelled,
)
from .services.storage import InMemoryObjectStore, ObjectStore, S3ObjectStore
from .unzip.archive import ArchiveEntry, ArchiveReader
from .unzip.manager import ZIP_CONTENT_TYPES, BatchResult, S3UnzipManager
from .unzip.strategy import NoSplitUnzipStrategy, SplitTextUnzipStrategy, UnzipStrategy, UnzipTask
from .upload.multipart import MultipartUpload, MultipartUploadConfig

__all__ = [
    # Driver
    'S3UnzipManager',
    'BatchResult',
    'ZIP_CONTENT_TYPES',

    # Strategies
    'UnzipStrategy',
    'UnzipTask',
    'NoSplitUnzipStrategy',
    'SplitTextUnzipStrategy',

    # Upload / archive
    'MultipartUpload',
    'MultipartUploadConfig',
    'ArchiveReader',
    'ArchiveEntry',

    # Stores
    'ObjectStore',
    'S3ObjectStore',
    'InMemoryObjectStore',

    # Errors
    'S3UnzipError',
    'InvalidConfiguration',
    'InvalidContentType',
    'ArchiveMalformed',
    'InitiationFailed',
    'UploadAborted',
    'UploadCancelled',
    'UnzipFailed',
]

__version__ = "1.0.0"
