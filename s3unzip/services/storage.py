# s3unzip/services/storage.py
from __future__ import annotations

import io
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from hashlib import md5
from typing import Any, BinaryIO, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from botocore.exceptions import ClientError

from s3unzip.aws.s3_errors import describe, is_missing_upload, is_retryable_s3, log_retry
from s3unzip.infra.retry import RetryPolicy, retry_on

logger = logging.getLogger(__name__)

# S3 multipart regels
MIN_PART_BYTES = 5 * 1024 * 1024
MAX_PART_BYTES = 5 * 1024 * 1024 * 1024
MAX_PART_NUMBER = 10_000


# =========================
# Datatypes
# =========================
@dataclass(frozen=True)
class ObjectRef:
    bucket: str
    key: str
    content_type: Optional[str] = None


@dataclass
class ObjectStream:
    """
    Streaming body of one GET. The body is forward-only and must be closed;
    use as a context manager.
    """

    bucket: str
    key: str
    content_type: Optional[str]
    body: BinaryIO
    content_length: Optional[int] = None

    def iter_chunks(self, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
        while True:
            chunk = self.body.read(chunk_size)
            if not chunk:
                return
            yield chunk

    def close(self) -> None:
        self.body.close()

    def __enter__(self) -> "ObjectStream":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


@dataclass(frozen=True)
class InitiateOptions:
    content_type: Optional[str] = None
    canned_acl: Optional[str] = None
    # krijgt de CreateMultipartUpload kwargs en geeft ze (aangepast) terug,
    # bijv. voor Tagging of ServerSideEncryption
    customize: Optional[Callable[[Dict[str, Any]], Dict[str, Any]]] = None


@dataclass(frozen=True)
class CompletedPart:
    part_number: int
    etag: str


# =========================
# Abstracte ObjectStore
# =========================
class ObjectStore(ABC):
    """Capability interface over an S3-compatible object store."""

    @abstractmethod
    def get_object_stream(self, bucket: str, key: str) -> ObjectStream:
        pass

    @abstractmethod
    def initiate_multipart(self, bucket: str, key: str, opts: Optional[InitiateOptions] = None) -> str:
        """Returns the uploadId."""

    @abstractmethod
    def upload_part(
        self, bucket: str, key: str, upload_id: str, part_number: int, data: bytes, is_last: bool = False
    ) -> str:
        """PUT one part, returns its ETag."""

    @abstractmethod
    def complete_multipart(self, bucket: str, key: str, upload_id: str, parts: Sequence[CompletedPart]) -> None:
        pass

    @abstractmethod
    def abort_multipart(self, bucket: str, key: str, upload_id: str) -> None:
        """Must be safe to repeat and safe for an uploadId the store no longer knows."""

    @abstractmethod
    def list_objects(self, bucket: str, prefix: str = "") -> Iterator[ObjectRef]:
        pass


# =========================
# S3 (boto3)
# =========================
class S3ObjectStore(ObjectStore):
    """
    boto3 implementatie. Idempotente calls (GET, list, part PUT, abort) gaan
    door retry_on; initiate en complete niet, die kunnen dubbele uploads maken.
    """

    def __init__(self, client=None, retry: RetryPolicy = RetryPolicy()):
        if client is None:
            from s3unzip.infra.s3_client import get_s3

            client = get_s3()
        self.client = client
        self.retry = retry

    def _retry(self, fn):
        return retry_on(fn, self.retry, is_retryable=is_retryable_s3, on_retry=log_retry)

    def get_object_stream(self, bucket: str, key: str) -> ObjectStream:
        resp = self._retry(lambda: self.client.get_object(Bucket=bucket, Key=key))
        return ObjectStream(
            bucket=bucket,
            key=key,
            content_type=resp.get("ContentType"),
            body=resp["Body"],
            content_length=resp.get("ContentLength"),
        )

    def initiate_multipart(self, bucket: str, key: str, opts: Optional[InitiateOptions] = None) -> str:
        opts = opts or InitiateOptions()
        params: Dict[str, Any] = {"Bucket": bucket, "Key": key}
        if opts.content_type:
            params["ContentType"] = opts.content_type
        if opts.canned_acl:
            params["ACL"] = opts.canned_acl
        if opts.customize is not None:
            params = opts.customize(params)
        resp = self.client.create_multipart_upload(**params)
        return resp["UploadId"]

    def upload_part(
        self, bucket: str, key: str, upload_id: str, part_number: int, data: bytes, is_last: bool = False
    ) -> str:
        # is_last heeft geen equivalent in de S3 API; S3 bepaalt dat bij complete
        resp = self._retry(
            lambda: self.client.upload_part(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                PartNumber=part_number,
                Body=data,
                ContentLength=len(data),
            )
        )
        return resp["ETag"]

    def complete_multipart(self, bucket: str, key: str, upload_id: str, parts: Sequence[CompletedPart]) -> None:
        self.client.complete_multipart_upload(
            Bucket=bucket,
            Key=key,
            UploadId=upload_id,
            MultipartUpload={"Parts": [{"ETag": p.etag, "PartNumber": p.part_number} for p in parts]},
        )

    def abort_multipart(self, bucket: str, key: str, upload_id: str) -> None:
        try:
            self._retry(lambda: self.client.abort_multipart_upload(Bucket=bucket, Key=key, UploadId=upload_id))
        except ClientError as e:
            if is_missing_upload(e):
                logger.debug("Abort of %s/%s uploadId=%s: upload already gone (%s)", bucket, key, upload_id, describe(e))
                return
            raise

    def list_objects(self, bucket: str, prefix: str = "") -> Iterator[ObjectRef]:
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
            for obj in page.get("Contents", []) or []:
                yield ObjectRef(bucket=bucket, key=obj["Key"])


# =========================
# In-memory store
# =========================
@dataclass
class _StoredObject:
    data: bytes
    content_type: Optional[str] = None


@dataclass
class _PendingUpload:
    bucket: str
    key: str
    content_type: Optional[str]
    parts: Dict[int, Tuple[str, bytes]] = field(default_factory=dict)


class InMemoryObjectStore(ObjectStore):
    """
    Thread-safe in-process store that follows the S3 multipart rules (part
    numbers 1..10000, non-final parts of at least `min_part_bytes`, ETags in
    ascending order at complete). Every call is appended to `calls` as
    `(operation, bucket, key, extra)` so tests can assert on the exact traffic.
    """

    def __init__(self, min_part_bytes: int = MIN_PART_BYTES):
        self.min_part_bytes = min_part_bytes
        self.objects: Dict[Tuple[str, str], _StoredObject] = {}
        self.uploads: Dict[str, _PendingUpload] = {}
        self.calls: List[Tuple[str, str, str, Any]] = []
        self.opened_streams: List[ObjectStream] = []
        # optionele hook: (upload_part call nummer, part_number) -> exception of None
        self.part_fault: Optional[Callable[[int, int], Optional[Exception]]] = None
        self._part_calls = 0
        self._lock = threading.Lock()

    # --- helpers voor setup/verificatie ---
    def put_object(self, bucket: str, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        with self._lock:
            self.objects[(bucket, key)] = _StoredObject(bytes(data), content_type)

    def get_bytes(self, bucket: str, key: str) -> bytes:
        return self.objects[(bucket, key)].data

    def get_content_type(self, bucket: str, key: str) -> Optional[str]:
        return self.objects[(bucket, key)].content_type

    def keys(self, bucket: str, prefix: str = "") -> List[str]:
        return sorted(k for (b, k) in self.objects if b == bucket and k.startswith(prefix))

    def calls_of(self, operation: str) -> List[Tuple[str, str, str, Any]]:
        return [c for c in self.calls if c[0] == operation]

    def _record(self, operation: str, bucket: str, key: str, extra: Any = None) -> None:
        with self._lock:
            self.calls.append((operation, bucket, key, extra))

    # --- ObjectStore ---
    def get_object_stream(self, bucket: str, key: str) -> ObjectStream:
        self._record("get_object", bucket, key)
        try:
            obj = self.objects[(bucket, key)]
        except KeyError:
            raise KeyError(f"NoSuchKey: {bucket}/{key}") from None
        stream = ObjectStream(bucket, key, obj.content_type, io.BytesIO(obj.data), len(obj.data))
        self.opened_streams.append(stream)
        return stream

    def initiate_multipart(self, bucket: str, key: str, opts: Optional[InitiateOptions] = None) -> str:
        opts = opts or InitiateOptions()
        params: Dict[str, Any] = {"Bucket": bucket, "Key": key}
        if opts.content_type:
            params["ContentType"] = opts.content_type
        if opts.canned_acl:
            params["ACL"] = opts.canned_acl
        if opts.customize is not None:
            params = opts.customize(params)
        upload_id = uuid.uuid4().hex
        self._record("initiate", bucket, key, {"upload_id": upload_id, "params": params})
        with self._lock:
            self.uploads[upload_id] = _PendingUpload(bucket, key, params.get("ContentType"))
        return upload_id

    def upload_part(
        self, bucket: str, key: str, upload_id: str, part_number: int, data: bytes, is_last: bool = False
    ) -> str:
        with self._lock:
            self._part_calls += 1
            call_no = self._part_calls
        self._record("upload_part", bucket, key, {"upload_id": upload_id, "part_number": part_number, "size": len(data)})
        if self.part_fault is not None:
            fault = self.part_fault(call_no, part_number)
            if fault is not None:
                raise fault
        if not 1 <= part_number <= MAX_PART_NUMBER:
            raise ValueError(f"InvalidArgument: part number {part_number}")
        etag = '"%s"' % md5(data).hexdigest()
        with self._lock:
            upload = self.uploads.get(upload_id)
            if upload is None:
                raise KeyError(f"NoSuchUpload: {upload_id}")
            upload.parts[part_number] = (etag, bytes(data))
        return etag

    def complete_multipart(self, bucket: str, key: str, upload_id: str, parts: Sequence[CompletedPart]) -> None:
        self._record("complete", bucket, key, {"upload_id": upload_id, "parts": [p.part_number for p in parts]})
        with self._lock:
            upload = self.uploads.get(upload_id)
            if upload is None:
                raise KeyError(f"NoSuchUpload: {upload_id}")
            if not parts:
                raise ValueError("MalformedXML: no parts")
            numbers = [p.part_number for p in parts]
            if numbers != sorted(set(numbers)):
                raise ValueError("InvalidPartOrder")
            chunks = []
            for i, p in enumerate(parts):
                stored = upload.parts.get(p.part_number)
                if stored is None or stored[0] != p.etag:
                    raise ValueError(f"InvalidPart: {p.part_number}")
                if i < len(parts) - 1 and len(stored[1]) < self.min_part_bytes:
                    raise ValueError(f"EntityTooSmall: part {p.part_number}")
                chunks.append(stored[1])
            self.objects[(bucket, key)] = _StoredObject(b"".join(chunks), upload.content_type)
            del self.uploads[upload_id]

    def abort_multipart(self, bucket: str, key: str, upload_id: str) -> None:
        self._record("abort", bucket, key, {"upload_id": upload_id})
        with self._lock:
            self.uploads.pop(upload_id, None)

    def list_objects(self, bucket: str, prefix: str = "") -> Iterator[ObjectRef]:
        self._record("list_objects", bucket, prefix)
        for key in self.keys(bucket, prefix):
            yield ObjectRef(bucket, key, self.objects[(bucket, key)].content_type)
