# s3unzip/errors.py
from __future__ import annotations
from typing import Optional


class S3UnzipError(RuntimeError):
    """Basis voor alle fouten uit de unzip pipeline."""


class InvalidConfiguration(S3UnzipError):
    pass


class InvalidContentType(S3UnzipError):
    def __init__(self, bucket: str, key: str, content_type: Optional[str]):
        super().__init__(f"s3 object {bucket}/{key} has invalid content type: {content_type}")
        self.bucket = bucket
        self.key = key
        self.content_type = content_type


class ArchiveMalformed(S3UnzipError):
    pass


# --- multipart upload ---

class UploadError(S3UnzipError):
    def __init__(
        self,
        message: str,
        *,
        bucket: str,
        key: str,
        upload_id: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.bucket = bucket
        self.key = key
        self.upload_id = upload_id
        self.cause = cause


class InitiationFailed(UploadError):
    pass


class UploadAborted(UploadError):
    """
    The multipart upload reached ABORTED. `abort_succeeded` is False when the
    store-side abort itself failed; bucket/key/upload_id are then needed to
    clean up by hand.
    """

    def __init__(self, *args, abort_succeeded: bool = True, **kwargs):
        super().__init__(*args, **kwargs)
        self.abort_succeeded = abort_succeeded


class UploadCancelled(UploadAborted):
    pass


# guardrails, nooit los naar buiten: altijd verpakt in UploadAborted
class PartTooSmall(S3UnzipError):
    pass


class PartTooLarge(S3UnzipError):
    pass


class PartLimitExceeded(S3UnzipError):
    pass


class UnzipFailed(S3UnzipError):
    def __init__(self, name: str, cause: BaseException):
        super().__init__(f"Failed to unzip {name}: {type(cause).__name__}: {cause}")
        self.name = name
        self.cause = cause


def root_cause(exc: BaseException) -> BaseException:
    """Follow `cause` attributes of upload errors down to the original fault."""
    seen = set()
    while isinstance(exc, (UploadError, UnzipFailed)) and exc.cause is not None and id(exc) not in seen:
        seen.add(id(exc))
        exc = exc.cause
    return exc
