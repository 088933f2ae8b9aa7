# s3unzip/aws/s3_errors.py
import logging
from typing import Optional

from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

logger = logging.getLogger(__name__)

_RETRY_CODES = {
    "SlowDown", "Throttling", "ThrottlingException", "RequestTimeout",
    "InternalError", "ServiceUnavailable", "InternalServerError",
}
_MISSING_UPLOAD_CODES = {"NoSuchUpload", "404", "NotFound"}


def error_code(exc: BaseException) -> Optional[str]:
    if isinstance(exc, ClientError):
        return (exc.response.get("Error", {}) or {}).get("Code")
    return None


def http_status(exc: BaseException) -> Optional[int]:
    if isinstance(exc, ClientError):
        status = (exc.response.get("ResponseMetadata", {}) or {}).get("HTTPStatusCode")
        return int(status) if status is not None else None
    return None


def is_retryable_s3(exc: Exception) -> bool:
    # Netwerk/endpoint timeouts
    if isinstance(exc, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError, ConnectionClosedError)):
        return True
    if isinstance(exc, ClientError):
        if error_code(exc) in _RETRY_CODES:
            return True
        status = http_status(exc)
        if status is not None and 500 <= status < 600:
            return True
    return False


def is_missing_upload(exc: BaseException) -> bool:
    """Abort on an uploadId the store no longer knows about counts as done."""
    return error_code(exc) in _MISSING_UPLOAD_CODES


def describe(exc: BaseException) -> str:
    code = error_code(exc)
    if code is None:
        return f"{type(exc).__name__}: {exc}"
    meta = exc.response.get("ResponseMetadata", {}) or {}
    return f"S3 {code} (http={meta.get('HTTPStatusCode')}, request_id={meta.get('RequestId')})"


def log_retry(attempt: int, exc: Exception, sleep_s: float) -> None:
    logger.warning("S3 retry #%d in %.2fs (code=%s, exc=%s)", attempt, sleep_s, error_code(exc), type(exc).__name__)
