# s3unzip/upload/multipart.py
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from s3unzip import metrics
from s3unzip.errors import (
    InitiationFailed,
    InvalidConfiguration,
    PartLimitExceeded,
    PartTooLarge,
    PartTooSmall,
    UploadAborted,
    UploadCancelled,
    UploadError,
)
from s3unzip.services.storage import (
    MAX_PART_BYTES,
    MAX_PART_NUMBER,
    MIN_PART_BYTES,
    CompletedPart,
    InitiateOptions,
    ObjectStore,
)

logger = logging.getLogger(__name__)

MB = 1024 * 1024

# hoe vaak de producer tijdens het wachten naar cancel_event kijkt
_POLL_SECONDS = 0.05


@dataclass(frozen=True)
class MultipartUploadConfig:
    """
    Tuning for one multipart upload session.

    Peak memory per session is roughly
    (1 producer buffer + queue_size + thread_count) * upload_part_bytes_limit.
    """

    upload_part_bytes_limit: int = 20 * MB
    thread_count: int = 4
    queue_size: int = 4
    await_termination_seconds: float = 2.0
    content_type: Optional[str] = None
    canned_acl: Optional[str] = None
    customize_initiate: Optional[Callable[[Dict[str, Any]], Dict[str, Any]]] = None

    def __post_init__(self) -> None:
        if self.upload_part_bytes_limit < MIN_PART_BYTES:
            raise InvalidConfiguration(f"Part size cannot be smaller than {MIN_PART_BYTES} bytes")
        if self.upload_part_bytes_limit > MAX_PART_BYTES:
            raise InvalidConfiguration(f"Part size cannot be larger than {MAX_PART_BYTES} bytes")
        if self.thread_count < 1:
            raise InvalidConfiguration("thread_count must be at least 1")
        if self.queue_size < 1:
            raise InvalidConfiguration("queue_size must be at least 1")
        if self.await_termination_seconds < 0:
            raise InvalidConfiguration("await_termination_seconds cannot be negative")

    def with_(self, **changes: Any) -> "MultipartUploadConfig":
        return replace(self, **changes)

    def initiate_options(self) -> InitiateOptions:
        return InitiateOptions(
            content_type=self.content_type,
            canned_acl=self.canned_acl,
            customize=self.customize_initiate,
        )


DEFAULT_CONFIG = MultipartUploadConfig()


class UploadState(str, Enum):
    NEW = "NEW"
    OPEN = "OPEN"
    COMPLETED = "COMPLETED"
    ABORTED = "ABORTED"


class MultipartUpload:
    """
    One multipart upload session: NEW -> OPEN -> COMPLETED, or ABORTED on any fault.

    Part numbers are handed out in call order, so the committed object keeps
    the producer's byte order even when part PUTs finish out of order. Parts
    are sent by a pool of `thread_count` workers; at most
    `queue_size + thread_count` parts are in flight and the producer blocks on
    further submissions until a slot frees up.

    Any failure between initiate and complete aborts the upload at the store.

    Every part sent through `upload_part` must be at least 5 MiB, also the
    first one; only `upload_final_part` may be shorter. S3 itself would accept
    a short first part when it is the only one, but that part is then final.
    """

    def __init__(
        self,
        store: ObjectStore,
        bucket: str,
        key: str,
        config: MultipartUploadConfig = DEFAULT_CONFIG,
        cancel_event: Optional[threading.Event] = None,
    ):
        if not bucket:
            raise InvalidConfiguration("bucket has not been set")
        if not key:
            raise InvalidConfiguration("key has not been set")
        self.store = store
        self.bucket = bucket
        self.key = key
        self.config = config
        self.cancel_event = cancel_event

        self.state = UploadState.NEW
        self.upload_id: Optional[str] = None
        self.abort_succeeded = True
        self.part_count = 0
        self.bytes_submitted = 0
        self.peak_inflight = 0

        self._aborting = threading.Event()
        self._abort_done = threading.Event()
        self._lock = threading.Lock()
        self._first_error: Optional[BaseException] = None
        self._etags: Dict[int, str] = {}
        self._futures: List[Future] = []
        self._inflight = 0
        self._executor: Optional[ThreadPoolExecutor] = None
        self._slots = threading.BoundedSemaphore(config.queue_size + config.thread_count)

    def __repr__(self) -> str:
        return f"[MultipartUpload to {self.bucket}/{self.key}, uploadId {self.upload_id}, {self.state.value}]"

    @property
    def aborting(self) -> bool:
        return self._aborting.is_set()

    # -------------------------
    # public API
    # -------------------------
    def initiate(self) -> str:
        if self.state is not UploadState.NEW:
            raise UploadError(f"{self} cannot be initiated twice", bucket=self.bucket, key=self.key, upload_id=self.upload_id)
        try:
            upload_id = self.store.initiate_multipart(self.bucket, self.key, self.config.initiate_options())
        except Exception as e:
            # geen uploadId, dus niets om bij de store af te breken
            logger.error("Failed initiating multipart upload to %s/%s: %r", self.bucket, self.key, e)
            self._aborting.set()
            self._abort_done.set()
            self.state = UploadState.ABORTED
            metrics.MULTIPART_UPLOADS.labels(status="aborted").inc()
            raise InitiationFailed(
                f"Failed initiating multipart upload to {self.bucket}/{self.key}",
                bucket=self.bucket,
                key=self.key,
                cause=e,
            ) from e

        self.upload_id = upload_id
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.thread_count,
            thread_name_prefix=f"s3unzip-part-{upload_id[:8]}",
        )
        self.state = UploadState.OPEN
        logger.debug("Initiated %s", self)
        return upload_id

    def upload_part(self, data: bytes) -> int:
        """Submit one non-final part. Blocks while the in-flight window is full."""
        self._require_started()
        try:
            self._ensure_open()
            size = len(data)
            if size < MIN_PART_BYTES:
                raise PartTooSmall(f"Non-final part of {size} bytes is below the {MIN_PART_BYTES} bytes minimum")
            if size > self.config.upload_part_bytes_limit:
                raise PartTooLarge(
                    f"Part of {size} bytes exceeds upload_part_bytes_limit {self.config.upload_part_bytes_limit}"
                )
            return self._submit(bytes(data), is_last=False)
        except UploadAborted as e:
            self.abort()
            e.abort_succeeded = self.abort_succeeded
            raise
        except BaseException as e:
            raise self._fail(e)

    def upload_final_part(self, data: bytes = b"") -> List[CompletedPart]:
        """
        Submit the last part (may be empty), wait for every part and complete.
        Returns the committed parts in part-number order.
        """
        self._require_started()
        try:
            self._ensure_open()
            if len(data) > MAX_PART_BYTES:
                raise PartTooLarge(f"Final part of {len(data)} bytes exceeds {MAX_PART_BYTES} bytes")
            # S3 wil minstens één part; een lege entry wordt één lege part
            if data or self.part_count == 0:
                self._submit(bytes(data), is_last=True)
            parts = self._drain()
            self._ensure_open()
            self.store.complete_multipart(self.bucket, self.key, self.upload_id, parts)
            self.state = UploadState.COMPLETED
            metrics.MULTIPART_UPLOADS.labels(status="completed").inc()
            logger.debug("Completed %s with %d parts, %d bytes", self, len(parts), self.bytes_submitted)
            return parts
        except UploadAborted as e:
            self.abort()
            e.abort_succeeded = self.abort_succeeded
            raise
        except BaseException as e:
            raise self._fail(e)
        finally:
            self._shutdown()

    def abort(self) -> None:
        """
        Idempotent and terminal; also stops the worker pool. Store errors are
        logged, not raised. Returns once `abort_succeeded` is final, also when
        another thread started the abort.
        """
        self._abort()
        self._shutdown()

    def _abort(self) -> None:
        with self._lock:
            if self.state is UploadState.COMPLETED:
                return
            started = self.state is UploadState.ABORTED
            if not started:
                self._aborting.set()
                self.state = UploadState.ABORTED
                pending = list(self._futures)
        if started:
            self._abort_done.wait()
            return

        try:
            for f in pending:
                f.cancel()

            if self.upload_id is not None:
                logger.debug("%s: Aborting", self)
                try:
                    self.store.abort_multipart(self.bucket, self.key, self.upload_id)
                    logger.info("%s: Aborted", self)
                except Exception:
                    self.abort_succeeded = False
                    logger.exception(
                        "Abort failed for bucket=%s key=%s uploadId=%s; clean up manually",
                        self.bucket, self.key, self.upload_id,
                    )
            metrics.MULTIPART_UPLOADS.labels(status="aborted").inc()
        finally:
            self._abort_done.set()

    # -------------------------
    # internals
    # -------------------------
    def _require_started(self) -> None:
        if self.state in (UploadState.NEW, UploadState.COMPLETED):
            raise UploadError(
                f"{self} does not accept parts", bucket=self.bucket, key=self.key, upload_id=self.upload_id
            )

    def _ensure_open(self) -> None:
        if self._aborting.is_set():
            # abort_succeeded pas lezen als de abort klaar is
            self._abort_done.wait()
            cause = self._first_error
            cls = UploadCancelled if isinstance(cause, UploadCancelled) else UploadAborted
            raise cls(
                f"{self} was aborted",
                bucket=self.bucket,
                key=self.key,
                upload_id=self.upload_id,
                cause=cause,
                abort_succeeded=self.abort_succeeded,
            )
        if self.state is not UploadState.OPEN:
            raise UploadError(f"{self} is not open", bucket=self.bucket, key=self.key, upload_id=self.upload_id)
        self._check_cancelled()

    def _check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise UploadCancelled(
                f"{self} was cancelled", bucket=self.bucket, key=self.key, upload_id=self.upload_id
            )

    def _next_part_number(self) -> int:
        part_number = self.part_count + 1
        if part_number > MAX_PART_NUMBER:
            raise PartLimitExceeded(f"Upload part number cannot exceed {MAX_PART_NUMBER}")
        self.part_count = part_number
        return part_number

    def _acquire_slot(self) -> None:
        # backpressure: blokkeer tot een worker/queue plek vrij is
        while not self._slots.acquire(timeout=_POLL_SECONDS):
            if self._aborting.is_set():
                self._ensure_open()
            self._check_cancelled()

    def _submit(self, data: bytes, is_last: bool) -> int:
        part_number = self._next_part_number()
        self._acquire_slot()
        try:
            self._ensure_open()
            future = self._executor.submit(self._upload_part_task, part_number, data, is_last)
        except BaseException:
            self._slots.release()
            raise
        with self._lock:
            self._futures.append(future)
            self._inflight += 1
            self.peak_inflight = max(self.peak_inflight, self._inflight)
        future.add_done_callback(self._on_part_done)
        self.bytes_submitted += len(data)
        logger.debug("Submitted part %d (%d bytes, last=%s) for %s", part_number, len(data), is_last, self.key)
        return part_number

    def _on_part_done(self, _future: Future) -> None:
        with self._lock:
            self._inflight -= 1
        self._slots.release()

    def _upload_part_task(self, part_number: int, data: bytes, is_last: bool) -> CompletedPart:
        if self._aborting.is_set():
            raise UploadAborted(
                f"Skipping part {part_number}: {self} is aborting",
                bucket=self.bucket,
                key=self.key,
                upload_id=self.upload_id,
                cause=self._first_error,
            )
        try:
            self._check_cancelled()
            etag = self.store.upload_part(self.bucket, self.key, self.upload_id, part_number, data, is_last)
        except BaseException as e:
            self._record_failure(e)
            raise
        with self._lock:
            self._etags[part_number] = etag
        metrics.PARTS_UPLOADED.inc()
        metrics.PART_BYTES.inc(len(data))
        logger.debug("Uploaded part %d for %s", part_number, self.key)
        return CompletedPart(part_number, etag)

    def _record_failure(self, exc: BaseException) -> None:
        with self._lock:
            first = self._first_error is None
            if first:
                self._first_error = exc
        if first:
            logger.error("Aborting %s due to error: %r", self, exc)
        self._abort()

    def _drain(self) -> List[CompletedPart]:
        with self._lock:
            futures = list(self._futures)
        pending = set(futures)
        # alle workers laten uitlopen; een worker fout loopt via _first_error
        while pending:
            _, pending = wait(pending, timeout=_POLL_SECONDS)
            if pending and not self._aborting.is_set():
                self._check_cancelled()
        if self._aborting.is_set():
            self._ensure_open()
        with self._lock:
            parts = [CompletedPart(n, self._etags[n]) for n in sorted(self._etags)]
        if len(parts) != self.part_count:
            raise UploadError(
                f"Expected {self.part_count} ETags, collected {len(parts)}",
                bucket=self.bucket, key=self.key, upload_id=self.upload_id,
            )
        return parts

    def _fail(self, exc: BaseException) -> BaseException:
        """Abort, then build the error to raise for `exc`."""
        with self._lock:
            if self._first_error is None:
                self._first_error = exc
            cause = self._first_error
        self.abort()
        if not isinstance(exc, Exception):
            # KeyboardInterrupt / SystemExit: afbreken, daarna ongewijzigd door
            return exc
        cancelled = isinstance(cause, UploadCancelled) or (
            self.cancel_event is not None and self.cancel_event.is_set()
        )
        cls = UploadCancelled if cancelled else UploadAborted
        error = cls(
            f"Multipart upload to {self.bucket}/{self.key} aborted",
            bucket=self.bucket,
            key=self.key,
            upload_id=self.upload_id,
            cause=cause,
            abort_succeeded=self.abort_succeeded,
        )
        error.__cause__ = cause
        return error

    def _shutdown(self) -> None:
        executor = self._executor
        if executor is None:
            return
        self._executor = None
        logger.debug("Shutting down worker pool for uploadId %s", self.upload_id)
        executor.shutdown(wait=False, cancel_futures=True)
        with self._lock:
            futures = list(self._futures)
        _, not_done = wait(futures, timeout=self.config.await_termination_seconds)
        if not_done:
            logger.warning(
                "%d part workers still running after %.1fs for uploadId %s",
                len(not_done), self.config.await_termination_seconds, self.upload_id,
            )
