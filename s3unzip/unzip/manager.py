# s3unzip/unzip/manager.py
from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional, Sequence, Tuple

from s3unzip import metrics
from s3unzip.errors import InvalidContentType, UploadCancelled
from s3unzip.services.storage import ObjectRef, ObjectStore, ObjectStream
from s3unzip.unzip.archive import DEFAULT_CHUNK_SIZE, ArchiveReader
from s3unzip.unzip.strategy import NoSplitUnzipStrategy, UnzipStrategy, UnzipTask

logger = logging.getLogger(__name__)

ZIP_CONTENT_TYPES = ("application/zip",)


def normalize_prefix(prefix: str) -> str:
    if not prefix:
        return ""
    return prefix if prefix.endswith("/") else prefix + "/"


@dataclass
class BatchResult:
    processed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[Tuple[str, Exception]] = field(default_factory=list)
    outputs: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass(frozen=True)
class S3UnzipManager:
    """
    Unzips archives stored in S3 into new objects in the same bucket, streaming:
    the archive is read straight from the GET body and every entry is written
    with multipart uploads, so nothing is buffered whole in memory or on disk.

    `content_types` is an allow-list for the input objects' Content-Type;
    None or empty accepts everything. `fail_fast=False` lets the batch
    operations continue past a failing object.
    """

    store: ObjectStore
    strategy: UnzipStrategy = field(default_factory=NoSplitUnzipStrategy)
    content_types: Optional[Tuple[str, ...]] = None
    fail_fast: bool = True
    read_chunk_bytes: int = DEFAULT_CHUNK_SIZE
    cancel_event: Optional[threading.Event] = None

    def with_content_types(self, content_types: Optional[Sequence[str]]) -> "S3UnzipManager":
        return replace(self, content_types=tuple(content_types) if content_types is not None else None)

    def with_strategy(self, strategy: UnzipStrategy) -> "S3UnzipManager":
        return replace(self, strategy=strategy)

    def with_fail_fast(self, fail_fast: bool) -> "S3UnzipManager":
        return replace(self, fail_fast=fail_fast)

    def with_cancel_event(self, cancel_event: Optional[threading.Event]) -> "S3UnzipManager":
        return replace(self, cancel_event=cancel_event)

    # -------------------------
    # single object
    # -------------------------
    def unzip_object(self, bucket: str, key: str, output_prefix: str) -> List[str]:
        """Unzip one object; a Content-Type outside the allow-list raises InvalidContentType."""
        stream = self.store.get_object_stream(bucket, key)
        with stream:
            if not self._has_valid_content_type(stream.content_type):
                raise InvalidContentType(bucket, key, stream.content_type)
            return self._unzip(stream, output_prefix)

    # -------------------------
    # batch
    # -------------------------
    def unzip_objects(self, bucket: str, input_prefix: str, output_prefix: str) -> BatchResult:
        return self._unzip_many(bucket, input_prefix, output_prefix, lambda key: True)

    def unzip_objects_key_containing(
        self, bucket: str, input_prefix: str, output_prefix: str, key_containing: str
    ) -> BatchResult:
        return self._unzip_many(bucket, input_prefix, output_prefix, lambda key: key_containing in key)

    def unzip_objects_key_matching(
        self, bucket: str, input_prefix: str, output_prefix: str, key_matching: str
    ) -> BatchResult:
        pattern = re.compile(key_matching)
        return self._unzip_many(bucket, input_prefix, output_prefix, lambda key: pattern.fullmatch(key) is not None)

    def find_objects(self, bucket: str, input_prefix: str) -> List[ObjectRef]:
        refs = list(self.store.list_objects(bucket, input_prefix))
        logger.debug("Found s3 objects: %s", [r.key for r in refs])
        return refs

    def _unzip_many(
        self, bucket: str, input_prefix: str, output_prefix: str, key_filter: Callable[[str], bool]
    ) -> BatchResult:
        result = BatchResult()
        for ref in self.find_objects(bucket, input_prefix):
            if not key_filter(ref.key):
                continue
            self._check_cancelled(ref.bucket, ref.key)
            if ref.key.endswith("/"):
                metrics.OBJECTS_SKIPPED.labels(reason="directory").inc()
                continue
            try:
                outputs = self._unzip_if_valid(ref, output_prefix)
            except Exception as e:
                if self.fail_fast:
                    raise
                logger.error("Failed to unzip %s/%s, continuing: %s", ref.bucket, ref.key, e)
                result.failed.append((ref.key, e))
                continue
            if outputs is None:
                result.skipped.append(ref.key)
            else:
                result.processed.append(ref.key)
                result.outputs.extend(outputs)
        logger.info(
            "Batch %s/%s done: %d processed, %d skipped, %d failed",
            bucket, input_prefix, len(result.processed), len(result.skipped), len(result.failed),
        )
        return result

    def _unzip_if_valid(self, ref: ObjectRef, output_prefix: str) -> Optional[List[str]]:
        stream = self.store.get_object_stream(ref.bucket, ref.key)
        with stream:
            if not self._has_valid_content_type(stream.content_type):
                logger.debug(
                    "Skipping s3 object: %s - content type %s does not match any of %s",
                    ref.key, stream.content_type, list(self.content_types or ()),
                )
                metrics.OBJECTS_SKIPPED.labels(reason="content_type").inc()
                return None
            logger.debug("Found zip s3 object: %s", ref.key)
            return self._unzip(stream, output_prefix)

    # -------------------------
    # core loop
    # -------------------------
    def _check_cancelled(self, bucket: str, key: str) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise UploadCancelled(f"Cancelled before unzipping {bucket}/{key}", bucket=bucket, key=key)

    def _has_valid_content_type(self, content_type: Optional[str]) -> bool:
        if not self.content_types:
            return True
        return content_type in self.content_types

    def _unzip(self, stream: ObjectStream, output_prefix: str) -> List[str]:
        output_prefix = normalize_prefix(output_prefix)
        source = f"{stream.bucket}/{stream.key}"
        reader = ArchiveReader(stream.iter_chunks(self.read_chunk_bytes), source=source, chunk_size=self.read_chunk_bytes)
        outputs: List[str] = []
        strategy_name = self.strategy.name

        entries = iter(reader)
        try:
            for entry in entries:
                self._check_cancelled(stream.bucket, stream.key)
                task = UnzipTask(stream.bucket, output_prefix, entry, cancel_event=self.cancel_event)
                start = time.monotonic()
                try:
                    outputs.extend(self.strategy.unzip(task, self.store))
                except Exception:
                    metrics.ENTRIES_UNZIPPED.labels(strategy=strategy_name, status="failed").inc()
                    raise
                elapsed = time.monotonic() - start
                metrics.ENTRIES_UNZIPPED.labels(strategy=strategy_name, status="ok").inc()
                metrics.ENTRY_DURATION.labels(strategy=strategy_name).observe(elapsed)
                logger.info("Unzipped %s in %.1f s", entry.name, elapsed)
        finally:
            entries.close()
        return outputs
