# s3unzip/unzip/strategy.py
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import List, Optional

from s3unzip.errors import InvalidConfiguration, UnzipFailed, root_cause
from s3unzip.services.storage import ObjectStore
from s3unzip.unzip.archive import ArchiveEntry
from s3unzip.upload.multipart import DEFAULT_CONFIG, MultipartUpload, MultipartUploadConfig
from s3unzip.utils.humanize import human_readable_bytes

logger = logging.getLogger(__name__)

MB = 1024 * 1024


@dataclass(frozen=True)
class UnzipTask:
    """One archive entry plus where its output goes."""

    bucket: str
    output_prefix: str  # eindigt altijd op "/"
    entry: ArchiveEntry
    cancel_event: Optional[threading.Event] = None

    @property
    def filename(self) -> str:
        return self.entry.name

    @property
    def key(self) -> str:
        return self.output_prefix + self.entry.name

    def shard_key(self, file_number: int) -> str:
        return f"{self.output_prefix}{file_number}-{self.entry.name}"


class UnzipStrategy(ABC):
    """Maps one archive entry onto one or more output objects."""

    name = "base"
    config: MultipartUploadConfig

    @abstractmethod
    def unzip(self, task: UnzipTask, store: ObjectStore) -> List[str]:
        """Upload the entry; returns the keys written, in order."""

    def _open_upload(self, store: ObjectStore, task: UnzipTask, key: str) -> MultipartUpload:
        logger.debug("Initializing upload for %s", key)
        upload = MultipartUpload(store, task.bucket, key, self.config, cancel_event=task.cancel_event)
        upload.initiate()
        return upload


@dataclass(frozen=True)
class NoSplitUnzipStrategy(UnzipStrategy):
    """
    1:1 - every entry becomes exactly one object at output_prefix + entry name,
    byte for byte. Parts are exactly upload_part_bytes_limit long except the last.
    """

    config: MultipartUploadConfig = DEFAULT_CONFIG
    name = "no_split"

    def with_config(self, config: MultipartUploadConfig) -> "NoSplitUnzipStrategy":
        return replace(self, config=config)

    def with_upload_part_bytes_limit(self, limit: int) -> "NoSplitUnzipStrategy":
        return replace(self, config=self.config.with_(upload_part_bytes_limit=limit))

    def unzip(self, task: UnzipTask, store: ObjectStore) -> List[str]:
        entry = task.entry
        limit = self.config.upload_part_bytes_limit
        logger.info(
            "Unzipping %s, extracted: %s to %s",
            entry.name, human_readable_bytes(entry.declared_uncompressed_size), task.key,
        )

        upload: Optional[MultipartUpload] = None
        try:
            upload = self._open_upload(store, task, task.key)
            while True:
                data = entry.body.read(limit)
                if len(data) < limit:
                    # korter dan limit kan alleen aan het einde van de entry
                    parts = upload.upload_final_part(data)
                    break
                upload.upload_part(data)
                logger.debug(
                    "Uploading part [%d] for file: %s - read %s",
                    upload.part_count, entry.name, human_readable_bytes(entry.body.bytes_read),
                )
        except Exception as e:
            if upload is not None:
                upload.abort()
            raise UnzipFailed(entry.name, root_cause(e)) from e
        except BaseException:
            # KeyboardInterrupt / SystemExit: wel afbreken, niet verpakken
            if upload is not None:
                upload.abort()
            raise

        logger.info(
            "Unzipped and uploaded file: %s (%s) in %d parts",
            entry.name, human_readable_bytes(upload.bytes_submitted), len(parts),
        )
        return [task.key]


@dataclass(frozen=True)
class SplitTextUnzipStrategy(UnzipStrategy):
    """
    1:N - reads the entry as text split on `delimiter` and writes shards
    `<n>-<entry name>` (n from 1) of roughly `file_bytes_limit` bytes. A shard
    closes after the line that reaches the limit, so lines never straddle two
    shards. With `header=True` the first line is repeated at the top of every
    shard after the first.
    """

    config: MultipartUploadConfig = DEFAULT_CONFIG
    file_bytes_limit: int = 100 * MB
    header: bool = False
    delimiter: str = "\n"
    name = "split_text"

    def __post_init__(self) -> None:
        if self.file_bytes_limit < 1:
            raise InvalidConfiguration("file_bytes_limit must be positive")
        if not self.delimiter:
            raise InvalidConfiguration("delimiter cannot be empty")

    def with_config(self, config: MultipartUploadConfig) -> "SplitTextUnzipStrategy":
        return replace(self, config=config)

    def with_upload_part_bytes_limit(self, limit: int) -> "SplitTextUnzipStrategy":
        return replace(self, config=self.config.with_(upload_part_bytes_limit=limit))

    def with_file_bytes_limit(self, limit: int) -> "SplitTextUnzipStrategy":
        return replace(self, file_bytes_limit=limit)

    def with_header(self, header: bool) -> "SplitTextUnzipStrategy":
        return replace(self, header=header)

    def with_delimiter(self, delimiter: str) -> "SplitTextUnzipStrategy":
        return replace(self, delimiter=delimiter)

    def unzip(self, task: UnzipTask, store: ObjectStore) -> List[str]:
        entry = task.entry
        part_limit = self.config.upload_part_bytes_limit
        delimiter = self.delimiter.encode("utf-8")
        logger.info(
            "Unzipping %s, extracted: %s to %s",
            entry.name, human_readable_bytes(entry.declared_uncompressed_size), task.shard_key(1) + " ...",
        )

        keys: List[str] = []
        upload: Optional[MultipartUpload] = None
        buf = bytearray()
        file_number = 1
        file_bytes = 0
        header_line: Optional[bytes] = None

        try:
            for line in entry.body.iter_lines(delimiter):
                if self.header and header_line is None:
                    header_line = line

                # nieuwe shard pas openen als er echt iets in komt
                if upload is None:
                    upload = self._open_upload(store, task, task.shard_key(file_number))
                    keys.append(upload.key)
                    if self.header and file_number > 1:
                        buf += header_line
                        file_bytes += len(header_line)

                buf += line
                file_bytes += len(line)

                if file_bytes >= self.file_bytes_limit:
                    upload.upload_final_part(bytes(buf))
                    logger.info(
                        "Unzipped and uploaded file: %s shard file number %d (%s) in %d parts",
                        entry.name, file_number, human_readable_bytes(file_bytes), upload.part_count,
                    )
                    buf.clear()
                    file_bytes = 0
                    file_number += 1
                    upload = None
                    continue

                while len(buf) >= part_limit:
                    upload.upload_part(bytes(buf[:part_limit]))
                    del buf[:part_limit]
                    logger.debug(
                        "Uploading part [%d] for file: %s and shard file number: %d - read %s",
                        upload.part_count, entry.name, file_number, human_readable_bytes(entry.body.bytes_read),
                    )

            if upload is None and not keys:
                # lege entry: één lege shard, net als NoSplit
                upload = self._open_upload(store, task, task.shard_key(file_number))
                keys.append(upload.key)
            if upload is not None:
                upload.upload_final_part(bytes(buf))
        except Exception as e:
            if upload is not None:
                upload.abort()
            raise UnzipFailed(entry.name, root_cause(e)) from e
        except BaseException:
            # KeyboardInterrupt / SystemExit: wel afbreken, niet verpakken
            if upload is not None:
                upload.abort()
            raise

        logger.info("Unzipped and uploaded file: %s sharded into %d files", entry.name, len(keys))
        return keys
