# s3unzip/unzip/archive.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

from stream_unzip import UnzipError, stream_unzip

from s3unzip.errors import ArchiveMalformed

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024


def _decode_name(raw: bytes) -> str:
    # zonder UTF-8 vlag is de naam officieel cp437
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("cp437")


class EntryBody:
    """
    Forward-only reader over the decompressed bytes of one archive entry.

    Only valid until the reader advances to the next entry. Closing drains
    whatever is left so the underlying stream lines up with the next header.
    """

    def __init__(self, name: str, chunks: Iterable[bytes]):
        self.name = name
        self.bytes_read = 0
        self._chunks = iter(chunks)
        self._pending = b""
        self._exhausted = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self) -> None:
        if self._closed:
            raise ValueError(f"Entry body of {self.name} is closed; the archive has moved on")

    def _next_chunk(self) -> Optional[bytes]:
        if self._exhausted:
            return None
        try:
            chunk = next(self._chunks)
        except StopIteration:
            self._exhausted = True
            return None
        except UnzipError as e:
            self._exhausted = True
            raise ArchiveMalformed(f"Corrupt data in entry {self.name}: {e!r}") from e
        self.bytes_read += len(chunk)
        return chunk

    def read(self, size: int = -1) -> bytes:
        """Read up to `size` bytes; fewer only at end of entry. b"" means EOF."""
        self._check_open()
        parts = [self._pending] if self._pending else []
        have = len(self._pending)
        self._pending = b""
        while size < 0 or have < size:
            chunk = self._next_chunk()
            if chunk is None:
                break
            parts.append(chunk)
            have += len(chunk)
        data = b"".join(parts)
        if 0 <= size < len(data):
            data, self._pending = data[:size], data[size:]
        return data

    def __iter__(self) -> Iterator[bytes]:
        self._check_open()
        if self._pending:
            pending, self._pending = self._pending, b""
            yield pending
        while True:
            self._check_open()
            chunk = self._next_chunk()
            if chunk is None:
                return
            if chunk:
                yield chunk

    def iter_lines(self, delimiter: bytes = b"\n") -> Iterator[bytes]:
        """
        Yield lines with their delimiter kept. The last line has no delimiter
        when the entry does not end with one.
        """
        if not delimiter:
            raise ValueError("delimiter cannot be empty")
        buf = bytearray()
        for chunk in self:
            search_from = max(0, len(buf) - len(delimiter) + 1)
            buf += chunk
            start = 0
            while True:
                idx = buf.find(delimiter, max(start, search_from))
                if idx < 0:
                    break
                end = idx + len(delimiter)
                yield bytes(buf[start:end])
                start = end
            if start:
                del buf[:start]
        if buf:
            yield bytes(buf)

    def close(self) -> None:
        if self._closed:
            return
        self._pending = b""
        while self._next_chunk() is not None:
            pass
        self._closed = True

    def invalidate(self) -> None:
        self._pending = b""
        self._exhausted = True
        self._closed = True


@dataclass
class ArchiveEntry:
    name: str
    body: EntryBody
    index: int
    # None = onbekend (data descriptor); nooit als harde limiet gebruiken.
    # stream-unzip geeft de gecomprimeerde grootte niet door.
    declared_uncompressed_size: Optional[int] = None


class ArchiveReader:
    """
    Iterates the entries of a ZIP archive read from a non-seekable stream of
    byte chunks, in archive order. Directory entries are skipped. Any parse
    failure, including CRC mismatches, raises ArchiveMalformed.
    """

    def __init__(self, chunks: Iterable[bytes], source: str = "", chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.source = source
        self.chunk_size = chunk_size
        self._chunks = chunks

    def __iter__(self) -> Iterator[ArchiveEntry]:
        index = 0
        try:
            for raw_name, size, chunks in stream_unzip(self._chunks, chunk_size=self.chunk_size):
                name = _decode_name(raw_name)
                body = EntryBody(name, chunks)
                if name.endswith("/"):
                    logger.debug("Skipping directory entry %s in %s", name, self.source)
                    body.close()
                    continue
                if name.startswith(("/", "\\")):
                    raise ArchiveMalformed(f"Absolute entry name {name!r} in {self.source}")
                if ".." in name.replace("\\", "/").split("/"):
                    raise ArchiveMalformed(f"Entry name {name!r} in {self.source} escapes the output prefix")
                try:
                    yield ArchiveEntry(
                        name=name,
                        body=body,
                        index=index,
                        declared_uncompressed_size=size,
                    )
                except GeneratorExit:
                    # consumer is gestopt; niet verder lezen van de stream
                    body.invalidate()
                    raise
                body.close()
                index += 1
        except UnzipError as e:
            raise ArchiveMalformed(f"Malformed zip archive {self.source}: {e!r}") from e
