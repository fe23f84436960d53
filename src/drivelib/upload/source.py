"""Byte sources for resumable uploads and the stream-to-request adapter.

A :class:`ByteRangeSource` hands out a fresh readable binary stream that
starts at a given byte offset.  The controller asks for a new stream on every
transmit attempt, so implementations must be re-invocable.

:class:`StreamPipe` adapts one such stream into the async byte iterator that
httpx sends as a request body, and owns its single teardown.
"""

from __future__ import annotations

import asyncio
import io
import logging
import os
from pathlib import Path
from typing import IO, AsyncIterator, Callable, Protocol, runtime_checkable

from drivelib.upload.exceptions import InvalidSourceError

logger = logging.getLogger(__name__)


@runtime_checkable
class ByteRangeSource(Protocol):
    """Capability to read the same content starting from any offset."""

    def open(self, offset: int) -> IO[bytes]:
        """Return a readable binary stream positioned at *offset*."""
        ...


class FileRangeSource:
    """Reads a local file, seeking to the requested offset on every open."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)

    @property
    def size(self) -> int:
        return self.path.stat().st_size

    def open(self, offset: int) -> IO[bytes]:
        fh = open(self.path, "rb")
        try:
            fh.seek(offset)
        except OSError:
            fh.close()
            raise
        return fh

    def __repr__(self) -> str:
        return f"FileRangeSource({str(self.path)!r})"


class BytesRangeSource:
    """Serves an in-memory buffer."""

    def __init__(self, data: bytes) -> None:
        self._data = bytes(data)

    @property
    def size(self) -> int:
        return len(self._data)

    def open(self, offset: int) -> IO[bytes]:
        buf = io.BytesIO(self._data)
        buf.seek(offset)
        return buf


class StreamPipe:
    """Feeds exactly *length* bytes of *stream* into a request body.

    Reads run in a worker thread so blocking file I/O never stalls the event
    loop.  :meth:`close` releases the stream once; later calls are no-ops.

    Args:
        stream: Readable binary stream positioned at the upload offset.
        length: Number of bytes the request declares.
        chunk_size: Maximum bytes per read.
        on_chunk: Optional callback receiving the size of each chunk handed
            to the transport.

    Raises:
        InvalidSourceError: If *stream* has no callable ``read``.
    """

    def __init__(
        self,
        stream: IO[bytes],
        length: int,
        chunk_size: int = 256 * 1024,
        on_chunk: Callable[[int], None] | None = None,
    ) -> None:
        if not callable(getattr(stream, "read", None)):
            raise InvalidSourceError(
                f"byte source returned {type(stream).__name__}, not a readable stream"
            )
        self._stream = stream
        self._length = length
        self._chunk_size = chunk_size
        self._on_chunk = on_chunk
        self._closed = False
        self._released = False
        self._reading = False
        self._consumed = False
        self.bytes_sent = 0

    @classmethod
    def open(
        cls,
        source: ByteRangeSource,
        offset: int,
        total_length: int,
        chunk_size: int = 256 * 1024,
        on_chunk: Callable[[int], None] | None = None,
    ) -> StreamPipe:
        """Open *source* at *offset* and wrap the result for ``[offset, total_length)``."""
        opener = getattr(source, "open", None)
        if not callable(opener):
            raise InvalidSourceError(f"{source!r} does not implement open(offset)")
        stream = opener(offset)
        return cls(stream, total_length - offset, chunk_size, on_chunk)

    @property
    def length(self) -> int:
        return self._length

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aiter__(self) -> AsyncIterator[bytes]:
        if self._consumed:
            raise InvalidSourceError("stream pipe is single-use")
        self._consumed = True

        remaining = self._length
        while remaining > 0:
            if self._closed:
                return
            self._reading = True
            try:
                chunk = await asyncio.to_thread(
                    self._stream.read, min(self._chunk_size, remaining)
                )
            finally:
                self._reading = False
                if self._closed:
                    self._release()
            # A close() that landed during the read drops the chunk.
            if self._closed:
                return
            if not isinstance(chunk, (bytes, bytearray, memoryview)):
                raise InvalidSourceError(
                    f"stream read returned {type(chunk).__name__}, expected bytes"
                )
            if not chunk:
                raise InvalidSourceError(
                    f"byte source ended after {self.bytes_sent} of {self._length} bytes"
                )
            chunk = bytes(chunk[:remaining])
            remaining -= len(chunk)
            self.bytes_sent += len(chunk)
            if self._on_chunk is not None:
                self._on_chunk(len(chunk))
            yield chunk

    def close(self) -> bool:
        """Stop the body and release the underlying stream.

        Takes effect synchronously: no chunk is yielded after this returns.
        If a read is in flight, the stream is released when it finishes.

        Returns:
            ``True`` if this call performed the teardown, ``False`` if the
            pipe was already closed.
        """
        if self._closed:
            return False
        self._closed = True
        if not self._reading:
            self._release()
        logger.debug("Stream pipe closed after %d/%d bytes", self.bytes_sent, self._length)
        return True

    def _release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            self._stream.close()
        except Exception:
            logger.debug("Error closing byte stream", exc_info=True)
