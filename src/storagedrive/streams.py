"""
Content readers and writers for drive objects.

The store's upload call pulls bytes from a body until it is exhausted, while a
shell pushes bytes into a writer a few at a time. ``ContentWriter`` joins the
two: the upload runs as a background task reading from one end of an
in-process pipe, and the writer feeds the other end. The writer keeps the task
handle; ``close`` sends end-of-stream, waits for the task and raises its
failure.
"""

import asyncio
import logging
from typing import AsyncIterator, Callable, Iterable, List, Optional, Union

import httpx

from .error import InvalidOperationException, TransferFailedException
from .models import ObjectMetadata
from .service import StorageService


logger = logging.getLogger(__name__)

UTF8_TEXT_MIME_TYPE = "text/plain; charset=utf-8"
DEFAULT_PIPE_CAPACITY = 16

_EOF = object()


class ContentReader:
    """Forward-only reader over an object's bytes."""

    def __init__(self, chunks: AsyncIterator[bytes], bucket: str, path: str):
        self.bucket = bucket
        self.path = path
        self._chunks = chunks
        self._buffer = bytearray()
        self._eof = False
        self._closed = False

    async def _fill(self) -> bool:
        """Pull one more chunk into the buffer. False at end of stream."""
        if self._eof:
            return False
        if self._closed:
            raise InvalidOperationException("Reader is closed.", bucket=self.bucket, path=self.path)
        try:
            chunk = await self._chunks.__anext__()
        except StopAsyncIteration:
            self._eof = True
            return False
        except httpx.HTTPError as e:
            raise TransferFailedException(
                f"Download of '{self.bucket}/{self.path}' failed: {e}", bucket=self.bucket, path=self.path
            ) from e
        self._buffer.extend(chunk)
        return True

    async def read(self, size: int = -1) -> bytes:
        """Read up to ``size`` bytes, or everything left when ``size`` is negative."""
        while (size < 0 or len(self._buffer) < size) and await self._fill():
            pass
        if size < 0:
            size = len(self._buffer)
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data

    async def readline(self) -> bytes:
        """Read through the next newline; empty at end of stream."""
        while True:
            cut = self._buffer.find(b"\n")
            if cut >= 0:
                data = bytes(self._buffer[:cut + 1])
                del self._buffer[:cut + 1]
                return data
            if not await self._fill():
                data = bytes(self._buffer)
                self._buffer.clear()
                return data

    async def read_lines(self, count: int = 0) -> List[str]:
        """Read ``count`` text lines without their line endings; all remaining lines when ``count <= 0``."""
        lines: List[str] = []
        while count <= 0 or len(lines) < count:
            raw = await self.readline()
            if not raw:
                break
            lines.append(raw.decode("utf-8").rstrip("\r\n"))
        return lines

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        if not self._buffer and not await self._fill():
            raise StopAsyncIteration
        data = bytes(self._buffer)
        self._buffer.clear()
        return data

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        close = getattr(self._chunks, "aclose", None)
        if close is not None:
            await close()

    async def __aenter__(self) -> "ContentReader":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()


class ContentWriter:
    """
    Push-style writer whose bytes are uploaded by a background task.

    A failed upload is raised from the next ``write``, from ``flush`` or from
    ``close``; ``close`` always waits for the upload to finish.
    """

    def __init__(
        self,
        service: StorageService,
        bucket: str,
        path: str,
        content_type: str = UTF8_TEXT_MIME_TYPE,
        predefined_acl: Optional[str] = None,
        on_complete: Optional[Callable[[ObjectMetadata], None]] = None,
        capacity: int = DEFAULT_PIPE_CAPACITY,
    ):
        self.bucket = bucket
        self.path = path
        self.content_type = content_type
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, capacity))
        self._on_complete = on_complete
        self._closed = False
        self._result: Optional[ObjectMetadata] = None
        self._task = asyncio.create_task(
            service.insert_object(bucket, path, self._body(), content_type, predefined_acl=predefined_acl)
        )

    async def _body(self) -> AsyncIterator[bytes]:
        while True:
            item = await self._queue.get()
            self._queue.task_done()
            if item is _EOF:
                return
            yield item

    def _failure(self) -> TransferFailedException:
        error = self._task.exception()
        if isinstance(error, TransferFailedException):
            return error
        failure = TransferFailedException(
            f"Upload of '{self.bucket}/{self.path}' failed: {error}", bucket=self.bucket, path=self.path
        )
        failure.__cause__ = error
        return failure

    def _check_upload(self) -> None:
        if not self._task.done():
            return
        if self._task.cancelled():
            raise TransferFailedException(
                f"Upload of '{self.bucket}/{self.path}' was aborted.", bucket=self.bucket, path=self.path
            )
        if self._task.exception() is not None:
            raise self._failure()
        raise TransferFailedException(
            f"Upload of '{self.bucket}/{self.path}' ended before the writer was closed.",
            bucket=self.bucket,
            path=self.path,
        )

    async def _race_upload(self, waiter) -> None:
        """Wait for ``waiter`` unless the upload task finishes first."""
        waiter = asyncio.ensure_future(waiter)
        done, _ = await asyncio.wait({waiter, self._task}, return_when=asyncio.FIRST_COMPLETED)
        if waiter not in done:
            waiter.cancel()
            self._check_upload()

    async def write(self, data: Union[bytes, str]) -> None:
        if self._closed:
            raise InvalidOperationException("Writer is closed.", bucket=self.bucket, path=self.path)
        self._check_upload()
        if isinstance(data, str):
            data = data.encode("utf-8")
        if data:
            await self._race_upload(self._queue.put(bytes(data)))

    async def write_lines(self, items: Iterable) -> None:
        """Write each item as a line of text."""
        for item in items:
            await self.write(f"{item}\n")

    async def flush(self) -> None:
        """Wait until the upload has taken every byte written so far."""
        if self._closed:
            return
        self._check_upload()
        await self._race_upload(self._queue.join())

    async def close(self) -> ObjectMetadata:
        """Finish the upload and return the stored object's metadata."""
        if not self._closed:
            self._closed = True
            if not self._task.done():
                await self._race_upload(self._queue.put(_EOF))
        try:
            self._result = await self._task
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise
            raise TransferFailedException(
                f"Upload of '{self.bucket}/{self.path}' was aborted.", bucket=self.bucket, path=self.path
            )
        except Exception:
            raise self._failure()
        if self._on_complete is not None:
            self._on_complete(self._result)
            self._on_complete = None
        return self._result

    async def abort(self) -> None:
        """Stop the upload without committing the object."""
        self._closed = True
        if not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("[StorageDrive][Writer] aborted bucket=%s object=%s", self.bucket, self.path)

    async def __aenter__(self) -> "ContentWriter":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            await self.abort()
            return False
        await self.close()
        return False


class ContentStreamBridge:
    """Opens readers and writers for objects."""

    def __init__(self, service: StorageService, capacity: int = DEFAULT_PIPE_CAPACITY):
        self._service = service
        self._capacity = capacity

    async def open_reader(self, bucket: str, path: str) -> ContentReader:
        metadata = await self._service.get_object(bucket, path)
        return ContentReader(self._service.download_object(metadata), bucket, path)

    def open_writer(
        self,
        bucket: str,
        path: str,
        content_type: Optional[str] = None,
        predefined_acl: Optional[str] = None,
        on_complete: Optional[Callable[[ObjectMetadata], None]] = None,
    ) -> ContentWriter:
        """Start an upload and return the writer feeding it. Must run inside an event loop."""
        return ContentWriter(
            self._service,
            bucket,
            path,
            content_type=content_type or UTF8_TEXT_MIME_TYPE,
            predefined_acl=predefined_acl,
            on_complete=on_complete,
            capacity=self._capacity,
        )

    async def clear(
        self,
        bucket: str,
        path: str,
        on_complete: Optional[Callable[[ObjectMetadata], None]] = None,
    ) -> ObjectMetadata:
        """Replace the object's content with zero bytes."""
        writer = self.open_writer(bucket, path, UTF8_TEXT_MIME_TYPE, on_complete=on_complete)
        return await writer.close()
