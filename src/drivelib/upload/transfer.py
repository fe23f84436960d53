"""One in-flight request with an abort race and a single teardown."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

import httpx

from drivelib.upload.exceptions import UploadAbortedError
from drivelib.upload.source import StreamPipe

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def await_or_abort(aw: Awaitable[T], abort: asyncio.Event) -> T:
    """Await *aw* unless *abort* is set first.

    On abort the pending work is cancelled and awaited before
    :class:`UploadAbortedError` is raised, so nothing it owns is still
    running when the caller regains control.  An abort that lands together
    with completion wins.
    """
    task = asyncio.ensure_future(aw)
    if abort.is_set():
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise UploadAbortedError("upload aborted")

    abort_waiter = asyncio.ensure_future(abort.wait())
    try:
        await asyncio.wait({task, abort_waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        abort_waiter.cancel()
        raise
    finally:
        if not abort_waiter.done():
            abort_waiter.cancel()

    if abort.is_set():
        if not task.done():
            task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise UploadAbortedError("upload aborted")

    return task.result()


class Transfer:
    """Sends one streaming request and owns the teardown of its body pipe.

    Usage::

        transfer = Transfer(client, request, pipe)
        transfer.start()
        response = await transfer.wait(abort_event)

    The pipe is closed exactly once whichever way the transfer ends:
    response, network error, :meth:`cancel` or abort.
    """

    def __init__(self, client: httpx.AsyncClient, request: httpx.Request, pipe: StreamPipe) -> None:
        self._client = client
        self._request = request
        self._pipe = pipe
        self._task: asyncio.Task[httpx.Response] | None = None

    @property
    def pipe(self) -> StreamPipe:
        return self._pipe

    @property
    def started(self) -> bool:
        return self._task is not None

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def start(self) -> None:
        if self._task is not None:
            raise RuntimeError("transfer already started")
        self._task = asyncio.create_task(self._client.send(self._request))

    def cancel(self) -> None:
        """Close the in-flight request and release the stream."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._teardown()

    async def wait(self, abort: asyncio.Event) -> httpx.Response:
        """Wait for the response, or abort.

        Raises:
            UploadAbortedError: If *abort* is set before the response arrives.
            httpx.TransportError: On a network failure.
        """
        if self._task is None:
            raise RuntimeError("transfer not started")
        try:
            return await await_or_abort(self._task, abort)
        finally:
            self._teardown()

    def _teardown(self) -> None:
        if self._pipe.close():
            logger.debug(
                "Transfer torn down (%d/%d bytes handed to transport)",
                self._pipe.bytes_sent,
                self._pipe.length,
            )
