"""Streams the remainder of a file to a session endpoint.

One transmit is one ``PUT`` carrying bytes ``[offset, total)``::

    PUT <session uri>
    Content-Length: <total - offset>
    Content-Range: bytes <offset>-<total - 1>/<total>
    Content-Type: <mime type>

Response interpretation:

* 200/201 -- finished; the body is the resource.
* 403/429 -- quota or rate limit; retryable with a suggested delay.
* 404 -- the session expired.
* 5xx or a network error -- retryable; the server may hold a prefix.
* anything else -- fatal.
"""

from __future__ import annotations

import asyncio
import logging

import httpx

from drivelib.auth import Credential
from drivelib.models import RemoteResource, UploadConfig, UploadSession
from drivelib.upload.exceptions import (
    RateLimitError,
    SessionExpiredError,
    TransientError,
    UnexpectedStatusError,
)
from drivelib.upload.headers import TOO_MANY_REQUESTS, content_range, parse_retry_after
from drivelib.upload.probe import resource_from_response
from drivelib.upload.source import StreamPipe
from drivelib.upload.transfer import Transfer

logger = logging.getLogger(__name__)


class ChunkTransmitter:
    """Sends byte ranges and maps the terminal response onto typed outcomes."""

    def __init__(self, client: httpx.AsyncClient, config: UploadConfig) -> None:
        self._client = client
        self._config = config

    def build_request(
        self,
        session: UploadSession,
        offset: int,
        pipe: StreamPipe,
        credential: Credential,
    ) -> httpx.Request:
        total = session.request.total_length
        if pipe.length != total - offset:
            raise ValueError(
                f"pipe carries {pipe.length} bytes but range [{offset}, {total}) "
                f"needs {total - offset}"
            )
        headers = {
            "Authorization": credential.authorization,
            "Content-Length": str(pipe.length),
            "Content-Range": content_range(offset, total),
            "Content-Type": session.request.mime_type,
        }
        return self._client.build_request(
            "PUT", session.endpoint_uri, headers=headers, content=pipe
        )

    async def transmit(
        self,
        session: UploadSession,
        offset: int,
        pipe: StreamPipe,
        credential: Credential,
        abort: asyncio.Event,
    ) -> RemoteResource:
        """Transmit ``[offset, total)`` from *pipe*.

        The pipe is closed before this method returns or raises.

        Raises:
            RateLimitError: On 403/429.
            TransientError: On 5xx or a network error.
            SessionExpiredError: On 404.
            UnexpectedStatusError: On any other status.
            UploadAbortedError: If *abort* is set mid-transfer.
        """
        try:
            request = self.build_request(session, offset, pipe, credential)
        except Exception:
            pipe.close()
            raise

        logger.debug(
            "Transmitting %s (%d bytes)", request.headers["Content-Range"], pipe.length
        )
        transfer = Transfer(self._client, request, pipe)
        transfer.start()
        try:
            response = await transfer.wait(abort)
        except httpx.TransportError as exc:
            raise TransientError(
                f"transmit interrupted after {pipe.bytes_sent} bytes: {exc}"
            ) from exc

        return self._interpret(response)

    def _interpret(self, response: httpx.Response) -> RemoteResource:
        status = response.status_code

        if status in (200, 201):
            return resource_from_response(response)

        if status in (403, TOO_MANY_REQUESTS):
            retry_after = parse_retry_after(response.headers.get("retry-after"))
            if retry_after is None:
                retry_after = self._config.rate_limit_backoff
            raise RateLimitError(f"rate limit exceeded (HTTP {status})", retry_after=retry_after)

        if status == 404:
            raise SessionExpiredError("upload session has expired")

        if 500 <= status < 600:
            raise TransientError(f"server error HTTP {status}")

        raise UnexpectedStatusError("transmit", status, response.text)
