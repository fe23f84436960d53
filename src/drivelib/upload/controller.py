"""Resumable upload controller.

Drives one upload through its lifecycle::

    negotiating -> probing -> transmitting -> completed
                      ^            |
                      +-- retry ---+          (backoff, then re-probe)
    probing/transmitting -- session expired --> negotiating

Every retry starts with a fresh probe: the server's acknowledged offset is
authoritative, and after an ambiguous failure (a reset after bytes left the
socket but before the response arrived) it may differ from what this side
believes it sent.

At most one request per session is in flight.  :meth:`UploadController.abort`
is observed at every suspension point -- credential check, negotiation,
probe, mid-stream transmit and backoff sleep -- and never leads to a retry.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
)

from drivelib.auth import Credential, CredentialProvider
from drivelib.models import (
    RemoteResource,
    TransferState,
    TransferStatus,
    UploadConfig,
    UploadRequest,
    UploadSession,
)
from drivelib.upload.backoff import backoff_from_config
from drivelib.upload.exceptions import (
    InvalidSourceError,
    ProtocolError,
    RetriesExhaustedError,
    RetryableUploadError,
    SessionExpiredError,
    UploadAbortedError,
)
from drivelib.upload.fsm import create_fsm
from drivelib.upload.negotiator import SessionNegotiator
from drivelib.upload.probe import ResumeProbe
from drivelib.upload.source import ByteRangeSource, StreamPipe
from drivelib.upload.transfer import await_or_abort
from drivelib.upload.transmitter import ChunkTransmitter

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProgressCallback = Callable[[int, int], None]
StatusCallback = Callable[[TransferStatus], None]
SessionCallback = Callable[[UploadSession], Awaitable[None]]


class UploadController:
    """Owns the retry/resume loop of a single resumable upload.

    Usage::

        controller = UploadController(
            request,
            FileRangeSource("/path/to/file.bin"),
            client=http_client,
            credentials=provider,
        )
        resource = await controller.run()

    Args:
        request: What to upload.
        source: Re-invocable byte source for the content.
        client: Shared ``httpx.AsyncClient`` (must not follow redirects,
            since 308 is the protocol's "incomplete" signal).
        credentials: Provider consulted before every network step.
        config: Retry, backoff and endpoint settings.
        session: A previously opened session to resume instead of
            negotiating a new one.
        on_session: Awaited with every newly opened session, before any
            byte is sent (used to persist it).
        on_progress: Called with ``(bytes_done, total_length)``.
        on_status: Called with every new :class:`TransferStatus`.
    """

    def __init__(
        self,
        request: UploadRequest,
        source: ByteRangeSource,
        *,
        client: httpx.AsyncClient,
        credentials: CredentialProvider,
        config: UploadConfig | None = None,
        session: UploadSession | None = None,
        on_session: SessionCallback | None = None,
        on_progress: ProgressCallback | None = None,
        on_status: StatusCallback | None = None,
    ) -> None:
        if session is not None and session.request != request:
            raise ValueError("session was opened for a different request")

        self._request = request
        self._source = source
        self._credentials = credentials
        self._config = config or UploadConfig()
        self._negotiator = SessionNegotiator(client, self._config)
        self._probe = ResumeProbe(client)
        self._transmitter = ChunkTransmitter(client, self._config)

        self._session = session
        self._on_session = on_session
        self._on_progress = on_progress
        self._on_status = on_status

        initial = TransferStatus.PROBING if session is not None else TransferStatus.NEGOTIATING
        self._state = TransferState(total_length=request.total_length, status=initial)
        self._fsm = create_fsm(initial)
        self._abort_event = asyncio.Event()
        self._pipe: StreamPipe | None = None
        self._started = False
        self._resource: RemoteResource | None = None

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> TransferState:
        return self._state

    @property
    def session(self) -> UploadSession | None:
        return self._session

    @property
    def resource(self) -> RemoteResource | None:
        return self._resource

    @property
    def aborted(self) -> bool:
        return self._abort_event.is_set()

    def abort(self) -> None:
        """Cancel the upload.  Safe to call from any task, any number of times.

        The request body in flight is closed before this returns, so no
        further byte reaches the transport.
        """
        if not self._abort_event.is_set():
            logger.info("Abort requested for %s", self._request.name)
            self._abort_event.set()
        if self._pipe is not None:
            self._pipe.close()

    async def run(self) -> RemoteResource:
        """Upload the content and return the store's resource.

        Raises:
            RetriesExhaustedError: Retryable failures outlasted the budget.
            SessionExpiredError: Sessions kept expiring past the renewal budget.
            ProtocolError: The store or the source broke the protocol.
            UploadAbortedError: :meth:`abort` was called.
            CredentialError: No valid credential could be produced.
        """
        if self._started:
            raise RuntimeError("UploadController.run() may only be called once")
        self._started = True

        try:
            resource = await self._run()
        except UploadAbortedError:
            self._transition("abort")
            logger.warning(
                "Upload of %s aborted at offset %d/%d",
                self._request.name,
                self._state.offset,
                self._state.total_length,
            )
            raise
        except asyncio.CancelledError:
            self._abort_event.set()
            self._transition("abort")
            raise
        except Exception as exc:
            self._transition("fail")
            logger.error("Upload of %s failed: %s", self._request.name, exc)
            raise

        self._state.offset = self._state.total_length
        self._transition("complete")
        self._report_progress(self._state.total_length)
        self._resource = resource
        logger.info("Upload of %s completed as %s", self._request.name, resource.id)
        return resource

    # ------------------------------------------------------------------
    # Session loop
    # ------------------------------------------------------------------

    async def _run(self) -> RemoteResource:
        if self._session is None:
            self._session = await self._negotiate()

        while True:
            try:
                return await self._drive(self._session)
            except SessionExpiredError:
                if self._state.session_renewals >= self._config.max_session_renewals:
                    logger.error(
                        "Session expired and renewal budget (%d) is spent",
                        self._config.max_session_renewals,
                    )
                    raise
                self._state.session_renewals += 1
                logger.warning(
                    "Upload session expired; opening a new one (renewal %d/%d)",
                    self._state.session_renewals,
                    self._config.max_session_renewals,
                )
                self._transition("renegotiate")
                self._state.reset()
                self._session = await self._negotiate()

    async def _negotiate(self) -> UploadSession:
        credential = await self._check_token()
        session = await self._guard(self._negotiator.open(self._request, credential))
        if self._on_session is not None:
            await self._on_session(session)
        self._transition("session_opened")
        return session

    async def _drive(self, session: UploadSession) -> RemoteResource:
        """Probe/transmit against *session* until completion or a non-retryable error."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._config.max_attempts),
            wait=backoff_from_config(self._config),
            retry=retry_if_exception_type(RetryableUploadError),
            sleep=self._backoff_sleep,
            before_sleep=self._before_retry,
            reraise=False,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._attempt(session)
        except RetryError as exc:
            attempts = exc.last_attempt.attempt_number
            cause = exc.last_attempt.exception()
            raise RetriesExhaustedError(
                f"upload of {self._request.name} gave up after {attempts} attempts: {cause}",
                attempts=attempts,
            ) from cause
        raise AssertionError("unreachable")  # pragma: no cover

    async def _attempt(self, session: UploadSession) -> RemoteResource:
        self._state.attempts += 1

        credential = await self._check_token()
        result = await self._guard(self._probe.probe(session, credential))
        if result.resource is not None:
            return result.resource

        self._advance(result.offset)
        self._transition("start_transmit")

        credential = await self._check_token()
        pipe = self._open_pipe(result.offset)
        return await self._transmitter.transmit(
            session, result.offset, pipe, credential, self._abort_event
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _check_token(self) -> Credential:
        return await self._guard(self._credentials.check_token())

    async def _guard(self, aw: Awaitable[T]) -> T:
        return await await_or_abort(aw, self._abort_event)

    def _open_pipe(self, offset: int) -> StreamPipe:
        if self._abort_event.is_set():
            raise UploadAbortedError("upload aborted")

        def on_chunk(_size: int) -> None:
            self._report_progress(offset + pipe.bytes_sent)

        try:
            pipe = StreamPipe.open(
                self._source,
                offset,
                self._request.total_length,
                chunk_size=self._config.chunk_size,
                on_chunk=on_chunk,
            )
        except OSError as exc:
            raise InvalidSourceError(f"cannot open byte source at {offset}: {exc}") from exc
        self._pipe = pipe
        return pipe

    def _advance(self, offset: int) -> None:
        try:
            self._state.advance(offset)
        except ValueError as exc:
            raise ProtocolError(f"server offset went backwards: {exc}") from exc
        self._report_progress(offset)

    async def _backoff_sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._abort_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise UploadAbortedError("upload aborted during backoff")

    def _before_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "Attempt %d/%d for %s failed (%s); re-probing in %.1fs",
            retry_state.attempt_number,
            self._config.max_attempts,
            self._request.name,
            exc,
            delay,
        )
        self._transition("retry")

    def _transition(self, event: str) -> None:
        self._fsm.send(event)
        self._state.status = TransferStatus(self._fsm.current_state_value)
        logger.debug("%s -> %s", self._request.name, self._state.status.value)
        if self._on_status is not None:
            self._on_status(self._state.status)

    def _report_progress(self, done: int) -> None:
        if self._on_progress is not None:
            self._on_progress(done, self._state.total_length)
