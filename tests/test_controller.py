"""Tests for UploadController: the retry/resume loop end to end.

Covers:
  - Happy path and request sequencing
  - Resume after a server error or a connection reset mid-stream
  - Session expiry and renewal (including an exhausted renewal budget)
  - Fatal session initiation
  - Abort mid-transmit, during backoff, before start, and task cancellation
  - Backoff floors and the attempt budget
  - Resuming a persisted session and idempotent completion
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from drivelib.auth import Credential, CredentialExpiredError, CredentialProvider
from drivelib.models import TransferStatus, UploadConfig, UploadRequest, UploadSession
from drivelib.upload.controller import UploadController
from drivelib.upload.exceptions import (
    ProtocolError,
    RetriesExhaustedError,
    SessionExpiredError,
    SessionInitiationError,
    TransientError,
    UnexpectedStatusError,
    UploadAbortedError,
)
from drivelib.upload.source import BytesRangeSource

from conftest import UPLOAD_URL, Fault


def _controller(request, payload, client, credentials, config, **kwargs) -> UploadController:
    return UploadController(
        request,
        BytesRangeSource(payload),
        client=client,
        credentials=credentials,
        config=config,
        **kwargs,
    )


# ======================================================================
# Happy path
# ======================================================================


class TestHappyPath:
    async def test_uploads_all_bytes(self, server, http_client, credentials, fast_config, upload_request, payload):
        statuses: list[TransferStatus] = []
        controller = _controller(
            upload_request, payload, http_client, credentials, fast_config, on_status=statuses.append
        )

        resource = await controller.run()

        assert resource.id == server.last_session.file_id
        assert resource.name == "report.bin"
        assert bytes(server.last_session.received) == payload
        assert [r.kind for r in server.requests] == ["initiate", "probe", "transmit"]
        assert statuses == [
            TransferStatus.PROBING,
            TransferStatus.TRANSMITTING,
            TransferStatus.COMPLETED,
        ]
        assert controller.state.status == TransferStatus.COMPLETED
        assert controller.state.offset == 1000
        assert controller.resource == resource

    async def test_progress_ends_at_total(self, http_client, credentials, fast_config, upload_request, payload):
        progress: list[tuple[int, int]] = []
        controller = _controller(
            upload_request,
            payload,
            http_client,
            credentials,
            fast_config,
            on_progress=lambda done, total: progress.append((done, total)),
        )

        await controller.run()

        assert progress[-1] == (1000, 1000)
        assert all(0 <= done <= total == 1000 for done, total in progress)

    async def test_session_persisted_before_first_byte(self, server, http_client, credentials, fast_config, upload_request, payload):
        seen: list[tuple[UploadSession, int]] = []

        async def on_session(session: UploadSession) -> None:
            seen.append((session, len(server.of_kind("transmit"))))

        controller = _controller(
            upload_request, payload, http_client, credentials, fast_config, on_session=on_session
        )
        await controller.run()

        assert len(seen) == 1
        session, transmits_before = seen[0]
        assert transmits_before == 0
        assert session.endpoint_uri == server.last_session.uri
        assert controller.session == session

    async def test_zero_length_upload(self, server, http_client, credentials, fast_config):
        request = UploadRequest(name="empty.txt", mime_type="text/plain", total_length=0)
        resource = await _controller(request, b"", http_client, credentials, fast_config).run()

        assert resource.id == server.last_session.file_id
        (transmit,) = server.of_kind("transmit")
        assert transmit.headers["content-range"] == "bytes */0"
        assert transmit.headers["content-length"] == "0"

    async def test_run_is_single_use(self, http_client, credentials, fast_config, upload_request, payload):
        controller = _controller(upload_request, payload, http_client, credentials, fast_config)
        await controller.run()
        with pytest.raises(RuntimeError, match="once"):
            await controller.run()

    async def test_session_for_other_request_rejected(self, http_client, credentials, fast_config, upload_request, payload):
        other = UploadRequest(name="other.bin", mime_type="text/plain", total_length=1000)
        session = UploadSession(endpoint_uri="https://drive.test/upload/session/9", request=other)
        with pytest.raises(ValueError, match="different request"):
            _controller(upload_request, payload, http_client, credentials, fast_config, session=session)


# ======================================================================
# Resume after failures
# ======================================================================


class TestResume:
    async def test_server_error_after_partial_write(self, server, http_client, credentials, fast_config, upload_request, payload):
        """503 after 400 accepted bytes: re-probe, then send [400, 1000)."""
        server.transmit_faults.append(Fault(after_bytes=400, status=503))
        statuses: list[TransferStatus] = []
        controller = _controller(
            upload_request, payload, http_client, credentials, fast_config, on_status=statuses.append
        )

        resource = await controller.run()

        assert resource.id == server.last_session.file_id
        assert [r.kind for r in server.requests] == [
            "initiate", "probe", "transmit", "probe", "transmit",
        ]
        first, second = server.of_kind("transmit")
        assert first.headers["content-range"] == "bytes 0-999/1000"
        assert second.headers["content-range"] == "bytes 400-999/1000"
        assert second.headers["content-length"] == "600"
        assert second.body_bytes == 600
        assert bytes(server.last_session.received) == payload
        assert statuses == [
            TransferStatus.PROBING,
            TransferStatus.TRANSMITTING,
            TransferStatus.PROBING,
            TransferStatus.TRANSMITTING,
            TransferStatus.COMPLETED,
        ]
        assert controller.state.attempts == 2

    async def test_connection_reset_mid_stream(self, server, http_client, credentials, fast_config, upload_request, payload):
        server.transmit_faults.append(Fault(after_bytes=300))

        await _controller(upload_request, payload, http_client, credentials, fast_config).run()

        second = server.of_kind("transmit")[1]
        assert second.headers["content-range"] == "bytes 300-999/1000"
        assert bytes(server.last_session.received) == payload

    async def test_every_retry_reprobes(self, server, http_client, credentials, fast_config, upload_request, payload):
        server.transmit_faults.extend([Fault(after_bytes=100), Fault(after_bytes=200, status=502), None])

        await _controller(upload_request, payload, http_client, credentials, fast_config).run()

        kinds = [r.kind for r in server.requests]
        assert kinds == [
            "initiate",
            "probe", "transmit",
            "probe", "transmit",
            "probe", "transmit",
        ]
        ranges = [r.headers["content-range"] for r in server.of_kind("transmit")]
        assert ranges == ["bytes 0-999/1000", "bytes 100-999/1000", "bytes 300-999/1000"]
        assert bytes(server.last_session.received) == payload

    async def test_network_error_on_probe_is_retried(self, server, http_client, credentials, fast_config, upload_request, payload):
        real = server.handle_async_request
        failures = iter([True])

        async def flaky(request: httpx.Request) -> httpx.Response:
            if request.method == "PUT" and "content-type" not in request.headers and next(failures, False):
                raise httpx.ConnectError("connection refused", request=request)
            return await real(request)

        server.handle_async_request = flaky
        resource = await _controller(upload_request, payload, http_client, credentials, fast_config).run()
        assert resource.id == server.last_session.file_id

    async def test_offset_regression_is_protocol_error(self, credentials, fast_config, upload_request, payload):
        uri = "https://drive.test/upload/session/1"
        responses = iter(
            [
                httpx.Response(200, headers={"Location": uri}),
                httpx.Response(308, headers={"Range": "bytes=0-399"}),
                httpx.Response(503),
                httpx.Response(308, headers={"Range": "bytes=0-99"}),
            ]
        )
        statuses: list[TransferStatus] = []

        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: next(responses))) as client:
            controller = _controller(
                upload_request, payload, client, credentials, fast_config, on_status=statuses.append
            )
            with pytest.raises(ProtocolError, match="went backwards"):
                await controller.run()

        assert statuses[-1] == TransferStatus.FAILED

    async def test_resume_persisted_session(self, server, http_client, credentials, fast_config, upload_request, payload):
        """A second controller picks up a session the first one left behind."""
        server.transmit_faults.append(Fault(after_bytes=500))
        one_shot = replace(fast_config, max_attempts=1)
        first = _controller(upload_request, payload, http_client, credentials, one_shot)
        with pytest.raises(RetriesExhaustedError):
            await first.run()
        assert len(server.last_session.received) == 500

        second = _controller(
            upload_request, payload, http_client, credentials, fast_config, session=first.session
        )
        resource = await second.run()

        assert resource.id == server.last_session.file_id
        assert len(server.of_kind("initiate")) == 1
        assert server.of_kind("transmit")[-1].headers["content-range"] == "bytes 500-999/1000"
        assert bytes(server.last_session.received) == payload

    async def test_completion_is_idempotent(self, server, http_client, credentials, fast_config, upload_request, payload):
        first = _controller(upload_request, payload, http_client, credentials, fast_config)
        resource = await first.run()

        second = _controller(
            upload_request, payload, http_client, credentials, fast_config, session=first.session
        )
        again = await second.run()

        assert again.id == resource.id
        assert len(server.of_kind("transmit")) == 1
        assert second.state.status == TransferStatus.COMPLETED


# ======================================================================
# Session expiry
# ======================================================================


class TestSessionExpiry:
    async def test_probe_404_renegotiates(self, server, http_client, credentials, fast_config, upload_request, payload):
        server.probe_statuses.append(404)
        sessions: list[UploadSession] = []

        async def on_session(session: UploadSession) -> None:
            sessions.append(session)

        controller = _controller(
            upload_request, payload, http_client, credentials, fast_config, on_session=on_session
        )
        resource = await controller.run()

        assert len(server.of_kind("initiate")) == 2
        assert len(sessions) == 2
        assert sessions[0].endpoint_uri != sessions[1].endpoint_uri
        assert controller.session == sessions[1]
        assert controller.state.session_renewals == 1
        assert resource.id == server.last_session.file_id
        (transmit,) = server.of_kind("transmit")
        assert transmit.url == sessions[1].endpoint_uri
        assert transmit.headers["content-range"] == "bytes 0-999/1000"

    async def test_transmit_404_restarts_from_zero(self, server, http_client, credentials, fast_config, upload_request, payload):
        server.transmit_faults.append(Fault(after_bytes=400, status=404))
        statuses: list[TransferStatus] = []

        controller = _controller(
            upload_request, payload, http_client, credentials, fast_config, on_status=statuses.append
        )
        await controller.run()

        assert TransferStatus.NEGOTIATING in statuses
        second = server.of_kind("transmit")[1]
        assert second.headers["content-range"] == "bytes 0-999/1000"
        assert bytes(server.last_session.received) == payload

    async def test_renewal_budget_exhausted(self, server, http_client, credentials, fast_config, upload_request, payload):
        server.probe_statuses.extend([404, 404, 404])
        controller = _controller(upload_request, payload, http_client, credentials, fast_config)

        with pytest.raises(SessionExpiredError):
            await controller.run()

        assert len(server.of_kind("initiate")) == fast_config.max_session_renewals + 1
        assert not server.of_kind("transmit")
        assert controller.state.status == TransferStatus.FAILED


# ======================================================================
# Fatal errors
# ======================================================================


class TestFatal:
    async def test_initiation_failure_stops_everything(self, server, http_client, credentials, fast_config, upload_request, payload):
        server.initiate_statuses.append(500)
        controller = _controller(upload_request, payload, http_client, credentials, fast_config)

        with pytest.raises(SessionInitiationError) as excinfo:
            await controller.run()

        assert excinfo.value.status_code == 500
        assert [r.kind for r in server.requests] == ["initiate"]
        assert controller.state.status == TransferStatus.FAILED
        assert controller.resource is None

    async def test_unexpected_transmit_status(self, server, http_client, credentials, fast_config, upload_request, payload):
        server.transmit_faults.append(Fault(status=400))
        controller = _controller(upload_request, payload, http_client, credentials, fast_config)

        with pytest.raises(UnexpectedStatusError):
            await controller.run()
        assert len(server.of_kind("transmit")) == 1
        assert controller.state.status == TransferStatus.FAILED

    async def test_retries_exhausted(self, server, http_client, credentials, fast_config, upload_request, payload):
        server.transmit_faults.extend([Fault(status=503)] * 10)
        controller = _controller(upload_request, payload, http_client, credentials, fast_config)

        with pytest.raises(RetriesExhaustedError) as excinfo:
            await controller.run()

        assert excinfo.value.attempts == fast_config.max_attempts
        assert isinstance(excinfo.value.__cause__, TransientError)
        assert len(server.of_kind("transmit")) == fast_config.max_attempts
        assert controller.state.status == TransferStatus.FAILED

    async def test_expired_credential_without_refresher(self, server, http_client, fast_config, upload_request, payload):
        expired = Credential(
            access_token="old", expiry=datetime.now(timezone.utc) - timedelta(minutes=5)
        )
        controller = _controller(
            upload_request, payload, http_client, CredentialProvider(expired), fast_config
        )

        with pytest.raises(CredentialExpiredError):
            await controller.run()
        assert not server.requests
        assert controller.state.status == TransferStatus.FAILED


# ======================================================================
# Backoff
# ======================================================================


class TestBackoff:
    async def test_minimum_backoff_between_attempts(self, server, http_client, credentials, upload_request, payload):
        config = UploadConfig(
            upload_url=UPLOAD_URL, chunk_size=100, min_backoff=0.1, max_backoff=0.2,
            backoff_multiplier=0.01,
        )
        server.transmit_faults.extend([Fault(status=503), Fault(status=500)])

        await _controller(upload_request, payload, http_client, credentials, config).run()

        probes = server.of_kind("probe")
        transmits = server.of_kind("transmit")
        assert len(probes) == 3
        for failed, next_probe in zip(transmits[:2], probes[1:]):
            assert next_probe.at - failed.at >= 0.1 * 0.9

    async def test_rate_limit_waits_for_suggested_delay(self, server, http_client, credentials, upload_request, payload):
        config = UploadConfig(
            upload_url=UPLOAD_URL, chunk_size=100, min_backoff=0.01, max_backoff=0.05,
            backoff_multiplier=0.01, rate_limit_backoff=0.3,
        )
        server.transmit_faults.append(Fault(status=403))

        await _controller(upload_request, payload, http_client, credentials, config).run()

        failed = server.of_kind("transmit")[0]
        next_probe = server.of_kind("probe")[1]
        assert next_probe.at - failed.at >= 0.3 * 0.9


# ======================================================================
# Abort and cancellation
# ======================================================================


class TestAbort:
    async def test_abort_mid_transmit(self, server, http_client, credentials, fast_config, upload_request, payload):
        """Abort after 600 of 1000 bytes: no completion, no further requests."""
        statuses: list[TransferStatus] = []
        controller = _controller(
            upload_request, payload, http_client, credentials, fast_config, on_status=statuses.append
        )
        server.on_bytes = lambda received: controller.abort() if received >= 600 else None

        with pytest.raises(UploadAbortedError):
            await controller.run()

        assert controller.aborted
        assert controller.resource is None
        assert controller.state.status == TransferStatus.ABORTED
        assert statuses[-1] == TransferStatus.ABORTED
        assert TransferStatus.COMPLETED not in statuses
        assert [r.kind for r in server.requests] == ["initiate", "probe", "transmit"]
        assert len(server.last_session.received) == 600
        assert not server.last_session.finalized

    async def test_no_bytes_reach_server_after_abort_returns(self, server, http_client, credentials, fast_config, upload_request, payload):
        controller = _controller(upload_request, payload, http_client, credentials, fast_config)
        held_at_abort: list[int] = []

        def on_bytes(received: int) -> None:
            if received >= 300 and not controller.aborted:
                controller.abort()
                held_at_abort.append(received)

        server.on_bytes = on_bytes

        with pytest.raises(UploadAbortedError):
            await controller.run()

        assert held_at_abort == [300]
        assert len(server.last_session.received) == 300
        assert server.of_kind("transmit")[0].body_bytes == 300

    async def test_abort_during_backoff(self, server, http_client, credentials, upload_request, payload):
        config = UploadConfig(upload_url=UPLOAD_URL, min_backoff=5.0, max_backoff=10.0)
        server.transmit_faults.append(Fault(status=503))
        controller = _controller(upload_request, payload, http_client, credentials, config)

        asyncio.get_running_loop().call_later(0.1, controller.abort)
        started = time.monotonic()
        with pytest.raises(UploadAbortedError):
            await controller.run()

        assert time.monotonic() - started < 2.0
        assert len(server.of_kind("probe")) == 1
        assert controller.state.status == TransferStatus.ABORTED

    async def test_abort_before_run(self, server, http_client, credentials, fast_config, upload_request, payload):
        controller = _controller(upload_request, payload, http_client, credentials, fast_config)
        controller.abort()
        controller.abort()

        with pytest.raises(UploadAbortedError):
            await controller.run()
        assert not server.requests
        assert controller.state.status == TransferStatus.ABORTED

    async def test_task_cancellation_is_an_abort(self, server, http_client, credentials, fast_config, upload_request, payload):
        controller = _controller(upload_request, payload, http_client, credentials, fast_config)
        task = asyncio.create_task(controller.run())
        server.on_bytes = lambda received: task.cancel() if received >= 300 else None

        with pytest.raises(asyncio.CancelledError):
            await task

        assert controller.aborted
        assert controller.state.status == TransferStatus.ABORTED
        assert not server.last_session.finalized


# ======================================================================
# Credentials and concurrency
# ======================================================================


class TestSharedCredentials:
    async def test_concurrent_uploads_refresh_once(self, server, http_client, fast_config, payload):
        refreshed = Credential(
            access_token="fresh", expiry=datetime.now(timezone.utc) + timedelta(hours=1)
        )

        async def refresher(stale: Credential) -> Credential:
            await asyncio.sleep(0.01)
            return refreshed

        provider = CredentialProvider(
            Credential(access_token="old", expiry=datetime.now(timezone.utc) - timedelta(seconds=1)),
            refresher=refresher,
        )
        requests = [
            UploadRequest(name=f"part-{i}.bin", mime_type="application/octet-stream", total_length=len(payload))
            for i in range(3)
        ]

        resources = await asyncio.gather(
            *(_controller(r, payload, http_client, provider, fast_config).run() for r in requests)
        )

        assert len({r.id for r in resources}) == 3
        assert provider.refresh_count == 1
        assert all(r.headers["authorization"] == "Bearer fresh" for r in server.requests)
        assert all(bytes(s.received) == payload for s in server.sessions.values())
