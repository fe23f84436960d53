"""Shared pytest fixtures for the resumable upload tests.

Provides an in-process fake drive server (an ``httpx`` transport that speaks
the resumable upload protocol and can inject faults mid-stream), an
``httpx.AsyncClient`` wired to it, a credential provider and a fast upload
config with millisecond backoffs.
"""

from __future__ import annotations

import json
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

import httpx
import pytest

from drivelib.auth import Credential, CredentialProvider
from drivelib.models import UploadConfig, UploadRequest

UPLOAD_URL = "https://drive.test/upload/drive/v3/files"


@dataclass
class Fault:
    """One injected transmit failure.

    ``after_bytes`` bytes of the body are durably stored first.  With a
    ``status`` the rest of the body is drained and that status returned;
    without one the connection drops.
    """

    after_bytes: int = 0
    status: int | None = None
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class FakeSession:
    uri: str
    metadata: dict
    mime_type: str
    total: int
    file_id: str
    received: bytearray = field(default_factory=bytearray)
    finalized: bool = False
    expired: bool = False

    def resource(self) -> dict:
        return {
            "id": self.file_id,
            "name": self.metadata.get("name"),
            "mimeType": self.mime_type,
            "parents": self.metadata.get("parents", []),
            "size": str(self.total),
            "md5Checksum": "d41d8cd98f00b204e9800998ecf8427e",
        }


@dataclass
class RecordedRequest:
    method: str
    url: str
    headers: dict[str, str]
    at: float
    params: dict[str, str] = field(default_factory=dict)
    kind: str = ""
    body_bytes: int = 0


class FakeDriveServer(httpx.AsyncBaseTransport):
    """Stateful fake of the store's resumable upload endpoints.

    Faults are consumed in order: ``initiate_statuses`` for session
    initiation, ``probe_statuses`` for probes (``None`` entries fall through
    to normal handling) and ``transmit_faults`` for transmits.
    """

    def __init__(self) -> None:
        self.sessions: dict[str, FakeSession] = {}
        self.requests: list[RecordedRequest] = []
        self.initiate_statuses: deque[int] = deque()
        self.omit_location = False
        self.probe_statuses: deque[int | None] = deque()
        self.transmit_faults: deque[Fault | None] = deque()
        self.on_bytes: Callable[[int], None] | None = None
        self._next_id = 0

    # -- inspection ------------------------------------------------------

    def of_kind(self, kind: str) -> list[RecordedRequest]:
        return [r for r in self.requests if r.kind == kind]

    @property
    def last_session(self) -> FakeSession:
        return list(self.sessions.values())[-1]

    def expire(self, uri: str) -> None:
        self.sessions[uri].expired = True

    # -- transport -------------------------------------------------------

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        record = RecordedRequest(
            method=request.method,
            url=str(request.url).split("?")[0],
            headers=dict(request.headers),
            params=dict(request.url.params),
            at=time.monotonic(),
        )
        self.requests.append(record)

        if request.method in ("POST", "PATCH"):
            record.kind = "initiate"
            return await self._initiate(request)

        session = self.sessions.get(str(request.url))
        # Probes carry no body and therefore no Content-Type.
        if "content-type" not in request.headers:
            record.kind = "probe"
            return self._probe(session)

        record.kind = "transmit"
        return await self._transmit(session, request, record)

    async def _initiate(self, request: httpx.Request) -> httpx.Response:
        await request.aread()
        if self.initiate_statuses:
            return httpx.Response(self.initiate_statuses.popleft(), json={"error": "injected"})

        metadata = json.loads(request.content)
        self._next_id += 1
        uri = f"https://drive.test/upload/session/{self._next_id}"
        if request.method == "PATCH":
            file_id = str(request.url).split("?")[0].rsplit("/", 1)[-1]
        else:
            file_id = f"file-{self._next_id}"
        self.sessions[uri] = FakeSession(
            uri=uri,
            metadata=metadata,
            mime_type=request.headers["x-upload-content-type"],
            total=int(request.headers["x-upload-content-length"]),
            file_id=file_id,
        )
        if self.omit_location:
            return httpx.Response(200)
        return httpx.Response(200, headers={"Location": uri})

    def _probe(self, session: FakeSession | None) -> httpx.Response:
        if self.probe_statuses:
            status = self.probe_statuses.popleft()
            if status is not None:
                return httpx.Response(status)
        if session is None or session.expired:
            return httpx.Response(404)
        if session.finalized:
            return httpx.Response(200, json=session.resource())
        return self._incomplete(session)

    async def _transmit(
        self, session: FakeSession | None, request: httpx.Request, record: RecordedRequest
    ) -> httpx.Response:
        if session is None or session.expired:
            await request.aread()
            return httpx.Response(404)

        start = _range_start(request.headers["content-range"])
        assert start == len(session.received), (
            f"transmit starts at {start} but server holds {len(session.received)} bytes"
        )

        fault = self.transmit_faults.popleft() if self.transmit_faults else None
        limit = fault.after_bytes if fault is not None else None

        async for chunk in request.stream:
            record.body_bytes += len(chunk)
            if limit is not None:
                room = start + limit - len(session.received)
                chunk = chunk[: max(room, 0)]
            if chunk:
                session.received.extend(chunk)
                if self.on_bytes is not None:
                    self.on_bytes(len(session.received))
            if fault is not None and fault.status is None and len(session.received) >= start + limit:
                raise httpx.ReadError("connection reset by peer", request=request)

        if fault is not None:
            if fault.status is None:
                raise httpx.ReadError("connection reset by peer", request=request)
            return httpx.Response(fault.status, headers=fault.headers)

        if len(session.received) == session.total:
            session.finalized = True
            return httpx.Response(200, json=session.resource())
        return self._incomplete(session)

    @staticmethod
    def _incomplete(session: FakeSession) -> httpx.Response:
        headers = {}
        if session.received:
            headers["Range"] = f"bytes=0-{len(session.received) - 1}"
        return httpx.Response(308, headers=headers)


def _range_start(value: str) -> int:
    byte_range = value.split(" ", 1)[1]
    if byte_range.startswith("*"):
        return int(byte_range.split("/")[1])
    return int(byte_range.split("-", 1)[0])


# ======================================================================
# Fixtures
# ======================================================================


@pytest.fixture
def server() -> FakeDriveServer:
    return FakeDriveServer()


@pytest.fixture
async def http_client(server: FakeDriveServer):
    async with httpx.AsyncClient(transport=server, follow_redirects=False) as client:
        yield client


@pytest.fixture
def credentials() -> CredentialProvider:
    return CredentialProvider(Credential(access_token="test-token"))


@pytest.fixture
def fast_config() -> UploadConfig:
    """Config with tiny chunks and millisecond backoffs."""
    return UploadConfig(
        upload_url=UPLOAD_URL,
        chunk_size=100,
        max_attempts=5,
        min_backoff=0.01,
        max_backoff=0.05,
        backoff_multiplier=0.01,
        rate_limit_backoff=0.02,
        max_session_renewals=2,
    )


@pytest.fixture
def payload() -> bytes:
    return bytes(i % 251 for i in range(1000))


@pytest.fixture
def upload_request(payload: bytes) -> UploadRequest:
    return UploadRequest(
        name="report.bin",
        mime_type="application/octet-stream",
        total_length=len(payload),
        parent_id="folder-1",
    )
