"""Drive client facade for resumable content uploads.

Owns the shared ``httpx.AsyncClient`` and credential provider, and builds one
:class:`~drivelib.upload.controller.UploadController` per upload.  Several
uploads may run concurrently on one client; they share only the credential
provider.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from drivelib.auth import CredentialProvider
from drivelib.models import RemoteResource, UploadConfig, UploadRequest, UploadSession
from drivelib.upload.controller import (
    ProgressCallback,
    SessionCallback,
    StatusCallback,
    UploadController,
)
from drivelib.upload.source import ByteRangeSource

logger = logging.getLogger(__name__)


class DriveClient:
    """Entry point for resumable create/update of drive files.

    Usage::

        async with DriveClient(provider) as drive:
            resource = await drive.resumable_create(
                FileRangeSource("photo.jpg"),
                name="photo.jpg",
                mime_type="image/jpeg",
                total_length=os.path.getsize("photo.jpg"),
                parent_id="folder123",
            )

    Args:
        credentials: Shared credential provider.
        config: Upload configuration; defaults apply when omitted.
        http_client: Pre-built client (tests inject one with a mock
            transport).  When omitted one is created and owned here.
    """

    def __init__(
        self,
        credentials: CredentialProvider,
        config: UploadConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._credentials = credentials
        self._config = config or UploadConfig()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self._config.read_timeout, connect=self._config.connect_timeout),
            follow_redirects=False,
        )

    @property
    def config(self) -> UploadConfig:
        return self._config

    @property
    def credentials(self) -> CredentialProvider:
        return self._credentials

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    def controller(
        self,
        request: UploadRequest,
        source: ByteRangeSource,
        *,
        session: UploadSession | None = None,
        on_session: SessionCallback | None = None,
        on_progress: ProgressCallback | None = None,
        on_status: StatusCallback | None = None,
    ) -> UploadController:
        """Build a controller for *request*; call ``run()`` on it to upload."""
        return UploadController(
            request,
            source,
            client=self._client,
            credentials=self._credentials,
            config=self._config,
            session=session,
            on_session=on_session,
            on_progress=on_progress,
            on_status=on_status,
        )

    async def resumable_create(
        self,
        source: ByteRangeSource,
        *,
        name: str,
        mime_type: str,
        total_length: int,
        parent_id: str | None = None,
        **callbacks: Any,
    ) -> RemoteResource:
        """Create a new file with the content of *source*."""
        request = UploadRequest(
            name=name,
            mime_type=mime_type,
            total_length=total_length,
            parent_id=parent_id,
        )
        return await self.controller(request, source, **callbacks).run()

    async def resumable_update(
        self,
        file_id: str,
        source: ByteRangeSource,
        *,
        name: str,
        mime_type: str,
        total_length: int,
        parent_id: str | None = None,
        **callbacks: Any,
    ) -> RemoteResource:
        """Replace the content (and name/mime type) of the existing file *file_id*."""
        request = UploadRequest(
            name=name,
            mime_type=mime_type,
            total_length=total_length,
            parent_id=parent_id,
            existing_resource_id=file_id,
        )
        return await self.controller(request, source, **callbacks).run()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> DriveClient:
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()
