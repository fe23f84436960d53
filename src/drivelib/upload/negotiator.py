"""Opens resumable upload sessions.

A session is opened with one metadata request::

    POST {upload_url}?uploadType=resumable           (create)
    PATCH {upload_url}/{file_id}?uploadType=resumable (update in place)
    X-Upload-Content-Type: <mime type>
    X-Upload-Content-Length: <total bytes>

    {"name": ..., "mimeType": ..., "parents": [...]}

The store answers with the session URI in ``Location``.  Failures here are
never retried; the controller decides whether to open another session.
"""

from __future__ import annotations

import logging

import httpx

from drivelib.auth import Credential
from drivelib.models import UploadConfig, UploadRequest, UploadSession
from drivelib.upload.exceptions import SessionInitiationError

logger = logging.getLogger(__name__)


class SessionNegotiator:
    """Issues session-initiation requests against the upload endpoint."""

    def __init__(self, client: httpx.AsyncClient, config: UploadConfig) -> None:
        self._client = client
        self._config = config

    def build_request(self, request: UploadRequest, credential: Credential) -> httpx.Request:
        params: dict[str, str] = dict(self._config.query_params)
        params["uploadType"] = "resumable"
        params.setdefault("fields", self._config.fields)

        if request.is_update:
            method = "PATCH"
            url = f"{self._config.upload_url.rstrip('/')}/{request.existing_resource_id}"
            if request.parent_id is not None:
                params["addParents"] = request.parent_id
        else:
            method = "POST"
            url = self._config.upload_url

        headers = {
            "Authorization": credential.authorization,
            "Content-Type": "application/json; charset=UTF-8",
            "X-Upload-Content-Type": request.mime_type,
            "X-Upload-Content-Length": str(request.total_length),
        }
        return self._client.build_request(
            method, url, params=params, headers=headers, json=request.metadata()
        )

    async def open(self, request: UploadRequest, credential: Credential) -> UploadSession:
        """Open a session for *request*.

        Raises:
            SessionInitiationError: On a transport failure, a non-2xx status,
                or a response without ``Location``.
        """
        http_request = self.build_request(request, credential)
        logger.debug("Opening upload session: %s %s", http_request.method, http_request.url)

        try:
            response = await self._client.send(http_request)
        except httpx.TransportError as exc:
            raise SessionInitiationError(f"session initiation failed: {exc}") from exc

        if not response.is_success:
            raise SessionInitiationError(
                f"session initiation failed: HTTP {response.status_code} "
                f"{response.reason_phrase}",
                status_code=response.status_code,
            )

        location = response.headers.get("location")
        if not location:
            raise SessionInitiationError(
                "session initiation response has no Location header",
                status_code=response.status_code,
            )

        logger.info("Opened upload session for %s (%d bytes)", request.name, request.total_length)
        return UploadSession(endpoint_uri=location, request=request)
