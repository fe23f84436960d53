"""Resume probe: ask a session how many bytes it has durably received."""

from __future__ import annotations

import logging

import httpx
from pydantic import ValidationError

from drivelib.auth import Credential
from drivelib.models import ProbeResult, RemoteResource, UploadSession
from drivelib.upload.exceptions import (
    ProtocolError,
    SessionExpiredError,
    TransientError,
    UnexpectedStatusError,
)
from drivelib.upload.headers import PERMANENT_REDIRECT, parse_range_header, unknown_range

logger = logging.getLogger(__name__)


def resource_from_response(response: httpx.Response) -> RemoteResource:
    """Parse a completed-upload response body.

    Raises:
        ProtocolError: If the body is not a JSON resource.
    """
    try:
        return RemoteResource.model_validate(response.json())
    except (ValueError, ValidationError) as exc:
        raise ProtocolError(f"invalid resource body in HTTP {response.status_code}: {exc}") from exc


class ResumeProbe:
    """Sends zero-length status queries to a session endpoint."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def probe(self, session: UploadSession, credential: Credential) -> ProbeResult:
        """Return the server's confirmed offset, or the finished resource.

        Raises:
            SessionExpiredError: On 404.
            TransientError: On a network failure.
            ProtocolError: On a malformed ``Range`` header or resource body.
            UnexpectedStatusError: On any other status.
        """
        total = session.request.total_length
        headers = {
            "Authorization": credential.authorization,
            "Content-Length": "0",
            "Content-Range": unknown_range(total),
        }

        try:
            response = await self._client.put(session.endpoint_uri, headers=headers)
        except httpx.TransportError as exc:
            raise TransientError(f"probe failed: {exc}") from exc

        status = response.status_code
        if status in (200, 201):
            resource = resource_from_response(response)
            logger.debug("Probe: upload already complete (%s)", resource.id)
            return ProbeResult(offset=total, resource=resource)

        if status == PERMANENT_REDIRECT:
            offset = parse_range_header(response.headers.get("range"))
            if offset > total:
                raise ProtocolError(f"server reports {offset} bytes of a {total}-byte upload")
            logger.debug("Probe: server has %d/%d bytes", offset, total)
            return ProbeResult(offset=offset)

        if status == 404:
            raise SessionExpiredError("upload session has expired")

        raise UnexpectedStatusError("probe", status, response.text)
