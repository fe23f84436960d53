"""Data models and enums for the drive upload client."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3/files"

# Fields requested back from the store on completion.
DEFAULT_FIELDS = ",".join(
    [
        "kind",
        "id",
        "name",
        "mimeType",
        "description",
        "starred",
        "trashed",
        "parents",
        "properties",
        "appProperties",
        "version",
        "webContentLink",
        "webViewLink",
        "createdTime",
        "modifiedTime",
        "originalFilename",
        "fileExtension",
        "md5Checksum",
        "size",
        "headRevisionId",
    ]
)


class TransferStatus(str, Enum):
    """Lifecycle status of one resumable upload."""

    NEGOTIATING = "negotiating"
    PROBING = "probing"
    TRANSMITTING = "transmitting"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (
            TransferStatus.COMPLETED,
            TransferStatus.FAILED,
            TransferStatus.ABORTED,
        )


@dataclass(frozen=True, slots=True)
class UploadRequest:
    """Immutable description of one file to upload.

    ``existing_resource_id`` selects update-in-place instead of create.
    """

    name: str
    mime_type: str
    total_length: int
    parent_id: str | None = None
    existing_resource_id: str | None = None

    def __post_init__(self) -> None:
        if self.total_length < 0:
            raise ValueError(f"total_length must be >= 0, got {self.total_length}")
        if not self.name:
            raise ValueError("name must not be empty")

    @property
    def is_update(self) -> bool:
        return self.existing_resource_id is not None

    def metadata(self) -> dict[str, Any]:
        """Metadata body sent with the session-initiation request."""
        body: dict[str, Any] = {"name": self.name, "mimeType": self.mime_type}
        if self.parent_id is not None and not self.is_update:
            body["parents"] = [self.parent_id]
        return body


@dataclass(frozen=True, slots=True)
class UploadSession:
    """A server-issued session endpoint with a bounded validity window."""

    endpoint_uri: str
    request: UploadRequest
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def expires_at(self, ttl_seconds: float) -> datetime:
        return self.created_at + timedelta(seconds=ttl_seconds)

    def is_expired(self, ttl_seconds: float, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at(ttl_seconds)


@dataclass(slots=True)
class TransferState:
    """Mutable progress of one upload, owned by the controller.

    Attributes:
        offset: Bytes the server has confirmed as durably received.
        status: Current lifecycle status.
        attempts: Probe/transmit attempts made against the current session.
        session_renewals: Sessions re-negotiated after expiry.
    """

    total_length: int
    offset: int = 0
    status: TransferStatus = TransferStatus.NEGOTIATING
    attempts: int = 0
    session_renewals: int = 0

    def advance(self, offset: int) -> None:
        """Record a server-confirmed offset.

        Raises:
            ValueError: If *offset* is outside ``[self.offset, total_length]``.
        """
        if offset < self.offset or offset > self.total_length:
            raise ValueError(
                f"offset {offset} outside [{self.offset}, {self.total_length}]"
            )
        self.offset = offset

    def reset(self) -> None:
        """Forget the confirmed offset; used when a new session replaces an expired one."""
        self.offset = 0
        self.attempts = 0


class RemoteResource(BaseModel):
    """The store's representation of the created or updated file."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    name: str | None = None
    mime_type: str | None = Field(default=None, alias="mimeType")
    parents: list[str] = Field(default_factory=list)
    size: int | None = None
    md5_checksum: str | None = Field(default=None, alias="md5Checksum")
    created_time: datetime | None = Field(default=None, alias="createdTime")
    modified_time: datetime | None = Field(default=None, alias="modifiedTime")


@dataclass(frozen=True, slots=True)
class ProbeResult:
    """Outcome of a resume probe: a confirmed offset, or the finished resource."""

    offset: int
    resource: RemoteResource | None = None

    @property
    def completed(self) -> bool:
        return self.resource is not None


@dataclass
class UploadConfig:
    """Configuration for the resumable upload engine.

    Controls the target endpoint, retry/backoff policy, session renewal,
    stream read size and HTTP timeouts.
    """

    upload_url: str = DEFAULT_UPLOAD_URL
    fields: str = DEFAULT_FIELDS
    query_params: dict[str, str] = field(default_factory=dict)
    chunk_size: int = 256 * 1024
    max_attempts: int = 8
    min_backoff: float = 1.0
    max_backoff: float = 64.0
    backoff_multiplier: float = 1.0
    rate_limit_backoff: float = 10.0
    max_session_renewals: int = 3
    session_ttl_seconds: int = 7 * 24 * 3600
    connect_timeout: float = 30.0
    read_timeout: float = 120.0
    db_path: str = "data/sessions.db"

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.min_backoff <= 0:
            raise ValueError("min_backoff must be positive")
        if self.max_backoff < self.min_backoff:
            raise ValueError(
                f"max_backoff ({self.max_backoff}) must be >= min_backoff "
                f"({self.min_backoff})"
            )
        if self.max_session_renewals < 0:
            raise ValueError("max_session_renewals must be >= 0")
