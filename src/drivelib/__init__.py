"""Resumable upload client for a drive-style file store."""

__version__ = "0.1.0"

from drivelib.auth import Credential, CredentialProvider
from drivelib.drive import DriveClient
from drivelib.models import (
    RemoteResource,
    TransferState,
    TransferStatus,
    UploadConfig,
    UploadRequest,
    UploadSession,
)

__all__ = [
    "Credential",
    "CredentialProvider",
    "DriveClient",
    "RemoteResource",
    "TransferState",
    "TransferStatus",
    "UploadConfig",
    "UploadRequest",
    "UploadSession",
    "__version__",
]
