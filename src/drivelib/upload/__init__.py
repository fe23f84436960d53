"""Resumable upload engine.

Public API
----------
.. autoclass:: UploadController
.. autoclass:: SessionNegotiator
.. autoclass:: ResumeProbe
.. autoclass:: ChunkTransmitter
.. autoclass:: ByteRangeSource
.. autoclass:: FileRangeSource
.. autoclass:: SessionStore
.. autoclass:: UploadProgressTracker
"""

from drivelib.upload.controller import UploadController
from drivelib.upload.exceptions import (
    InvalidSourceError,
    ProtocolError,
    RateLimitError,
    RetriesExhaustedError,
    SessionExpiredError,
    SessionInitiationError,
    TransientError,
    UnexpectedStatusError,
    UploadAbortedError,
    UploadError,
)
from drivelib.upload.negotiator import SessionNegotiator
from drivelib.upload.probe import ResumeProbe
from drivelib.upload.progress import UploadProgressTracker
from drivelib.upload.source import BytesRangeSource, ByteRangeSource, FileRangeSource, StreamPipe
from drivelib.upload.state import Fingerprint, SessionStore
from drivelib.upload.transfer import Transfer
from drivelib.upload.transmitter import ChunkTransmitter

__all__ = [
    "ByteRangeSource",
    "BytesRangeSource",
    "ChunkTransmitter",
    "FileRangeSource",
    "Fingerprint",
    "InvalidSourceError",
    "ProtocolError",
    "RateLimitError",
    "ResumeProbe",
    "RetriesExhaustedError",
    "SessionExpiredError",
    "SessionInitiationError",
    "SessionNegotiator",
    "SessionStore",
    "StreamPipe",
    "Transfer",
    "TransientError",
    "UnexpectedStatusError",
    "UploadAbortedError",
    "UploadController",
    "UploadError",
    "UploadProgressTracker",
]
