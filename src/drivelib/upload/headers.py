"""Header builders and parsers for the resumable upload wire protocol.

Request side::

    Content-Range: bytes */1000          (probe: position unknown, total known)
    Content-Range: bytes 400-999/1000    (transmit the remainder from 400)

Response side::

    Range: bytes=0-399                   (308: bytes 0..399 are durable)
    Retry-After: 30                      (403/429: suggested delay)
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

from drivelib.upload.exceptions import ProtocolError

logger = logging.getLogger(__name__)

PERMANENT_REDIRECT = 308
TOO_MANY_REQUESTS = 429

_RANGE_RE = re.compile(r"^\s*bytes=(\d+)-(\d+)\s*$")


def unknown_range(total_length: int) -> str:
    """``Content-Range`` value for a zero-length status probe."""
    return f"bytes */{total_length}"


def content_range(offset: int, total_length: int) -> str:
    """``Content-Range`` value declaring ``[offset, total_length)``.

    When nothing remains to send (``offset == total_length``) the range is
    declared as unknown, which is the only valid form for an empty body.
    """
    if not 0 <= offset <= total_length:
        raise ValueError(f"offset {offset} outside [0, {total_length}]")
    if offset == total_length:
        return unknown_range(total_length)
    return f"bytes {offset}-{total_length - 1}/{total_length}"


def parse_range_header(value: str | None) -> int:
    """Return the next byte offset the server expects.

    ``None`` means the server has received nothing yet.

    Raises:
        ProtocolError: If the header is present but malformed.
    """
    if value is None:
        return 0
    match = _RANGE_RE.match(value)
    if match is None:
        raise ProtocolError(f"malformed Range header: {value!r}")
    start, end = int(match.group(1)), int(match.group(2))
    if start != 0 or end < start:
        raise ProtocolError(f"unsupported Range header: {value!r}")
    return end + 1


def parse_retry_after(value: str | None) -> float | None:
    """Parse ``Retry-After`` as delta-seconds or an HTTP date; ``None`` if absent or unparseable."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug("Ignoring unparseable Retry-After: %r", value)
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())
