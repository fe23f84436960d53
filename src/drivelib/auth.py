"""Bearer credential handling shared by concurrent uploads.

Acquiring and refreshing OAuth tokens is delegated to a *refresher*
callable supplied by the application.  :class:`CredentialProvider` only
guarantees that every network step sees a valid credential and that at most
one refresh runs at a time: concurrent callers that find the token expired
wait for the refresh already in flight instead of starting their own.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

Refresher = Callable[["Credential"], Awaitable["Credential"]]
CredentialListener = Callable[["Credential"], None]


class CredentialError(Exception):
    """Raised when no valid credential can be produced."""


class CredentialExpiredError(CredentialError):
    """Raised when the credential is expired and cannot be refreshed."""


@dataclass(frozen=True)
class Credential:
    """An OAuth bearer token as stored by the application."""

    access_token: str
    token_type: str = "Bearer"
    expiry: datetime | None = None
    refresh_token: str | None = None

    @property
    def authorization(self) -> str:
        """Value for the ``Authorization`` header."""
        return f"{self.token_type} {self.access_token}"

    def expired(self, skew_seconds: float = 0, now: datetime | None = None) -> bool:
        if self.expiry is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now + timedelta(seconds=skew_seconds) >= self.expiry

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Credential:
        """Build from a token dict.

        Accepts either an ISO ``expiry`` or an ``expiry_date`` in epoch
        milliseconds (the form OAuth client libraries persist).
        """
        if "access_token" not in data:
            raise CredentialError("token is missing 'access_token'")

        expiry: datetime | None = None
        if data.get("expiry"):
            expiry = datetime.fromisoformat(str(data["expiry"]))
            if expiry.tzinfo is None:
                expiry = expiry.replace(tzinfo=timezone.utc)
        elif data.get("expiry_date"):
            expiry = datetime.fromtimestamp(int(data["expiry_date"]) / 1000, tz=timezone.utc)

        return cls(
            access_token=data["access_token"],
            token_type=data.get("token_type") or "Bearer",
            expiry=expiry,
            refresh_token=data.get("refresh_token"),
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
        }
        if self.expiry is not None:
            d["expiry"] = self.expiry.isoformat()
        if self.refresh_token is not None:
            d["refresh_token"] = self.refresh_token
        return d


class CredentialProvider:
    """Hands out a valid credential, refreshing it single-flight.

    Usage::

        provider = CredentialProvider(credential, refresher=my_refresh)
        provider.add_listener(save_credential)
        cred = await provider.check_token()
        headers = {"Authorization": cred.authorization}

    Args:
        credential: The current credential.
        refresher: Async callable producing a new credential from the old
            one.  Without it an expired credential raises
            :class:`CredentialExpiredError`.
        skew_seconds: Treat the token as expired this many seconds early.
    """

    def __init__(
        self,
        credential: Credential,
        refresher: Refresher | None = None,
        skew_seconds: float = 60,
    ) -> None:
        self._credential = credential
        self._refresher = refresher
        self._skew_seconds = skew_seconds
        self._lock = asyncio.Lock()
        self._listeners: list[CredentialListener] = []
        self.refresh_count = 0

    @property
    def credential(self) -> Credential:
        return self._credential

    def add_listener(self, listener: CredentialListener) -> None:
        """Register *listener* to be called with every refreshed credential."""
        self._listeners.append(listener)

    async def check_token(self) -> Credential:
        """Return a credential that is valid now, refreshing if needed."""
        current = self._credential
        if not current.expired(self._skew_seconds):
            return current

        async with self._lock:
            # Another waiter may have refreshed while we queued on the lock.
            if self._credential is not current and not self._credential.expired(
                self._skew_seconds
            ):
                return self._credential
            return await self._refresh(self._credential)

    async def _refresh(self, stale: Credential) -> Credential:
        if self._refresher is None:
            raise CredentialExpiredError(
                "Access token expired and no refresher is configured.\n"
                "Store a new token with: drivelib config set-token TOKEN"
            )

        logger.info("Refreshing access token")
        try:
            fresh = await self._refresher(stale)
        except CredentialError:
            raise
        except Exception as exc:
            raise CredentialError(f"token refresh failed: {exc}") from exc

        self._credential = fresh
        self.refresh_count += 1
        for listener in self._listeners:
            listener(fresh)
        return fresh
