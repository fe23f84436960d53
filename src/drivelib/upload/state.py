"""Async SQLite store for open upload sessions.

A session URI is written BEFORE the first byte is sent, so a process that
dies mid-upload can resume the same session on its next run instead of
re-sending everything.  Rows are deleted on completion and ignored once the
session's validity window has passed.

Each write method commits immediately -- no transactions are held across
``await`` boundaries.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

import aiosqlite

from drivelib.models import UploadRequest, UploadSession

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS upload_sessions (
    fingerprint TEXT PRIMARY KEY,
    endpoint_uri TEXT NOT NULL,
    name TEXT NOT NULL,
    mime_type TEXT NOT NULL,
    total_length INTEGER NOT NULL,
    parent_id TEXT,
    existing_resource_id TEXT,
    created_at TEXT NOT NULL
);
"""


@dataclass(frozen=True, slots=True)
class Fingerprint:
    """Identity of a local file's content for resume purposes."""

    path: str
    size: int
    mtime_ns: int

    @classmethod
    def of(cls, path: str | os.PathLike[str]) -> Fingerprint:
        resolved = Path(path).resolve()
        st = resolved.stat()
        return cls(path=str(resolved), size=st.st_size, mtime_ns=st.st_mtime_ns)

    @property
    def key(self) -> str:
        return f"{self.path}|{self.size}|{self.mtime_ns}"


class SessionStore:
    """Async SQLite persistence of upload sessions keyed by file fingerprint.

    Usage::

        async with SessionStore("data/sessions.db") as store:
            session = await store.load(fp, ttl_seconds=config.session_ttl_seconds)
            await store.save(fp, new_session)
            await store.delete(fp)
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the connection (WAL mode) and ensure the schema exists."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA synchronous=NORMAL")
        await self._db.executescript(SCHEMA_SQL)
        await self._db.commit()

    async def close(self) -> None:
        """Close the connection if open."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> SessionStore:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _ensure_connected(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Not connected -- use 'async with' or call connect()")
        return self._db

    @staticmethod
    def _row_to_session(row: aiosqlite.Row) -> UploadSession:
        request = UploadRequest(
            name=row["name"],
            mime_type=row["mime_type"],
            total_length=row["total_length"],
            parent_id=row["parent_id"],
            existing_resource_id=row["existing_resource_id"],
        )
        return UploadSession(
            endpoint_uri=row["endpoint_uri"],
            request=request,
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    @staticmethod
    def _iso(when: datetime) -> str:
        # Fixed width so SQL string comparison orders timestamps correctly.
        return when.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")

    @classmethod
    def _cutoff(cls, ttl_seconds: float) -> str:
        return cls._iso(datetime.now(timezone.utc) - timedelta(seconds=ttl_seconds))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def load(self, fingerprint: Fingerprint, ttl_seconds: float) -> UploadSession | None:
        """Return the stored session for *fingerprint*, or ``None``.

        An expired row is deleted and reported as absent.
        """
        db = self._ensure_connected()
        cursor = await db.execute(
            "SELECT * FROM upload_sessions WHERE fingerprint = ?",
            (fingerprint.key,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None

        session = self._row_to_session(row)
        if session.is_expired(ttl_seconds):
            logger.info("Discarding expired session for %s", fingerprint.path)
            await self.delete(fingerprint)
            return None
        return session

    async def list_sessions(self) -> list[dict]:
        """Return all stored sessions, oldest first."""
        db = self._ensure_connected()
        cursor = await db.execute(
            """SELECT fingerprint, endpoint_uri, name, total_length, created_at
               FROM upload_sessions
               ORDER BY created_at"""
        )
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # Writes (each commits immediately)
    # ------------------------------------------------------------------

    async def save(self, fingerprint: Fingerprint, session: UploadSession) -> None:
        """Record *session* for *fingerprint*, replacing any previous one."""
        db = self._ensure_connected()
        request = session.request
        await db.execute(
            """INSERT OR REPLACE INTO upload_sessions
                   (fingerprint, endpoint_uri, name, mime_type, total_length,
                    parent_id, existing_resource_id, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                fingerprint.key,
                session.endpoint_uri,
                request.name,
                request.mime_type,
                request.total_length,
                request.parent_id,
                request.existing_resource_id,
                self._iso(session.created_at),
            ),
        )
        await db.commit()
        logger.debug("Saved upload session for %s", fingerprint.path)

    async def delete(self, fingerprint: Fingerprint) -> None:
        db = self._ensure_connected()
        await db.execute(
            "DELETE FROM upload_sessions WHERE fingerprint = ?",
            (fingerprint.key,),
        )
        await db.commit()
        logger.debug("Deleted upload session for %s", fingerprint.path)

    async def purge_expired(self, ttl_seconds: float) -> int:
        """Delete sessions older than *ttl_seconds*; return how many were removed."""
        db = self._ensure_connected()
        cursor = await db.execute(
            "DELETE FROM upload_sessions WHERE created_at <= ?",
            (self._cutoff(ttl_seconds),),
        )
        await db.commit()
        removed = cursor.rowcount
        logger.info("Purged %d expired upload sessions", removed)
        return removed
