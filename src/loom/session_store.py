"""Session Store — maps Linear agent session IDs to v0 chat state.

Two implementations share one async interface:

- ``InMemorySessionStore`` for tests and throwaway runs
- ``SQLiteSessionStore`` for durable, crash-tolerant storage on local disk

``insert_if_absent`` is the only way the router creates sessions, so two
concurrent ``created`` deliveries for the same id cannot both win.
"""

from __future__ import annotations

import abc
import json
import logging
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from loom.models import SessionRecord

logger = logging.getLogger(__name__)

# Fields that callers may not change through update()
_IMMUTABLE_FIELDS = {"tracker_session_id", "created_at"}


class SessionStore(abc.ABC):
    """Async CRUD interface keyed by tracker session ID."""

    async def initialize(self) -> None:
        """Prepare the backing storage. No-op by default."""

    async def close(self) -> None:
        """Release the backing storage. No-op by default."""

    @abc.abstractmethod
    async def get(self, session_id: str) -> SessionRecord | None:
        """Return the session, or None when it does not exist."""

    @abc.abstractmethod
    async def put(self, record: SessionRecord) -> None:
        """Create or fully replace a session."""

    @abc.abstractmethod
    async def insert_if_absent(self, record: SessionRecord) -> bool:
        """Atomically create a session. Returns False if the id already exists."""

    @abc.abstractmethod
    async def update(self, session_id: str, **fields: Any) -> SessionRecord | None:
        """Merge fields into a session and refresh ``updated_at``.

        Returns the updated record, or None (without error) if the id is absent.
        """

    @abc.abstractmethod
    async def delete(self, session_id: str) -> None:
        """Remove a session. Deleting an absent id is a no-op."""

    @abc.abstractmethod
    async def list_all(self) -> list[SessionRecord]:
        """All sessions, oldest first. Diagnostics only."""

    @abc.abstractmethod
    async def mark_delivery_seen(self, delivery_id: str) -> bool:
        """Record a webhook delivery. Returns False if it was already recorded."""


def _merge(record: SessionRecord, fields: dict[str, Any]) -> SessionRecord:
    bad = set(fields) & _IMMUTABLE_FIELDS
    if bad:
        raise ValueError(f"Cannot update immutable session fields: {sorted(bad)}")
    if record.generation_chat_id and fields.get("generation_chat_id") not in (
        None,
        record.generation_chat_id,
    ):
        raise ValueError(
            f"generation_chat_id already set for session {record.tracker_session_id}"
        )
    merged = record.model_dump()
    merged.update(fields)
    merged["updated_at"] = datetime.now(timezone.utc)
    return SessionRecord.model_validate(merged)


# ── In-memory ────────────────────────────────────────────────────────────────


class InMemorySessionStore(SessionStore):
    """Dict-backed store. State is lost when the process exits."""

    def __init__(self) -> None:
        self._sessions: dict[str, SessionRecord] = {}
        self._deliveries: set[str] = set()

    async def get(self, session_id: str) -> SessionRecord | None:
        record = self._sessions.get(session_id)
        return record.model_copy(deep=True) if record else None

    async def put(self, record: SessionRecord) -> None:
        self._sessions[record.tracker_session_id] = record.model_copy(deep=True)
        logger.info("Session stored: %s", record.tracker_session_id)

    async def insert_if_absent(self, record: SessionRecord) -> bool:
        if record.tracker_session_id in self._sessions:
            return False
        self._sessions[record.tracker_session_id] = record.model_copy(deep=True)
        logger.info("Session created: %s", record.tracker_session_id)
        return True

    async def update(self, session_id: str, **fields: Any) -> SessionRecord | None:
        existing = self._sessions.get(session_id)
        if existing is None:
            logger.debug("Update for unknown session %s ignored", session_id)
            return None
        updated = _merge(existing, fields)
        self._sessions[session_id] = updated
        logger.info("Session updated: %s (%s)", session_id, ", ".join(sorted(fields)))
        return updated.model_copy(deep=True)

    async def delete(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        logger.info("Session deleted: %s", session_id)

    async def list_all(self) -> list[SessionRecord]:
        records = sorted(self._sessions.values(), key=lambda r: r.created_at)
        return [r.model_copy(deep=True) for r in records]

    async def mark_delivery_seen(self, delivery_id: str) -> bool:
        if delivery_id in self._deliveries:
            return False
        self._deliveries.add(delivery_id)
        return True


# ── SQLite ───────────────────────────────────────────────────────────────────

SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    tracker_session_id TEXT PRIMARY KEY,
    generation_chat_id TEXT,
    project_id TEXT,
    chat_url TEXT,
    deployment_url TEXT,
    source_repo_url TEXT,
    latest_version_id TEXT,
    plan TEXT NOT NULL DEFAULT '[]',
    external_links TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS seen_deliveries (
    delivery_id TEXT PRIMARY KEY,
    received_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_chat ON sessions(generation_chat_id);
"""

_COLUMNS = (
    "tracker_session_id",
    "generation_chat_id",
    "project_id",
    "chat_url",
    "deployment_url",
    "source_repo_url",
    "latest_version_id",
    "plan",
    "external_links",
    "created_at",
    "updated_at",
)


class SQLiteSessionStore(SessionStore):
    """SQLite-backed session store with async access.

    The DB is expected to live on local disk, not a network filesystem.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open database and create tables."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        logger.info("Session store initialized: %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Session store not initialized — call initialize() first")
        return self._db

    # ── CRUD ─────────────────────────────────────────────────────────────

    async def get(self, session_id: str) -> SessionRecord | None:
        cursor = await self.db.execute(
            "SELECT * FROM sessions WHERE tracker_session_id = ?", (session_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_record(row) if row else None

    async def put(self, record: SessionRecord) -> None:
        placeholders = ", ".join("?" for _ in _COLUMNS)
        await self.db.execute(
            f"INSERT OR REPLACE INTO sessions ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
            self._record_to_row(record),
        )
        await self.db.commit()
        logger.info("Session stored: %s", record.tracker_session_id)

    async def insert_if_absent(self, record: SessionRecord) -> bool:
        placeholders = ", ".join("?" for _ in _COLUMNS)
        cursor = await self.db.execute(
            f"INSERT OR IGNORE INTO sessions ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
            self._record_to_row(record),
        )
        await self.db.commit()
        created = cursor.rowcount == 1
        if created:
            logger.info("Session created: %s", record.tracker_session_id)
        return created

    async def update(self, session_id: str, **fields: Any) -> SessionRecord | None:
        existing = await self.get(session_id)
        if existing is None:
            logger.debug("Update for unknown session %s ignored", session_id)
            return None
        updated = _merge(existing, fields)
        row = self._record_to_row(updated)
        assignments = ", ".join(f"{col}=?" for col in _COLUMNS[1:])
        await self.db.execute(
            f"UPDATE sessions SET {assignments} WHERE tracker_session_id=?",
            (*row[1:], session_id),
        )
        await self.db.commit()
        logger.info("Session updated: %s (%s)", session_id, ", ".join(sorted(fields)))
        return updated

    async def delete(self, session_id: str) -> None:
        await self.db.execute("DELETE FROM sessions WHERE tracker_session_id = ?", (session_id,))
        await self.db.commit()
        logger.info("Session deleted: %s", session_id)

    async def list_all(self) -> list[SessionRecord]:
        cursor = await self.db.execute("SELECT * FROM sessions ORDER BY created_at")
        rows = await cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    # ── Webhook Deduplication ────────────────────────────────────────────

    async def mark_delivery_seen(self, delivery_id: str) -> bool:
        cursor = await self.db.execute(
            "INSERT OR IGNORE INTO seen_deliveries (delivery_id, received_at) VALUES (?, ?)",
            (delivery_id, datetime.now(timezone.utc).isoformat()),
        )
        await self.db.commit()
        return cursor.rowcount == 1

    async def prune_deliveries(self, max_age_hours: int = 72) -> int:
        """Delete delivery IDs older than ``max_age_hours``. Returns rows removed."""
        cutoff = datetime.now(timezone.utc).timestamp() - max_age_hours * 3600
        cutoff_iso = datetime.fromtimestamp(cutoff, tz=timezone.utc).isoformat()
        cursor = await self.db.execute(
            "DELETE FROM seen_deliveries WHERE received_at < ?", (cutoff_iso,)
        )
        await self.db.commit()
        return cursor.rowcount

    # ── Row Mapping ──────────────────────────────────────────────────────

    @staticmethod
    def _record_to_row(record: SessionRecord) -> tuple:
        data = record.model_dump(mode="json")
        return (
            record.tracker_session_id,
            record.generation_chat_id,
            record.project_id,
            record.chat_url,
            record.deployment_url,
            record.source_repo_url,
            record.latest_version_id,
            json.dumps(data["plan"]),
            json.dumps(data["external_links"]),
            record.created_at.isoformat(),
            record.updated_at.isoformat(),
        )

    @staticmethod
    def _row_to_record(row: aiosqlite.Row) -> SessionRecord:
        return SessionRecord(
            tracker_session_id=row["tracker_session_id"],
            generation_chat_id=row["generation_chat_id"],
            project_id=row["project_id"],
            chat_url=row["chat_url"],
            deployment_url=row["deployment_url"],
            source_repo_url=row["source_repo_url"],
            latest_version_id=row["latest_version_id"],
            plan=json.loads(row["plan"]),
            external_links=json.loads(row["external_links"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
