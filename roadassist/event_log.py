"""
Append-only webhook event log, SQLite-backed via aiosqlite.
Records are kept in receipt order with a server-assigned, strictly
increasing ``received_at``; the poll route filters on it.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

import aiosqlite
import structlog

from roadassist.models import WebhookEvent, format_ts, parse_ts, utcnow

log = structlog.get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS webhook_events (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    call_id      TEXT NOT NULL,
    event_type   TEXT DEFAULT '',
    payload      TEXT NOT NULL,
    received_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_webhook_events_received ON webhook_events(received_at);
CREATE INDEX IF NOT EXISTS idx_webhook_events_call ON webhook_events(call_id);
"""

class EventLog:
    """Single-writer append-only log of received webhooks."""

    def __init__(self, db_path: Path):
        self._path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._last_received_at: Optional[datetime] = None

    async def connect(self) -> None:
        if self._db is not None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._path))
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)
        await self._db.commit()
        self._last_received_at = await self.latest_received_at()
        log.info("event_log_opened", path=str(self._path), latest=str(self._last_received_at))

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    # ── Writes ──────────────────────────────────────────────────

    async def append(
        self, call_id: str, event_type: str, payload: dict[str, Any]
    ) -> WebhookEvent:
        """Append one record and return it with its sequence id and receive time."""
        async with self._lock:
            received_at = utcnow()
            if self._last_received_at and received_at <= self._last_received_at:
                received_at = self._last_received_at + timedelta(microseconds=1)

            cursor = await self._db.execute(
                """
                INSERT INTO webhook_events (call_id, event_type, payload, received_at)
                VALUES (?, ?, ?, ?)
                """,
                (call_id, event_type, json.dumps(payload), format_ts(received_at)),
            )
            await self._db.commit()
            self._last_received_at = received_at

        return WebhookEvent(
            id=cursor.lastrowid,
            call_id=call_id,
            event_type=event_type,
            payload=payload,
            received_at=received_at,
        )

    # ── Reads ───────────────────────────────────────────────────

    async def query_since(
        self, since: Optional[datetime] = None, call_id: Optional[str] = None
    ) -> list[WebhookEvent]:
        """Records received strictly after *since*, oldest first."""
        clauses, params = [], []
        if since is not None:
            clauses.append("received_at > ?")
            params.append(format_ts(since))
        if call_id:
            clauses.append("call_id = ?")
            params.append(call_id)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        # Appends hold the lock between timestamp assignment and commit.
        async with self._lock:
            cursor = await self._db.execute(
                f"SELECT * FROM webhook_events {where} ORDER BY id ASC", params
            )
            rows = await cursor.fetchall()
        return [self._row_to_event(r) for r in rows]

    async def latest_received_at(self) -> Optional[datetime]:
        cursor = await self._db.execute("SELECT MAX(received_at) AS latest FROM webhook_events")
        row = await cursor.fetchone()
        return parse_ts(row["latest"]) if row and row["latest"] else None

    async def count(self) -> int:
        cursor = await self._db.execute("SELECT COUNT(*) AS cnt FROM webhook_events")
        row = await cursor.fetchone()
        return row["cnt"] if row else 0

    @staticmethod
    def _row_to_event(row) -> WebhookEvent:
        return WebhookEvent(
            id=row["id"],
            call_id=row["call_id"],
            event_type=row["event_type"],
            payload=json.loads(row["payload"]),
            received_at=parse_ts(row["received_at"]),
        )
