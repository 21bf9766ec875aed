"""Incremental sync position and its persistence.

A ``SyncPosition`` records, per mailbox path, the highest UID that has been
handed to the caller. The engine reads it at the start of a cycle and
produces an updated one at the end; the caller owns persisting it between
cycles. ``SyncPositionStore`` is the SQLite persistence used by the CLI.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Sync position model
# ---------------------------------------------------------------------------


class SyncPosition(BaseModel):
    """Per-mailbox UID high-water marks plus an optional status note."""

    mailboxes: Dict[str, int] = Field(
        default_factory=dict, description="Mailbox path to highest yielded UID"
    )
    status_message: Optional[str] = Field(
        default=None, description="Human-readable note about the last cycle"
    )

    @field_validator("mailboxes")
    @classmethod
    def _non_negative(cls, value: Dict[str, int]) -> Dict[str, int]:  # type: ignore[override]
        for path, uid in value.items():
            if uid < 0:
                raise ValueError(f"UID for {path!r} must be >= 0")
        return value

    def last_uid(self, path: str) -> int:
        return self.mailboxes.get(path, 0)

    def to_wire(self) -> Dict[str, Any]:
        """Serialize into the ``{"imap": {path: {"maxUid": n}}}`` shape."""
        payload: Dict[str, Any] = {
            "imap": {path: {"maxUid": uid} for path, uid in self.mailboxes.items()}
        }
        if self.status_message:
            payload["statusMessage"] = self.status_message
        return payload

    @classmethod
    def from_wire(cls, payload: Optional[Dict[str, Any]]) -> "SyncPosition":
        if not payload:
            return cls()
        imap = payload.get("imap") or {}
        mailboxes = {
            path: int((entry or {}).get("maxUid") or 0) for path, entry in imap.items()
        }
        return cls(mailboxes=mailboxes, status_message=payload.get("statusMessage"))


# ---------------------------------------------------------------------------
# Sync position persistence
# ---------------------------------------------------------------------------


SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_positions (
    source_id TEXT PRIMARY KEY,
    position TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class SyncPositionStore:
    """SQLite-backed store of sync positions keyed by ingestion source."""

    def __init__(self, path: Union[Path, str]) -> None:
        """Initialize position store.

        Args:
            path: Path to SQLite database file, or ``":memory:"``
        """
        if str(path) != ":memory:":
            path = Path(path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(path))
        if str(path) != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)

    def close(self) -> None:
        """Close database connection."""
        self._conn.commit()
        self._conn.close()

    def upsert(self, source_id: str, position: SyncPosition) -> None:
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO sync_positions(source_id, position, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(source_id) DO UPDATE SET
                    position=excluded.position,
                    updated_at=excluded.updated_at
                """,
                (
                    source_id,
                    json.dumps(position.to_wire()),
                    datetime.now(timezone.utc).isoformat(),
                ),
            )

    def fetch(self, source_id: str) -> Optional[SyncPosition]:
        row = self._conn.execute(
            "SELECT position FROM sync_positions WHERE source_id = ?", (source_id,)
        ).fetchone()
        if not row:
            return None
        return SyncPosition.from_wire(json.loads(row[0]))

    def remove(self, source_id: str) -> None:
        with self._conn:
            self._conn.execute(
                "DELETE FROM sync_positions WHERE source_id = ?", (source_id,)
            )

    def list_sources(self) -> List[str]:
        rows = self._conn.execute(
            "SELECT source_id FROM sync_positions ORDER BY source_id"
        ).fetchall()
        return [row[0] for row in rows]


__all__ = ["SyncPosition", "SyncPositionStore"]
