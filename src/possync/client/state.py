"""Local state management for the sync engine.

This module provides:
- LocalSyncState: SQLite-based local state tracking
- CachedEntity: Local copy of an entity

Architecture:
    The entity cache holds the application's local copies of entities so
    pages keep working offline. Local mutations are applied to the cache
    optimistically when they are queued; server changes pulled after a
    pass overwrite the cache (last write wins) unless a local mutation
    for the same entity is still queued.

    A key-value table keeps sync bookkeeping: the pull watermark and the
    time of the last completed pass.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class CachedEntity:
    """Local copy of an entity.

    Attributes:
        entity_type: Kind of entity.
        entity_id: Local or canonical id.
        data: Last known field values.
        updated_at: When the copy was last written.
        origin: "local" for optimistic writes, "server" for pulled state.
    """

    entity_type: str
    entity_id: str
    data: dict[str, Any]
    updated_at: float
    origin: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> CachedEntity:
        """Create CachedEntity from database row."""
        return cls(
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            data=json.loads(row["data"]),
            updated_at=row["updated_at"],
            origin=row["origin"],
        )


class LocalSyncState:
    """SQLite-based local state for the sync engine."""

    def __init__(self, db_path: Path | None = None) -> None:
        """Initialize local state database.

        Args:
            db_path: Path to SQLite database file (None = in-memory).
        """
        self._db_path = Path(db_path) if db_path is not None else None

        # Lock for thread-safe database access
        self._lock = threading.RLock()

        if self._db_path is not None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            str(self._db_path) if self._db_path is not None else ":memory:",
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode
        )
        self._conn.row_factory = sqlite3.Row

        if self._db_path is not None:
            # Enable WAL mode for better concurrency
            self._conn.execute("PRAGMA journal_mode=WAL")

        self._create_tables()

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS entities (
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                data TEXT NOT NULL,
                updated_at REAL NOT NULL,
                origin TEXT NOT NULL,
                PRIMARY KEY (entity_type, entity_id)
            );

            -- Key-value sync state
            CREATE TABLE IF NOT EXISTS sync_state (
                key TEXT PRIMARY KEY,
                value TEXT
            );
        """)

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    # === Entity cache ===

    def get_entity(self, entity_type: str, entity_id: str) -> CachedEntity | None:
        """Get the cached copy of an entity.

        Returns:
            CachedEntity if found, None otherwise.
        """
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM entities WHERE entity_type = ? AND entity_id = ?",
                (entity_type, entity_id),
            ).fetchone()
        return CachedEntity.from_row(row) if row else None

    def list_entities(self, entity_type: str) -> list[CachedEntity]:
        """List cached entities of one type."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM entities WHERE entity_type = ? ORDER BY entity_id",
                (entity_type,),
            ).fetchall()
        return [CachedEntity.from_row(row) for row in rows]

    def put_entity(
        self,
        entity_type: str,
        entity_id: str,
        data: dict[str, Any],
        origin: str = "server",
    ) -> None:
        """Store a full copy of an entity (upsert)."""
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO entities
                    (entity_type, entity_id, data, updated_at, origin)
                VALUES (?, ?, ?, ?, ?)
                """,
                (entity_type, entity_id, json.dumps(data, sort_keys=True), time.time(), origin),
            )

    def remove_entity(self, entity_type: str, entity_id: str) -> None:
        """Remove an entity from the cache."""
        with self._lock:
            self._conn.execute(
                "DELETE FROM entities WHERE entity_type = ? AND entity_id = ?",
                (entity_type, entity_id),
            )

    def apply_local(
        self,
        operation: str,
        entity_type: str,
        entity_id: str,
        payload: dict[str, Any],
    ) -> None:
        """Apply a queued local mutation to the cache optimistically.

        Updates are field diffs merged over the cached copy.
        """
        with self._lock:
            if operation == "delete":
                self.remove_entity(entity_type, entity_id)
                return
            data: dict[str, Any] = {}
            if operation == "update":
                existing = self.get_entity(entity_type, entity_id)
                if existing is not None:
                    data = existing.data
            data.update(payload)
            self.put_entity(entity_type, entity_id, data, origin="local")

    def rekey_entity(self, entity_type: str, local_id: str, remote_id: str) -> None:
        """Move a cached entity from its provisional id to its canonical id."""
        if local_id == remote_id:
            return
        with self._lock:
            existing = self.get_entity(entity_type, local_id)
            if existing is None:
                return
            self.put_entity(entity_type, remote_id, existing.data, origin=existing.origin)
            self.remove_entity(entity_type, local_id)

    # === Sync state ===

    def get_state(self, key: str) -> str | None:
        """Get a sync state value."""
        with self._lock:
            cursor = self._conn.execute(
                "SELECT value FROM sync_state WHERE key = ?",
                (key,),
            )
            row = cursor.fetchone()
        return row["value"] if row else None

    def set_state(self, key: str, value: str) -> None:
        """Set a sync state value."""
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO sync_state (key, value) VALUES (?, ?)",
                (key, value),
            )

    def get_watermark(self) -> str | None:
        """Get the cursor of the last successful pull."""
        return self.get_state("watermark")

    def set_watermark(self, watermark: str) -> None:
        """Set the cursor of the last successful pull."""
        self.set_state("watermark", watermark)

    def get_last_sync_at(self) -> float | None:
        """Get timestamp of last completed sync pass."""
        value = self.get_state("last_sync_at")
        return float(value) if value else None

    def set_last_sync_at(self, timestamp: float) -> None:
        """Set timestamp of last completed sync pass."""
        self.set_state("last_sync_at", str(timestamp))
