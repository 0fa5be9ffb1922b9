"""Durable mutation queue for offline writes.

This module provides:
- MutationQueue: Thread-safe, SQLite-backed log of pending local writes

Every create/update/delete made by the application is appended here
before anything touches the network, so the application keeps working
while the backend is unreachable. The sync orchestrator drains the queue
by requesting state transitions; the queue is the only writer of record
state.

Ordering:
    Records of the same entity (entity_type, entity_id) are handed out in
    enqueue order: peek_batch only returns the oldest remaining record of
    each entity. Records of different entities are independent, so a
    dead-lettered record holds back its own entity only.

Persistence (SQLite):
    Each operation commits immediately (autocommit, WAL mode), so records
    survive a crash or restart. Records left in_flight by a process that
    died mid-push are reset to pending when the queue is reopened; the
    backend must therefore tolerate a record being pushed twice.

Provisional ids:
    A record created offline carries a local entity id. When the server
    accepts the create and assigns a canonical id, resolve_remote_id
    stores the mapping and patches it onto every later record of the
    same entity, so those records are serialized with the canonical id.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

from possync.client.sync.retry import RetryPolicy
from possync.client.sync.types import (
    MutationOperation,
    MutationRecord,
    MutationStatus,
    QueueListener,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

logger = logging.getLogger(__name__)

_PENDING = MutationStatus.PENDING.value
_IN_FLIGHT = MutationStatus.IN_FLIGHT.value
_FAILED = MutationStatus.FAILED.value

# A record is the head of its entity chain when no older record of the
# same entity is still queued (synced records are deleted, so any older
# row counts, including dead letters).
_IS_CHAIN_HEAD = """
    NOT EXISTS (
        SELECT 1 FROM mutations older
        WHERE older.entity_type = m.entity_type
          AND older.entity_id = m.entity_id
          AND older.id < m.id
    )
"""


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


class MutationQueue:
    """Durable FIFO-per-entity queue of local mutations.

    Attributes:
        policy: Retry policy used by mark_failed.
        path: SQLite file (None = in-memory, lost on close).
    """

    def __init__(
        self,
        path: Path | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        """Open (or create) the queue.

        Args:
            path: SQLite database file; None keeps the queue in memory.
            policy: Retry policy for failed records (default RetryPolicy()).
        """
        self.path = Path(path) if path is not None else None
        self.policy = policy or RetryPolicy()
        self._lock = threading.RLock()
        self._listeners: list[QueueListener] = []
        self._closed = False

        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(
            str(self.path) if self.path is not None else ":memory:",
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode
        )
        self._db.row_factory = sqlite3.Row
        if self.path is not None:
            self._db.execute("PRAGMA journal_mode=WAL")
        self._create_tables()
        self._recover_in_flight()

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._db.executescript("""
            CREATE TABLE IF NOT EXISTS mutations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                operation TEXT NOT NULL,
                payload TEXT NOT NULL,
                status TEXT NOT NULL,
                attempt_count INTEGER NOT NULL DEFAULT 0,
                next_attempt_at REAL NOT NULL DEFAULT 0,
                last_error TEXT,
                created_at REAL NOT NULL,
                remote_id TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_mutations_entity
                ON mutations (entity_type, entity_id, id);

            CREATE INDEX IF NOT EXISTS idx_mutations_status
                ON mutations (status, next_attempt_at);

            -- Local id -> canonical server id
            CREATE TABLE IF NOT EXISTS id_map (
                entity_type TEXT NOT NULL,
                local_id TEXT NOT NULL,
                remote_id TEXT NOT NULL,
                PRIMARY KEY (entity_type, local_id)
            );
        """)
        logger.debug("Initialized mutation queue at %s", self.path or ":memory:")

    def _recover_in_flight(self) -> None:
        """Reset records a previous process left in flight."""
        cursor = self._db.execute(
            "UPDATE mutations SET status = ? WHERE status = ?",
            (_PENDING, _IN_FLIGHT),
        )
        if cursor.rowcount:
            logger.info("Recovered %d in-flight mutations as pending", cursor.rowcount)
        pending = self.size()
        if pending:
            logger.info("Loaded %d pending mutations from %s", pending, self.path)

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("Queue is closed")

    # === Listeners ===

    def add_listener(self, callback: QueueListener) -> None:
        """Register a callback invoked after each write to the queue."""
        self._listeners.append(callback)

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback()
            except Exception:
                logger.exception("Queue listener failed")

    # === Writes ===

    def enqueue(
        self,
        operation: MutationOperation | str,
        entity_type: str,
        entity_id: str | int,
        payload: dict[str, Any] | None = None,
    ) -> int:
        """Append a mutation.

        Only writes to local storage, never to the network, so it is safe
        to call from UI code paths while offline.

        Args:
            operation: create, update or delete.
            entity_type: Kind of entity ("sale", "product", ...).
            entity_id: Local id of the entity.
            payload: Field diff or full snapshot (JSON-serializable).

        Returns:
            The new record id.

        Raises:
            ValueError: If operation is not a known mutation operation.
            RuntimeError: If queue is closed.
        """
        op = MutationOperation(operation)
        raw_payload = json.dumps(payload or {}, sort_keys=True)
        now = time.time()

        with self._lock:
            self._check_open()
            # Records keep the id the entity was first queued under, so a
            # caller switching to the canonical id stays on the same chain.
            chain_id = self.local_id_for(entity_type, str(entity_id))
            if chain_id is not None:
                remote_id: str | None = str(entity_id)
            else:
                chain_id = str(entity_id)
                remote_id = self.remote_id_for(entity_type, chain_id)
            cursor = self._db.execute(
                """
                INSERT INTO mutations (
                    entity_type, entity_id, operation, payload, status,
                    attempt_count, next_attempt_at, created_at, remote_id
                ) VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?)
                """,
                (entity_type, chain_id, op.value, raw_payload, _PENDING, now, now, remote_id),
            )
            record_id = int(cursor.lastrowid or 0)
            logger.debug(
                "Queued mutation #%d: %s %s:%s", record_id, op.value, entity_type, entity_id
            )

        self._notify()
        return record_id

    def mark_in_flight(self, ids: Iterable[int]) -> int:
        """Mark pending records as being pushed.

        Returns:
            Number of records transitioned.
        """
        id_list = list(ids)
        if not id_list:
            return 0
        with self._lock:
            self._check_open()
            cursor = self._db.execute(
                f"UPDATE mutations SET status = ? "
                f"WHERE status = ? AND id IN ({_placeholders(len(id_list))})",
                (_IN_FLIGHT, _PENDING, *id_list),
            )
            return cursor.rowcount

    def mark_synced(self, ids: Iterable[int]) -> int:
        """Mark records as accepted by the backend and prune them.

        Returns:
            Number of records removed.
        """
        id_list = list(ids)
        if not id_list:
            return 0
        with self._lock:
            self._check_open()
            cursor = self._db.execute(
                f"DELETE FROM mutations WHERE status != ? "
                f"AND id IN ({_placeholders(len(id_list))})",
                (_FAILED, *id_list),
            )
            removed = cursor.rowcount
        self._notify()
        return removed

    def mark_failed(
        self,
        record_id: int,
        error: str,
        *,
        permanent: bool = False,
        now: float | None = None,
    ) -> MutationRecord | None:
        """Record a failed push attempt.

        The record is rescheduled with the retry policy's backoff, unless
        the failure is permanent or the attempt ceiling is reached, in
        which case it is dead-lettered.

        Args:
            record_id: The failed record.
            error: Error message to retain on the record.
            permanent: Dead-letter without further retries.
            now: Current time (default time.time()).

        Returns:
            The updated record, or None if it no longer exists.
        """
        now = time.time() if now is None else now
        with self._lock:
            self._check_open()
            record = self.get(record_id)
            if record is None or record.is_dead:
                return record

            attempts = record.attempt_count + 1
            if permanent or self.policy.is_exhausted(attempts):
                self._db.execute(
                    "UPDATE mutations SET status = ?, attempt_count = ?, last_error = ? "
                    "WHERE id = ?",
                    (_FAILED, attempts, error, record_id),
                )
                logger.warning(
                    "Dead-lettered mutation #%d (%s %s:%s) after %d attempt(s): %s",
                    record_id,
                    record.operation.value,
                    record.entity_type,
                    record.entity_id,
                    attempts,
                    error,
                )
            else:
                delay = self.policy.next_delay(attempts)
                self._db.execute(
                    "UPDATE mutations SET status = ?, attempt_count = ?, "
                    "next_attempt_at = ?, last_error = ? WHERE id = ?",
                    (_PENDING, attempts, now + delay, error, record_id),
                )
                logger.info(
                    "Mutation #%d failed (attempt %d/%d), retrying in %.1fs: %s",
                    record_id,
                    attempts,
                    self.policy.max_attempts,
                    delay,
                    error,
                )
            updated = self.get(record_id)

        self._notify()
        return updated

    def release(self, ids: Iterable[int], delay: float = 0.0) -> int:
        """Return in-flight records to pending without consuming an attempt.

        Used when a pass is abandoned before the backend answered.

        Args:
            ids: Records to release.
            delay: Seconds before the records are due again.

        Returns:
            Number of records released.
        """
        id_list = list(ids)
        if not id_list:
            return 0
        with self._lock:
            self._check_open()
            cursor = self._db.execute(
                f"UPDATE mutations SET status = ?, next_attempt_at = ? "
                f"WHERE status = ? AND id IN ({_placeholders(len(id_list))})",
                (_PENDING, time.time() + delay, _IN_FLIGHT, *id_list),
            )
            return cursor.rowcount

    def resolve_remote_id(self, entity_type: str, local_id: str, remote_id: str) -> int:
        """Record a canonical id and patch it onto queued records.

        Args:
            entity_type: Kind of entity.
            local_id: Provisional id used when the records were queued.
            remote_id: Canonical id assigned by the server.

        Returns:
            Number of queued records patched.
        """
        with self._lock:
            self._check_open()
            self._db.execute(
                "INSERT OR REPLACE INTO id_map (entity_type, local_id, remote_id) "
                "VALUES (?, ?, ?)",
                (entity_type, local_id, remote_id),
            )
            cursor = self._db.execute(
                "UPDATE mutations SET remote_id = ? WHERE entity_type = ? AND entity_id = ?",
                (remote_id, entity_type, local_id),
            )
            if cursor.rowcount:
                logger.debug(
                    "Patched %s:%s -> %s onto %d queued mutation(s)",
                    entity_type,
                    local_id,
                    remote_id,
                    cursor.rowcount,
                )
            return cursor.rowcount

    # === Dead letters ===

    def requeue(self, record_id: int) -> bool:
        """Give a dead-lettered record a fresh attempt budget.

        Returns:
            True if the record was dead-lettered and is now pending.
        """
        with self._lock:
            self._check_open()
            cursor = self._db.execute(
                "UPDATE mutations SET status = ?, attempt_count = 0, next_attempt_at = 0 "
                "WHERE id = ? AND status = ?",
                (_PENDING, record_id, _FAILED),
            )
            requeued = cursor.rowcount > 0
        if requeued:
            logger.info("Requeued dead-lettered mutation #%d", record_id)
            self._notify()
        return requeued

    def discard(self, record_id: int) -> bool:
        """Delete a dead-lettered record, unblocking its entity.

        Returns:
            True if a dead-lettered record was removed.
        """
        with self._lock:
            self._check_open()
            cursor = self._db.execute(
                "DELETE FROM mutations WHERE id = ? AND status = ?",
                (record_id, _FAILED),
            )
            discarded = cursor.rowcount > 0
        if discarded:
            logger.info("Discarded dead-lettered mutation #%d", record_id)
            self._notify()
        return discarded

    def dead_letters(self) -> list[MutationRecord]:
        """List dead-lettered records, oldest first."""
        with self._lock:
            self._check_open()
            rows = self._db.execute(
                "SELECT * FROM mutations WHERE status = ? ORDER BY id", (_FAILED,)
            ).fetchall()
        return [MutationRecord.from_row(row) for row in rows]

    def dead_letter_count(self) -> int:
        """Number of dead-lettered records."""
        with self._lock:
            self._check_open()
            row = self._db.execute(
                "SELECT COUNT(*) FROM mutations WHERE status = ?", (_FAILED,)
            ).fetchone()
        return int(row[0])

    # === Reads ===

    def peek_batch(self, n: int, now: float | None = None) -> list[MutationRecord]:
        """Get up to n due records, oldest first, without removing them.

        Only pending records that are the oldest queued record of their
        entity are returned, so at most one record per entity.

        Args:
            n: Maximum number of records.
            now: Current time (default time.time()).

        Returns:
            Records ordered by queue id.
        """
        now = time.time() if now is None else now
        with self._lock:
            self._check_open()
            rows = self._db.execute(
                f"""
                SELECT * FROM mutations m
                WHERE m.status = ? AND m.next_attempt_at <= ? AND {_IS_CHAIN_HEAD}
                ORDER BY m.id
                LIMIT ?
                """,
                (_PENDING, now, n),
            ).fetchall()
        return [MutationRecord.from_row(row) for row in rows]

    def has_due(self, now: float | None = None) -> bool:
        """Check if any record can be pushed right now."""
        return bool(self.peek_batch(1, now=now))

    def next_due_at(self) -> float | None:
        """Earliest next_attempt_at among records that could be pushed.

        Records held behind an older record of their entity are ignored.

        Returns:
            Epoch seconds, or None if nothing is waiting.
        """
        with self._lock:
            self._check_open()
            row = self._db.execute(
                f"""
                SELECT MIN(m.next_attempt_at) FROM mutations m
                WHERE m.status = ? AND {_IS_CHAIN_HEAD}
                """,
                (_PENDING,),
            ).fetchone()
        return row[0]

    def get(self, record_id: int) -> MutationRecord | None:
        """Get a record by id."""
        with self._lock:
            self._check_open()
            row = self._db.execute(
                "SELECT * FROM mutations WHERE id = ?", (record_id,)
            ).fetchone()
        return MutationRecord.from_row(row) if row else None

    def remote_id_for(self, entity_type: str, local_id: str) -> str | None:
        """Look up the canonical id assigned to a local id."""
        with self._lock:
            self._check_open()
            row = self._db.execute(
                "SELECT remote_id FROM id_map WHERE entity_type = ? AND local_id = ?",
                (entity_type, local_id),
            ).fetchone()
        return row["remote_id"] if row else None

    def local_id_for(self, entity_type: str, remote_id: str) -> str | None:
        """Look up the local id a canonical id was assigned to."""
        with self._lock:
            self._check_open()
            row = self._db.execute(
                "SELECT local_id FROM id_map WHERE entity_type = ? AND remote_id = ?",
                (entity_type, remote_id),
            ).fetchone()
        return row["local_id"] if row else None

    def has_pending_for(self, entity_type: str, entity_id: str) -> bool:
        """Check if an unsynced local mutation exists for an entity.

        Matches either the local id or the canonical id. Dead-lettered
        records do not count.
        """
        with self._lock:
            self._check_open()
            row = self._db.execute(
                """
                SELECT 1 FROM mutations
                WHERE entity_type = ? AND (entity_id = ? OR remote_id = ?)
                  AND status IN (?, ?)
                LIMIT 1
                """,
                (entity_type, entity_id, entity_id, _PENDING, _IN_FLIGHT),
            ).fetchone()
        return row is not None

    def size(self) -> int:
        """Number of records still to be synced (dead letters excluded)."""
        with self._lock:
            self._check_open()
            row = self._db.execute(
                "SELECT COUNT(*) FROM mutations WHERE status IN (?, ?)",
                (_PENDING, _IN_FLIGHT),
            ).fetchone()
        return int(row[0])

    def stats(self) -> dict[str, int]:
        """Get queue statistics.

        Returns:
            Dictionary with record counts by status.
        """
        stats = {status.value: 0 for status in MutationStatus if status != MutationStatus.SYNCED}
        with self._lock:
            self._check_open()
            rows = self._db.execute(
                "SELECT status, COUNT(*) AS n FROM mutations GROUP BY status"
            ).fetchall()
        for row in rows:
            stats[row["status"]] = row["n"]
        stats["total"] = sum(stats.values())
        return stats

    def close(self) -> None:
        """Close the queue database."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._db.close()
            logger.debug("Mutation queue closed")

    @property
    def is_closed(self) -> bool:
        """Check if queue is closed."""
        return self._closed

    def __len__(self) -> int:
        """Get number of records still to be synced."""
        return self.size()

    def __iter__(self) -> Iterator[MutationRecord]:
        """Iterate over all queued records in queue order."""
        with self._lock:
            self._check_open()
            rows = self._db.execute("SELECT * FROM mutations ORDER BY id").fetchall()
        return iter([MutationRecord.from_row(row) for row in rows])
