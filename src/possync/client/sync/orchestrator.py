"""Sync orchestrator driving offline-to-online reconciliation.

This module provides:
- SyncOrchestrator: State machine that runs sync passes on a worker thread
- BackendProtocol: Push/pull interface the orchestrator talks to

The orchestrator is the "brain" of the engine:
1. Wakes on connectivity, queue writes, manual triggers or a timer
2. Drains the MutationQueue through the batch-push endpoint
3. Pulls server-side changes newer than the watermark
4. Publishes the resulting state through the StatusPublisher

State machine:
    | From                  | Event                              | To      |
    |-----------------------|------------------------------------|---------|
    | Idle/Synced/Offline   | online, queue non-empty, trigger   | Syncing |
    | Synced/Error          | queue non-empty                    | Syncing |
    | Syncing               | drained, nothing dead-lettered     | Synced  |
    | Syncing               | drained, dead letters remain       | Error   |
    | Syncing               | connectivity lost                  | Offline |
    | Syncing               | credentials refused                | Error   |
    | Idle/Synced/Error     | probe reports offline              | Offline |

Idle is the initial state and the only one reachable before the first
connectivity probe completes. At most one pass runs at a time; a trigger
while a pass runs is a no-op, and triggers that arrive before the worker
wakes coalesce into a single pass.

Push order:
    Each request carries at most one record per entity (the head of its
    chain), so the records of one entity reach the backend in enqueue
    order. A canonical id returned for a create is patched onto the
    entity's later records before they are serialized.

Merge rule (pull):
    Server state overwrites the local entity cache (last write wins),
    except for entities with a local mutation still queued. Those are
    skipped and counted as conflicts so the local edit is pushed after
    the pull instead of being silently dropped.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Any, Protocol

from possync.client.api import AuthenticationError
from possync.client.sync.retry import ErrorKind, classify_error, classify_status
from possync.client.sync.types import (
    ConnectivityState,
    CorruptRecordError,
    MutationOperation,
    MutationRecord,
    SessionCallback,
    SyncSession,
)
from possync.core.types import SyncState

if TYPE_CHECKING:
    from possync.client.api import ChangesResult, PushResult, ServerChange
    from possync.client.state import LocalSyncState
    from possync.client.status import StatusPublisher
    from possync.client.sync.connectivity import ConnectivityMonitor
    from possync.client.sync.queue import MutationQueue

logger = logging.getLogger(__name__)

# Terminal reasons recorded on SyncSession
REASON_DRAINED = "drained"
REASON_OFFLINE = "offline"
REASON_AUTH_FAILED = "auth_failed"
REASON_STOPPED = "stopped"
REASON_ERROR = "error"


class BackendProtocol(Protocol):
    """Backend endpoints used by a sync pass."""

    def push_batch(self, operations: list[dict[str, Any]]) -> list[PushResult]:
        """Push serialized mutations and return per-record outcomes."""
        ...

    def get_changes(self, since: str | None, limit: int = 500) -> ChangesResult:
        """Return server changes newer than a watermark."""
        ...


class SyncOrchestrator:
    """Central state machine for sync passes.

    The orchestrator runs in its own thread, sleeping until something
    wakes it, then running one pass at a time.

    Usage:
        orchestrator = SyncOrchestrator(client, queue, state, monitor, publisher)
        orchestrator.start()
        monitor.start()

        # ... mutations are queued, passes run automatically ...

        orchestrator.stop()
    """

    def __init__(
        self,
        client: BackendProtocol,
        queue: MutationQueue,
        state: LocalSyncState,
        monitor: ConnectivityMonitor,
        publisher: StatusPublisher,
        batch_size: int = 50,
        sync_interval: float = 30.0,
        pull_enabled: bool = True,
        pull_page_size: int = 500,
    ) -> None:
        """Initialize the orchestrator and subscribe to its signal sources.

        Args:
            client: Backend push/pull endpoints.
            queue: Mutation queue to drain.
            state: Local state (watermark, entity cache).
            monitor: Connectivity monitor to follow.
            publisher: Status publisher to keep current.
            batch_size: Maximum records per push request.
            sync_interval: Seconds between timer-driven passes.
            pull_enabled: Pull server changes after draining.
            pull_page_size: Maximum changes per pull request.
        """
        self._client = client
        self._queue = queue
        self._state = state
        self._monitor = monitor
        self._publisher = publisher
        self._batch_size = batch_size
        self._sync_interval = sync_interval
        self._pull_enabled = pull_enabled
        self._pull_page_size = pull_page_size

        # State
        self._sync_state = SyncState.IDLE
        self._last_error: str | None = None

        # Pass exclusion and wake-up signals
        self._pass_lock = threading.Lock()
        self._request_lock = threading.Lock()
        self._pass_scheduled = False
        self._wake = threading.Event()
        self._interrupt = threading.Event()
        # Set on queue writes and triggers so a pass waiting on retries re-peeks
        self._retry_wake = threading.Event()
        self._stop_event = threading.Event()

        # Processing thread
        self._thread: threading.Thread | None = None

        # Instrumentation
        self._sessions_started = 0
        self._last_session: SyncSession | None = None
        self._session_listeners: list[SessionCallback] = []

        monitor.add_listener(self._on_connectivity)
        queue.add_listener(self._on_queue_changed)
        publisher.bind_trigger(self.request_sync)

    @property
    def state(self) -> SyncState:
        """Get current sync state."""
        return self._sync_state

    @property
    def is_syncing(self) -> bool:
        """Check if a pass is running."""
        return self._pass_lock.locked()

    @property
    def sessions_started(self) -> int:
        """Number of passes started since construction."""
        return self._sessions_started

    @property
    def last_session(self) -> SyncSession | None:
        """The most recently finished pass."""
        return self._last_session

    def add_session_listener(self, callback: SessionCallback) -> None:
        """Register a callback invoked with each finished SyncSession."""
        self._session_listeners.append(callback)

    # === Lifecycle ===

    def start(self) -> None:
        """Start the orchestrator worker thread."""
        if self._thread and self._thread.is_alive():
            logger.warning("Orchestrator already running")
            return

        self._stop_event.clear()
        self.refresh_counts()
        self._thread = threading.Thread(
            target=self._run,
            name="SyncOrchestrator",
            daemon=True,
        )
        self._thread.start()
        logger.info("Orchestrator started")

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the worker, abandoning any pass at the next record boundary.

        Args:
            timeout: Maximum time to wait for thread to stop
        """
        self._stop_event.set()
        self._interrupt.set()
        self._retry_wake.set()
        self._wake.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._thread = None
        self._set_state(SyncState.IDLE)
        logger.info("Orchestrator stopped")

    def _run(self) -> None:
        """Main processing loop."""
        logger.debug("Orchestrator processing loop started")

        while not self._stop_event.is_set():
            # Timer wake-ups keep pulling server changes while online
            self._wake.wait(timeout=self._sync_interval)
            if self._stop_event.is_set():
                break
            self._wake.clear()

            try:
                self.step()
            except Exception:
                logger.exception("Error running sync step")

        logger.debug("Orchestrator processing loop ended")

    # === Signals ===

    def request_sync(self) -> None:
        """Ask the worker for a pass without waiting for it.

        A no-op when a pass is already scheduled. While a pass is running
        it only wakes the pass to recheck due records.
        """
        with self._request_lock:
            if self._pass_lock.locked():
                self._retry_wake.set()
                logger.debug("Sync already running, rechecking due records")
                return
            if self._pass_scheduled:
                logger.debug("Sync already scheduled, ignoring trigger")
                return
            self._pass_scheduled = True
        self._wake.set()

    def _on_connectivity(self, conn: ConnectivityState) -> None:
        """Handle a connectivity signal (runs on the monitor thread)."""
        self._publisher.update(is_online=conn.is_online)
        if conn.is_online:
            self.request_sync()
        else:
            self._interrupt.set()
            self._retry_wake.set()
            self._wake.set()

    def _on_queue_changed(self) -> None:
        """Handle a queue write (runs on the writer's thread)."""
        pending = self.refresh_counts()
        if self._pass_lock.locked():
            self._retry_wake.set()
        elif pending:
            self.request_sync()

    def refresh_counts(self) -> int:
        """Publish the queue's pending and dead-letter counts.

        Returns:
            The pending count.
        """
        pending = self._queue.size()
        self._publisher.update(
            pending_count=pending,
            error_count=self._queue.dead_letter_count(),
        )
        return pending

    # === State machine ===

    def _set_state(self, state: SyncState, error: str | None = None) -> None:
        self._sync_state = state
        self._publisher.update(state=state, last_sync_error=error)

    def step(self) -> SyncSession | None:
        """Advance the state machine once.

        Returns:
            The SyncSession if a pass ran, None otherwise.
        """
        conn = self._monitor.state
        if not conn.has_probed:
            return None
        if not conn.is_online:
            with self._request_lock:
                self._pass_scheduled = False
            if self._sync_state != SyncState.OFFLINE:
                self._set_state(SyncState.OFFLINE, self._last_error)
            return None
        return self.run_pass()

    def run_pass(self) -> SyncSession | None:
        """Run one sync pass in the calling thread.

        Returns:
            The finished SyncSession, or None if a pass was already
            running or no connectivity probe has completed yet.
        """
        if not self._monitor.state.has_probed:
            logger.debug("No connectivity probe yet, staying idle")
            return None

        with self._request_lock:
            if not self._pass_lock.acquire(blocking=False):
                logger.debug("Sync pass already running")
                return None
            self._pass_scheduled = False

        session = SyncSession()
        try:
            self._sessions_started += 1
            self._interrupt.clear()
            self._last_error = None
            self._set_state(SyncState.SYNCING)
            logger.info("Sync pass started (%d pending)", self._queue.size())
            session.terminal_reason = self._execute(session)
        finally:
            session.finished_at = time.time()
            self._pass_lock.release()

        self._finish(session)
        return session

    def _execute(self, session: SyncSession) -> str:
        """Drain, pull, and drain again if the pull left work behind."""
        try:
            reason = self._drain(session)
            if reason is None and self._pull_enabled:
                reason = self._pull(session)
                if reason is None and self._queue.has_due():
                    reason = self._drain(session)
        except AuthenticationError as e:
            logger.error("Backend refused credentials: %s", e)
            self._last_error = f"Authentication failed: {e}"
            return REASON_AUTH_FAILED
        except Exception as e:
            logger.exception("Sync pass failed")
            self._last_error = str(e)
            return REASON_ERROR
        return reason or REASON_DRAINED

    def _finish(self, session: SyncSession) -> None:
        """Publish the outcome of a pass."""
        reason = session.terminal_reason
        dead = self._queue.dead_letter_count()

        if reason == REASON_OFFLINE:
            self._set_state(SyncState.OFFLINE, self._last_error)
        elif reason in (REASON_AUTH_FAILED, REASON_ERROR):
            self._set_state(SyncState.ERROR, self._last_error)
        elif reason == REASON_DRAINED:
            finished_at = session.finished_at or time.time()
            self._state.set_last_sync_at(finished_at)
            self._publisher.update(last_sync_at=finished_at, records_synced=session.succeeded)
            if dead:
                self._set_state(SyncState.ERROR, self._dead_letter_summary(dead))
            else:
                self._set_state(SyncState.SYNCED)

        self.refresh_counts()
        self._last_session = session

        logger.info(
            "Sync pass finished: %s (attempted=%d, succeeded=%d, failed=%d, "
            "pulled=%d, conflicts=%d) in %.2fs",
            reason,
            session.attempted,
            session.succeeded,
            session.failed,
            session.pulled,
            session.conflicts,
            session.duration,
        )
        for callback in list(self._session_listeners):
            try:
                callback(session)
            except Exception:
                logger.exception("Session listener failed")

        # Records queued after the drain finished still need a pass
        if reason == REASON_DRAINED and self._queue.has_due():
            self.request_sync()

    def _dead_letter_summary(self, dead: int) -> str:
        letters = self._queue.dead_letters()
        latest = letters[-1].last_error if letters else None
        summary = f"{dead} mutation(s) rejected by the server"
        return f"{summary}: {latest}" if latest else summary

    # === Drain ===

    def _drain(self, session: SyncSession) -> str | None:
        """Push due records until none remain.

        Waits in place for scheduled retries so that a pass only ends
        once the queue is drained (or the pass is interrupted). New writes
        and triggers cut the wait short so other entities are not held
        back by a record that is backing off.

        Returns:
            A terminal reason if the pass must end early, None when drained.
        """
        while True:
            if self._stop_event.is_set():
                return REASON_STOPPED
            if self._interrupt.is_set() or not self._monitor.is_online:
                logger.info("Connectivity lost, abandoning sync pass")
                return REASON_OFFLINE

            self._retry_wake.clear()
            batch = self._queue.peek_batch(self._batch_size)
            if not batch:
                due = self._queue.next_due_at()
                if due is None:
                    return None
                wait = due - time.time()
                if wait > 0:
                    logger.debug("Waiting %.2fs for the next retry", wait)
                    self._retry_wake.wait(wait)
                continue

            reason = self._push(batch, session)
            if reason is not None:
                return reason

    def _serialize(self, record: MutationRecord) -> dict[str, Any]:
        """Build the wire form of a record, resolving provisional ids."""
        payload = record.payload
        remote_id = record.remote_id or self._queue.remote_id_for(
            record.entity_type, record.entity_id
        )
        return {
            "client_id": record.id,
            "entity_type": record.entity_type,
            "entity_id": remote_id or record.entity_id,
            "local_id": record.entity_id,
            "operation": record.operation.value,
            "payload": payload,
        }

    def _push(self, batch: list[MutationRecord], session: SyncSession) -> str | None:
        """Push one batch and apply the per-record outcomes.

        Returns:
            A terminal reason if the pass must end, None otherwise.
        """
        operations: list[dict[str, Any]] = []
        records: dict[int, MutationRecord] = {}
        for record in batch:
            try:
                operations.append(self._serialize(record))
            except CorruptRecordError as e:
                logger.error("Isolating corrupt mutation #%d: %s", record.id, e)
                self._queue.mark_failed(record.id, str(e), permanent=True)
                session.attempted += 1
                session.failed += 1
                continue
            records[record.id] = record

        if not records:
            return None

        ids = list(records)
        self._queue.mark_in_flight(ids)
        session.attempted += len(ids)

        try:
            results = self._client.push_batch(operations)
        except Exception as e:
            return self._handle_batch_error(e, batch=[records[i] for i in ids], session=session)

        handled: set[int] = set()
        conflict = False
        auth_error: str | None = None
        for result in results:
            record = records.get(result.client_id)
            if record is None or result.client_id in handled:
                logger.warning("Ignoring result for unknown mutation #%s", result.client_id)
                continue
            handled.add(result.client_id)

            if result.accepted:
                self._accept(record, result.remote_id, session)
                continue

            message = result.error or "Rejected by server"
            kind = classify_status(result.code)
            if kind is ErrorKind.AUTH:
                self._queue.release([record.id])
                auth_error = message
                continue
            conflict = conflict or kind is ErrorKind.CONFLICT
            self._reject(record, message, kind, session)

        for record_id in ids:
            if record_id not in handled:
                logger.warning("No result returned for mutation #%d", record_id)
                self._queue.mark_failed(record_id, "No result returned by server")
                session.failed += 1

        if auth_error is not None:
            raise AuthenticationError(auth_error, 401)
        if conflict and self._pull_enabled:
            return self._pull(session)
        return None

    def _accept(self, record: MutationRecord, remote_id: str | None, session: SyncSession) -> None:
        """Apply an accepted record: patch canonical ids forward, then prune."""
        if (
            remote_id
            and record.operation == MutationOperation.CREATE
            and remote_id != record.entity_id
        ):
            self._queue.resolve_remote_id(record.entity_type, record.entity_id, remote_id)
            self._state.rekey_entity(record.entity_type, record.entity_id, remote_id)
            logger.info(
                "%s:%s assigned canonical id %s",
                record.entity_type,
                record.entity_id,
                remote_id,
            )
        self._queue.mark_synced([record.id])
        session.succeeded += 1

    def _reject(
        self,
        record: MutationRecord,
        message: str,
        kind: ErrorKind,
        session: SyncSession,
    ) -> None:
        """Reschedule or dead-letter a rejected record."""
        session.failed += 1
        if kind is ErrorKind.CONFLICT:
            logger.warning("Conflict pushing %r: %s", record, message)
            self._queue.mark_failed(record.id, message)
        elif kind in (ErrorKind.TRANSIENT, ErrorKind.NETWORK):
            self._queue.mark_failed(record.id, message)
        else:
            logger.warning("Server rejected %r: %s", record, message)
            self._queue.mark_failed(record.id, message, permanent=True)

    def _handle_batch_error(
        self,
        error: Exception,
        batch: list[MutationRecord],
        session: SyncSession,
    ) -> str | None:
        """Handle a push request that failed as a whole."""
        ids = [record.id for record in batch]
        kind = classify_error(error)

        if kind is ErrorKind.AUTH:
            self._queue.release(ids)
            raise error

        if kind is ErrorKind.NETWORK:
            logger.warning("Push failed, backend not answering: %s", error)
            self._monitor.check()
            if not self._monitor.is_online:
                self._queue.release(ids)
                return REASON_OFFLINE
            if self._monitor.state.consecutive_failures:
                # Backend looks down but is not declared offline yet;
                # wait without spending the records' attempt budget.
                self._queue.release(ids, delay=self._queue.policy.base_delay)
                return None
            for record in batch:
                self._queue.mark_failed(record.id, str(error))
            session.failed += len(batch)
            return None

        if kind is ErrorKind.REJECTED and len(batch) > 1:
            # Cannot tell which record was invalid: retry them one by one
            logger.warning("Batch of %d rejected (%s), pushing individually", len(batch), error)
            self._queue.release(ids)
            session.attempted -= len(batch)
            for record in batch:
                reason = self._push([record], session)
                if reason is not None:
                    return reason
            return None

        for record in batch:
            self._reject(record, str(error), kind, session)
        if kind is ErrorKind.CONFLICT and self._pull_enabled:
            return self._pull(session)
        return None

    # === Pull ===

    def _pull(self, session: SyncSession) -> str | None:
        """Pull server changes newer than the watermark and merge them.

        Pull failures other than lost connectivity are logged and left
        for the next pass; the watermark only advances past pages that
        were merged.

        Returns:
            A terminal reason if the pass must end, None otherwise.
        """
        since = self._state.get_watermark()
        while True:
            if self._stop_event.is_set():
                return REASON_STOPPED
            try:
                result = self._client.get_changes(since, limit=self._pull_page_size)
            except Exception as e:
                kind = classify_error(e)
                if kind is ErrorKind.AUTH:
                    raise
                if kind is ErrorKind.NETWORK and not self._monitor.check():
                    return REASON_OFFLINE
                logger.warning("Pull failed, will retry next pass: %s", e)
                return None

            for change in result.changes:
                self._merge(change, session)

            if result.watermark:
                since = result.watermark
                self._state.set_watermark(since)
            if not result.has_more or not result.changes:
                return None

    def _merge(self, change: ServerChange, session: SyncSession) -> None:
        """Merge one server change into the entity cache."""
        if self._queue.has_pending_for(change.entity_type, change.entity_id):
            session.conflicts += 1
            logger.info(
                "Keeping local pending mutation for %s:%s over pulled %s",
                change.entity_type,
                change.entity_id,
                change.operation,
            )
            return

        if change.is_delete:
            self._state.remove_entity(change.entity_type, change.entity_id)
        else:
            self._state.put_entity(change.entity_type, change.entity_id, change.data)
        session.pulled += 1
