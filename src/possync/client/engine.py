"""Offline-first sync engine facade.

This module provides:
- SyncEngine: Wires queue, connectivity, orchestrator and status together

The engine is an explicit service object: the host application builds
one at startup, hands it to the code that mutates data and to the UI
that shows sync status, and stops it at shutdown.

Usage:
    server, sync = load_config()
    with SyncEngine(server, sync) as engine:
        engine.mutate("create", "sale", "local-7", {"total": 12.5})
        print(engine.status.sync_status())
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from possync.client.api import HTTPClient
from possync.client.state import LocalSyncState
from possync.client.status import StatusPublisher
from possync.client.sync.connectivity import ConnectivityMonitor
from possync.client.sync.orchestrator import SyncOrchestrator
from possync.client.sync.queue import MutationQueue
from possync.client.sync.retry import RetryPolicy
from possync.client.sync.types import MutationOperation
from possync.core.config import SyncConfig

if TYPE_CHECKING:
    from possync.client.state import CachedEntity
    from possync.client.sync.orchestrator import BackendProtocol
    from possync.client.sync.types import MutationRecord
    from possync.core.config import ServerConfig

logger = logging.getLogger(__name__)


class SyncEngine:
    """Offline-first synchronization service.

    Components can be injected (mainly for tests); anything not given is
    built from the configuration.
    """

    def __init__(
        self,
        server: ServerConfig | None = None,
        sync: SyncConfig | None = None,
        *,
        client: BackendProtocol | None = None,
        queue: MutationQueue | None = None,
        state: LocalSyncState | None = None,
        monitor: ConnectivityMonitor | None = None,
        publisher: StatusPublisher | None = None,
    ) -> None:
        """Build the engine.

        Args:
            server: Backend connection settings (required unless client is given).
            sync: Engine tuning (default SyncConfig()).
            client: Backend client to use instead of an HTTPClient.
            queue: Mutation queue to use instead of sync.queue_path.
            state: Local state to use instead of sync.state_path.
            monitor: Connectivity monitor to use instead of probing client.
            publisher: Status publisher to use instead of a new one.

        Raises:
            ValueError: If neither server nor client is given.
        """
        self._config = sync or SyncConfig()
        config = self._config

        self._http: HTTPClient | None = None
        if client is None:
            if server is None:
                raise ValueError("Either a ServerConfig or a client is required")
            self._http = HTTPClient(server)
            client = self._http
        self._client = client

        policy = RetryPolicy(
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            multiplier=config.backoff_multiplier,
            jitter=config.jitter,
            max_attempts=config.max_attempts,
        )
        self._queue = queue or MutationQueue(config.queue_path, policy=policy)
        self._state = state or LocalSyncState(config.state_path)
        self._monitor = monitor or ConnectivityMonitor(
            client,  # type: ignore[arg-type]
            interval=config.probe_interval,
            offline_threshold=config.offline_threshold,
        )
        self._publisher = publisher or StatusPublisher()

        self._orchestrator = SyncOrchestrator(
            client=client,
            queue=self._queue,
            state=self._state,
            monitor=self._monitor,
            publisher=self._publisher,
            batch_size=config.batch_size,
            sync_interval=config.sync_interval,
            pull_enabled=config.pull_enabled,
            pull_page_size=config.pull_page_size,
        )

        last_sync_at = self._state.get_last_sync_at()
        if last_sync_at is not None:
            self._publisher.update(last_sync_at=last_sync_at)
        self._orchestrator.refresh_counts()
        self._running = False

    # === Components ===

    @property
    def status(self) -> StatusPublisher:
        """Status projection for UI collaborators."""
        return self._publisher

    @property
    def queue(self) -> MutationQueue:
        """The durable mutation queue."""
        return self._queue

    @property
    def state(self) -> LocalSyncState:
        """Local state (entity cache, watermark)."""
        return self._state

    @property
    def monitor(self) -> ConnectivityMonitor:
        """The connectivity monitor."""
        return self._monitor

    @property
    def orchestrator(self) -> SyncOrchestrator:
        """The sync orchestrator."""
        return self._orchestrator

    @property
    def is_running(self) -> bool:
        """Check if the background threads are running."""
        return self._running

    # === Lifecycle ===

    def start(self) -> None:
        """Start the orchestrator worker and the connectivity monitor."""
        if self._running:
            logger.warning("SyncEngine already running")
            return
        logger.info(
            "Starting sync engine (%d pending, %d dead-lettered)",
            self._queue.size(),
            self._queue.dead_letter_count(),
        )
        self._orchestrator.start()
        self._monitor.start()
        self._running = True

    def stop(self) -> None:
        """Stop background threads. Queued records stay on disk."""
        if not self._running:
            return
        self._monitor.stop()
        self._orchestrator.stop()
        self._running = False
        logger.info("Sync engine stopped (%d pending)", self._queue.size())

    def close(self) -> None:
        """Stop the engine and release its storage and connections."""
        self.stop()
        self._queue.close()
        self._state.close()
        if self._http is not None:
            self._http.close()

    def __enter__(self) -> SyncEngine:
        """Start the engine on context entry."""
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        """Close the engine on context exit."""
        self.close()

    # === Application API ===

    def mutate(
        self,
        operation: MutationOperation | str,
        entity_type: str,
        entity_id: str | int,
        payload: dict[str, Any] | None = None,
    ) -> int:
        """Record a local write and apply it to the entity cache.

        Returns as soon as the record is committed locally; it never
        touches the network.

        Args:
            operation: create, update or delete.
            entity_type: Kind of entity.
            entity_id: Local (or canonical) entity id.
            payload: Field diff (update) or full snapshot (create).

        Returns:
            The queue record id.

        Raises:
            ValueError: If operation is unknown.
        """
        op = MutationOperation(operation)
        record_id = self._queue.enqueue(op, entity_type, entity_id, payload)
        cache_id = self._cache_id(entity_type, str(entity_id))
        self._state.apply_local(op.value, entity_type, cache_id, payload or {})
        return record_id

    def _cache_id(self, entity_type: str, entity_id: str) -> str:
        """Id the entity is cached under (canonical once known)."""
        return self._queue.remote_id_for(entity_type, entity_id) or entity_id

    def get_entity(self, entity_type: str, entity_id: str | int) -> CachedEntity | None:
        """Get the cached copy of an entity by local or canonical id."""
        return self._state.get_entity(entity_type, self._cache_id(entity_type, str(entity_id)))

    def trigger_sync(self) -> None:
        """Request a sync pass without waiting for it."""
        self._publisher.trigger_sync()

    # === Dead letters ===

    def dead_letters(self) -> list[MutationRecord]:
        """List dead-lettered records awaiting an operator decision."""
        return self._queue.dead_letters()

    def requeue(self, record_id: int) -> bool:
        """Retry a dead-lettered record with a fresh attempt budget."""
        return self._queue.requeue(record_id)

    def discard(self, record_id: int) -> bool:
        """Drop a dead-lettered record, unblocking its entity."""
        return self._queue.discard(record_id)
