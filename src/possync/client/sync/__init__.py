"""Sync machinery for queued offline mutations.

Architecture:
    Application → MutationQueue → SyncOrchestrator → Backend
                                        ▲
                        ConnectivityMonitor

Components:
- **MutationQueue**: Durable, ordered log of local writes (SQLite)
- **ConnectivityMonitor**: Debounced backend reachability probe
- **SyncOrchestrator**: State machine that drains the queue and pulls changes
- **RetryPolicy**: Exponential backoff with jitter and a dead-letter ceiling

All public symbols are re-exported here.
"""

from possync.client.sync.connectivity import (
    DEFAULT_OFFLINE_THRESHOLD,
    DEFAULT_PROBE_INTERVAL,
    ConnectivityMonitor,
    HealthProbe,
)
from possync.client.sync.orchestrator import BackendProtocol, SyncOrchestrator
from possync.client.sync.queue import MutationQueue
from possync.client.sync.retry import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_BASE_DELAY,
    DEFAULT_JITTER,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY,
    NETWORK_EXCEPTIONS,
    ErrorKind,
    RetryPolicy,
    classify_error,
    classify_status,
    next_delay,
)
from possync.client.sync.types import (
    ConnectivityListener,
    ConnectivityState,
    CorruptRecordError,
    MutationOperation,
    MutationRecord,
    MutationStatus,
    QueueListener,
    SessionCallback,
    SyncError,
    SyncSession,
)
