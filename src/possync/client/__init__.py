"""Client side of possync: the offline-first sync engine."""

from possync.client.engine import SyncEngine
from possync.client.status import StatusPublisher, StatusSnapshot

__all__ = [
    "StatusPublisher",
    "StatusSnapshot",
    "SyncEngine",
]
