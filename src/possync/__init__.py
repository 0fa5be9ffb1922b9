"""possync - Offline-first synchronization engine for point-of-sale clients."""

__version__ = "0.1.0"
