"""Backend reachability monitoring.

This module provides:
- ConnectivityMonitor: Periodically probes the backend health endpoint

The monitor answers one question: can the backend be reached right now?
It does not look at OS network state (a LAN can be up while the backend
is down) and never retries application data.

Debouncing:
    A single successful probe brings the monitor online, but going
    offline takes `offline_threshold` consecutive failures, so one dropped
    probe does not flap the sync status between offline and syncing.

Signals:
    Listeners are called with the new ConnectivityState after the first
    probe and on every online/offline transition. They run on the
    prober's thread and must only record the event (e.g. wake a worker).
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Protocol

from possync.client.sync.types import ConnectivityListener, ConnectivityState

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_PROBE_INTERVAL = 5.0  # seconds
DEFAULT_OFFLINE_THRESHOLD = 3


class HealthProbe(Protocol):
    """Anything that can tell whether the backend answers."""

    def health_check(self) -> bool:
        """Return True if the backend is reachable."""
        ...


class ConnectivityMonitor:
    """Probe the backend on a fixed interval and publish reachability.

    Usage:
        monitor = ConnectivityMonitor(http_client)
        monitor.add_listener(lambda state: print(state.is_online))
        monitor.start()
        ...
        monitor.stop()
    """

    def __init__(
        self,
        probe: HealthProbe,
        interval: float = DEFAULT_PROBE_INTERVAL,
        offline_threshold: int = DEFAULT_OFFLINE_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the monitor.

        Args:
            probe: Object whose health_check() reaches the backend.
            interval: Seconds between probes.
            offline_threshold: Consecutive failures before going offline.
            clock: Time source for last_probe_at.
        """
        self._probe = probe
        self._interval = interval
        self._offline_threshold = max(1, offline_threshold)
        self._clock = clock

        self._state = ConnectivityState()
        self._lock = threading.Lock()
        self._listeners: list[ConnectivityListener] = []

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def state(self) -> ConnectivityState:
        """Get the last published connectivity state."""
        return self._state

    @property
    def is_online(self) -> bool:
        """Check if the backend is considered reachable."""
        return self._state.is_online

    def add_listener(self, callback: ConnectivityListener) -> None:
        """Register a callback for connectivity signals."""
        self._listeners.append(callback)

    def check(self) -> bool:
        """Probe the backend once and update the state.

        Returns:
            Whether the backend is considered reachable after this probe.
        """
        try:
            reachable = bool(self._probe.health_check())
        except Exception as e:
            logger.debug("Health probe raised: %s", e)
            reachable = False

        with self._lock:
            previous = self._state
            now = self._clock()
            if reachable:
                current = ConnectivityState(
                    is_online=True, last_probe_at=now, consecutive_failures=0
                )
            else:
                failures = previous.consecutive_failures + 1
                current = ConnectivityState(
                    is_online=previous.is_online and failures < self._offline_threshold,
                    last_probe_at=now,
                    consecutive_failures=failures,
                )
            self._state = current

        first_probe = not previous.has_probed
        if current.is_online != previous.is_online:
            if current.is_online:
                logger.info("Backend reachable")
            else:
                logger.warning(
                    "Backend unreachable after %d failed probe(s)",
                    current.consecutive_failures,
                )
        elif first_probe and not current.is_online:
            logger.info("Backend unreachable, starting offline")

        if first_probe or current.is_online != previous.is_online:
            self._emit(current)
        return current.is_online

    def _emit(self, state: ConnectivityState) -> None:
        for callback in list(self._listeners):
            try:
                callback(state)
            except Exception:
                logger.exception("Connectivity listener failed")

    def start(self) -> None:
        """Start probing in a background thread."""
        if self._thread and self._thread.is_alive():
            logger.warning("ConnectivityMonitor already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="ConnectivityMonitor",
            daemon=True,
        )
        self._thread.start()
        logger.info("ConnectivityMonitor started (every %.1fs)", self._interval)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop probing."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("ConnectivityMonitor stopped")

    def _run(self) -> None:
        """Probe immediately, then every interval until stopped."""
        while not self._stop_event.is_set():
            try:
                self.check()
            except Exception:
                logger.exception("Error probing backend")
            if self._stop_event.wait(self._interval):
                break
