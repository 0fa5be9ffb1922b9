"""Tests for the connectivity monitor."""

from __future__ import annotations

import threading

from possync.client.sync.connectivity import ConnectivityMonitor
from possync.client.sync.types import ConnectivityState


class FakeProbe:
    """Health probe answering from a scripted list (last answer repeats)."""

    def __init__(self, *answers: bool) -> None:
        self.answers = list(answers) or [True]
        self.calls = 0

    def health_check(self) -> bool:
        answer = self.answers[min(self.calls, len(self.answers) - 1)]
        self.calls += 1
        return answer


class RaisingProbe:
    """Health probe that always raises."""

    def health_check(self) -> bool:
        raise OSError("no route to host")


class TestConnectivityMonitor:
    """Tests for ConnectivityMonitor."""

    def test_starts_unprobed(self) -> None:
        """Before any probe the monitor is offline and unprobed."""
        monitor = ConnectivityMonitor(FakeProbe())
        assert not monitor.is_online
        assert not monitor.state.has_probed

    def test_success_goes_online(self) -> None:
        """One successful probe brings the monitor online."""
        monitor = ConnectivityMonitor(FakeProbe(True), clock=lambda: 100.0)

        assert monitor.check() is True
        assert monitor.is_online
        assert monitor.state.last_probe_at == 100.0
        assert monitor.state.consecutive_failures == 0

    def test_offline_after_threshold(self) -> None:
        """Going offline takes offline_threshold consecutive failures."""
        monitor = ConnectivityMonitor(FakeProbe(True, False), offline_threshold=3)
        monitor.check()

        assert monitor.check() is True
        assert monitor.check() is True
        assert monitor.check() is False
        assert monitor.state.consecutive_failures == 3

    def test_success_resets_failures(self) -> None:
        """A success between failures restarts the count."""
        monitor = ConnectivityMonitor(
            FakeProbe(True, False, False, True, False, False), offline_threshold=3
        )
        for _ in range(6):
            monitor.check()

        assert monitor.is_online
        assert monitor.state.consecutive_failures == 2

    def test_first_probe_failure_is_offline(self) -> None:
        """Starting without a backend reports offline immediately."""
        monitor = ConnectivityMonitor(FakeProbe(False), offline_threshold=3)
        assert monitor.check() is False
        assert monitor.state.has_probed

    def test_probe_exception_counts_as_failure(self) -> None:
        """A probe that raises counts as unreachable."""
        monitor = ConnectivityMonitor(RaisingProbe(), offline_threshold=1)
        assert monitor.check() is False
        assert monitor.state.consecutive_failures == 1

    def test_listeners_on_first_probe_and_transitions(self) -> None:
        """Listeners hear the first probe and each transition only."""
        monitor = ConnectivityMonitor(
            FakeProbe(False, False, True, True, False), offline_threshold=1
        )
        events: list[bool] = []
        monitor.add_listener(lambda state: events.append(state.is_online))

        for _ in range(5):
            monitor.check()

        assert events == [False, True, False]

    def test_listener_error_is_contained(self) -> None:
        """A failing listener does not break probing."""
        monitor = ConnectivityMonitor(FakeProbe(True))

        def broken(state: ConnectivityState) -> None:
            raise RuntimeError("bug")

        monitor.add_listener(broken)
        assert monitor.check() is True

    def test_background_thread_probes(self) -> None:
        """start() probes immediately on a background thread."""
        probe = FakeProbe(True)
        monitor = ConnectivityMonitor(probe, interval=10.0)
        online = threading.Event()
        monitor.add_listener(lambda state: online.set() if state.is_online else None)

        monitor.start()
        try:
            assert online.wait(timeout=5.0)
        finally:
            monitor.stop()

        assert probe.calls >= 1
        assert monitor.is_online
