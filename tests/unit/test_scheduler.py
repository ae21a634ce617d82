"""Unit tests for the timer schedulers and connectivity monitor."""

from __future__ import annotations

import threading
from typing import List

import pytest

from casilisto.core.connectivity import ConnectivityMonitor
from casilisto.core.scheduler import ManualScheduler, ThreadScheduler

pytestmark = pytest.mark.unit


class TestManualScheduler:
    """Test the virtual clock scheduler."""

    def test_runs_when_due(self, scheduler: ManualScheduler) -> None:
        calls: List[str] = []
        scheduler.call_later(1.0, lambda: calls.append("a"))

        scheduler.advance(0.5)
        assert calls == []
        scheduler.advance(0.5)
        assert calls == ["a"]

    def test_runs_in_due_order(self, scheduler: ManualScheduler) -> None:
        calls: List[str] = []
        scheduler.call_later(2.0, lambda: calls.append("late"))
        scheduler.call_later(1.0, lambda: calls.append("early"))
        scheduler.call_soon(lambda: calls.append("now"))

        assert scheduler.advance(5) == 3
        assert calls == ["now", "early", "late"]

    def test_cancelled_timer_does_not_run(self, scheduler: ManualScheduler) -> None:
        calls: List[str] = []
        handle = scheduler.call_later(1.0, lambda: calls.append("a"))

        handle.cancel()
        scheduler.advance(2)

        assert calls == []
        assert scheduler.pending() == 0

    def test_timers_scheduled_during_advance(self, scheduler: ManualScheduler) -> None:
        calls: List[float] = []

        def tick() -> None:
            calls.append(scheduler.time())
            if len(calls) < 3:
                scheduler.call_later(1.0, tick)

        scheduler.call_later(1.0, tick)
        scheduler.advance(10)

        assert calls == [1.0, 2.0, 3.0]
        assert scheduler.time() == 10

    def test_cancel_all(self, scheduler: ManualScheduler) -> None:
        scheduler.call_later(1, lambda: None)
        scheduler.call_later(2, lambda: None)

        scheduler.cancel_all()

        assert scheduler.pending() == 0
        assert scheduler.next_due() is None

    def test_failing_callback_does_not_stop_others(self, scheduler: ManualScheduler) -> None:
        calls: List[str] = []

        def boom() -> None:
            raise RuntimeError("boom")

        scheduler.call_later(1, boom)
        scheduler.call_later(2, lambda: calls.append("ok"))
        scheduler.advance(3)

        assert calls == ["ok"]


class TestThreadScheduler:
    """Test the real-time worker scheduler."""

    def test_runs_callback(self) -> None:
        scheduler = ThreadScheduler()
        done = threading.Event()
        try:
            scheduler.call_later(0.01, done.set)
            assert done.wait(2)
        finally:
            scheduler.stop()

    def test_stop_cancels_pending(self) -> None:
        scheduler = ThreadScheduler()
        done = threading.Event()
        scheduler.call_later(30, done.set)

        scheduler.stop()

        assert scheduler.pending() == 0
        assert not done.is_set()


class TestConnectivityMonitor:
    """Test online/offline notifications."""

    def test_notifies_on_transition_only(self) -> None:
        monitor = ConnectivityMonitor(online=True)
        events: List[bool] = []
        monitor.subscribe(events.append)

        monitor.set_online(True)
        monitor.set_online(False)
        monitor.set_online(False)
        monitor.set_online(True)

        assert events == [False, True]

    def test_unsubscribe(self) -> None:
        monitor = ConnectivityMonitor()
        events: List[bool] = []
        unsubscribe = monitor.subscribe(events.append)

        unsubscribe()
        monitor.set_online(False)

        assert events == []

    def test_probe(self) -> None:
        reachable = [False]
        monitor = ConnectivityMonitor(online=True, probe=lambda: reachable[0])

        assert monitor.probe() is False
        assert monitor.online is False
        reachable[0] = True
        assert monitor.probe() is True
        assert monitor.online is True

    def test_failing_listener_does_not_block_others(self) -> None:
        monitor = ConnectivityMonitor()
        events: List[bool] = []

        def boom(online: bool) -> None:
            raise RuntimeError("boom")

        monitor.subscribe(boom)
        monitor.subscribe(events.append)
        monitor.set_online(False)

        assert events == [False]
