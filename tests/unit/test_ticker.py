from __future__ import annotations

import threading
import time

import pytest

from alertgov.metrics.prometheus import GovernanceMetrics
from alertgov.scheduling.ticker import PeriodicTask


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        PeriodicTask("bad", 0, lambda: None)


def test_overlapping_tick_is_dropped():
    started = threading.Event()
    release = threading.Event()

    def slow():
        started.set()
        release.wait(2.0)
        return "done"

    metrics = GovernanceMetrics()
    task = PeriodicTask("slow", 60, slow, metrics)
    assert task.tick() is True
    assert started.wait(1.0)
    assert task.tick() is False
    assert task.run_once() is None
    assert task.dropped == 2
    release.set()
    assert wait_for(lambda: task.runs == 1 and not task._busy.locked())
    assert task.run_once() == "done"
    assert metrics.registry.get_sample_value("alertgov_ticks_dropped_total", {"task": "slow"}) == 2.0


def test_failure_is_counted_and_releases_lock():
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("transient")
        return len(calls)

    task = PeriodicTask("flaky", 60, flaky)
    assert task.run_once() is None
    assert task.failures == 1
    assert task.run_once() == 2
    assert task.runs == 1


def test_start_and_stop():
    count = []
    task = PeriodicTask("fast", 0.01, lambda: count.append(1))
    task.start()
    try:
        assert wait_for(lambda: len(count) >= 2)
    finally:
        task.stop(timeout=1.0)
    assert not task.running
    assert task.stop_token.is_set()
