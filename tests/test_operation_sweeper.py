from __future__ import annotations

import time

from broker.operation_store import InMemoryOperationStore, OperationSweeper


def _wait_until(predicate, timeout_s: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_sweeper_sweeps_eagerly_on_start(clock):
    store = InMemoryOperationStore(ttl_hours=1, clock=clock)
    store.create("stale", "research")
    clock.advance(hours=2)

    sweeper = OperationSweeper(store, interval_s=3600)
    sweeper.start()
    try:
        assert store.count() == 0
        assert sweeper.running
    finally:
        sweeper.stop()
    assert not sweeper.running


def test_sweeper_sweeps_on_every_interval(clock):
    store = InMemoryOperationStore(ttl_hours=1, clock=clock)
    sweeper = OperationSweeper(store, interval_s=0.02)
    sweeper.start()
    try:
        store.create("op1", "research")
        clock.advance(hours=1)
        assert _wait_until(lambda: store.count() == 0)
    finally:
        sweeper.stop()


def test_sweeper_survives_sweep_errors(clock):
    store = InMemoryOperationStore(ttl_hours=1, clock=clock)
    calls = []
    original = store.sweep

    def flaky_sweep() -> int:
        calls.append(1)
        if len(calls) == 2:
            raise RuntimeError("boom")
        return original()

    store.sweep = flaky_sweep
    sweeper = OperationSweeper(store, interval_s=0.01)
    sweeper.start()
    try:
        assert _wait_until(lambda: len(calls) >= 4)
        assert sweeper.running
    finally:
        sweeper.stop()
