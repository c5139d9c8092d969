"""Tests for the single-flight guard."""

import threading

from alarmsync.infrastructure.single_flight import SingleFlight


class FakeMonotonic:
    def __init__(self):
        self.value = 1000.0

    def __call__(self):
        return self.value


def run_in_thread(guard, name, force=False):
    results = []

    def target():
        with guard.attempt(name, force=force) as owned:
            results.append(owned)

    t = threading.Thread(target=target)
    t.start()
    return t, results


class TestSingleFlight:
    def test_runs_when_idle(self):
        guard = SingleFlight(debounce_seconds=0)
        with guard.attempt("scheduling") as owned:
            assert owned is True
            assert guard.in_flight is True
        assert guard.in_flight is False

    def test_sequential_calls_inside_debounce_window_run(self):
        clock = FakeMonotonic()
        guard = SingleFlight(debounce_seconds=2.0, clock=clock)
        with guard.attempt("scheduling") as owned:
            assert owned
        clock.value += 0.1
        with guard.attempt("scheduling") as owned:
            assert owned is True
        with guard.attempt("reconcile") as owned:
            assert owned is True
        assert guard.dropped == 0

    def test_reentrant_call_dropped(self):
        guard = SingleFlight(debounce_seconds=0)
        with guard.attempt("scheduling"):
            with guard.attempt("reconcile", force=True) as nested:
                assert nested is False
        assert guard.dropped == 1

    def test_concurrent_call_within_window_dropped(self):
        clock = FakeMonotonic()
        guard = SingleFlight(debounce_seconds=2.0, clock=clock)
        with guard.attempt("scheduling"):
            clock.value += 0.5
            t, results = run_in_thread(guard, "scheduling")
            t.join(timeout=5)
            assert not t.is_alive()
        assert results == [False]
        assert guard.dropped == 1

    def test_concurrent_call_after_window_waits_and_runs(self):
        clock = FakeMonotonic()
        guard = SingleFlight(debounce_seconds=2.0, clock=clock)
        with guard.attempt("scheduling"):
            clock.value += 3.0
            t, results = run_in_thread(guard, "scheduling")
        t.join(timeout=5)
        assert results == [True]
        assert guard.dropped == 0

    def test_forced_call_waits_instead_of_dropping(self):
        clock = FakeMonotonic()
        guard = SingleFlight(debounce_seconds=5.0, clock=clock)
        with guard.attempt("scheduling"):
            t, results = run_in_thread(guard, "scheduling", force=True)
        t.join(timeout=5)
        assert results == [True]

    def test_lock_released_on_error(self):
        guard = SingleFlight(debounce_seconds=0)
        try:
            with guard.attempt("scheduling"):
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        assert guard.in_flight is False
        with guard.attempt("scheduling") as owned:
            assert owned is True

    def test_hold_blocks_instead_of_dropping(self):
        guard = SingleFlight(debounce_seconds=0)
        with guard.hold():
            assert guard.in_flight is True
        assert guard.in_flight is False

    def test_call_during_hold_waits(self):
        clock = FakeMonotonic()
        guard = SingleFlight(debounce_seconds=5.0, clock=clock)
        with guard.hold():
            t, results = run_in_thread(guard, "reconcile")
        t.join(timeout=5)
        assert results == [True]
