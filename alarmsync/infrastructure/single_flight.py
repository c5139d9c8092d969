"""Single-flight guard with a debounce window on the in-flight run."""

import sys
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional


def _log(msg: str):
    print(msg, file=sys.stderr)


class SingleFlight:
    """Serializes runs that share one mutable store.

    While a run is in flight, a call is dropped (not queued) when it re-enters
    from the owning thread, or when it arrives less than ``debounce_seconds``
    after the in-flight run started. Later callers wait for the run to finish.
    ``force=True`` skips the debounce check. Once nothing is in flight every
    call runs.
    """

    def __init__(self, debounce_seconds: float = 2.0, clock: Callable[[], float] = time.monotonic):
        self.debounce_seconds = debounce_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._owner: Optional[int] = None
        self._started: Optional[float] = None
        self.dropped = 0

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def attempt(self, name: str, force: bool = False) -> Iterator[bool]:
        """Yield True if the caller owns the run, False if it was dropped."""
        if self._owner == threading.get_ident():
            self.dropped += 1
            _log(f"[SingleFlight] {name} dropped: re-entrant call")
            yield False
            return
        if not self._lock.acquire(blocking=False):
            started = self._started
            if not force and started is not None and self._clock() - started < self.debounce_seconds:
                self.dropped += 1
                _log(f"[SingleFlight] {name} dropped: within {self.debounce_seconds}s of the run in flight")
                yield False
                return
            self._lock.acquire()
        try:
            with self._owned(self._clock()):
                yield True
        finally:
            self._lock.release()

    @contextmanager
    def hold(self) -> Iterator[None]:
        """Block until no run is in flight. For user edits that must not be dropped."""
        with self._lock:
            with self._owned(None):
                yield

    @contextmanager
    def _owned(self, started: Optional[float]) -> Iterator[None]:
        # caller holds the lock
        self._owner = threading.get_ident()
        self._started = started
        try:
            yield
        finally:
            self._owner = None
            self._started = None
