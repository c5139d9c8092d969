"""Recovery tracker — bounded per-alarm retry state owned by the reconciler."""

from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF = timedelta(seconds=60)
DEFAULT_SWEEP_COOLDOWN = timedelta(seconds=30)
DEFAULT_MAX_TRACKED = 256
DEFAULT_ENTRY_TTL = timedelta(hours=24)


@dataclass
class RecoveryState:
    attempts: int = 0
    last_attempt_at: Optional[datetime] = None
    last_error: str = ""


class RecoveryTracker:
    """Attempt counters, per-alarm backoff and the sweep cooldown.

    Entries are kept in least-recently-touched order; the oldest are evicted
    once ``max_tracked`` is exceeded and entries idle longer than
    ``entry_ttl`` are dropped by ``expire()``.
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff: timedelta = DEFAULT_BACKOFF,
        sweep_cooldown: timedelta = DEFAULT_SWEEP_COOLDOWN,
        max_tracked: int = DEFAULT_MAX_TRACKED,
        entry_ttl: timedelta = DEFAULT_ENTRY_TTL,
    ):
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.sweep_cooldown = sweep_cooldown
        self.max_tracked = max_tracked
        self.entry_ttl = entry_ttl
        self._states: "OrderedDict[str, RecoveryState]" = OrderedDict()
        self._last_sweep_at: Optional[datetime] = None

    def __len__(self) -> int:
        return len(self._states)

    # ── sweep cooldown ──

    def sweep_due(self, now: datetime) -> bool:
        if self._last_sweep_at is None:
            return True
        return now - self._last_sweep_at >= self.sweep_cooldown

    def mark_sweep(self, now: datetime):
        self._last_sweep_at = now

    # ── per-alarm state ──

    def state(self, alarm_id: str) -> Optional[RecoveryState]:
        return self._states.get(alarm_id)

    def is_exhausted(self, alarm_id: str) -> bool:
        st = self._states.get(alarm_id)
        return st is not None and st.attempts >= self.max_attempts

    def can_attempt(self, alarm_id: str, now: datetime) -> bool:
        st = self._states.get(alarm_id)
        if st is None:
            return True
        if st.attempts >= self.max_attempts:
            return False
        if st.last_attempt_at is not None and now - st.last_attempt_at < self.backoff:
            return False
        return True

    def record_failure(self, alarm_id: str, now: datetime, error: str) -> RecoveryState:
        st = self._states.pop(alarm_id, None) or RecoveryState()
        st.attempts += 1
        st.last_attempt_at = now
        st.last_error = error
        self._states[alarm_id] = st
        while len(self._states) > self.max_tracked:
            self._states.popitem(last=False)
        return st

    def record_success(self, alarm_id: str):
        self._states.pop(alarm_id, None)

    def reset(self, alarm_id: Optional[str] = None):
        """Forget one alarm's attempts, or everything including the cooldown."""
        if alarm_id is not None:
            self._states.pop(alarm_id, None)
            return
        self._states.clear()
        self._last_sweep_at = None

    def expire(self, now: datetime) -> int:
        """Drop entries whose last attempt is older than ``entry_ttl``."""
        stale = [
            alarm_id for alarm_id, st in self._states.items()
            if st.last_attempt_at is None or now - st.last_attempt_at > self.entry_ttl
        ]
        for alarm_id in stale:
            del self._states[alarm_id]
        return len(stale)
