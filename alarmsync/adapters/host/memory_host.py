"""Simulated host scheduler.

Keeps registrations in a dict keyed by host key, the way a platform alarm
facility does: registering an existing key replaces the previous alarm.
Rejections and silent drops can be injected to exercise recovery.
"""

import sys
import threading
from typing import Dict, List, Optional, Set

from alarmsync.domain.keys import DEFAULT_KEY_SPACE
from alarmsync.domain.models import Alarm
from alarmsync.ports.outbound import RegistrationResult


def _log(msg: str):
    print(msg, file=sys.stderr)


class InMemoryHostScheduler:
    def __init__(self, key_space: int = DEFAULT_KEY_SPACE, exact: bool = True):
        self.key_space = key_space
        self.exact = exact
        self.reject_all = False
        self.reject_events: Set[str] = set()
        self.register_calls = 0
        self.cancel_calls = 0
        self._lock = threading.Lock()
        self._registered: Dict[int, Alarm] = {}

    def register(self, alarm: Alarm) -> RegistrationResult:
        key = alarm.host_registration_key
        with self._lock:
            self.register_calls += 1
            if not 1 <= key <= self.key_space:
                return RegistrationResult(False, error=f"key {key} outside host key space")
            if self.reject_all or alarm.event_id in self.reject_events:
                return RegistrationResult(False, error="rejected by host")
            self._registered[key] = alarm
        return RegistrationResult(True, key=key)

    def cancel(self, key: int) -> bool:
        with self._lock:
            self.cancel_calls += 1
            return self._registered.pop(key, None) is not None

    def is_registered(self, key: int) -> bool:
        with self._lock:
            return key in self._registered

    def can_schedule_exactly(self) -> bool:
        return self.exact

    # ── drift simulation / inspection ──

    def drop(self, key: int) -> bool:
        """Forget a registration without telling anyone."""
        with self._lock:
            dropped = self._registered.pop(key, None) is not None
        if dropped:
            _log(f"[Host] silently dropped key {key}")
        return dropped

    def drop_all(self) -> int:
        with self._lock:
            count = len(self._registered)
            self._registered.clear()
        return count

    def registered_alarm(self, key: int) -> Optional[Alarm]:
        with self._lock:
            return self._registered.get(key)

    def registered_keys(self) -> List[int]:
        with self._lock:
            return sorted(self._registered)

