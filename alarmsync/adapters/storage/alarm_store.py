"""Alarm Store adapters — in-memory and JSON-file backed.

Both satisfy the AlarmStore port: every call reads or writes one row under a
lock, so a single call is atomic with respect to other threads.
"""

import sys
import threading
from datetime import datetime
from typing import Dict, List, Optional

from alarmsync.ports.outbound import StoragePort
from alarmsync.domain.models import Alarm

ALARMS_KEY = "alarms"


def _log(msg: str):
    print(msg, file=sys.stderr)


class InMemoryAlarmStore:
    def __init__(self, alarms: Optional[List[Alarm]] = None):
        self._lock = threading.Lock()
        self._rows: Dict[str, Alarm] = {a.id: a for a in (alarms or [])}

    def __len__(self) -> int:
        return len(self._rows)

    def get(self, alarm_id: str) -> Optional[Alarm]:
        with self._lock:
            return self._rows.get(alarm_id)

    def insert(self, alarm: Alarm) -> None:
        with self._lock:
            if alarm.id in self._rows:
                raise KeyError(f"alarm {alarm.id} already exists")
            for row in self._rows.values():
                if row.pair == alarm.pair:
                    raise KeyError(f"alarm for {alarm.pair} already exists")
            self._rows[alarm.id] = alarm
            self._changed()

    def update(self, alarm: Alarm) -> None:
        with self._lock:
            if alarm.id not in self._rows:
                raise KeyError(f"alarm {alarm.id} not found")
            self._rows[alarm.id] = alarm
            self._changed()

    def delete(self, alarm_id: str) -> bool:
        with self._lock:
            if self._rows.pop(alarm_id, None) is None:
                return False
            self._changed()
            return True

    def active(self, now: datetime) -> List[Alarm]:
        with self._lock:
            return [a for a in self._rows.values() if a.is_active(now)]

    def by_event_id(self, event_id: str) -> List[Alarm]:
        with self._lock:
            return [a for a in self._rows.values() if a.event_id == event_id]

    def all(self) -> List[Alarm]:
        with self._lock:
            return list(self._rows.values())

    def _changed(self):
        """Hook called with the lock held after every mutation."""


class JsonAlarmStore(InMemoryAlarmStore):
    """Alarm rows persisted to ``<storage_dir>/alarms.json`` after each write."""

    def __init__(self, storage: StoragePort, key: str = ALARMS_KEY):
        self._storage = storage
        self._key = key
        super().__init__(self._load())

    def _load(self) -> List[Alarm]:
        alarms = []
        for item in self._storage.load(self._key):
            if not isinstance(item, dict):
                continue
            try:
                alarms.append(Alarm.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                _log(f"[AlarmStore] skipping malformed row {item.get('id')!r}: {e}")
        return alarms

    def reload(self):
        rows = self._load()
        with self._lock:
            self._rows = {a.id: a for a in rows}

    def _changed(self):
        self._storage.save(self._key, [a.to_dict() for a in self._rows.values()])
