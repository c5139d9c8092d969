"""Event Source adapter — reads calendar events from a JSON file.

File layout:
    {
      "calendars": [{"id": "1", "name": "Work"}],
      "events": [{"id": "e1", "title": "Team meeting",
                  "start": "2025-01-10T14:00:00Z", "end": "2025-01-10T15:00:00Z",
                  "calendar_id": "1", "all_day": false,
                  "last_modified": 3, "timezone": "Europe/Berlin"}]
    }
A bare list is read as the events array.
"""

import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ValidationError, field_validator
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from alarmsync.domain.errors import SourceUnavailable
from alarmsync.domain.models import Event


def _log(msg: str):
    print(msg, file=sys.stderr)


def _zone(name: Optional[str]):
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, KeyError):
        return timezone.utc


class CalendarRecord(BaseModel):
    id: str
    name: str = ""

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> str:
        return str(v)


class EventRecord(BaseModel):
    id: str
    title: str = ""
    start: datetime
    end: Optional[datetime] = None
    calendar_id: str = ""
    all_day: bool = False
    last_modified: int = 0
    timezone: Optional[str] = None

    @field_validator("id", "calendar_id", mode="before")
    @classmethod
    def _coerce_str(cls, v: Any) -> str:
        return "" if v is None else str(v)

    def to_event(self) -> Event:
        zone = _zone(self.timezone)
        start = self.start if self.start.tzinfo else self.start.replace(tzinfo=zone)
        end = self.end or start
        if end.tzinfo is None:
            end = end.replace(tzinfo=zone)
        return Event(
            id=self.id,
            title=self.title,
            start=start.astimezone(timezone.utc),
            end=end.astimezone(timezone.utc),
            calendar_id=self.calendar_id,
            is_all_day=self.all_day,
            last_modified=self.last_modified,
            timezone=self.timezone,
        )


class JsonEventSource:
    """Read-only EventSource over one JSON file, re-read on every call."""

    def __init__(self, path: str):
        self.path = Path(path)

    def _read(self) -> Dict[str, Any]:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise SourceUnavailable(f"cannot read {self.path}: {e}")
        if isinstance(raw, list):
            return {"events": raw, "calendars": []}
        if not isinstance(raw, dict):
            raise SourceUnavailable(f"{self.path} must hold an object or a list")
        return raw

    def events(self) -> List[Event]:
        events = []
        for item in self._read().get("events") or []:
            try:
                events.append(EventRecord.model_validate(item).to_event())
            except ValidationError as e:
                ident = item.get("id") if isinstance(item, dict) else None
                _log(f"[EventSource] skipping malformed event {ident!r}: {e.error_count()} error(s)")
        return events

    def events_in_window(self, now: datetime, horizon: datetime) -> List[Event]:
        """Events not yet over that start before ``horizon``."""
        return [e for e in self.events() if e.start <= horizon and e.end > now]

    def calendar_names(self) -> Dict[str, str]:
        names = {}
        for item in self._read().get("calendars") or []:
            try:
                record = CalendarRecord.model_validate(item)
            except ValidationError:
                continue
            names[record.id] = record.name
        return names
