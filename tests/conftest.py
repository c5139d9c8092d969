"""Shared fixtures: a fixed clock, list-backed ports and an engine wired to them."""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from alarmsync.adapters.host.memory_host import InMemoryHostScheduler
from alarmsync.adapters.storage.alarm_store import InMemoryAlarmStore
from alarmsync.domain.engine import AlarmSyncEngine
from alarmsync.domain.models import Event, Rule
from alarmsync.domain.rules import is_valid
from alarmsync.infrastructure.single_flight import SingleFlight

NOW = datetime(2025, 1, 10, 8, 0, tzinfo=timezone.utc)


def at(hour: int, minute: int = 0, day: int = 10) -> datetime:
    return datetime(2025, 1, day, hour, minute, tzinfo=timezone.utc)


def make_rule(pattern: str, lead_minutes: int = 15, rule_id: Optional[str] = None, **kwargs) -> Rule:
    return Rule(
        id=rule_id or f"r-{pattern}-{lead_minutes}",
        name=kwargs.pop("name", pattern.title()),
        pattern=pattern,
        lead_time=timedelta(minutes=lead_minutes),
        **kwargs,
    )


def make_event(title: str, start: datetime, event_id: str = "e1", duration_minutes: int = 60, **kwargs) -> Event:
    return Event(
        id=event_id,
        title=title,
        start=start,
        end=start + timedelta(minutes=duration_minutes),
        **kwargs,
    )


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class ListEventSource:
    def __init__(self, events: Optional[List[Event]] = None):
        self.events: List[Event] = list(events or [])
        self.fail = False

    def events_in_window(self, now: datetime, horizon: datetime) -> List[Event]:
        if self.fail:
            raise OSError("calendar provider unavailable")
        return [e for e in self.events if e.start <= horizon and e.end > now]

    def calendar_names(self) -> Dict[str, str]:
        return {}

    def replace(self, event: Event):
        self.events = [e for e in self.events if e.id != event.id] + [event]


class ListRuleStore:
    def __init__(self, rules: Optional[List[Rule]] = None):
        self.rules: Dict[str, Rule] = {r.id: r for r in (rules or [])}
        self.fail = False

    def enabled_valid_rules(self) -> List[Rule]:
        if self.fail:
            raise OSError("rule database locked")
        return [r for r in self.rules.values() if r.enabled and is_valid(r)]

    def get(self, rule_id: str) -> Optional[Rule]:
        return self.rules.get(rule_id)

    def save(self, rule: Rule) -> None:
        self.rules[rule.id] = rule

    def delete(self, rule_id: str) -> bool:
        return self.rules.pop(rule_id, None) is not None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def source():
    return ListEventSource()


@pytest.fixture
def rule_store():
    return ListRuleStore()


@pytest.fixture
def store():
    return InMemoryAlarmStore()


@pytest.fixture
def host():
    return InMemoryHostScheduler()


@pytest.fixture
def engine(source, rule_store, store, host, clock):
    return AlarmSyncEngine(
        events=source,
        rules=rule_store,
        alarms=store,
        host=host,
        guard=SingleFlight(debounce_seconds=0),
        clock=clock,
    )
