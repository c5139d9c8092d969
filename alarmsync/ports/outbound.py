"""Outbound ports — interfaces for event sources, stores and the host scheduler."""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Protocol, runtime_checkable

from alarmsync.domain.models import Alarm, Event, Rule


@dataclass
class RegistrationResult:
    """Outcome of one host registration."""

    success: bool
    key: Optional[int] = None
    error: Optional[str] = None


@runtime_checkable
class EventSource(Protocol):
    """Read-only view of the external calendar."""

    def events_in_window(self, now: datetime, horizon: datetime) -> List[Event]: ...
    def calendar_names(self) -> Dict[str, str]: ...


@runtime_checkable
class RuleStore(Protocol):
    """User-authored matching rules."""

    def enabled_valid_rules(self) -> List[Rule]: ...
    def get(self, rule_id: str) -> Optional[Rule]: ...
    def save(self, rule: Rule) -> None: ...
    def delete(self, rule_id: str) -> bool: ...


@runtime_checkable
class AlarmStore(Protocol):
    """Durable intended-alarm records. Each call is atomic per row."""

    def get(self, alarm_id: str) -> Optional[Alarm]: ...
    def insert(self, alarm: Alarm) -> None: ...
    def update(self, alarm: Alarm) -> None: ...
    def delete(self, alarm_id: str) -> bool: ...
    def active(self, now: datetime) -> List[Alarm]: ...
    def by_event_id(self, event_id: str) -> List[Alarm]: ...
    def all(self) -> List[Alarm]: ...


@runtime_checkable
class HostScheduler(Protocol):
    """The platform wake-alarm facility."""

    def register(self, alarm: Alarm) -> RegistrationResult: ...
    def cancel(self, key: int) -> bool: ...
    def is_registered(self, key: int) -> bool: ...
    def can_schedule_exactly(self) -> bool: ...


@runtime_checkable
class StoragePort(Protocol):
    """Interface for persistent list storage."""

    def load(self, key: str) -> list: ...
    def save(self, key: str, data: list) -> None: ...
