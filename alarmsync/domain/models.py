"""Domain data models — pure Python dataclasses."""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from alarmsync.domain.errors import Failure

# Any of these characters in a pattern switches it to regex matching
REGEX_METACHARACTERS = frozenset("{}[]().*+?^$|\\")

MIN_LEAD_TIME = timedelta(minutes=1)
MAX_LEAD_TIME = timedelta(days=7)

Pair = Tuple[str, str]  # (event_id, rule_id)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class PatternKind(str, Enum):
    SUBSTRING = "substring"
    REGEX = "regex"

    @classmethod
    def detect(cls, pattern: str) -> "PatternKind":
        if any(ch in REGEX_METACHARACTERS for ch in pattern):
            return cls.REGEX
        return cls.SUBSTRING


class DuplicateHandlingMode(str, Enum):
    """How multiple rule matches for one event are reduced."""

    ALLOW_MULTIPLE = "ALLOW_MULTIPLE"
    EARLIEST_ONLY = "EARLIEST_ONLY"
    LATEST_ONLY = "LATEST_ONLY"
    SHORTEST_LEAD_TIME = "SHORTEST_LEAD_TIME"
    LONGEST_LEAD_TIME = "LONGEST_LEAD_TIME"

    @classmethod
    def from_value(cls, value: Optional[str]) -> "DuplicateHandlingMode":
        """Unknown or empty values fall back to ALLOW_MULTIPLE."""
        if not value:
            return cls.ALLOW_MULTIPLE
        try:
            return cls(value.strip().upper())
        except ValueError:
            return cls.ALLOW_MULTIPLE


@dataclass
class Rule:
    id: str
    name: str
    pattern: str
    lead_time: timedelta
    calendar_scope: FrozenSet[str] = frozenset()  # empty = all calendars
    enabled: bool = True
    created_at: datetime = field(default_factory=utcnow)
    pattern_kind: Optional[PatternKind] = None  # auto-detected when omitted

    def __post_init__(self):
        self.calendar_scope = frozenset(str(c) for c in self.calendar_scope)
        if self.pattern_kind is None:
            self.pattern_kind = PatternKind.detect(self.pattern)

    @property
    def lead_time_minutes(self) -> int:
        return int(self.lead_time.total_seconds() // 60)

    def in_scope(self, calendar_id: str) -> bool:
        return not self.calendar_scope or calendar_id in self.calendar_scope

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())


@dataclass
class Event:
    id: str
    title: str
    start: datetime
    end: datetime
    calendar_id: str = ""
    is_all_day: bool = False
    last_modified: int = 0
    timezone: Optional[str] = None

    def has_started(self, now: datetime) -> bool:
        return self.start <= now


@dataclass
class MatchResult:
    event: Event
    rule: Rule
    alarm_instant: datetime

    @property
    def pair(self) -> Pair:
        return (self.event.id, self.rule.id)


@dataclass
class Alarm:
    """Durable record of one intended host alarm."""

    id: str
    event_id: str
    rule_id: str
    event_title: str
    event_start: datetime
    alarm_instant: datetime
    host_registration_key: int
    last_event_modified_seen: int
    scheduled_at: datetime = field(default_factory=utcnow)
    dismissed_by_user: bool = False

    @property
    def pair(self) -> Pair:
        return (self.event_id, self.rule_id)

    @property
    def lead_time(self) -> timedelta:
        return self.event_start - self.alarm_instant

    def is_in_future(self, now: datetime) -> bool:
        return self.alarm_instant > now

    def is_active(self, now: datetime) -> bool:
        return not self.dismissed_by_user and self.is_in_future(now)

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for name in ("event_start", "alarm_instant", "scheduled_at"):
            data[name] = data[name].isoformat()
        return data

    @classmethod
    def from_dict(cls, item: Dict[str, Any]) -> "Alarm":
        return cls(
            id=str(item["id"]),
            event_id=str(item["event_id"]),
            rule_id=str(item["rule_id"]),
            event_title=str(item.get("event_title", "")),
            event_start=_parse_dt(item["event_start"]),
            alarm_instant=_parse_dt(item["alarm_instant"]),
            host_registration_key=int(item["host_registration_key"]),
            last_event_modified_seen=int(item.get("last_event_modified_seen", 0)),
            scheduled_at=_parse_dt(item["scheduled_at"]) if item.get("scheduled_at") else utcnow(),
            dismissed_by_user=bool(item.get("dismissed_by_user", False)),
        )


# ── Pass results ────────────────────────────────────────────


@dataclass
class SchedulingResult:
    scheduled_count: int = 0
    updated_count: int = 0
    skipped_count: int = 0
    removed_count: int = 0
    collision_resolved_count: int = 0
    success: bool = True
    message: str = ""
    failures: List[Failure] = field(default_factory=list)
    dropped: bool = False  # re-entrant call dropped by the single-flight guard


@dataclass
class ReconciliationResult:
    rescheduled_count: int = 0
    collision_resolved_count: int = 0
    skipped_count: int = 0
    drift_count: int = 0
    failures: List[Failure] = field(default_factory=list)
    cancelled: bool = False
    dropped: bool = False
    message: str = ""


@dataclass
class RuleUpdateResult:
    success: bool
    message: str
    alarms_cancelled: int = 0
    alarms_scheduled: int = 0


@dataclass
class SystemHealth:
    healthy: bool
    health_score: int  # 0-100
    total_alarms: int
    registered_alarms: int
    missing_alarms: int
    collisions: int = 0
    issues: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
