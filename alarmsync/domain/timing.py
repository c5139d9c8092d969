"""Alarm instant computation for timed and all-day events."""

from dataclasses import dataclass
from datetime import date, datetime, time, timezone

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from alarmsync.domain.models import Event, Rule

DEFAULT_ALL_DAY_HOUR = 20
DEFAULT_ALL_DAY_MINUTE = 0


@dataclass(frozen=True)
class AllDayPolicy:
    """Wall-clock time at which all-day events fire, in the user's zone."""

    hour: int = DEFAULT_ALL_DAY_HOUR
    minute: int = DEFAULT_ALL_DAY_MINUTE
    tz: str = "UTC"

    def __post_init__(self):
        if not (0 <= self.hour <= 23 and 0 <= self.minute <= 59):
            raise ValueError(f"invalid all-day time: {self.hour:02d}:{self.minute:02d}")
        try:
            ZoneInfo(self.tz)
        except (ZoneInfoNotFoundError, ValueError, KeyError):
            raise ValueError(f"invalid timezone: {self.tz!r}")

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.tz)


def event_date(event: Event) -> date:
    """Calendar date of an all-day event.

    All-day events arrive as midnight in their own zone (UTC when the source
    gives none); multi-day events use their first day.
    """
    zone = timezone.utc
    if event.timezone:
        try:
            zone = ZoneInfo(event.timezone)
        except (ZoneInfoNotFoundError, ValueError, KeyError):
            pass
    return event.start.astimezone(zone).date()


def compute_alarm_instant(event: Event, rule: Rule, policy: AllDayPolicy) -> datetime:
    if event.is_all_day:
        # lead time is ignored for all-day events
        local = datetime.combine(event_date(event), time(policy.hour, policy.minute), tzinfo=policy.zone)
        return local.astimezone(timezone.utc)
    return event.start - rule.lead_time
