"""alarmsync — keeps exact-time alarms in step with calendar events and matching rules."""

__version__ = "0.1.0"

from alarmsync.domain import (
    Alarm,
    AllDayPolicy,
    DuplicateHandlingMode,
    Event,
    Rule,
    SchedulingResult,
    ReconciliationResult,
)
from alarmsync.domain.engine import AlarmSyncEngine

__all__ = [
    "__version__",
    "Alarm",
    "AllDayPolicy",
    "AlarmSyncEngine",
    "DuplicateHandlingMode",
    "Event",
    "Rule",
    "SchedulingResult",
    "ReconciliationResult",
]
