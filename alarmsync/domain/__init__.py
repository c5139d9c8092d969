"""Domain layer — pure Python, no framework dependencies."""

from alarmsync.domain.models import (
    Alarm,
    DuplicateHandlingMode,
    Event,
    MatchResult,
    PatternKind,
    ReconciliationResult,
    Rule,
    RuleUpdateResult,
    SchedulingResult,
    SystemHealth,
)
from alarmsync.domain.errors import (
    AlarmSyncError,
    CollisionUnresolved,
    DriftDetected,
    Failure,
    InvalidRule,
    RegistrationFailure,
    SourceUnavailable,
    StoreFailure,
)
from alarmsync.domain.dedup import deduplicate
from alarmsync.domain.keys import KeyAllocator, derive_key
from alarmsync.domain.matcher import RuleMatcher
from alarmsync.domain.recovery import RecoveryTracker
from alarmsync.domain.rules import validate_pattern, validate_rule
from alarmsync.domain.timing import AllDayPolicy, compute_alarm_instant

__all__ = [
    "Alarm",
    "DuplicateHandlingMode",
    "Event",
    "MatchResult",
    "PatternKind",
    "ReconciliationResult",
    "Rule",
    "RuleUpdateResult",
    "SchedulingResult",
    "SystemHealth",
    "AlarmSyncError",
    "CollisionUnresolved",
    "DriftDetected",
    "Failure",
    "InvalidRule",
    "RegistrationFailure",
    "SourceUnavailable",
    "StoreFailure",
    "deduplicate",
    "KeyAllocator",
    "derive_key",
    "RuleMatcher",
    "RecoveryTracker",
    "validate_pattern",
    "validate_rule",
    "AllDayPolicy",
    "compute_alarm_instant",
]
