"""Error taxonomy for matching, scheduling and recovery.

Only SourceUnavailable aborts a pass. Everything else is converted into a
Failure record and accumulated on the pass result.
"""

from dataclasses import dataclass
from typing import Optional


class AlarmSyncError(Exception):
    """Base error; carries the identifiers it concerns."""

    kind = "error"

    def __init__(
        self,
        message: str,
        *,
        alarm_id: Optional[str] = None,
        event_id: Optional[str] = None,
        rule_id: Optional[str] = None,
        key: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.alarm_id = alarm_id
        self.event_id = event_id
        self.rule_id = rule_id
        self.key = key


class InvalidRule(AlarmSyncError):
    """Rule pattern cannot be compiled; the rule is skipped for the pass."""

    kind = "invalid_rule"


class SourceUnavailable(AlarmSyncError):
    """Events or rules could not be read at all."""

    kind = "source_unavailable"


class RegistrationFailure(AlarmSyncError):
    """Host rejected (or failed on) one specific alarm."""

    kind = "registration_failure"


class CollisionUnresolved(AlarmSyncError):
    """No free host key found within the perturbation budget."""

    kind = "collision_unresolved"


class DriftDetected(AlarmSyncError):
    """Stored alarm is not registered with the host."""

    kind = "drift_detected"


class StoreFailure(AlarmSyncError):
    """Alarm Store write failed for one alarm."""

    kind = "store_failure"


@dataclass
class Failure:
    """Structured per-item failure reported on pass results."""

    kind: str
    reason: str
    alarm_id: Optional[str] = None
    event_id: Optional[str] = None
    rule_id: Optional[str] = None

    @classmethod
    def from_error(cls, err: AlarmSyncError) -> "Failure":
        return cls(
            kind=err.kind,
            reason=err.message,
            alarm_id=err.alarm_id,
            event_id=err.event_id,
            rule_id=err.rule_id,
        )


# Failure kinds that mark a pass as unsuccessful
BLOCKING_KINDS = frozenset({
    RegistrationFailure.kind,
    CollisionUnresolved.kind,
    StoreFailure.kind,
    SourceUnavailable.kind,
})
