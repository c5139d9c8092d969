"""Port interfaces (Hexagonal Architecture)."""

from alarmsync.ports.outbound import (
    AlarmStore,
    EventSource,
    HostScheduler,
    RegistrationResult,
    RuleStore,
    StoragePort,
)

__all__ = [
    "AlarmStore",
    "EventSource",
    "HostScheduler",
    "RegistrationResult",
    "RuleStore",
    "StoragePort",
]
