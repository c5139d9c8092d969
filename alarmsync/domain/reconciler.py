"""Reconciler — audits stored alarms against the host and repairs drift.

Drift is a non-dismissed, future alarm whose key the host no longer reports
as registered. Repairs go through AlarmScheduler.reregister so a sweep never
creates a second row for the same (event, rule) pair.
"""

import sys
import threading
from datetime import datetime
from typing import Optional

from alarmsync.domain.errors import (
    AlarmSyncError,
    DriftDetected,
    Failure,
    RegistrationFailure,
    StoreFailure,
)
from alarmsync.domain.models import Alarm, ReconciliationResult
from alarmsync.domain.recovery import RecoveryTracker
from alarmsync.domain.scheduler import AlarmScheduler
from alarmsync.ports.outbound import AlarmStore, HostScheduler


def _log(msg: str):
    print(msg, file=sys.stderr)


class Reconciler:
    def __init__(
        self,
        store: AlarmStore,
        host: HostScheduler,
        scheduler: AlarmScheduler,
        tracker: Optional[RecoveryTracker] = None,
    ):
        self._store = store
        self._host = host
        self._scheduler = scheduler
        self.tracker = tracker or RecoveryTracker()

    def sweep(
        self,
        now: datetime,
        force: bool = False,
        cancel: Optional[threading.Event] = None,
    ) -> ReconciliationResult:
        """One audit over every active alarm.

        ``cancel`` is checked between alarms; repairs already made are kept.
        """
        result = ReconciliationResult()
        if not force and not self.tracker.sweep_due(now):
            result.message = "sweep cooldown active"
            return result
        self.tracker.mark_sweep(now)
        self.tracker.expire(now)

        if not self._can_schedule_exactly():
            err = RegistrationFailure("host cannot schedule exact alarms")
            result.failures.append(Failure.from_error(err))
            result.message = err.message
            _log(f"[Reconciler] {err.message}; sweep skipped")
            return result

        # collision repair records store errors on its own result
        repair = self._scheduler.repair_collisions(now)
        result.collision_resolved_count += repair.collision_resolved_count
        result.failures.extend(repair.failures)

        try:
            active = sorted(self._store.active(now), key=lambda a: (a.alarm_instant, a.id))
        except Exception as e:
            err = StoreFailure(f"alarm store read failed: {e}")
            result.failures.append(Failure.from_error(err))
            result.message = err.message
            _log(f"[Reconciler] {err.message}")
            return result

        for alarm in active:
            if cancel is not None and cancel.is_set():
                result.cancelled = True
                _log("[Reconciler] sweep cancelled")
                break
            self._check(alarm, now, result)

        result.message = (
            f"{result.rescheduled_count} rescheduled, {result.drift_count} drifted, "
            f"{len(result.failures)} failure(s)"
        )
        _log(
            f"[Reconciler] sweep: {len(active)} active, {result.drift_count} drift, "
            f"{result.rescheduled_count} rescheduled, {result.skipped_count} skipped, "
            f"{result.collision_resolved_count} collision(s), {len(result.failures)} failure(s)"
        )
        return result

    def retry(self, alarm_id: str, now: datetime) -> ReconciliationResult:
        """Explicit retry: clears the attempt cap and re-registers immediately."""
        result = ReconciliationResult()
        self.tracker.reset(alarm_id)
        if not self._can_schedule_exactly():
            err = RegistrationFailure("host cannot schedule exact alarms", alarm_id=alarm_id)
            result.failures.append(Failure.from_error(err))
            result.message = err.message
            return result
        self._attempt(alarm_id, now, result)
        result.message = "rescheduled" if result.rescheduled_count else "retry failed"
        return result

    def _check(self, alarm: Alarm, now: datetime, result: ReconciliationResult):
        try:
            present = self._host.is_registered(alarm.host_registration_key)
        except Exception as e:
            err = RegistrationFailure(
                f"host status query failed: {e}",
                alarm_id=alarm.id, event_id=alarm.event_id, rule_id=alarm.rule_id,
                key=alarm.host_registration_key,
            )
            result.failures.append(Failure.from_error(err))
            return
        if present:
            self.tracker.record_success(alarm.id)
            return

        result.drift_count += 1
        _log(f"[Reconciler] drift: {alarm.event_title!r} (key {alarm.host_registration_key}) not registered")

        if self.tracker.is_exhausted(alarm.id):
            err = DriftDetected(
                "retry limit reached; waiting for explicit retry",
                alarm_id=alarm.id, event_id=alarm.event_id, rule_id=alarm.rule_id,
                key=alarm.host_registration_key,
            )
            result.failures.append(Failure.from_error(err))
            result.skipped_count += 1
            return
        if not self.tracker.can_attempt(alarm.id, now):
            result.skipped_count += 1
            return
        self._attempt(alarm.id, now, result)

    def _attempt(self, alarm_id: str, now: datetime, result: ReconciliationResult):
        try:
            self._scheduler.reregister(alarm_id, now)
        except Exception as e:
            err = e if isinstance(e, AlarmSyncError) else StoreFailure(f"alarm store failed: {e}")
            err.alarm_id = err.alarm_id or alarm_id
            st = self.tracker.record_failure(alarm_id, now, err.message)
            result.failures.append(Failure.from_error(err))
            _log(f"[Reconciler] re-registration of {alarm_id} failed ({st.attempts}/{self.tracker.max_attempts}): {err.message}")
            return
        self.tracker.record_success(alarm_id)
        result.rescheduled_count += 1

    def _can_schedule_exactly(self) -> bool:
        try:
            return bool(self._host.can_schedule_exactly())
        except Exception as e:
            _log(f"[Reconciler] capability query failed: {e}")
            return False
