"""AlarmSyncEngine — the operations callers invoke.

Data flow for a scheduling pass:
    EventSource + RuleStore -> RuleMatcher -> deduplicate -> AlarmScheduler
    -> AlarmStore / HostScheduler

Reconciliation runs separately over AlarmStore and HostScheduler. Both pass
kinds share one SingleFlight guard so they never run against the store at
the same time.
"""

import sys
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional

from alarmsync.domain.dedup import deduplicate
from alarmsync.domain.errors import (
    BLOCKING_KINDS,
    AlarmSyncError,
    Failure,
    SourceUnavailable,
    StoreFailure,
)
from alarmsync.domain.keys import KeyAllocator, build_registry
from alarmsync.domain.matcher import RuleMatcher
from alarmsync.domain.models import (
    Alarm,
    DuplicateHandlingMode,
    Event,
    MatchResult,
    ReconciliationResult,
    Rule,
    RuleUpdateResult,
    SchedulingResult,
    SystemHealth,
    utcnow,
)
from alarmsync.domain.reconciler import Reconciler
from alarmsync.domain.recovery import RecoveryTracker
from alarmsync.domain.rules import validate_rule
from alarmsync.domain.scheduler import DEFAULT_EXPIRED_RETENTION, AlarmScheduler, PruneScope
from alarmsync.domain.timing import AllDayPolicy
from alarmsync.infrastructure.single_flight import SingleFlight
from alarmsync.ports.outbound import AlarmStore, EventSource, HostScheduler, RuleStore

DEFAULT_LOOKAHEAD = timedelta(hours=48)


def _log(msg: str):
    print(msg, file=sys.stderr)


class AlarmSyncEngine:
    def __init__(
        self,
        events: EventSource,
        rules: RuleStore,
        alarms: AlarmStore,
        host: HostScheduler,
        lookahead: timedelta = DEFAULT_LOOKAHEAD,
        duplicate_mode: DuplicateHandlingMode = DuplicateHandlingMode.ALLOW_MULTIPLE,
        all_day: Optional[AllDayPolicy] = None,
        keys: Optional[KeyAllocator] = None,
        tracker: Optional[RecoveryTracker] = None,
        guard: Optional[SingleFlight] = None,
        expired_retention: timedelta = DEFAULT_EXPIRED_RETENTION,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.events = events
        self.rules = rules
        self.alarms = alarms
        self.host = host
        self.lookahead = lookahead
        self.duplicate_mode = duplicate_mode
        self.matcher = RuleMatcher(all_day)
        self.scheduler = AlarmScheduler(alarms, host, keys, expired_retention)
        self.reconciler = Reconciler(alarms, host, self.scheduler, tracker)
        self.guard = guard or SingleFlight()
        self._clock = clock
        self._force_next = False

    @property
    def all_day(self) -> AllDayPolicy:
        return self.matcher.all_day

    # ── scheduling ──────────────────────────────────────────

    def run_scheduling_pass(
        self,
        rules: Optional[Iterable[Rule]] = None,
        events: Optional[Iterable[Event]] = None,
        force: bool = False,
    ) -> SchedulingResult:
        """Match, deduplicate and upsert alarms.

        With ``rules`` or ``events`` given, only rows for those rules/events
        are considered for removal. Re-entrant calls are dropped.
        """
        with self.guard.attempt("scheduling", force or self._force_next) as owned:
            if not owned:
                return SchedulingResult(dropped=True, message="Scheduling already in progress")
            self._force_next = False
            return self._scheduling_pass(rules, events)

    def _scheduling_pass(
        self,
        rules: Optional[Iterable[Rule]] = None,
        events: Optional[Iterable[Event]] = None,
    ) -> SchedulingResult:
        now = self._clock()
        horizon = now + self.lookahead
        rule_scope = event_scope = None

        try:
            if rules is None:
                rules = self.rules.enabled_valid_rules()
            else:
                rules = list(rules)
                rule_scope = frozenset(r.id for r in rules)
            rules = list(rules)
            if events is None:
                events = self.events.events_in_window(now, horizon)
            else:
                events = list(events)
                event_scope = frozenset(e.id for e in events)
            events = [e for e in events if e.start <= horizon]
        except Exception as e:
            return self._source_failure(e)

        outcome = self.matcher.find_matches(events, rules)
        dedup = deduplicate(outcome.matches, self.duplicate_mode)
        scope = PruneScope(
            rule_ids=rule_scope,
            event_ids=event_scope,
            protected_rule_ids=frozenset(outcome.invalid_rule_ids),
        )

        try:
            result = self.scheduler.schedule(dedup.kept, now, scope)
        except Exception as e:
            err = e if isinstance(e, AlarmSyncError) else StoreFailure(f"alarm store unavailable: {e}")
            _log(f"[Engine] scheduling pass failed: {err.message}")
            result = SchedulingResult()
            result.failures.append(Failure.from_error(err))

        result.failures[:0] = outcome.invalid_rules
        result.success = not any(f.kind in BLOCKING_KINDS for f in result.failures)
        result.message = (
            f"Scheduled {result.scheduled_count}, updated {result.updated_count}, "
            f"skipped {result.skipped_count}, removed {result.removed_count}"
        )
        if result.failures:
            result.message += f", {len(result.failures)} failure(s)"
        _log(
            f"[Engine] pass: {len(events)} event(s), {len(rules)} rule(s), "
            f"{len(outcome.matches)} match(es), {len(dedup.discarded)} deduplicated; {result.message}"
        )
        return result

    def _source_failure(self, e: Exception) -> SchedulingResult:
        err = e if isinstance(e, SourceUnavailable) else SourceUnavailable(f"cannot read inputs: {e}")
        _log(f"[Engine] pass aborted: {err.message}")
        return SchedulingResult(
            success=False,
            message=f"Source unavailable: {err.message}",
            failures=[Failure.from_error(err)],
        )

    def match_event(self, event: Event, rules: Optional[Iterable[Rule]] = None) -> List[MatchResult]:
        """Preview which rules would alarm for ``event``; touches nothing."""
        if rules is None:
            try:
                rules = self.rules.enabled_valid_rules()
            except Exception as e:
                raise SourceUnavailable(f"cannot read rules: {e}")
        return self.matcher.match_event(event, rules)

    # ── reconciliation ──────────────────────────────────────

    def run_reconciliation_pass(
        self,
        force: bool = False,
        cancel_token: Optional[threading.Event] = None,
    ) -> ReconciliationResult:
        with self.guard.attempt("reconcile", force) as owned:
            if not owned:
                return ReconciliationResult(dropped=True, message="Reconciliation already in progress")
            return self.reconciler.sweep(self._clock(), force=force, cancel=cancel_token)

    def retry_alarm(self, alarm_id: str) -> ReconciliationResult:
        """Explicit retry, also for alarms whose automatic retries ran out."""
        with self.guard.hold():
            return self.reconciler.retry(alarm_id, self._clock())

    # ── rules ───────────────────────────────────────────────

    def add_rule(self, rule: Rule) -> RuleUpdateResult:
        ok, msg = validate_rule(rule)
        if not ok:
            return RuleUpdateResult(False, msg)
        with self.guard.hold():
            self.rules.save(rule)
            scheduled = self._schedule_for(rule) if rule.enabled else 0
        return RuleUpdateResult(True, f"Rule '{rule.name}' created", alarms_scheduled=scheduled)

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> RuleUpdateResult:
        with self.guard.hold():
            rule = self.rules.get(rule_id)
            if rule is None:
                return RuleUpdateResult(False, "Rule not found")
            rule = replace(rule, enabled=enabled)
            self.rules.save(rule)
            if not enabled:
                cancelled = self._cancel_for(rule_id)
                return RuleUpdateResult(True, f"Rule '{rule.name}' disabled", alarms_cancelled=cancelled)
            ok, msg = validate_rule(rule)
            if not ok:
                return RuleUpdateResult(False, f"Rule enabled but not scheduled: {msg}")
            scheduled = self._schedule_for(rule)
        return RuleUpdateResult(True, f"Rule '{rule.name}' enabled", alarms_scheduled=scheduled)

    def update_rule(self, rule: Rule) -> RuleUpdateResult:
        """Replace a rule; its alarms are rebuilt from scratch."""
        ok, msg = validate_rule(rule)
        if not ok:
            return RuleUpdateResult(False, msg)
        with self.guard.hold():
            if self.rules.get(rule.id) is None:
                return RuleUpdateResult(False, "Rule not found")
            cancelled = self._cancel_for(rule.id)
            self.rules.save(rule)
            scheduled = self._schedule_for(rule) if rule.enabled else 0
        return RuleUpdateResult(
            True, f"Rule '{rule.name}' updated",
            alarms_cancelled=cancelled, alarms_scheduled=scheduled,
        )

    def delete_rule(self, rule_id: str) -> RuleUpdateResult:
        with self.guard.hold():
            rule = self.rules.get(rule_id)
            if rule is None:
                return RuleUpdateResult(False, "Rule not found")
            cancelled = self._cancel_for(rule_id)
            self.rules.delete(rule_id)
        return RuleUpdateResult(True, f"Rule '{rule.name}' deleted", alarms_cancelled=cancelled)

    def _cancel_for(self, rule_id: str) -> int:
        rows = [a for a in self.alarms.all() if a.rule_id == rule_id]
        return self.scheduler.cancel_rows(rows)

    def _schedule_for(self, rule: Rule) -> int:
        result = self._scheduling_pass(rules=[rule])
        return result.scheduled_count

    # ── maintenance ─────────────────────────────────────────

    def dismiss_alarm(self, alarm_id: str) -> Optional[Alarm]:
        """Cancel on the host and mark dismissed until the event changes."""
        with self.guard.hold():
            alarm = self.scheduler.dismiss(alarm_id)
        if alarm is not None:
            _log(f"[Engine] dismissed alarm for {alarm.event_title!r}")
        return alarm

    def cleanup_expired(self) -> int:
        with self.guard.hold():
            return self.scheduler.cleanup_expired(self._clock())

    def handle_timezone_change(self, tz: Optional[str] = None) -> SchedulingResult:
        """All-day instants depend on the local zone: rescan everything."""
        if tz is not None and tz != self.matcher.all_day.tz:
            self.matcher.all_day = replace(self.matcher.all_day, tz=tz)
            _log(f"[Engine] timezone changed to {tz}")
        self._force_next = True
        return self.run_scheduling_pass(force=True)

    def validate_system_state(self) -> SystemHealth:
        """Read-only audit of the store against the host."""
        now = self._clock()
        issues: List[str] = []
        warnings: List[str] = []
        try:
            if not self.host.can_schedule_exactly():
                issues.append("Host cannot schedule exact alarms")
            active = self.alarms.active(now)
            _, colliding = build_registry(active)
            for alarm in colliding:
                issues.append(
                    f"Key collision: {alarm.event_title!r} shares key {alarm.host_registration_key}"
                )
            registered = sum(1 for a in active if self.host.is_registered(a.host_registration_key))
        except Exception as e:
            _log(f"[Engine] system validation failed: {e}")
            return SystemHealth(
                healthy=False, health_score=0, total_alarms=0,
                registered_alarms=0, missing_alarms=0,
                issues=[f"System validation failed: {e}"],
            )

        missing = len(active) - registered
        if missing:
            warnings.append(f"{missing} alarm(s) missing from the host")
        score = 100 if not active else int(registered * 100 / len(active))
        _log(f"[Engine] health {score}%: {registered}/{len(active)} registered, {len(issues)} issue(s)")
        return SystemHealth(
            healthy=not issues,
            health_score=score,
            total_alarms=len(active),
            registered_alarms=registered,
            missing_alarms=missing,
            collisions=len(colliding),
            issues=issues,
            warnings=warnings,
        )
