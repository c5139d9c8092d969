"""Alarm scheduler — turns retained matches into durable, host-registered alarms.

Pure domain logic over the AlarmStore and HostScheduler ports.

Per retained match:
    new pair                -> allocate key, register, insert row
    same revision           -> refresh title; re-register only if the instant moved
    revision advanced       -> clear dismissal, recompute, keep row id (and key unless taken)
    dismissed, same revision-> never registered again
Rows whose pair is no longer retained (rule gone, event left the window,
discarded by deduplication) are cancelled and deleted.
"""

import sys
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Iterable, Optional, Set

from alarmsync.domain.errors import (
    AlarmSyncError,
    CollisionUnresolved,
    Failure,
    RegistrationFailure,
    StoreFailure,
)
from alarmsync.domain.keys import KeyAllocator, build_registry
from alarmsync.domain.models import Alarm, MatchResult, Pair, SchedulingResult
from alarmsync.ports.outbound import AlarmStore, HostScheduler

DEFAULT_EXPIRED_RETENTION = timedelta(hours=24)


def _log(msg: str):
    print(msg, file=sys.stderr)


@dataclass(frozen=True)
class PruneScope:
    """Which stored rows a pass is authoritative for. None = all."""

    rule_ids: Optional[FrozenSet[str]] = None
    event_ids: Optional[FrozenSet[str]] = None
    protected_rule_ids: FrozenSet[str] = frozenset()

    def covers(self, alarm: Alarm) -> bool:
        if alarm.rule_id in self.protected_rule_ids:
            return False
        if self.rule_ids is not None and alarm.rule_id not in self.rule_ids:
            return False
        if self.event_ids is not None and alarm.event_id not in self.event_ids:
            return False
        return True


class AlarmScheduler:
    """Upserts alarm rows for matches and keeps host registrations in step."""

    def __init__(
        self,
        store: AlarmStore,
        host: HostScheduler,
        keys: Optional[KeyAllocator] = None,
        expired_retention: timedelta = DEFAULT_EXPIRED_RETENTION,
    ):
        self._store = store
        self._host = host
        self._keys = keys or KeyAllocator()
        self._expired_retention = expired_retention

    # ── full pass ───────────────────────────────────────────

    def schedule(
        self,
        retained: Iterable[MatchResult],
        now: datetime,
        scope: Optional[PruneScope] = PruneScope(),
    ) -> SchedulingResult:
        """Apply retained matches to the store. ``scope=None`` disables pruning."""
        result = SchedulingResult()
        exact = self._can_schedule_exactly()
        if not exact:
            _log("[Scheduler] host cannot schedule exact alarms; rows are kept for later recovery")

        try:
            registry = self._repair_collisions(now, result)
        except Exception as e:
            # nothing can be allocated safely without the current keys
            self._record(result, e, "alarm store read failed")
            return result

        seen: Set[Pair] = set()
        for match in retained:
            seen.add(match.pair)
            try:
                self._upsert(match, now, registry, exact, result)
            except Exception as e:
                self._record(
                    result, e, f"alarm store failed for {match.event.title!r}",
                    event_id=match.event.id, rule_id=match.rule.id,
                )

        try:
            if scope is not None:
                self._prune(seen, scope, now, result)
            self.cleanup_expired(now)
        except Exception as e:
            self._record(result, e, "alarm store cleanup failed")
        return result

    # ── per-match upsert ────────────────────────────────────

    def _upsert(self, match: MatchResult, now: datetime, registry: Dict[int, Pair], exact: bool, result: SchedulingResult):
        event = match.event
        pair = match.pair
        existing = self._find(pair)

        if event.has_started(now):
            result.skipped_count += 1
            return
        if match.alarm_instant <= now:
            # alarm moment already passed for a future event; leave any row alone
            result.skipped_count += 1
            return

        if existing is None:
            self._create(match, now, registry, exact, result)
            return

        if event.last_modified > existing.last_event_modified_seen:
            self._refresh_modified(existing, match, now, registry, exact, result)
            return

        # same revision: dismissal and key are left untouched
        title_changed = existing.event_title != event.title
        time_changed = (
            existing.alarm_instant != match.alarm_instant
            or existing.event_start != event.start
        )
        if not title_changed and not time_changed:
            result.skipped_count += 1
            return

        updated = replace(existing, event_title=event.title)
        if time_changed:
            updated = replace(updated, event_start=event.start, alarm_instant=match.alarm_instant)
        self._write(updated, insert=False)
        result.updated_count += 1

        if time_changed and not existing.dismissed_by_user:
            registered = self._register_in_place(updated, exact, result)
            if registered is not None and registered.host_registration_key != updated.host_registration_key:
                self._write(registered, insert=False)

    def _create(self, match: MatchResult, now: datetime, registry: Dict[int, Pair], exact: bool, result: SchedulingResult):
        event, rule = match.event, match.rule
        key, attempt = self._keys.allocate(match.pair, registry)
        if attempt:
            result.collision_resolved_count += 1
            _log(f"[Scheduler] key collision for {event.title!r} resolved after {attempt} attempt(s)")
        alarm = Alarm(
            id=Alarm.new_id(),
            event_id=event.id,
            rule_id=rule.id,
            event_title=event.title,
            event_start=event.start,
            alarm_instant=match.alarm_instant,
            host_registration_key=key,
            last_event_modified_seen=event.last_modified,
            scheduled_at=now,
        )
        # row goes in first and stays even if the host refuses; the reconciler retries it
        self._write(alarm, insert=True)
        registry[key] = match.pair

        registered = self._register(alarm, exact, result)
        if registered is None:
            return
        if registered.host_registration_key != key:
            registry[registered.host_registration_key] = match.pair
            self._write(registered, insert=False)
        result.scheduled_count += 1

    def _refresh_modified(self, existing: Alarm, match: MatchResult, now: datetime, registry: Dict[int, Pair], exact: bool, result: SchedulingResult):
        event = match.event
        key = existing.host_registration_key
        owner = registry.get(key)
        if owner is not None and owner != match.pair:
            key, _ = self._keys.allocate(match.pair, registry)
            result.collision_resolved_count += 1

        needs_register = (
            existing.dismissed_by_user
            or existing.alarm_instant != match.alarm_instant
            or key != existing.host_registration_key
        )
        updated = replace(
            existing,
            event_title=event.title,
            event_start=event.start,
            alarm_instant=match.alarm_instant,
            host_registration_key=key,
            last_event_modified_seen=event.last_modified,
            dismissed_by_user=False,
        )
        if existing.dismissed_by_user:
            _log(f"[Scheduler] event {event.title!r} changed; dismissal cleared")
        registry[key] = match.pair

        if needs_register:
            # a changed key means the old one belongs to another pair now
            registered = self._register_in_place(
                updated, exact, result,
                stale_key=key == existing.host_registration_key and not existing.dismissed_by_user,
            )
            if registered is not None:
                updated = registered
        self._write(updated, insert=False)
        result.updated_count += 1

    # ── collisions ──────────────────────────────────────────

    def repair_collisions(self, now: datetime) -> SchedulingResult:
        """Give a fresh key to every active row that shares one with an older pair."""
        result = SchedulingResult()
        try:
            self._repair_collisions(now, result)
        except Exception as e:
            self._record(result, e, "alarm store read failed")
        return result

    def _repair_collisions(self, now: datetime, result: SchedulingResult) -> Dict[int, Pair]:
        active = self._store.active(now)
        registry, colliding = build_registry(active)
        if not colliding:
            return registry

        exact = self._can_schedule_exactly()
        by_key = {a.host_registration_key: a for a in sorted(active, key=lambda a: (a.scheduled_at, a.id), reverse=True)}
        for alarm in colliding:
            keeper = by_key.get(alarm.host_registration_key)
            try:
                key, _ = self._keys.allocate(alarm.pair, registry)
            except CollisionUnresolved as e:
                e.alarm_id = alarm.id
                _log(f"[Scheduler] {e.message} for {alarm.event_title!r}")
                result.failures.append(Failure.from_error(e))
                continue
            moved = replace(alarm, host_registration_key=key, scheduled_at=now)
            registry[key] = alarm.pair
            _log(f"[Scheduler] key {alarm.host_registration_key} shared by {alarm.event_title!r}; moved to {key}")
            registered = self._register(moved, exact, result)
            try:
                self._write(registered or moved, insert=False)
            except StoreFailure as e:
                self._record(result, e, "alarm store write failed")
                continue
            result.collision_resolved_count += 1
            # the older owner may have been overwritten on the host
            if keeper is not None and keeper.pair != alarm.pair:
                self._register(keeper, exact, result)
        return registry

    # ── recovery entry point ────────────────────────────────

    def reregister(self, alarm_id: str, now: datetime) -> Alarm:
        """Register an existing row again, in place. Used by the reconciler.

        Raises RegistrationFailure when the host refuses; never inserts.
        """
        alarm = self._store.get(alarm_id)
        if alarm is None:
            raise RegistrationFailure("alarm row no longer exists", alarm_id=alarm_id)
        if not alarm.is_active(now):
            raise RegistrationFailure("alarm is dismissed or in the past", alarm_id=alarm_id, event_id=alarm.event_id, rule_id=alarm.rule_id)

        registry, _ = build_registry(a for a in self._store.active(now) if a.id != alarm.id)
        key = alarm.host_registration_key
        if key in registry:
            # another pair owns the key now; its registration stays
            key, _ = self._keys.allocate(alarm.pair, registry)
        candidate = replace(alarm, host_registration_key=key)

        result = SchedulingResult()
        registered = self._register(candidate, self._can_schedule_exactly(), result)
        if registered is None:
            failure = result.failures[-1]
            raise RegistrationFailure(failure.reason, alarm_id=alarm.id, event_id=alarm.event_id, rule_id=alarm.rule_id)
        self._write(registered, insert=False)
        return registered

    # ── lifecycle helpers ───────────────────────────────────

    def cancel_rows(self, alarms: Iterable[Alarm]) -> int:
        """Cancel host registrations for and delete the given rows."""
        removed = 0
        for alarm in alarms:
            if not alarm.dismissed_by_user:
                self._cancel(alarm.host_registration_key)
            if self._store.delete(alarm.id):
                removed += 1
        return removed

    def dismiss(self, alarm_id: str) -> Optional[Alarm]:
        alarm = self._store.get(alarm_id)
        if alarm is None:
            return None
        if not alarm.dismissed_by_user:
            self._cancel(alarm.host_registration_key)
        dismissed = replace(alarm, dismissed_by_user=True)
        self._store.update(dismissed)
        return dismissed

    def cleanup_expired(self, now: datetime) -> int:
        cutoff = now - self._expired_retention
        removed = 0
        for alarm in self._store.all():
            if alarm.alarm_instant < cutoff and self._store.delete(alarm.id):
                removed += 1
        if removed:
            _log(f"[Scheduler] removed {removed} expired alarm(s)")
        return removed

    def _prune(self, seen: Set[Pair], scope: PruneScope, now: datetime, result: SchedulingResult):
        stale = [
            a for a in self._store.all()
            if a.pair not in seen and a.is_in_future(now) and scope.covers(a)
        ]
        if stale:
            result.removed_count += self.cancel_rows(stale)
            _log(f"[Scheduler] removed {len(stale)} alarm(s) no longer matched")

    # ── port wrappers ───────────────────────────────────────

    def _record(self, result: SchedulingResult, e: Exception, what: str, **ident):
        err = e if isinstance(e, AlarmSyncError) else StoreFailure(f"{what}: {e}", **ident)
        _log(f"[Scheduler] {err.kind}: {err.message}")
        result.failures.append(Failure.from_error(err))

    def _find(self, pair: Pair) -> Optional[Alarm]:
        for alarm in self._store.by_event_id(pair[0]):
            if alarm.rule_id == pair[1]:
                return alarm
        return None

    def _write(self, alarm: Alarm, insert: bool):
        try:
            if insert:
                self._store.insert(alarm)
            else:
                self._store.update(alarm)
        except Exception as e:
            raise StoreFailure(
                f"alarm store write failed: {e}",
                alarm_id=alarm.id, event_id=alarm.event_id, rule_id=alarm.rule_id,
            )

    def _register(self, alarm: Alarm, exact: bool, result: SchedulingResult) -> Optional[Alarm]:
        """Register with the host. Returns the alarm carrying the host's key, or None."""
        ident = dict(alarm_id=alarm.id, event_id=alarm.event_id, rule_id=alarm.rule_id)
        if not exact:
            err = RegistrationFailure("host cannot schedule exact alarms", **ident)
            result.failures.append(Failure.from_error(err))
            return None
        try:
            outcome = self._host.register(alarm)
        except Exception as e:
            err = RegistrationFailure(f"host register raised: {e}", **ident)
            _log(f"[Scheduler] register failed for {alarm.event_title!r}: {e}")
            result.failures.append(Failure.from_error(err))
            return None
        if not outcome.success:
            err = RegistrationFailure(outcome.error or "host rejected alarm", **ident)
            _log(f"[Scheduler] host rejected {alarm.event_title!r}: {err.message}")
            result.failures.append(Failure.from_error(err))
            return None
        if outcome.key is not None and outcome.key != alarm.host_registration_key:
            return replace(alarm, host_registration_key=outcome.key)
        return alarm

    def _register_in_place(self, alarm: Alarm, exact: bool, result: SchedulingResult, stale_key: bool = True) -> Optional[Alarm]:
        """Re-register a moved alarm; on failure drop the outdated registration.

        Leaving the old instant registered would hide the failure from the
        reconciler, which only sees whether the key is present.
        """
        registered = self._register(alarm, exact, result)
        if registered is None and exact and stale_key:
            self._cancel(alarm.host_registration_key)
        return registered

    def _cancel(self, key: int):
        try:
            self._host.cancel(key)
        except Exception as e:
            _log(f"[Scheduler] cancel of key {key} failed: {e}")

    def _can_schedule_exactly(self) -> bool:
        try:
            return bool(self._host.can_schedule_exactly())
        except Exception as e:
            _log(f"[Scheduler] capability query failed: {e}")
            return False
