"""End-to-end tests for AlarmSyncEngine scheduling passes and rule management."""

from dataclasses import replace
from datetime import time, timedelta

import pytest
from zoneinfo import ZoneInfo

from alarmsync.domain.engine import AlarmSyncEngine
from alarmsync.domain.errors import SourceUnavailable
from alarmsync.domain.keys import KeyAllocator
from alarmsync.domain.models import DuplicateHandlingMode
from alarmsync.domain.timing import AllDayPolicy
from alarmsync.infrastructure.single_flight import SingleFlight

from conftest import at, make_event, make_rule


def _engine(source, rule_store, store, host, clock, **kwargs):
    kwargs.setdefault("guard", SingleFlight(debounce_seconds=0))
    return AlarmSyncEngine(source, rule_store, store, host, clock=clock, **kwargs)


class TestSchedulingPass:
    def test_meeting_scenario(self, engine, source, rule_store, store, host):
        rule_store.save(make_rule("meeting", 30))
        source.events = [make_event("Team meeting", at(14))]
        result = engine.run_scheduling_pass()
        assert result.success is True
        assert result.scheduled_count == 1
        [alarm] = store.all()
        assert alarm.alarm_instant == at(13, 30)
        assert host.is_registered(alarm.host_registration_key)

    def test_idempotent(self, engine, source, rule_store):
        rule_store.save(make_rule("meeting", 30))
        source.events = [make_event("Team meeting", at(14)), make_event("1:1 meeting", at(16), "e2")]
        first = engine.run_scheduling_pass()
        second = engine.run_scheduling_pass()
        assert first.scheduled_count == 2
        assert second.scheduled_count == 0
        assert second.updated_count == 0
        assert second.skipped_count == 2

    def test_explicit_inputs(self, engine, store):
        result = engine.run_scheduling_pass(
            rules=[make_rule("review", 60)],
            events=[make_event("Code review", at(11))],
        )
        assert result.scheduled_count == 1
        assert store.all()[0].alarm_instant == at(10)

    def test_events_beyond_lookahead_ignored(self, engine, store):
        result = engine.run_scheduling_pass(
            rules=[make_rule("meeting")],
            events=[make_event("meeting", at(9, day=13))],
        )
        assert result.scheduled_count == 0
        assert store.all() == []

    def test_message_summarizes_counts(self, engine, source, rule_store):
        rule_store.save(make_rule("meeting"))
        source.events = [make_event("meeting", at(14))]
        assert engine.run_scheduling_pass().message.startswith("Scheduled 1, updated 0")


class TestDismissal:
    def test_dismissed_alarm_never_reregistered(self, engine, source, rule_store, store, host):
        rule_store.save(make_rule("meeting"))
        source.events = [make_event("meeting", at(14), last_modified=1)]
        engine.run_scheduling_pass()
        alarm = store.all()[0]

        assert engine.dismiss_alarm(alarm.id).dismissed_by_user is True
        assert not host.is_registered(alarm.host_registration_key)
        calls = host.register_calls

        result = engine.run_scheduling_pass()
        assert result.scheduled_count == 0
        assert host.register_calls == calls
        assert len(store.all()) == 1
        assert store.get(alarm.id).dismissed_by_user is True

    def test_event_change_clears_dismissal(self, engine, source, rule_store, store, host):
        rule_store.save(make_rule("meeting"))
        source.events = [make_event("meeting", at(14), last_modified=1)]
        engine.run_scheduling_pass()
        alarm = store.all()[0]
        engine.dismiss_alarm(alarm.id)

        source.events = [make_event("meeting", at(15), last_modified=2)]
        result = engine.run_scheduling_pass()
        refreshed = store.get(alarm.id)
        assert result.updated_count == 1
        assert refreshed.dismissed_by_user is False
        assert refreshed.alarm_instant == at(14, 45)
        assert host.is_registered(refreshed.host_registration_key)

    def test_dismiss_unknown_alarm(self, engine):
        assert engine.dismiss_alarm("nope") is None


class TestDeduplication:
    def test_earliest_only(self, source, rule_store, store, host, clock):
        engine = _engine(source, rule_store, store, host, clock, duplicate_mode=DuplicateHandlingMode.EARLIEST_ONLY)
        for lead in (10, 90, 45):
            rule_store.save(make_rule("standup", lead))
        source.events = [make_event("Standup", at(14))]
        engine.run_scheduling_pass()
        [alarm] = store.all()
        assert alarm.alarm_instant == at(14) - timedelta(minutes=90)

    def test_shortest_lead_time_doctor(self, source, rule_store, store, host, clock):
        engine = _engine(source, rule_store, store, host, clock, duplicate_mode=DuplicateHandlingMode.SHORTEST_LEAD_TIME)
        rule_store.save(make_rule("doctor", 60))
        rule_store.save(make_rule("doctor", 15))
        source.events = [make_event("Doctor checkup", at(14))]
        engine.run_scheduling_pass()
        [alarm] = store.all()
        assert alarm.lead_time == timedelta(minutes=15)

    def test_switching_mode_removes_discarded_alarm(self, engine, source, rule_store, store):
        rule_store.save(make_rule("doctor", 60))
        rule_store.save(make_rule("doctor", 15))
        source.events = [make_event("Doctor checkup", at(14))]
        engine.run_scheduling_pass()
        assert len(store.all()) == 2
        engine.duplicate_mode = DuplicateHandlingMode.LONGEST_LEAD_TIME
        result = engine.run_scheduling_pass()
        assert result.removed_count == 1
        assert [a.lead_time for a in store.all()] == [timedelta(minutes=60)]


class TestCollisions:
    def test_colliding_primary_keys_made_distinct(self, source, rule_store, store, host, clock):
        keys = KeyAllocator(hasher=lambda e, r, a, ks: 7 if a == 0 else 1000 + a)
        engine = _engine(source, rule_store, store, host, clock, keys=keys)
        rule_store.save(make_rule("meeting"))
        source.events = [make_event("meeting", at(14), "e1"), make_event("meeting", at(15), "e2")]
        result = engine.run_scheduling_pass()
        assert result.collision_resolved_count == 1
        stored = {a.event_id: a.host_registration_key for a in store.all()}
        assert stored == {"e1": 7, "e2": 1001}
        assert host.registered_alarm(7).event_id == "e1"
        assert host.registered_alarm(1001).event_id == "e2"

    def test_later_insert_collision_resolved_on_next_pass(self, source, rule_store, store, host, clock):
        keys = KeyAllocator(hasher=lambda e, r, a, ks: 7 if a == 0 else 1000 + a)
        engine = _engine(source, rule_store, store, host, clock, keys=keys)
        rule_store.save(make_rule("meeting"))
        source.events = [make_event("meeting", at(14), "e1")]
        engine.run_scheduling_pass()
        source.events.append(make_event("meeting", at(15), "e2"))
        engine.run_scheduling_pass()
        assert sorted(a.host_registration_key for a in store.all()) == [7, 1001]

    def test_unresolvable_collision_reported(self, source, rule_store, store, host, clock):
        keys = KeyAllocator(max_attempts=2, hasher=lambda e, r, a, ks: 7)
        engine = _engine(source, rule_store, store, host, clock, keys=keys)
        rule_store.save(make_rule("meeting"))
        source.events = [make_event("meeting", at(14), "e1"), make_event("meeting", at(15), "e2")]
        result = engine.run_scheduling_pass()
        assert result.scheduled_count == 1
        assert result.success is False
        assert [f.kind for f in result.failures] == ["collision_unresolved"]


class TestAllDay:
    def test_wall_clock_time_regardless_of_lead(self, source, rule_store, store, host, clock):
        engine = _engine(source, rule_store, store, host, clock, all_day=AllDayPolicy(20, 0, "Europe/Berlin"))
        rule_store.save(make_rule("holiday", 600))
        source.events = [make_event("Holiday", at(0, day=11), duration_minutes=24 * 60, is_all_day=True)]
        engine.run_scheduling_pass()
        [alarm] = store.all()
        assert alarm.alarm_instant.astimezone(ZoneInfo("Europe/Berlin")).time() == time(20, 0)

    def test_timezone_change_moves_all_day_alarms(self, engine, source, rule_store, store, host):
        rule_store.save(make_rule("holiday"))
        source.events = [make_event("Holiday", at(0, day=11), duration_minutes=24 * 60, is_all_day=True)]
        engine.run_scheduling_pass()
        assert store.all()[0].alarm_instant == at(20, day=11)

        result = engine.handle_timezone_change("Europe/Berlin")
        assert result.updated_count == 1
        alarm = store.all()[0]
        assert alarm.alarm_instant == at(19, day=11)
        assert host.registered_alarm(alarm.host_registration_key).alarm_instant == at(19, day=11)


    def test_all_day_event_already_underway_gets_no_alarm(self, engine, source, rule_store, store, host):
        rule_store.save(make_rule("holiday"))
        source.events = [make_event("Holiday", at(0), duration_minutes=24 * 60, is_all_day=True)]
        result = engine.run_scheduling_pass()
        assert result.scheduled_count == 0
        assert result.skipped_count == 1
        assert store.all() == []
        assert host.registered_keys() == []

class TestFailures:
    def test_row_read_failure_keeps_partial_counts(self, engine, source, rule_store, store, host, monkeypatch):
        real_by_event_id = store.by_event_id

        def flaky(event_id):
            if event_id == "e2":
                raise OSError("row read failed")
            return real_by_event_id(event_id)

        monkeypatch.setattr(store, "by_event_id", flaky)
        rule_store.save(make_rule("meeting"))
        source.events = [
            make_event("meeting", at(14), "e1"),
            make_event("meeting", at(15), "e2"),
            make_event("meeting", at(16), "e3"),
        ]
        result = engine.run_scheduling_pass()

        assert result.success is False
        assert result.scheduled_count == 2
        assert [(f.kind, f.event_id) for f in result.failures] == [("store_failure", "e2")]
        assert len(host.registered_keys()) == 2

    def test_source_unavailable_leaves_store_untouched(self, engine, source, rule_store, store, host):
        rule_store.save(make_rule("meeting"))
        source.events = [make_event("meeting", at(14))]
        engine.run_scheduling_pass()
        before = store.all()

        source.fail = True
        source.events = []
        result = engine.run_scheduling_pass()
        assert result.success is False
        assert [f.kind for f in result.failures] == ["source_unavailable"]
        assert store.all() == before

    def test_rule_store_failure(self, engine, rule_store):
        rule_store.fail = True
        result = engine.run_scheduling_pass()
        assert result.success is False
        assert result.failures[0].kind == "source_unavailable"

    def test_invalid_rule_does_not_abort_pass(self, engine, store):
        result = engine.run_scheduling_pass(
            rules=[make_rule("meet(ing", rule_id="bad"), make_rule("meeting", rule_id="good")],
            events=[make_event("Team meeting", at(14))],
        )
        assert result.success is True
        assert result.scheduled_count == 1
        assert [f.kind for f in result.failures] == ["invalid_rule"]
        assert result.failures[0].rule_id == "bad"

    def test_registration_failure_is_per_alarm(self, engine, source, rule_store, store, host):
        rule_store.save(make_rule("meeting"))
        source.events = [make_event("meeting", at(14), "e1"), make_event("meeting", at(15), "e2")]
        host.reject_events = {"e2"}
        result = engine.run_scheduling_pass()
        assert result.scheduled_count == 1
        assert result.success is False
        assert result.failures[0].event_id == "e2"
        assert len(store.all()) == 2

    def test_host_without_exact_capability(self, engine, source, rule_store, store, host):
        host.exact = False
        rule_store.save(make_rule("meeting"))
        source.events = [make_event("meeting", at(14))]
        result = engine.run_scheduling_pass()
        assert host.register_calls == 0
        assert result.scheduled_count == 0
        assert result.success is False
        assert len(store.all()) == 1

    def test_vanished_event_removed(self, engine, source, rule_store, store, host):
        rule_store.save(make_rule("meeting"))
        source.events = [make_event("meeting", at(14))]
        engine.run_scheduling_pass()
        source.events = []
        result = engine.run_scheduling_pass()
        assert result.removed_count == 1
        assert store.all() == []
        assert host.registered_keys() == []


class TestGuard:
    def test_reentrant_call_dropped(self, engine, source, rule_store):
        rule_store.save(make_rule("meeting"))
        source.events = [make_event("meeting", at(14))]
        with engine.guard.attempt("reconcile") as owned:
            assert owned
            result = engine.run_scheduling_pass()
        assert result.dropped is True
        assert result.scheduled_count == 0

    def test_back_to_back_passes_both_run(self, source, rule_store, store, host, clock):
        engine = _engine(source, rule_store, store, host, clock, guard=SingleFlight())
        rule_store.save(make_rule("meeting"))
        assert engine.run_scheduling_pass().scheduled_count == 0

        source.events = [make_event("Team meeting", at(14))]
        assert engine.guard.in_flight is False
        result = engine.run_scheduling_pass()

        assert result.dropped is False
        assert result.scheduled_count == 1
        assert len(store.all()) == 1


class TestMatchEvent:
    def test_preview_uses_stored_rules(self, engine, rule_store, store):
        rule_store.save(make_rule("meeting", 30))
        rule_store.save(make_rule("lunch", 10))
        matches = engine.match_event(make_event("Team meeting", at(14)))
        assert [m.rule.pattern for m in matches] == ["meeting"]
        assert store.all() == []

    def test_preview_source_failure(self, engine, rule_store):
        rule_store.fail = True
        with pytest.raises(SourceUnavailable):
            engine.match_event(make_event("x", at(14)))


class TestRuleManagement:
    def test_disable_cancels_and_enable_reschedules(self, engine, source, rule_store, store, host):
        rule = make_rule("meeting")
        rule_store.save(rule)
        source.events = [make_event("meeting", at(14))]
        engine.run_scheduling_pass()

        disabled = engine.set_rule_enabled(rule.id, False)
        assert disabled.success and disabled.alarms_cancelled == 1
        assert store.all() == [] and host.registered_keys() == []

        enabled = engine.set_rule_enabled(rule.id, True)
        assert enabled.success and enabled.alarms_scheduled == 1
        assert len(store.all()) == 1

    def test_update_rule_rebuilds_alarms(self, engine, source, rule_store, store):
        rule = make_rule("meeting", 15)
        rule_store.save(rule)
        source.events = [make_event("meeting", at(14))]
        engine.run_scheduling_pass()

        result = engine.update_rule(replace(rule, lead_time=timedelta(minutes=60)))
        assert result.success
        assert (result.alarms_cancelled, result.alarms_scheduled) == (1, 1)
        assert store.all()[0].alarm_instant == at(13)

    def test_update_rejects_invalid_rule(self, engine, rule_store):
        rule = make_rule("meeting")
        rule_store.save(rule)
        result = engine.update_rule(replace(rule, lead_time=timedelta(0)))
        assert result.success is False
        assert rule_store.get(rule.id).lead_time == timedelta(minutes=15)

    def test_delete_rule(self, engine, source, rule_store, store):
        rule = make_rule("meeting")
        rule_store.save(rule)
        source.events = [make_event("meeting", at(14))]
        engine.run_scheduling_pass()
        result = engine.delete_rule(rule.id)
        assert result.success and result.alarms_cancelled == 1
        assert rule_store.get(rule.id) is None
        assert store.all() == []

    def test_unknown_rule(self, engine):
        assert engine.delete_rule("missing").success is False
        assert engine.set_rule_enabled("missing", True).success is False

    def test_add_rule_schedules_immediately(self, engine, source, store):
        source.events = [make_event("Dentist appointment", at(15))]
        result = engine.add_rule(make_rule("appointment", 30))
        assert result.success and result.alarms_scheduled == 1
        assert store.all()[0].alarm_instant == at(14, 30)


class TestSystemState:
    def test_reports_missing_registrations(self, engine, source, rule_store, host, store):
        rule_store.save(make_rule("meeting"))
        source.events = [make_event("meeting", at(14), "e1"), make_event("meeting", at(15), "e2")]
        engine.run_scheduling_pass()
        host.drop(store.all()[0].host_registration_key)

        health = engine.validate_system_state()
        assert health.total_alarms == 2
        assert health.registered_alarms == 1
        assert health.missing_alarms == 1
        assert health.health_score == 50
        assert health.healthy is True
        assert health.warnings

    def test_capability_issue(self, engine, host):
        host.exact = False
        health = engine.validate_system_state()
        assert health.healthy is False
        assert health.health_score == 100

    def test_cleanup_expired(self, engine, source, rule_store, store, clock):
        rule_store.save(make_rule("meeting"))
        source.events = [make_event("meeting", at(14))]
        engine.run_scheduling_pass()
        clock.advance(days=2)
        assert engine.cleanup_expired() == 1
        assert store.all() == []
