"""Rule Store adapter — rules persisted as a JSON list."""

import sys
import threading
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from pydantic import BaseModel, ValidationError

from alarmsync.ports.outbound import StoragePort
from alarmsync.domain.models import PatternKind, Rule, utcnow
from alarmsync.domain.rules import validate_rule

RULES_KEY = "rules"

DEFAULT_RULES = [
    ("Meetings", "meeting", 15),
    ("Appointments", "appointment", 30),
]


def _log(msg: str):
    print(msg, file=sys.stderr)


class RuleRecord(BaseModel):
    id: str
    name: str
    pattern: str
    lead_time_minutes: int
    calendar_ids: List[str] = []
    enabled: bool = True
    created_at: Optional[datetime] = None
    pattern_kind: Optional[PatternKind] = None

    def to_rule(self) -> Rule:
        created = self.created_at or utcnow()
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return Rule(
            id=self.id,
            name=self.name,
            pattern=self.pattern,
            lead_time=timedelta(minutes=self.lead_time_minutes),
            calendar_scope=frozenset(self.calendar_ids),
            enabled=self.enabled,
            created_at=created,
            pattern_kind=self.pattern_kind,
        )

    @classmethod
    def from_rule(cls, rule: Rule) -> "RuleRecord":
        return cls(
            id=rule.id,
            name=rule.name,
            pattern=rule.pattern,
            lead_time_minutes=rule.lead_time_minutes,
            calendar_ids=sorted(rule.calendar_scope),
            enabled=rule.enabled,
            created_at=rule.created_at,
            pattern_kind=rule.pattern_kind,
        )


class JsonRuleStore:
    """CRUD over ``<storage_dir>/rules.json``; satisfies the RuleStore port."""

    def __init__(self, storage: StoragePort, key: str = RULES_KEY):
        self._storage = storage
        self._key = key
        self._lock = threading.Lock()

    def all(self) -> List[Rule]:
        rules = []
        for item in self._storage.load(self._key):
            try:
                rules.append(RuleRecord.model_validate(item).to_rule())
            except ValidationError as e:
                _log(f"[RuleStore] skipping malformed rule: {e.error_count()} error(s)")
        return rules

    def enabled_valid_rules(self) -> List[Rule]:
        result = []
        for rule in self.all():
            if not rule.enabled:
                continue
            ok, msg = validate_rule(rule)
            if not ok:
                _log(f"[RuleStore] rule {rule.name!r} is invalid: {msg}")
                continue
            result.append(rule)
        return result

    def get(self, rule_id: str) -> Optional[Rule]:
        for rule in self.all():
            if rule.id == rule_id:
                return rule
        return None

    def add(self, rule: Rule) -> Rule:
        with self._lock:
            rules = self.all()
            if any(r.id == rule.id for r in rules):
                raise ValueError(f"rule {rule.id} already exists")
            rules.append(rule)
            self._write(rules)
        return rule

    def update(self, rule: Rule) -> Rule:
        with self._lock:
            rules = self.all()
            for i, existing in enumerate(rules):
                if existing.id == rule.id:
                    rules[i] = rule
                    self._write(rules)
                    return rule
        raise KeyError(rule.id)

    def save(self, rule: Rule) -> None:
        """Insert or replace by id."""
        with self._lock:
            rules = [r for r in self.all() if r.id != rule.id]
            rules.append(rule)
            rules.sort(key=lambda r: r.created_at)
            self._write(rules)

    def delete(self, rule_id: str) -> bool:
        with self._lock:
            rules = self.all()
            remaining = [r for r in rules if r.id != rule_id]
            if len(remaining) == len(rules):
                return False
            self._write(remaining)
            return True

    def create_default_rules(self) -> List[Rule]:
        """Seed the two starter rules when the store is empty."""
        if self.all():
            return []
        created = []
        for name, pattern, minutes in DEFAULT_RULES:
            created.append(self.add(Rule(
                id=Rule.new_id(),
                name=name,
                pattern=pattern,
                lead_time=timedelta(minutes=minutes),
            )))
        _log(f"[RuleStore] created {len(created)} default rule(s)")
        return created

    def _write(self, rules: List[Rule]):
        self._storage.save(
            self._key,
            [RuleRecord.from_rule(r).model_dump(mode="json") for r in rules],
        )
