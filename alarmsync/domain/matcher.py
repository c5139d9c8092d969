"""Rule matching — events x rules -> match results.

Pure logic: no store or host access. A rule whose pattern cannot be compiled
is dropped for the current pass and reported as InvalidRule.
"""

import sys
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Pattern, Tuple

from alarmsync.domain.errors import Failure, InvalidRule
from alarmsync.domain.models import Event, MatchResult, Rule
from alarmsync.domain.rules import compile_pattern
from alarmsync.domain.timing import AllDayPolicy, compute_alarm_instant


def _log(msg: str):
    print(msg, file=sys.stderr)


@dataclass
class MatchOutcome:
    matches: List[MatchResult] = field(default_factory=list)
    invalid_rules: List[Failure] = field(default_factory=list)

    @property
    def invalid_rule_ids(self) -> set:
        return {f.rule_id for f in self.invalid_rules}


def title_matches(title: str, rule: Rule, compiled: Optional[Pattern]) -> bool:
    if compiled is not None:
        return compiled.search(title) is not None
    return rule.pattern.casefold() in title.casefold()


class RuleMatcher:
    """Matches events against rules and computes each match's alarm instant."""

    def __init__(self, all_day: Optional[AllDayPolicy] = None):
        self.all_day = all_day or AllDayPolicy()

    def prepare(self, rules: Iterable[Rule]) -> Tuple[List[Tuple[Rule, Optional[Pattern]]], List[Failure]]:
        """Compile enabled rules once per pass; collect InvalidRule failures."""
        prepared = []
        invalid: List[Failure] = []
        for rule in rules:
            if not rule.enabled:
                continue
            try:
                if not rule.pattern or not rule.pattern.strip():
                    raise InvalidRule("pattern cannot be empty", rule_id=rule.id)
                prepared.append((rule, compile_pattern(rule)))
            except InvalidRule as e:
                _log(f"[Matcher] skipping rule {rule.name!r}: {e.message}")
                invalid.append(Failure.from_error(e))
        return prepared, invalid

    def find_matches(self, events: Iterable[Event], rules: Iterable[Rule]) -> MatchOutcome:
        prepared, invalid = self.prepare(rules)
        outcome = MatchOutcome(invalid_rules=invalid)
        for event in events:
            outcome.matches.extend(self._match_prepared(event, prepared))
        outcome.matches.sort(key=lambda m: (m.alarm_instant, m.event.id, m.rule.id))
        return outcome

    def match_event(self, event: Event, rules: Iterable[Rule]) -> List[MatchResult]:
        """Preview helper: every rule that matches one event."""
        prepared, _ = self.prepare(rules)
        return sorted(self._match_prepared(event, prepared), key=lambda m: (m.alarm_instant, m.rule.id))

    def _match_prepared(self, event: Event, prepared) -> List[MatchResult]:
        results = []
        for rule, compiled in prepared:
            # scope check first, before any pattern work
            if not rule.in_scope(event.calendar_id):
                continue
            if title_matches(event.title, rule, compiled):
                results.append(MatchResult(
                    event=event,
                    rule=rule,
                    alarm_instant=compute_alarm_instant(event, rule, self.all_day),
                ))
        return results
