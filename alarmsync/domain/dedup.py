"""Cross-rule duplicate resolution."""

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from alarmsync.domain.models import DuplicateHandlingMode, MatchResult


@dataclass
class DedupOutcome:
    kept: List[MatchResult] = field(default_factory=list)
    discarded: List[MatchResult] = field(default_factory=list)


def _pick(group: List[MatchResult], mode: DuplicateHandlingMode) -> MatchResult:
    # sorted by rule id so min()/max() return the lexically first on ties
    ordered = sorted(group, key=lambda m: m.rule.id)
    if mode == DuplicateHandlingMode.EARLIEST_ONLY:
        return min(ordered, key=lambda m: m.alarm_instant)
    if mode == DuplicateHandlingMode.LATEST_ONLY:
        return max(ordered, key=lambda m: m.alarm_instant)
    if mode == DuplicateHandlingMode.SHORTEST_LEAD_TIME:
        return min(ordered, key=lambda m: m.rule.lead_time)
    if mode == DuplicateHandlingMode.LONGEST_LEAD_TIME:
        return max(ordered, key=lambda m: m.rule.lead_time)
    raise ValueError(f"unhandled duplicate mode: {mode!r}")


def deduplicate(matches: Iterable[MatchResult], mode: DuplicateHandlingMode) -> DedupOutcome:
    """Reduce matches per event according to ``mode``.

    ALLOW_MULTIPLE keeps everything; every other mode keeps at most one match
    per event id and reports the rest as discarded.
    """
    matches = list(matches)
    if mode == DuplicateHandlingMode.ALLOW_MULTIPLE:
        return DedupOutcome(kept=matches)

    groups: Dict[str, List[MatchResult]] = OrderedDict()
    for match in matches:
        groups.setdefault(match.event.id, []).append(match)

    outcome = DedupOutcome()
    for group in groups.values():
        winner = _pick(group, mode)
        outcome.kept.append(winner)
        outcome.discarded.extend(m for m in group if m is not winner)
    return outcome
