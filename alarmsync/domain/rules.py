"""Rule pattern compilation and structural validation."""

import re
from typing import Optional, Pattern, Tuple

from alarmsync.domain.errors import InvalidRule
from alarmsync.domain.models import MAX_LEAD_TIME, MIN_LEAD_TIME, PatternKind, Rule


def compile_pattern(rule: Rule) -> Optional[Pattern]:
    """Compile a regex rule. Substring rules return None.

    Raises InvalidRule when the pattern does not compile.
    """
    if rule.pattern_kind != PatternKind.REGEX:
        return None
    try:
        return re.compile(rule.pattern, re.IGNORECASE)
    except re.error as e:
        raise InvalidRule(f"invalid regex pattern {rule.pattern!r}: {e}", rule_id=rule.id)


def validate_pattern(pattern: str) -> Tuple[bool, str]:
    """Check a pattern as typed by a user. Returns (ok, message)."""
    if not pattern or not pattern.strip():
        return False, "Pattern cannot be empty"
    if PatternKind.detect(pattern) == PatternKind.REGEX:
        try:
            re.compile(pattern, re.IGNORECASE)
        except re.error as e:
            return False, f"Invalid regex pattern: {e}"
    return True, ""


def validate_rule(rule: Rule) -> Tuple[bool, str]:
    if not rule.name or not rule.name.strip():
        return False, "Rule name cannot be empty"
    if not (MIN_LEAD_TIME <= rule.lead_time <= MAX_LEAD_TIME):
        return False, (
            f"Lead time must be between {int(MIN_LEAD_TIME.total_seconds() // 60)} "
            f"and {int(MAX_LEAD_TIME.total_seconds() // 60)} minutes"
        )
    if rule.pattern_kind == PatternKind.REGEX:
        try:
            compile_pattern(rule)
        except InvalidRule as e:
            return False, e.message
        return True, ""
    return validate_pattern(rule.pattern)


def is_valid(rule: Rule) -> bool:
    return validate_rule(rule)[0]
