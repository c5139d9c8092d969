"""Host registration keys: deterministic hashing and collision resolution.

The host identifies alarms by a bounded integer. Keys are derived from the
(event_id, rule_id) pair; when two pairs land on the same key the later one
is perturbed by re-hashing with an attempt counter as salt.
"""

import hashlib
from typing import Callable, Dict, Iterable, List, Tuple

from alarmsync.domain.errors import CollisionUnresolved
from alarmsync.domain.models import Alarm, Pair

# Positive 32-bit signed range, 0 excluded
DEFAULT_KEY_SPACE = 2**31 - 1
DEFAULT_MAX_ATTEMPTS = 20

KeyHasher = Callable[[str, str, int, int], int]


def derive_key(event_id: str, rule_id: str, attempt: int, key_space: int) -> int:
    """Key in 1..key_space for a pair; attempt 0 is the primary hash."""
    material = f"{event_id}\x1f{rule_id}"
    if attempt:
        material += f"\x1f{attempt}"
    digest = hashlib.sha256(material.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % key_space + 1


class KeyAllocator:
    def __init__(
        self,
        key_space: int = DEFAULT_KEY_SPACE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        hasher: KeyHasher = derive_key,
    ):
        if key_space < 1:
            raise ValueError("key_space must be positive")
        self.key_space = key_space
        self.max_attempts = max_attempts
        self._hasher = hasher

    def primary(self, pair: Pair) -> int:
        return self._hasher(pair[0], pair[1], 0, self.key_space)

    def allocate(self, pair: Pair, taken: Dict[int, Pair]) -> Tuple[int, int]:
        """Return (key, attempt) for ``pair`` not owned by another pair in ``taken``.

        Raises CollisionUnresolved after ``max_attempts`` perturbations.
        """
        for attempt in range(self.max_attempts + 1):
            key = self._hasher(pair[0], pair[1], attempt, self.key_space)
            owner = taken.get(key)
            if owner is None or owner == pair:
                return key, attempt
        raise CollisionUnresolved(
            f"no free host key after {self.max_attempts} attempts",
            event_id=pair[0],
            rule_id=pair[1],
        )


def build_registry(alarms: Iterable[Alarm]) -> Tuple[Dict[int, Pair], List[Alarm]]:
    """Map key -> owning pair, oldest row first.

    Returns the registry plus the rows whose key is already owned by a
    different, older pair (those need a new key).
    """
    registry: Dict[int, Pair] = {}
    colliding: List[Alarm] = []
    for alarm in sorted(alarms, key=lambda a: (a.scheduled_at, a.id)):
        owner = registry.get(alarm.host_registration_key)
        if owner is None:
            registry[alarm.host_registration_key] = alarm.pair
        elif owner != alarm.pair:
            colliding.append(alarm)
    return registry, colliding
