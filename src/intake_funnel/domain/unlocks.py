"""Domain models for paywalled section unlocks."""

from dataclasses import dataclass, field
from enum import StrEnum

KEY_ALIASES = {
    "life_phase": "phase",
    "deep-love": "deep_relationship_analysis",
    "purpose": "life_purpose_soul_mission",
    "shadow": "shadow_work_transformation",
}


class UnlockStatus(StrEnum):
    """Outcomes of an unlock request."""

    UNLOCKED = "unlocked"
    ALREADY_UNLOCKED = "already_unlocked"
    LIMIT_REACHED = "limit_reached"
    PREMIUM_LOCKED = "premium_locked"
    UNLOCKED_ALL = "unlocked_all"
    REDIRECTED = "redirected"


@dataclass
class UnlockState:
    """Client view of which sections are revealed."""

    unlocked_keys: set[str] = field(default_factory=set)
    unlock_count: int = 0
    max_free: int = 2

    @property
    def remaining(self) -> int:
        return max(0, self.max_free - self.unlock_count)


def normalize_unlock_key(key: str) -> str:
    """Resolve legacy section names to their canonical key."""
    cleaned = key.strip()
    return KEY_ALIASES.get(cleaned, cleaned)
