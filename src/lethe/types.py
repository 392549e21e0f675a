"""
Lethe types -- the Fact record plus the decay-tier and category vocabularies.

All instants are integer Unix seconds (UTC).
"""

import time
from typing import Any, Dict, Optional

# Decay tier -> default TTL in seconds. None means the fact never expires.
TTL_DEFAULTS: Dict[str, Optional[int]] = {
    "permanent": None,
    "stable": 90 * 24 * 3600,
    "active": 14 * 24 * 3600,
    "session": 24 * 3600,
    "checkpoint": 4 * 3600,
}

DECAY_CLASSES = tuple(TTL_DEFAULTS)
DEFAULT_DECAY_CLASS = "stable"

# Tiers whose expiry is pushed forward when a fact is read.
REFRESHABLE_CLASSES = frozenset({"stable", "active"})

CATEGORIES = ("preference", "fact", "decision", "convention", "reference", "project", "other")
DEFAULT_CATEGORY = "fact"

SHARED_PERSONA = "shared"


def now_ts() -> int:
    """Current Unix time in whole seconds."""
    return int(time.time())


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def ttl_for(decay_class: str) -> Optional[int]:
    return TTL_DEFAULTS.get(decay_class, TTL_DEFAULTS[DEFAULT_DECAY_CLASS])


def compute_expiry(decay_class: str, from_ts: int) -> Optional[int]:
    """Absolute expiry for a tier refreshed at *from_ts*, or None if it never expires."""
    ttl = ttl_for(decay_class)
    return None if ttl is None else from_ts + ttl


def default_text(entity: str, key: Optional[str], value: str) -> str:
    return f"{entity} {key or ''}: {value}"


class Fact:
    """A single durable statement owned by a persona."""

    __slots__ = (
        "id",
        "persona",
        "entity",
        "key",
        "value",
        "text",
        "category",
        "decay_class",
        "importance",
        "source",
        "created_at",
        "expires_at",
        "last_accessed",
        "confidence",
        "metadata",
    )

    def __init__(
        self,
        id: str,
        entity: str,
        value: str,
        persona: str = SHARED_PERSONA,
        key: Optional[str] = None,
        text: Optional[str] = None,
        category: str = DEFAULT_CATEGORY,
        decay_class: str = DEFAULT_DECAY_CLASS,
        importance: float = 1.0,
        source: Optional[str] = None,
        created_at: Optional[int] = None,
        expires_at: Optional[int] = None,
        last_accessed: Optional[int] = None,
        confidence: float = 1.0,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        self.id = id
        self.persona = persona
        self.entity = entity
        self.key = key
        self.value = value
        self.text = text or default_text(entity, key, value)
        self.category = category
        self.decay_class = decay_class
        self.importance = clamp01(importance)
        self.source = source
        self.created_at = created_at if created_at is not None else now_ts()
        self.expires_at = expires_at
        self.last_accessed = last_accessed if last_accessed is not None else self.created_at
        self.confidence = clamp01(confidence)
        self.metadata = metadata

    def is_expired(self, now: Optional[int] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at < (now if now is not None else now_ts())

    def label(self) -> str:
        """Short `entity.key` label used in listings."""
        return f"{self.entity}.{self.key or '_'}"

    def to_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.__slots__}

    def __repr__(self) -> str:
        return f"Fact(id={self.id!r}, {self.label()}={self.value[:40]!r}, decay={self.decay_class})"
