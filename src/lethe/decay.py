"""
Lethe decay -- fact lifetime: access refresh, confidence decay, pruning, consolidation.

Tier TTLs live in lethe.types.TTL_DEFAULTS. The engine only talks to the
store through its maintenance primitives, so it can run as an independent
pass from the CLI, a cron job or a long-running server.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from lethe.types import Fact, now_ts

logger = logging.getLogger("lethe.decay")

CONFIDENCE_FLOOR = 0.1
STALE_FRACTION = 0.75

# ---------------------------------------------------------------------------
# Tier classifier -- heuristic default, first matching rule wins.
# Callers that need determinism pass an explicit tier instead.
# ---------------------------------------------------------------------------

_TIER_RULES: List[Tuple[str, "re.Pattern[str]"]] = [
    ("permanent", re.compile(
        r"\b(my name|name is|i am|i'm a|born|birthday|allergic|identity|pronouns?|"
        r"always|never|decided|decision|we chose|convention|prefers?|favou?rite)\b",
        re.IGNORECASE,
    )),
    ("session", re.compile(
        r"\b(right now|for now|today|tonight|this session|temporar(y|ily)|at the moment)\b",
        re.IGNORECASE,
    )),
    ("active", re.compile(
        r"\b(currently|this week|next week|this sprint|working on|in progress|deadline|"
        r"this month|blocked on|wip)\b",
        re.IGNORECASE,
    )),
]


def classify_decay_class(text: str) -> str:
    """Infer a decay tier from free text. Defaults to 'stable'."""
    for tier, pattern in _TIER_RULES:
        if pattern.search(text or ""):
            return tier
    return "stable"


# ---------------------------------------------------------------------------
# Metadata merge
# ---------------------------------------------------------------------------


def merge_metadata(keeper: Fact, absorbed: Iterable[Fact]) -> Dict[str, Any]:
    """Merge duplicate metadata into the survivor's.

    Keys already on the keeper win. `tags` are unioned and `merged_from`
    accumulates the ids of every absorbed fact.
    """
    merged: Dict[str, Any] = {}
    tags: List[str] = []
    merged_from: List[str] = list((keeper.metadata or {}).get("merged_from") or [])
    for fact in absorbed:
        meta = fact.metadata or {}
        for key, value in meta.items():
            if key not in ("tags", "merged_from"):
                merged.setdefault(key, value)
        tags.extend(t for t in meta.get("tags") or [] if isinstance(t, str))
        merged_from.extend(meta.get("merged_from") or [])
        merged_from.append(fact.id)

    keeper_meta = keeper.metadata or {}
    merged.update({k: v for k, v in keeper_meta.items() if k not in ("tags", "merged_from")})
    all_tags = [t for t in keeper_meta.get("tags") or [] if isinstance(t, str)] + tags
    if all_tags:
        merged["tags"] = list(dict.fromkeys(all_tags))
    if merged_from:
        merged["merged_from"] = list(dict.fromkeys(merged_from))
    return merged


def is_stale(fact: Fact, now: int) -> bool:
    """More than 75% of the lifetime since last access has elapsed."""
    if fact.expires_at is None:
        return False
    last = fact.last_accessed if fact.last_accessed is not None else fact.created_at
    return (now - last) > STALE_FRACTION * (fact.expires_at - last)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class DecayEngine:
    """Maintenance passes over a SQLiteStore."""

    def __init__(self, store):
        self.store = store

    def refresh_access(self, fact_ids: Iterable[str], now: Optional[int] = None) -> int:
        """Renew expiry for stable/active facts. Returns how many were renewed."""
        return self.store.touch(fact_ids, now=now)

    def decay_confidence(self, now: Optional[int] = None) -> Dict[str, int]:
        """Halve confidence of stale facts, then delete anything under the floor."""
        now = now_ts() if now is None else now
        updates = [
            (fact.id, fact.confidence / 2.0)
            for fact in self.store.unexpired_facts(now=now)
            if is_stale(fact, now)
        ]
        self.store.set_confidence(updates)
        doomed = self.store.low_confidence_ids(CONFIDENCE_FLOOR)
        deleted = self.store.delete_facts(doomed)
        if updates or deleted:
            logger.info("decay: halved %d, deleted %d below %.2f", len(updates), deleted, CONFIDENCE_FLOOR)
        return {"decayed": len(updates), "deleted": deleted}

    def prune(self, now: Optional[int] = None) -> int:
        """Delete every fact whose expiry has passed. Idempotent."""
        removed = self.store.delete_facts(self.store.expired_ids(now=now))
        if removed:
            logger.info("prune: removed %d expired facts", removed)
        return removed

    def consolidate(self, now: Optional[int] = None) -> Dict[str, int]:
        """Collapse unexpired facts sharing (persona, entity, key) into one.

        The highest-confidence fact survives (ties go to the newest). Its
        metadata absorbs the others', links are re-pointed to it, and the rest
        are deleted. Facts with corrupt metadata are skipped, not deleted.
        """
        groups: Dict[Tuple[str, str, str], List[Fact]] = {}
        skipped = 0
        for fact, metadata_ok in self.store.consolidation_candidates(now=now):
            if not metadata_ok:
                skipped += 1
                continue
            group_key = (fact.persona, fact.entity.lower(), fact.key.lower())
            groups.setdefault(group_key, []).append(fact)

        merged_groups = 0
        removed = 0
        for facts in groups.values():
            if len(facts) < 2:
                continue
            ranked = sorted(facts, key=lambda f: (f.confidence, f.created_at), reverse=True)
            keeper, losers = ranked[0], ranked[1:]
            self.store.replace_metadata(keeper.id, merge_metadata(keeper, losers) or None)
            for loser in losers:
                self.store.repoint_links(loser.id, keeper.id)
            removed += self.store.delete_facts(f.id for f in losers)
            merged_groups += 1
            logger.debug("consolidate: kept %s, absorbed %s", keeper.id, [f.id for f in losers])

        if merged_groups:
            logger.info("consolidate: %d groups, %d duplicates removed", merged_groups, removed)
        return {"groups": merged_groups, "merged": removed, "skipped": skipped}

    def run_all(self, now: Optional[int] = None) -> Dict[str, Any]:
        """Prune, decay and consolidate in that order."""
        now = now_ts() if now is None else now
        return {
            "pruned": self.prune(now=now),
            "decay": self.decay_confidence(now=now),
            "consolidate": self.consolidate(now=now),
        }
