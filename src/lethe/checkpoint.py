"""
Lethe checkpoints -- task state saved as short-lived facts.

A checkpoint is an ordinary fact with entity "system", key
"checkpoint:<timestamp>" and the checkpoint decay tier (4h). Its text holds
the JSON payload; restore() returns the newest unexpired one for a persona.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from lethe.errors import ValidationError
from lethe.types import SHARED_PERSONA, now_ts

logger = logging.getLogger("lethe.checkpoint")

CHECKPOINT_ENTITY = "system"
CHECKPOINT_KEY_PREFIX = "checkpoint:"


class CheckpointStore:
    def __init__(self, store):
        self.store = store

    def save(
        self,
        intent: str,
        state: Any,
        expected_outcome: Optional[str] = None,
        working_files: Optional[List[str]] = None,
        persona: str = SHARED_PERSONA,
        now: Optional[int] = None,
    ) -> str:
        """Persist a checkpoint and return its fact id."""
        if not intent or not str(intent).strip():
            raise ValidationError("checkpoint intent is required")
        if state is None or (isinstance(state, str) and not state.strip()):
            raise ValidationError("checkpoint state is required")
        payload = {
            "intent": intent,
            "state": state,
            "expected_outcome": expected_outcome,
            "working_files": None if working_files is None else list(working_files),
        }
        try:
            text = json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"checkpoint state is not serialisable: {e}") from e

        when = datetime.now(timezone.utc) if now is None else datetime.fromtimestamp(now, timezone.utc)
        stamp = when.strftime("%Y%m%dT%H%M%S.%fZ")
        fact = self.store.store(
            entity=CHECKPOINT_ENTITY,
            key=f"{CHECKPOINT_KEY_PREFIX}{stamp}",
            value=str(intent).strip()[:200],
            text=text,
            category="project",
            decay_class="checkpoint",
            persona=persona or SHARED_PERSONA,
            source="checkpoint",
            metadata={"checkpoint": True},
            now=now,
        )
        logger.info("Saved checkpoint %s for persona %s", fact.id, fact.persona)
        return fact.id

    def restore(self, persona: str = SHARED_PERSONA, now: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """Return the newest unexpired checkpoint payload, or None.

        Only the persona's own checkpoints are considered. A corrupt payload
        counts as no checkpoint.
        """
        now = now_ts() if now is None else now
        facts = self.store.select_facts(
            """f.entity = ? AND f.key LIKE ? AND f.decay_class = 'checkpoint'
               AND f.persona = ? AND (f.expires_at IS NULL OR f.expires_at >= ?)""",
            (CHECKPOINT_ENTITY, f"{CHECKPOINT_KEY_PREFIX}%", persona or SHARED_PERSONA, now),
            order="f.created_at DESC, f.key DESC",
        )
        if not facts:
            return None
        latest = facts[0]
        try:
            payload = json.loads(latest.text)
        except (TypeError, ValueError):
            logger.warning("Checkpoint %s has a corrupt payload; ignoring", latest.id)
            return None
        if not isinstance(payload, dict):
            logger.warning("Checkpoint %s payload is not an object; ignoring", latest.id)
            return None
        return payload
