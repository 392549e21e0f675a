"""Tests for Lethe checkpoints -- save/restore of short-lived task state."""

import json

import pytest

from lethe.checkpoint import CheckpointStore
from lethe.errors import ValidationError

T0 = 1_700_000_000


@pytest.fixture
def checkpoints(store):
    return CheckpointStore(store)


# ============================================================================
# save / restore
# ============================================================================


def test_save_then_restore_roundtrip(checkpoints):
    state = {"step": 3, "done": ["parse", "index"], "notes": {"blocked": False}}
    checkpoints.save(
        "migrate the fact schema",
        state,
        expected_outcome="all facts readable",
        working_files=["src/lethe/sqlite_store.py"],
    )
    assert checkpoints.restore() == {
        "intent": "migrate the fact schema",
        "state": state,
        "expected_outcome": "all facts readable",
        "working_files": ["src/lethe/sqlite_store.py"],
    }


def test_optional_fields_default(checkpoints):
    checkpoints.save("tidy up", "halfway")
    payload = checkpoints.restore()
    assert payload["expected_outcome"] is None
    assert payload["working_files"] is None


@pytest.mark.parametrize("files", [None, [], ["a.py", "b.py"]])
def test_working_files_returned_as_saved(checkpoints, files):
    checkpoints.save("tidy up", "halfway", working_files=files)
    assert checkpoints.restore()["working_files"] == files


def test_checkpoint_fact_shape(store, checkpoints):
    fact_id = checkpoints.save("write docs", "outline done", now=T0)
    fact = store.get(fact_id)
    assert fact.entity == "system"
    assert fact.key == "checkpoint:20231114T221320.000000Z"
    assert fact.decay_class == "checkpoint"
    assert fact.expires_at == T0 + 4 * 3600
    assert fact.metadata == {"checkpoint": True}
    assert json.loads(fact.text)["intent"] == "write docs"


def test_newest_wins(checkpoints):
    checkpoints.save("task", "first", now=T0)
    checkpoints.save("task", "second", now=T0 + 60)
    assert checkpoints.restore(now=T0 + 61)["state"] == "second"


def test_expired_checkpoint_not_restored(checkpoints):
    checkpoints.save("task", "state", now=T0)
    assert checkpoints.restore(now=T0 + 4 * 3600) is not None
    assert checkpoints.restore(now=T0 + 4 * 3600 + 1) is None


def test_persona_isolation(checkpoints):
    checkpoints.save("alpha task", "a", persona="alpha")
    assert checkpoints.restore(persona="beta") is None
    assert checkpoints.restore(persona="shared") is None
    assert checkpoints.restore(persona="alpha")["intent"] == "alpha task"


def test_nothing_saved(checkpoints):
    assert checkpoints.restore() is None


# ============================================================================
# Failure handling
# ============================================================================


def test_corrupt_payload_is_not_found(store, checkpoints):
    fact_id = checkpoints.save("task", "state")
    store._conn.execute("UPDATE facts SET text = '{truncated' WHERE id = ?", (fact_id,))
    store._conn.commit()
    assert checkpoints.restore() is None


def test_non_object_payload_is_not_found(store, checkpoints):
    fact_id = checkpoints.save("task", "state")
    store._conn.execute("UPDATE facts SET text = '[1, 2]' WHERE id = ?", (fact_id,))
    store._conn.commit()
    assert checkpoints.restore() is None


@pytest.mark.parametrize("intent,state", [("", "s"), ("   ", "s"), ("task", None), ("task", "  ")])
def test_missing_fields_rejected(store, checkpoints, intent, state):
    with pytest.raises(ValidationError):
        checkpoints.save(intent, state)
    assert store.count() == 0


def test_unserialisable_state_rejected(store, checkpoints):
    with pytest.raises(ValidationError):
        checkpoints.save("task", {"when": object()})
    assert store.count() == 0
