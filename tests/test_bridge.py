"""Tests for the Memory facade and environment settings."""
import os

from lethe.config import DEFAULT_EMBEDDING_MODEL, load_settings

T0 = 1_700_000_000


# ============================================================================
# Settings
# ============================================================================


def test_settings_defaults(tmp_lethe_dir):
    settings = load_settings()
    assert settings.db_path == tmp_lethe_dir / "facts.db"
    assert settings.ollama_url == "http://localhost:11434"
    assert settings.embedding_model == DEFAULT_EMBEDDING_MODEL
    assert settings.hyde_enabled is True
    assert settings.provider_timeout == 15.0
    assert settings.api_key is None


def test_settings_overrides(tmp_lethe_dir):
    os.environ["LETHE_DB"] = str(tmp_lethe_dir / "elsewhere.db")
    os.environ["LETHE_OLLAMA_URL"] = "http://a:1"
    os.environ["OLLAMA_URL"] = "http://b:2"
    os.environ["LETHE_HYDE"] = "0"
    os.environ["LETHE_PROVIDER_TIMEOUT"] = "not-a-number"
    settings = load_settings()
    assert settings.db_path.name == "elsewhere.db"
    assert settings.ollama_url == "http://a:1"
    assert settings.hyde_enabled is False
    assert settings.provider_timeout == 15.0


# ============================================================================
# store + embedding
# ============================================================================


def test_store_embeds(memory, provider):
    fact, embedded = memory.store(entity="user", key="name", value="Alice")
    assert embedded is True
    assert provider.embed_calls == ["user name: Alice"]
    blob, model = memory.db.get_embedding(fact.id)
    assert model == provider.embedding_model


def test_store_survives_dead_provider(memory, provider):
    provider.embed_fails = True
    fact, embedded = memory.store(entity="user", key="name", value="Alice")
    assert embedded is False
    assert memory.get(fact.id).value == "Alice"
    assert memory.db.get_embedding(fact.id) is None


def test_store_without_provider(store):
    from lethe.bridge import Memory
    memory = Memory(store=store, provider=None)
    fact, embedded = memory.store(entity="e", value="v")
    assert embedded is False
    assert memory.health()["reachable"] is False


def test_hybrid_uses_configured_hyde_flag(store, provider, tmp_lethe_dir):
    from lethe.bridge import Memory
    os.environ["LETHE_HYDE"] = "0"
    memory = Memory(store=store, provider=provider, settings=load_settings())
    memory.store(entity="project", value="Python tooling")
    memory.hybrid("Python")
    assert provider.expand_calls == []
    memory.hybrid("Python", use_hyde=True)
    assert provider.expand_calls == ["Python"]


def test_lookup_and_delete(memory):
    fact, _ = memory.store(entity="user", key="city", value="Paris")
    assert [f.id for f in memory.lookup("user", key="city")] == [fact.id]
    assert memory.delete(fact.id) is True
    assert memory.delete(fact.id) is False


# ============================================================================
# backfill
# ============================================================================


def test_backfill_in_batches(memory, provider):
    ids = [memory.store(entity="note", value=f"note {i}", embed=False)[0].id for i in range(5)]
    seen = []
    result = memory.backfill_embeddings(batch_size=2, progress=seen.append)
    assert result == {"total": 5, "processed": 5, "failed": 0}
    assert [s["processed"] for s in seen] == [2, 4, 5]
    assert all(memory.db.get_embedding(i) for i in ids)


def test_backfill_resumes(memory, provider):
    for i in range(4):
        memory.store(entity="note", value=f"note {i}", embed=False)
    first = memory.backfill_embeddings(batch_size=10, limit=3)
    assert first["processed"] == 3
    second = memory.backfill_embeddings()
    assert second == {"total": 1, "processed": 1, "failed": 0}
    assert memory.backfill_embeddings()["total"] == 0


def test_backfill_counts_failures(memory, provider):
    memory.store(entity="note", value="a", embed=False)
    provider.embed_fails = True
    assert memory.backfill_embeddings() == {"total": 1, "processed": 0, "failed": 1}
    provider.embed_fails = False
    assert memory.backfill_embeddings()["processed"] == 1


# ============================================================================
# checkpoints / graph / maintenance through the facade
# ============================================================================


def test_checkpoint_roundtrip(memory):
    memory.checkpoint_save("ship v1", {"step": 2}, working_files=["a.py"], persona="alpha")
    assert memory.checkpoint_restore(persona="alpha") == {
        "intent": "ship v1",
        "state": {"step": 2},
        "expected_outcome": None,
        "working_files": ["a.py"],
    }


def test_link_and_traverse(memory):
    a, _ = memory.store(entity="e", value="a", embed=False)
    b, _ = memory.store(entity="e", value="b", embed=False)
    memory.link(a.id, b.id, "depends_on")
    assert [e["relation"] for e in memory.neighbors(a.id)] == ["depends_on"]
    assert [r["fact"].id for r in memory.traverse(b.id)] == [a.id]


def test_stats(memory, provider):
    memory.store(entity="e", value="a")
    stats = memory.stats()
    assert stats["total_facts"] == 1
    assert stats["facts_with_embeddings"] == 1
    assert stats["embedding_model"] == provider.embedding_model


def test_from_settings_builds_everything(tmp_lethe_dir):
    from lethe.bridge import Memory
    memory = Memory.from_settings()
    try:
        assert memory.db.db_path == tmp_lethe_dir / "facts.db"
        assert memory.provider.base_url == "http://localhost:11434"
    finally:
        memory.close()
