"""Tests for Lethe search -- lexical scoring, cosine, vector scan, fusion and hybrid."""
import math
import time

import pytest

from lethe.errors import ValidationError
from lethe.search import (
    SINGLE_CANDIDATE_SCORE,
    build_fts_query,
    cosine_similarity,
    freshness,
    fuse,
    hybrid_search,
    lexical_search,
    normalize_ranks,
    rrf_score,
    vector_search,
)
from lethe.types import Fact

T0 = 1_700_000_000
DAY = 24 * 3600


def _fact(fid, expires_at=None, confidence=1.0):
    return Fact(id=fid, entity="e", value=fid, created_at=T0, expires_at=expires_at, confidence=confidence)


# ============================================================================
# Lexical helpers
# ============================================================================


class TestFtsQuery:
    def test_tokens_quoted_and_ored(self):
        assert build_fts_query("python type hints") == '"python" OR "type" OR "hints"'

    def test_quotes_stripped(self):
        assert build_fts_query('the "user\'s" name') == '"the" OR "users" OR "name"'

    def test_single_chars_dropped(self):
        assert build_fts_query("a b c") == ""
        assert build_fts_query("") == ""


class TestNormalizeRanks:
    def test_single_candidate(self):
        assert normalize_ranks([-4.2]) == [SINGLE_CANDIDATE_SCORE]

    def test_zero_spread(self):
        assert normalize_ranks([-1.5, -1.5, -1.5]) == [0.8, 0.8, 0.8]

    def test_linear_map_best_is_one(self):
        assert normalize_ranks([-4.0, -2.0, 0.0]) == pytest.approx([1.0, 0.5, 0.0])

    def test_empty(self):
        assert normalize_ranks([]) == []


class TestFreshness:
    def test_never_expiring(self):
        assert freshness(_fact("a"), now=T0) == 1.0

    def test_half_window(self):
        assert freshness(_fact("a", expires_at=T0 + 7 * DAY), now=T0) == pytest.approx(0.5)

    def test_clamped(self):
        assert freshness(_fact("a", expires_at=T0 + 90 * DAY), now=T0) == 1.0
        assert freshness(_fact("a", expires_at=T0 - 10), now=T0) == 0.0


# ============================================================================
# Cosine / vector
# ============================================================================


class TestCosine:
    @pytest.mark.parametrize("a,b", [
        ([1.0, 2.0, 3.0], [3.0, -1.0, 0.5]),
        ([0.1, 0.0, -0.7], [-0.2, 0.9, 0.4]),
        ([5.0, 5.0], [-5.0, -5.0]),
    ])
    def test_symmetric_and_bounded(self, a, b):
        ab = cosine_similarity(a, b)
        assert ab == pytest.approx(cosine_similarity(b, a))
        assert -1.0 <= ab <= 1.0

    def test_self_is_one(self):
        v = [0.3, -1.2, 4.4, 0.01]
        assert cosine_similarity(v, v) == pytest.approx(1.0)

    def test_opposite_is_minus_one(self):
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_zero_vector(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 2.0]) == 0.0

    def test_dimension_mismatch(self):
        with pytest.raises(ValueError):
            cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0])


class TestVectorSearch:
    def test_floor_and_order(self, store):
        close = store.store(entity="e", value="close", now=T0)
        near = store.store(entity="e", value="near", now=T0)
        far = store.store(entity="e", value="far", now=T0)
        store.put_embedding(close.id, [1.0, 0.0], "m")
        store.put_embedding(near.id, [1.0, 1.0], "m")
        store.put_embedding(far.id, [0.0, 1.0], "m")
        hits = vector_search(store, [1.0, 0.0], "m", now=T0)
        assert [f.id for f, _ in hits] == [close.id, near.id]
        assert hits[0][1] == pytest.approx(1.0)
        assert hits[1][1] == pytest.approx(1 / math.sqrt(2))

    def test_other_model_ignored(self, store):
        fact = store.store(entity="e", value="v", now=T0)
        store.put_embedding(fact.id, [1.0, 0.0], "other")
        assert vector_search(store, [1.0, 0.0], "m", now=T0) == []

    def test_dimension_mismatch_skipped(self, store):
        ok = store.store(entity="e", value="ok", now=T0)
        odd = store.store(entity="e", value="odd", now=T0)
        store.put_embedding(ok.id, [1.0, 0.0], "m")
        store.put_embedding(odd.id, [1.0, 0.0, 0.0], "m")
        assert [f.id for f, _ in vector_search(store, [1.0, 0.0], "m", now=T0)] == [ok.id]

    def test_zero_query(self, store):
        assert vector_search(store, [0.0, 0.0], "m") == []


# ============================================================================
# Fusion
# ============================================================================


class TestFusion:
    def test_rrf(self):
        assert rrf_score(1, 1) == pytest.approx(2 / 61)
        assert rrf_score(None, 3) == pytest.approx(1 / 63)
        assert rrf_score(None, None) == 0.0

    def test_top_in_both_composite(self):
        fact = _fact("fact-a", expires_at=T0 + 7 * DAY, confidence=0.6)
        results = fuse({fact.id: (fact, -3.0, "fts:q")}, [(fact, 0.9)], limit=5, now=T0)
        assert len(results) == 1
        expected = 2 / (60 + 1) * 0.7 + 0.5 * 0.2 + 0.6 * 0.1
        assert results[0].score == pytest.approx(expected)
        assert results[0].sources == ["fts:q", "vector"]

    def test_both_paths_beat_one(self):
        both = _fact("both")
        lex_only = _fact("lex")
        vec_only = _fact("vec")
        lexical = {
            "lex": (lex_only, -9.0, "fts:q"),
            "both": (both, -5.0, "fts:q"),
        }
        results = fuse(lexical, [(both, 0.8), (vec_only, 0.95)], limit=5, now=T0)
        assert results[0].fact.id == "both"
        assert {r.fact.id for r in results} == {"both", "lex", "vec"}

    def test_limit(self):
        facts = [_fact(f"f{i}") for i in range(5)]
        results = fuse({}, [(f, 0.9) for f in facts], limit=2, now=T0)
        assert [r.fact.id for r in results] == ["f0", "f1"]


# ============================================================================
# lexical_search / hybrid_search
# ============================================================================


def _seed(store):
    store.store(entity="project", key="language", value="Python with strict type hints", now=T0)
    store.store(entity="project", key="database", value="SQLite in WAL mode", now=T0, confidence=0.7)
    store.store(entity="user", key="editor", value="prefers neovim for Python", now=T0,
                decay_class="active")
    store.store(entity="user", key="pet", value="a cat called Miso", now=T0, decay_class="permanent")


class TestLexicalSearch:
    def test_empty_query_rejected(self, store):
        with pytest.raises(ValidationError):
            lexical_search(store, "   ")

    def test_single_hit_score(self, store):
        fact = store.store(entity="user", key="pet", value="a cat called Miso", decay_class="permanent", now=T0)
        results = lexical_search(store, "Miso", now=T0)
        assert [r.fact.id for r in results] == [fact.id]
        assert results[0].score == pytest.approx(0.6 * 0.8 + 0.25 * 1.0 + 0.15 * 1.0)
        assert results[0].sources == ["fts:Miso"]

    def test_persona_filter(self, store):
        store.store(entity="notes", value="zebra crossing", persona="alpha", now=T0)
        store.store(entity="notes", value="zebra stripes", persona="beta", now=T0)
        results = lexical_search(store, "zebra", persona="alpha", now=T0)
        assert [r.fact.persona for r in results] == ["alpha"]

    def test_no_match(self, store):
        _seed(store)
        assert lexical_search(store, "kubernetes", now=T0) == []

    @pytest.mark.parametrize("limit", [0, -1, "many"])
    def test_bad_limit_rejected(self, store, limit):
        _seed(store)
        with pytest.raises(ValidationError):
            lexical_search(store, "Python", limit=limit, now=T0)


class TestHybridSearch:
    def test_dead_provider_matches_lexical(self, store, provider):
        _seed(store)
        provider.embed_fails = True
        provider.expand_fails = True
        hybrid = hybrid_search(store, provider, "Python", limit=5, now=T0)
        lexical = lexical_search(store, "Python", limit=5, now=T0)
        assert [(r.fact.id, r.score) for r in hybrid] == [(r.fact.id, r.score) for r in lexical]

    def test_unreachable_expansion_equals_no_expansion(self, store, provider):
        _seed(store)
        provider.expansions["Python tooling"] = "SQLite database in WAL mode"
        provider.expand_fails = True
        degraded = hybrid_search(store, provider, "Python tooling", limit=6, now=T0)
        provider.expand_fails = False
        disabled = hybrid_search(store, provider, "Python tooling", limit=6, use_hyde=False, now=T0)
        assert [(r.fact.id, r.score) for r in degraded] == [(r.fact.id, r.score) for r in disabled]

    def test_no_provider_is_lexical(self, store):
        _seed(store)
        results = hybrid_search(store, None, "Python", now=T0)
        assert results
        assert all(s.startswith("fts:") for r in results for s in r.sources)

    def test_expansion_adds_candidates(self, store, provider):
        _seed(store)
        provider.embed_fails = True
        provider.expansions["pets"] = "a cat named Miso"
        results = hybrid_search(store, provider, "pets", now=T0)
        assert [r.fact.value for r in results] == ["a cat called Miso"]
        assert results[0].sources[0].startswith("fts:a cat named")

    def test_vector_path_fused(self, store, provider):
        fact = store.store(entity="user", key="pet", value="a cat called Miso", now=T0)
        provider.vectors["feline companion"] = [1.0, 0.0, 0.0]
        store.put_embedding(fact.id, [0.9, 0.1, 0.0], provider.embedding_model)
        results = hybrid_search(store, provider, "feline companion", use_hyde=False, now=T0)
        assert [r.fact.id for r in results] == [fact.id]
        assert results[0].sources == ["vector"]

    def test_calls_each_provider_once(self, store, provider):
        _seed(store)
        hybrid_search(store, provider, "Python", now=T0)
        assert provider.expand_calls == ["Python"]
        assert provider.embed_calls == ["Python"]

    def test_flags_skip_provider_calls(self, store, provider):
        _seed(store)
        hybrid_search(store, provider, "Python", use_hyde=False, use_vector=False, now=T0)
        assert provider.expand_calls == []
        assert provider.embed_calls == []

    def test_empty_query_rejected(self, store, provider):
        with pytest.raises(ValidationError):
            hybrid_search(store, provider, "")

    @pytest.mark.parametrize("limit", [0, -1])
    def test_bad_limit_rejected(self, store, provider, limit):
        _seed(store)
        with pytest.raises(ValidationError):
            hybrid_search(store, provider, "Python", limit=limit, now=T0)
        assert provider.expand_calls == []

    def test_provider_calls_run_concurrently(self, store, provider):
        _seed(store)
        provider.expand_delay = 0.5
        provider.embed_delay = 0.5
        start = time.monotonic()
        hybrid_search(store, provider, "Python", now=T0)
        elapsed = time.monotonic() - start
        assert provider.expand_calls == ["Python"]
        assert provider.embed_calls == ["Python"]
        assert elapsed < 0.9

    def test_hung_expansion_bounded_by_timeout(self, store, provider):
        _seed(store)
        provider.timeout = 0.2
        provider.expansions["Python"] = "SQLite database in WAL mode"
        provider.expand_delay = 3.0
        start = time.monotonic()
        degraded = hybrid_search(store, provider, "Python", now=T0)
        elapsed = time.monotonic() - start
        assert elapsed < 2.0
        provider.expand_delay = 0.0
        disabled = hybrid_search(store, provider, "Python", use_hyde=False, now=T0)
        assert [(r.fact.id, r.score) for r in degraded] == [(r.fact.id, r.score) for r in disabled]

    def test_provider_exception_degrades(self, store, provider):
        _seed(store)

        def boom(query):
            raise RuntimeError("model server crashed")

        provider.expand = boom
        provider.embed_fails = True
        results = hybrid_search(store, provider, "Python", now=T0)
        assert results
