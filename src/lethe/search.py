"""
Lethe search -- lexical (FTS5/BM25), vector (cosine) and rank fusion.

Hybrid pipeline:
    expansion  ||  query embedding  ||  lexical(original query)
        -> lexical(expansion variants)
        -> vector scan
        -> reciprocal-rank fusion + freshness/confidence composite

When no query embedding is available (provider down, or vector path disabled)
the hybrid search falls back to the lexical-only composite, so a dead
provider yields exactly what `search` would return.
"""

import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from lethe.errors import ValidationError
from lethe.types import Fact, now_ts

logger = logging.getLogger("lethe.search")

RRF_K = 60
MIN_VEC_SIMILARITY = 0.5
FRESHNESS_WINDOW_S = 14 * 24 * 3600
SINGLE_CANDIDATE_SCORE = 0.8

# Composite weights: (rank signal, freshness, confidence)
HYBRID_WEIGHTS = (0.7, 0.2, 0.1)
LEXICAL_WEIGHTS = (0.6, 0.25, 0.15)

_QUOTES_RE = re.compile(r"['\"]")


class SearchResult:
    """A ranked fact plus the retrieval paths that found it."""

    __slots__ = ("fact", "score", "sources")

    def __init__(self, fact: Fact, score: float, sources: Optional[List[str]] = None):
        self.fact = fact
        self.score = score
        self.sources = sources or []

    def to_dict(self) -> Dict[str, Any]:
        return {"score": round(self.score, 6), "sources": list(self.sources), **self.fact.to_dict()}

    def __repr__(self) -> str:
        return f"SearchResult({self.fact.label()}, score={self.score:.3f}, sources={self.sources})"


# ---------------------------------------------------------------------------
# Lexical
# ---------------------------------------------------------------------------


def build_fts_query(text: str) -> str:
    """Turn free text into a safe FTS5 expression: each token quoted, tokens OR-ed.

    Quote characters are stripped and single-character tokens dropped. Returns
    "" when nothing survives.
    """
    words = [w for w in _QUOTES_RE.sub("", text or "").split() if len(w) > 1]
    return " OR ".join(f'"{w}"' for w in words)


def normalize_ranks(ranks: Sequence[float]) -> List[float]:
    """Min-max scale FTS5 ranks (lower is better) to [0, 1], best = 1.0.

    A single candidate or a zero spread maps everything to 0.8.
    """
    if not ranks:
        return []
    best, worst = min(ranks), max(ranks)
    spread = worst - best
    if len(ranks) == 1 or spread == 0:
        return [SINGLE_CANDIDATE_SCORE] * len(ranks)
    return [1.0 - (r - best) / spread for r in ranks]


def freshness(fact: Fact, now: Optional[int] = None) -> float:
    """Remaining lifetime as a fraction of two weeks, clamped to [0, 1]."""
    if fact.expires_at is None:
        return 1.0
    now = now_ts() if now is None else now
    return max(0.0, min(1.0, (fact.expires_at - now) / FRESHNESS_WINDOW_S))


def _lexical_candidates(
    store,
    variant: str,
    persona: Optional[str],
    limit: int,
    now: int,
) -> List[Tuple[Fact, float]]:
    fts_query = build_fts_query(variant)
    if not fts_query:
        return []
    return store.text_search(fts_query, persona=persona, limit=limit, now=now)


def _merge_lexical(
    merged: Dict[str, Tuple[Fact, float, str]],
    variant: str,
    hits: Sequence[Tuple[Fact, float]],
) -> None:
    """Keep the best (lowest) rank per fact across query variants."""
    source = f"fts:{variant[:30]}"
    for fact, rank in hits:
        existing = merged.get(fact.id)
        if existing is None or rank < existing[1]:
            merged[fact.id] = (fact, rank, source)


def _lexical_only(
    merged: Dict[str, Tuple[Fact, float, str]],
    limit: int,
    now: int,
) -> List[SearchResult]:
    w_rank, w_fresh, w_conf = LEXICAL_WEIGHTS
    entries = sorted(merged.values(), key=lambda e: e[1])
    norms = normalize_ranks([rank for _, rank, _ in entries])
    results = [
        SearchResult(
            fact,
            w_rank * norm + w_fresh * freshness(fact, now) + w_conf * fact.confidence,
            [source],
        )
        for (fact, _, source), norm in zip(entries, norms)
    ]
    results.sort(key=lambda r: r.score, reverse=True)
    return results[:limit]


def lexical_search(
    store,
    query: str,
    persona: Optional[str] = None,
    limit: int = 5,
    now: Optional[int] = None,
) -> List[SearchResult]:
    """Pure lexical search scored with the lexical-only composite."""
    if not query or not query.strip():
        raise ValidationError("search query required")
    limit = _check_limit(limit)
    now = now_ts() if now is None else now
    merged: Dict[str, Tuple[Fact, float, str]] = {}
    _merge_lexical(merged, query, _lexical_candidates(store, query, persona, limit, now))
    return _lexical_only(merged, limit, now)


# ---------------------------------------------------------------------------
# Vector
# ---------------------------------------------------------------------------


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """dot(a, b) / (|a| |b|), clipped to [-1, 1]. Zero vectors give 0.0."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"dimension mismatch: {va.shape} vs {vb.shape}")
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / denom, -1.0, 1.0))


def decode_embedding(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=np.float32)


def vector_search(
    store,
    query_vec: Sequence[float],
    model: str,
    persona: Optional[str] = None,
    now: Optional[int] = None,
    min_similarity: float = MIN_VEC_SIMILARITY,
) -> List[Tuple[Fact, float]]:
    """Exact brute-force cosine scan over cached embeddings.

    The store pre-filters by model, persona and expiry. Vectors whose
    dimension differs from the query are skipped. Results below
    *min_similarity* are dropped; the rest are sorted best first.
    """
    q = np.asarray(query_vec, dtype=np.float64)
    q_norm = np.linalg.norm(q)
    if q.size == 0 or q_norm == 0:
        return []

    facts: List[Fact] = []
    vectors: List[np.ndarray] = []
    for fact, blob in store.embedding_rows(model, persona=persona, now=now):
        vec = decode_embedding(blob)
        if vec.shape != q.shape:
            logger.debug("Skipping %s: embedding dim %d != query dim %d", fact.id, vec.size, q.size)
            continue
        facts.append(fact)
        vectors.append(vec)
    if not vectors:
        return []

    matrix = np.vstack(vectors).astype(np.float64)
    norms = np.linalg.norm(matrix, axis=1) * q_norm
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(norms > 0, matrix @ q / norms, 0.0)
    sims = np.clip(sims, -1.0, 1.0)

    hits = [(fact, float(sim)) for fact, sim in zip(facts, sims) if sim >= min_similarity]
    hits.sort(key=lambda h: h[1], reverse=True)
    return hits


# ---------------------------------------------------------------------------
# Fusion
# ---------------------------------------------------------------------------


def rrf_score(fts_rank: Optional[int], vec_rank: Optional[int], k: int = RRF_K) -> float:
    score = 0.0
    if fts_rank:
        score += 1.0 / (k + fts_rank)
    if vec_rank:
        score += 1.0 / (k + vec_rank)
    return score


def fuse(
    lexical: Dict[str, Tuple[Fact, float, str]],
    vector: Sequence[Tuple[Fact, float]],
    limit: int,
    now: Optional[int] = None,
) -> List[SearchResult]:
    """Reciprocal-rank fusion of lexical and vector candidates.

    *lexical* maps fact id -> (fact, best_rank, source); *vector* is a list of
    (fact, similarity) sorted best first.
    """
    now = now_ts() if now is None else now
    w_rank, w_fresh, w_conf = HYBRID_WEIGHTS
    candidates: Dict[str, Dict[str, Any]] = {}

    for pos, (fact, _, source) in enumerate(sorted(lexical.values(), key=lambda e: e[1]), start=1):
        candidates[fact.id] = {"fact": fact, "fts_rank": pos, "vec_rank": None, "sources": [source]}

    for pos, (fact, _) in enumerate(vector, start=1):
        entry = candidates.get(fact.id)
        if entry is None:
            candidates[fact.id] = {"fact": fact, "fts_rank": None, "vec_rank": pos, "sources": ["vector"]}
        else:
            entry["vec_rank"] = pos
            entry["sources"].append("vector")

    results = []
    for entry in candidates.values():
        fact = entry["fact"]
        rrf = rrf_score(entry["fts_rank"], entry["vec_rank"])
        score = w_rank * rrf + w_fresh * freshness(fact, now) + w_conf * fact.confidence
        results.append(SearchResult(fact, score, entry["sources"]))

    results.sort(key=lambda r: r.score, reverse=True)
    return results[:limit]


def _join(future, default, deadline: Optional[float], what: str):
    """Collect an optional provider future by *deadline*, degrading to *default*."""
    if future is None:
        return default
    timeout = None if deadline is None else max(0.0, deadline - time.monotonic())
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        logger.warning("%s timed out", what)
    except Exception as e:
        logger.warning("%s failed: %s", what, e)
    return default


def _check_limit(limit) -> int:
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        raise ValidationError(f"limit must be an integer, got {limit!r}") from None
    if limit < 1:
        raise ValidationError(f"limit must be at least 1, got {limit}")
    return limit


def hybrid_search(
    store,
    provider,
    query: str,
    persona: Optional[str] = None,
    limit: int = 6,
    use_hyde: bool = True,
    use_vector: bool = True,
    embedding_model: Optional[str] = None,
    now: Optional[int] = None,
) -> List[SearchResult]:
    """Lexical + vector search with optional HyDE expansion.

    *provider* may be None, which disables both semantic paths.
    """
    if not query or not query.strip():
        raise ValidationError("search query required")
    limit = _check_limit(limit)
    query = query.strip()
    now = now_ts() if now is None else now
    fetch = limit * 2
    model = embedding_model or getattr(provider, "embedding_model", None)
    timeout = getattr(provider, "timeout", None)

    # No context manager: leaving one waits for a hung provider call.
    pool = ThreadPoolExecutor(max_workers=3, thread_name_prefix="lethe-search")
    try:
        lex_future = pool.submit(_lexical_candidates, store, query, persona, fetch, now)
        exp_future = pool.submit(provider.expand, query) if provider is not None and use_hyde else None
        emb_future = pool.submit(provider.embed, query) if provider is not None and use_vector else None
        deadline = time.monotonic() + timeout + 1.0 if timeout else None

        # Storage errors are fatal and propagate from here.
        original_hits = lex_future.result()
        variants = _join(exp_future, [query], deadline, "Query expansion") or [query]
        query_vec = _join(emb_future, None, deadline, "Query embedding")
    finally:
        pool.shutdown(wait=False, cancel_futures=True)

    merged: Dict[str, Tuple[Fact, float, str]] = {}
    _merge_lexical(merged, query, original_hits)
    for variant in variants:
        if variant == query:
            continue
        _merge_lexical(merged, variant, _lexical_candidates(store, variant, persona, fetch, now))

    if query_vec is None or not model:
        return _lexical_only(merged, limit, now)

    vector = vector_search(store, query_vec, model, persona=persona, now=now)
    return fuse(merged, vector, limit, now)
