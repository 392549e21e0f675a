"""
Lethe bridge -- one object wiring the store, providers and engines together.

Built explicitly once per invocation (CLI) or once per server lifetime, then
passed to whatever needs it:

    memory = Memory.from_settings(load_settings())
    fact, embedded = memory.store(entity="user", key="name", value="Alice")
    results = memory.hybrid("what is the user called")
    memory.close()
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from lethe.checkpoint import CheckpointStore
from lethe.config import Settings, load_settings
from lethe.decay import DecayEngine
from lethe.providers import OllamaProvider
from lethe.search import SearchResult, hybrid_search, lexical_search
from lethe.sqlite_store import SQLiteStore
from lethe.types import Fact, now_ts

logger = logging.getLogger("lethe.bridge")

DEFAULT_BACKFILL_BATCH = 50


class Memory:
    """Facade over SQLiteStore + OllamaProvider + DecayEngine + CheckpointStore."""

    def __init__(
        self,
        store: SQLiteStore,
        provider: Optional[OllamaProvider] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or load_settings()
        self.db = store
        self.provider = provider
        self.decay = DecayEngine(store)
        self.checkpoints = CheckpointStore(store)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "Memory":
        settings = settings or load_settings()
        return cls(
            store=SQLiteStore(settings.db_path),
            provider=OllamaProvider.from_settings(settings),
            settings=settings,
        )

    @property
    def embedding_model(self) -> str:
        if self.provider is not None:
            return self.provider.embedding_model
        return self.settings.embedding_model

    # ------------------------------------------------------------------
    # Facts
    # ------------------------------------------------------------------

    def store(self, embed: bool = True, **fields: Any) -> Tuple[Fact, bool]:
        """Persist a fact, then embed it best-effort.

        Returns (fact, embedded). A provider failure leaves the fact stored
        without an embedding.
        """
        fact = self.db.store(**fields)
        embedded = self.embed_fact(fact) if embed else False
        return fact, embedded

    def embed_fact(self, fact: Fact) -> bool:
        if self.provider is None:
            return False
        vector = self.provider.embed(fact.text)
        if vector is None:
            logger.warning("Stored %s without an embedding", fact.id)
            return False
        self.db.put_embedding(fact.id, vector, self.provider.embedding_model)
        return True

    def get(self, fact_id: str) -> Optional[Fact]:
        return self.db.get(fact_id)

    def delete(self, fact_id: str) -> bool:
        return self.db.delete(fact_id)

    def lookup(self, entity: str, key: Optional[str] = None, persona: Optional[str] = None) -> List[Fact]:
        return self.db.lookup(entity, key=key, persona=persona)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(self, query: str, persona: Optional[str] = None, limit: int = 5) -> List[SearchResult]:
        """Lexical-only search."""
        return lexical_search(self.db, query, persona=persona, limit=limit)

    def hybrid(
        self,
        query: str,
        persona: Optional[str] = None,
        limit: int = 6,
        use_hyde: Optional[bool] = None,
        use_vector: bool = True,
    ) -> List[SearchResult]:
        """Lexical + vector search; HyDE defaults to the configured flag."""
        if use_hyde is None:
            use_hyde = self.settings.hyde_enabled
        return hybrid_search(
            self.db,
            self.provider,
            query,
            persona=persona,
            limit=limit,
            use_hyde=use_hyde,
            use_vector=use_vector,
            embedding_model=self.embedding_model,
        )

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def checkpoint_save(self, intent: str, state: Any, **kwargs: Any) -> str:
        return self.checkpoints.save(intent, state, **kwargs)

    def checkpoint_restore(self, persona: str = "shared") -> Optional[Dict[str, Any]]:
        return self.checkpoints.restore(persona=persona)

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------

    def link(self, source_id: str, target_id: str, relation: str = "related") -> None:
        self.db.add_link(source_id, target_id, relation)

    def neighbors(self, fact_id: str) -> List[Dict[str, Any]]:
        return self.db.neighbors(fact_id)

    def traverse(self, fact_id: str, max_hops: int = 2) -> List[Dict[str, Any]]:
        return self.db.traverse(fact_id, max_hops=max_hops)

    # ------------------------------------------------------------------
    # Embedding backfill
    # ------------------------------------------------------------------

    def backfill_embeddings(
        self,
        batch_size: int = DEFAULT_BACKFILL_BATCH,
        limit: Optional[int] = None,
        progress: Optional[Callable[[Dict[str, int]], None]] = None,
    ) -> Dict[str, int]:
        """Embed facts that have no embedding for the current model.

        Works through bounded sequential batches; each success is committed as
        it lands, so an interrupted run resumes where it stopped. *progress*
        is called after every batch with running totals.
        """
        batch_size = max(1, int(batch_size))
        pending = self.db.facts_missing_embedding(self.embedding_model, limit=limit)
        totals = {"total": len(pending), "processed": 0, "failed": 0}
        if self.provider is None:
            totals["failed"] = len(pending)
            return totals

        for start in range(0, len(pending), batch_size):
            for fact in pending[start:start + batch_size]:
                if self.embed_fact(fact):
                    totals["processed"] += 1
                else:
                    totals["failed"] += 1
            if progress is not None:
                progress(dict(totals))

        logger.info("backfill: processed=%d failed=%d", totals["processed"], totals["failed"])
        return totals

    # ------------------------------------------------------------------
    # Maintenance / status
    # ------------------------------------------------------------------

    def prune(self) -> int:
        return self.decay.prune()

    def decay_confidence(self) -> Dict[str, int]:
        return self.decay.decay_confidence()

    def consolidate(self) -> Dict[str, int]:
        return self.decay.consolidate()

    def stats(self) -> Dict[str, Any]:
        out = self.db.stats(embedding_model=self.embedding_model, now=now_ts())
        out["embedding_model"] = self.embedding_model
        out["ollama_url"] = self.settings.ollama_url
        return out

    def health(self) -> Dict[str, Any]:
        if self.provider is None:
            return {"reachable": False, "error": "no provider configured"}
        return self.provider.health()

    def close(self) -> None:
        self.db.close()
