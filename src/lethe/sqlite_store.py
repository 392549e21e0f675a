"""
Lethe SQLite Store -- facts, lexical index, embedding cache and link graph.

One database file holds everything:
    facts            the fact table
    facts_fts        FTS5 external-content index over (text, entity, key, value, category)
    fact_embeddings  one float32 vector per fact, tagged with the producing model
    fact_links       directed, labelled edges between facts
    ttl_defaults     static decay-tier reference table

Usage:
    store = SQLiteStore("/tmp/facts.db")
    fact = store.store(entity="user", key="name", value="Alice", decay_class="permanent")
    hits = store.lookup("user")
"""

import json
import logging
import sqlite3
import threading
import time as _time
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlite_vec import serialize_float32

from lethe.errors import ValidationError
from lethe.types import (
    CATEGORIES,
    DECAY_CLASSES,
    DEFAULT_DECAY_CLASS,
    REFRESHABLE_CLASSES,
    SHARED_PERSONA,
    TTL_DEFAULTS,
    Fact,
    clamp01,
    compute_expiry,
    default_text,
    now_ts,
)

logger = logging.getLogger("lethe.sqlite_store")

SCHEMA_VERSION = 1

_FACT_COLUMNS = (
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
_FACT_SELECT = ", ".join(f"f.{c}" for c in _FACT_COLUMNS)
_UNEXPIRED = "(f.expires_at IS NULL OR f.expires_at >= ?)"

# ---------------------------------------------------------------------------
# SQLite retry -- independent CLI invocations share one WAL database.
# busy_timeout absorbs most contention; this bounds the remainder.
# ---------------------------------------------------------------------------
_DB_RETRY_ATTEMPTS = 3
_DB_RETRY_BASE_DELAY = 0.5  # seconds


def _retry_on_locked(fn, *args, **kwargs):
    """Call fn with retry on 'database is locked' OperationalError."""
    for attempt in range(_DB_RETRY_ATTEMPTS):
        try:
            return fn(*args, **kwargs)
        except sqlite3.OperationalError as e:
            if "database is locked" in str(e) and attempt < _DB_RETRY_ATTEMPTS - 1:
                delay = _DB_RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning("database is locked (attempt %d/%d), retrying in %.1fs",
                               attempt + 1, _DB_RETRY_ATTEMPTS, delay)
                _time.sleep(delay)
            else:
                raise


def _persona_clause(persona: Optional[str]) -> Tuple[str, tuple]:
    """A persona filter sees its own facts plus the shared scope."""
    if not persona:
        return "", ()
    if persona == SHARED_PERSONA:
        return " AND f.persona = ?", (SHARED_PERSONA,)
    return " AND f.persona IN (?, ?)", (persona, SHARED_PERSONA)


def _check_number(name: str, value: Any) -> float:
    """Coerce a numeric field, rejecting None, bools, NaN and non-numbers."""
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{name} must be a number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number, got {value!r}") from None
    if number != number:
        raise ValidationError(f"{name} must be a number, got NaN")
    return number


def _load_metadata(raw: Optional[str]) -> Tuple[Optional[Dict[str, Any]], bool]:
    """Decode a metadata column. Returns (metadata, ok); corrupt JSON gives (None, False)."""
    if not raw:
        return None, True
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return None, False
    if not isinstance(value, dict):
        return None, False
    return value, True


class SQLiteStore:
    """SQLite-backed fact store.

    Construct one per invocation (or per server lifetime) and pass it to the
    components that need it. The connection is shared across threads; writes
    are serialised with an internal lock.
    """

    def __init__(self, db_path=None):
        if db_path is None:
            from lethe.config import load_settings

            db_path = load_settings().db_path
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

        self._lock = threading.Lock()
        self._conn = self._connect()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        """Create a new SQLite connection with WAL durability and lock tolerance."""
        conn = sqlite3.connect(str(self.db_path), timeout=30, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        c = self._conn

        c.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
        row = c.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
        if row is None:
            c.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))

        c.execute("""
            CREATE TABLE IF NOT EXISTS facts (
                id TEXT PRIMARY KEY,
                persona TEXT NOT NULL DEFAULT 'shared',
                entity TEXT NOT NULL,
                key TEXT,
                value TEXT NOT NULL,
                text TEXT,
                category TEXT DEFAULT 'fact',
                decay_class TEXT DEFAULT 'stable',
                importance REAL DEFAULT 1.0,
                source TEXT,
                created_at INTEGER NOT NULL,
                expires_at INTEGER,
                last_accessed INTEGER,
                confidence REAL DEFAULT 1.0,
                metadata TEXT
            )
        """)
        for name, cols in (
            ("persona", "persona"),
            ("category", "category"),
            ("created", "created_at"),
            ("entity_key", "entity, key"),
            ("decay", "decay_class, expires_at"),
        ):
            c.execute(f"CREATE INDEX IF NOT EXISTS idx_facts_{name} ON facts({cols})")

        c.execute("""
            CREATE VIRTUAL TABLE IF NOT EXISTS facts_fts USING fts5(
                text, entity, key, value, category,
                content='facts', content_rowid='rowid'
            )
        """)
        c.execute("""
            CREATE TRIGGER IF NOT EXISTS facts_ai AFTER INSERT ON facts BEGIN
                INSERT INTO facts_fts(rowid, text, entity, key, value, category)
                VALUES (new.rowid, new.text, new.entity, new.key, new.value, new.category);
            END
        """)
        c.execute("""
            CREATE TRIGGER IF NOT EXISTS facts_ad AFTER DELETE ON facts BEGIN
                INSERT INTO facts_fts(facts_fts, rowid, text, entity, key, value, category)
                VALUES ('delete', old.rowid, old.text, old.entity, old.key, old.value, old.category);
            END
        """)
        c.execute("""
            CREATE TRIGGER IF NOT EXISTS facts_au AFTER UPDATE ON facts BEGIN
                INSERT INTO facts_fts(facts_fts, rowid, text, entity, key, value, category)
                VALUES ('delete', old.rowid, old.text, old.entity, old.key, old.value, old.category);
                INSERT INTO facts_fts(rowid, text, entity, key, value, category)
                VALUES (new.rowid, new.text, new.entity, new.key, new.value, new.category);
            END
        """)

        c.execute("""
            CREATE TABLE IF NOT EXISTS fact_embeddings (
                fact_id TEXT PRIMARY KEY REFERENCES facts(id) ON DELETE CASCADE,
                embedding BLOB NOT NULL,
                model TEXT NOT NULL,
                created_at INTEGER NOT NULL
            )
        """)
        c.execute("CREATE INDEX IF NOT EXISTS idx_fact_embeddings_model ON fact_embeddings(model)")

        # No FK on links: dangling edges are tolerated and filtered when read.
        c.execute("""
            CREATE TABLE IF NOT EXISTS fact_links (
                source_id TEXT NOT NULL,
                target_id TEXT NOT NULL,
                relation TEXT NOT NULL DEFAULT 'related',
                created_at INTEGER NOT NULL
            )
        """)
        for col in ("source_id", "target_id"):
            c.execute(f"CREATE INDEX IF NOT EXISTS idx_fact_links_{col} ON fact_links({col})")

        c.execute("""
            CREATE TABLE IF NOT EXISTS ttl_defaults (
                decay_class TEXT PRIMARY KEY,
                ttl_seconds INTEGER
            )
        """)
        c.executemany(
            "INSERT OR IGNORE INTO ttl_defaults (decay_class, ttl_seconds) VALUES (?, ?)",
            list(TTL_DEFAULTS.items()),
        )

        # Databases written by an older client may hold facts with an empty index.
        fts_count = c.execute("SELECT COUNT(*) FROM facts_fts").fetchone()[0]
        fact_count = c.execute("SELECT COUNT(*) FROM facts").fetchone()[0]
        if fts_count == 0 and fact_count > 0:
            c.execute("INSERT INTO facts_fts(facts_fts) VALUES('rebuild')")
            logger.info("Rebuilt FTS5 index for %d existing facts", fact_count)

        c.commit()

    # ------------------------------------------------------------------
    # Resilient execution
    # ------------------------------------------------------------------

    def _commit(self) -> None:
        _retry_on_locked(self._conn.commit)

    def _run_sql(self, sql, params=None):
        """Run SQL with retry on 'database is locked'."""
        if params is not None:
            return _retry_on_locked(self._conn.execute, sql, params)
        return _retry_on_locked(self._conn.execute, sql)

    def select_facts(self, where: str, params: Sequence[Any] = (), order: str = "") -> List[Fact]:
        sql = f"SELECT {_FACT_SELECT} FROM facts f WHERE {where}"
        if order:
            sql += f" ORDER BY {order}"
        rows = self._conn.execute(sql, tuple(params)).fetchall()
        return [self._row_to_fact(r) for r in rows]

    @staticmethod
    def _row_to_fact(row: Sequence[Any]) -> Fact:
        values = dict(zip(_FACT_COLUMNS, row))
        metadata, ok = _load_metadata(values["metadata"])
        if not ok:
            logger.warning("Fact %s has malformed metadata; treating as empty", values["id"])
        values["metadata"] = metadata
        values["decay_class"] = values["decay_class"] or DEFAULT_DECAY_CLASS
        for name in ("importance", "confidence"):
            if values[name] is None:
                values[name] = 1.0
        return Fact(**values)

    # ------------------------------------------------------------------
    # Core CRUD
    # ------------------------------------------------------------------

    def store(
        self,
        entity: str,
        value: str,
        key: Optional[str] = None,
        persona: str = SHARED_PERSONA,
        text: Optional[str] = None,
        category: str = "fact",
        decay_class: Optional[str] = None,
        importance: float = 1.0,
        confidence: float = 1.0,
        source: Optional[str] = "cli",
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[int] = None,
    ) -> Fact:
        """Persist a new fact and return it. Raises ValidationError on bad input."""
        entity = (entity or "").strip()
        value = (value or "").strip()
        if not entity or not value:
            raise ValidationError("entity and value are required")
        decay_class = decay_class or DEFAULT_DECAY_CLASS
        if decay_class not in DECAY_CLASSES:
            raise ValidationError(
                f"unknown decay class {decay_class!r} (expected one of: {', '.join(DECAY_CLASSES)})"
            )
        category = category or "fact"
        if category not in CATEGORIES:
            raise ValidationError(f"unknown category {category!r} (expected one of: {', '.join(CATEGORIES)})")
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("metadata must be a mapping")
        importance = _check_number("importance", importance)
        confidence = _check_number("confidence", confidence)

        now = now_ts() if now is None else now
        key = key.strip() if key and key.strip() else None
        fact = Fact(
            id=f"fact-{uuid.uuid4().hex[:12]}",
            persona=(persona or SHARED_PERSONA).strip() or SHARED_PERSONA,
            entity=entity,
            key=key,
            value=value,
            text=text.strip() if text and text.strip() else default_text(entity, key, value),
            category=category,
            decay_class=decay_class,
            importance=importance,
            source=source,
            created_at=now,
            expires_at=compute_expiry(decay_class, now),
            last_accessed=now,
            confidence=confidence,
            metadata=dict(metadata) if metadata else None,
        )

        with self._lock:
            self._run_sql(
                f"INSERT INTO facts ({', '.join(_FACT_COLUMNS)}) VALUES ({', '.join('?' * len(_FACT_COLUMNS))})",
                (
                    fact.id,
                    fact.persona,
                    fact.entity,
                    fact.key,
                    fact.value,
                    fact.text,
                    fact.category,
                    fact.decay_class,
                    fact.importance,
                    fact.source,
                    fact.created_at,
                    fact.expires_at,
                    fact.last_accessed,
                    fact.confidence,
                    json.dumps(fact.metadata) if fact.metadata else None,
                ),
            )
            self._commit()
        logger.debug("Stored %s (%s, expires_at=%s)", fact.id, fact.decay_class, fact.expires_at)
        return fact

    def get(self, fact_id: str) -> Optional[Fact]:
        """Fetch a fact by id without touching access tracking."""
        facts = self.select_facts("f.id = ?", (fact_id,))
        return facts[0] if facts else None

    def delete(self, fact_id: str) -> bool:
        """Delete a fact, its embedding and every link touching it."""
        return self.delete_facts([fact_id]) == 1

    def delete_facts(self, fact_ids: Iterable[str]) -> int:
        ids = list(dict.fromkeys(fact_ids))
        if not ids:
            return 0
        removed = 0
        with self._lock:
            for fact_id in ids:
                cur = self._run_sql("DELETE FROM facts WHERE id = ?", (fact_id,))
                removed += cur.rowcount
                self._run_sql("DELETE FROM fact_links WHERE source_id = ? OR target_id = ?", (fact_id, fact_id))
            self._commit()
        return removed

    def count(self) -> int:
        row = self._conn.execute("SELECT COUNT(*) FROM facts").fetchone()
        return row[0] if row else 0

    # ------------------------------------------------------------------
    # Lookup + access refresh
    # ------------------------------------------------------------------

    def lookup(
        self,
        entity: str,
        key: Optional[str] = None,
        persona: Optional[str] = None,
        now: Optional[int] = None,
    ) -> List[Fact]:
        """Case-insensitive entity/key lookup over unexpired facts.

        Ordered by confidence, then recency. Every match is access-refreshed.
        """
        if not entity or not entity.strip():
            raise ValidationError("entity is required")
        now = now_ts() if now is None else now
        where = f"lower(f.entity) = lower(?) AND {_UNEXPIRED}"
        params: List[Any] = [entity.strip(), now]
        if key:
            where += " AND lower(f.key) = lower(?)"
            params.append(key.strip())
        clause, extra = _persona_clause(persona)
        facts = self.select_facts(where + clause, params + list(extra),
                                   order="f.confidence DESC, f.created_at DESC, f.rowid DESC")
        self.touch([f.id for f in facts], now=now)
        for fact in facts:
            if fact.decay_class in REFRESHABLE_CLASSES:
                fact.last_accessed = now
                fact.expires_at = compute_expiry(fact.decay_class, now)
        return facts

    def touch(self, fact_ids: Iterable[str], now: Optional[int] = None) -> int:
        """Renew expiry of stable/active facts from *now*. Other tiers are left alone."""
        ids = list(dict.fromkeys(fact_ids))
        if not ids:
            return 0
        now = now_ts() if now is None else now
        refreshed = 0
        with self._lock:
            for decay_class in sorted(REFRESHABLE_CLASSES):
                placeholders = ",".join("?" * len(ids))
                cur = self._run_sql(
                    f"""UPDATE facts SET last_accessed = ?, expires_at = ?
                        WHERE decay_class = ? AND id IN ({placeholders})""",
                    (now, compute_expiry(decay_class, now), decay_class, *ids),
                )
                refreshed += cur.rowcount
            self._commit()
        return refreshed

    # ------------------------------------------------------------------
    # Lexical search
    # ------------------------------------------------------------------

    def text_search(
        self,
        fts_query: str,
        persona: Optional[str] = None,
        limit: int = 10,
        now: Optional[int] = None,
    ) -> List[Tuple[Fact, float]]:
        """Run an FTS5 MATCH. Returns (fact, rank) pairs, best (lowest) rank first."""
        if not fts_query:
            return []
        now = now_ts() if now is None else now
        clause, extra = _persona_clause(persona)
        sql = f"""SELECT {_FACT_SELECT}, facts_fts.rank
                  FROM facts_fts
                  JOIN facts f ON f.rowid = facts_fts.rowid
                  WHERE facts_fts MATCH ? AND {_UNEXPIRED}{clause}
                  ORDER BY facts_fts.rank
                  LIMIT ?"""
        params = (fts_query, now, *extra, max(1, int(limit)))
        try:
            rows = self._conn.execute(sql, params).fetchall()
        except sqlite3.OperationalError as e:
            if "database is locked" in str(e):
                raise
            logger.warning("FTS5 search failed: %s -- rebuilding index and retrying", e)
            with self._lock:
                self._run_sql("INSERT INTO facts_fts(facts_fts) VALUES('rebuild')")
                self._commit()
            rows = self._conn.execute(sql, params).fetchall()
        return [(self._row_to_fact(r[:-1]), float(r[-1])) for r in rows]

    # ------------------------------------------------------------------
    # Embedding cache
    # ------------------------------------------------------------------

    def put_embedding(self, fact_id: str, vector: Sequence[float], model: str, now: Optional[int] = None) -> None:
        """Store (or replace) the embedding for a fact."""
        now = now_ts() if now is None else now
        with self._lock:
            self._run_sql(
                """INSERT OR REPLACE INTO fact_embeddings (fact_id, embedding, model, created_at)
                   VALUES (?, ?, ?, ?)""",
                (fact_id, serialize_float32(list(vector)), model, now),
            )
            self._commit()

    def get_embedding(self, fact_id: str) -> Optional[Tuple[bytes, str]]:
        """Return the raw float32 blob and model name for a fact, if cached."""
        row = self._conn.execute(
            "SELECT embedding, model FROM fact_embeddings WHERE fact_id = ?", (fact_id,)
        ).fetchone()
        return (row[0], row[1]) if row else None

    def embedding_rows(
        self,
        model: str,
        persona: Optional[str] = None,
        now: Optional[int] = None,
    ) -> List[Tuple[Fact, bytes]]:
        """Cached embeddings for unexpired facts, pre-filtered by model and persona."""
        now = now_ts() if now is None else now
        clause, extra = _persona_clause(persona)
        rows = self._conn.execute(
            f"""SELECT {_FACT_SELECT}, e.embedding
                FROM fact_embeddings e
                JOIN facts f ON f.id = e.fact_id
                WHERE e.model = ? AND {_UNEXPIRED}{clause}""",
            (model, now, *extra),
        ).fetchall()
        return [(self._row_to_fact(r[:-1]), r[-1]) for r in rows]

    def facts_missing_embedding(self, model: str, limit: Optional[int] = None) -> List[Fact]:
        """Facts with no embedding for *model*, oldest first."""
        sql = f"""SELECT {_FACT_SELECT} FROM facts f
                  LEFT JOIN fact_embeddings e ON e.fact_id = f.id AND e.model = ?
                  WHERE e.fact_id IS NULL
                  ORDER BY f.created_at, f.rowid"""
        params: Tuple[Any, ...] = (model,)
        if limit is not None:
            sql += " LIMIT ?"
            params += (int(limit),)
        return [self._row_to_fact(r) for r in self._conn.execute(sql, params).fetchall()]

    # ------------------------------------------------------------------
    # Maintenance primitives (driven by lethe.decay.DecayEngine)
    # ------------------------------------------------------------------

    def unexpired_facts(self, now: Optional[int] = None) -> List[Fact]:
        now = now_ts() if now is None else now
        return self.select_facts(_UNEXPIRED, (now,), order="f.rowid")

    def expired_ids(self, now: Optional[int] = None) -> List[str]:
        now = now_ts() if now is None else now
        rows = self._conn.execute(
            "SELECT id FROM facts WHERE expires_at IS NOT NULL AND expires_at < ?", (now,)
        ).fetchall()
        return [r[0] for r in rows]

    def low_confidence_ids(self, floor: float) -> List[str]:
        rows = self._conn.execute("SELECT id FROM facts WHERE confidence < ?", (floor,)).fetchall()
        return [r[0] for r in rows]

    def set_confidence(self, updates: Sequence[Tuple[str, float]]) -> int:
        if not updates:
            return 0
        with self._lock:
            for fact_id, confidence in updates:
                self._run_sql("UPDATE facts SET confidence = ? WHERE id = ?", (clamp01(confidence), fact_id))
            self._commit()
        return len(updates)

    def consolidation_candidates(self, now: Optional[int] = None) -> List[Tuple[Fact, bool]]:
        """Unexpired keyed facts paired with whether their metadata decoded cleanly."""
        now = now_ts() if now is None else now
        rows = self._conn.execute(
            f"""SELECT {_FACT_SELECT} FROM facts f
                WHERE f.key IS NOT NULL AND f.key != '' AND {_UNEXPIRED}
                ORDER BY f.rowid""",
            (now,),
        ).fetchall()
        out = []
        for row in rows:
            _, ok = _load_metadata(row[-1])
            out.append((self._row_to_fact(row), ok))
        return out

    def replace_metadata(self, fact_id: str, metadata: Optional[Dict[str, Any]]) -> None:
        with self._lock:
            self._run_sql(
                "UPDATE facts SET metadata = ? WHERE id = ?",
                (json.dumps(metadata) if metadata else None, fact_id),
            )
            self._commit()

    # ------------------------------------------------------------------
    # Link graph
    # ------------------------------------------------------------------

    def add_link(self, source_id: str, target_id: str, relation: str = "related", now: Optional[int] = None) -> None:
        """Insert a directed edge. Endpoints are not checked; duplicates are kept."""
        if not source_id or not target_id:
            raise ValidationError("source and target ids are required")
        now = now_ts() if now is None else now
        with self._lock:
            self._run_sql(
                "INSERT INTO fact_links (source_id, target_id, relation, created_at) VALUES (?, ?, ?, ?)",
                (source_id, target_id, (relation or "related").strip() or "related", now),
            )
            self._commit()

    def repoint_links(self, old_id: str, new_id: str) -> int:
        """Move every edge endpoint from *old_id* to *new_id*."""
        with self._lock:
            moved = self._run_sql("UPDATE fact_links SET source_id = ? WHERE source_id = ?", (new_id, old_id)).rowcount
            moved += self._run_sql("UPDATE fact_links SET target_id = ? WHERE target_id = ?", (new_id, old_id)).rowcount
            self._commit()
        return moved

    def neighbors(self, fact_id: str) -> List[Dict[str, Any]]:
        """Edges touching *fact_id* whose counterpart still exists."""
        rows = self._conn.execute(
            """SELECT source_id, target_id, relation, created_at FROM fact_links
               WHERE source_id = ? OR target_id = ?
               ORDER BY created_at, rowid""",
            (fact_id, fact_id),
        ).fetchall()
        counterpart_ids = {t if s == fact_id else s for s, t, _, _ in rows}
        facts = self._facts_by_id(counterpart_ids)
        out = []
        for source, target, relation, created_at in rows:
            direction = "out" if source == fact_id else "in"
            other = target if direction == "out" else source
            fact = facts.get(other)
            if fact is None:
                continue
            out.append({"direction": direction, "relation": relation, "fact": fact, "created_at": created_at})
        return out

    def traverse(self, start_id: str, max_hops: int = 2) -> List[Dict[str, Any]]:
        """Walk links in both directions up to max_hops (clamped to 1..5).

        Each reachable fact appears once, at its shortest hop distance.
        """
        max_hops = min(max(int(max_hops), 1), 5)
        visited: Dict[str, Dict[str, Any]] = {}
        frontier = {start_id}

        for hop in range(1, max_hops + 1):
            if not frontier:
                break
            next_frontier: Set[str] = set()
            for node_id in sorted(frontier):
                for edge in self.neighbors(node_id):
                    fact = edge["fact"]
                    if fact.id == start_id or fact.id in visited:
                        continue
                    visited[fact.id] = {
                        "fact": fact,
                        "hop": hop,
                        "relation": edge["relation"],
                        "via": node_id,
                    }
                    next_frontier.add(fact.id)
            frontier = next_frontier

        return sorted(visited.values(), key=lambda x: (x["hop"], -x["fact"].confidence))

    def _facts_by_id(self, ids: Iterable[str]) -> Dict[str, Fact]:
        ids = list(ids)
        if not ids:
            return {}
        facts = self.select_facts(f"f.id IN ({','.join('?' * len(ids))})", ids)
        return {f.id: f for f in facts}

    # ------------------------------------------------------------------
    # Stats / lifecycle
    # ------------------------------------------------------------------

    def stats(self, embedding_model: Optional[str] = None, now: Optional[int] = None) -> Dict[str, Any]:
        now = now_ts() if now is None else now
        c = self._conn
        out: Dict[str, Any] = {
            "total_facts": c.execute("SELECT COUNT(*) FROM facts").fetchone()[0],
            "expired_pending": c.execute(
                "SELECT COUNT(*) FROM facts WHERE expires_at IS NOT NULL AND expires_at < ?", (now,)
            ).fetchone()[0],
            "embeddings": c.execute("SELECT COUNT(*) FROM fact_embeddings").fetchone()[0],
            "links": c.execute("SELECT COUNT(*) FROM fact_links").fetchone()[0],
            "by_decay_class": dict(c.execute(
                "SELECT decay_class, COUNT(*) FROM facts GROUP BY decay_class ORDER BY decay_class"
            ).fetchall()),
            "by_persona": dict(c.execute(
                "SELECT persona, COUNT(*) FROM facts GROUP BY persona ORDER BY persona"
            ).fetchall()),
            "db_path": str(self.db_path),
            "db_size_mb": round(self.db_path.stat().st_size / (1024 * 1024), 3) if self.db_path.exists() else 0.0,
        }
        if embedding_model:
            out["facts_with_embeddings"] = c.execute(
                "SELECT COUNT(*) FROM facts f JOIN fact_embeddings e ON e.fact_id = f.id WHERE e.model = ?",
                (embedding_model,),
            ).fetchone()[0]
        return out

    def close(self) -> None:
        """Close the database connection."""
        try:
            self._conn.execute("PRAGMA wal_checkpoint(PASSIVE)")
        except sqlite3.Error as e:
            logger.debug("WAL checkpoint on close failed: %s", e)
        self._conn.close()
