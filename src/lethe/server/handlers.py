"""
Lethe MCP Handlers -- Maps tool names to async handler functions.

Each handler delegates to the server's Memory (one per server lifetime) and
returns MCP-compatible response dicts. Validation problems come back as
error responses; anything else is logged and reported without a traceback.
"""

import json
import logging
from typing import Any, Dict, Optional

from lethe.bridge import Memory
from lethe.errors import LetheError, ValidationError

logger = logging.getLogger("lethe.server.handlers")

_memory: Optional[Memory] = None


def set_memory(memory: Optional[Memory]) -> None:
    """Install the Memory the handlers operate on."""
    global _memory
    _memory = memory


def get_memory() -> Memory:
    """The installed Memory. The server installs one at startup via set_memory()."""
    if _memory is None:
        raise LetheError("no Memory installed; start the server with open_memory()")
    return _memory


def reset_memory() -> None:
    """Close and forget the current Memory."""
    global _memory
    if _memory is not None:
        _memory.close()
    _memory = None


def _clamp_int(value, default: int, min_val: int = 1, max_val: int = 10000) -> int:
    """Clamp a numeric argument to safe bounds."""
    try:
        v = int(value)
        return max(min_val, min(v, max_val))
    except (TypeError, ValueError):
        return default


def _str_arg(arguments: dict, name: str) -> str:
    value = arguments.get(name)
    return value.strip() if isinstance(value, str) else ""


# ============================================================================
# Response Helpers
# ============================================================================


def mcp_response(text: str) -> dict:
    """Build a successful MCP response."""
    return {"content": [{"type": "text", "text": str(text)}]}


def mcp_error(text: str) -> dict:
    """Build an error MCP response."""
    return {"content": [{"type": "text", "text": f"Error: {text}"}], "isError": True}


def mcp_json(payload: Any) -> dict:
    return mcp_response(json.dumps(payload, indent=2, default=str))


# ============================================================================
# Handlers
# ============================================================================


async def handle_lethe_store(arguments: dict) -> dict:
    """Store a fact; embedding is best-effort."""
    entity = _str_arg(arguments, "entity")
    value = _str_arg(arguments, "value")
    if not entity or not value:
        return mcp_error("entity and value are required")

    decay_class = arguments.get("decay_class") or None
    if decay_class == "auto":
        from lethe.decay import classify_decay_class

        decay_class = classify_decay_class(arguments.get("text") or f"{arguments.get('key') or ''} {value}")
    tags = [t for t in arguments.get("tags") or [] if isinstance(t, str)]

    try:
        fact, embedded = get_memory().store(
            entity=entity,
            value=value,
            key=arguments.get("key"),
            persona=arguments.get("persona") or "shared",
            text=arguments.get("text"),
            category=arguments.get("category") or "fact",
            decay_class=decay_class,
            importance=arguments.get("importance", 1.0),
            confidence=arguments.get("confidence", 1.0),
            source="mcp",
            metadata={"tags": tags} if tags else None,
        )
    except ValidationError as e:
        return mcp_error(str(e))
    except Exception as e:
        logger.error("lethe_store failed: %s", e)
        return mcp_error(f"Failed to store fact: {e}")
    note = "" if embedded else " (stored without embedding)"
    return mcp_response(f"Stored {fact.id} as {fact.label()} [{fact.decay_class}]{note}")


async def handle_lethe_search(arguments: dict) -> dict:
    """Hybrid (default) or lexical search."""
    query = _str_arg(arguments, "query")
    if not query:
        return mcp_error("query is required")
    mode = arguments.get("mode", "hybrid")
    limit = _clamp_int(arguments.get("limit", 6), default=6, max_val=100)
    persona = arguments.get("persona") or None

    try:
        memory = get_memory()
        if mode == "lexical":
            results = memory.search(query, persona=persona, limit=limit)
        elif mode == "hybrid":
            expand = arguments.get("expand")
            results = memory.hybrid(query, persona=persona, limit=limit,
                                    use_hyde=None if expand is None else bool(expand))
        else:
            return mcp_error(f"unknown mode {mode!r}")
    except ValidationError as e:
        return mcp_error(str(e))
    except Exception as e:
        logger.error("lethe_search failed: %s", e)
        return mcp_error("Search failed")
    return mcp_json({"results": [r.to_dict() for r in results], "count": len(results)})


async def handle_lethe_lookup(arguments: dict) -> dict:
    entity = _str_arg(arguments, "entity")
    if not entity:
        return mcp_error("entity is required")
    try:
        facts = get_memory().lookup(entity, key=arguments.get("key") or None,
                                    persona=arguments.get("persona") or None)
    except Exception as e:
        logger.error("lethe_lookup failed: %s", e)
        return mcp_error("Lookup failed")
    return mcp_json({"results": [f.to_dict() for f in facts], "count": len(facts)})


async def handle_lethe_fact(arguments: dict) -> dict:
    """Get or delete one fact."""
    fact_id = _str_arg(arguments, "fact_id")
    if not fact_id:
        return mcp_error("fact_id is required")
    action = arguments.get("action", "get")
    memory = get_memory()
    if action == "get":
        fact = memory.get(fact_id)
        if fact is None:
            return mcp_error(f"fact {fact_id} not found")
        return mcp_json(fact.to_dict())
    if action == "delete":
        if not memory.delete(fact_id):
            return mcp_error(f"fact {fact_id} not found")
        return mcp_response(f"Deleted {fact_id}")
    return mcp_error(f"unknown action {action!r}")


async def handle_lethe_checkpoint(arguments: dict) -> dict:
    """Save or restore a task checkpoint."""
    action = arguments.get("action")
    persona = arguments.get("persona") or "shared"
    memory = get_memory()
    if action == "save":
        try:
            fact_id = memory.checkpoint_save(
                arguments.get("intent") or "",
                arguments.get("state"),
                expected_outcome=arguments.get("expected_outcome"),
                working_files=arguments.get("working_files"),
                persona=persona,
            )
        except ValidationError as e:
            return mcp_error(str(e))
        return mcp_response(f"Checkpoint saved: {fact_id}")
    if action == "restore":
        payload = memory.checkpoint_restore(persona=persona)
        if payload is None:
            return mcp_response("No checkpoint found.")
        return mcp_json(payload)
    return mcp_error("action must be 'save' or 'restore'")


async def handle_lethe_link(arguments: dict) -> dict:
    source_id = _str_arg(arguments, "source_id")
    target_id = _str_arg(arguments, "target_id")
    relation = _str_arg(arguments, "relation") or "related"
    try:
        get_memory().link(source_id, target_id, relation=relation)
    except ValidationError as e:
        return mcp_error(str(e))
    return mcp_response(f"Linked {source_id} -[{relation}]-> {target_id}")


async def handle_lethe_graph(arguments: dict) -> dict:
    """Traverse links from a fact."""
    fact_id = _str_arg(arguments, "fact_id")
    if not fact_id:
        return mcp_error("fact_id is required")
    max_hops = _clamp_int(arguments.get("max_hops", 2), default=2, max_val=5)
    try:
        reached = get_memory().traverse(fact_id, max_hops=max_hops)
    except Exception as e:
        logger.error("lethe_graph failed: %s", e)
        return mcp_error("Traverse failed")
    out = [{**r, "fact": r["fact"].to_dict()} for r in reached]
    return mcp_json({"start": fact_id, "reached": out, "count": len(out)})


async def handle_lethe_maintain(arguments: dict) -> dict:
    """Run one maintenance pass."""
    action = arguments.get("action")
    memory = get_memory()
    try:
        if action == "prune":
            result: Any = {"pruned": memory.prune()}
        elif action == "decay":
            result = memory.decay_confidence()
        elif action == "consolidate":
            result = memory.consolidate()
        elif action == "index":
            result = memory.backfill_embeddings(
                batch_size=_clamp_int(arguments.get("batch_size", 50), default=50, max_val=500),
                limit=_clamp_int(arguments["limit"], default=100) if arguments.get("limit") else None,
            )
        elif action == "all":
            result = memory.decay.run_all()
        else:
            return mcp_error("action must be one of: prune, decay, consolidate, index, all")
    except Exception as e:
        logger.error("lethe_maintain %s failed: %s", action, e)
        return mcp_error(f"{action} failed: {e}")
    return mcp_json(result)


async def handle_lethe_status(arguments: dict) -> dict:
    memory = get_memory()
    return mcp_json({"stats": memory.stats(), "provider": memory.health()})


HANDLERS: Dict[str, Any] = {
    "lethe_store": handle_lethe_store,
    "lethe_search": handle_lethe_search,
    "lethe_lookup": handle_lethe_lookup,
    "lethe_fact": handle_lethe_fact,
    "lethe_checkpoint": handle_lethe_checkpoint,
    "lethe_link": handle_lethe_link,
    "lethe_graph": handle_lethe_graph,
    "lethe_maintain": handle_lethe_maintain,
    "lethe_status": handle_lethe_status,
}
