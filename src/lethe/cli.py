"""Lethe CLI -- store, search, maintain and serve a persona fact store."""

import argparse
import dataclasses
import json
import logging
import sys
import time
from pathlib import Path
from typing import List, Optional

from lethe.errors import LetheError, ValidationError
from lethe.types import CATEGORIES, DECAY_CLASSES

logger = logging.getLogger("lethe.cli")


def _open_memory(args):
    from lethe.bridge import Memory
    from lethe.config import load_settings

    settings = load_settings()
    if getattr(args, "db", None):
        settings = dataclasses.replace(settings, db_path=Path(args.db))
    return Memory.from_settings(settings)


def _emit(args, payload, text: str) -> None:
    """Print JSON when --json was given, otherwise the human line(s)."""
    if getattr(args, "json", False):
        print(json.dumps(payload, indent=2, default=str))
    else:
        print(text)


def _format_age(ts: Optional[int]) -> str:
    """Relative age string (e.g. '2d ago')."""
    if not ts:
        return ""
    seconds = max(0, int(time.time()) - int(ts))
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    days = seconds // 86400
    if days < 7:
        return f"{days}d ago"
    if days < 30:
        return f"{days // 7}w ago"
    return f"{days // 30}mo ago"


def _fact_line(fact, score=None) -> str:
    prefix = f"{score:.3f}  " if score is not None else ""
    return (
        f"{prefix}{fact.id}  [{fact.persona}/{fact.decay_class}]  "
        f"{fact.label()}: {fact.value[:100]}  ({_format_age(fact.created_at)})"
    )


def _print_results(args, results, elapsed: float) -> None:
    if getattr(args, "json", False):
        out = [r.to_dict() for r in results]
        print(json.dumps({"results": out, "count": len(out), "elapsed_s": round(elapsed, 3)}, indent=2))
        return
    if not results:
        print(f'No results for "{" ".join(args.query)}" ({elapsed:.2f}s)')
        return
    for r in results:
        print(_fact_line(r.fact, r.score))
    print(f"\n{len(results)} result(s) ({elapsed:.2f}s)")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_store(args, memory):
    """Store a fact, embedding it when the provider is reachable."""
    from lethe.decay import classify_decay_class

    value = " ".join(args.value)
    decay_class = args.decay
    if decay_class == "auto":
        decay_class = classify_decay_class(args.text or f"{args.key or ''} {value}")
    metadata = {"tags": args.tag} if args.tag else None
    fact, embedded = memory.store(
        entity=args.entity,
        value=value,
        key=args.key,
        persona=args.persona,
        text=args.text,
        category=args.category,
        decay_class=decay_class,
        importance=args.importance,
        confidence=args.confidence,
        metadata=metadata,
        embed=not args.no_embed,
    )
    note = "" if embedded else " (no embedding)"
    _emit(args, {"fact": fact.to_dict(), "embedded": embedded}, f"Stored {fact.id} [{fact.decay_class}]{note}")


def cmd_search(args, memory):
    """Lexical search."""
    start = time.monotonic()
    results = memory.search(" ".join(args.query), persona=args.persona, limit=args.limit)
    _print_results(args, results, time.monotonic() - start)


def cmd_hybrid(args, memory):
    """Lexical + semantic search with optional query expansion."""
    start = time.monotonic()
    results = memory.hybrid(
        " ".join(args.query),
        persona=args.persona,
        limit=args.limit,
        use_hyde=False if args.no_hyde else None,
        use_vector=not args.no_vector,
    )
    _print_results(args, results, time.monotonic() - start)


def cmd_lookup(args, memory):
    facts = memory.lookup(args.entity, key=args.key, persona=args.persona)
    if getattr(args, "json", False):
        print(json.dumps({"results": [f.to_dict() for f in facts], "count": len(facts)}, indent=2))
        return
    if not facts:
        print(f"No facts for {args.entity}" + (f".{args.key}" if args.key else ""))
        return
    for fact in facts:
        print(_fact_line(fact))


def cmd_get(args, memory):
    fact = memory.get(args.fact_id)
    if fact is None:
        print(f"Not found: {args.fact_id}", file=sys.stderr)
        return 1
    _emit(args, fact.to_dict(), json.dumps(fact.to_dict(), indent=2, default=str))


def cmd_delete(args, memory):
    if not memory.delete(args.fact_id):
        print(f"Not found: {args.fact_id}", file=sys.stderr)
        return 1
    print(f"Deleted {args.fact_id}")


def cmd_checkpoint(args, memory):
    """Save or restore a task checkpoint."""
    if args.checkpoint_command == "save":
        state = args.state
        try:
            state = json.loads(state)
        except ValueError:
            pass  # plain-text state
        fact_id = memory.checkpoint_save(
            args.intent,
            state,
            expected_outcome=args.expected,
            working_files=args.file,
            persona=args.persona,
        )
        _emit(args, {"id": fact_id}, f"Checkpoint saved: {fact_id}")
        return
    if args.checkpoint_command == "restore":
        payload = memory.checkpoint_restore(persona=args.persona)
        if payload is None:
            if getattr(args, "json", False):
                print("null")
            else:
                print("No checkpoint found")
            return
        print(json.dumps(payload, indent=2, default=str))
        return
    raise ValidationError("usage: lethe checkpoint {save|restore}")


def cmd_prune(args, memory):
    removed = memory.prune()
    _emit(args, {"pruned": removed}, f"Pruned {removed} expired fact(s)")


def cmd_decay(args, memory):
    result = memory.decay_confidence()
    _emit(args, result, f"Decayed {result['decayed']} fact(s), deleted {result['deleted']} below floor")


def cmd_consolidate(args, memory):
    result = memory.consolidate()
    text = f"Merged {result['merged']} duplicate(s) across {result['groups']} group(s)"
    if result["skipped"]:
        text += f"; skipped {result['skipped']} with corrupt metadata"
    _emit(args, result, text)


def cmd_link(args, memory):
    memory.link(args.source_id, args.target_id, relation=args.relation)
    print(f"Linked {args.source_id} -[{args.relation}]-> {args.target_id}")


def cmd_graph(args, memory):
    """Show a fact's links, or everything reachable within --hops."""
    if args.hops <= 1:
        edges = memory.neighbors(args.fact_id)
        if getattr(args, "json", False):
            print(json.dumps([{**e, "fact": e["fact"].to_dict()} for e in edges], indent=2, default=str))
            return
        if not edges:
            print(f"No links for {args.fact_id}")
        for e in edges:
            arrow = "->" if e["direction"] == "out" else "<-"
            print(f"{arrow} [{e['relation']}] {_fact_line(e['fact'])}")
        return

    reached = memory.traverse(args.fact_id, max_hops=args.hops)
    if getattr(args, "json", False):
        print(json.dumps([{**r, "fact": r["fact"].to_dict()} for r in reached], indent=2, default=str))
        return
    if not reached:
        print(f"Nothing reachable from {args.fact_id}")
    for r in reached:
        print(f"hop {r['hop']}  {_fact_line(r['fact'])}")


def cmd_index(args, memory):
    """Backfill embeddings for facts that lack one."""
    def progress(totals):
        if not getattr(args, "json", False):
            done = totals["processed"] + totals["failed"]
            print(f"  {done}/{totals['total']} (failed {totals['failed']})", file=sys.stderr)

    result = memory.backfill_embeddings(batch_size=args.batch, limit=args.limit, progress=progress)
    _emit(args, result, f"Embedded {result['processed']} of {result['total']} fact(s), {result['failed']} failed")


def cmd_stats(args, memory):
    stats = memory.stats()
    if getattr(args, "json", False):
        print(json.dumps(stats, indent=2, default=str))
        return
    for key, value in stats.items():
        if isinstance(value, dict):
            print(f"{key}:")
            for sub, count in sorted(value.items()):
                print(f"  {sub:<12} {count}")
        else:
            print(f"{key}: {value}")


def cmd_health(args, memory):
    """Report provider reachability. Exit 1 when unreachable."""
    health = memory.health()
    if getattr(args, "json", False):
        print(json.dumps(health, indent=2))
    else:
        state = "reachable" if health.get("reachable") else "UNREACHABLE"
        print(f"provider: {health.get('url', '-')} {state}")
        if health.get("reachable"):
            print(f"  {health['embedding_model']}: {'ok' if health['embedding_model_available'] else 'missing'}")
            print(f"  {health['hyde_model']}: {'ok' if health['hyde_model_available'] else 'missing'}")
        elif health.get("error"):
            print(f"  {health['error']}")
    return 0 if health.get("reachable") else 1


def cmd_serve(args):
    """Run the MCP server (stdio, or HTTP with --http)."""
    import asyncio

    if args.http:
        from lethe.server.http_server import run_http

        asyncio.run(run_http(args.host, args.port, db_path=args.db))
    else:
        from lethe.server.mcp_server import main as serve_stdio

        asyncio.run(serve_stdio(db_path=args.db))


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class _Parser(argparse.ArgumentParser):
    """Usage errors exit 1 like validation errors."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _add_json(p):
    p.add_argument("--json", action="store_true", help="Output as JSON")


def build_parser() -> argparse.ArgumentParser:
    parser = _Parser(
        prog="lethe",
        description="Lethe -- persistent fact memory for AI agent personas",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at INFO level")
    parser.add_argument("--db", help="Database path (default: $LETHE_DB or ~/.lethe/facts.db)")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- Facts ---
    p = subparsers.add_parser("store", help="Store a fact")
    p.add_argument("entity", help="Entity the fact is about (e.g. 'user')")
    p.add_argument("value", nargs="+", help="Fact value")
    p.add_argument("-k", "--key", help="Attribute name (e.g. 'name')")
    p.add_argument("-p", "--persona", default="shared", help="Owning persona (default: shared)")
    p.add_argument("--text", help="Search text (default: '<entity> <key>: <value>')")
    p.add_argument("-c", "--category", default="fact", choices=CATEGORIES)
    p.add_argument("-d", "--decay", default="stable", choices=DECAY_CLASSES + ("auto",),
                   help="Decay tier, or 'auto' to infer from the text (default: stable)")
    p.add_argument("--importance", type=float, default=1.0)
    p.add_argument("--confidence", type=float, default=1.0)
    p.add_argument("-t", "--tag", action="append", help="Tag (repeatable)")
    p.add_argument("--no-embed", action="store_true", help="Skip embedding")
    _add_json(p)

    p = subparsers.add_parser("search", help="Lexical search")
    p.add_argument("query", nargs="+", help="Search text")
    p.add_argument("-p", "--persona")
    p.add_argument("--limit", type=int, default=5, help="Max results (default: 5)")
    _add_json(p)

    p = subparsers.add_parser("hybrid", help="Lexical + semantic search")
    p.add_argument("query", nargs="+", help="Search text")
    p.add_argument("-p", "--persona")
    p.add_argument("--limit", type=int, default=6, help="Max results (default: 6)")
    p.add_argument("--no-hyde", action="store_true", help="Skip query expansion")
    p.add_argument("--no-vector", action="store_true", help="Skip the embedding path")
    _add_json(p)

    p = subparsers.add_parser("lookup", help="Exact entity/key lookup")
    p.add_argument("entity")
    p.add_argument("key", nargs="?")
    p.add_argument("-p", "--persona")
    _add_json(p)

    p = subparsers.add_parser("get", help="Show a fact by id")
    p.add_argument("fact_id")
    _add_json(p)

    p = subparsers.add_parser("delete", help="Delete a fact by id")
    p.add_argument("fact_id")

    # --- Checkpoints ---
    p = subparsers.add_parser("checkpoint", help="Save or restore task state")
    cp_sub = p.add_subparsers(dest="checkpoint_command")
    save = cp_sub.add_parser("save", help="Save a checkpoint")
    save.add_argument("--intent", required=True, help="What the task is trying to do")
    save.add_argument("--state", required=True, help="Current state (JSON or text)")
    save.add_argument("--expected", help="Expected outcome")
    save.add_argument("-f", "--file", action="append", help="Working file (repeatable)")
    save.add_argument("-p", "--persona", default="shared")
    _add_json(save)
    restore = cp_sub.add_parser("restore", help="Print the latest checkpoint")
    restore.add_argument("-p", "--persona", default="shared")
    _add_json(restore)

    # --- Maintenance ---
    _add_json(subparsers.add_parser("prune", help="Delete expired facts"))
    _add_json(subparsers.add_parser("decay", help="Halve stale confidence and drop facts below the floor"))
    _add_json(subparsers.add_parser("consolidate", help="Merge duplicate entity/key facts"))

    # --- Graph ---
    p = subparsers.add_parser("link", help="Link two facts")
    p.add_argument("source_id")
    p.add_argument("target_id")
    p.add_argument("-r", "--relation", default="related")

    p = subparsers.add_parser("graph", help="Show links around a fact")
    p.add_argument("fact_id")
    p.add_argument("--hops", type=int, default=1, help="Traverse up to N hops (1-5, default: 1)")
    _add_json(p)

    # --- Embeddings / status ---
    p = subparsers.add_parser("index", help="Backfill missing embeddings")
    p.add_argument("--batch", type=int, default=50, help="Batch size (default: 50)")
    p.add_argument("--limit", type=int, help="Stop after N facts")
    _add_json(p)

    _add_json(subparsers.add_parser("stats", help="Fact counts and database size"))
    _add_json(subparsers.add_parser("health", help="Check the embedding/expansion provider"))

    p = subparsers.add_parser("serve", help="Run the MCP server")
    p.add_argument("--http", action="store_true", help="Serve over HTTP instead of stdio")
    p.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    p.add_argument("--port", type=int, default=8089, help="HTTP port (default: 8089)")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(levelname)s %(name)s: %(message)s",
    )

    commands = {
        "store": cmd_store,
        "search": cmd_search,
        "hybrid": cmd_hybrid,
        "lookup": cmd_lookup,
        "get": cmd_get,
        "delete": cmd_delete,
        "checkpoint": cmd_checkpoint,
        "prune": cmd_prune,
        "decay": cmd_decay,
        "consolidate": cmd_consolidate,
        "link": cmd_link,
        "graph": cmd_graph,
        "index": cmd_index,
        "stats": cmd_stats,
        "health": cmd_health,
    }

    if args.command == "serve":
        cmd_serve(args)
        return 0
    if args.command not in commands:
        parser.print_help()
        return 1

    try:
        memory = _open_memory(args)
    except LetheError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    try:
        return commands[args.command](args, memory) or 0
    except ValidationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        memory.close()


if __name__ == "__main__":
    sys.exit(main())
