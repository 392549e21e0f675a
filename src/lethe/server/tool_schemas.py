"""Lethe MCP Tool Schemas -- fact storage, retrieval, checkpoints and maintenance."""

from lethe.types import CATEGORIES, DECAY_CLASSES

_PERSONA = {"type": "string", "description": "Persona scope. Omit for all; a persona also sees 'shared' facts."}

TOOL_SCHEMAS = [
    {
        "name": "lethe_store",
        "description": "Store a durable fact about an entity (e.g. entity='user', key='name', value='Alice'). Pick a decay tier: permanent for identity and decisions, stable (default, 90d) for general knowledge, active (14d) for ongoing work, session (24h) for scratch context.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "entity": {"type": "string", "description": "What the fact is about"},
                "key": {"type": "string", "description": "Attribute name"},
                "value": {"type": "string", "description": "Fact value"},
                "text": {"type": "string", "description": "Search text (default: '<entity> <key>: <value>')"},
                "persona": {"type": "string", "description": "Owning persona (default: shared)"},
                "category": {"type": "string", "enum": list(CATEGORIES)},
                "decay_class": {
                    "type": "string",
                    "enum": list(DECAY_CLASSES) + ["auto"],
                    "description": "Decay tier, or 'auto' to infer it from the text",
                },
                "importance": {"type": "number", "minimum": 0, "maximum": 1},
                "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                "tags": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["entity", "value"],
        },
    },
    {
        "name": "lethe_search",
        "description": "Search facts. Mode 'hybrid' (default) fuses keyword and semantic matches with optional query expansion; 'lexical' is keyword-only and never calls the model server.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string"},
                "mode": {"type": "string", "enum": ["hybrid", "lexical"], "default": "hybrid"},
                "persona": _PERSONA,
                "limit": {"type": "integer", "default": 6},
                "expand": {"type": "boolean", "description": "Use query expansion (hybrid only)"},
            },
            "required": ["query"],
        },
    },
    {
        "name": "lethe_lookup",
        "description": "Exact, case-insensitive lookup of an entity (and optionally one key). Reading refreshes the expiry of stable and active facts.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "entity": {"type": "string"},
                "key": {"type": "string"},
                "persona": _PERSONA,
            },
            "required": ["entity"],
        },
    },
    {
        "name": "lethe_fact",
        "description": "Get or delete a single fact by id.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "action": {"type": "string", "enum": ["get", "delete"], "default": "get"},
                "fact_id": {"type": "string"},
            },
            "required": ["fact_id"],
        },
    },
    {
        "name": "lethe_checkpoint",
        "description": "Save task state before a context reset, or restore the latest checkpoint (kept for 4 hours).",
        "inputSchema": {
            "type": "object",
            "properties": {
                "action": {"type": "string", "enum": ["save", "restore"]},
                "intent": {"type": "string", "description": "What the task is trying to do (save)"},
                "state": {"description": "Current state, any JSON value (save)"},
                "expected_outcome": {"type": "string"},
                "working_files": {"type": "array", "items": {"type": "string"}},
                "persona": {"type": "string", "description": "Checkpoint owner (default: shared)"},
            },
            "required": ["action"],
        },
    },
    {
        "name": "lethe_link",
        "description": "Link two facts with a relation label.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "source_id": {"type": "string"},
                "target_id": {"type": "string"},
                "relation": {"type": "string", "default": "related"},
            },
            "required": ["source_id", "target_id"],
        },
    },
    {
        "name": "lethe_graph",
        "description": "Facts connected to a fact, up to max_hops links away (1-5).",
        "inputSchema": {
            "type": "object",
            "properties": {
                "fact_id": {"type": "string"},
                "max_hops": {"type": "integer", "default": 2, "minimum": 1, "maximum": 5},
            },
            "required": ["fact_id"],
        },
    },
    {
        "name": "lethe_maintain",
        "description": "Maintenance: 'prune' expired facts, 'decay' stale confidence, 'consolidate' duplicates, 'index' missing embeddings, or 'all' (prune, decay, consolidate).",
        "inputSchema": {
            "type": "object",
            "properties": {
                "action": {"type": "string", "enum": ["prune", "decay", "consolidate", "index", "all"]},
                "batch_size": {"type": "integer", "default": 50},
                "limit": {"type": "integer"},
            },
            "required": ["action"],
        },
    },
    {
        "name": "lethe_status",
        "description": "Store statistics plus model-server health.",
        "inputSchema": {"type": "object", "properties": {}},
    },
]
