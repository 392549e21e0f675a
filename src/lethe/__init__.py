"""Lethe -- persistent fact memory for AI agent personas.

Direct Python API -- no MCP server required::

    from lethe import Memory
    memory = Memory.from_settings()
    memory.store(entity="user", key="name", value="Alice", decay_class="permanent")
    results = memory.hybrid("what is the user called")
"""

__version__ = "0.3.0"

from lethe.bridge import Memory
from lethe.checkpoint import CheckpointStore
from lethe.config import Settings, load_settings
from lethe.decay import DecayEngine, classify_decay_class
from lethe.errors import LetheError, ProviderError, ValidationError
from lethe.providers import OllamaProvider
from lethe.search import SearchResult, hybrid_search, lexical_search
from lethe.sqlite_store import SQLiteStore
from lethe.types import Fact

__all__ = [
    "Memory",
    "SQLiteStore",
    "Fact",
    # Search
    "SearchResult",
    "lexical_search",
    "hybrid_search",
    # Engines
    "DecayEngine",
    "CheckpointStore",
    "OllamaProvider",
    "classify_decay_class",
    # Config / errors
    "Settings",
    "load_settings",
    "LetheError",
    "ValidationError",
    "ProviderError",
    # Meta
    "__version__",
]
