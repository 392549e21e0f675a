"""
Lethe configuration -- environment-driven settings.

Everything is read lazily through load_settings() so tests (and long-running
servers) can override variables after import.

    LETHE_HOME               base directory (default ~/.lethe)
    LETHE_DB                 fact database path (default $LETHE_HOME/facts.db)
    LETHE_OLLAMA_URL         provider base URL (falls back to OLLAMA_URL)
    LETHE_EMBEDDING_MODEL    embedding model name
    LETHE_HYDE_MODEL         query-expansion model name
    LETHE_HYDE               "0" disables query expansion by default
    LETHE_PROVIDER_TIMEOUT   per-call provider timeout in seconds
    LETHE_API_KEY            API key for the HTTP server (unset = no auth)
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

DEFAULT_OLLAMA_URL = "http://localhost:11434"
DEFAULT_EMBEDDING_MODEL = "nomic-embed-text"
DEFAULT_HYDE_MODEL = "qwen2.5:1.5b"
DEFAULT_PROVIDER_TIMEOUT = 15.0


def lethe_home() -> Path:
    """Resolve LETHE_HOME lazily so tests can override via env var."""
    return Path(os.environ.get("LETHE_HOME", str(Path.home() / ".lethe")))


def _env_flag(name: str, default: bool) -> bool:
    val = os.environ.get(name, "").strip().lower()
    if not val:
        return default
    return val not in ("0", "false", "no", "off")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    db_path: Path
    ollama_url: str = DEFAULT_OLLAMA_URL
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    hyde_model: str = DEFAULT_HYDE_MODEL
    hyde_enabled: bool = True
    provider_timeout: float = DEFAULT_PROVIDER_TIMEOUT
    api_key: Optional[str] = None


def load_settings() -> Settings:
    """Build Settings from the current environment."""
    db = os.environ.get("LETHE_DB")
    url = os.environ.get("LETHE_OLLAMA_URL") or os.environ.get("OLLAMA_URL") or DEFAULT_OLLAMA_URL
    return Settings(
        db_path=Path(db) if db else lethe_home() / "facts.db",
        ollama_url=url.rstrip("/"),
        embedding_model=os.environ.get("LETHE_EMBEDDING_MODEL") or DEFAULT_EMBEDDING_MODEL,
        hyde_model=os.environ.get("LETHE_HYDE_MODEL") or DEFAULT_HYDE_MODEL,
        hyde_enabled=_env_flag("LETHE_HYDE", True),
        provider_timeout=max(0.1, _env_float("LETHE_PROVIDER_TIMEOUT", DEFAULT_PROVIDER_TIMEOUT)),
        api_key=os.environ.get("LETHE_API_KEY") or None,
    )
