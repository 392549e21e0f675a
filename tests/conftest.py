"""Lethe test configuration."""
import os
import sys
import time
import zlib
import pytest
from pathlib import Path

# Ensure lethe package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

_LETHE_ENV = (
    "LETHE_HOME",
    "LETHE_DB",
    "LETHE_OLLAMA_URL",
    "OLLAMA_URL",
    "LETHE_EMBEDDING_MODEL",
    "LETHE_HYDE_MODEL",
    "LETHE_HYDE",
    "LETHE_PROVIDER_TIMEOUT",
    "LETHE_API_KEY",
)

EMBED_DIM = 32


class FakeProvider:
    """Deterministic stand-in for OllamaProvider.

    Embeddings are hashed bag-of-words vectors, so texts sharing words are
    similar. `vectors` and `expansions` override per text; `embed_fails` and
    `expand_fails` simulate an unreachable server, `embed_delay` and
    `expand_delay` a slow one.
    """

    def __init__(self, embedding_model="fake-embed", hyde_model="fake-hyde", timeout=2.0):
        self.embedding_model = embedding_model
        self.hyde_model = hyde_model
        self.timeout = timeout
        self.vectors = {}
        self.expansions = {}
        self.embed_fails = False
        self.expand_fails = False
        self.embed_calls = []
        self.expand_calls = []
        self.embed_delay = 0.0
        self.expand_delay = 0.0

    def embed(self, text):
        self.embed_calls.append(text)
        if self.embed_delay:
            time.sleep(self.embed_delay)
        if self.embed_fails:
            return None
        if text in self.vectors:
            return list(self.vectors[text])
        return bag_of_words(text)

    def expand(self, query):
        self.expand_calls.append(query)
        if self.expand_delay:
            time.sleep(self.expand_delay)
        if self.expand_fails or query not in self.expansions:
            return [query]
        return [query, self.expansions[query]]

    def health(self):
        return {
            "url": "fake://",
            "reachable": not self.embed_fails,
            "embedding_model": self.embedding_model,
            "embedding_model_available": not self.embed_fails,
            "hyde_model": self.hyde_model,
            "hyde_model_available": not self.expand_fails,
        }


def bag_of_words(text, dim=EMBED_DIM):
    vec = [0.0] * dim
    for word in text.lower().replace(":", " ").split():
        vec[zlib.crc32(word.encode()) % dim] += 1.0
    return vec


@pytest.fixture
def tmp_lethe_dir(tmp_path):
    """Create a temporary LETHE_HOME and clear every LETHE_* override."""
    lethe_dir = tmp_path / ".lethe"
    lethe_dir.mkdir()
    saved = {name: os.environ.pop(name, None) for name in _LETHE_ENV}
    os.environ["LETHE_HOME"] = str(lethe_dir)
    yield lethe_dir
    for name in _LETHE_ENV:
        os.environ.pop(name, None)
        if saved[name] is not None:
            os.environ[name] = saved[name]


@pytest.fixture
def store(tmp_lethe_dir):
    """Create a fresh SQLiteStore for testing."""
    from lethe.sqlite_store import SQLiteStore
    s = SQLiteStore(db_path=tmp_lethe_dir / "test.db")
    yield s
    s.close()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def memory(store, provider):
    """A Memory wired to the test store and the fake provider."""
    from lethe.bridge import Memory
    from lethe.config import load_settings
    return Memory(store=store, provider=provider, settings=load_settings())
