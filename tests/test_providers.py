"""Tests for the Ollama provider -- transport patched, no network."""
import json
import urllib.error
from unittest.mock import MagicMock, patch

import pytest

from lethe.config import load_settings
from lethe.errors import ProviderError
from lethe.providers import MAX_EMBED_CHARS, OllamaProvider


@pytest.fixture
def provider():
    return OllamaProvider("http://ollama.test:11434/", "nomic-embed-text", "qwen2.5:1.5b", timeout=3.0)


def _response(payload):
    """A urlopen() context manager whose body is *payload* (bytes or JSON-able)."""
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    resp = MagicMock()
    resp.read.return_value = body
    cm = MagicMock()
    cm.__enter__.return_value = resp
    return cm


def _sent(mock_urlopen):
    req = mock_urlopen.call_args[0][0]
    return req, json.loads(req.data) if req.data else None


# ============================================================================
# embed
# ============================================================================


def test_embed_success(provider):
    with patch("urllib.request.urlopen", return_value=_response({"embedding": [0.1, 0.2, 0.3]})) as m:
        assert provider.embed("hello") == [0.1, 0.2, 0.3]
    req, body = _sent(m)
    assert req.full_url == "http://ollama.test:11434/api/embeddings"
    assert req.get_method() == "POST"
    assert body == {"model": "nomic-embed-text", "prompt": "hello"}
    assert m.call_args.kwargs["timeout"] == 3.0


def test_embed_truncates(provider):
    with patch("urllib.request.urlopen", return_value=_response({"embedding": [1.0]})) as m:
        provider.embed("x" * (MAX_EMBED_CHARS + 500))
    _, body = _sent(m)
    assert len(body["prompt"]) == MAX_EMBED_CHARS


@pytest.mark.parametrize("side_effect", [
    urllib.error.URLError("connection refused"),
    urllib.error.HTTPError("http://ollama.test", 500, "boom", {}, None),
    TimeoutError("timed out"),
])
def test_embed_transport_failure_returns_none(provider, side_effect):
    with patch("urllib.request.urlopen", side_effect=side_effect):
        assert provider.embed("hello") is None


@pytest.mark.parametrize("payload", [b"not json", {"embedding": []}, {"other": 1}, ["list"]])
def test_embed_malformed_returns_none(provider, payload):
    with patch("urllib.request.urlopen", return_value=_response(payload)):
        assert provider.embed("hello") is None


def test_embed_empty_text_skips_call(provider):
    with patch("urllib.request.urlopen") as m:
        assert provider.embed("") is None
    m.assert_not_called()


# ============================================================================
# expand
# ============================================================================


def test_expand_success(provider):
    answer = "  The user is called Alice and lives in Paris.  "
    with patch("urllib.request.urlopen", return_value=_response({"response": answer})) as m:
        variants = provider.expand("who is the user")
    assert variants == ["who is the user", answer.strip()]
    req, body = _sent(m)
    assert req.full_url.endswith("/api/generate")
    assert body["model"] == "qwen2.5:1.5b"
    assert body["stream"] is False
    assert "who is the user" in body["prompt"]


def test_expand_accepts_text_field(provider):
    with patch("urllib.request.urlopen", return_value=_response({"text": "a long enough answer"})):
        assert provider.expand("q") == ["q", "a long enough answer"]


def test_expand_short_answer_ignored(provider):
    with patch("urllib.request.urlopen", return_value=_response({"response": "too short"})):
        assert provider.expand("q") == ["q"]


def test_expand_failure_degrades(provider):
    with patch("urllib.request.urlopen", side_effect=urllib.error.URLError("down")):
        assert provider.expand("q") == ["q"]


def test_expand_malformed_degrades(provider):
    with patch("urllib.request.urlopen", return_value=_response({"response": 42})):
        assert provider.expand("q") == ["q"]


# ============================================================================
# health / transport
# ============================================================================


def test_health_models_available(provider):
    tags = {"models": [{"name": "nomic-embed-text:latest"}, {"name": "qwen2.5:1.5b"}]}
    with patch("urllib.request.urlopen", return_value=_response(tags)) as m:
        health = provider.health()
    assert m.call_args[0][0].get_method() == "GET"
    assert health["reachable"] is True
    assert health["embedding_model_available"] is True
    assert health["hyde_model_available"] is True


def test_health_model_missing(provider):
    with patch("urllib.request.urlopen", return_value=_response({"models": [{"name": "llama3:latest"}]})):
        health = provider.health()
    assert health["reachable"] is True
    assert health["embedding_model_available"] is False


def test_health_unreachable(provider):
    with patch("urllib.request.urlopen", side_effect=urllib.error.URLError("refused")):
        health = provider.health()
    assert health["reachable"] is False
    assert "unreachable" in health["error"]


def test_request_raises_provider_error(provider):
    with patch("urllib.request.urlopen", side_effect=urllib.error.URLError("refused")):
        with pytest.raises(ProviderError):
            provider._request("/api/tags")


def test_from_settings(tmp_lethe_dir):
    import os
    os.environ["OLLAMA_URL"] = "http://gpu-box:11434/"
    os.environ["LETHE_EMBEDDING_MODEL"] = "mxbai-embed-large"
    os.environ["LETHE_PROVIDER_TIMEOUT"] = "4.5"
    p = OllamaProvider.from_settings(load_settings())
    assert p.base_url == "http://gpu-box:11434"
    assert p.embedding_model == "mxbai-embed-large"
    assert p.timeout == 4.5
