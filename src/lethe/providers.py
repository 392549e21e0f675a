"""
Lethe providers -- embedding and query-expansion (HyDE) over an Ollama-compatible API.

Both capabilities are optional. Every public method degrades instead of
raising: embed() returns None, expand() returns just the original query,
health() reports reachability in its result dict.

Endpoints used:
    POST {base}/api/embeddings  {model, prompt}          -> {embedding: [float]}
    POST {base}/api/generate    {model, prompt, stream}  -> {response: str}
    GET  {base}/api/tags                                 -> {models: [{name}]}
"""

import json
import logging
import urllib.error
import urllib.request
from typing import Any, Dict, List, Optional

from lethe.config import Settings
from lethe.errors import ProviderError

logger = logging.getLogger("lethe.providers")

MAX_EMBED_CHARS = 8000
MIN_EXPANSION_CHARS = 10

_HYDE_PROMPT = """Given the user query: "{query}"

Generate a hypothetical answer or relevant context that would help find information about this query.
Be specific and include likely keywords or facts that would match.

Query: {query}
Hypothetical answer/context:"""


class OllamaProvider:
    """HTTP client for the embedding and expansion models."""

    def __init__(
        self,
        base_url: str,
        embedding_model: str,
        hyde_model: str,
        timeout: float = 15.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.embedding_model = embedding_model
        self.hyde_model = hyde_model
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "OllamaProvider":
        return cls(
            base_url=settings.ollama_url,
            embedding_model=settings.embedding_model,
            hyde_model=settings.hyde_model,
            timeout=settings.provider_timeout,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(self, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send a request and decode the JSON body. Raises ProviderError on any failure."""
        url = f"{self.base_url}{path}"
        data = None
        headers = {"User-Agent": "lethe-memory/1.0"}
        if payload is not None:
            data = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"
        req = urllib.request.Request(url, data=data, headers=headers, method="POST" if data else "GET")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                body = resp.read()
        except urllib.error.HTTPError as e:
            raise ProviderError(f"{url} returned HTTP {e.code}") from e
        except (urllib.error.URLError, OSError) as e:
            raise ProviderError(f"{url} unreachable: {e}") from e
        try:
            decoded = json.loads(body)
        except ValueError as e:
            raise ProviderError(f"{url} returned malformed JSON") from e
        if not isinstance(decoded, dict):
            raise ProviderError(f"{url} returned {type(decoded).__name__}, expected object")
        return decoded

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    def embed(self, text: str) -> Optional[List[float]]:
        """Embed *text*, or None when the provider is unavailable."""
        if not text:
            return None
        try:
            data = self._request(
                "/api/embeddings",
                {"model": self.embedding_model, "prompt": text[:MAX_EMBED_CHARS]},
            )
            embedding = data.get("embedding")
            if not isinstance(embedding, list) or not embedding:
                raise ProviderError("response has no embedding")
            return [float(x) for x in embedding]
        except (ProviderError, TypeError, ValueError) as e:
            logger.warning("Embedding failed: %s", e)
            return None

    def expand(self, query: str) -> List[str]:
        """Return [query, hypothetical_answer], or [query] on any failure."""
        try:
            data = self._request(
                "/api/generate",
                {"model": self.hyde_model, "prompt": _HYDE_PROMPT.format(query=query), "stream": False},
            )
        except ProviderError as e:
            logger.warning("Query expansion failed: %s", e)
            return [query]
        expanded = data.get("response")
        if expanded is None:
            expanded = data.get("text")
        if isinstance(expanded, str):
            expanded = expanded.strip()
            if len(expanded) > MIN_EXPANSION_CHARS:
                return [query, expanded]
        return [query]

    def health(self) -> Dict[str, Any]:
        """Check reachability and whether both configured models are installed."""
        result: Dict[str, Any] = {
            "url": self.base_url,
            "reachable": False,
            "embedding_model": self.embedding_model,
            "embedding_model_available": False,
            "hyde_model": self.hyde_model,
            "hyde_model_available": False,
        }
        try:
            data = self._request("/api/tags")
        except ProviderError as e:
            result["error"] = str(e)
            return result
        result["reachable"] = True
        names = set()
        for model in data.get("models") or []:
            if isinstance(model, dict) and isinstance(model.get("name"), str):
                names.add(model["name"])
        result["embedding_model_available"] = _model_installed(self.embedding_model, names)
        result["hyde_model_available"] = _model_installed(self.hyde_model, names)
        return result


def _model_installed(model: str, names: set) -> bool:
    """Ollama lists untagged models as 'name:latest'."""
    if model in names:
        return True
    if ":" not in model and f"{model}:latest" in names:
        return True
    return False
