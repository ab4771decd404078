"""
Embedding providers for the Knowledge Base.

The indexing pipeline and the hybrid searcher only depend on the
:class:`Embedder` contract (``embed_query`` / ``embed_documents``).  Two
HTTP-backed providers are included:

* :class:`OllamaEmbedder`: local Ollama server, ``/api/embed`` endpoint.
* :class:`OpenAIEmbedder`: OpenAI Embeddings API (``openai`` package).

Texts are sent in batches of ``batch_size``; each batch is retried with
exponential back-off before the call fails.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional

import requests

if TYPE_CHECKING:
    from ..config import Config

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

BATCH_SIZE = 100
MAX_RETRIES = 3
REQUEST_TIMEOUT = (10, 120)


class EmbeddingError(RuntimeError):
    """Raised when a provider cannot produce embeddings for a batch."""


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------

class Embedder(ABC):
    """
    Turns text into fixed-dimension vectors.

    Parameters
    ----------
    dimensions:
        Expected vector length.  When set, every returned vector is checked
        against it so a misconfigured model is caught before vectors reach
        the store.
    batch_size:
        Maximum number of texts per provider request.
    max_retries:
        Attempts per batch before giving up.
    retry_delay:
        Base delay in seconds; attempt *n* waits ``retry_delay * 2**(n-1)``.
    """

    def __init__(
        self,
        dimensions: Optional[int] = None,
        batch_size: int = BATCH_SIZE,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = 1.0,
    ) -> None:
        self.dimensions = dimensions
        self.batch_size = max(1, batch_size)
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay

    @abstractmethod
    def _embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed one batch with a single provider request."""

    def embed_query(self, text: str) -> list[float]:
        """Embed a single query string."""
        return self.embed_documents([text])[0]

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """
        Embed *texts*, preserving order.

        Raises
        ------
        EmbeddingError
            If any batch fails after all retries, or the provider returns the
            wrong number or size of vectors.
        """
        vectors: list[list[float]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = texts[start:start + self.batch_size]
            result = self._embed_with_retries(batch)
            if len(result) != len(batch):
                raise EmbeddingError(
                    f"Provider returned {len(result)} vectors for {len(batch)} texts"
                )
            for vec in result:
                self._check_dimensions(vec)
            vectors.extend(result)
        return vectors

    def _embed_with_retries(self, texts: list[str]) -> list[list[float]]:
        for attempt in range(1, self.max_retries + 1):
            try:
                return self._embed_batch(texts)
            except EmbeddingError:
                raise
            except Exception as exc:
                if attempt < self.max_retries:
                    wait = self.retry_delay * (2 ** (attempt - 1))
                    logger.warning(
                        "Embedding API error (attempt %d/%d): %s; retrying in %.1fs",
                        attempt, self.max_retries, exc, wait,
                    )
                    time.sleep(wait)
                else:
                    raise EmbeddingError(
                        f"Embedding API failed after {self.max_retries} attempts: {exc}"
                    ) from exc
        return []  # unreachable

    def _check_dimensions(self, vec: list[float]) -> None:
        if self.dimensions is not None and len(vec) != self.dimensions:
            raise EmbeddingError(
                f"Embedding has {len(vec)} dimensions, expected {self.dimensions}"
            )


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class OllamaEmbedder(Embedder):
    """Embeddings from a local Ollama server."""

    def __init__(self, base_url: str, model: str, **kwargs) -> None:
        super().__init__(**kwargs)
        self.model = model
        # Accept either the server root or any /api/... endpoint URL
        if "/api/" in base_url:
            self._api_root = base_url.rsplit("/api/", 1)[0]
        else:
            self._api_root = base_url.rstrip("/")

    def _embed_batch(self, texts: list[str]) -> list[list[float]]:
        url = f"{self._api_root}/api/embed"
        response = requests.post(
            url, json={"model": self.model, "input": texts}, timeout=REQUEST_TIMEOUT,
        )
        response.raise_for_status()
        data = response.json()
        embeddings = data.get("embeddings")
        if not isinstance(embeddings, list):
            raise EmbeddingError(f"Unexpected Ollama response: missing 'embeddings' ({url})")
        return embeddings


def _get_openai_client(api_key: str, base_url: Optional[str] = None):
    """Return an openai.OpenAI client, raising ImportError if not installed."""
    try:
        import openai  # type: ignore
    except ImportError as exc:
        raise ImportError(
            "openai package is required for OpenAI embeddings. "
            "Install it with: pip install 'hybrid_kb[openai]'"
        ) from exc
    if not api_key:
        raise EnvironmentError("OPENAI_API_KEY environment variable is not set.")
    return openai.OpenAI(api_key=api_key, base_url=base_url)


class OpenAIEmbedder(Embedder):
    """Embeddings from the OpenAI Embeddings API."""

    def __init__(self, api_key: str, model: str = "text-embedding-3-small",
                 base_url: Optional[str] = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.model = model
        self._api_key = api_key
        self._base_url = base_url
        self._client = None  # lazy init

    def _get_client(self):
        if self._client is None:
            self._client = _get_openai_client(self._api_key, self._base_url)
        return self._client

    def _embed_batch(self, texts: list[str]) -> list[list[float]]:
        response = self._get_client().embeddings.create(model=self.model, input=texts)
        return [item.embedding for item in response.data]


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------

def create_embedder(config: "Config") -> Embedder:
    """Create the embedder selected by ``config.EMBEDDING_PROVIDER``."""
    common = {
        "dimensions": config.VECTOR_DIMENSIONS,
        "batch_size": config.EMBEDDING_BATCH_SIZE,
        "max_retries": config.EMBEDDING_MAX_RETRIES,
    }
    if config.EMBEDDING_PROVIDER == "openai":
        return OpenAIEmbedder(
            api_key=config.OPENAI_API_KEY,
            model=config.EMBEDDING_MODEL,
            base_url=config.OPENAI_BASE_URL,
            **common,
        )
    return OllamaEmbedder(
        base_url=config.OLLAMA_BASE_URL,
        model=config.EMBEDDING_MODEL,
        **common,
    )
