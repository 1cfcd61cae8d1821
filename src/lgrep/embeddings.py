"""Embedding providers.

A provider turns fragment texts into fixed-length vectors for a named model.
Providers must be deterministic for identical (text, model) pairs and return
vectors in input order.
"""

import hashlib
import logging
import re
import threading
from typing import Protocol

import httpx
import numpy as np

from lgrep.config import Config, resolve_model
from lgrep.errors import ConfigError, EmbeddingError

logger = logging.getLogger(__name__)

# Underscores separate tokens; camelCase words are split further below
TOKEN_RE = re.compile(r"[A-Za-z0-9]+")
CAMEL_RE = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|\d+")

OLLAMA_MODELS = {
    "minilm": "all-minilm",
    "nomic": "nomic-embed-text",
}

OLLAMA_TIMEOUT = 60.0


class EmbeddingProvider(Protocol):
    def embed(self, texts: list[str], model_id: str) -> list[np.ndarray]: ...


def check_vectors(
    vectors: list[np.ndarray], expected_count: int, dimension: int, source: str
) -> list[np.ndarray]:
    """Validate provider output: one finite vector of ``dimension`` per input."""
    if len(vectors) != expected_count:
        raise EmbeddingError(
            f"{source} returned {len(vectors)} vectors for {expected_count} texts"
        )
    checked = []
    for vector in vectors:
        array = np.asarray(vector, dtype=np.float32).reshape(-1)
        if array.shape[0] != dimension:
            raise EmbeddingError(
                f"{source} returned a {array.shape[0]}-dimensional vector, "
                f"expected {dimension}"
            )
        if not np.all(np.isfinite(array)):
            raise EmbeddingError(f"{source} returned a non-finite vector")
        checked.append(array)
    return checked


def tokenize(text: str) -> list[str]:
    """Lower-cased word tokens, with identifiers split into their parts.

    ``validateJwtToken`` yields ``validatejwttoken``, ``validate``, ``jwt``
    and ``token``.
    """
    tokens: list[str] = []
    for word in TOKEN_RE.findall(text):
        lowered = word.lower()
        tokens.append(lowered)
        parts = CAMEL_RE.findall(word)
        if len(parts) > 1:
            tokens.extend(part.lower() for part in parts)
    return tokens


class HashEmbedder:
    """Deterministic feature-hashing embedder.

    Each token is hashed (together with the model id) to a bucket and a sign;
    the bucket counts are L2-normalized. Texts that share vocabulary get high
    cosine similarity, which is enough for offline use and tests.
    """

    def embed(self, texts: list[str], model_id: str) -> list[np.ndarray]:
        model = resolve_model(model_id)
        vectors = [self._embed_one(text, model.name, model.dimension) for text in texts]
        return check_vectors(vectors, len(texts), model.dimension, "hash embedder")

    def _embed_one(self, text: str, model_id: str, dimension: int) -> np.ndarray:
        vec = np.zeros(dimension, dtype=np.float32)
        for token in tokenize(text):
            digest = hashlib.blake2b(
                f"{model_id}:{token}".encode("utf-8"), digest_size=8
            ).digest()
            h = int.from_bytes(digest, "little", signed=False)
            sign = -1.0 if (h >> 63) & 1 else 1.0
            vec[h % dimension] += sign
        norm = float(np.linalg.norm(vec))
        if norm > 0.0:
            vec /= norm
        return vec


class OllamaEmbedder:
    """Embeddings from a local Ollama server (``POST /api/embed``)."""

    def __init__(self, base_url: str, client: httpx.Client | None = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=OLLAMA_TIMEOUT)

    def embed(self, texts: list[str], model_id: str) -> list[np.ndarray]:
        model = resolve_model(model_id)
        if not texts:
            return []
        remote_name = OLLAMA_MODELS.get(model.name, model.model_name)
        try:
            response = self._client.post(
                f"{self.base_url}/api/embed",
                json={"model": remote_name, "input": texts},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise EmbeddingError(f"Ollama request to {self.base_url} failed: {e}") from e
        except ValueError as e:
            raise EmbeddingError(f"Ollama returned invalid JSON: {e}") from e

        embeddings = data.get("embeddings") if isinstance(data, dict) else None
        if not isinstance(embeddings, list):
            raise EmbeddingError("Ollama response has no 'embeddings' list")
        return check_vectors(embeddings, len(texts), model.dimension, "Ollama")

    def close(self) -> None:
        self._client.close()


class SentenceTransformerEmbedder:
    """Local models through the optional ``sentence-transformers`` package."""

    def __init__(self):
        self._models: dict[str, object] = {}
        self._lock = threading.Lock()

    def _load(self, model_id: str):
        model = resolve_model(model_id)
        with self._lock:
            if model.name not in self._models:
                try:
                    from sentence_transformers import SentenceTransformer
                except ImportError as e:
                    raise EmbeddingError(
                        "sentence-transformers is not installed; "
                        "install with `pip install lgrep[local]`"
                    ) from e
                logger.info("Loading embedding model %s", model.model_name)
                self._models[model.name] = SentenceTransformer(
                    model.model_name, trust_remote_code=model.name == "nomic"
                )
            return self._models[model.name]

    def embed(self, texts: list[str], model_id: str) -> list[np.ndarray]:
        model = resolve_model(model_id)
        if not texts:
            return []
        encoder = self._load(model.name)
        try:
            matrix = encoder.encode(
                texts, normalize_embeddings=True, convert_to_numpy=True
            )
        except (RuntimeError, ValueError) as e:
            raise EmbeddingError(f"Embedding with {model.model_name} failed: {e}") from e
        return check_vectors(list(matrix), len(texts), model.dimension, model.model_name)


def get_provider(config: Config) -> EmbeddingProvider:
    """Instantiate the provider selected by ``config.embedder``."""
    if config.embedder == "hash":
        return HashEmbedder()
    if config.embedder == "ollama":
        return OllamaEmbedder(config.ollama_url)
    if config.embedder == "sentence-transformers":
        return SentenceTransformerEmbedder()
    raise ConfigError(f"Unknown embedder: {config.embedder}")
