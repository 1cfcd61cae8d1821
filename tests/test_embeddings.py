"""Tests for embedding providers."""

import json
import sys
from dataclasses import replace

import httpx
import numpy as np
import pytest

from lgrep.config import Config
from lgrep.embeddings import (
    HashEmbedder,
    OllamaEmbedder,
    SentenceTransformerEmbedder,
    check_vectors,
    get_provider,
    tokenize,
)
from lgrep.errors import ConfigError, EmbeddingError


def cosine(a: np.ndarray, b: np.ndarray) -> float:
    return float(np.dot(a, b))


def ollama_client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


class TestTokenize:
    def test_camel_case(self):
        assert tokenize("validateJwtToken") == ["validatejwttoken", "validate", "jwt", "token"]

    def test_acronyms(self):
        assert tokenize("HTTPServer") == ["httpserver", "http", "server"]

    def test_snake_case_and_punctuation(self):
        assert tokenize("check_signature(jwt);") == ["check", "signature", "jwt"]

    def test_empty(self):
        assert tokenize("  \n\t") == []


class TestHashEmbedder:
    def test_dimension_follows_model(self):
        embedder = HashEmbedder()
        [small] = embedder.embed(["hello"], "minilm")
        [large] = embedder.embed(["hello"], "nomic")
        assert small.shape == (384,)
        assert large.shape == (768,)

    def test_unit_length(self):
        [vector] = HashEmbedder().embed(["def connect_pool(): pass"], "minilm")
        assert np.linalg.norm(vector) == pytest.approx(1.0, abs=1e-5)

    def test_deterministic(self):
        first = HashEmbedder().embed(["some text", "other text"], "minilm")
        second = HashEmbedder().embed(["some text", "other text"], "minilm")
        for a, b in zip(first, second):
            assert np.array_equal(a, b)

    def test_model_changes_vectors(self):
        text = "parse the configuration file and validate every field"
        [a] = HashEmbedder().embed([text], "minilm")
        [b] = HashEmbedder().embed([text], "bge")
        assert not np.allclose(a, b)

    def test_shared_vocabulary_is_similar(self):
        query, related, unrelated = HashEmbedder().embed(
            ["jwt token validation", "def validate_jwt_token(token):", "database connection pool"],
            "minilm",
        )
        assert cosine(query, related) > cosine(query, unrelated)

    def test_empty_text_is_zero(self):
        [vector] = HashEmbedder().embed([""], "minilm")
        assert not vector.any()

    def test_unknown_model(self):
        with pytest.raises(ConfigError, match="Unknown model"):
            HashEmbedder().embed(["x"], "gpt")


class TestCheckVectors:
    def test_count_mismatch(self):
        with pytest.raises(EmbeddingError, match="returned 1 vectors for 2 texts"):
            check_vectors([np.zeros(4)], 2, 4, "test")

    def test_dimension_mismatch(self):
        with pytest.raises(EmbeddingError, match="3-dimensional"):
            check_vectors([np.zeros(3)], 1, 4, "test")

    def test_non_finite(self):
        with pytest.raises(EmbeddingError, match="non-finite"):
            check_vectors([np.array([1.0, np.nan])], 1, 2, "test")

    def test_converts_lists(self):
        [vector] = check_vectors([[1, 2]], 1, 2, "test")
        assert vector.dtype == np.float32


class TestOllamaEmbedder:
    def test_embed_request(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            body = json.loads(request.content)
            return httpx.Response(
                200, json={"embeddings": [[0.1] * 384 for _ in body["input"]]}
            )

        embedder = OllamaEmbedder("http://ollama.test/", client=ollama_client(handler))
        vectors = embedder.embed(["a", "b"], "minilm")

        assert len(vectors) == 2
        assert vectors[0].shape == (384,)
        [request] = requests
        assert str(request.url) == "http://ollama.test/api/embed"
        assert json.loads(request.content) == {"model": "all-minilm", "input": ["a", "b"]}

    def test_empty_input_skips_request(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        embedder = OllamaEmbedder("http://ollama.test", client=ollama_client(handler))
        assert embedder.embed([], "minilm") == []

    def test_http_error(self):
        embedder = OllamaEmbedder(
            "http://ollama.test",
            client=ollama_client(lambda request: httpx.Response(500, text="boom")),
        )
        with pytest.raises(EmbeddingError, match="Ollama request"):
            embedder.embed(["a"], "minilm")

    def test_connection_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        embedder = OllamaEmbedder("http://ollama.test", client=ollama_client(handler))
        with pytest.raises(EmbeddingError):
            embedder.embed(["a"], "minilm")

    def test_invalid_json(self):
        embedder = OllamaEmbedder(
            "http://ollama.test",
            client=ollama_client(lambda request: httpx.Response(200, text="not json")),
        )
        with pytest.raises(EmbeddingError, match="invalid JSON"):
            embedder.embed(["a"], "minilm")

    def test_missing_embeddings(self):
        embedder = OllamaEmbedder(
            "http://ollama.test",
            client=ollama_client(lambda request: httpx.Response(200, json={"error": "x"})),
        )
        with pytest.raises(EmbeddingError, match="no 'embeddings'"):
            embedder.embed(["a"], "minilm")

    def test_wrong_dimension(self):
        embedder = OllamaEmbedder(
            "http://ollama.test",
            client=ollama_client(
                lambda request: httpx.Response(200, json={"embeddings": [[0.1] * 10]})
            ),
        )
        with pytest.raises(EmbeddingError, match="10-dimensional"):
            embedder.embed(["a"], "minilm")


class TestSentenceTransformerEmbedder:
    def test_missing_package(self, monkeypatch):
        monkeypatch.setitem(sys.modules, "sentence_transformers", None)
        with pytest.raises(EmbeddingError, match="sentence-transformers is not installed"):
            SentenceTransformerEmbedder().embed(["a"], "minilm")

    def test_empty_input(self):
        assert SentenceTransformerEmbedder().embed([], "minilm") == []


class TestGetProvider:
    @pytest.fixture
    def config(self, tmp_path, monkeypatch) -> Config:
        monkeypatch.delenv("LGREP_EMBEDDER", raising=False)
        monkeypatch.delenv("LGREP_MODEL", raising=False)
        return Config.from_env(tmp_path)

    def test_hash(self, config: Config):
        assert isinstance(get_provider(config), HashEmbedder)

    def test_ollama(self, config: Config):
        provider = get_provider(replace(config, embedder="ollama", ollama_url="http://o:1"))
        assert isinstance(provider, OllamaEmbedder)
        assert provider.base_url == "http://o:1"
        provider.close()

    def test_sentence_transformers(self, config: Config):
        provider = get_provider(replace(config, embedder="sentence-transformers"))
        assert isinstance(provider, SentenceTransformerEmbedder)

    def test_unknown(self, config: Config):
        with pytest.raises(ConfigError):
            get_provider(replace(config, embedder="magic"))
