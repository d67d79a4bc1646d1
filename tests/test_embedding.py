"""Tests for embedding backends and vector math."""

from types import SimpleNamespace

import numpy as np
import pytest

from lorekeeper.embedding import (
    HashEmbedding,
    OpenAIEmbedding,
    cosine_similarity,
    create_embedding_backend,
    normalize,
    serialize_vector,
)
from lorekeeper.models import EngineConfig


class RecordingEmbeddings:
    """Stands in for the client's embeddings resource."""

    def __init__(self, width):
        self.width = width
        self.calls = []

    def create(self, input, model, **kwargs):
        self.calls.append({"input": input, "model": model, **kwargs})
        # Returned out of order, unnormalized
        data = [
            SimpleNamespace(index=i, embedding=[float(i + 1)] + [0.0] * (self.width - 1))
            for i in range(len(input))
        ]
        return SimpleNamespace(data=list(reversed(data)))


def test_hash_embedding_is_deterministic():
    backend = HashEmbedding(dimensions=32)

    first = backend.embed("The bridge held.")
    second = backend.embed("The bridge held.")

    assert first == second
    assert len(first) == backend.dimensions == 32
    assert backend.embed_batch(["The bridge held.", "x"])[0] == first
    assert backend.embed_batch([]) == []


def test_hash_embedding_is_unit_length():
    vector = HashEmbedding(dimensions=16).embed("Elara drew her bow.")
    assert np.linalg.norm(vector) == pytest.approx(1.0)


def test_different_texts_are_dissimilar():
    backend = HashEmbedding(dimensions=384)
    a = backend.embed("Elara swore an oath")
    b = backend.embed("The merchant sold a lantern")
    assert abs(cosine_similarity(a, b)) < 0.3


def test_normalize_leaves_zero_rows():
    rows = normalize([[3.0, 4.0], [0.0, 0.0]])
    assert rows.tolist() == [[0.6, 0.8], [0.0, 0.0]]


def test_cosine_similarity():
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 2.0]) == pytest.approx(0.0)
    assert cosine_similarity([1.0, 1.0], [-1.0, -1.0]) == pytest.approx(-1.0)


def test_cosine_similarity_degenerate_inputs():
    assert cosine_similarity([], []) == 0.0
    assert cosine_similarity([1.0, 0.0], [1.0]) == 0.0
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0


def test_create_hash_backend_uses_configured_dimensions():
    config = EngineConfig(db_path=":memory:", embedding_backend="hash", vector_dimensions=8)
    backend = create_embedding_backend(config)
    assert isinstance(backend, HashEmbedding)
    assert backend.dimensions == 8


def test_create_unknown_backend_raises():
    config = EngineConfig(db_path=":memory:", embedding_backend="bogus")
    with pytest.raises(ValueError, match="Unknown embedding backend"):
        create_embedding_backend(config)


def test_openai_embeddings_are_shortened_to_index_width(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    config = EngineConfig(
        db_path=":memory:",
        embedding_backend="openai",
        openai_model="text-embedding-3-small",
        vector_dimensions=4,
    )
    backend = create_embedding_backend(config)
    embeddings = RecordingEmbeddings(4)
    backend.client = SimpleNamespace(embeddings=embeddings)

    vectors = backend.embed_batch(["first", "second"])

    assert backend.dimensions == 4
    assert embeddings.calls[0]["dimensions"] == 4
    assert vectors == [[1.0, 0.0, 0.0, 0.0], [1.0, 0.0, 0.0, 0.0]]
    assert backend.embed_batch([]) == []
    assert len(embeddings.calls) == 1


def test_openai_model_that_cannot_fit_the_index_is_rejected(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    assert OpenAIEmbedding("text-embedding-ada-002", dimensions=384).dimensions == 1536

    config = EngineConfig(
        db_path=":memory:",
        embedding_backend="openai",
        openai_model="text-embedding-ada-002",
        vector_dimensions=384,
    )
    with pytest.raises(ValueError, match="1536 dimensions"):
        create_embedding_backend(config)


def test_serialize_vector():
    assert serialize_vector([0.5, -1.0]) == "[0.5, -1.0]"
