"""Embedding backends for fact and summary vectors.

Every backend returns unit-length vectors of the width the ``fact_vec``
table was created with, so sqlite-vec's L2 ranking agrees with cosine
similarity.
"""

from __future__ import annotations

from typing import Protocol
import json
import hashlib

import numpy as np

from lorekeeper.models import EngineConfig


class EmbeddingBackend(Protocol):
    """Protocol for embedding backends."""

    def embed(self, text: str) -> list[float]:
        """Embed a single text."""
        ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed multiple texts."""
        ...

    @property
    def dimensions(self) -> int:
        """Return the dimensionality of embeddings."""
        ...


def normalize(vectors: np.ndarray) -> np.ndarray:
    """Scale each row to unit length; zero rows stay zero."""
    vectors = np.atleast_2d(np.asarray(vectors, dtype=float))
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    return vectors / np.where(norms == 0.0, 1.0, norms)


class LocalEmbedding:
    """Local embedding using sentence-transformers."""

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        from sentence_transformers import SentenceTransformer

        self.model = SentenceTransformer(model_name)
        self._dimensions = self.model.get_sentence_embedding_dimension()

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return self.model.encode(texts, normalize_embeddings=True).tolist()

    @property
    def dimensions(self) -> int:
        return self._dimensions


class OpenAIEmbedding:
    """OpenAI API embedding backend.

    The text-embedding-3 models are asked for exactly ``dimensions`` values
    so their vectors fit the store's index; ada-002 is fixed at 1536.
    """

    _MODEL_DIMENSIONS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }

    def __init__(self, model: str = "text-embedding-3-small", dimensions: int | None = None):
        from openai import OpenAI

        self.model = model
        self.client = OpenAI()
        native = self._MODEL_DIMENSIONS.get(model, 1536)
        self._shortened = dimensions is not None and model.startswith("text-embedding-3")
        self._dimensions = dimensions if self._shortened else native

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        kwargs = {"dimensions": self._dimensions} if self._shortened else {}
        response = self.client.embeddings.create(input=texts, model=self.model, **kwargs)
        data = sorted(response.data, key=lambda d: d.index)
        return normalize([d.embedding for d in data]).tolist()

    @property
    def dimensions(self) -> int:
        return self._dimensions


class HashEmbedding:
    """Deterministic, dependency-free embedding backend.

    Intended for tests and constrained environments where heavyweight ML
    dependencies (torch/sentence-transformers) are undesirable. Identical
    texts map to identical vectors; different texts are nearly orthogonal.
    """

    def __init__(self, dimensions: int = 384):
        self._dimensions = dimensions

    def _seed(self, text: str) -> int:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return int.from_bytes(digest[:8], "big", signed=False)

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        rows = [
            np.random.default_rng(self._seed(t)).standard_normal(self._dimensions) for t in texts
        ]
        return normalize(np.stack(rows)).tolist()

    @property
    def dimensions(self) -> int:
        return self._dimensions


def create_embedding_backend(config: EngineConfig) -> EmbeddingBackend:
    """Build the backend named by config.embedding_backend.

    Raises:
        ValueError: unknown backend, or one whose vectors would not fit the
            configured vector_dimensions
    """
    if config.embedding_backend == "openai":
        backend = OpenAIEmbedding(model=config.openai_model, dimensions=config.vector_dimensions)
    elif config.embedding_backend == "hash":
        backend = HashEmbedding(dimensions=config.vector_dimensions)
    elif config.embedding_backend == "local":
        backend = LocalEmbedding(model_name=config.embedding_model)
    else:
        raise ValueError(f"Unknown embedding backend: {config.embedding_backend}")

    if backend.dimensions != config.vector_dimensions:
        raise ValueError(
            f"{config.embedding_backend} embeddings have {backend.dimensions} dimensions, "
            f"but vector_dimensions is {config.vector_dimensions}"
        )
    return backend


def serialize_vector(vec: list[float]) -> str:
    """Serialize a vector to JSON for sqlite-vec."""
    return json.dumps(vec)


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity of two vectors; 0.0 for mismatched or zero vectors."""
    if len(a) != len(b) or not a:
        return 0.0
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    magnitude = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if magnitude == 0.0:
        return 0.0
    return float(np.dot(va, vb) / magnitude)
