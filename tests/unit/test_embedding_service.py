"""
Unit tests for the Embedding Service.

SentenceTransformer is replaced with a stub encoder so the tests never
download a model.
"""
import numpy as np
import pytest

from src.semantic import embedding_service
from src.semantic.embedding_service import EmbeddingService


class StubModel:
    """Encodes each text as [len(text), 1, 0, ...] with the configured width."""

    loads = 0

    def __init__(self, name):
        self.name = name
        StubModel.loads += 1
        self.encode_calls = []

    def encode(self, texts, batch_size=32, show_progress_bar=False, convert_to_numpy=True):
        self.encode_calls.append((list(texts), batch_size))
        out = np.zeros((len(texts), 384), dtype=np.float32)
        for i, t in enumerate(texts):
            out[i, 0] = len(t)
            out[i, 1] = 1.0
        return out


@pytest.fixture
def service(monkeypatch):
    """EmbeddingService backed by the stub model."""
    StubModel.loads = 0
    monkeypatch.setattr(embedding_service, "SentenceTransformer", StubModel)
    return EmbeddingService()


class TestEmbeddingService:
    """Tests for EmbeddingService class."""

    def test_model_is_lazy(self, service):
        """The model loads on first use only."""
        assert service.get_model_info()["is_loaded"] is False

        service.encode(["a"])
        service.encode(["b"])

        assert StubModel.loads == 1
        assert service.get_model_info()["is_loaded"] is True
        assert service.get_model_info()["model_name"] == "all-MiniLM-L6-v2"

    def test_encode_returns_float_lists_in_order(self, service):
        """One 384-dim list of floats per text, in input order."""
        vectors = service.encode(["ab", "abcd"])

        assert len(vectors) == 2
        assert len(vectors[0]) == 384
        assert (vectors[0][0], vectors[1][0]) == (2.0, 4.0)
        assert isinstance(vectors[0][1], float)

    def test_empty_input_skips_the_model(self, service):
        """Nothing to encode never loads the model."""
        assert service.encode([]) == []
        assert StubModel.loads == 0

    @pytest.mark.asyncio
    async def test_embed_runs_off_loop(self, service):
        """The async wrapper returns the same vectors as encode()."""
        assert await service.embed(["xyz"]) == service.encode(["xyz"])

    def test_batch_size_from_settings(self, monkeypatch):
        """Encoder batch size comes from configuration."""
        from config import get_settings

        monkeypatch.setattr(embedding_service, "SentenceTransformer", StubModel)
        monkeypatch.setenv("EMBEDDING_BATCH_SIZE", "8")
        get_settings.cache_clear()
        try:
            service = EmbeddingService()
            service.encode(["a"])
        finally:
            get_settings.cache_clear()

        assert service.model.encode_calls[0][1] == 8
