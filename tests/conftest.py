"""Shared fixtures for the embedding, store and rerank tests"""

import httpx
import pytest

from paper_rerank.services.embedder import Embedder
from paper_rerank.services.vector_store import VectorStore
from tests.helpers import FakeModel


@pytest.fixture
def fake_model():
    return FakeModel()


@pytest.fixture
def embedder(fake_model):
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake_model.handler))
    return Embedder(client=client, endpoint_url="http://model.test/embed")


@pytest.fixture
def vector_store(embedder):
    store = VectorStore(":memory:", embedder=embedder)
    yield store
    store.close()
