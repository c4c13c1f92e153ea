"""Shared fixtures and provider fakes for unit tests."""
import asyncio
import hashlib
import re
from typing import Dict, List, Optional

import numpy as np
import pytest

from shopassist.db import Database
from shopassist.errors import ProviderError, RetryableProviderError
from shopassist.events import EventBus
from shopassist.license import PlanQuota
from shopassist.memory import ConversationManager
from shopassist.models import Completion, ContentItem
from shopassist.rag.indexer import ContentIndexer
from shopassist.rag.orchestrator import RagOrchestrator
from shopassist.rag.retriever import Retriever
from shopassist.rag.store_faiss import VectorStore

DIMENSION = 64

_TOKEN_RE = re.compile(r"\w+")


def bag_of_words(text: str, dimension: int = DIMENSION) -> List[float]:
    """Deterministic hashed bag-of-words vector."""
    vector = np.zeros(dimension, dtype=np.float32)
    for token in _TOKEN_RE.findall(text.lower()):
        bucket = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % dimension
        vector[bucket] += 1.0
    if not vector.any():
        vector[0] = 1.0
    return vector.tolist()


class FakeEmbeddingProvider:
    """Embedding provider with scriptable failures."""

    def __init__(self, dimension: int = DIMENSION):
        self.dimension = dimension
        self.calls: List[List[str]] = []
        self.fail_all: Optional[ProviderError] = None
        self.fail_on: Optional[str] = None
        self.delay = 0.0

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        await asyncio.sleep(self.delay)
        if self.fail_all is not None:
            raise self.fail_all
        if self.fail_on and any(self.fail_on in text for text in texts):
            raise RetryableProviderError("rate limited", status_code=429)
        return [bag_of_words(text, self.dimension) for text in texts]

    @property
    def texts_embedded(self) -> int:
        return sum(len(batch) for batch in self.calls)


class FakeCompletionProvider:
    """Completion provider returning a scripted answer."""

    chat_model = "fake-chat"

    def __init__(self, text: str = "Our Trail Boots are waterproof and cost 120 dollars."):
        self.text = text
        self.confidence: Optional[float] = None
        self.error: Optional[Exception] = None
        self.delay = 0.0
        self.calls: List[List[Dict[str, str]]] = []

    async def complete(self, messages, model=None, temperature=None, max_tokens=None) -> Completion:
        self.calls.append(list(messages))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return Completion(
            text=self.text,
            tokens_used=42,
            model_used=model or self.chat_model,
            confidence=self.confidence,
        )


def make_item(
    content_id="1",
    body="Waterproof hiking boots for rough trails.",
    content_type="product",
    title="Trail Boots",
    url="https://shop.example/trail-boots",
    **metadata,
) -> ContentItem:
    return ContentItem(
        id=content_id,
        type=content_type,
        title=title,
        body=body,
        url=url,
        metadata=metadata,
    )


def long_body(words: int = 200, prefix: str = "word") -> str:
    return " ".join(f"{prefix}{i}" for i in range(words))


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def database(tmp_path):
    return Database(tmp_path / "chunks.sqlite")


@pytest.fixture
def embedder():
    return FakeEmbeddingProvider()


@pytest.fixture
def completion():
    return FakeCompletionProvider()


@pytest.fixture
def quota(events):
    return PlanQuota("unlimited", events=events)


@pytest.fixture
async def vector_store(database, embedder):
    store = VectorStore(database, embedder, dimension=DIMENSION, embedding_model="fake-embed")
    await store.init_or_load()
    return store


@pytest.fixture
def indexer(vector_store, embedder, quota, events):
    return ContentIndexer(vector_store, embedder, quota=quota, events=events, batch_size=4)


@pytest.fixture
def memory():
    return ConversationManager(max_turns=3, ttl_seconds=600)


@pytest.fixture
def retriever(vector_store):
    return Retriever(vector_store, top_k=3, min_score=0.1, max_context_chars=2000)


@pytest.fixture
def orchestrator(retriever, completion, memory, quota, events):
    return RagOrchestrator(
        retriever,
        completion,
        memory,
        quota=quota,
        events=events,
        chat_model="fake-chat",
        provider_timeout=2.0,
    )
