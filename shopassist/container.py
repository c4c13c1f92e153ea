"""Composition root: builds every component once and wires them together."""
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog

from shopassist import config
from shopassist.content import ContentScanner, InMemoryContentStore
from shopassist.db import Database
from shopassist.events import EventBus
from shopassist.license import PlanQuota
from shopassist.llm_client import OllamaClient
from shopassist.memory import ConversationManager
from shopassist.protocols import CompletionProvider, ContentStore, EmbeddingProvider, QuotaService
from shopassist.rag.indexer import ContentIndexer
from shopassist.rag.orchestrator import RagOrchestrator
from shopassist.rag.retriever import Retriever
from shopassist.rag.store_faiss import VectorStore

logger = structlog.get_logger()


@dataclass
class Assistant:
    """The wired core."""

    events: EventBus
    quota: QuotaService
    database: Database
    vector_store: VectorStore
    scanner: ContentScanner
    indexer: ContentIndexer
    retriever: Retriever
    memory: ConversationManager
    orchestrator: RagOrchestrator


async def build_assistant(
    content_store: Optional[ContentStore] = None,
    embedder: Optional[EmbeddingProvider] = None,
    completion_provider: Optional[CompletionProvider] = None,
    quota: Optional[QuotaService] = None,
    events: Optional[EventBus] = None,
    db_path: Optional[Path] = None,
    dimension: Optional[int] = None,
    plan: Optional[str] = None,
) -> Assistant:
    """Construct and load the assistant core.

    Collaborators left as None get the default adapters: one OllamaClient
    serves both embeddings and completions, and quotas come from the local
    plan table. The vector index is loaded before returning.
    """
    events = events or EventBus()
    if embedder is None or completion_provider is None:
        client = OllamaClient()
        embedder = embedder or client
        completion_provider = completion_provider or client
    quota = quota or PlanQuota(plan=plan, events=events)

    database = Database(db_path)
    vector_store = VectorStore(database, embedder, dimension=dimension)
    await vector_store.init_or_load()

    retriever = Retriever(vector_store)
    memory = ConversationManager()

    assistant = Assistant(
        events=events,
        quota=quota,
        database=database,
        vector_store=vector_store,
        scanner=ContentScanner(content_store or InMemoryContentStore()),
        indexer=ContentIndexer(vector_store, embedder, quota=quota, events=events),
        retriever=retriever,
        memory=memory,
        orchestrator=RagOrchestrator(
            retriever,
            completion_provider,
            memory,
            quota=quota,
            events=events,
            chat_model=getattr(completion_provider, "chat_model", None) or config.CHAT_MODEL,
        ),
    )

    logger.info("assistant_built", db_path=str(database.db_path), dimension=vector_store.dimension)
    return assistant
