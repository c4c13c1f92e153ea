"""Retriever for semantic search over indexed shop content.

Handles:
- Query embedding generation
- Active-chunk vector search with optional content type filter
- Context assembly under a character budget
"""
from dataclasses import dataclass, field
from typing import List, Optional

import structlog

from shopassist import config
from shopassist.rag.prompt import format_context
from shopassist.rag.store_faiss import VectorStore
from shopassist.models import RetrievalResult

logger = structlog.get_logger()

TRUNCATION_MARKER = "..."


@dataclass
class AssembledContext:
    """Context text plus the results it was built from, in rank order."""

    text: str = ""
    results: List[RetrievalResult] = field(default_factory=list)
    dropped: int = 0
    truncated: bool = False


class Retriever:
    """Semantic retriever for the RAG pipeline."""

    def __init__(
        self,
        vector_store: VectorStore,
        top_k: Optional[int] = None,
        min_score: Optional[float] = None,
        max_context_chars: Optional[int] = None,
    ):
        """Initialize the retriever.

        Args:
            vector_store: Loaded vector store
            top_k: Number of results to retrieve (default from config)
            min_score: Minimum similarity (default from config)
            max_context_chars: Context budget in characters (default from config)
        """
        self.vector_store = vector_store
        self.top_k = top_k or config.RETRIEVAL_TOP_K
        self.min_score = config.RETRIEVAL_MIN_SCORE if min_score is None else min_score
        self.max_context_chars = max_context_chars or config.MAX_CONTEXT_CHARS

        logger.info(
            "retriever_initialized",
            top_k=self.top_k,
            min_score=self.min_score,
            max_context_chars=self.max_context_chars,
        )

    async def embed_query(self, query: str) -> Optional[List[float]]:
        """Embed a query; None when the provider failed."""
        return await self.vector_store.generate_embedding(query)

    async def search(
        self,
        query_vector: List[float],
        top_k: Optional[int] = None,
        content_type: Optional[str] = None,
        min_score: Optional[float] = None,
    ) -> List[RetrievalResult]:
        """Search with an already embedded query."""
        return await self.vector_store.search_similar(
            query_vector,
            limit=top_k or self.top_k,
            content_type=content_type,
            min_score=self.min_score if min_score is None else min_score,
        )

    async def retrieve(
        self,
        query: str,
        top_k: Optional[int] = None,
        content_type: Optional[str] = None,
        min_score: Optional[float] = None,
    ) -> List[RetrievalResult]:
        """Retrieve relevant chunks for a query.

        Args:
            query: User query text
            top_k: Number of results to return (overrides default)
            content_type: Restrict to one content type
            min_score: Minimum similarity (overrides default)

        Returns:
            Results sorted by relevance (best first); empty if the query is
            blank or could not be embedded
        """
        if not query or not query.strip():
            logger.warning("empty_query_provided")
            return []

        query_vector = await self.embed_query(query)
        if query_vector is None:
            logger.warning("query_embedding_unavailable", query_length=len(query))
            return []

        results = await self.search(query_vector, top_k, content_type, min_score)

        logger.info(
            "retrieval_completed",
            query_length=len(query),
            results_returned=len(results),
            top_score=results[0].score if results else None,
        )
        return results

    def build_context(
        self,
        results: List[RetrievalResult],
        max_chars: Optional[int] = None,
    ) -> AssembledContext:
        """Fit ranked results into the context budget.

        Lowest-ranked results are dropped first. If the best result alone
        exceeds the budget, its text is cut to fit.

        Args:
            results: Retrieval results in rank order
            max_chars: Budget for the chunk texts (default from the retriever)

        Returns:
            AssembledContext with the kept results and rendered text
        """
        max_chars = max_chars or self.max_context_chars
        if not results:
            return AssembledContext()

        kept: List[RetrievalResult] = []
        texts: List[str] = []
        total_chars = 0
        truncated = False

        for result in results:
            text = result.chunk.chunk_text.strip()
            if total_chars + len(text) <= max_chars:
                kept.append(result)
                texts.append(text)
                total_chars += len(text)
                continue

            if not kept:
                cut = max_chars - len(TRUNCATION_MARKER)
                text = text[: max(cut, 0)].rsplit(" ", 1)[0] + TRUNCATION_MARKER
                kept.append(result)
                texts.append(text)
                truncated = True
            # Ranks are descending; everything after this result is dropped too
            break

        context = AssembledContext(
            text=format_context(kept, texts),
            results=kept,
            dropped=len(results) - len(kept),
            truncated=truncated,
        )

        logger.debug(
            "context_formatted",
            num_chunks=len(kept),
            dropped=context.dropped,
            total_chars=len(context.text),
            truncated=truncated,
        )
        return context
