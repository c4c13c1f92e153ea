"""FAISS vector store for semantic search over content chunks.

Handles:
- Runtime embedding dimension detection
- Chunk persistence with hash-based deduplication (SQLite)
- Generation-versioned activation of a content entity's chunk set
- Cosine similarity search restricted to active chunks
"""
import asyncio
import threading
from typing import Any, Dict, List, Optional, Sequence

import faiss
import numpy as np
import structlog

from shopassist import config
from shopassist.db import Database
from shopassist.errors import NotFoundError, ProviderError, ValidationError
from shopassist.models import Chunk, RetrievalResult, StoreOutcome
from shopassist.protocols import EmbeddingProvider

logger = structlog.get_logger()

SNIPPET_CHARS = 200


def _normalize(vectors: np.ndarray) -> np.ndarray:
    """L2-normalize rows so inner product equals cosine similarity."""
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return vectors / norms


def make_snippet(text: str, max_chars: int = SNIPPET_CHARS) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars].rsplit(" ", 1)[0] + "..."


class VectorStore:
    """Chunk store backed by SQLite rows and an in-memory FAISS index.

    SQLite is the source of truth (chunk text, embedding, activation state);
    the FAISS index holds one L2-normalized vector per active row, keyed by
    row id, and is rebuilt from SQLite on load. Activation and deactivation
    add and remove vectors so superseded chunks do not pile up in the index.
    """

    def __init__(
        self,
        database: Database,
        embedder: EmbeddingProvider,
        dimension: Optional[int] = None,
        embedding_model: Optional[str] = None,
        provider_timeout: Optional[float] = None,
    ):
        """Initialize the vector store.

        Args:
            database: Chunk database
            embedder: Embedding provider used for generate_embedding()
            dimension: Configured embedding size (detected from the provider if None)
            embedding_model: Name recorded on stored chunks (default from config)
            provider_timeout: Seconds before an embedding request is abandoned
        """
        self.db = database
        self.embedder = embedder
        self.dimension = dimension or config.EMBEDDING_DIMENSION
        self.embedding_model = embedding_model or config.EMBEDDING_MODEL
        self.provider_timeout = provider_timeout or config.PROVIDER_TIMEOUT

        self.index: Optional[faiss.IndexIDMap2] = None
        self._lock = threading.RLock()
        self.skipped_vectors = 0

        logger.info(
            "vector_store_initialized",
            db_path=str(self.db.db_path),
            embedding_model=self.embedding_model,
            dimension=self.dimension,
        )

    # ------------------------------------------------------------------
    # Setup

    async def get_embedding_dimension(self) -> int:
        """Detect embedding dimension by embedding a test string.

        Raises:
            ProviderError: If the provider cannot embed the probe text
        """
        logger.info("detecting_embedding_dimension", model=self.embedding_model)
        async with asyncio.timeout(self.provider_timeout):
            vectors = await self.embedder.embed(["dimension probe"])

        if not vectors or not vectors[0]:
            raise ProviderError("Empty embedding returned while detecting dimension")

        dimension = len(vectors[0])
        logger.info("embedding_dimension_detected", dimension=dimension)
        return dimension

    async def init_or_load(self) -> None:
        """Create the FAISS index and fill it from active chunks.

        Rows whose dimension differs from the configured one (left over from
        another embedding model) are skipped and counted.
        """
        if self.dimension is None:
            self.dimension = await self.get_embedding_dimension()

        with self._lock:
            self.index = faiss.IndexIDMap2(faiss.IndexFlatIP(self.dimension))
            self.skipped_vectors = 0

            ids: List[int] = []
            vectors: List[np.ndarray] = []
            for row in self.db.iter_embeddings():
                if row["embedding_dim"] != self.dimension:
                    self.skipped_vectors += 1
                    continue
                ids.append(row["id"])
                vectors.append(np.frombuffer(row["embedding"], dtype=np.float32))

            if ids:
                matrix = _normalize(np.vstack(vectors).astype(np.float32))
                self.index.add_with_ids(matrix, np.asarray(ids, dtype=np.int64))

        if self.skipped_vectors:
            logger.warning(
                "stale_vectors_skipped",
                count=self.skipped_vectors,
                dimension=self.dimension,
            )

        logger.info(
            "vector_index_loaded",
            dimension=self.dimension,
            vector_count=self.index.ntotal,
        )

    def _require_index(self) -> faiss.IndexIDMap2:
        if self.index is None:
            raise RuntimeError("Vector index not loaded. Call init_or_load() first.")
        return self.index

    def _validate_vector(self, vector: Sequence[float]) -> np.ndarray:
        array = np.asarray(vector, dtype=np.float32).reshape(1, -1)
        if array.shape[1] != self.dimension:
            raise ValidationError(
                f"Embedding dimension mismatch: expected {self.dimension}, "
                f"got {array.shape[1]}"
            )
        if not np.all(np.isfinite(array)):
            raise ValidationError("Embedding contains non-finite values")
        return array

    # ------------------------------------------------------------------
    # Embeddings

    async def generate_embedding(self, text: str) -> Optional[List[float]]:
        """Embed a single text.

        Returns:
            The vector, or None if the provider failed or timed out
        """
        if not text or not text.strip():
            return None
        try:
            async with asyncio.timeout(self.provider_timeout):
                vectors = await self.embedder.embed([text])
        except TimeoutError:
            logger.warning("embedding_timeout", timeout=self.provider_timeout)
            return None
        except ProviderError as e:
            logger.warning(
                "embedding_failed",
                error=str(e),
                retryable=e.retryable,
                status_code=e.status_code,
            )
            return None

        if not vectors or not vectors[0]:
            logger.warning("embedding_empty", text_length=len(text))
            return None
        return list(vectors[0])

    # ------------------------------------------------------------------
    # Writes

    async def store_vector(
        self,
        chunk: Chunk,
        vector: Sequence[float],
        active: bool = True,
    ) -> StoreOutcome:
        """Persist a chunk with its embedding.

        A chunk whose hash is already stored is reported as DUPLICATE, never
        as an error; its embedding is replaced only when it came from a
        different embedding model.

        Args:
            chunk: Chunk to store (chunk_hash identifies it)
            vector: Embedding of chunk.chunk_text
            active: Store as searchable right away; the indexer stores
                pending chunks and activates a whole set at once

        Raises:
            ValidationError: If the vector dimensionality does not match
        """
        array = self._validate_vector(vector)
        index = self._require_index()

        searchable = active
        with self.db.transaction() as conn:
            existing = self.db.get_chunk_by_hash(conn, chunk.chunk_hash)
            if existing is None:
                chunk_id = self.db.insert_chunk(
                    conn, chunk, array[0].tolist(), self.embedding_model, active
                )
                outcome = StoreOutcome.STORED if chunk_id is not None else StoreOutcome.DUPLICATE
            elif existing["embedding_model"] != self.embedding_model:
                chunk_id = existing["id"]
                self.db.replace_embedding(conn, chunk_id, array[0].tolist(), self.embedding_model)
                outcome = StoreOutcome.REPLACED
                searchable = bool(existing["is_active"])
            else:
                chunk_id = existing["id"]
                outcome = StoreOutcome.DUPLICATE

        if outcome is not StoreOutcome.DUPLICATE:
            ids = np.asarray([chunk_id], dtype=np.int64)
            with self._lock:
                if outcome is StoreOutcome.REPLACED:
                    index.remove_ids(ids)
                if searchable:
                    index.add_with_ids(_normalize(array), ids)
            chunk.id = chunk_id

        logger.debug(
            "chunk_vector_stored",
            chunk_hash=chunk.chunk_hash[:12],
            outcome=outcome.value,
            chunk_id=chunk_id,
        )
        return outcome

    def activate_chunk_set(
        self,
        content_type: str,
        content_id: str,
        chunk_hashes: Sequence[str],
    ) -> Dict[str, int]:
        """Atomically make chunk_hashes the only active chunks of a content.

        The previous set stays searchable until this transaction commits.
        Generation 1 means this is the first activation of the content.

        Returns:
            {"generation", "activated", "deactivated"}
        """
        with self.db.transaction() as conn:
            generation = self.db.next_generation(conn, content_type, content_id)
            changes = self.db.activate_chunk_set(
                conn, content_type, content_id, chunk_hashes, generation
            )
            added = self.db.get_embeddings(conn, changes["switched_on"])

        self._sync_index(added, changes["switched_off"])

        counts = {
            "activated": changes["activated"],
            "deactivated": changes["deactivated"],
        }
        logger.info(
            "chunk_set_activated",
            content_type=content_type,
            content_id=content_id,
            generation=generation,
            **counts,
        )
        return {"generation": generation, **counts}

    def deactivate_content(self, content_type: str, content_id: str) -> int:
        """Soft-delete all active chunks of a content entity."""
        removed = self.db.deactivate_content(content_type, content_id)
        self._sync_index([], removed)
        logger.info(
            "content_deactivated",
            content_type=content_type,
            content_id=content_id,
            chunks=len(removed),
        )
        return len(removed)

    def _sync_index(self, added: Sequence[Any], removed: Sequence[int]) -> None:
        """Mirror activation changes into the FAISS index."""
        index = self._require_index()
        rows = [row for row in added if row["embedding_dim"] == self.dimension]
        with self._lock:
            if removed:
                index.remove_ids(np.asarray(removed, dtype=np.int64))
            if rows:
                ids = np.asarray([row["id"] for row in rows], dtype=np.int64)
                matrix = np.vstack(
                    [np.frombuffer(row["embedding"], dtype=np.float32) for row in rows]
                )
                index.add_with_ids(_normalize(matrix.astype(np.float32)), ids)

    # ------------------------------------------------------------------
    # Reads

    async def search_similar(
        self,
        query_vector: Sequence[float],
        limit: Optional[int] = None,
        content_type: Optional[str] = None,
        min_score: float = 0.0,
    ) -> List[RetrievalResult]:
        """Rank active chunks by cosine similarity to a query vector.

        Args:
            query_vector: Query embedding
            limit: Maximum results (default from config)
            content_type: Restrict to one content type (global search if None)
            min_score: Minimum similarity in [0, 1]

        Returns:
            Results sorted by descending score, ties broken by the most
            recently updated chunk; empty when nothing qualifies

        Raises:
            ValidationError: If the query dimensionality does not match
        """
        limit = config.RETRIEVAL_TOP_K if limit is None else limit
        array = self._validate_vector(query_vector)
        index = self._require_index()

        if limit <= 0 or not np.any(array):
            return []

        with self._lock:
            total = index.ntotal
            if total == 0:
                logger.info("empty_index_no_results")
                return []
            # Exact scan; inactive and filtered rows are dropped afterwards
            scores, ids = index.search(_normalize(array), total)

        scored = {
            int(chunk_id): min(1.0, max(0.0, float(score)))
            for chunk_id, score in zip(ids[0], scores[0])
            if chunk_id != -1
        }
        candidates = [cid for cid, score in scored.items() if score >= min_score]

        chunks = self.db.get_chunks_by_ids(
            candidates, active_only=True, content_type=content_type
        )

        results = [
            RetrievalResult(
                chunk=chunk,
                score=scored[chunk.id],
                snippet=make_snippet(chunk.chunk_text),
                metadata=dict(chunk.metadata),
            )
            for chunk in chunks
        ]
        results.sort(key=lambda r: (-r.score, -r.chunk.updated_at, -r.chunk.id))
        results = results[:limit]

        logger.info(
            "vector_search_completed",
            candidates=len(candidates),
            results_found=len(results),
            content_type=content_type,
            top_score=results[0].score if results else None,
        )
        return results

    def get_chunk(self, chunk_id: int) -> Chunk:
        """Fetch a chunk by id.

        Raises:
            NotFoundError: If no chunk has this id
        """
        chunk = self.db.get_chunk(chunk_id)
        if chunk is None:
            raise NotFoundError(f"Chunk {chunk_id} not found")
        return chunk

    def get_active_chunks(self, content_type: str, content_id: str) -> List[Chunk]:
        return self.db.get_active_chunks(content_type, content_id)

    def find_existing_hashes(self, chunk_hashes: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        return self.db.find_existing_hashes(chunk_hashes)

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the vector store."""
        stats = self.db.get_chunk_counts()
        stats.update(
            {
                "initialized": self.index is not None,
                "vector_count": self.index.ntotal if self.index is not None else 0,
                "dimension": self.dimension,
                "embedding_model": self.embedding_model,
                "skipped_vectors": self.skipped_vectors,
            }
        )
        return stats
