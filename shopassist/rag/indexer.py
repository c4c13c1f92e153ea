"""Indexing pipeline for catalog content.

Orchestrates:
- Item validation
- Text chunking
- Hash-based deduplication against stored chunks
- Batched, bounded-concurrency embedding requests
- Pending storage and atomic activation of each item's chunk set
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

import structlog

from shopassist import config
from shopassist.errors import ProviderError, QuotaExceededError, ValidationError
from shopassist.events import CONTENT_INDEXED, EventBus
from shopassist.license import METRIC_ITEMS_INDEXED
from shopassist.models import (
    Chunk,
    ContentItem,
    IndexConfig,
    IndexErrorRecord,
    IndexReport,
    StoreOutcome,
)
from shopassist.protocols import EmbeddingProvider, QuotaService
from shopassist.rag.chunker import TextChunk, chunker_for
from shopassist.rag.store_faiss import VectorStore
from shopassist.text_utils import compute_chunk_hash

logger = structlog.get_logger()


@dataclass
class _ItemOutcome:
    """Per-item result folded into the batch report."""

    success: bool = False
    created: int = 0
    skipped: int = 0
    deactivated: int = 0
    newly_indexed: bool = False
    prepaid: bool = False
    errors: List[IndexErrorRecord] = field(default_factory=list)


class ContentIndexer:
    """Turns content items into active, embedded chunks."""

    def __init__(
        self,
        vector_store: VectorStore,
        embedder: EmbeddingProvider,
        quota: Optional[QuotaService] = None,
        events: Optional[EventBus] = None,
        batch_size: Optional[int] = None,
        max_concurrent_requests: Optional[int] = None,
        max_concurrent_items: Optional[int] = None,
        provider_timeout: Optional[float] = None,
    ):
        """Initialize the indexer.

        Args:
            vector_store: Store receiving the chunks
            embedder: Embedding provider
            quota: License/quota service (no limit checks if None)
            events: Event bus for content_indexed notifications
            batch_size: Texts per embedding request
            max_concurrent_requests: Parallel embedding requests
            max_concurrent_items: Items processed in parallel
            provider_timeout: Seconds before an embedding request is abandoned
        """
        self.vector_store = vector_store
        self.embedder = embedder
        self.quota = quota
        self.events = events
        self.batch_size = batch_size or config.EMBEDDING_BATCH_SIZE
        self.max_concurrent_requests = max_concurrent_requests or config.EMBEDDING_CONCURRENCY
        self.max_concurrent_items = max_concurrent_items or config.INDEX_CONCURRENCY
        self.provider_timeout = provider_timeout or config.PROVIDER_TIMEOUT
        self._request_slots = asyncio.Semaphore(self.max_concurrent_requests)
        # (content_type, content_id) -> token of the batch holding its quota
        self._reserved: Dict[Tuple[str, str], object] = {}

        logger.info(
            "content_indexer_initialized",
            batch_size=self.batch_size,
            max_concurrent_requests=self.max_concurrent_requests,
            max_concurrent_items=self.max_concurrent_items,
        )

    # ------------------------------------------------------------------
    # Public API

    async def index_content(
        self,
        items: Sequence[ContentItem],
        index_config: Optional[Union[IndexConfig, Dict]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> IndexReport:
        """Index a batch of content items.

        Per-item failures are recorded on the report and never abort the
        batch. Items are skipped, not failed, once cancel_event is set;
        work already committed stays valid and a rerun resumes it.

        Args:
            items: Content items from the scanner
            index_config: chunk_size / chunk_overlap; per-type defaults if None
            cancel_event: Stops submission of further items when set

        Returns:
            IndexReport with processed, created, skipped counts and errors

        Raises:
            QuotaExceededError: If indexing new items would pass the license limit
            pydantic.ValidationError: If index_config is malformed
        """
        if isinstance(index_config, dict):
            index_config = IndexConfig(**index_config)

        started = time.monotonic()
        report = IndexReport(total_items=len(items))

        valid_items: List[ContentItem] = []
        for item in items:
            try:
                self._validate_item(item)
                valid_items.append(item)
            except ValidationError as e:
                report.errors.append(
                    IndexErrorRecord(
                        content_type=getattr(item, "type", "") or "",
                        content_id=str(getattr(item, "id", "") or ""),
                        error_type=type(e).__name__,
                        message=str(e),
                    )
                )
                logger.warning("content_item_invalid", error=str(e))

        token = object()
        new_items = self._reserve_quota(valid_items, token)

        logger.info(
            "index_batch_started",
            total_items=len(items),
            valid_items=len(valid_items),
            new_items=new_items,
        )

        item_slots = asyncio.Semaphore(self.max_concurrent_items)

        async def run(item: ContentItem) -> Optional[_ItemOutcome]:
            async with item_slots:
                if cancel_event is not None and cancel_event.is_set():
                    return None
                return await self._index_item(item, index_config)

        try:
            outcomes = await asyncio.gather(*(run(item) for item in valid_items))
        finally:
            self._release_unused(token)

        unpaid = 0
        for outcome in outcomes:
            if outcome is None:
                report.cancelled = True
                continue
            report.chunks_created += outcome.created
            report.chunks_skipped += outcome.skipped
            report.chunks_deactivated += outcome.deactivated
            report.errors.extend(outcome.errors)
            if outcome.success:
                report.total_processed += 1
                if outcome.newly_indexed and not outcome.prepaid:
                    unpaid += 1

        if self.quota is not None and unpaid:
            self.quota.track_usage(METRIC_ITEMS_INDEXED, unpaid)

        report.duration_seconds = time.monotonic() - started

        if self.events is not None:
            self.events.publish(CONTENT_INDEXED, report=report)

        log = logger.warning if report.has_errors else logger.info
        log(
            "index_batch_completed",
            total_items=report.total_items,
            total_processed=report.total_processed,
            chunks_created=report.chunks_created,
            chunks_skipped=report.chunks_skipped,
            errors=len(report.errors),
            cancelled=report.cancelled,
            duration_seconds=round(report.duration_seconds, 3),
        )
        return report

    def deactivate_content(self, content_type: str, content_id: str) -> int:
        """Retire a content entity that no longer exists at the source."""
        return self.vector_store.deactivate_content(content_type, str(content_id))

    # ------------------------------------------------------------------
    # Steps

    @staticmethod
    def _validate_item(item: ContentItem) -> None:
        if item is None:
            raise ValidationError("Content item is missing")
        if item.id is None or not str(item.id).strip():
            raise ValidationError("Content item has no id")
        if not item.type or not str(item.type).strip():
            raise ValidationError(f"Content item {item.id} has no type")
        if item.body is None or not str(item.body).strip():
            raise ValidationError(f"Content item {item.type}:{item.id} has an empty body")

    def _reserve_quota(self, items: List[ContentItem], token: object) -> int:
        """Take quota for the new items of a batch, or reject the batch.

        Items already known to the store, or already reserved by a batch
        still in flight, do not count again. Reservations are consumed by
        the first activation of the item and handed back by
        _release_unused() otherwise.

        Returns:
            Number of items not indexed before
        """
        keys = {(item.type, str(item.id)) for item in items}
        by_type: Dict[str, List[str]] = {}
        for content_type, content_id in keys:
            by_type.setdefault(content_type, []).append(content_id)

        new_keys: List[Tuple[str, str]] = []
        for content_type, content_ids in by_type.items():
            known = self.vector_store.db.known_content_ids(content_type, content_ids)
            new_keys.extend(
                (content_type, content_id)
                for content_id in content_ids
                if content_id not in known
            )

        if self.quota is None or not new_keys:
            return len(new_keys)

        to_reserve = [key for key in new_keys if key not in self._reserved]
        if to_reserve:
            status = self.quota.reserve(METRIC_ITEMS_INDEXED, len(to_reserve))
            if not status.within_limits:
                logger.warning(
                    "index_quota_exceeded",
                    new_items=len(to_reserve),
                    remaining=status.remaining,
                    limit=status.limit,
                )
                raise QuotaExceededError(METRIC_ITEMS_INDEXED, status.limit, status.used)
            for key in to_reserve:
                self._reserved[key] = token
        return len(new_keys)

    def _release_unused(self, token: object) -> None:
        """Hand back reservations of this batch that no activation consumed."""
        unused = [key for key, owner in self._reserved.items() if owner is token]
        for key in unused:
            del self._reserved[key]
        if unused and self.quota is not None:
            self.quota.release(METRIC_ITEMS_INDEXED, len(unused))
            logger.debug("index_quota_released", items=len(unused))

    def _build_chunks(self, item: ContentItem, text_chunks: List[TextChunk]) -> List[Chunk]:
        content_id = str(item.id)
        base_metadata = {
            "title": item.title,
            "url": item.url,
            **{k: v for k, v in item.metadata.items() if k in ("sku", "price", "categories")},
        }
        return [
            Chunk(
                id=None,
                content_type=item.type,
                content_id=content_id,
                chunk_text=tc.content,
                chunk_hash=compute_chunk_hash(item.type, content_id, tc.chunk_index, tc.content),
                chunk_index=tc.chunk_index,
                total_chunks=tc.total_chunks,
                word_count=tc.word_count,
                metadata=dict(base_metadata),
            )
            for tc in text_chunks
        ]

    async def _index_item(
        self, item: ContentItem, index_config: Optional[IndexConfig]
    ) -> _ItemOutcome:
        outcome = _ItemOutcome()
        content_id = str(item.id)
        log = logger.bind(content_type=item.type, content_id=content_id)

        try:
            chunker = chunker_for(
                item.type,
                chunk_size=index_config.chunk_size if index_config else None,
                chunk_overlap=index_config.chunk_overlap if index_config else None,
            )
            text_chunks = chunker.chunk_text(item.body)
        except ValidationError as e:
            outcome.errors.append(self._error(item, e))
            return outcome

        if not text_chunks:
            outcome.errors.append(
                self._error(item, ValidationError("Body is empty after normalization"))
            )
            return outcome

        chunks = self._build_chunks(item, text_chunks)
        existing = self.vector_store.find_existing_hashes([c.chunk_hash for c in chunks])

        to_embed = [
            c for c in chunks
            if c.chunk_hash not in existing
            or existing[c.chunk_hash]["embedding_model"] != self.vector_store.embedding_model
        ]
        outcome.skipped = len(chunks) - len(to_embed)

        vectors = await self._embed_chunks(item, to_embed, outcome)

        for chunk in to_embed:
            vector = vectors.get(chunk.chunk_hash)
            if vector is None:
                continue
            try:
                stored = await self.vector_store.store_vector(chunk, vector, active=False)
            except ValidationError as e:
                outcome.errors.append(self._error(item, e, chunk.chunk_index))
                continue
            if stored is StoreOutcome.DUPLICATE:
                # Another writer stored it first
                outcome.skipped += 1
            else:
                outcome.created += 1

        if outcome.errors:
            # Previous active set stays in place; stored chunks are reused on rerun
            log.warning(
                "content_item_incomplete",
                failed_chunks=len(outcome.errors),
                total_chunks=len(chunks),
            )
            return outcome

        counts = self.vector_store.activate_chunk_set(
            item.type, content_id, [c.chunk_hash for c in chunks]
        )
        outcome.deactivated = counts["deactivated"]
        outcome.success = True
        # Only the run that created generation 1 counts the item
        if counts["generation"] == 1:
            outcome.newly_indexed = True
            outcome.prepaid = self._reserved.pop((item.type, content_id), None) is not None

        log.debug(
            "content_item_indexed",
            total_chunks=len(chunks),
            created=outcome.created,
            skipped=outcome.skipped,
            generation=counts["generation"],
        )
        return outcome

    async def _embed_chunks(
        self, item: ContentItem, chunks: List[Chunk], outcome: _ItemOutcome
    ) -> Dict[str, List[float]]:
        """Embed chunks in batches; isolate failures to single chunks.

        A failed batch is retried one chunk at a time so that one bad chunk
        does not cost its neighbours their embeddings.
        """
        vectors: Dict[str, List[float]] = {}
        batches = [
            chunks[i : i + self.batch_size] for i in range(0, len(chunks), self.batch_size)
        ]

        async def embed_batch(batch: List[Chunk]) -> None:
            try:
                result = await self._embed([c.chunk_text for c in batch])
                if len(result) != len(batch):
                    raise ProviderError(f"Expected {len(batch)} embeddings, got {len(result)}")
                for chunk, vector in zip(batch, result):
                    vectors[chunk.chunk_hash] = vector
                return
            except (ProviderError, TimeoutError) as e:
                if len(batch) == 1:
                    outcome.errors.append(self._error(item, e, batch[0].chunk_index))
                    return
                logger.debug("embedding_batch_failed_retrying_singly", size=len(batch), error=str(e))

            for chunk in batch:
                try:
                    result = await self._embed([chunk.chunk_text])
                    if not result:
                        raise ProviderError("Empty embedding returned")
                    vectors[chunk.chunk_hash] = result[0]
                except (ProviderError, TimeoutError) as e:
                    outcome.errors.append(self._error(item, e, chunk.chunk_index))

        await asyncio.gather(*(embed_batch(batch) for batch in batches))
        return vectors

    async def _embed(self, texts: List[str]) -> List[List[float]]:
        async with self._request_slots:
            async with asyncio.timeout(self.provider_timeout):
                return await self.embedder.embed(texts)

    @staticmethod
    def _error(
        item: ContentItem, error: Exception, chunk_index: Optional[int] = None
    ) -> IndexErrorRecord:
        if isinstance(error, TimeoutError):
            error_type, retryable = "ProviderTimeout", True
        else:
            error_type = type(error).__name__
            retryable = bool(getattr(error, "retryable", False))
        logger.warning(
            "content_item_error",
            content_type=item.type,
            content_id=str(item.id),
            chunk_index=chunk_index,
            error_type=error_type,
            error=str(error),
        )
        return IndexErrorRecord(
            content_type=item.type,
            content_id=str(item.id),
            error_type=error_type,
            message=str(error) or error_type,
            chunk_index=chunk_index,
            retryable=retryable,
        )
