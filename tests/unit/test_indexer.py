"""Unit tests for ContentIndexer."""

import asyncio
import string

import pydantic
import pytest

from shopassist.errors import FatalProviderError, PartialFailure, QuotaExceededError
from shopassist.events import CONTENT_INDEXED
from shopassist.license import METRIC_ITEMS_INDEXED, PlanQuota
from shopassist.rag.chunker import chunker_for
from shopassist.rag.indexer import ContentIndexer

from tests.conftest import long_body, make_item

SMALL = {"chunk_size": 300, "chunk_overlap": 50}


def _expected_chunks(item, index_config=SMALL):
    return chunker_for(item.type, **index_config).chunk_text(item.body)


def _active(vector_store, item):
    return vector_store.get_active_chunks(item.type, str(item.id))


# ============================================================================
# Basic indexing
# ============================================================================

async def test_short_item_yields_single_chunk(indexer, vector_store):
    item = make_item(body="Waterproof hiking boots.")

    report = await indexer.index_content([item])

    chunks = _active(vector_store, item)
    assert report.total_processed == 1
    assert report.chunks_created == 1
    assert len(chunks) == 1
    assert chunks[0].chunk_index == 0
    assert chunks[0].total_chunks == 1


async def test_three_window_item(indexer, vector_store):
    body = "".join(string.ascii_letters[i % 52] for i in range(600))
    item = make_item(body=body)

    report = await indexer.index_content([item], index_config=SMALL)

    chunks = _active(vector_store, item)
    assert report.chunks_created == 3
    assert [c.chunk_index for c in chunks] == [0, 1, 2]
    assert all(c.total_chunks == 3 for c in chunks)
    assert chunks[0].chunk_text[-50:] == chunks[1].chunk_text[:50]


async def test_chunk_indices_cover_zero_to_n(indexer, vector_store):
    item = make_item(body=long_body(300))
    expected = len(_expected_chunks(item))

    await indexer.index_content([item], index_config=SMALL)

    indices = sorted(c.chunk_index for c in _active(vector_store, item))
    assert indices == list(range(expected))


async def test_chunks_carry_item_metadata(indexer, vector_store):
    item = make_item(sku="TB-1")

    await indexer.index_content([item])

    chunk = _active(vector_store, item)[0]
    assert chunk.metadata["title"] == "Trail Boots"
    assert chunk.metadata["url"] == "https://shop.example/trail-boots"
    assert chunk.metadata["sku"] == "TB-1"
    assert chunk.embedding_model == "fake-embed"


async def test_embeddings_are_batched(indexer, embedder):
    item = make_item(body=long_body(300))
    expected = len(_expected_chunks(item))

    await indexer.index_content([item], index_config=SMALL)

    assert embedder.texts_embedded == expected
    assert all(len(batch) <= indexer.batch_size for batch in embedder.calls)


async def test_index_config_accepts_dict_and_validates(indexer):
    with pytest.raises(pydantic.ValidationError):
        await indexer.index_content([make_item()], index_config={"chunk_size": 0, "chunk_overlap": 0})


async def test_overlap_too_large_is_recorded_per_item(indexer):
    report = await indexer.index_content(
        [make_item()], index_config={"chunk_size": 100, "chunk_overlap": 80}
    )

    assert report.total_processed == 0
    assert report.errors[0].error_type == "ValidationError"


# ============================================================================
# Idempotence and versioning
# ============================================================================

async def test_reindex_unchanged_content_creates_nothing(indexer, vector_store, embedder):
    item = make_item(body=long_body(200))
    first = await indexer.index_content([item], index_config=SMALL)
    calls_after_first = len(embedder.calls)

    second = await indexer.index_content([item], index_config=SMALL)

    assert first.chunks_created > 0
    assert second.chunks_created == 0
    assert second.chunks_skipped == first.chunks_created
    assert len(embedder.calls) == calls_after_first
    hashes = [c.chunk_hash for c in _active(vector_store, item)]
    assert len(hashes) == len(set(hashes)) == first.chunks_created


async def test_changed_content_supersedes_previous_set(indexer, vector_store):
    original = make_item(body=long_body(200))
    await indexer.index_content([original], index_config=SMALL)
    old_count = len(_active(vector_store, original))

    updated = make_item(body="Trail Boots are now sold out.")
    report = await indexer.index_content([updated], index_config=SMALL)

    chunks = _active(vector_store, updated)
    assert report.chunks_deactivated == old_count
    assert len(chunks) == 1
    assert chunks[0].chunk_text == "Trail Boots are now sold out."
    assert vector_store.get_stats()["inactive_chunks"] == old_count


async def test_reverting_content_reuses_stored_chunks(indexer, vector_store, embedder):
    original = make_item(body="Leather boots, size 42.")
    changed = make_item(body="Leather boots, size 43.")
    await indexer.index_content([original])
    await indexer.index_content([changed])
    embedded_before = embedder.texts_embedded

    report = await indexer.index_content([original])

    assert report.chunks_created == 0
    assert embedder.texts_embedded == embedded_before
    assert [c.chunk_text for c in _active(vector_store, original)] == ["Leather boots, size 42."]


async def test_deactivate_content(indexer, vector_store):
    item = make_item()
    await indexer.index_content([item])

    assert indexer.deactivate_content("product", "1") == 1
    assert _active(vector_store, item) == []


# ============================================================================
# Failures
# ============================================================================

async def test_invalid_items_are_recorded_not_raised(indexer):
    items = [
        make_item(content_id="1"),
        make_item(content_id="2", body="   "),
        make_item(content_id="", body="No id"),
    ]

    report = await indexer.index_content(items)

    assert report.total_items == 3
    assert report.total_processed == 1
    assert len(report.errors) == 2
    assert {e.error_type for e in report.errors} == {"ValidationError"}


async def test_provider_failure_on_one_chunk_keeps_previous_set(indexer, vector_store, embedder):
    v1 = make_item(body=long_body(200))
    await indexer.index_content([v1], index_config=SMALL)
    v1_hashes = {c.chunk_hash for c in _active(vector_store, v1)}

    v2 = make_item(body=long_body(200) + " BADCHUNK extra words at the end")
    embedder.fail_on = "BADCHUNK"
    failed = await indexer.index_content([v2], index_config=SMALL)

    assert failed.total_processed == 0
    assert failed.errors
    assert all(e.retryable for e in failed.errors)
    assert all(e.chunk_index is not None for e in failed.errors)
    assert {c.chunk_hash for c in _active(vector_store, v1)} == v1_hashes
    with pytest.raises(PartialFailure):
        failed.raise_for_errors()

    embedder.fail_on = None
    resumed = await indexer.index_content([v2], index_config=SMALL)

    expected = _expected_chunks(v2)
    assert not resumed.has_errors
    assert resumed.chunks_created == len(failed.errors)
    assert sorted(c.chunk_index for c in _active(vector_store, v2)) == list(range(len(expected)))


async def test_failed_batch_is_retried_chunk_by_chunk(indexer, vector_store, embedder):
    item = make_item(body=long_body(200) + " BADCHUNK")
    embedder.fail_on = "BADCHUNK"

    report = await indexer.index_content([item], index_config=SMALL)

    total = len(_expected_chunks(item))
    assert len(report.errors) == 1
    assert report.chunks_created == total - 1
    assert _active(vector_store, item) == []


async def test_fatal_provider_error_is_recorded(indexer, embedder):
    embedder.fail_all = FatalProviderError("unauthorized", status_code=401)

    report = await indexer.index_content([make_item()])

    assert report.errors[0].error_type == "FatalProviderError"
    assert report.errors[0].retryable is False


async def test_embedding_timeout_is_retryable(vector_store, embedder):
    indexer = ContentIndexer(vector_store, embedder, provider_timeout=0.01)
    embedder.delay = 0.5

    report = await indexer.index_content([make_item()])

    assert report.errors[0].error_type == "ProviderTimeout"
    assert report.errors[0].retryable is True


# ============================================================================
# Concurrency and cancellation
# ============================================================================

async def test_concurrent_indexing_of_same_content(indexer, vector_store, embedder):
    item = make_item(body=long_body(200))
    expected = len(_expected_chunks(item))
    embedder.delay = 0.01

    first, second = await asyncio.gather(
        indexer.index_content([item], index_config=SMALL),
        indexer.index_content([item], index_config=SMALL),
    )

    chunks = _active(vector_store, item)
    assert not first.has_errors and not second.has_errors
    assert len(chunks) == expected
    assert sorted(c.chunk_index for c in chunks) == list(range(expected))
    assert first.chunks_created + second.chunks_created == expected
    assert vector_store.get_stats()["total_chunks"] == expected


async def test_cancelled_batch_skips_remaining_items(indexer, vector_store):
    cancel = asyncio.Event()
    cancel.set()

    report = await indexer.index_content([make_item("1"), make_item("2")], cancel_event=cancel)

    assert report.cancelled is True
    assert report.total_processed == 0
    assert vector_store.get_stats()["total_chunks"] == 0


# ============================================================================
# Quota and events
# ============================================================================

async def test_quota_exceeded_raises_before_any_work(vector_store, embedder):
    quota = PlanQuota("free", usage={METRIC_ITEMS_INDEXED: 29})
    indexer = ContentIndexer(vector_store, embedder, quota=quota)

    with pytest.raises(QuotaExceededError):
        await indexer.index_content([make_item("1"), make_item("2")])

    assert embedder.calls == []
    assert vector_store.get_stats()["total_chunks"] == 0
    assert quota.get_usage(METRIC_ITEMS_INDEXED) == 29


async def test_reindexing_known_items_does_not_use_quota(vector_store, embedder):
    quota = PlanQuota("free", usage={METRIC_ITEMS_INDEXED: 29})
    indexer = ContentIndexer(vector_store, embedder, quota=quota)
    item = make_item("1")

    await indexer.index_content([item])
    assert quota.get_usage(METRIC_ITEMS_INDEXED) == 30

    report = await indexer.index_content([make_item("1", body="Updated boots description.")])

    assert report.total_processed == 1
    assert quota.get_usage(METRIC_ITEMS_INDEXED) == 30


async def test_concurrent_batches_count_new_item_once(vector_store, embedder):
    quota = PlanQuota("free", usage={METRIC_ITEMS_INDEXED: 29})
    indexer = ContentIndexer(vector_store, embedder, quota=quota)
    item = make_item(body=long_body(200))
    embedder.delay = 0.01

    first, second = await asyncio.gather(
        indexer.index_content([item], index_config=SMALL),
        indexer.index_content([item], index_config=SMALL),
    )

    assert first.total_processed == second.total_processed == 1
    assert quota.get_usage(METRIC_ITEMS_INDEXED) == 30


async def test_concurrent_batches_cannot_pass_the_limit(vector_store, embedder):
    quota = PlanQuota("free", usage={METRIC_ITEMS_INDEXED: 29})
    indexer = ContentIndexer(vector_store, embedder, quota=quota)
    embedder.delay = 0.01

    results = await asyncio.gather(
        indexer.index_content([make_item("1")]),
        indexer.index_content([make_item("2")]),
        return_exceptions=True,
    )

    assert sum(isinstance(r, QuotaExceededError) for r in results) == 1
    assert quota.get_usage(METRIC_ITEMS_INDEXED) == 30


async def test_failed_new_item_gives_quota_back(vector_store, embedder):
    quota = PlanQuota("free", usage={METRIC_ITEMS_INDEXED: 29})
    indexer = ContentIndexer(vector_store, embedder, quota=quota)
    embedder.fail_all = FatalProviderError("unauthorized", status_code=401)

    report = await indexer.index_content([make_item("1")])

    assert report.total_processed == 0
    assert quota.get_usage(METRIC_ITEMS_INDEXED) == 29


async def test_content_indexed_event_is_published(indexer, events):
    received = []
    events.subscribe(CONTENT_INDEXED, lambda event, payload: received.append(payload["report"]))

    report = await indexer.index_content([make_item()])

    assert received == [report]
