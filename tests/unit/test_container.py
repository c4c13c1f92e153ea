"""Unit tests for the composition root."""

from shopassist.container import build_assistant
from shopassist.content import InMemoryContentStore
from shopassist.events import CONTENT_INDEXED, RESPONSE_GENERATED
from shopassist.models import ResponseStatus

from tests.conftest import DIMENSION, FakeCompletionProvider, FakeEmbeddingProvider, make_item


async def test_build_assistant_end_to_end(tmp_path):
    store = InMemoryContentStore([
        make_item("1", body="<p>Waterproof hiking boots for rough trails.</p>"),
    ])
    assistant = await build_assistant(
        content_store=store,
        embedder=FakeEmbeddingProvider(),
        completion_provider=FakeCompletionProvider(),
        db_path=tmp_path / "chunks.sqlite",
        dimension=DIMENSION,
        plan="pro",
    )
    seen = []
    assistant.events.subscribe(CONTENT_INDEXED, lambda event, payload: seen.append(event))
    assistant.events.subscribe(RESPONSE_GENERATED, lambda event, payload: seen.append(event))

    items = await assistant.scanner.scan("product")
    report = await assistant.indexer.index_content(items)
    result = await assistant.orchestrator.generate_response(
        "waterproof hiking boots", "conv-1", min_score=0.1
    )

    assert report.total_processed == 1
    assert result.status is ResponseStatus.SUCCESS
    assert result.model_used == "fake-chat"
    assert result.sources[0].chunk.content_id == "1"
    assert seen == [CONTENT_INDEXED, RESPONSE_GENERATED]


async def test_rebuilt_assistant_loads_existing_index(tmp_path):
    kwargs = dict(
        embedder=FakeEmbeddingProvider(),
        completion_provider=FakeCompletionProvider(),
        db_path=tmp_path / "chunks.sqlite",
        dimension=DIMENSION,
        plan="unlimited",
    )
    first = await build_assistant(**kwargs)
    await first.indexer.index_content([make_item("1")])

    second = await build_assistant(**kwargs)

    assert second.vector_store.get_stats()["active_chunks"] == 1
    results = await second.retriever.retrieve("waterproof hiking boots", min_score=0.1)
    assert results[0].chunk.content_id == "1"
