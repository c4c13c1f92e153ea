"""Unit tests for content store adapters."""

import json

from shopassist.content import InMemoryContentStore, JsonContentStore
from shopassist.models import ContentFilter

from tests.conftest import make_item


async def test_in_memory_store_filters_and_pages():
    store = InMemoryContentStore([make_item(str(i)) for i in range(5)])

    page = await store.list_by_kind("product", ContentFilter(limit=2, offset=1))
    chosen = await store.list_by_kind("product", ContentFilter(include_ids=["4", "0"]))

    assert [item.id for item in page] == ["1", "2"]
    assert [item.id for item in chosen] == ["0", "4"]


async def test_in_memory_store_replaces_same_id():
    store = InMemoryContentStore([make_item("1", body="old")])
    store.add(make_item("1", body="new"))

    items = await store.list_by_kind("product", ContentFilter())

    assert [item.body for item in items] == ["new"]
    assert store.remove("product", "1") is True
    assert await store.list_by_kind("product", ContentFilter()) == []


async def test_json_store_reads_kind_mapping(tmp_path):
    path = tmp_path / "export.json"
    path.write_text(json.dumps({
        "product": [{"id": 10, "title": "Trail Boots", "content": "Waterproof.", "sku": "TB-1"}],
        "page": [{"id": "about", "title": "About", "content": "Family shop.", "status": "draft"}],
    }))
    store = JsonContentStore(path)

    products = await store.list_by_kind("product", ContentFilter())
    pages = await store.list_by_kind("page", ContentFilter())

    assert products[0].id == "10"
    assert products[0].body == "Waterproof."
    assert products[0].metadata["sku"] == "TB-1"
    assert pages[0].metadata["status"] == "draft"


async def test_json_store_reads_record_list_and_skips_invalid(tmp_path):
    path = tmp_path / "export.json"
    path.write_text(json.dumps([
        {"id": 1, "type": "post", "title": "News", "body": "Spring sale."},
        {"id": " ", "type": "post"},
        {"type": "post", "title": "No id"},
    ]))
    store = JsonContentStore(path)

    posts = await store.list_by_kind("post", ContentFilter())

    assert [item.id for item in posts] == ["1"]
    assert posts[0].body == "Spring sale."
    assert store.invalid_records == 2
