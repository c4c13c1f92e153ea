"""Content store adapters.

The core only reads content through ``list_by_kind``; these adapters cover
tests (in-memory) and offline indexing from a JSON export of the shop.
"""
import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import pydantic
import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator

from shopassist.models import ContentFilter, ContentItem

logger = structlog.get_logger()


def apply_filter(items: List[ContentItem], content_filter: ContentFilter) -> List[ContentItem]:
    """Apply include_ids, then offset/limit, preserving order."""
    if content_filter.include_ids is not None:
        wanted = {str(i) for i in content_filter.include_ids}
        items = [item for item in items if str(item.id) in wanted]
    start = max(content_filter.offset, 0)
    if content_filter.limit is None:
        return items[start:]
    return items[start : start + max(content_filter.limit, 0)]


class InMemoryContentStore:
    """Content store over a list of ContentItems."""

    def __init__(self, items: Optional[Iterable[ContentItem]] = None):
        self._items: Dict[str, List[ContentItem]] = {}
        for item in items or []:
            self.add(item)

    def add(self, item: ContentItem) -> None:
        bucket = self._items.setdefault(item.type, [])
        for i, existing in enumerate(bucket):
            if str(existing.id) == str(item.id):
                bucket[i] = item
                return
        bucket.append(item)

    def remove(self, kind: str, content_id: str) -> bool:
        bucket = self._items.get(kind, [])
        for i, existing in enumerate(bucket):
            if str(existing.id) == str(content_id):
                del bucket[i]
                return True
        return False

    async def list_by_kind(self, kind: str, content_filter: ContentFilter) -> List[ContentItem]:
        return apply_filter(list(self._items.get(kind, [])), content_filter)


class ContentRecord(BaseModel):
    """One entity of a shop content export."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Union[int, str]
    type: str
    title: str = ""
    body: str = Field(default="", alias="content")
    url: str = ""
    status: str = "publish"
    deleted: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def id_not_blank(cls, value):
        if isinstance(value, str) and not value.strip():
            raise ValueError("id must not be blank")
        return value

    def to_item(self) -> ContentItem:
        metadata = dict(self.metadata)
        metadata.update(self.model_extra or {})
        metadata["status"] = self.status
        metadata["deleted"] = self.deleted
        return ContentItem(
            id=str(self.id),
            type=self.type,
            title=self.title,
            body=self.body,
            url=self.url,
            metadata=metadata,
        )


class JsonContentStore:
    """Read-only content store backed by a JSON export file.

    The export is either a list of records carrying a ``type`` field, or an
    object mapping each kind to its list of records. Records failing
    validation are logged and left out.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._items: Optional[Dict[str, List[ContentItem]]] = None
        self.invalid_records = 0

    def _load(self) -> Dict[str, List[ContentItem]]:
        if self._items is not None:
            return self._items

        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)

        if isinstance(data, dict):
            raw_records = [
                {"type": kind, **record}
                for kind, records in data.items()
                for record in records
            ]
        elif isinstance(data, list):
            raw_records = data
        else:
            raise ValueError(f"Unsupported export format in {self.path}")

        items: Dict[str, List[ContentItem]] = {}
        for position, raw in enumerate(raw_records):
            try:
                record = ContentRecord.model_validate(raw)
            except pydantic.ValidationError as e:
                self.invalid_records += 1
                logger.warning(
                    "content_record_invalid",
                    path=str(self.path),
                    position=position,
                    errors=e.error_count(),
                )
                continue
            items.setdefault(record.type, []).append(record.to_item())

        logger.info(
            "content_export_loaded",
            path=str(self.path),
            kinds={kind: len(v) for kind, v in items.items()},
            invalid_records=self.invalid_records,
        )
        self._items = items
        return items

    async def list_by_kind(self, kind: str, content_filter: ContentFilter) -> List[ContentItem]:
        return apply_filter(list(self._load().get(kind, [])), content_filter)
