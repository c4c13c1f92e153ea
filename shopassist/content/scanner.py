"""Content scanner for the knowledge base.

Reads shop entities from a content store and turns them into normalized
ContentItems:
- Markup stripped and whitespace collapsed so chunk hashes are stable
- Product facts (price, stock, taxonomy, attributes) folded into the body
- Deleted and unpublished entities omitted
- Over-long bodies truncated at a word boundary
"""
import time
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

import structlog

from shopassist import config
from shopassist.models import ContentFilter, ContentItem
from shopassist.protocols import ContentStore
from shopassist.text_utils import clean_text, truncate_at_word

logger = structlog.get_logger()

SUPPORTED_KINDS = (
    "product",
    "page",
    "post",
    "woocommerce_settings",
    "product_cat",
    "product_tag",
)

TERM_KINDS = ("product_cat", "product_tag")

# Entities in these states are not visible to shoppers
HIDDEN_STATUSES = frozenset({"trash", "draft", "auto-draft", "private", "pending"})


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    if isinstance(value, dict):
        return [str(v) for v in value.values() if v]
    return [str(v) for v in value if v]


class ContentScanner:
    """Normalizes content store entities into indexable ContentItems."""

    def __init__(self, store: ContentStore, max_content_length: Optional[int] = None):
        """Initialize the scanner.

        Args:
            store: Content store collaborator
            max_content_length: Body length cap in characters (default from config)
        """
        self.store = store
        self.max_content_length = max_content_length or config.MAX_CONTENT_LENGTH
        self.last_scan_stats: Dict[str, Dict[str, Any]] = {}

    async def scan(
        self,
        kind: str,
        limit: Optional[int] = None,
        offset: int = 0,
        include_ids: Optional[Iterable[str]] = None,
    ) -> List[ContentItem]:
        """Scan one page of a content kind.

        Missing, deleted and unpublished entities are left out silently.

        Args:
            kind: Content kind (see SUPPORTED_KINDS)
            limit: Page size passed to the store (all if None)
            offset: Page offset passed to the store
            include_ids: Restrict to these entity ids

        Returns:
            Normalized ContentItems in store order
        """
        if kind not in SUPPORTED_KINDS:
            logger.warning("unsupported_content_kind", kind=kind)

        content_filter = ContentFilter(
            limit=limit,
            offset=offset,
            include_ids=[str(i) for i in include_ids] if include_ids is not None else None,
        )

        started = time.monotonic()
        raw_items = await self.store.list_by_kind(kind, content_filter)

        items: List[ContentItem] = []
        skipped = 0
        truncated = 0
        for raw in raw_items:
            item = self.normalize(kind, raw)
            if item is None:
                skipped += 1
                continue
            if item.metadata.get("truncated"):
                truncated += 1
            items.append(item)

        self.last_scan_stats[kind] = {
            "scanned": len(raw_items),
            "returned": len(items),
            "skipped": skipped,
            "truncated": truncated,
            "offset": offset,
            "duration_seconds": round(time.monotonic() - started, 3),
        }

        logger.info("content_scanned", kind=kind, **self.last_scan_stats[kind])
        return items

    async def iter_batches(self, kind: str, batch_size: int = 100) -> AsyncIterator[List[ContentItem]]:
        """Page through a whole content kind.

        Yields:
            Lists of normalized items, one per store page (pages whose
            entities were all omitted are not yielded)
        """
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")

        offset = 0
        while True:
            items = await self.scan(kind, limit=batch_size, offset=offset)
            scanned = self.last_scan_stats[kind]["scanned"]
            if items:
                yield items
            if scanned < batch_size:
                break
            offset += batch_size

    async def scan_all(self, kinds: Optional[Iterable[str]] = None) -> List[ContentItem]:
        """Scan every entity of several kinds."""
        all_items: List[ContentItem] = []
        totals: Dict[str, int] = {}
        for kind in kinds or SUPPORTED_KINDS:
            kind_items: List[ContentItem] = []
            async for batch in self.iter_batches(kind):
                kind_items.extend(batch)
            totals[kind] = len(kind_items)
            all_items.extend(kind_items)

        logger.info("content_scan_all_completed", kinds=totals, total_items=len(all_items))
        return all_items

    # ------------------------------------------------------------------
    # Normalization

    def normalize(self, kind: str, raw: Optional[ContentItem]) -> Optional[ContentItem]:
        """Normalize one store entity, or None if it must be omitted."""
        if raw is None or raw.id is None or not str(raw.id).strip():
            return None

        metadata = dict(raw.metadata or {})
        if metadata.get("deleted"):
            return None
        status = str(metadata.get("status") or "publish").lower()
        if status in HIDDEN_STATUSES:
            return None

        title = clean_text(raw.title or "")
        if kind == "product":
            body = self._build_product_body(title, raw.body or "", metadata)
        elif kind in TERM_KINDS:
            body = clean_text(raw.body or "") or title
        else:
            body = clean_text(raw.body or "")
            if title and body and not body.startswith(title):
                body = f"{title}. {body}"

        if len(body) > self.max_content_length:
            body = truncate_at_word(body, self.max_content_length)
            metadata["truncated"] = True

        metadata.pop("deleted", None)
        metadata["status"] = status

        return ContentItem(
            id=str(raw.id).strip(),
            type=raw.type or kind,
            title=title,
            body=body,
            url=raw.url or "",
            metadata=metadata,
        )

    def _build_product_body(self, title: str, description: str, metadata: Dict[str, Any]) -> str:
        """Fold product facts into one searchable text."""
        lines = [f"Product: {title}"] if title else []

        summary = clean_text(str(metadata.get("short_description") or ""))
        if summary:
            lines.append(f"Summary: {summary}")

        description = clean_text(description)
        if description:
            lines.append(f"Description: {description}")

        if metadata.get("sku"):
            lines.append(f"SKU: {metadata['sku']}")

        price = metadata.get("price")
        if price not in (None, ""):
            lines.append(f"Price: {price}")
            sale_price = metadata.get("sale_price")
            regular_price = metadata.get("regular_price")
            if sale_price not in (None, "") and regular_price not in (None, ""):
                lines.append(f"Regular Price: {regular_price}")
                lines.append(f"Sale Price: {sale_price}")

        if metadata.get("stock_quantity") is not None:
            lines.append(f"Stock: {metadata['stock_quantity']} available")
        elif metadata.get("stock_status"):
            lines.append(f"Stock Status: {str(metadata['stock_status']).replace('_', ' ').capitalize()}")

        categories = _as_list(metadata.get("categories"))
        if categories:
            lines.append(f"Categories: {', '.join(categories)}")

        tags = _as_list(metadata.get("tags"))
        if tags:
            lines.append(f"Tags: {', '.join(tags)}")

        attributes = metadata.get("attributes") or {}
        if isinstance(attributes, dict):
            for name, value in attributes.items():
                if isinstance(value, (list, tuple)):
                    value = ", ".join(str(v) for v in value)
                lines.append(f"{name}: {value}")

        return "\n".join(lines)
