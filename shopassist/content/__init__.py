"""Content sources: scanner and content store adapters."""
from shopassist.content.scanner import SUPPORTED_KINDS, ContentScanner
from shopassist.content.stores import ContentRecord, InMemoryContentStore, JsonContentStore

__all__ = [
    "SUPPORTED_KINDS",
    "ContentScanner",
    "ContentRecord",
    "InMemoryContentStore",
    "JsonContentStore",
]
