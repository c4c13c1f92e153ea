"""Domain records shared by the scanner, indexer, vector store and orchestrator."""
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from shopassist.errors import PartialFailure


@dataclass
class ContentItem:
    """A normalized catalog/content entity produced by the scanner.

    The id must be stable across scans of the same source entity.
    """

    id: str
    type: str
    title: str
    body: str
    url: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ContentFilter:
    """Pagination and id filter passed to the content store."""

    limit: Optional[int] = None
    offset: int = 0
    include_ids: Optional[List[str]] = None


class IndexConfig(BaseModel):
    """Chunking parameters for an indexing call.

    chunk_overlap below 1 is a fraction of chunk_size, otherwise characters.
    """

    chunk_size: int = Field(gt=0)
    chunk_overlap: float = Field(ge=0)


@dataclass
class Chunk:
    """A persisted slice of a content item with its embedding."""

    id: Optional[int]
    content_type: str
    content_id: str
    chunk_text: str
    chunk_hash: str
    chunk_index: int
    total_chunks: int
    word_count: int
    embedding: Optional[List[float]] = None
    embedding_model: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = False
    generation: int = 0
    updated_at: float = 0.0


@dataclass
class RetrievalResult:
    """A single search hit."""

    chunk: Chunk
    score: float
    snippet: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def chunk_id(self) -> Optional[int]:
        return self.chunk.id

    @property
    def title(self) -> str:
        return self.metadata.get("title") or f"{self.chunk.content_type} {self.chunk.content_id}"

    @property
    def url(self) -> str:
        return self.metadata.get("url", "")

    def to_source(self) -> Dict[str, Any]:
        """Source entry as shown to the end user."""
        return {
            "chunk_id": self.chunk_id,
            "type": self.chunk.content_type,
            "content_id": self.chunk.content_id,
            "title": self.title,
            "url": self.url,
            "relevance": round(self.score, 3),
            "snippet": self.snippet,
        }


@dataclass
class Completion:
    """Completion provider response."""

    text: str
    tokens_used: int = 0
    model_used: str = ""
    confidence: Optional[float] = None


class ResponseStatus(str, Enum):
    SUCCESS = "success"
    DEGRADED = "degraded"
    QUOTA_EXCEEDED = "quota_exceeded"


@dataclass
class ResponseResult:
    """Answer returned by the orchestrator."""

    text: str
    confidence: float
    sources: List[RetrievalResult]
    model_used: str
    tokens_used: int
    context_chunks: int
    conversation_id: str
    status: ResponseStatus = ResponseStatus.SUCCESS
    query_type: str = "general_inquiry"
    error: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.status == ResponseStatus.DEGRADED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "response": self.text,
            "confidence": round(self.confidence, 3),
            "sources": [s.to_source() for s in self.sources],
            "model": self.model_used,
            "tokens_used": self.tokens_used,
            "context_chunks": self.context_chunks,
            "conversation_id": self.conversation_id,
            "status": self.status.value,
            "degraded": self.degraded,
            "query_type": self.query_type,
            "error": self.error,
        }


@dataclass
class QuotaStatus:
    """Answer of the quota collaborator for one metric."""

    within_limits: bool
    remaining: int
    limit: Optional[int] = None
    used: int = 0


class StoreOutcome(str, Enum):
    STORED = "stored"
    DUPLICATE = "duplicate"
    REPLACED = "replaced"


@dataclass
class IndexErrorRecord:
    """One failure recorded during a batch index run."""

    content_type: str
    content_id: str
    error_type: str
    message: str
    chunk_index: Optional[int] = None
    retryable: bool = False


@dataclass
class IndexReport:
    """Outcome of an index_content call."""

    total_items: int = 0
    total_processed: int = 0
    chunks_created: int = 0
    chunks_skipped: int = 0
    chunks_deactivated: int = 0
    errors: List[IndexErrorRecord] = field(default_factory=list)
    cancelled: bool = False
    duration_seconds: float = 0.0

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def raise_for_errors(self) -> None:
        """Raise PartialFailure if any item recorded an error."""
        if self.errors:
            raise PartialFailure(self)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
