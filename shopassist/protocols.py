"""Interfaces of the collaborators the core consumes but does not own."""
from typing import Dict, List, Optional, Protocol, runtime_checkable

from shopassist.models import Completion, ContentFilter, ContentItem, QuotaStatus


@runtime_checkable
class ContentStore(Protocol):
    """Read-only, paginated source of catalog/content entities."""

    async def list_by_kind(self, kind: str, content_filter: ContentFilter) -> List[ContentItem]:
        ...


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Turns texts into fixed-dimensionality vectors.

    Raises ProviderError subclasses on failure.
    """

    async def embed(self, texts: List[str]) -> List[List[float]]:
        ...


@runtime_checkable
class CompletionProvider(Protocol):
    """Chat completion endpoint.

    Raises ProviderError subclasses on failure.
    """

    async def complete(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Completion:
        ...


@runtime_checkable
class QuotaService(Protocol):
    """License/usage limits."""

    def check_limit(self, metric: str, amount: int = 1) -> QuotaStatus:
        ...

    def is_feature_enabled(self, feature: str) -> bool:
        ...

    def track_usage(self, metric: str, amount: int = 1) -> None:
        ...

    def reserve(self, metric: str, amount: int = 1) -> QuotaStatus:
        ...

    def release(self, metric: str, amount: int = 1) -> None:
        ...
