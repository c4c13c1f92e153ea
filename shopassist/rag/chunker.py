"""Text chunking with overlap for the indexing pipeline.

Implements character-based chunking to avoid tokenizer dependencies.
"""
from typing import List, Optional
from dataclasses import dataclass
import structlog

from shopassist import config
from shopassist.errors import ValidationError
from shopassist.text_utils import normalize_whitespace, word_count

logger = structlog.get_logger()


@dataclass
class TextChunk:
    """Represents a chunk of text with position information."""

    content: str
    char_start: int
    char_end: int
    chunk_index: int
    total_chunks: int = 1

    @property
    def word_count(self) -> int:
        return word_count(self.content)


def resolve_overlap(chunk_size: int, chunk_overlap: float) -> int:
    """Convert an overlap setting to characters.

    Values below 1 are a fraction of chunk_size, anything else is a
    character count.
    """
    if chunk_overlap < 1:
        return int(round(chunk_size * chunk_overlap))
    return int(chunk_overlap)


class TextChunker:
    """Character-based text chunker with overlap support."""

    def __init__(
        self,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[float] = None,
    ):
        """Initialize the text chunker.

        Args:
            chunk_size: Size of each chunk in characters (default from config)
            chunk_overlap: Overlap between chunks, fraction (<1) or characters
                (default from config)

        Raises:
            ValidationError: If the overlap is not smaller than half the chunk size
        """
        self.chunk_size = config.CHUNK_SIZE if chunk_size is None else chunk_size
        overlap_setting = config.CHUNK_OVERLAP if chunk_overlap is None else chunk_overlap

        if self.chunk_size <= 0:
            raise ValidationError(f"Chunk size must be positive, got {self.chunk_size}")
        if overlap_setting < 0:
            raise ValidationError(f"Overlap must not be negative, got {overlap_setting}")

        self.chunk_overlap = resolve_overlap(self.chunk_size, overlap_setting)

        if self.chunk_overlap >= self.chunk_size:
            raise ValidationError(
                f"Overlap ({self.chunk_overlap}) must be less than "
                f"chunk size ({self.chunk_size})"
            )
        if self.chunk_overlap > self.chunk_size * 0.5:
            raise ValidationError(
                f"Overlap ({self.chunk_overlap}) should not exceed 50% of "
                f"chunk size ({self.chunk_size})"
            )

        logger.debug(
            "chunker_initialized",
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
        )

    def chunk_text(self, text: str) -> List[TextChunk]:
        """Normalize whitespace and split text into overlapping chunks.

        Args:
            text: Text to chunk

        Returns:
            List of TextChunk objects with chunk_index 0..N-1 and total_chunks N
        """
        text = normalize_whitespace(text)
        if not text:
            return []

        text_length = len(text)

        # Handle text shorter than chunk size
        if text_length <= self.chunk_size:
            logger.debug(
                "text_shorter_than_chunk_size",
                text_length=text_length,
                chunk_size=self.chunk_size,
            )
            return [
                TextChunk(
                    content=text,
                    char_start=0,
                    char_end=text_length,
                    chunk_index=0,
                    total_chunks=1,
                )
            ]

        chunks: List[TextChunk] = []
        start = 0

        while start < text_length:
            end = min(start + self.chunk_size, text_length)
            chunk_content = text[start:end]

            # Try to break at sentence or word boundary (not mid-word)
            # Only if we're not at the end of the text
            if end < text_length:
                chunk_content = self._adjust_chunk_boundary(chunk_content)
                end = start + len(chunk_content)

            chunks.append(
                TextChunk(
                    content=chunk_content,
                    char_start=start,
                    char_end=end,
                    chunk_index=len(chunks),
                )
            )

            # The last window reached the end; a further window would only
            # repeat overlap text
            if end >= text_length:
                break

            next_start = end - self.chunk_overlap
            # Boundary adjustment can shrink a window below the overlap
            if next_start <= start:
                next_start = end
            start = next_start

        total = len(chunks)
        for chunk in chunks:
            chunk.total_chunks = total

        logger.debug(
            "text_chunked",
            text_length=text_length,
            chunk_count=total,
            avg_chunk_size=sum(len(c.content) for c in chunks) // total,
        )

        return chunks

    def _adjust_chunk_boundary(self, chunk_content: str) -> str:
        """Shorten a window so it ends at a sentence or word boundary.

        Args:
            chunk_content: Current chunk content

        Returns:
            Adjusted chunk content
        """
        # Try to break at sentence boundary (period, !, ?)
        for break_char in (". ", "! ", "? "):
            last_break = chunk_content.rfind(break_char)
            if last_break > len(chunk_content) * 0.7:  # At least 70% through chunk
                return chunk_content[: last_break + len(break_char)]

        # Try to break at word boundary (space)
        last_space = chunk_content.rfind(" ")
        if last_space > len(chunk_content) * 0.8:  # At least 80% through chunk
            return chunk_content[: last_space + 1]

        # If no good break point found, just return original
        return chunk_content

    def get_chunk_stats(self, chunks: List[TextChunk]) -> dict:
        """Get statistics about a set of chunks."""
        if not chunks:
            return {
                "chunk_count": 0,
                "total_chars": 0,
                "avg_chunk_size": 0,
                "min_chunk_size": 0,
                "max_chunk_size": 0,
            }

        chunk_sizes = [len(c.content) for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_chars": sum(chunk_sizes),
            "avg_chunk_size": sum(chunk_sizes) // len(chunks),
            "min_chunk_size": min(chunk_sizes),
            "max_chunk_size": max(chunk_sizes),
            "overlap": self.chunk_overlap,
        }


def chunker_for(
    content_type: str,
    chunk_size: Optional[int] = None,
    chunk_overlap: Optional[float] = None,
) -> TextChunker:
    """Build a chunker, falling back to per-content-type defaults.

    Explicit arguments win over the content type table, which wins over the
    global defaults.
    """
    defaults = config.CONTENT_TYPE_CHUNKING.get(content_type, {})
    if chunk_size is None:
        chunk_size = defaults.get("chunk_size")
    if chunk_overlap is None:
        chunk_overlap = defaults.get("chunk_overlap")
    return TextChunker(chunk_size=chunk_size, chunk_overlap=chunk_overlap)
