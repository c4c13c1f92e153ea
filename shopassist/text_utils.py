"""Text normalization and hashing helpers."""
import hashlib
import html
import re

_SCRIPT_STYLE_RE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_BLOCK_TAG_RE = re.compile(r"<\s*(br|/p|/div|/li|/h[1-6]|/tr)\b[^>]*>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_SHORTCODE_RE = re.compile(r"\[/?[a-zA-Z_][\w-]*(?:\s[^\]]*)?\]")
_WHITESPACE_RE = re.compile(r"\s+")
_WORD_RE = re.compile(r"\b\w+\b", re.UNICODE)


def strip_markup(text: str) -> str:
    """Remove HTML tags, shortcodes and entities, keeping block breaks as spaces."""
    if not text:
        return ""
    text = _SCRIPT_STYLE_RE.sub(" ", text)
    text = _BLOCK_TAG_RE.sub(" ", text)
    text = _TAG_RE.sub("", text)
    text = _SHORTCODE_RE.sub("", text)
    return html.unescape(text)


def normalize_whitespace(text: str) -> str:
    """Collapse all whitespace runs to a single space and trim."""
    if not text:
        return ""
    return _WHITESPACE_RE.sub(" ", text).strip()


def clean_text(text: str) -> str:
    """Markup-free, whitespace-normalized plain text."""
    return normalize_whitespace(strip_markup(text))


def truncate_at_word(text: str, max_length: int, suffix: str = "...") -> str:
    """Cut text to max_length at the last whole word."""
    if len(text) <= max_length:
        return text
    cut = text[:max_length]
    last_space = cut.rfind(" ")
    if last_space > 0:
        cut = cut[:last_space]
    return cut + suffix


def word_count(text: str) -> int:
    return len(_WORD_RE.findall(text or ""))


def compute_chunk_hash(content_type: str, content_id: str, chunk_index: int, text: str) -> str:
    """Content-addressed identity of a chunk.

    Covers the owning content, the window position and the normalized text,
    so unchanged content always hashes to the same value.
    """
    payload = "\x1f".join(
        [content_type, str(content_id), str(chunk_index), normalize_whitespace(text)]
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
