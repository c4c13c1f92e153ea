"""Application configuration with sensible defaults."""
import os
from pathlib import Path

# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(BASE_DIR / "data")))
DB_PATH = Path(os.getenv("DB_PATH", str(DATA_DIR / "shopassist.sqlite")))

# Ollama configuration
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
CHAT_MODEL = os.getenv("CHAT_MODEL", "llama3.1:8b")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "nomic-embed-text")
# Unset or 0 = detect from the embedding provider at startup
EMBEDDING_DIMENSION = int(os.getenv("EMBEDDING_DIMENSION", "0")) or None

# Provider limits
PROVIDER_TIMEOUT = float(os.getenv("PROVIDER_TIMEOUT", "30.0"))
EMBEDDING_BATCH_SIZE = int(os.getenv("EMBEDDING_BATCH_SIZE", "16"))
EMBEDDING_MAX_INPUT_CHARS = int(os.getenv("EMBEDDING_MAX_INPUT_CHARS", "8000"))
EMBEDDING_CONCURRENCY = int(os.getenv("EMBEDDING_CONCURRENCY", "4"))
INDEX_CONCURRENCY = int(os.getenv("INDEX_CONCURRENCY", "4"))

# Chunking (character-based to avoid tokenizer inconsistencies)
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "1000"))
CHUNK_OVERLAP = float(os.getenv("CHUNK_OVERLAP", "0.15"))  # <1 = fraction, >=1 = chars

# Per content type defaults, used when a caller passes no explicit chunk config
CONTENT_TYPE_CHUNKING = {
    "product": {"chunk_size": 800, "chunk_overlap": 0.1},
    "page": {"chunk_size": 1000, "chunk_overlap": 0.1},
    "post": {"chunk_size": 1200, "chunk_overlap": 0.1},
    "woocommerce_settings": {"chunk_size": 600, "chunk_overlap": 0.1},
    "product_cat": {"chunk_size": 400, "chunk_overlap": 0.1},
    "product_tag": {"chunk_size": 300, "chunk_overlap": 0.1},
}

# Retrieval
RETRIEVAL_TOP_K = int(os.getenv("RETRIEVAL_TOP_K", "5"))
RETRIEVAL_MIN_SCORE = float(os.getenv("RETRIEVAL_MIN_SCORE", "0.5"))
MAX_CONTEXT_CHARS = int(os.getenv("MAX_CONTEXT_CHARS", "4000"))

# Conversation memory
MEMORY_MAX_TURNS = int(os.getenv("MEMORY_MAX_TURNS", "5"))
MEMORY_TTL_SECONDS = float(os.getenv("MEMORY_TTL_SECONDS", "1800"))

# Input limits
MAX_QUERY_LENGTH = int(os.getenv("MAX_QUERY_LENGTH", "2000"))
MAX_CONTENT_LENGTH = int(os.getenv("MAX_CONTENT_LENGTH", "10000"))

# License
LICENSE_PLAN = os.getenv("LICENSE_PLAN", "free")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "json")  # json | console
