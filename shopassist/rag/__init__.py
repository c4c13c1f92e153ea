"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Content chunking with overlap
- Indexing with hash-based deduplication
- FAISS vector storage
- Semantic retrieval and context assembly
- Prompt building, confidence scoring and response orchestration
"""
