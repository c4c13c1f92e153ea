"""SQLite persistence for the chunk store.

Stores:
- Text chunks with their embeddings and activation state
- A generation counter per (content_type, content_id)

The unique constraint on chunk_hash is the concurrency guard for indexing:
a second writer of the same chunk gets a conflict, which callers treat as
"already indexed".
"""
import json
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

import numpy as np
import structlog

from shopassist import config
from shopassist.models import Chunk

logger = structlog.get_logger()

# Keep IN (...) lists under SQLite's bound-parameter limit
_MAX_PARAMS = 500

_CHUNK_COLUMNS = """
    id, content_type, content_id, chunk_text, chunk_hash, chunk_index,
    total_chunks, word_count, embedding, embedding_model, metadata_json,
    is_active, generation, updated_at
"""


def _batched(values: Sequence[Any], size: int = _MAX_PARAMS) -> Iterator[Sequence[Any]]:
    for i in range(0, len(values), size):
        yield values[i : i + size]


def encode_vector(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def decode_vector(blob: Optional[bytes]) -> Optional[List[float]]:
    if blob is None:
        return None
    return np.frombuffer(blob, dtype=np.float32).tolist()


def row_to_chunk(row: sqlite3.Row, with_embedding: bool = True) -> Chunk:
    return Chunk(
        id=row["id"],
        content_type=row["content_type"],
        content_id=row["content_id"],
        chunk_text=row["chunk_text"],
        chunk_hash=row["chunk_hash"],
        chunk_index=row["chunk_index"],
        total_chunks=row["total_chunks"],
        word_count=row["word_count"],
        embedding=decode_vector(row["embedding"]) if with_embedding else None,
        embedding_model=row["embedding_model"],
        metadata=json.loads(row["metadata_json"]) if row["metadata_json"] else {},
        is_active=bool(row["is_active"]),
        generation=row["generation"],
        updated_at=row["updated_at"],
    )


class Database:
    """Thin wrapper around a SQLite file with the chunk schema."""

    def __init__(self, db_path: Optional[Path] = None, timeout: float = 30.0):
        """Initialize the database.

        Args:
            db_path: Path to the SQLite file (default from config)
            timeout: Seconds to wait for a competing writer's lock
        """
        self.db_path = Path(db_path or config.DB_PATH)
        self.timeout = timeout
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.init_schema()

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection to the SQLite database.

        Returns:
            sqlite3.Connection with row_factory set to sqlite3.Row
        """
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction holding the database write lock from the start."""
        conn = self.get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    @contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        conn = self.get_connection()
        try:
            yield conn
        finally:
            conn.close()

    def init_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        with self.transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS chunks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    content_type TEXT NOT NULL,
                    content_id TEXT NOT NULL,
                    chunk_text TEXT NOT NULL,
                    chunk_hash TEXT NOT NULL UNIQUE,
                    chunk_index INTEGER NOT NULL,
                    total_chunks INTEGER NOT NULL,
                    word_count INTEGER NOT NULL DEFAULT 0,
                    embedding BLOB NOT NULL,
                    embedding_dim INTEGER NOT NULL,
                    embedding_model TEXT,
                    metadata_json TEXT,
                    is_active INTEGER NOT NULL DEFAULT 0,
                    generation INTEGER NOT NULL DEFAULT 0,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    CHECK (chunk_index >= 0 AND chunk_index < total_chunks)
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_chunks_content_lookup
                ON chunks(content_type, content_id, is_active)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_chunks_is_active
                ON chunks(is_active)
            """)

            # Monotonic generation per content entity
            conn.execute("""
                CREATE TABLE IF NOT EXISTS content_generations (
                    content_type TEXT NOT NULL,
                    content_id TEXT NOT NULL,
                    generation INTEGER NOT NULL,
                    updated_at REAL NOT NULL,
                    PRIMARY KEY (content_type, content_id)
                )
            """)

        logger.debug("database_initialized", db_path=str(self.db_path))

    # ------------------------------------------------------------------
    # Writes

    def insert_chunk(
        self,
        conn: sqlite3.Connection,
        chunk: Chunk,
        vector: Sequence[float],
        embedding_model: Optional[str],
        active: bool,
    ) -> Optional[int]:
        """Insert a chunk row inside an open transaction.

        Returns:
            New row id, or None when a row with the same chunk_hash exists
        """
        now = time.time()
        cursor = conn.execute(
            """
            INSERT INTO chunks (
                content_type, content_id, chunk_text, chunk_hash, chunk_index,
                total_chunks, word_count, embedding, embedding_dim,
                embedding_model, metadata_json, is_active, generation,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(chunk_hash) DO NOTHING
            """,
            (
                chunk.content_type,
                chunk.content_id,
                chunk.chunk_text,
                chunk.chunk_hash,
                chunk.chunk_index,
                chunk.total_chunks,
                chunk.word_count,
                encode_vector(vector),
                len(vector),
                embedding_model,
                json.dumps(chunk.metadata) if chunk.metadata else None,
                1 if active else 0,
                chunk.generation,
                now,
                now,
            ),
        )
        if cursor.rowcount == 0:
            return None
        return cursor.lastrowid

    def replace_embedding(
        self,
        conn: sqlite3.Connection,
        chunk_id: int,
        vector: Sequence[float],
        embedding_model: Optional[str],
    ) -> None:
        conn.execute(
            """
            UPDATE chunks
            SET embedding = ?, embedding_dim = ?, embedding_model = ?, updated_at = ?
            WHERE id = ?
            """,
            (encode_vector(vector), len(vector), embedding_model, time.time(), chunk_id),
        )

    def next_generation(self, conn: sqlite3.Connection, content_type: str, content_id: str) -> int:
        """Bump and return the generation of a content entity."""
        now = time.time()
        conn.execute(
            """
            INSERT INTO content_generations (content_type, content_id, generation, updated_at)
            VALUES (?, ?, 1, ?)
            ON CONFLICT(content_type, content_id)
            DO UPDATE SET generation = generation + 1, updated_at = excluded.updated_at
            """,
            (content_type, content_id, now),
        )
        row = conn.execute(
            "SELECT generation FROM content_generations WHERE content_type = ? AND content_id = ?",
            (content_type, content_id),
        ).fetchone()
        return row["generation"]

    def activate_chunk_set(
        self,
        conn: sqlite3.Connection,
        content_type: str,
        content_id: str,
        chunk_hashes: Sequence[str],
        generation: int,
    ) -> Dict[str, int]:
        """Make exactly chunk_hashes the active set of a content entity.

        Runs inside the caller's transaction so readers never observe the
        entity with zero active chunks.

        Returns:
            Counts of rows activated and deactivated, plus the ids of rows
            that were switched on ("switched_on") or off ("switched_off")
        """
        now = time.time()
        total = len(chunk_hashes)
        activated = 0
        switched_on: List[int] = []
        for batch in _batched(list(chunk_hashes)):
            placeholders = ",".join("?" * len(batch))
            rows = conn.execute(
                f"""
                SELECT id FROM chunks
                WHERE chunk_hash IN ({placeholders})
                  AND content_type = ? AND content_id = ? AND is_active = 0
                """,
                (*batch, content_type, content_id),
            ).fetchall()
            switched_on.extend(row["id"] for row in rows)
            cursor = conn.execute(
                f"""
                UPDATE chunks
                SET is_active = 1, generation = ?, total_chunks = ?, updated_at = ?
                WHERE chunk_hash IN ({placeholders})
                  AND content_type = ? AND content_id = ?
                """,
                (generation, total, now, *batch, content_type, content_id),
            )
            activated += cursor.rowcount

        switched_off = [
            row["id"]
            for row in conn.execute(
                """
                SELECT id FROM chunks
                WHERE content_type = ? AND content_id = ? AND is_active = 1
                  AND generation != ?
                """,
                (content_type, content_id, generation),
            )
        ]
        conn.execute(
            """
            UPDATE chunks
            SET is_active = 0, updated_at = ?
            WHERE content_type = ? AND content_id = ? AND is_active = 1
              AND generation != ?
            """,
            (now, content_type, content_id, generation),
        )
        return {
            "activated": activated,
            "deactivated": len(switched_off),
            "switched_on": switched_on,
            "switched_off": switched_off,
        }

    def deactivate_content(self, content_type: str, content_id: str) -> List[int]:
        """Soft-delete every active chunk of a content entity.

        Returns:
            Ids of the rows that were deactivated
        """
        with self.transaction() as conn:
            ids = [
                row["id"]
                for row in conn.execute(
                    """
                    SELECT id FROM chunks
                    WHERE content_type = ? AND content_id = ? AND is_active = 1
                    """,
                    (content_type, content_id),
                )
            ]
            conn.execute(
                """
                UPDATE chunks SET is_active = 0, updated_at = ?
                WHERE content_type = ? AND content_id = ? AND is_active = 1
                """,
                (time.time(), content_type, content_id),
            )
            return ids

    def get_embeddings(self, conn: sqlite3.Connection, chunk_ids: Sequence[int]) -> List[sqlite3.Row]:
        """Fetch (id, embedding, embedding_dim) rows for the given ids."""
        rows: List[sqlite3.Row] = []
        for batch in _batched(list(chunk_ids)):
            placeholders = ",".join("?" * len(batch))
            rows.extend(
                conn.execute(
                    f"SELECT id, embedding, embedding_dim FROM chunks WHERE id IN ({placeholders})",
                    batch,
                ).fetchall()
            )
        return rows

    # ------------------------------------------------------------------
    # Reads

    def get_chunk(self, chunk_id: int) -> Optional[Chunk]:
        with self.reader() as conn:
            row = conn.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE id = ?", (chunk_id,)
            ).fetchone()
            return row_to_chunk(row) if row else None

    def get_chunk_by_hash(self, conn: sqlite3.Connection, chunk_hash: str) -> Optional[sqlite3.Row]:
        return conn.execute(
            "SELECT id, embedding_model, embedding_dim, is_active FROM chunks WHERE chunk_hash = ?",
            (chunk_hash,),
        ).fetchone()

    def find_existing_hashes(self, chunk_hashes: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        """Look up stored rows for a set of hashes.

        Returns:
            Mapping of chunk_hash to {"id", "is_active", "embedding_model"}
        """
        found: Dict[str, Dict[str, Any]] = {}
        if not chunk_hashes:
            return found
        with self.reader() as conn:
            for batch in _batched(list(chunk_hashes)):
                placeholders = ",".join("?" * len(batch))
                rows = conn.execute(
                    f"""
                    SELECT id, chunk_hash, is_active, embedding_model
                    FROM chunks WHERE chunk_hash IN ({placeholders})
                    """,
                    batch,
                ).fetchall()
                for row in rows:
                    found[row["chunk_hash"]] = {
                        "id": row["id"],
                        "is_active": bool(row["is_active"]),
                        "embedding_model": row["embedding_model"],
                    }
        return found

    def get_chunks_by_ids(
        self,
        chunk_ids: Sequence[int],
        active_only: bool = False,
        content_type: Optional[str] = None,
        with_embedding: bool = False,
    ) -> List[Chunk]:
        """Retrieve chunks by row id, optionally restricted to active ones."""
        if not chunk_ids:
            return []

        chunks: List[Chunk] = []
        with self.reader() as conn:
            for batch in _batched(list(chunk_ids)):
                placeholders = ",".join("?" * len(batch))
                sql = f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE id IN ({placeholders})"
                params: List[Any] = list(batch)
                if active_only:
                    sql += " AND is_active = 1"
                if content_type is not None:
                    sql += " AND content_type = ?"
                    params.append(content_type)
                rows = conn.execute(sql, params).fetchall()
                chunks.extend(row_to_chunk(row, with_embedding=with_embedding) for row in rows)
        return chunks

    def get_active_chunks(self, content_type: str, content_id: str) -> List[Chunk]:
        with self.reader() as conn:
            rows = conn.execute(
                f"""
                SELECT {_CHUNK_COLUMNS} FROM chunks
                WHERE content_type = ? AND content_id = ? AND is_active = 1
                ORDER BY chunk_index
                """,
                (content_type, content_id),
            ).fetchall()
            return [row_to_chunk(row) for row in rows]

    def known_content_ids(self, content_type: str, content_ids: Iterable[str]) -> set:
        """Content ids of this type that already have a generation."""
        ids = list(content_ids)
        known = set()
        with self.reader() as conn:
            for batch in _batched(ids):
                placeholders = ",".join("?" * len(batch))
                rows = conn.execute(
                    f"""
                    SELECT content_id FROM content_generations
                    WHERE content_type = ? AND content_id IN ({placeholders})
                    """,
                    (content_type, *batch),
                ).fetchall()
                known.update(row["content_id"] for row in rows)
        return known

    def iter_embeddings(self) -> Iterator[sqlite3.Row]:
        """Yield (id, embedding, embedding_dim) for every active chunk."""
        with self.reader() as conn:
            cursor = conn.execute(
                "SELECT id, embedding, embedding_dim FROM chunks WHERE is_active = 1"
            )
            for row in cursor:
                yield row

    def get_chunk_counts(self) -> Dict[str, Any]:
        with self.reader() as conn:
            total = conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
            active = conn.execute("SELECT COUNT(*) FROM chunks WHERE is_active = 1").fetchone()[0]
            by_type = {
                row["content_type"]: row["n"]
                for row in conn.execute(
                    """
                    SELECT content_type, COUNT(*) AS n FROM chunks
                    WHERE is_active = 1 GROUP BY content_type
                    """
                )
            }
            contents = conn.execute(
                "SELECT COUNT(DISTINCT content_type || ':' || content_id) FROM chunks WHERE is_active = 1"
            ).fetchone()[0]
        return {
            "total_chunks": total,
            "active_chunks": active,
            "inactive_chunks": total - active,
            "active_contents": contents,
            "active_by_type": by_type,
        }
