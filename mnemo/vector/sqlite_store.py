"""SQLite-backed vector store with optional sqlite-vec ANN search.

Schema (one primary table, one optional ANN shadow table):

    <table>(id TEXT PRIMARY KEY, content TEXT, embedding BLOB,
            metadata TEXT, created_at INTEGER)
    <table>_vec USING vec0(embedding float[dim], id TEXT)

The shadow table is keyed by the primary row's rowid. Embeddings are
little-endian float32 blobs, metadata is JSON text, created_at is epoch ms.

ANN availability is tracked as a VecState that moves at most once:
DISABLED (not requested), ENABLED, or DEGRADED (extension failed and the
store was told to tolerate it; brute-force cosine scan from then on).
"""

import asyncio
import contextlib
import json
import logging
import sqlite3
import threading
from dataclasses import replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

from mnemo.protocols import EmbeddingProvider, StorageError, ValidationError
from mnemo.types import VectorSearchResult, VectorStoreEntry, now_utc, to_millis
from mnemo.vector.embeddings import adapt_provider
from mnemo.vector.similarity import (
    cosine_similarity,
    distance_to_score,
    pack_embedding,
    text_match_score,
    unpack_embedding,
    validate_identifier,
)

logger = logging.getLogger(__name__)

VEC_DISTANCE_METRICS = ("cosine", "l2")


class VecState(str, Enum):
    DISABLED = "disabled"
    ENABLED = "enabled"
    DEGRADED = "degraded"


class SQLiteVectorStore:
    """Durable VectorStore on a single SQLite database file.

    All SQLite work runs in a worker thread (``asyncio.to_thread``) on one
    connection guarded by a lock, so the event loop never blocks on disk.

    Args:
        path: Database file, or ``":memory:"``.
        dimension: Embedding length. Defaults to the provider's dimension.
            Required when ANN search is enabled.
        table_name: Primary table name (validated).
        max_entries: Capacity; overflow deletes the oldest created_at rows.
        embedding_provider: Optional provider used to embed text.
        enable_wal: Switch the database to WAL journaling.
        enable_vec_search: Try to load sqlite-vec and create the ANN table.
        vec_table_name: ANN table name (default ``<table>_vec``, validated).
        vec_distance_metric: ``"cosine"`` or ``"l2"``.
        ignore_extension_errors: Degrade to brute-force search instead of
            raising StorageError when sqlite-vec fails.
        clock: Source of ``created_at`` timestamps.
    """

    def __init__(
        self,
        path: Union[str, Path] = ":memory:",
        dimension: Optional[int] = None,
        table_name: str = "vector_entries",
        max_entries: Optional[int] = None,
        embedding_provider: Any = None,
        enable_wal: bool = True,
        enable_vec_search: bool = False,
        vec_table_name: Optional[str] = None,
        vec_distance_metric: str = "cosine",
        ignore_extension_errors: bool = False,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.table_name = validate_identifier(table_name)
        self.vec_table_name = validate_identifier(vec_table_name or f"{table_name}_vec")
        if vec_distance_metric not in VEC_DISTANCE_METRICS:
            raise ValidationError(f"Unsupported distance metric: {vec_distance_metric}")
        if max_entries is not None and max_entries <= 0:
            raise ValidationError("max_entries must be positive")

        self._provider: Optional[EmbeddingProvider] = (
            adapt_provider(embedding_provider) if embedding_provider is not None else None
        )
        if dimension is None and self._provider is not None:
            dimension = self._provider.dimension
        if enable_vec_search and dimension is None:
            raise ValidationError("dimension is required when vec search is enabled")

        self.path = str(path)
        self.dimension = dimension
        self.max_entries = max_entries
        self.vec_distance_metric = vec_distance_metric
        self.ignore_extension_errors = ignore_extension_errors
        self._clock = clock
        self._lock = threading.Lock()
        self.vec_state = VecState.DISABLED

        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if enable_wal and self.path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._init_db()
        if enable_vec_search:
            self._init_vec()

    # === Connection handling ===

    @contextlib.contextmanager
    def _connect(self):
        """Lock the shared connection for one transaction."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception as e:
                logger.debug(f"Transaction failed, rolling back: {e}")
                self._conn.rollback()
                raise

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(fn, *args)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                f"""CREATE TABLE IF NOT EXISTS {self.table_name} (
                    id TEXT PRIMARY KEY,
                    content TEXT NOT NULL,
                    embedding BLOB,
                    metadata TEXT,
                    created_at INTEGER NOT NULL
                )"""
            )
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{self.table_name}_created "
                f"ON {self.table_name}(created_at)"
            )

    def _init_vec(self) -> None:
        try:
            import sqlite_vec

            with self._connect() as conn:
                conn.enable_load_extension(True)
                sqlite_vec.load(conn)
                conn.enable_load_extension(False)
                metric = "cosine" if self.vec_distance_metric == "cosine" else "L2"
                conn.execute(
                    f"""CREATE VIRTUAL TABLE IF NOT EXISTS {self.vec_table_name} USING vec0(
                        embedding float[{self.dimension}] distance_metric={metric},
                        id TEXT
                    )"""
                )
        except Exception as e:
            self._vec_failed("initialize sqlite-vec", e)
            return
        self.vec_state = VecState.ENABLED
        logger.debug(f"sqlite-vec enabled for {self.table_name} ({self.vec_distance_metric})")

    def _vec_failed(self, action: str, error: Exception) -> None:
        """Degrade permanently, or raise if extension errors are fatal."""
        if not self.ignore_extension_errors:
            raise StorageError(f"Failed to {action}: {error}") from error
        if self.vec_state != VecState.DEGRADED:
            logger.warning(f"Failed to {action}, falling back to brute-force search: {error}")
        self.vec_state = VecState.DEGRADED

    # === Row helpers ===

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> VectorStoreEntry:
        metadata = json.loads(row["metadata"]) if row["metadata"] else None
        embedding = unpack_embedding(row["embedding"]) if row["embedding"] is not None else None
        return VectorStoreEntry(
            id=row["id"], content=row["content"], embedding=embedding, metadata=metadata
        )

    def _check_dimension(self, vector: Sequence[float]) -> None:
        if self.dimension is not None and len(vector) != self.dimension:
            raise ValidationError(
                f"Embedding dimension mismatch: expected {self.dimension}, got {len(vector)}"
            )

    # === Writes ===

    async def upsert(self, entry: VectorStoreEntry) -> None:
        embedding = entry.embedding
        if embedding is None:
            if self._provider is None:
                raise ValidationError(
                    f"Entry {entry.id} has no embedding and no embedding provider is configured"
                )
            embedding = await self._provider.embed(entry.content)
        self._check_dimension(embedding)
        await self._run(self._upsert_sync, replace(entry, embedding=list(embedding)))

    def _upsert_sync(self, entry: VectorStoreEntry) -> None:
        blob = pack_embedding(entry.embedding)
        metadata = json.dumps(entry.metadata) if entry.metadata is not None else None
        created_at = to_millis(self._clock())

        with self._connect() as conn:
            conn.execute(
                f"""INSERT INTO {self.table_name} (id, content, embedding, metadata, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        content = excluded.content,
                        embedding = excluded.embedding,
                        metadata = excluded.metadata,
                        created_at = excluded.created_at""",
                (entry.id, entry.content, blob, metadata, created_at),
            )
            row = conn.execute(
                f"SELECT rowid FROM {self.table_name} WHERE id = ?", (entry.id,)
            ).fetchone()
            rowid = row["rowid"]

            # Row and index change together; a fatal index error rolls back both.
            if self.vec_state == VecState.ENABLED:
                try:
                    conn.execute(f"DELETE FROM {self.vec_table_name} WHERE rowid = ?", (rowid,))
                    conn.execute(
                        f"INSERT INTO {self.vec_table_name} (rowid, embedding, id) VALUES (?, ?, ?)",
                        (rowid, blob, entry.id),
                    )
                except sqlite3.Error as e:
                    self._vec_failed("write sqlite-vec index", e)

        self._evict_sync()

    def _evict_sync(self) -> None:
        if self.max_entries is None:
            return
        with self._connect() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM {self.table_name}").fetchone()[0]
            overflow = total - self.max_entries
            if overflow <= 0:
                return
            rows = conn.execute(
                f"SELECT rowid, id FROM {self.table_name} ORDER BY created_at ASC, rowid ASC LIMIT ?",
                (overflow,),
            ).fetchall()
            rowids = [r["rowid"] for r in rows]
            placeholders = ",".join("?" * len(rowids))
            conn.execute(f"DELETE FROM {self.table_name} WHERE rowid IN ({placeholders})", rowids)
            if self.vec_state == VecState.ENABLED:
                conn.execute(
                    f"DELETE FROM {self.vec_table_name} WHERE rowid IN ({placeholders})", rowids
                )
        logger.debug(f"Evicted {len(rowids)} oldest entries from {self.table_name}")

    async def delete(self, entry_id: str) -> bool:
        return await self._run(self._delete_sync, entry_id)

    def _delete_sync(self, entry_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT rowid FROM {self.table_name} WHERE id = ?", (entry_id,)
            ).fetchone()
            if row is None:
                return False
            conn.execute(f"DELETE FROM {self.table_name} WHERE rowid = ?", (row["rowid"],))
            if self.vec_state == VecState.ENABLED:
                conn.execute(f"DELETE FROM {self.vec_table_name} WHERE rowid = ?", (row["rowid"],))
        return True

    # === Reads ===

    async def get(self, entry_id: str) -> Optional[VectorStoreEntry]:
        return await self._run(self._get_sync, entry_id)

    def _get_sync(self, entry_id: str) -> Optional[VectorStoreEntry]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT id, content, embedding, metadata FROM {self.table_name} WHERE id = ?",
                (entry_id,),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    async def count(self) -> int:
        return await self._run(self._count_sync)

    def _count_sync(self) -> int:
        with self._connect() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {self.table_name}").fetchone()[0]

    async def search(
        self,
        query: Union[str, Sequence[float]],
        limit: Optional[int] = 10,
        threshold: float = 0.0,
    ) -> List[VectorSearchResult]:
        if isinstance(query, str):
            if self._provider is None:
                return await self._run(self._text_search_sync, query, limit, threshold)
            query = await self._provider.embed(query)
        return await self.search_by_embedding(query, limit=limit, threshold=threshold)

    async def search_by_embedding(
        self,
        embedding: Sequence[float],
        limit: Optional[int] = 10,
        threshold: float = 0.0,
    ) -> List[VectorSearchResult]:
        if limit is not None and limit <= 0:
            return []
        self._check_dimension(embedding)
        return await self._run(self._search_sync, list(embedding), limit, threshold)

    def _search_sync(
        self, embedding: List[float], limit: Optional[int], threshold: float
    ) -> List[VectorSearchResult]:
        if self.vec_state == VecState.ENABLED:
            try:
                return self._ann_search(embedding, limit, threshold)
            except sqlite3.Error as e:
                self._vec_failed("query sqlite-vec index", e)
        return self._brute_force_search(embedding, limit, threshold)

    def _ann_search(
        self, embedding: List[float], limit: Optional[int], threshold: float
    ) -> List[VectorSearchResult]:
        k = limit * 3 if limit is not None else max(self._count_sync(), 1)
        with self._connect() as conn:
            candidates: List[Tuple[int, float]] = [
                (row["rowid"], row["distance"])
                for row in conn.execute(
                    f"""SELECT rowid, distance FROM {self.vec_table_name}
                        WHERE embedding MATCH ? AND k = ?
                        ORDER BY distance""",
                    (pack_embedding(embedding), k),
                ).fetchall()
            ]

            results = []
            for rowid, distance in candidates:
                row = conn.execute(
                    f"SELECT id, content, embedding, metadata FROM {self.table_name} WHERE rowid = ?",
                    (rowid,),
                ).fetchone()
                if row is None:
                    continue
                score = distance_to_score(distance, self.vec_distance_metric)
                if score >= threshold:
                    results.append(VectorSearchResult(entry=self._row_to_entry(row), score=score))

        results.sort(key=lambda r: r.score, reverse=True)
        return results[:limit] if limit is not None else results

    def _brute_force_search(
        self, embedding: List[float], limit: Optional[int], threshold: float
    ) -> List[VectorSearchResult]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""SELECT id, content, embedding, metadata FROM {self.table_name}
                    WHERE embedding IS NOT NULL
                    ORDER BY created_at ASC, rowid ASC"""
            ).fetchall()

        results = []
        for row in rows:
            entry = self._row_to_entry(row)
            if len(entry.embedding) != len(embedding):
                continue
            score = cosine_similarity(embedding, entry.embedding)
            if score >= threshold:
                results.append(VectorSearchResult(entry=entry, score=score))

        results.sort(key=lambda r: r.score, reverse=True)
        return results[:limit] if limit is not None else results

    def _text_search_sync(
        self, query: str, limit: Optional[int], threshold: float
    ) -> List[VectorSearchResult]:
        if limit is not None and limit <= 0:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                f"""SELECT id, content, embedding, metadata FROM {self.table_name}
                    ORDER BY created_at ASC, rowid ASC"""
            ).fetchall()

        results = []
        for row in rows:
            score = text_match_score(row["content"], query)
            if score > 0 and score >= threshold:
                results.append(VectorSearchResult(entry=self._row_to_entry(row), score=score))
        results.sort(key=lambda r: r.score, reverse=True)
        return results[:limit] if limit is not None else results

    async def stats(self) -> dict:
        """Row count and ANN state, for diagnostics."""
        return {
            "table": self.table_name,
            "count": await self.count(),
            "dimension": self.dimension,
            "vec_state": self.vec_state.value,
            "distance_metric": self.vec_distance_metric,
        }
