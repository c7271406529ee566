"""
Hybrid memory storage on SQLite + FTS5.

Features:
- Zero server dependencies (embedded SQLite)
- Append-only row store with float64 embedding blobs
- FTS5 text index kept row-synchronized in the same transaction
- Brute-force cosine similarity search
- BM25 keyword search
- Hybrid search: vector + FTS5 merged with Reciprocal Rank Fusion
- Thread-safe connection pooling
- Cancellation via CancelToken
"""
from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from queue import Empty, Full, Queue
from typing import Iterable, Optional, Sequence

from .cancel import CancelToken, check
from .codec import decode_embedding, encode_embedding
from .errors import (
    OperationCancelled,
    QuerySyntaxError,
    StorageError,
    ValidationError,
)
from .fusion import reciprocal_rank_fusion
from .models import ScoreKind, SemanticMemory
from .similarity import cosine_similarity

logger = logging.getLogger(__name__)

# SQLite VM steps between progress-handler calls (cancellation polling)
_PROGRESS_STEPS = 1000
# Rows pulled per fetchmany() during a full scan
_FETCH_BATCH = 500
# Substrings of sqlite3.OperationalError messages caused by a bad MATCH query
_FTS_QUERY_ERRORS = (
    "fts5",
    "syntax error",
    "no such column",
    "unknown special query",
    "unterminated string",
)

SCHEMA = """
    CREATE TABLE IF NOT EXISTS memories (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        content TEXT NOT NULL,
        embedding BLOB NOT NULL,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
    );

    CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts USING fts5(content);
"""


def _parse_timestamp(value) -> datetime:
    """SQLite CURRENT_TIMESTAMP is 'YYYY-MM-DD HH:MM:SS' in UTC."""
    if isinstance(value, datetime):
        ts = value
    else:
        try:
            ts = datetime.fromisoformat(str(value))
        except ValueError as e:
            raise StorageError(f"malformed created_at {value!r}") from e
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _require_text(value: str, name: str) -> None:
    if not value:
        raise ValidationError(f"{name} must not be empty")


def _require_embedding(embedding: Optional[Sequence[float]]) -> None:
    if embedding is None or len(embedding) == 0:
        raise ValidationError("embedding must not be empty")


def _require_top_k(top_k: int) -> None:
    if top_k <= 0:
        raise ValidationError("top_k must be positive")


@contextmanager
def _guard(conn: sqlite3.Connection, cancel: Optional[CancelToken], interrupt: bool = True):
    """
    Translate sqlite3 errors and abort running statements on cancellation.

    With ``interrupt`` set, a progress handler stops SQLite as soon as the
    token fires; the interrupt surfaces as OperationCancelled. Write paths
    leave it off so a rollback is never interrupted.
    """
    interrupt = interrupt and cancel is not None
    if interrupt:
        conn.set_progress_handler(lambda: int(cancel.cancelled), _PROGRESS_STEPS)
    try:
        yield
    except sqlite3.Error as e:
        if cancel is not None and cancel.cancelled:
            raise OperationCancelled("operation cancelled") from e
        raise StorageError(str(e)) from e
    finally:
        if interrupt:
            conn.set_progress_handler(None, 0)


class ConnectionPool:
    """Thread-safe SQLite connection pool."""

    def __init__(self, db_path: str, pool_size: int = 5, busy_timeout: float = 5.0):
        self.db_path = db_path
        self.pool_size = pool_size
        self.busy_timeout = busy_timeout
        self._pool: Queue = Queue(maxsize=pool_size)
        self._semaphore = threading.Semaphore(pool_size)
        self._lock = threading.Lock()
        self._closed = False

    def _create_connection(self) -> sqlite3.Connection:
        """Create a new database connection."""
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    @contextmanager
    def get_connection(self):
        """Get a connection from the pool (bounded by semaphore)."""
        if not self._semaphore.acquire(timeout=self.busy_timeout * 2):
            raise StorageError(f"no free connection for {self.db_path}")
        conn = None
        try:
            try:
                conn = self._pool.get_nowait()
            except Empty:
                conn = self._create_connection()
            yield conn
        finally:
            if conn is not None:
                with self._lock:
                    if self._closed:
                        conn.close()
                    else:
                        try:
                            self._pool.put_nowait(conn)
                        except Full:
                            conn.close()
            self._semaphore.release()

    def close_all(self):
        """Close all idle connections; in-use ones are closed when released."""
        with self._lock:
            self._closed = True
            while True:
                try:
                    conn = self._pool.get_nowait()
                except Empty:
                    break
                conn.close()


class MemoryStore:
    """
    SQLite memory store with semantic, keyword and hybrid search.

    Two structures share one id space:
    - ``memories``: row store (id, content, embedding blob, created_at)
    - ``memories_fts``: FTS5 index over content, rowid = memories.id

    Every write touches both inside one transaction, so a row never exists
    without its index entry.
    """

    def __init__(
        self,
        db_path: str | Path = ":memory:",
        pool_size: int = 5,
        busy_timeout: float = 5.0,
    ):
        """
        Initialize memory storage.

        Args:
            db_path: Path to SQLite database (or ":memory:" for in-memory)
            pool_size: Connection pool size for concurrent access
            busy_timeout: Seconds to wait on a locked database
        """
        self.db_path = Path(db_path) if db_path != ":memory:" else db_path
        self.pool_size = pool_size
        self.busy_timeout = busy_timeout
        self._pool: Optional[ConnectionPool] = None
        self._single_conn: Optional[sqlite3.Connection] = None
        self._is_memory = db_path == ":memory:"
        self._lock = threading.RLock()
        self._closed = False

        # Create parent directory if needed
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def __enter__(self) -> "MemoryStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @contextmanager
    def _get_conn(self):
        """Get a database connection (thread-safe)."""
        if self._closed:
            raise StorageError("memory store is closed")
        if self._is_memory:
            # An in-memory database lives on exactly one connection
            with self._lock:
                if self._closed:
                    raise StorageError("memory store is closed")
                if self._single_conn is None:
                    self._single_conn = self._connect_memory()
                yield self._single_conn
        else:
            if self._pool is None:
                with self._lock:
                    if self._closed:
                        raise StorageError("memory store is closed")
                    if self._pool is None:
                        db_str = str(self.db_path)
                        pool = ConnectionPool(db_str, self.pool_size, self.busy_timeout)
                        try:
                            with pool.get_connection() as conn:
                                self._init_schema(conn)
                        except sqlite3.Error as e:
                            pool.close_all()
                            raise StorageError(f"cannot open {db_str}: {e}") from e
                        self._pool = pool
                        logger.info(f"✓ Connected to {db_str}")

            pool = self._pool
            if pool is None:
                raise StorageError("memory store is closed")
            with pool.get_connection() as conn:
                yield conn

    def _connect_memory(self) -> sqlite3.Connection:
        """Create the single connection for an in-memory DB."""
        try:
            conn = sqlite3.connect(":memory:", check_same_thread=False)
            conn.row_factory = sqlite3.Row
            self._init_schema(conn)
        except sqlite3.Error as e:
            raise StorageError(f"cannot open in-memory database: {e}") from e
        logger.debug("In-memory database initialized")
        return conn

    def _init_schema(self, conn: sqlite3.Connection):
        """Create tables if absent. Safe to run on every startup."""
        conn.executescript(SCHEMA)
        conn.commit()

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def _insert(
        self,
        conn: sqlite3.Connection,
        content: str,
        embedding: Sequence[float],
        cancel: Optional[CancelToken],
    ) -> int:
        """Write one row and its index entry. Caller owns the transaction."""
        cursor = conn.execute(
            "INSERT INTO memories (content, embedding) VALUES (?, ?)",
            (content, encode_embedding(embedding)),
        )
        row_id = cursor.lastrowid
        if row_id is None:
            raise StorageError("database did not return an id for the new memory")
        check(cancel)
        conn.execute(
            "INSERT INTO memories_fts (rowid, content) VALUES (?, ?)",
            (row_id, content),
        )
        return row_id

    def store(
        self,
        content: str,
        embedding: Sequence[float],
        cancel: Optional[CancelToken] = None,
    ) -> None:
        """
        Store a memory and index it for keyword search.

        The row and the index entry are written in one transaction: on any
        failure or cancellation neither is kept.

        Args:
            content: Text content (non-empty)
            embedding: Embedding vector (non-empty)
            cancel: Optional cancellation token

        Raises:
            ValidationError: content or embedding is empty
            OperationCancelled: the token fired before commit
            StorageError: the database failed
        """
        _require_text(content, "content")
        _require_embedding(embedding)

        with self._get_conn() as conn, _guard(conn, cancel, interrupt=False):
            check(cancel)
            with conn:
                row_id = self._insert(conn, content, embedding, cancel)
                check(cancel)

        logger.debug(f"Stored memory id={row_id}")

    def store_batch(
        self,
        items: Iterable[tuple[str, Sequence[float]]],
        cancel: Optional[CancelToken] = None,
    ) -> int:
        """
        Store multiple memories in a single transaction.

        Every item is validated before anything is written; the batch is
        all-or-nothing.

        Args:
            items: (content, embedding) pairs
            cancel: Optional cancellation token

        Returns:
            Number of stored memories
        """
        items = list(items)
        for content, embedding in items:
            _require_text(content, "content")
            _require_embedding(embedding)
        if not items:
            return 0

        with self._get_conn() as conn, _guard(conn, cancel, interrupt=False):
            check(cancel)
            with conn:
                for content, embedding in items:
                    self._insert(conn, content, embedding, cancel)
                check(cancel)

        logger.info(f"Stored {len(items)} memories in batch")
        return len(items)

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def search(
        self,
        embedding: Sequence[float],
        top_k: int = 10,
        cancel: Optional[CancelToken] = None,
    ) -> list[SemanticMemory]:
        """
        Search memories by cosine similarity (full scan).

        Args:
            embedding: Query vector (non-empty)
            top_k: Maximum number of results (positive)
            cancel: Optional cancellation token

        Returns:
            Up to top_k results, best first, with ``kind=ScoreKind.COSINE``.
            Equal scores keep row-id order.
        """
        _require_embedding(embedding)
        _require_top_k(top_k)

        candidates = []
        with self._get_conn() as conn, _guard(conn, cancel):
            check(cancel)
            cursor = conn.execute("SELECT id, content, embedding, created_at FROM memories ORDER BY id")
            while True:
                rows = cursor.fetchmany(_FETCH_BATCH)
                if not rows:
                    break
                check(cancel)
                for row in rows:
                    score = cosine_similarity(embedding, decode_embedding(row["embedding"]))
                    candidates.append((row, score))
            check(cancel)

        candidates.sort(key=lambda c: c[1], reverse=True)

        return [
            SemanticMemory(
                id=row["id"],
                content=row["content"],
                score=score,
                kind=ScoreKind.COSINE,
                created_at=_parse_timestamp(row["created_at"]),
            )
            for row, score in candidates[:top_k]
        ]

    @staticmethod
    def _quote_fts_query(query: str) -> str:
        """
        Quote every token of a query for FTS5 MATCH.

        FTS5 treats `-`, `:`, parentheses and bare AND/OR/NOT as syntax.
        Wrapping each token in double quotes matches them literally.
        e.g. "anti-cheat" -> '"anti-cheat"'
             "UE4SS hook" -> '"UE4SS" "hook"'  (AND of literals)
        """
        tokens = query.split()
        return " ".join('"' + t.replace('"', '""') + '"' for t in tokens)

    def keyword_search(
        self,
        query: str,
        top_k: int = 10,
        cancel: Optional[CancelToken] = None,
        literal: bool = False,
    ) -> list[SemanticMemory]:
        """
        Search memories with the FTS5 index.

        Args:
            query: FTS5 query string (non-empty)
            top_k: Maximum number of results (positive)
            cancel: Optional cancellation token
            literal: Quote each token instead of using the FTS5 query grammar

        Returns:
            Up to top_k results, best match first, with
            ``kind=ScoreKind.TEXT_RELEVANCE`` (negated FTS5 rank, positive)

        Raises:
            QuerySyntaxError: FTS5 rejected the query
        """
        _require_text(query, "query")
        _require_top_k(top_k)

        match = self._quote_fts_query(query) if literal else query
        if not match:
            raise ValidationError("query must not be empty")

        with self._get_conn() as conn, _guard(conn, cancel):
            check(cancel)
            try:
                rows = conn.execute("""
                    SELECT m.id, m.content, m.created_at, f.rank
                    FROM memories_fts f
                    JOIN memories m ON m.id = f.rowid
                    WHERE memories_fts MATCH ?
                    ORDER BY f.rank
                    LIMIT ?
                """, (match, top_k)).fetchall()
            except sqlite3.OperationalError as e:
                message = str(e).lower()
                if not (cancel is not None and cancel.cancelled) and any(
                    marker in message for marker in _FTS_QUERY_ERRORS
                ):
                    raise QuerySyntaxError(f"invalid keyword query {query!r}: {e}") from e
                raise
            check(cancel)

        # FTS5 rank is negative (more negative = better); negate for a positive score
        return [
            SemanticMemory(
                id=row["id"],
                content=row["content"],
                score=-row["rank"],
                kind=ScoreKind.TEXT_RELEVANCE,
                created_at=_parse_timestamp(row["created_at"]),
            )
            for row in rows
        ]

    def hybrid_search(
        self,
        query: str,
        embedding: Sequence[float],
        top_k: int = 10,
        cancel: Optional[CancelToken] = None,
        vector_weight: float = 1.0,
        text_weight: float = 1.0,
    ) -> list[SemanticMemory]:
        """
        Hybrid search combining vector similarity and FTS5 keyword search.

        Both searches run with the same top_k and are merged with Reciprocal
        Rank Fusion. A failing keyword search (bad query syntax, database
        error) degrades the result to semantic-only instead of raising;
        cancellation still raises.

        Args:
            query: Text query for keyword search (non-empty)
            embedding: Query vector for similarity search (non-empty)
            top_k: Maximum number of results (positive)
            cancel: Optional cancellation token
            vector_weight: Weight for vector search ranks
            text_weight: Weight for keyword search ranks

        Returns:
            Up to top_k unique memories sorted by RRF score, with
            ``kind=ScoreKind.RRF``
        """
        _require_text(query, "query")
        _require_embedding(embedding)
        _require_top_k(top_k)

        vector_results = self.search(embedding, top_k, cancel=cancel)

        try:
            text_results = self.keyword_search(query, top_k, cancel=cancel)
        except StorageError as e:
            logger.debug(f"Keyword search failed, using vector only: {e}")
            text_results = []

        return reciprocal_rank_fusion(
            vector_results=vector_results,
            text_results=text_results,
            top_k=top_k,
            vector_weight=vector_weight,
            text_weight=text_weight,
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def count(self) -> int:
        """Get total number of memories."""
        with self._get_conn() as conn, _guard(conn, None):
            return conn.execute("SELECT COUNT(*) FROM memories").fetchone()[0]

    def verify_index(self) -> bool:
        """Check that every row has an index entry and every index entry a row."""
        with self._get_conn() as conn, _guard(conn, None):
            missing, orphaned = conn.execute("""
                SELECT
                    (SELECT COUNT(*) FROM memories m
                     WHERE NOT EXISTS (SELECT 1 FROM memories_fts f WHERE f.rowid = m.id)),
                    (SELECT COUNT(*) FROM memories_fts f
                     WHERE NOT EXISTS (SELECT 1 FROM memories m WHERE m.id = f.rowid))
            """).fetchone()
        if missing or orphaned:
            logger.warning(f"Text index out of sync: {missing} unindexed rows, {orphaned} orphaned entries")
            return False
        return True

    def get_stats(self) -> dict:
        """Get storage statistics."""
        with self._get_conn() as conn, _guard(conn, None):
            total = conn.execute("SELECT COUNT(*) FROM memories").fetchone()[0]
            indexed = conn.execute("SELECT COUNT(*) FROM memories_fts").fetchone()[0]

        return {
            "total_memories": total,
            "indexed": indexed,
            "in_sync": self.verify_index(),
            "db_path": str(self.db_path),
        }

    def close(self):
        """Close database connections."""
        with self._lock:
            self._closed = True
            if self._single_conn:
                self._single_conn.close()
                self._single_conn = None
            if self._pool:
                self._pool.close_all()
                self._pool = None
