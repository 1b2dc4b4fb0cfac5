"""SQLite embedding cache with sqlite_vec nearest-neighbour indexes"""

import asyncio
import hashlib
import logging
import sqlite3
import struct
import threading
import unicodedata
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import sqlite_vec

from paper_rerank.config import config
from paper_rerank.errors import InvalidInputError, StoreUnavailableError
from paper_rerank.models.embedding import QueryEmbeddingEntry, ResultEmbeddingEntry
from paper_rerank.services.embedder import Embedder

logger = logging.getLogger(__name__)

# Table probed on startup to skip DDL on warm restarts; created last
SCHEMA_PROBE_TABLE = "result_embeddings"
MAX_NEIGHBORS = 200
# Keeps IN (...) lists below SQLite's host parameter limit
LOOKUP_CHUNK_SIZE = 500


def normalize_query(text: str) -> str:
    """Collapse whitespace and apply NFC so equivalent queries share a cache key"""
    return unicodedata.normalize("NFC", " ".join(text.split()))


def hash_query(normalized: str) -> str:
    """Content-addressed key for a normalized query"""
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def serialize_vector(vector: list[float]) -> bytes:
    return struct.pack(f"<{len(vector)}f", *vector)


def deserialize_vector(blob: bytes) -> list[float]:
    return list(struct.unpack(f"<{len(blob) // 4}f", blob))


class VectorStore:
    """Query and result embedding caches backed by SQLite + sqlite_vec"""

    def __init__(self, db_path: str | None = None, embedder: Embedder | None = None):
        """
        Args:
            db_path: SQLite database path (":memory:" keeps one shared connection)
            embedder: Embedding service used to fill cache misses
        """
        self.db_path = db_path or config.db_path
        self.embedder = embedder
        self.dimension = config.embedding_dimension
        self.model_version = embedder.model_version if embedder else config.embedding_model
        self.cache_enabled = config.vector_db_enabled

        # For :memory: databases, we need to keep a persistent connection
        # because each connection gets a separate in-memory database
        self._memory_conn: sqlite3.Connection | None = None
        self._memory_lock = threading.RLock()

        # Schema provisioning runs at most once per instance
        self._schema_lock = threading.Lock()
        self._schema_done = False
        self._schema_error: StoreUnavailableError | None = None

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def _open_connection(self, check_same_thread: bool = True) -> sqlite3.Connection:
        """
        Create and configure a new database connection

        Returns:
            Configured sqlite3.Connection with row_factory and sqlite_vec loaded
        """
        conn = sqlite3.connect(self.db_path, timeout=10.0, check_same_thread=check_same_thread)
        conn.row_factory = sqlite3.Row

        try:
            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
        except (AttributeError, sqlite3.Error) as e:
            # sqlite_vec might be statically linked; provisioning verifies it is usable
            logger.warning(f"Could not load sqlite_vec extension: {e}")

        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """
        Yield a connection for one operation

        For :memory: databases, yields the persistent connection while holding its lock.
        For file databases, opens a new connection and closes it afterwards.
        """
        if self.db_path == ":memory:":
            with self._memory_lock:
                if self._memory_conn is None:
                    self._memory_conn = self._open_connection(check_same_thread=False)
                yield self._memory_conn
            return

        conn = self._open_connection()
        try:
            yield conn
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Schema provisioning
    # ------------------------------------------------------------------

    @property
    def is_ready(self) -> bool:
        """True once the schema has been provisioned successfully"""
        return self._schema_done and self._schema_error is None

    @property
    def schema_error(self) -> StoreUnavailableError | None:
        """The sticky provisioning failure, if provisioning failed"""
        return self._schema_error

    def ensure_schema_sync(self) -> None:
        """
        Provision the schema exactly once

        The first caller does the work while later callers block on the lock; all of
        them observe the same outcome. A failure is sticky for the lifetime of this
        instance.

        Raises:
            StoreUnavailableError: If provisioning failed (now or on the first attempt)
        """
        with self._schema_lock:
            if not self._schema_done:
                try:
                    self._provision_schema()
                    logger.info(f"Embedding cache schema ready: {self.db_path}")
                except (sqlite3.Error, OSError) as e:
                    logger.error(f"Schema provisioning failed: {e}")
                    self._schema_error = StoreUnavailableError(f"Schema provisioning failed: {e}")
                self._schema_done = True

        if self._schema_error is not None:
            raise self._schema_error

    async def ensure_schema(self) -> None:
        """Async form of ensure_schema_sync (runs the provisioning off the event loop)"""
        if self.is_ready:
            return
        await asyncio.to_thread(self.ensure_schema_sync)

    def _provision_schema(self) -> None:
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        with self._connection() as conn:
            if self._schema_exists(conn):
                logger.info("Embedding cache schema already present, skipping DDL")
                return
            self._create_tables(conn)

    def _schema_exists(self, conn: sqlite3.Connection) -> bool:
        """Cheap existence probe for warm restarts"""
        cursor = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ? LIMIT 1",
            (SCHEMA_PROBE_TABLE,),
        )
        return cursor.fetchone() is not None

    def _schema_statements(self) -> list[str]:
        dim = self.dimension
        return [
            # Fails if the vector extension is not available on this connection
            "SELECT vec_version()",
            """
            CREATE TABLE IF NOT EXISTS query_embeddings (
                query_hash TEXT PRIMARY KEY,
                query_text TEXT,
                embedding BLOB NOT NULL,
                model_version TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """,
            # vec0 cosine distance orders like inner product on unit-normalized vectors
            f"""
            CREATE VIRTUAL TABLE IF NOT EXISTS vec_query_embeddings USING vec0(
                query_hash text primary key,
                embedding float[{dim}] distance_metric=cosine
            )
            """,
            f"""
            CREATE VIRTUAL TABLE IF NOT EXISTS vec_result_embeddings USING vec0(
                item_id text primary key,
                embedding float[{dim}] distance_metric=cosine
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS result_embeddings (
                item_id TEXT PRIMARY KEY,
                embedding BLOB NOT NULL,
                model_version TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_result_embeddings_item_id
            ON result_embeddings(item_id)
            """,
        ]

    def _create_tables(self, conn: sqlite3.Connection) -> None:
        """
        Execute the full DDL sequence in one transaction

        The existence check only looks at result_embeddings, so a partial
        schema must never be committed.
        """
        logger.info("Provisioning embedding cache schema")
        conn.execute("BEGIN")
        for statement in self._schema_statements():
            try:
                conn.execute(statement)
            except sqlite3.Error:
                preview = " ".join(statement.split())[:100]
                logger.error(f"Failed to execute schema statement: {preview}")
                conn.rollback()
                raise
        conn.commit()

    async def _cache_available(self) -> bool:
        """
        Await readiness for cache operations, degrading instead of failing

        Returns:
            False when caching is disabled, provisioning failed, or the schema is
            still not ready after config.schema_wait_seconds
        """
        if not self.cache_enabled:
            return False
        if self.is_ready:
            return True
        if self._schema_done:
            logger.warning(f"Embedding cache unavailable, computing without cache: {self._schema_error}")
            return False

        try:
            await asyncio.wait_for(self.ensure_schema(), timeout=config.schema_wait_seconds)
        except StoreUnavailableError as e:
            logger.warning(f"Embedding cache unavailable, computing without cache: {e}")
            return False
        except TimeoutError:
            logger.warning(
                f"Embedding cache not ready after {config.schema_wait_seconds}s, "
                "computing without cache"
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Query embedding cache
    # ------------------------------------------------------------------

    def _get_query_entry(self, query_hash: str) -> QueryEmbeddingEntry | None:
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT query_hash, query_text, embedding, model_version, created_at
                FROM query_embeddings
                WHERE query_hash = ? AND model_version = ?
                """,
                (query_hash, self.model_version),
            ).fetchone()

        if not row or len(row["embedding"]) != 4 * self.dimension:
            return None

        return QueryEmbeddingEntry(
            query_hash=row["query_hash"],
            query_text=row["query_text"],
            embedding=deserialize_vector(row["embedding"]),
            model_version=row["model_version"],
            created_at=row["created_at"],
        )

    def _put_query_entry(self, entry: QueryEmbeddingEntry) -> None:
        blob = serialize_vector(entry.embedding)
        with self._connection() as conn:
            try:
                # Entries are never mutated, except to replace one from another model version
                cursor = conn.execute(
                    """
                    INSERT INTO query_embeddings (
                        query_hash, query_text, embedding, model_version, created_at
                    ) VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(query_hash) DO UPDATE SET
                        query_text = excluded.query_text,
                        embedding = excluded.embedding,
                        model_version = excluded.model_version,
                        created_at = excluded.created_at
                    WHERE query_embeddings.model_version != excluded.model_version
                    """,
                    (
                        entry.query_hash,
                        entry.query_text,
                        blob,
                        entry.model_version,
                        entry.created_at.isoformat(),
                    ),
                )
                if cursor.rowcount > 0:
                    conn.execute(
                        "DELETE FROM vec_query_embeddings WHERE query_hash = ?",
                        (entry.query_hash,),
                    )
                    conn.execute(
                        "INSERT INTO vec_query_embeddings (query_hash, embedding) VALUES (?, ?)",
                        (entry.query_hash, blob),
                    )
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise

    async def get_or_compute_query_embedding(
        self, text: str, timeout: float | None = None
    ) -> list[float]:
        """
        Cache-aside read of a query embedding

        Hashes the normalized text, returns the cached vector on a hit, otherwise
        computes it remotely and stores it. Cache failures are logged and never fail
        the call.

        Args:
            text: Query text
            timeout: Optional caller deadline for the remote call
        """
        normalized = normalize_query(text)
        if not normalized:
            raise InvalidInputError("Query is required")
        query_hash = hash_query(normalized)

        use_cache = await self._cache_available()
        if use_cache:
            try:
                entry = await asyncio.to_thread(self._get_query_entry, query_hash)
            except sqlite3.Error as e:
                logger.warning(f"Query embedding cache read failed: {e}")
                entry = None
            if entry is not None:
                logger.debug(f"Query embedding cache hit: {query_hash[:12]}")
                return entry.embedding

        embedding = await self._require_embedder().embed_text(normalized, timeout=timeout)

        if use_cache:
            try:
                await asyncio.to_thread(
                    self._put_query_entry,
                    QueryEmbeddingEntry(
                        query_hash=query_hash,
                        query_text=normalized,
                        embedding=embedding,
                        model_version=self.model_version,
                    ),
                )
            except sqlite3.Error as e:
                logger.warning(f"Query embedding cache write failed: {e}")

        return embedding

    # ------------------------------------------------------------------
    # Result embedding cache
    # ------------------------------------------------------------------

    def _get_result_entries(self, item_ids: list[str]) -> dict[str, ResultEmbeddingEntry]:
        entries: dict[str, ResultEmbeddingEntry] = {}
        if not item_ids:
            return entries

        with self._connection() as conn:
            for start in range(0, len(item_ids), LOOKUP_CHUNK_SIZE):
                chunk = item_ids[start : start + LOOKUP_CHUNK_SIZE]
                placeholders = ", ".join("?" for _ in chunk)
                cursor = conn.execute(
                    f"""
                    SELECT item_id, embedding, model_version, created_at
                    FROM result_embeddings
                    WHERE model_version = ? AND item_id IN ({placeholders})
                    """,
                    (self.model_version, *chunk),
                )
                for row in cursor.fetchall():
                    if len(row["embedding"]) != 4 * self.dimension:
                        continue
                    entries[row["item_id"]] = ResultEmbeddingEntry(
                        item_id=row["item_id"],
                        embedding=deserialize_vector(row["embedding"]),
                        model_version=row["model_version"],
                        created_at=row["created_at"],
                    )
        return entries

    def _put_result_entries(self, entries: list[ResultEmbeddingEntry]) -> None:
        """Upsert result embeddings; the last writer wins for a given item_id"""
        if not entries:
            return

        with self._connection() as conn:
            try:
                for entry in entries:
                    blob = serialize_vector(entry.embedding)
                    conn.execute(
                        """
                        INSERT INTO result_embeddings (
                            item_id, embedding, model_version, created_at
                        ) VALUES (?, ?, ?, ?)
                        ON CONFLICT(item_id) DO UPDATE SET
                            embedding = excluded.embedding,
                            model_version = excluded.model_version,
                            created_at = excluded.created_at
                        """,
                        (entry.item_id, blob, entry.model_version, entry.created_at.isoformat()),
                    )
                    # vec0 has no upsert
                    conn.execute(
                        "DELETE FROM vec_result_embeddings WHERE item_id = ?", (entry.item_id,)
                    )
                    conn.execute(
                        "INSERT INTO vec_result_embeddings (item_id, embedding) VALUES (?, ?)",
                        (entry.item_id, blob),
                    )
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise

    async def get_or_compute_result_embeddings(
        self, items: list[tuple[str, str]], timeout: float | None = None
    ) -> dict[str, list[float] | None]:
        """
        Cache-aside read of many result embeddings

        Looks every item up in one pass, computes the misses in remote batches of at
        most embedder.max_batch_size (concurrently), and upserts what was computed.

        Args:
            items: (item_id, text) pairs; text is only used on a cache miss
            timeout: Optional caller deadline for each remote call

        Returns:
            Mapping of item_id to vector; None for a miss that has no text to embed
        """
        texts: dict[str, str] = {}
        for item_id, text in items:
            if item_id not in texts or not texts[item_id]:
                texts[item_id] = (text or "").strip()
        item_ids = list(texts)
        resolved: dict[str, list[float] | None] = {}

        use_cache = await self._cache_available()
        if use_cache:
            try:
                cached = await asyncio.to_thread(self._get_result_entries, item_ids)
            except sqlite3.Error as e:
                logger.warning(f"Result embedding cache read failed: {e}")
                cached = {}
            for item_id, entry in cached.items():
                resolved[item_id] = entry.embedding

        missing = [item_id for item_id in item_ids if item_id not in resolved]
        to_compute = [item_id for item_id in missing if texts[item_id]]
        for item_id in missing:
            if not texts[item_id]:
                logger.debug(f"No cached embedding and no text for item {item_id}")
                resolved[item_id] = None

        if to_compute:
            logger.debug(
                f"Result embeddings: {len(item_ids) - len(missing)} cached, "
                f"{len(to_compute)} to compute"
            )
            computed = await self._compute_batches(to_compute, texts, timeout)
            resolved.update(computed)

            if use_cache:
                entries = [
                    ResultEmbeddingEntry(
                        item_id=item_id, embedding=vector, model_version=self.model_version
                    )
                    for item_id, vector in computed.items()
                ]
                try:
                    await asyncio.to_thread(self._put_result_entries, entries)
                except sqlite3.Error as e:
                    logger.warning(f"Result embedding cache write failed: {e}")

        return resolved

    async def _compute_batches(
        self, item_ids: list[str], texts: dict[str, str], timeout: float | None
    ) -> dict[str, list[float]]:
        embedder = self._require_embedder()
        batch_size = embedder.max_batch_size
        batches = [item_ids[i : i + batch_size] for i in range(0, len(item_ids), batch_size)]

        tasks = [
            asyncio.create_task(
                embedder.embed_batch([texts[item_id] for item_id in batch], timeout=timeout)
            )
            for batch in batches
        ]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            # Abort the remaining remote calls; partial results are never returned
            for task in tasks:
                task.cancel()
            raise

        computed: dict[str, list[float]] = {}
        for batch, vectors in zip(batches, results, strict=True):
            computed.update(zip(batch, vectors, strict=True))
        return computed

    async def get_or_compute_result_embedding(
        self, item_id: str, text_if_missing: str, timeout: float | None = None
    ) -> list[float]:
        """
        Cache-aside read of one result embedding, keyed by item_id

        Raises:
            InvalidInputError: If the item is not cached and no text was given
        """
        resolved = await self.get_or_compute_result_embeddings(
            [(item_id, text_if_missing)], timeout=timeout
        )
        vector = resolved.get(item_id)
        if vector is None:
            raise InvalidInputError(f"No cached embedding and no text for item {item_id}")
        return vector

    # ------------------------------------------------------------------
    # Similarity search
    # ------------------------------------------------------------------

    def _check_query_vector(self, vector: list[float]) -> None:
        if len(vector) != self.dimension:
            raise InvalidInputError(
                f"Query embedding dimension mismatch: expected {self.dimension}, got {len(vector)}"
            )

    def _knn(self, table: str, key: str, source: str, vector: list[float], k: int):
        with self._connection() as conn:
            # sqlite_vec requires k = ? in the WHERE clause instead of a LIMIT,
            # and the KNN scan must run before the join
            cursor = conn.execute(
                f"""
                WITH knn AS MATERIALIZED (
                    SELECT {key} AS key, distance
                    FROM {table}
                    WHERE embedding MATCH ? AND k = ?
                )
                SELECT knn.key AS key, knn.distance AS distance
                FROM knn
                INNER JOIN {source} s ON s.{key} = knn.key
                WHERE s.model_version = ?
                ORDER BY knn.distance
                """,
                (serialize_vector(vector), k, self.model_version),
            )
            # Cosine distance is in [0, 2]; 1 - distance is the similarity in [-1, 1]
            return [(row["key"], 1.0 - row["distance"]) for row in cursor.fetchall()]

    async def nearest_neighbors(
        self, vector: list[float], k: int | None = None
    ) -> list[tuple[str, float]]:
        """
        Find the k cached result vectors most similar to a query vector

        Args:
            vector: Query vector
            k: Number of neighbours (default config.nearest_neighbors_default_k, max 200)

        Returns:
            (item_id, score) pairs, most similar first

        Raises:
            StoreUnavailableError: If the store is not provisioned or the query failed
        """
        self._check_query_vector(vector)
        k = config.nearest_neighbors_default_k if k is None else k
        if k < 1:
            raise InvalidInputError(f"k must be at least 1, got {k}")
        k = min(k, MAX_NEIGHBORS)

        await self.ensure_schema()
        try:
            return await asyncio.to_thread(
                self._knn, "vec_result_embeddings", "item_id", "result_embeddings", vector, k
            )
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Similarity search failed: {e}") from e

    async def nearest_queries(
        self, vector: list[float], k: int | None = None
    ) -> list[tuple[str, float]]:
        """Find cached queries similar to a vector, as (query_hash, score) pairs"""
        self._check_query_vector(vector)
        k = min(config.nearest_neighbors_default_k if k is None else max(k, 1), MAX_NEIGHBORS)

        await self.ensure_schema()
        try:
            return await asyncio.to_thread(
                self._knn, "vec_query_embeddings", "query_hash", "query_embeddings", vector, k
            )
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Similarity search failed: {e}") from e

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def _require_embedder(self) -> Embedder:
        if self.embedder is None:
            raise RuntimeError("VectorStore was created without an embedder")
        return self.embedder

    async def health_check(self) -> bool:
        """Check if the cache tables are present and readable"""

        def _probe() -> bool:
            with self._connection() as conn:
                conn.execute("SELECT COUNT(*) FROM result_embeddings").fetchone()
            return True

        try:
            return await asyncio.to_thread(_probe)
        except sqlite3.Error:
            return False

    async def count_result_embeddings(self) -> int:
        """Get total number of cached result embeddings"""

        def _count() -> int:
            with self._connection() as conn:
                result = conn.execute("SELECT COUNT(*) FROM result_embeddings").fetchone()
            return result[0] if result else 0

        return await asyncio.to_thread(_count)

    def close(self) -> None:
        """
        Close database connection

        For :memory: databases, closes the persistent connection.
        For file databases, this is a no-op (connections are per-operation).
        """
        with self._memory_lock:
            if self._memory_conn is not None:
                self._memory_conn.close()
                self._memory_conn = None