"""Integration tests for the embedding cache and schema provisioning"""

import asyncio
import os
import sqlite3
import tempfile
import threading
from unittest.mock import patch

import pytest

from paper_rerank.errors import InvalidInputError, StoreUnavailableError
from paper_rerank.services.vector_store import VectorStore, hash_query, normalize_query
from tests.helpers import DIM, blend


class TestSchemaProvisioning:
    """Test once-only schema provisioning"""

    @pytest.fixture
    def temp_dir(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.mark.asyncio
    async def test_concurrent_ensure_schema_provisions_once(self, temp_dir, embedder):
        store = VectorStore(os.path.join(temp_dir, "cache.db"), embedder=embedder)

        with patch.object(store, "_create_tables", wraps=store._create_tables) as create:
            results = await asyncio.gather(
                *(store.ensure_schema() for _ in range(8)), return_exceptions=True
            )

        assert results == [None] * 8
        assert create.call_count == 1
        assert store.is_ready
        assert store.schema_error is None

    def test_concurrent_threads_provision_once(self, temp_dir):
        store = VectorStore(os.path.join(temp_dir, "cache.db"))
        outcomes = []

        with patch.object(store, "_create_tables", wraps=store._create_tables) as create:
            threads = [
                threading.Thread(target=lambda: outcomes.append(store.ensure_schema_sync()))
                for _ in range(5)
            ]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

        assert outcomes == [None] * 5
        assert create.call_count == 1

    def test_failure_is_sticky(self, temp_dir):
        """Test that every caller observes the first provisioning failure"""
        store = VectorStore(os.path.join(temp_dir, "cache.db"))

        with patch.object(
            store, "_create_tables", side_effect=sqlite3.OperationalError("disk I/O error")
        ) as create:
            with pytest.raises(StoreUnavailableError) as first:
                store.ensure_schema_sync()
            with pytest.raises(StoreUnavailableError) as second:
                store.ensure_schema_sync()

        assert create.call_count == 1
        assert first.value is second.value
        assert store.schema_error is first.value
        assert not store.is_ready

    def test_warm_restart_skips_ddl(self, temp_dir):
        db_path = os.path.join(temp_dir, "cache.db")
        VectorStore(db_path).ensure_schema_sync()

        restarted = VectorStore(db_path)
        with patch.object(restarted, "_create_tables") as create:
            restarted.ensure_schema_sync()

        create.assert_not_called()
        assert restarted.is_ready

    def test_interrupted_ddl_leaves_no_partial_schema(self, temp_dir):
        """Test that a failure late in the DDL rolls back every earlier statement"""
        db_path = os.path.join(temp_dir, "cache.db")
        interrupted = VectorStore(db_path)
        statements = interrupted._schema_statements() + [
            "CREATE INDEX idx_missing ON missing_table(item_id)"
        ]

        with patch.object(interrupted, "_schema_statements", return_value=statements):
            with pytest.raises(StoreUnavailableError):
                interrupted.ensure_schema_sync()

        with sqlite3.connect(db_path) as conn:
            tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master")}
        assert "result_embeddings" not in tables
        assert "query_embeddings" not in tables

        restarted = VectorStore(db_path)
        restarted.ensure_schema_sync()

        with sqlite3.connect(db_path) as conn:
            names = {row[0] for row in conn.execute("SELECT name FROM sqlite_master")}
        assert "idx_result_embeddings_item_id" in names
        assert restarted.is_ready

    def test_creates_parent_directory(self, temp_dir):
        db_path = os.path.join(temp_dir, "nested", "dir", "cache.db")

        VectorStore(db_path).ensure_schema_sync()

        assert os.path.exists(db_path)

    @pytest.mark.asyncio
    async def test_health_check_and_count(self, vector_store):
        assert await vector_store.health_check() is False

        await vector_store.ensure_schema()

        assert await vector_store.health_check() is True
        assert await vector_store.count_result_embeddings() == 0


class TestQueryCache:
    """Test cache-aside reads of query embeddings"""

    def test_normalized_hash_ignores_whitespace_differences(self):
        assert normalize_query("  graph   neural\nnetworks ") == "graph neural networks"
        assert hash_query(normalize_query("graph neural networks")) == hash_query(
            normalize_query(" graph  neural networks")
        )
        assert len(hash_query("x")) == 64

    @pytest.mark.asyncio
    async def test_second_lookup_is_cache_hit(self, vector_store, fake_model):
        first = await vector_store.get_or_compute_query_embedding("sparse attention")
        second = await vector_store.get_or_compute_query_embedding("  sparse   attention ")

        assert len(first) == DIM
        assert second == pytest.approx(first, abs=1e-6)
        assert fake_model.calls == [["sparse attention"]]

    @pytest.mark.asyncio
    async def test_empty_query_rejected(self, vector_store, fake_model):
        with pytest.raises(InvalidInputError):
            await vector_store.get_or_compute_query_embedding("   ")

        assert fake_model.calls == []

    @pytest.mark.asyncio
    async def test_other_model_version_is_a_miss(self, vector_store, fake_model):
        await vector_store.get_or_compute_query_embedding("protein folding")

        vector_store.model_version = "next-model"
        await vector_store.get_or_compute_query_embedding("protein folding")
        await vector_store.get_or_compute_query_embedding("protein folding")

        # One computation per model version
        assert len(fake_model.calls) == 2

    @pytest.mark.asyncio
    async def test_nearest_queries(self, vector_store, fake_model):
        fake_model.vectors["cats"] = blend({0: 1.0})
        fake_model.vectors["dogs"] = blend({1: 1.0})
        await vector_store.get_or_compute_query_embedding("cats")
        await vector_store.get_or_compute_query_embedding("dogs")

        neighbours = await vector_store.nearest_queries(blend({0: 0.8, 1: 0.6}), k=2)

        assert [key for key, _ in neighbours] == [
            hash_query("cats"),
            hash_query("dogs"),
        ]


class TestResultCache:
    """Test cache-aside reads of result embeddings"""

    @pytest.mark.asyncio
    async def test_second_call_is_cache_hit(self, vector_store, fake_model):
        first = await vector_store.get_or_compute_result_embedding("2401.00001", "Title. Summary")
        second = await vector_store.get_or_compute_result_embedding("2401.00001", "Title. Summary")

        assert second == pytest.approx(first, abs=1e-6)
        assert len(fake_model.calls) == 1

    @pytest.mark.asyncio
    async def test_cached_item_needs_no_text(self, vector_store, fake_model):
        await vector_store.get_or_compute_result_embedding("2401.00001", "Title. Summary")

        vector = await vector_store.get_or_compute_result_embedding("2401.00001", "")

        assert len(vector) == DIM
        assert len(fake_model.calls) == 1

    @pytest.mark.asyncio
    async def test_uncached_item_without_text(self, vector_store):
        with pytest.raises(InvalidInputError, match="no text"):
            await vector_store.get_or_compute_result_embedding("2401.99999", "  ")

    @pytest.mark.asyncio
    async def test_batch_lookup_computes_only_misses(self, vector_store, fake_model):
        await vector_store.get_or_compute_result_embeddings([("a", "text a")])

        vectors = await vector_store.get_or_compute_result_embeddings(
            [("a", "text a"), ("b", "text b"), ("c", "text c")]
        )

        assert set(vectors) == {"a", "b", "c"}
        assert fake_model.calls == [["text a"], ["text b", "text c"]]

    @pytest.mark.asyncio
    async def test_misses_are_split_into_remote_batches(self, vector_store, fake_model):
        items = [(f"item-{i}", f"text {i}") for i in range(70)]

        vectors = await vector_store.get_or_compute_result_embeddings(items)

        assert len(vectors) == 70
        assert sorted(len(call) for call in fake_model.calls) == [6, 32, 32]
        assert await vector_store.count_result_embeddings() == 70

    @pytest.mark.asyncio
    async def test_upsert_never_duplicates(self, vector_store):
        await vector_store.get_or_compute_result_embedding("dup", "some text")

        # Concurrent recomputation under another model version overwrites in place
        vector_store.model_version = "next-model"
        await asyncio.gather(
            vector_store.get_or_compute_result_embedding("dup", "some text"),
            vector_store.get_or_compute_result_embedding("dup", "some text"),
        )

        assert await vector_store.count_result_embeddings() == 1

    @pytest.mark.asyncio
    async def test_nearest_neighbors(self, vector_store, fake_model):
        fake_model.vectors["near"] = blend({0: 0.9, 1: 0.43588989})
        fake_model.vectors["far"] = blend({1: 1.0})
        fake_model.vectors["middle"] = blend({0: 0.6, 1: 0.8})
        await vector_store.get_or_compute_result_embeddings(
            [("far", "far"), ("near", "near"), ("middle", "middle")]
        )

        neighbours = await vector_store.nearest_neighbors(blend({0: 1.0}), k=2)

        assert [item_id for item_id, _ in neighbours] == ["near", "middle"]
        assert neighbours[0][1] == pytest.approx(0.9, abs=1e-4)
        assert neighbours[1][1] == pytest.approx(0.6, abs=1e-4)

    @pytest.mark.asyncio
    async def test_nearest_neighbors_rejects_wrong_dimension(self, vector_store):
        with pytest.raises(InvalidInputError, match="dimension"):
            await vector_store.nearest_neighbors([1.0, 0.0], k=5)


class TestDegradedCache:
    """Test that cache failures never fail a request"""

    @pytest.mark.asyncio
    async def test_provisioning_failure_computes_without_cache(self, vector_store, fake_model):
        with patch.object(
            vector_store, "_create_tables", side_effect=sqlite3.OperationalError("no vec0")
        ):
            first = await vector_store.get_or_compute_query_embedding("quantum error correction")
            second = await vector_store.get_or_compute_query_embedding("quantum error correction")

        assert len(first) == DIM
        assert second == first
        # Nothing could be cached, so both calls reached the model
        assert len(fake_model.calls) == 2

    @pytest.mark.asyncio
    async def test_write_failure_still_returns_vector(self, vector_store, fake_model):
        with patch.object(
            vector_store, "_put_result_entries", side_effect=sqlite3.OperationalError("locked")
        ):
            vector = await vector_store.get_or_compute_result_embedding("x", "some text")

        assert len(vector) == DIM

    @pytest.mark.asyncio
    async def test_read_failure_falls_back_to_compute(self, vector_store, fake_model):
        with patch.object(
            vector_store, "_get_query_entry", side_effect=sqlite3.DatabaseError("corrupt")
        ):
            vector = await vector_store.get_or_compute_query_embedding("robotics")

        assert len(vector) == DIM
        assert len(fake_model.calls) == 1

    @pytest.mark.asyncio
    async def test_disabled_cache_never_provisions(self, vector_store, fake_model):
        vector_store.cache_enabled = False

        await vector_store.get_or_compute_query_embedding("robotics")
        await vector_store.get_or_compute_query_embedding("robotics")

        assert not vector_store.is_ready
        assert len(fake_model.calls) == 2

    @pytest.mark.asyncio
    async def test_similarity_search_surfaces_provisioning_failure(self, vector_store):
        with patch.object(
            vector_store, "_create_tables", side_effect=sqlite3.OperationalError("no vec0")
        ):
            with pytest.raises(StoreUnavailableError):
                await vector_store.nearest_neighbors(blend({0: 1.0}))
