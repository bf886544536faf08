"""Tests for ConnectionPool and ConnectionPoolRegistry."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import FakeClock, create_database
from material_browser.exceptions import (
    ConnectionFailure,
    DatabaseNotFound,
    InvalidRequest,
    QueryFailure,
)
from material_browser.pool import (
    ConnectionPool,
    ConnectionPoolRegistry,
    validate_database_name,
)


class StubPool:
    """Stand-in returned by custom pool factories."""

    def __init__(self, name: str):
        self.database_name = name
        self.closed = False

    def close(self):
        self.closed = True

    def maintain(self):
        return 0

    def detect_leaks(self):
        return []


class TestValidateDatabaseName:
    """Tests for database name validation."""

    @pytest.mark.parametrize("name", ["catalog", "sales_2024", "my-db", "_private"])
    def test_valid_names(self, name):
        assert validate_database_name(name) == name

    @pytest.mark.parametrize("name", ["", "../etc", "a/b", "-lead", "db name", "db.duckdb"])
    def test_invalid_names(self, name):
        with pytest.raises(InvalidRequest):
            validate_database_name(name)


class TestConnectionPool:
    """Tests for a single database pool."""

    def test_missing_file_raises_not_found(self, temp_data_dir):
        """Test that a pool cannot be built for a missing database file."""
        with pytest.raises(DatabaseNotFound):
            ConnectionPool("ghost", temp_data_dir["duckdb_dir"] / "ghost.duckdb")

    def test_prefills_min_idle(self, catalog_db):
        """Test that min_idle connections are opened up front."""
        pool = ConnectionPool("catalog", catalog_db, min_idle=2, max_size=4)
        try:
            assert pool.idle_count == 2
            assert pool.active_count == 0
        finally:
            pool.close()

    def test_execute_returns_ordered_field_maps(self, catalog_db):
        """Test that rows come back as dicts in column order."""
        pool = ConnectionPool("catalog", catalog_db, min_idle=1)
        try:
            rows = pool.execute("SELECT id, name FROM items ORDER BY id")

            assert len(rows) == 5
            assert rows[0] == {"id": 1, "name": "Lamp"}
            assert list(rows[0].keys()) == ["id", "name"]
            assert pool.active_count == 0
        finally:
            pool.close()

    def test_execute_with_params(self, catalog_db):
        pool = ConnectionPool("catalog", catalog_db, min_idle=1)
        try:
            assert pool.execute_scalar("SELECT name FROM items WHERE id = ?", [3]) == "Desk, oak"
            assert pool.execute_scalar("SELECT name FROM items WHERE id = ?", [99]) is None
        finally:
            pool.close()

    def test_query_failure_releases_connection(self, catalog_db):
        """Test that a failing statement raises QueryFailure and returns the connection."""
        pool = ConnectionPool("catalog", catalog_db, min_idle=1)
        try:
            with pytest.raises(QueryFailure):
                pool.execute("SELECT * FROM no_such_table")

            assert pool.active_count == 0
            assert pool.execute_scalar("SELECT 1") == 1
        finally:
            pool.close()

    def test_acquire_timeout(self, catalog_db):
        """Test that borrowing from an exhausted pool fails after the timeout."""
        pool = ConnectionPool(
            "catalog", catalog_db, max_size=1, min_idle=0, connection_timeout=0.05
        )
        try:
            with pool.connection():
                start = time.perf_counter()
                with pytest.raises(ConnectionFailure):
                    pool.execute("SELECT 1")
                assert time.perf_counter() - start >= 0.04

            assert pool.execute_scalar("SELECT 1") == 1
        finally:
            pool.close()

    def test_maintain_retires_expired_connections(self, catalog_db):
        """Test that idle connections past max_lifetime are closed by maintain()."""
        clock = FakeClock()
        pool = ConnectionPool(
            "catalog", catalog_db, min_idle=2, max_lifetime=100, clock=clock
        )
        try:
            assert pool.maintain() == 0
            clock.advance(100)

            assert pool.maintain() == 2
            assert pool.idle_count == 0
            assert pool.execute_scalar("SELECT 1") == 1
        finally:
            pool.close()

    def test_maintain_keeps_min_idle(self, catalog_db):
        """Test that idle timeout only retires connections above min_idle."""
        clock = FakeClock()
        pool = ConnectionPool(
            "catalog", catalog_db, min_idle=1, max_size=4, idle_timeout=10, clock=clock
        )
        try:
            with pool.connection(), pool.connection(), pool.connection():
                pass
            assert pool.idle_count == 3

            clock.advance(11)
            assert pool.maintain() == 2
            assert pool.idle_count == 1
        finally:
            pool.close()

    def test_detect_leaks(self, catalog_db):
        """Test that connections held past the threshold are reported once."""
        clock = FakeClock()
        pool = ConnectionPool(
            "catalog", catalog_db, min_idle=1, leak_detection_threshold=5, clock=clock
        )
        try:
            with pool.connection():
                assert pool.detect_leaks() == []
                clock.advance(10)
                leaks = pool.detect_leaks()

            assert len(leaks) == 1
            assert leaks[0]["held_seconds"] == 10
            assert pool.detect_leaks() == []
        finally:
            pool.close()

    def test_closed_pool_refuses_borrow(self, catalog_db):
        pool = ConnectionPool("catalog", catalog_db, min_idle=1)
        pool.close()

        assert pool.closed
        with pytest.raises(ConnectionFailure):
            pool.execute("SELECT 1")


class TestConnectionPoolRegistry:
    """Tests for lazy per-database pool creation."""

    def test_get_pool_memoizes(self, catalog_db):
        """Test that the same pool instance is returned for the same name."""
        registry = ConnectionPoolRegistry()
        try:
            pool1 = registry.get_pool("catalog")
            pool2 = registry.get_pool("catalog")

            assert pool1 is pool2
            assert len(registry) == 1
            assert registry.pool_names == ["catalog"]
        finally:
            registry.close_all()

    def test_concurrent_first_access_builds_once(self, temp_data_dir):
        """Test that concurrent first callers observe exactly one construction."""
        built = []
        barrier = threading.Barrier(8)

        def factory(name):
            built.append(name)
            time.sleep(0.1)
            return StubPool(name)

        registry = ConnectionPoolRegistry(pool_factory=factory)

        def worker(_):
            barrier.wait()
            return registry.get_pool("catalog")

        with ThreadPoolExecutor(max_workers=8) as executor:
            results = list(executor.map(worker, range(8)))

        assert built == ["catalog"]
        assert all(result is results[0] for result in results)

    def test_different_names_build_separately(self, temp_data_dir):
        registry = ConnectionPoolRegistry(pool_factory=StubPool)

        assert registry.get_pool("a") is not registry.get_pool("b")
        assert registry.pool_names == ["a", "b"]

    def test_failed_build_is_forgotten(self, temp_data_dir):
        """Test that a failed construction surfaces ConnectionFailure and can be retried."""
        attempts = []

        def factory(name):
            attempts.append(name)
            if len(attempts) == 1:
                raise RuntimeError("disk unavailable")
            return StubPool(name)

        registry = ConnectionPoolRegistry(pool_factory=factory)

        with pytest.raises(ConnectionFailure) as exc_info:
            registry.get_pool("catalog")
        assert "disk unavailable" in exc_info.value.message
        assert not registry.has_pool("catalog")

        pool = registry.get_pool("catalog")
        assert isinstance(pool, StubPool)
        assert len(attempts) == 2

    def test_interrupted_build_is_forgotten(self, temp_data_dir):
        """Test that a build interrupted by a BaseException leaves no stuck entry."""
        attempts = []

        def factory(name):
            attempts.append(name)
            if len(attempts) == 1:
                raise KeyboardInterrupt
            return StubPool(name)

        registry = ConnectionPoolRegistry(pool_factory=factory)

        with pytest.raises(KeyboardInterrupt):
            registry.get_pool("catalog")
        assert not registry.has_pool("catalog")

        with ThreadPoolExecutor(max_workers=1) as executor:
            pool = executor.submit(registry.get_pool, "catalog").result(timeout=5)
        assert isinstance(pool, StubPool)
        assert len(attempts) == 2

    def test_missing_database(self, temp_data_dir):
        """Test that an unknown database raises DatabaseNotFound without retry."""
        registry = ConnectionPoolRegistry()

        with pytest.raises(DatabaseNotFound):
            registry.get_pool("missing")
        assert len(registry) == 0

    def test_invalid_name_rejected_before_build(self, temp_data_dir):
        built = []
        registry = ConnectionPoolRegistry(pool_factory=lambda name: built.append(name))

        with pytest.raises(InvalidRequest):
            registry.get_pool("../secrets")
        assert built == []

    def test_list_databases_filters_system_names(self, temp_data_dir):
        """Test that discovery skips system databases and non-database files."""
        duckdb_dir = temp_data_dir["duckdb_dir"]
        for name in ["catalog", "inventory", "sys", "information_schema"]:
            create_database(duckdb_dir, name, ["CREATE TABLE t (x INTEGER)"])
        (duckdb_dir / "readme.txt").write_text("not a database")

        registry = ConnectionPoolRegistry()

        assert registry.list_databases() == ["catalog", "inventory"]

    def test_list_databases_missing_directory(self, missing_data_dir):
        registry = ConnectionPoolRegistry()

        with pytest.raises(ConnectionFailure):
            registry.list_databases()

    def test_sweep_never_evicts_by_default(self, catalog_db):
        """Test that the default sweep keeps every pool."""
        registry = ConnectionPoolRegistry()
        try:
            pool = registry.get_pool("catalog")
            report = registry.sweep()

            assert report["pools"] == 1
            assert report["evicted"] == 0
            assert registry.get_pool("catalog") is pool
        finally:
            registry.close_all()

    def test_sweep_with_eviction_policy(self, temp_data_dir):
        registry = ConnectionPoolRegistry(
            pool_factory=StubPool, eviction_policy=lambda pool: True
        )
        pool = registry.get_pool("catalog")

        report = registry.sweep()

        assert report["evicted"] == 1
        assert pool.closed
        assert not registry.has_pool("catalog")

    def test_close_all(self, temp_data_dir):
        registry = ConnectionPoolRegistry(pool_factory=StubPool)
        pools = [registry.get_pool("a"), registry.get_pool("b")]

        registry.close_all()

        assert all(pool.closed for pool in pools)
        assert len(registry) == 0
