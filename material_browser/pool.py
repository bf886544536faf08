"""Per-database DuckDB connection pools and the registry that owns them.

Logical database = one DuckDB file
==================================
- Databases directory = settings.duckdb_dir (e.g., /data/databases/)
- Database "catalog" = file /data/databases/catalog.duckdb

Each logical database gets exactly one ConnectionPool for the life of the process.
A pool holds one root DuckDB connection and lends out cursors (independent
connections to the same database instance), one thread at a time.
"""

import re
import threading
import time
from collections import deque
from concurrent.futures import Future
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Generator

import duckdb
import structlog

from material_browser import metrics
from material_browser.config import settings
from material_browser.exceptions import (
    ConnectionFailure,
    DatabaseNotFound,
    InvalidRequest,
    QueryFailure,
)

logger = structlog.get_logger()

DATABASE_FILE_SUFFIX = ".duckdb"
_DATABASE_NAME_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_\-]*$")


def validate_database_name(database_name: str) -> str:
    """Reject names that cannot map to a file inside the databases directory."""
    if not database_name or not _DATABASE_NAME_RE.match(database_name):
        raise InvalidRequest(
            f"Invalid database name: {database_name!r}",
            details={"database": database_name},
        )
    return database_name


@dataclass
class _PooledConnection:
    conn: duckdb.DuckDBPyConnection
    created_at: float
    last_used_at: float
    leased_at: float | None = None
    leased_by: str | None = None
    leak_reported: bool = False


class ConnectionPool:
    """
    Bounded pool of DuckDB connections to a single database file.

    Borrowing blocks up to connection_timeout seconds when max_size connections are
    lent out, then raises ConnectionFailure. Every borrowed connection is validated
    with validation_query; connections older than max_lifetime are retired on
    borrow and on return. Connections held longer than leak_detection_threshold
    are logged as leaks (they are not reclaimed).
    """

    def __init__(
        self,
        database_name: str,
        db_path: Path,
        *,
        max_size: int = 15,
        min_idle: int = 3,
        connection_timeout: float = 30.0,
        idle_timeout: float = 600.0,
        max_lifetime: float = 1800.0,
        leak_detection_threshold: float = 60.0,
        validation_query: str = "SELECT 1",
        read_only: bool = True,
        threads: int = 4,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")

        self.database_name = database_name
        self.db_path = db_path
        self.max_size = max_size
        self.min_idle = min(min_idle, max_size)
        self.connection_timeout = connection_timeout
        self.idle_timeout = idle_timeout
        self.max_lifetime = max_lifetime
        self.leak_detection_threshold = leak_detection_threshold
        self.validation_query = validation_query
        self._clock = clock

        if not db_path.exists():
            raise DatabaseNotFound(
                f"Database not found: {database_name}",
                details={"database": database_name},
            )

        try:
            self._root = duckdb.connect(
                str(db_path), read_only=read_only, config={"threads": threads}
            )
        except duckdb.Error as e:
            raise ConnectionFailure(
                f"Failed to open database {database_name}: {e}",
                details={"database": database_name},
            ) from e

        self._idle: deque[_PooledConnection] = deque()
        self._leased: dict[int, _PooledConnection] = {}
        self._lock = threading.Lock()  # Protects _idle, _leased and _closed
        self._slots = threading.BoundedSemaphore(max_size)
        self._closed = False
        self.created_at = clock()
        self.total_connections_created = 0

        for _ in range(self.min_idle):
            self._idle.append(self._new_connection())
        self._update_gauges()

    def _new_connection(self) -> _PooledConnection:
        try:
            conn = self._root.cursor()
        except duckdb.Error as e:
            raise ConnectionFailure(
                f"Failed to open connection to {self.database_name}: {e}",
                details={"database": self.database_name},
            ) from e
        now = self._clock()
        self.total_connections_created += 1
        return _PooledConnection(conn=conn, created_at=now, last_used_at=now)

    def _retire(self, pooled: _PooledConnection) -> None:
        try:
            pooled.conn.close()
        except duckdb.Error as e:
            logger.warning(
                "pool_connection_close_failed",
                database=self.database_name,
                error=str(e),
            )

    def _is_expired(self, pooled: _PooledConnection, now: float) -> bool:
        return now - pooled.created_at >= self.max_lifetime

    def _validate(self, pooled: _PooledConnection) -> bool:
        try:
            pooled.conn.execute(self.validation_query).fetchall()
            return True
        except duckdb.Error as e:
            logger.warning(
                "pool_connection_validation_failed",
                database=self.database_name,
                error=str(e),
            )
            return False

    def _update_gauges(self) -> None:
        metrics.POOL_CONNECTIONS_ACTIVE.labels(database=self.database_name).set(
            len(self._leased)
        )
        metrics.POOL_CONNECTIONS_IDLE.labels(database=self.database_name).set(
            len(self._idle)
        )

    def _borrow(self) -> _PooledConnection:
        wait_start = time.perf_counter()
        if not self._slots.acquire(timeout=self.connection_timeout):
            logger.error(
                "pool_acquire_timeout",
                database=self.database_name,
                timeout_seconds=self.connection_timeout,
                active=len(self._leased),
            )
            raise ConnectionFailure(
                f"Timed out after {self.connection_timeout}s waiting for a connection "
                f"to {self.database_name}",
                details={"database": self.database_name},
            )
        metrics.POOL_ACQUIRE_WAIT.observe(time.perf_counter() - wait_start)

        try:
            while True:
                with self._lock:
                    if self._closed:
                        raise ConnectionFailure(
                            f"Connection pool for {self.database_name} is closed",
                            details={"database": self.database_name},
                        )
                    pooled = self._idle.pop() if self._idle else None

                if pooled is None:
                    pooled = self._new_connection()
                    break
                if self._is_expired(pooled, self._clock()):
                    self._retire(pooled)
                    continue
                if self._validate(pooled):
                    break
                self._retire(pooled)
        except BaseException:
            self._slots.release()
            raise

        pooled.leased_at = self._clock()
        pooled.leased_by = threading.current_thread().name
        pooled.leak_reported = False
        with self._lock:
            self._leased[id(pooled)] = pooled
        self._update_gauges()
        return pooled

    def _release(self, pooled: _PooledConnection, broken: bool = False) -> None:
        now = self._clock()
        held = now - (pooled.leased_at or now)
        if held >= self.leak_detection_threshold and not pooled.leak_reported:
            metrics.POOL_LEAKS_DETECTED.labels(database=self.database_name).inc()
            logger.warning(
                "pool_connection_held_too_long",
                database=self.database_name,
                held_seconds=round(held, 3),
                thread=pooled.leased_by,
            )

        pooled.leased_at = None
        pooled.leased_by = None
        pooled.last_used_at = now

        retire = broken or self._is_expired(pooled, now)
        with self._lock:
            self._leased.pop(id(pooled), None)
            if self._closed:
                retire = True
            if not retire:
                self._idle.append(pooled)
        if retire:
            self._retire(pooled)

        self._slots.release()
        self._update_gauges()

    @contextmanager
    def connection(self) -> Generator[duckdb.DuckDBPyConnection, None, None]:
        """
        Borrow a connection for the duration of the block.

        Usage:
            with pool.connection() as conn:
                conn.execute("SELECT 1")
        """
        pooled = self._borrow()
        broken = False
        try:
            yield pooled.conn
        except duckdb.ConnectionException:
            broken = True
            raise
        except QueryFailure as e:
            broken = isinstance(e.__cause__, duckdb.ConnectionException)
            raise
        finally:
            self._release(pooled, broken=broken)

    def execute(
        self,
        query: str,
        params: list | None = None,
        operation: str = "query",
    ) -> list[dict[str, Any]]:
        """Execute a statement and return rows as ordered field maps."""
        start_time = time.perf_counter()
        with self.connection() as conn:
            try:
                if params:
                    result = conn.execute(query, params)
                else:
                    result = conn.execute(query)
                columns = [d[0] for d in result.description] if result.description else []
                rows = result.fetchall()
            except duckdb.Error as e:
                metrics.QUERY_COUNT.labels(operation=operation, status="error").inc()
                logger.warning(
                    "query_failed",
                    database=self.database_name,
                    operation=operation,
                    error=str(e),
                )
                raise QueryFailure(
                    f"Query failed on {self.database_name}: {e}",
                    details={"database": self.database_name, "operation": operation},
                ) from e
            finally:
                metrics.QUERY_DURATION.labels(operation=operation).observe(
                    time.perf_counter() - start_time
                )

        metrics.QUERY_COUNT.labels(operation=operation, status="success").inc()
        return [dict(zip(columns, row)) for row in rows]

    def execute_scalar(
        self,
        query: str,
        params: list | None = None,
        operation: str = "query",
    ) -> Any:
        """Execute a statement and return the first column of the first row (or None)."""
        rows = self.execute(query, params, operation=operation)
        if not rows:
            return None
        return next(iter(rows[0].values()), None)

    def maintain(self) -> int:
        """
        Retire idle connections past their idle timeout (above min_idle) or lifetime.

        Returns the number of retired connections.
        """
        now = self._clock()
        to_retire: list[_PooledConnection] = []
        with self._lock:
            if self._closed:
                return 0
            keep: deque[_PooledConnection] = deque()
            for pooled in self._idle:
                idle_for = now - pooled.last_used_at
                surplus = len(keep) >= self.min_idle
                if self._is_expired(pooled, now) or (surplus and idle_for >= self.idle_timeout):
                    to_retire.append(pooled)
                else:
                    keep.append(pooled)
            self._idle = keep

        for pooled in to_retire:
            self._retire(pooled)

        if to_retire:
            logger.debug(
                "pool_connections_retired",
                database=self.database_name,
                count=len(to_retire),
            )
        self._update_gauges()
        return len(to_retire)

    def detect_leaks(self) -> list[dict[str, Any]]:
        """Report connections currently held longer than the leak threshold."""
        now = self._clock()
        leaks = []
        with self._lock:
            leased = list(self._leased.values())

        for pooled in leased:
            if pooled.leased_at is None:
                continue
            held = now - pooled.leased_at
            if held < self.leak_detection_threshold:
                continue
            leaks.append({"thread": pooled.leased_by, "held_seconds": round(held, 3)})
            if not pooled.leak_reported:
                pooled.leak_reported = True
                metrics.POOL_LEAKS_DETECTED.labels(database=self.database_name).inc()
                logger.warning(
                    "pool_connection_leak_detected",
                    database=self.database_name,
                    held_seconds=round(held, 3),
                    thread=pooled.leased_by,
                )
        return leaks

    def close(self) -> None:
        """Close idle connections and the root connection. Leased ones close on return."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            idle = list(self._idle)
            self._idle.clear()

        for pooled in idle:
            self._retire(pooled)
        try:
            self._root.close()
        except duckdb.Error as e:
            logger.warning("pool_close_failed", database=self.database_name, error=str(e))

        self._update_gauges()
        logger.info("pool_closed", database=self.database_name)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def active_count(self) -> int:
        return len(self._leased)

    @property
    def idle_count(self) -> int:
        return len(self._idle)

    def stats(self) -> dict[str, Any]:
        return {
            "database": self.database_name,
            "max_size": self.max_size,
            "active": self.active_count,
            "idle": self.idle_count,
            "total_created": self.total_connections_created,
            "closed": self._closed,
        }


PoolFactory = Callable[[str], ConnectionPool]
EvictionPolicy = Callable[[ConnectionPool], bool]


class ConnectionPoolRegistry:
    """
    Lazily creates and memoizes one ConnectionPool per logical database name.

    Construction is single-flight per name: the first caller builds the pool while
    concurrent callers for the same name wait on the same Future. Builds for
    different names run in parallel. A failed build is forgotten so a later call
    can try again; the error propagates to every waiter.
    """

    def __init__(
        self,
        databases_dir: Path | None = None,
        pool_factory: PoolFactory | None = None,
        eviction_policy: EvictionPolicy | None = None,
    ):
        self._databases_dir = databases_dir
        self._pool_factory = pool_factory or self._build_pool
        self._eviction_policy = eviction_policy
        self._pools: dict[str, ConnectionPool] = {}
        self._in_flight: dict[str, Future] = {}
        self._lock = threading.Lock()  # Protects _pools and _in_flight

    @property
    def databases_dir(self) -> Path:
        """Databases directory (read from settings on each access to support testing)."""
        return self._databases_dir or settings.duckdb_dir

    def database_path(self, database_name: str) -> Path:
        validate_database_name(database_name)
        return self.databases_dir / f"{database_name}{DATABASE_FILE_SUFFIX}"

    def _build_pool(self, database_name: str) -> ConnectionPool:
        return ConnectionPool(
            database_name,
            self.database_path(database_name),
            max_size=settings.pool_max_size,
            min_idle=settings.pool_min_idle,
            connection_timeout=settings.pool_connection_timeout,
            idle_timeout=settings.pool_idle_timeout,
            max_lifetime=settings.pool_max_lifetime,
            leak_detection_threshold=settings.pool_leak_detection_threshold,
            validation_query=settings.pool_validation_query,
            read_only=settings.database_read_only,
            threads=settings.duckdb_threads,
        )

    def get_pool(self, database_name: str) -> ConnectionPool:
        """Return the pool for database_name, building it on first access."""
        pool = self._pools.get(database_name)
        if pool is not None:
            return pool

        validate_database_name(database_name)

        with self._lock:
            pool = self._pools.get(database_name)
            if pool is not None:
                return pool
            flight = self._in_flight.get(database_name)
            owner = flight is None
            if owner:
                flight = Future()
                self._in_flight[database_name] = flight

        if not owner:
            return flight.result()

        start_time = time.perf_counter()
        try:
            pool = self._pool_factory(database_name)
        except ConnectionFailure as e:
            self._abort_flight(database_name, flight, e)
            raise
        except Exception as e:
            error = ConnectionFailure(
                f"Failed to create connection pool for {database_name}: {e}",
                details={"database": database_name},
            )
            self._abort_flight(database_name, flight, error)
            raise error from e
        except BaseException as e:
            # Interrupted; waiters still need an outcome and the name must stay retryable
            self._abort_flight(
                database_name,
                flight,
                ConnectionFailure(
                    f"Pool creation for {database_name} was interrupted: {e!r}",
                    details={"database": database_name},
                ),
            )
            raise

        with self._lock:
            self._pools[database_name] = pool
            self._in_flight.pop(database_name, None)
            metrics.POOLS_TOTAL.set(len(self._pools))
        flight.set_result(pool)

        metrics.POOL_CREATIONS.labels(status="success").inc()
        logger.info(
            "pool_created",
            database=database_name,
            duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
        )
        return pool

    def _abort_flight(
        self, database_name: str, flight: Future, error: ConnectionFailure
    ) -> None:
        with self._lock:
            self._in_flight.pop(database_name, None)
        metrics.POOL_CREATIONS.labels(status="error").inc()
        logger.error("pool_create_failed", database=database_name, error=str(error))
        flight.set_exception(error)

    def list_databases(self) -> list[str]:
        """Discover user databases (database files minus system names), sorted."""
        databases_dir = self.databases_dir
        if not databases_dir.exists():
            raise ConnectionFailure(
                f"Databases directory not found: {databases_dir}",
                details={"path": str(databases_dir)},
            )

        system = {name.lower() for name in settings.system_databases}
        names = []
        for path in databases_dir.glob(f"*{DATABASE_FILE_SUFFIX}"):
            if not path.is_file():
                continue
            name = path.name[: -len(DATABASE_FILE_SUFFIX)]
            if name.lower() in system or not _DATABASE_NAME_RE.match(name):
                continue
            names.append(name)
        return sorted(names)

    def sweep(self) -> dict[str, int]:
        """
        Periodic housekeeping.

        Pools are evicted only when an eviction policy is configured (none by
        default). Each pool retires expired idle connections and reports leaks.
        """
        with self._lock:
            pools = list(self._pools.items())

        retired = 0
        leaks = 0
        evicted = 0
        for name, pool in pools:
            if self._eviction_policy is not None and self._eviction_policy(pool):
                with self._lock:
                    if self._pools.get(name) is pool:
                        del self._pools[name]
                        metrics.POOLS_TOTAL.set(len(self._pools))
                pool.close()
                evicted += 1
                logger.info("pool_evicted", database=name)
                continue
            retired += pool.maintain()
            leaks += len(pool.detect_leaks())

        report = {"pools": len(pools), "retired": retired, "leaks": leaks, "evicted": evicted}
        logger.debug("pool_sweep_completed", **report)
        return report

    def has_pool(self, database_name: str) -> bool:
        return database_name in self._pools

    @property
    def pool_names(self) -> list[str]:
        return sorted(self._pools)

    def stats(self) -> list[dict[str, Any]]:
        return [pool.stats() for pool in list(self._pools.values())]

    def close_all(self) -> None:
        """Close every pool (application shutdown)."""
        with self._lock:
            pools = list(self._pools.values())
            self._pools = {}
            metrics.POOLS_TOTAL.set(0)
        for pool in pools:
            pool.close()

    def __len__(self) -> int:
        return len(self._pools)
