"""Cached schema, column structure and row-count metadata per database table.

Three independent TTL caches:
- tables:    database -> list[TableSchema]             (settings.schema_cache_ttl, 10 min)
- structure: (database, table) -> TableStructure       (settings.structure_cache_ttl, 30 min)
- counts:    (database, table) -> RowCountEntry        (settings.count_cache_ttl, 2 min)

Row counts prefer DuckDB's storage statistics (duckdb_tables().estimated_size). A
positive estimate is accepted as-is, so totals are informational: they can lag
behind the table after writes. Only a missing or zero estimate triggers COUNT(*).
"""

import time
from dataclasses import dataclass, field
from typing import Callable

import structlog

from material_browser.cache import TTLCache
from material_browser.config import settings
from material_browser.exceptions import MetadataUnavailable, QueryFailure
from material_browser.pool import ConnectionPool, ConnectionPoolRegistry

logger = structlog.get_logger()


def quote_identifier(name: str) -> str:
    """Quote a table or column name for DuckDB."""
    return '"' + name.replace('"', '""') + '"'


@dataclass(frozen=True)
class ColumnSchema:
    name: str
    type: str
    nullable: bool = True
    key: str | None = None
    default: str | None = None
    extra: str | None = None


@dataclass(frozen=True)
class TableSchema:
    """Table name, ordered column descriptions and the row count shown in listings."""

    name: str
    columns: tuple[ColumnSchema, ...] = ()
    row_count: int = 0
    row_count_approximate: bool = False
    available: bool = True  # False for placeholders built after a metadata failure

    @property
    def column_count(self) -> int:
        return len(self.columns)


@dataclass(frozen=True)
class TableStructure:
    """Ordered column names and declared primary key of a table."""

    table: str
    columns: tuple[str, ...] = ()
    primary_key: tuple[str, ...] = ()
    available: bool = True

    @property
    def ordering_key(self) -> str | None:
        """Single-column primary key usable for seek pagination, if declared."""
        if len(self.primary_key) == 1:
            return self.primary_key[0]
        return None


@dataclass(frozen=True)
class RowCountEntry:
    table: str
    count: int
    approximate: bool = False
    available: bool = True


@dataclass(frozen=True)
class DatabaseStatistics:
    database: str
    table_count: int = 0
    total_rows: int = 0
    available: bool = True
    tables: tuple[str, ...] = field(default_factory=tuple)


class MetadataCache:
    """Get-or-compute access to table metadata, backed by per-database pools."""

    def __init__(
        self,
        registry: ConnectionPoolRegistry,
        schema_ttl: float | None = None,
        structure_ttl: float | None = None,
        count_ttl: float | None = None,
        approximate_counts: bool | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._registry = registry
        self.tables: TTLCache[str, list[TableSchema]] = TTLCache(
            "tables", schema_ttl or settings.schema_cache_ttl, clock=clock
        )
        self.structure: TTLCache[tuple[str, str], TableStructure] = TTLCache(
            "structure", structure_ttl or settings.structure_cache_ttl, clock=clock
        )
        self.counts: TTLCache[tuple[str, str], RowCountEntry] = TTLCache(
            "counts", count_ttl or settings.count_cache_ttl, clock=clock
        )
        self.approximate_counts = (
            settings.approximate_counts if approximate_counts is None else approximate_counts
        )

    # ========================================
    # Table list + schema
    # ========================================

    def get_tables(self, database: str) -> list[TableSchema]:
        """Return every table of a database with its columns and row count."""
        return self.tables.get_or_compute(database, lambda: self._load_tables(database))

    def _load_tables(self, database: str) -> list[TableSchema]:
        pool = self._registry.get_pool(database)
        names = [
            row["name"]
            for row in pool.execute("SHOW TABLES", operation="show_tables")
        ]

        tables = []
        for name in names:
            tables.append(self._load_table_schema(pool, database, name))

        logger.info("tables_loaded", database=database, table_count=len(tables))
        return tables

    def _load_table_schema(
        self, pool: ConnectionPool, database: str, table: str
    ) -> TableSchema:
        try:
            columns = self._describe(pool, table)
        except MetadataUnavailable as e:
            logger.warning(
                "metadata_unavailable",
                database=database,
                table=table,
                kind="schema",
                error=e.message,
            )
            return TableSchema(name=table, available=False)

        count = self.get_row_count(database, table)
        return TableSchema(
            name=table,
            columns=tuple(columns),
            row_count=count.count,
            row_count_approximate=count.approximate,
            available=count.available,
        )

    def _describe(self, pool: ConnectionPool, table: str) -> list[ColumnSchema]:
        try:
            rows = pool.execute(f"DESCRIBE {quote_identifier(table)}", operation="describe")
        except QueryFailure as e:
            raise MetadataUnavailable(e.message, details={"table": table}) from e

        return [
            ColumnSchema(
                name=row["column_name"],
                type=str(row["column_type"]),
                nullable=row.get("null") == "YES",
                key=row.get("key"),
                default=None if row.get("default") is None else str(row.get("default")),
                extra=None if row.get("extra") is None else str(row.get("extra")),
            )
            for row in rows
        ]

    # ========================================
    # Column structure
    # ========================================

    def get_structure(self, database: str, table: str) -> TableStructure:
        """
        Return the ordered column names and primary key of a table.

        A failed lookup yields an empty, uncached placeholder (available=False).
        """
        key = (database, table)
        try:
            return self.structure.get_or_compute(
                key, lambda: self._load_structure(database, table)
            )
        except MetadataUnavailable as e:
            logger.warning(
                "metadata_unavailable",
                database=database,
                table=table,
                kind="structure",
                error=e.message,
            )
            return TableStructure(table=table, available=False)

    def get_columns(self, database: str, table: str) -> list[str]:
        return list(self.get_structure(database, table).columns)

    def _load_structure(self, database: str, table: str) -> TableStructure:
        pool = self._registry.get_pool(database)
        columns = self._describe(pool, table)

        try:
            rows = pool.execute(
                """
                SELECT constraint_column_names
                FROM duckdb_constraints()
                WHERE database_name = current_database()
                  AND schema_name = 'main'
                  AND table_name = ?
                  AND constraint_type = 'PRIMARY KEY'
                """,
                [table],
                operation="primary_key",
            )
        except QueryFailure as e:
            raise MetadataUnavailable(e.message, details={"table": table}) from e

        primary_key: tuple[str, ...] = ()
        if rows and rows[0]["constraint_column_names"]:
            primary_key = tuple(rows[0]["constraint_column_names"])

        logger.debug(
            "structure_loaded",
            database=database,
            table=table,
            column_count=len(columns),
            primary_key=list(primary_key),
        )
        return TableStructure(
            table=table,
            columns=tuple(col.name for col in columns),
            primary_key=primary_key,
        )

    # ========================================
    # Row counts
    # ========================================

    def get_row_count(self, database: str, table: str) -> RowCountEntry:
        """
        Return the row count of a table.

        Uses the storage statistics estimate when positive, else an exact COUNT(*).
        A failed count yields an uncached zero placeholder (available=False).
        """
        key = (database, table)
        try:
            return self.counts.get_or_compute(
                key, lambda: self._load_row_count(database, table)
            )
        except MetadataUnavailable as e:
            logger.warning(
                "metadata_unavailable",
                database=database,
                table=table,
                kind="row_count",
                error=e.message,
            )
            return RowCountEntry(table=table, count=0, available=False)

    def _load_row_count(self, database: str, table: str) -> RowCountEntry:
        pool = self._registry.get_pool(database)

        if self.approximate_counts:
            estimate = self._approximate_row_count(pool, table)
            if estimate is not None and estimate > 0:
                logger.debug(
                    "row_count_approximate", database=database, table=table, count=estimate
                )
                return RowCountEntry(table=table, count=estimate, approximate=True)

        count = self._exact_row_count(pool, table)
        logger.debug("row_count_exact", database=database, table=table, count=count)
        return RowCountEntry(table=table, count=count, approximate=False)

    def _approximate_row_count(self, pool: ConnectionPool, table: str) -> int | None:
        try:
            value = pool.execute_scalar(
                """
                SELECT estimated_size
                FROM duckdb_tables()
                WHERE database_name = current_database()
                  AND schema_name = 'main'
                  AND table_name = ?
                """,
                [table],
                operation="approximate_count",
            )
        except QueryFailure as e:
            logger.debug("row_count_estimate_failed", table=table, error=e.message)
            return None
        return None if value is None else int(value)

    def _exact_row_count(self, pool: ConnectionPool, table: str) -> int:
        try:
            value = pool.execute_scalar(
                f"SELECT COUNT(*) FROM {quote_identifier(table)}", operation="count"
            )
        except QueryFailure as e:
            raise MetadataUnavailable(e.message, details={"table": table}) from e
        return int(value or 0)

    # ========================================
    # Database statistics
    # ========================================

    def get_database_statistics(self, database: str) -> DatabaseStatistics:
        """Table count and summed row counts; zeros when the table list fails."""
        try:
            tables = self.get_tables(database)
        except QueryFailure as e:
            logger.warning(
                "metadata_unavailable",
                database=database,
                kind="statistics",
                error=e.message,
            )
            return DatabaseStatistics(database=database, available=False)

        return DatabaseStatistics(
            database=database,
            table_count=len(tables),
            total_rows=sum(t.row_count for t in tables),
            tables=tuple(t.name for t in tables),
        )

    def clear(self) -> int:
        """Empty all three caches. Returns the number of entries removed."""
        return self.tables.clear() + self.structure.clear() + self.counts.clear()

    def stats(self) -> dict[str, dict[str, float]]:
        return {
            cache.name: cache.summary()
            for cache in (self.tables, self.structure, self.counts)
        }
