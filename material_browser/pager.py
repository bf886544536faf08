"""Paged table data with image and text attachment columns.

Query strategy
==============
- offset <= seek_offset_threshold: SELECT ... [ORDER BY key] LIMIT n OFFSET m
- offset >  seek_offset_threshold and a single-column primary key is declared:
    1. boundary = SELECT key ... ORDER BY key LIMIT 1 OFFSET m
    2. SELECT ... WHERE key >= boundary ORDER BY key LIMIT n
- no declared key: always LIMIT/OFFSET (pages are unordered)

Every row gets two extra cells, image then text, each an AttachmentRef resolved by
matching the row identifier against the image and text bucket listings.
"""

import time
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Iterator, Sequence

import structlog

from material_browser.config import settings
from material_browser.exceptions import BrowserError, InvalidRequest
from material_browser.matching import BatchMatcher, BatchMatchResult
from material_browser.metadata import MetadataCache, TableStructure, quote_identifier
from material_browser.pool import ConnectionPool, ConnectionPoolRegistry

logger = structlog.get_logger()

IMAGE_COLUMN = "image"
TEXT_COLUMN = "text"

IdentifierPolicy = Callable[[dict[str, Any]], str | None]


def field_identifier_policy(fields: Sequence[str]) -> IdentifierPolicy:
    """
    Build a policy that reads the row identifier from the first matching field.

    Fields are tried by exact name first, then case-insensitively. Values are
    trimmed; blank values count as missing.
    """

    def _clean(value: Any) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    def extract(row: dict[str, Any]) -> str | None:
        for name in fields:
            if name in row:
                value = _clean(row[name])
                if value is not None:
                    return value

        lowered = {key.lower(): key for key in row}
        for name in fields:
            key = lowered.get(name.lower())
            if key is not None:
                value = _clean(row[key])
                if value is not None:
                    return value
        return None

    return extract


class AttachmentState(str, Enum):
    FOUND = "found"
    ABSENT = "absent"
    FAILED = "failed"  # listing unavailable; rendered like ABSENT


@dataclass(frozen=True)
class AttachmentRef:
    state: AttachmentState
    file_name: str | None = None

    @property
    def exists(self) -> bool:
        return self.state is AttachmentState.FOUND

    @property
    def load_async(self) -> bool:
        """Content is fetched separately through the file endpoints."""
        return self.exists

    @classmethod
    def resolve(cls, identifier: str | None, match: BatchMatchResult) -> "AttachmentRef":
        if identifier is None:
            return cls(AttachmentState.ABSENT)
        if not match.ok:
            return cls(AttachmentState.FAILED)
        file_name = match.get(identifier)
        if file_name is None:
            return cls(AttachmentState.ABSENT)
        return cls(AttachmentState.FOUND, file_name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_name": self.file_name,
            "exists": self.exists,
            "load_async": self.load_async,
            "state": self.state.value,
        }


class QueryStrategy(str, Enum):
    OFFSET = "offset"
    SEEK = "seek"


@dataclass(frozen=True)
class DataQuery:
    """Statements for one page. Seek pages need the boundary value first."""

    strategy: QueryStrategy
    sql: str
    boundary_sql: str | None = None


def build_data_query(
    table: str,
    columns: Sequence[str],
    limit: int,
    offset: int,
    ordering_key: str | None = None,
    seek_threshold: int | None = None,
) -> DataQuery:
    """Build the data statement(s) for one page of a table."""
    if seek_threshold is None:
        seek_threshold = settings.seek_offset_threshold

    select_list = ", ".join(quote_identifier(c) for c in columns) if columns else "*"
    source = quote_identifier(table)
    limit = int(limit)
    offset = int(offset)

    if ordering_key is not None and offset > seek_threshold:
        key = quote_identifier(ordering_key)
        return DataQuery(
            strategy=QueryStrategy.SEEK,
            boundary_sql=f"SELECT {key} FROM {source} ORDER BY {key} LIMIT 1 OFFSET {offset}",
            sql=f"SELECT {select_list} FROM {source} WHERE {key} >= ? ORDER BY {key} LIMIT {limit}",
        )

    order_by = f" ORDER BY {quote_identifier(ordering_key)}" if ordering_key else ""
    return DataQuery(
        strategy=QueryStrategy.OFFSET,
        sql=f"SELECT {select_list} FROM {source}{order_by} LIMIT {limit} OFFSET {offset}",
    )


def serialize_value(value: Any) -> Any:
    """Convert a DuckDB value into something JSON can carry."""
    if isinstance(value, (datetime, date, dt_time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, (str, int, float, bool, type(None), list, dict)):
        return value
    return str(value)


@dataclass
class PagedResult:
    database: str
    table: str
    columns: list[str]
    rows: list[list[Any]]
    total_count: int
    page_size: int
    offset: int
    strategy: QueryStrategy = QueryStrategy.OFFSET
    total_approximate: bool = False
    attachments_degraded: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)

    @property
    def current_page(self) -> int:
        return self.offset // self.page_size + 1

    @property
    def has_next(self) -> bool:
        return self.offset + self.page_size < self.total_count

    @property
    def has_previous(self) -> bool:
        return self.offset > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "database": self.database,
            "table": self.table,
            "columns": self.columns,
            "rows": [
                [cell.to_dict() if isinstance(cell, AttachmentRef) else cell for cell in row]
                for row in self.rows
            ],
            "row_count": self.row_count,
            "total_count": self.total_count,
            "total_approximate": self.total_approximate,
            "page_size": self.page_size,
            "offset": self.offset,
            "current_page": self.current_page,
            "has_next": self.has_next,
            "has_previous": self.has_previous,
            "strategy": self.strategy.value,
            "attachments_degraded": self.attachments_degraded,
            "warnings": self.warnings,
        }


class TablePager:
    """Reads pages of table data and stitches in attachment references."""

    def __init__(
        self,
        registry: ConnectionPoolRegistry,
        metadata: MetadataCache,
        matcher: BatchMatcher,
        identifier_policy: IdentifierPolicy | None = None,
    ):
        self.registry = registry
        self.metadata = metadata
        self.matcher = matcher
        self.identifier_policy = identifier_policy or field_identifier_policy(
            settings.identifier_fields
        )

    def _normalize_paging(self, limit: int | None, offset: int) -> tuple[int, int]:
        if limit is None:
            limit = settings.default_page_size
        if limit < 1:
            raise InvalidRequest(
                f"limit must be positive, got {limit}", details={"limit": limit}
            )
        if offset < 0:
            raise InvalidRequest(
                f"offset must not be negative, got {offset}", details={"offset": offset}
            )
        return min(limit, settings.max_page_size), offset

    def get_page(
        self,
        database: str,
        table: str,
        limit: int | None = None,
        offset: int = 0,
    ) -> PagedResult:
        """
        Return one page of a table with image and text attachment columns.

        Raises:
            InvalidRequest: limit < 1 or offset < 0
            ConnectionFailure: pool could not be built or acquired
            QueryFailure: data statement failed
        """
        limit, offset = self._normalize_paging(limit, offset)
        start_time = time.time()

        pool = self.registry.get_pool(database)
        structure = self.metadata.get_structure(database, table)
        count = self.metadata.get_row_count(database, table)

        query = build_data_query(
            table,
            structure.columns,
            limit,
            offset,
            ordering_key=structure.ordering_key,
        )
        raw_rows = self._fetch(pool, query, operation="data")

        columns = list(structure.columns)
        if not columns and raw_rows:
            columns = list(raw_rows[0].keys())

        identifiers = [self.identifier_policy(row) for row in raw_rows]
        image_match = self._match(settings.image_bucket_name, identifiers, settings.image_extensions)
        text_match = self._match(settings.text_bucket_name, identifiers, settings.text_extensions)

        rows = []
        for row, identifier in zip(raw_rows, identifiers):
            cells = [serialize_value(row.get(column)) for column in columns]
            cells.append(AttachmentRef.resolve(identifier, image_match))
            cells.append(AttachmentRef.resolve(identifier, text_match))
            rows.append(cells)

        warnings = []
        if not structure.available:
            warnings.append("table structure unavailable")
        if not count.available:
            warnings.append("row count unavailable")
        for match in (image_match, text_match):
            if match.degraded:
                warnings.append(f"listing unavailable for bucket {match.bucket}")

        result = PagedResult(
            database=database,
            table=table,
            columns=columns + [IMAGE_COLUMN, TEXT_COLUMN],
            rows=rows,
            total_count=count.count,
            total_approximate=count.approximate,
            page_size=limit,
            offset=offset,
            strategy=query.strategy,
            attachments_degraded=image_match.degraded or text_match.degraded,
            warnings=warnings,
        )

        logger.info(
            "table_page_loaded",
            database=database,
            table=table,
            offset=offset,
            limit=limit,
            rows=len(rows),
            strategy=query.strategy.value,
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return result

    def _fetch(
        self, pool: ConnectionPool, query: DataQuery, operation: str
    ) -> list[dict[str, Any]]:
        if query.strategy is QueryStrategy.SEEK:
            boundary = pool.execute_scalar(query.boundary_sql, operation="seek_boundary")
            if boundary is None:
                return []
            return pool.execute(query.sql, [boundary], operation=operation)
        return pool.execute(query.sql, operation=operation)

    def _match(
        self, bucket: str, identifiers: list[str | None], extensions: Sequence[str]
    ) -> BatchMatchResult:
        try:
            return self.matcher.match_batch(bucket, identifiers, extensions)
        except BrowserError as e:
            logger.warning("attachment_match_failed", bucket=bucket, error=e.message)
            return BatchMatchResult(bucket=bucket, ok=False, error=e.message)

    def iter_table_rows(
        self,
        database: str,
        table: str,
        batch_size: int | None = None,
    ) -> Iterator[dict[str, Any]]:
        """
        Yield every row of a table as a serialized field map, in batches.

        Tables with a single-column primary key are walked by key
        (WHERE key > last); others by LIMIT/OFFSET. A connection is held only
        while a batch is fetched.
        """
        batch_size = batch_size or settings.max_page_size
        pool = self.registry.get_pool(database)
        structure = self.metadata.get_structure(database, table)

        total = 0
        for batch in self._iter_batches(pool, table, structure, batch_size):
            for row in batch:
                yield {name: serialize_value(value) for name, value in row.items()}
            total += len(batch)

        logger.info("table_rows_streamed", database=database, table=table, rows=total)

    def _iter_batches(
        self,
        pool: ConnectionPool,
        table: str,
        structure: TableStructure,
        batch_size: int,
    ) -> Iterator[list[dict[str, Any]]]:
        select_list = (
            ", ".join(quote_identifier(c) for c in structure.columns)
            if structure.columns
            else "*"
        )
        source = quote_identifier(table)
        key = structure.ordering_key

        if key is None:
            offset = 0
            while True:
                batch = pool.execute(
                    f"SELECT {select_list} FROM {source} LIMIT {batch_size} OFFSET {offset}",
                    operation="export",
                )
                if batch:
                    yield batch
                if len(batch) < batch_size:
                    return
                offset += batch_size

        quoted_key = quote_identifier(key)
        batch = pool.execute(
            f"SELECT {select_list} FROM {source} ORDER BY {quoted_key} LIMIT {batch_size}",
            operation="export",
        )
        while batch:
            yield batch
            if len(batch) < batch_size:
                return
            last = batch[-1][key]
            batch = pool.execute(
                f"SELECT {select_list} FROM {source} WHERE {quoted_key} > ? "
                f"ORDER BY {quoted_key} LIMIT {batch_size}",
                [last],
                operation="export",
            )
