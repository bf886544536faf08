"""Database browsing endpoints: databases, tables, paged data, statistics and CSV export."""

import csv
import io
import itertools
from typing import Any, Iterable, Iterator

import structlog
from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response, StreamingResponse

from material_browser.config import settings
from material_browser.dependencies import get_metadata, get_pager, get_registry
from material_browser.metadata import MetadataCache
from material_browser.models.responses import (
    ColumnInfo,
    DatabaseListResponse,
    DatabaseStatisticsResponse,
    ErrorResponse,
    TableDataResponse,
    TableInfo,
    TableListResponse,
)
from material_browser.pager import AttachmentRef, TablePager
from material_browser.pool import ConnectionPoolRegistry
from material_browser.routers import content_disposition

logger = structlog.get_logger()
router = APIRouter(prefix=settings.api_prefix, tags=["databases"])

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def _csv_cell(value: Any) -> Any:
    if isinstance(value, AttachmentRef):
        return value.file_name if value.exists else ""
    return value


def _csv_lines(header: list[str], rows: Iterable[list[Any]]) -> Iterator[str]:
    """Render rows as CSV text, one chunk per row."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")

    writer.writerow(header)
    yield buffer.getvalue()

    for row in rows:
        buffer.seek(0)
        buffer.truncate()
        writer.writerow(row)
        yield buffer.getvalue()


def _csv_headers(file_name: str) -> dict[str, str]:
    return {"Content-Disposition": content_disposition(file_name)}


@router.get(
    "/databases",
    response_model=DatabaseListResponse,
    responses=ERROR_RESPONSES,
    summary="List databases",
    description="List user databases (system databases are filtered out).",
)
def list_databases(
    registry: ConnectionPoolRegistry = Depends(get_registry),
) -> DatabaseListResponse:
    databases = registry.list_databases()
    logger.info("list_databases", count=len(databases))
    return DatabaseListResponse(databases=databases)


@router.get(
    "/databases/{database_name}/tables",
    response_model=TableListResponse,
    responses=ERROR_RESPONSES,
    summary="List tables",
    description="""
    List tables with their columns and row counts.

    Row counts come from storage statistics when available and may lag behind
    recent writes (row_count_approximate=true). Tables whose metadata cannot be
    read are returned with available=false and zero rows.
    """,
)
def list_tables(
    database_name: str,
    metadata: MetadataCache = Depends(get_metadata),
) -> TableListResponse:
    tables = metadata.get_tables(database_name)
    logger.info("list_tables", database=database_name, count=len(tables))

    return TableListResponse(
        database=database_name,
        tables=[
            TableInfo(
                name=t.name,
                columns=[
                    ColumnInfo(
                        name=c.name,
                        type=c.type,
                        nullable=c.nullable,
                        key=c.key,
                        default=c.default,
                        extra=c.extra,
                    )
                    for c in t.columns
                ],
                column_count=t.column_count,
                row_count=t.row_count,
                row_count_approximate=t.row_count_approximate,
                available=t.available,
            )
            for t in tables
        ],
    )


@router.get(
    "/databases/{database_name}/tables/{table_name}/data",
    response_model=TableDataResponse,
    responses=ERROR_RESPONSES,
    summary="Get table data",
    description="""
    Get one page of table data with 'image' and 'text' attachment columns appended.

    - limit above the configured maximum is clamped
    - offsets past the seek threshold use keyset pagination when the table has a
      single-column primary key
    """,
)
def get_table_data(
    database_name: str,
    table_name: str,
    limit: int = Query(
        default=settings.default_page_size,
        ge=1,
        description="Rows per page (clamped to the configured maximum)",
    ),
    offset: int = Query(default=0, ge=0, description="Rows to skip"),
    pager: TablePager = Depends(get_pager),
) -> TableDataResponse:
    logger.info(
        "get_table_data",
        database=database_name,
        table=table_name,
        limit=limit,
        offset=offset,
    )
    page = pager.get_page(database_name, table_name, limit=limit, offset=offset)
    return TableDataResponse(**page.to_dict())


@router.get(
    "/databases/{database_name}/statistics",
    response_model=DatabaseStatisticsResponse,
    responses=ERROR_RESPONSES,
    summary="Database statistics",
    description="Table count and total rows. Zeros (available=false) if the table list fails.",
)
def get_database_statistics(
    database_name: str,
    metadata: MetadataCache = Depends(get_metadata),
) -> DatabaseStatisticsResponse:
    stats = metadata.get_database_statistics(database_name)
    return DatabaseStatisticsResponse(
        database=stats.database,
        table_count=stats.table_count,
        total_rows=stats.total_rows,
        available=stats.available,
    )


@router.get(
    "/databases/{database_name}/tables/{table_name}/download/csv",
    responses=ERROR_RESPONSES,
    summary="Download table as CSV",
    description="""
    Download table data as CSV.

    - full_data=false: the first page (settings.csv_page_size rows) including the
      image and text columns, rendered as matched file names
    - full_data=true: every row of the table, streamed; NULL values render as 'NULL'
    """,
)
def download_table_csv(
    database_name: str,
    table_name: str,
    full_data: bool = Query(default=False, description="Export the whole table"),
    registry: ConnectionPoolRegistry = Depends(get_registry),
    metadata: MetadataCache = Depends(get_metadata),
    pager: TablePager = Depends(get_pager),
) -> Response:
    logger.info(
        "download_table_csv",
        database=database_name,
        table=table_name,
        full_data=full_data,
    )

    if not full_data:
        page = pager.get_page(database_name, table_name, limit=settings.csv_page_size)
        body = "".join(
            _csv_lines(page.columns, ([_csv_cell(c) for c in row] for row in page.rows))
        )
        return Response(
            content=body.encode("utf-8"),
            media_type="text/csv; charset=utf-8",
            headers=_csv_headers(f"{database_name}_{table_name}_current_page.csv"),
        )

    # Resolve the pool and columns before streaming so failures still map to an error status
    registry.get_pool(database_name)
    columns = metadata.get_columns(database_name, table_name)

    source = pager.iter_table_rows(database_name, table_name)
    if not columns:
        # No cached structure; the first row names the columns
        first = next(source, None)
        if first is not None:
            columns = list(first)
            source = itertools.chain([first], source)

    def rows() -> Iterator[list[Any]]:
        for row in source:
            yield ["NULL" if row.get(c) is None else row.get(c) for c in columns]

    return StreamingResponse(
        _csv_lines(columns, rows()),
        media_type="text/csv; charset=utf-8",
        headers=_csv_headers(f"{database_name}_{table_name}_complete_data.csv"),
    )
