"""Response models for API endpoints."""

from typing import Any, Literal

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status: 'healthy' or 'unhealthy'")
    version: str = Field(description="API version")
    storage_available: bool = Field(description="Whether storage paths are accessible")
    details: dict[str, bool] | None = Field(
        default=None, description="Detailed status of each storage path"
    )


class ErrorResponse(BaseModel):
    """Standard error response."""

    success: bool = Field(default=False)
    error: str = Field(description="Error type")
    message: str = Field(description="Error message")
    details: dict | None = Field(default=None, description="Additional error details")


class ConnectionTestResponse(BaseModel):
    success: bool = Field(description="Whether the databases directory is reachable")
    message: str = Field(description="Status message")
    database_count: int = Field(default=0, description="Number of discovered databases")


# ============================================
# Database models
# ============================================


class DatabaseListResponse(BaseModel):
    success: bool = True
    databases: list[str] = Field(description="User database names, sorted")


class ColumnInfo(BaseModel):
    """Column information from DESCRIBE."""

    name: str = Field(description="Column name")
    type: str = Field(description="DuckDB data type")
    nullable: bool = Field(description="Whether column allows NULL values")
    key: str | None = Field(default=None, description="Key marker (e.g. PRI)")
    default: str | None = Field(default=None, description="Default expression")
    extra: str | None = Field(default=None)


class TableInfo(BaseModel):
    name: str = Field(description="Table name")
    columns: list[ColumnInfo] = Field(default_factory=list)
    column_count: int = Field(default=0)
    row_count: int = Field(default=0, description="Row count (may be approximate)")
    row_count_approximate: bool = Field(
        default=False, description="Whether row_count comes from storage statistics"
    )
    available: bool = Field(
        default=True, description="False when metadata could not be read"
    )


class TableListResponse(BaseModel):
    success: bool = True
    database: str
    tables: list[TableInfo]


class AttachmentInfo(BaseModel):
    """Attachment cell appended to every data row."""

    file_name: str | None = Field(default=None, description="Matched object key")
    exists: bool = Field(description="Whether a file was matched")
    load_async: bool = Field(
        description="Content must be fetched through the /api/oss endpoints"
    )
    state: Literal["found", "absent", "failed"] = Field(
        description="'failed' means the bucket listing was unavailable"
    )


class TableDataResponse(BaseModel):
    """One page of table data. The last two columns are 'image' and 'text'."""

    success: bool = True
    database: str
    table: str
    columns: list[str]
    rows: list[list[Any]] = Field(
        description="Row cells in column order; the last two cells are AttachmentInfo"
    )
    row_count: int
    total_count: int
    total_approximate: bool = False
    page_size: int
    offset: int
    current_page: int
    has_next: bool
    has_previous: bool
    strategy: Literal["offset", "seek"]
    attachments_degraded: bool = False
    warnings: list[str] = Field(default_factory=list)


class DatabaseStatisticsResponse(BaseModel):
    success: bool = True
    database: str
    table_count: int = 0
    total_rows: int = 0
    available: bool = True


# ============================================
# Cache models
# ============================================


class CacheClearResponse(BaseModel):
    success: bool = True
    message: str
    cleared: dict[str, int] = Field(description="Entries removed per cache group")


class CacheStatsResponse(BaseModel):
    success: bool = True
    caches: dict[str, dict[str, float]]
    pools: list[dict[str, Any]]


# ============================================
# Object store models
# ============================================


class ImageResponse(BaseModel):
    success: bool = True
    file_name: str
    data_uri: str | None = Field(
        default=None, description="base64 data URI, null when rendering failed"
    )


class TextResponse(BaseModel):
    success: bool = True
    file_name: str
    content: str


class CsvResponse(BaseModel):
    success: bool = True
    file_name: str
    headers: list[str]
    rows: list[list[str]]
    row_count: int


class TextPreviewResponse(BaseModel):
    success: bool = True
    file_name: str
    preview: str | None = None
