"""Application configuration using pydantic-settings."""

from pathlib import Path
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be configured via:
    1. Environment variables (e.g., DATA_DIR=/my/path)
    2. .env file in the project root

    The databases directory is derived from DATA_DIR by default but can be overridden.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # API settings
    api_title: str = "Material Browser API"
    api_version: str = "0.1.0"
    api_prefix: str = "/api"
    debug: bool = True  # Default to True for development

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000

    # Logging; None follows debug (console + DEBUG in debug, JSON + INFO otherwise)
    log_level: str | None = None
    log_json: bool | None = None

    # Storage paths
    data_dir: Path = Path("./data")
    duckdb_dir: Path | None = None  # one <name>.duckdb file per logical database

    # DuckDB settings
    database_read_only: bool = True
    duckdb_threads: int = 4
    system_databases: list[str] = [
        "information_schema",
        "mysql",
        "performance_schema",
        "sys",
        "system",
        "temp",
    ]

    # Connection pool (per database)
    pool_max_size: int = 15
    pool_min_idle: int = 3
    pool_connection_timeout: float = 30.0  # seconds to wait for a free connection
    pool_idle_timeout: float = 600.0  # 10 minutes
    pool_max_lifetime: float = 1800.0  # 30 minutes
    pool_leak_detection_threshold: float = 60.0
    pool_validation_query: str = "SELECT 1"
    pool_sweep_interval: int = 3600  # 1 hour

    # Cache TTLs (seconds)
    schema_cache_ttl: float = 600.0  # table list + schema
    structure_cache_ttl: float = 1800.0  # column structure
    count_cache_ttl: float = 120.0  # row counts
    listing_cache_ttl: float = 300.0  # object store bucket listings
    content_cache_ttl: float = 3600.0  # thumbnails and text previews
    approximate_counts: bool = True

    # Matching and paging
    match_parallel_threshold: int = 100
    match_max_workers: int = 8
    seek_offset_threshold: int = 10000
    default_page_size: int = 50
    max_page_size: int = 1000
    csv_page_size: int = 100
    identifier_fields: list[str] = ["id", "ID"]

    # Object store (S3-compatible API)
    s3_endpoint_url: str | None = None
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None
    s3_region: str = "us-east-1"
    s3_connect_timeout: float = 10.0
    s3_read_timeout: float = 30.0
    s3_max_attempts: int = 3
    image_bucket_name: str = "images"
    text_bucket_name: str = "texts"
    image_extensions: list[str] = [
        ".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp", ".jfif", ".jpe",
    ]
    text_extensions: list[str] = [".txt", ".md", ".doc", ".docx", ".pdf", ".csv"]

    # Attachment rendering
    thumbnail_width: int = 150
    thumbnail_height: int = 150
    thumbnail_format: str = "jpeg"
    text_preview_length: int = 100

    @model_validator(mode="after")
    def set_default_paths(self) -> "Settings":
        """Set default paths based on data_dir if not explicitly provided."""
        if self.duckdb_dir is None:
            self.duckdb_dir = self.data_dir / "databases"
        return self

    @property
    def storage_paths(self) -> dict[str, Path]:
        """Return all storage paths for health check validation."""
        return {
            "data_dir": self.data_dir,
            "duckdb_dir": self.duckdb_dir,
        }


# Global settings instance
settings = Settings()
