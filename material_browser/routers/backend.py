"""Service endpoints: health check, connection test and cache management."""

from pathlib import Path

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from material_browser.config import settings
from material_browser.dependencies import Services, get_services
from material_browser.exceptions import ConnectionFailure
from material_browser.models.responses import (
    CacheClearResponse,
    CacheStatsResponse,
    ConnectionTestResponse,
    ErrorResponse,
    HealthResponse,
)

logger = structlog.get_logger()
router = APIRouter(tags=["backend"])


def _check_path_accessible(path: Path) -> bool:
    """Check if a path exists and is accessible."""
    try:
        return path.exists() and path.is_dir()
    except (OSError, PermissionError):
        return False


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={503: {"model": ErrorResponse}},
    summary="Health check",
    description="Check if the service is healthy and the databases directory is accessible.",
)
async def health_check() -> HealthResponse:
    path_status = {}
    all_healthy = True

    for name, path in settings.storage_paths.items():
        is_accessible = _check_path_accessible(path)
        path_status[name] = is_accessible
        if not is_accessible:
            all_healthy = False

    logger.info(
        "health_check",
        status="healthy" if all_healthy else "unhealthy",
        path_status=path_status,
    )

    if not all_healthy:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "storage_unavailable",
                "message": "One or more storage paths are not accessible",
                "details": path_status,
            },
        )

    return HealthResponse(
        status="healthy",
        version=settings.api_version,
        storage_available=True,
        details=path_status,
    )


@router.get(
    f"{settings.api_prefix}/test-connection",
    response_model=ConnectionTestResponse,
    summary="Test database connection",
    description="Check that the databases directory is reachable and list how many databases it holds.",
)
def test_connection(services: Services = Depends(get_services)) -> ConnectionTestResponse:
    try:
        databases = services.registry.list_databases()
    except ConnectionFailure as e:
        logger.warning("connection_test_failed", error=e.message)
        return ConnectionTestResponse(success=False, message=e.message)

    return ConnectionTestResponse(
        success=True,
        message="Database connection OK",
        database_count=len(databases),
    )


@router.post(
    f"{settings.api_prefix}/cache/clear",
    response_model=CacheClearResponse,
    summary="Clear caches",
    description="""
    Empty every cache: table lists, column structures, row counts, bucket listings,
    file existence, thumbnails and text previews. Connection pools stay open.
    """,
)
def clear_cache(services: Services = Depends(get_services)) -> CacheClearResponse:
    cleared = services.clear_all_caches()
    return CacheClearResponse(message="All caches cleared", cleared=cleared)


@router.get(
    f"{settings.api_prefix}/cache/stats",
    response_model=CacheStatsResponse,
    summary="Cache statistics",
)
def cache_stats(services: Services = Depends(get_services)) -> CacheStatsResponse:
    return CacheStatsResponse(
        caches=services.cache_stats(),
        pools=services.registry.stats(),
    )
