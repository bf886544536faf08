"""Prometheus metrics endpoint router.

Exposes /metrics endpoint for Prometheus scraping.
Also refreshes pool and cache gauges before each scrape.
"""

import duckdb
import structlog
from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from material_browser.config import settings
from material_browser.dependencies import get_services
from material_browser.metrics import (
    CACHE_ENTRIES,
    POOL_CONNECTIONS_ACTIVE,
    POOL_CONNECTIONS_IDLE,
    POOLS_TOTAL,
    set_service_info,
)

logger = structlog.get_logger()

router = APIRouter(tags=["metrics"])


def collect_runtime_metrics() -> None:
    """Refresh gauges that are not updated on every operation."""
    services = get_services()

    pool_stats = services.registry.stats()
    POOLS_TOTAL.set(len(pool_stats))
    for stats in pool_stats:
        POOL_CONNECTIONS_ACTIVE.labels(database=stats["database"]).set(stats["active"])
        POOL_CONNECTIONS_IDLE.labels(database=stats["database"]).set(stats["idle"])

    for name, stats in services.cache_stats().items():
        CACHE_ENTRIES.labels(cache=name).set(stats["entries"])


@router.get(
    "/metrics",
    response_class=PlainTextResponse,
    summary="Prometheus metrics endpoint",
    description="Returns metrics in Prometheus text format for scraping.",
)
def get_metrics():
    """Expose Prometheus metrics in the text exposition format."""
    set_service_info(version=settings.api_version, duckdb_version=duckdb.__version__)

    collect_runtime_metrics()

    metrics_output = generate_latest()

    return PlainTextResponse(
        content=metrics_output,
        media_type=CONTENT_TYPE_LATEST
    )
