"""Service wiring and FastAPI dependency providers.

All components are process-wide singletons built on first use:

    registry -> metadata -> pager
    store -> listings -> matcher -> pager
    store + listings -> attachments

Usage in routers:
    @router.get("/api/databases/{database_name}/tables")
    def list_tables(database_name: str, metadata: MetadataCache = Depends(get_metadata)):
        ...

Tests swap in their own services with set_services() and restore with reset_services().
"""

import threading
from dataclasses import dataclass

import structlog

from material_browser.attachments import AttachmentService
from material_browser.matching import BatchMatcher
from material_browser.metadata import MetadataCache
from material_browser.object_store import ObjectListingCache, ObjectStore, S3ObjectStore
from material_browser.pager import TablePager
from material_browser.pool import ConnectionPoolRegistry

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    registry: ConnectionPoolRegistry
    metadata: MetadataCache
    store: ObjectStore
    listings: ObjectListingCache
    matcher: BatchMatcher
    pager: TablePager
    attachments: AttachmentService

    def clear_all_caches(self) -> dict[str, int]:
        """
        Empty every cache (metadata, listings, existence, thumbnails, previews).

        Connection pools are not caches and stay open.
        """
        cleared = {
            "metadata": self.metadata.clear(),
            "listings": self.listings.clear(),
            "content": self.attachments.clear(),
        }
        logger.info("caches_cleared", **cleared)
        return cleared

    def cache_stats(self) -> dict[str, dict[str, float]]:
        stats = {}
        stats.update(self.metadata.stats())
        stats.update(self.listings.stats())
        stats.update(self.attachments.stats())
        return stats


def build_services(
    store: ObjectStore | None = None,
    registry: ConnectionPoolRegistry | None = None,
) -> Services:
    """Build a full component graph. Missing pieces are built from settings."""
    registry = registry or ConnectionPoolRegistry()
    store = store or S3ObjectStore()
    metadata = MetadataCache(registry)
    listings = ObjectListingCache(store)
    matcher = BatchMatcher(listings)
    return Services(
        registry=registry,
        metadata=metadata,
        store=store,
        listings=listings,
        matcher=matcher,
        pager=TablePager(registry, metadata, matcher),
        attachments=AttachmentService(store, listings),
    )


_services: Services | None = None
_services_lock = threading.Lock()


def get_services() -> Services:
    global _services
    if _services is None:
        with _services_lock:
            if _services is None:
                _services = build_services()
                logger.info("services_initialized")
    return _services


def set_services(services: Services) -> None:
    global _services
    with _services_lock:
        _services = services


def reset_services() -> None:
    """Close all pools and forget the current services."""
    global _services
    with _services_lock:
        services, _services = _services, None
    if services is not None:
        services.registry.close_all()


def get_registry() -> ConnectionPoolRegistry:
    return get_services().registry


def get_metadata() -> MetadataCache:
    return get_services().metadata


def get_listings() -> ObjectListingCache:
    return get_services().listings


def get_pager() -> TablePager:
    return get_services().pager


def get_attachments() -> AttachmentService:
    return get_services().attachments
