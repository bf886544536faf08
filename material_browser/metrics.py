"""Prometheus metrics definitions for the Material Browser API.

This module defines all Prometheus metrics used for observability:
- HTTP request metrics (count, duration, in-flight)
- Connection pool metrics (pools, connections, acquisition wait, leaks)
- Query metrics (count, duration by operation)
- Cache metrics (hits, misses, entries per cache)
- Object store and batch matching metrics
- Process metrics (CPU, memory, file descriptors)
"""

import platform
import time
from prometheus_client import Counter, Histogram, Gauge, Info
from prometheus_client import ProcessCollector

# Register ProcessCollector for process_* metrics
# Note: ProcessCollector only works on Linux (uses /proc filesystem)
if platform.system() == "Linux":
    try:
        ProcessCollector()
    except Exception:
        pass  # already registered by the default registry

# =============================================================================
# Service Health Metrics
# =============================================================================

SERVICE_UP = Gauge(
    "material_browser_up",
    "Whether the Material Browser service is up (1) or down (0)"
)

SERVICE_START_TIME = Gauge(
    "material_browser_start_time_seconds",
    "Unix timestamp when the service started"
)

_start_time = time.time()
SERVICE_START_TIME.set(_start_time)
SERVICE_UP.set(1)

# =============================================================================
# HTTP Request Metrics
# =============================================================================

REQUEST_COUNT = Counter(
    "material_browser_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status_code"]
)

REQUEST_DURATION = Histogram(
    "material_browser_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

REQUEST_IN_FLIGHT = Gauge(
    "material_browser_requests_in_flight",
    "Number of HTTP requests currently being processed",
    ["method"]
)

# =============================================================================
# Error Metrics
# =============================================================================

ERROR_COUNT = Counter(
    "material_browser_errors_total",
    "Total number of errors by type",
    ["type", "endpoint"]
)

# =============================================================================
# Connection Pool Metrics
# =============================================================================

POOLS_TOTAL = Gauge(
    "material_browser_pools_total",
    "Number of per-database connection pools"
)

POOL_CREATIONS = Counter(
    "material_browser_pool_creations_total",
    "Connection pool construction attempts",
    ["status"]  # success, error
)

POOL_CONNECTIONS_ACTIVE = Gauge(
    "material_browser_pool_connections_active",
    "Connections currently lent out by a pool",
    ["database"]
)

POOL_CONNECTIONS_IDLE = Gauge(
    "material_browser_pool_connections_idle",
    "Idle connections held by a pool",
    ["database"]
)

POOL_ACQUIRE_WAIT = Histogram(
    "material_browser_pool_acquire_wait_seconds",
    "Time spent waiting for a pooled connection",
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0]
)

POOL_LEAKS_DETECTED = Counter(
    "material_browser_pool_leaks_detected_total",
    "Connections held longer than the leak detection threshold",
    ["database"]
)

# =============================================================================
# Query Metrics
# =============================================================================

QUERY_COUNT = Counter(
    "material_browser_queries_total",
    "Total number of database statements",
    ["operation", "status"]  # operation: describe, count, approximate_count, data, ...
)

QUERY_DURATION = Histogram(
    "material_browser_query_duration_seconds",
    "Database statement duration in seconds",
    ["operation"],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0]
)

# =============================================================================
# Cache Metrics
# =============================================================================

CACHE_HITS = Counter(
    "material_browser_cache_hits_total",
    "Cache lookups answered by a valid entry",
    ["cache"]
)

CACHE_MISSES = Counter(
    "material_browser_cache_misses_total",
    "Cache lookups that found no entry or a stale entry",
    ["cache"]
)

CACHE_ENTRIES = Gauge(
    "material_browser_cache_entries",
    "Number of entries currently held by a cache",
    ["cache"]
)

# =============================================================================
# Object Store Metrics
# =============================================================================

OBJECT_STORE_OPERATIONS = Counter(
    "material_browser_object_store_operations_total",
    "Object store operations",
    ["operation", "status"]  # operation: list, get, exists
)

OBJECT_STORE_DURATION = Histogram(
    "material_browser_object_store_duration_seconds",
    "Object store operation duration in seconds",
    ["operation"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0]
)

OBJECT_LISTING_KEYS = Gauge(
    "material_browser_object_listing_keys",
    "Number of keys in the last cached listing of a bucket",
    ["bucket"]
)

# =============================================================================
# Batch Matching Metrics
# =============================================================================

MATCH_BATCHES = Counter(
    "material_browser_match_batches_total",
    "Batch matching runs",
    ["strategy"]  # sequential, parallel
)

MATCH_DURATION = Histogram(
    "material_browser_match_duration_seconds",
    "Batch matching duration in seconds",
    ["strategy"],
    buckets=[0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0]
)

MATCH_HITS = Counter(
    "material_browser_match_hits_total",
    "Identifiers resolved to an object key",
    ["bucket"]
)

# =============================================================================
# Service Info
# =============================================================================

SERVICE_INFO = Info(
    "material_browser_service",
    "Material Browser service information"
)


def set_service_info(version: str, duckdb_version: str) -> None:
    """Set service info labels."""
    SERVICE_INFO.info({
        "version": version,
        "duckdb_version": duckdb_version
    })
