"""HTTP request instrumentation for Prometheus.

Endpoint labels are normalized so database, table and file names never become
label values (one series per route, not per browsed object).
"""

import time

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from material_browser.metrics import (
    REQUEST_COUNT,
    REQUEST_DURATION,
    REQUEST_IN_FLIGHT,
)

_NAMED_SEGMENTS = {"databases": "{database_name}", "tables": "{table_name}"}
_FILE_ENDPOINTS = {"image", "thumbnail", "text", "csv", "preview"}


def normalize_path(path: str) -> str:
    """
    Replace database, table and file name segments with placeholders.

    Examples:
        /api/databases/catalog/tables -> /api/databases/{database_name}/tables
        /api/databases/catalog/tables/items/data ->
            /api/databases/{database_name}/tables/{table_name}/data
        /api/oss/thumbnail/a/b.png -> /api/oss/thumbnail/{file_name}
        /api/oss/download/image/a.png -> /api/oss/download/image/{file_name}
    """
    parts = [p for p in path.strip("/").split("/") if p]
    normalized: list[str] = []

    i = 0
    while i < len(parts):
        part = parts[i]
        rest = len(parts) - i - 1

        if part in _NAMED_SEGMENTS and rest >= 1:
            normalized += [part, _NAMED_SEGMENTS[part]]
            i += 2
            continue

        if part == "oss" and rest >= 2:
            endpoint = parts[i + 1]
            if endpoint in _FILE_ENDPOINTS:
                normalized += ["oss", endpoint, "{file_name}"]
                break
            if endpoint == "download" and rest >= 3:
                normalized += ["oss", "download", parts[i + 2], "{file_name}"]
                break

        normalized.append(part)
        i += 1

    return "/" + "/".join(normalized)


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Records material_browser_requests_total, material_browser_request_duration_seconds
    and material_browser_requests_in_flight for every request except scrapes and docs.
    """

    SKIP_PATHS = frozenset({"/metrics", "/docs", "/redoc", "/openapi.json"})

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path in self.SKIP_PATHS:
            return await call_next(request)

        method = request.method
        endpoint = normalize_path(request.url.path)
        status_code = "500"

        in_flight = REQUEST_IN_FLIGHT.labels(method=method)
        in_flight.inc()
        started = time.perf_counter()
        try:
            response = await call_next(request)
            status_code = str(response.status_code)
            return response
        finally:
            REQUEST_DURATION.labels(method=method, endpoint=endpoint).observe(
                time.perf_counter() - started
            )
            REQUEST_COUNT.labels(
                method=method, endpoint=endpoint, status_code=status_code
            ).inc()
            in_flight.dec()
