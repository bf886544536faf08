"""Error taxonomy for the browsing core.

Infrastructure failures (ConnectionFailure, QueryFailure) are fatal to the request
and are surfaced by the web layer. MetadataUnavailable and ListingFailure are
caught inside the caches and turned into placeholders; they only escape when a
caller asks for the explicit outcome.
"""

from typing import Any


class BrowserError(Exception):
    """Base error with a machine-readable code and an HTTP status for the web layer."""

    code = "browser_error"
    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": self.code,
            "message": self.message,
            "details": self.details or None,
        }


class ConnectionFailure(BrowserError):
    """A pool could not be built or a connection could not be acquired."""

    code = "connection_failed"
    status_code = 503


class DatabaseNotFound(ConnectionFailure):
    """No database file exists for the requested logical name."""

    code = "database_not_found"
    status_code = 404


class QueryFailure(BrowserError):
    """A statement failed on an otherwise healthy connection."""

    code = "query_failed"
    status_code = 500


class MetadataUnavailable(BrowserError):
    """Schema or row-count lookup failed."""

    code = "metadata_unavailable"
    status_code = 500


class ObjectStoreFailure(BrowserError):
    """The object store rejected or failed a request."""

    code = "object_store_failed"
    status_code = 502


class ListingFailure(ObjectStoreFailure):
    """Object store listing failed."""

    code = "listing_failed"


class ObjectNotFound(BrowserError):
    """Requested object key does not exist in the bucket."""

    code = "object_not_found"
    status_code = 404


class InvalidRequest(BrowserError):
    """Caller supplied an unusable name or paging value."""

    code = "invalid_request"
    status_code = 400
