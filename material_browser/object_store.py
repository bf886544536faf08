"""Object store access and the cached bucket listings used for attachment matching.

ObjectStore is the narrow interface the rest of the service depends on. S3ObjectStore
implements it with boto3 against any S3-compatible endpoint.

ObjectListingCache keeps two TTL caches:
- listing:   bucket -> frozenset of every key in the bucket
- existence: (bucket, key) -> bool, seeded by batch checks and single lookups

A listing failure is reported as an empty, uncached ListingResult with ok=False so
callers can tell "no files" apart from "could not look".
"""

import time
from dataclasses import dataclass
from typing import IO, Callable, Iterable, Iterator, Protocol

import boto3
import structlog
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from material_browser import metrics
from material_browser.cache import TTLCache
from material_browser.config import settings
from material_browser.exceptions import (
    ListingFailure,
    ObjectNotFound,
    ObjectStoreFailure,
)

logger = structlog.get_logger()

_NOT_FOUND_CODES = {"NoSuchKey", "NoSuchBucket", "404", "NotFound"}


class ObjectStore(Protocol):
    """Minimal object store surface: read, list and existence checks."""

    def get_object(self, bucket: str, key: str) -> IO[bytes]:
        ...

    def list_objects(self, bucket: str) -> Iterator[str]:
        ...

    def object_exists(self, bucket: str, key: str) -> bool:
        ...


class S3ObjectStore:
    """ObjectStore backed by boto3. Transport timeouts and retries come from botocore."""

    def __init__(self, client=None):
        if client is None:
            client = boto3.client(
                "s3",
                region_name=settings.s3_region,
                endpoint_url=settings.s3_endpoint_url,
                aws_access_key_id=settings.s3_access_key_id,
                aws_secret_access_key=settings.s3_secret_access_key,
                config=BotoConfig(
                    connect_timeout=settings.s3_connect_timeout,
                    read_timeout=settings.s3_read_timeout,
                    retries={"max_attempts": settings.s3_max_attempts, "mode": "standard"},
                ),
            )
        self._s3 = client

    @staticmethod
    def _is_not_found(err: Exception) -> bool:
        if isinstance(err, ClientError):
            code = err.response.get("Error", {}).get("Code", "")
            return code in _NOT_FOUND_CODES
        return False

    def get_object(self, bucket: str, key: str) -> IO[bytes]:
        start_time = time.time()
        try:
            resp = self._s3.get_object(Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            metrics.OBJECT_STORE_OPERATIONS.labels(operation="get", status="error").inc()
            if self._is_not_found(e):
                raise ObjectNotFound(
                    f"Object not found: {key}", details={"bucket": bucket, "key": key}
                ) from e
            raise ObjectStoreFailure(
                f"Failed to read {key}: {e}", details={"bucket": bucket, "key": key}
            ) from e
        finally:
            metrics.OBJECT_STORE_DURATION.labels(operation="get").observe(
                time.time() - start_time
            )

        metrics.OBJECT_STORE_OPERATIONS.labels(operation="get", status="success").inc()
        return resp["Body"]

    def list_objects(self, bucket: str) -> Iterator[str]:
        """Yield every key in the bucket, following continuation tokens."""
        paginator = self._s3.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=bucket):
                for obj in page.get("Contents", []):
                    yield obj["Key"]
        except (ClientError, BotoCoreError) as e:
            metrics.OBJECT_STORE_OPERATIONS.labels(operation="list", status="error").inc()
            raise ListingFailure(
                f"Failed to list bucket {bucket}: {e}", details={"bucket": bucket}
            ) from e

        metrics.OBJECT_STORE_OPERATIONS.labels(operation="list", status="success").inc()

    def object_exists(self, bucket: str, key: str) -> bool:
        start_time = time.time()
        try:
            self._s3.head_object(Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            if self._is_not_found(e):
                metrics.OBJECT_STORE_OPERATIONS.labels(operation="exists", status="success").inc()
                return False
            metrics.OBJECT_STORE_OPERATIONS.labels(operation="exists", status="error").inc()
            raise ObjectStoreFailure(
                f"Failed to check {key}: {e}", details={"bucket": bucket, "key": key}
            ) from e
        finally:
            metrics.OBJECT_STORE_DURATION.labels(operation="exists").observe(
                time.time() - start_time
            )

        metrics.OBJECT_STORE_OPERATIONS.labels(operation="exists", status="success").inc()
        return True


@dataclass(frozen=True)
class ListingResult:
    """Keys of one bucket and whether the listing actually succeeded."""

    bucket: str
    keys: frozenset[str]
    ok: bool = True
    error: str | None = None

    def __contains__(self, key: object) -> bool:
        return key in self.keys

    def __len__(self) -> int:
        return len(self.keys)


class ObjectListingCache:
    """TTL-cached full bucket listings plus a per-key existence cache."""

    def __init__(
        self,
        store: ObjectStore,
        ttl: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        ttl = ttl or settings.listing_cache_ttl
        self.listings: TTLCache[str, frozenset[str]] = TTLCache("listing", ttl, clock=clock)
        self.existence: TTLCache[tuple[str, str], bool] = TTLCache("existence", ttl, clock=clock)

    def _load_listing(self, bucket: str) -> frozenset[str]:
        start_time = time.time()
        try:
            keys = frozenset(self.store.list_objects(bucket))
        finally:
            metrics.OBJECT_STORE_DURATION.labels(operation="list").observe(
                time.time() - start_time
            )

        metrics.OBJECT_LISTING_KEYS.labels(bucket=bucket).set(len(keys))
        logger.info(
            "listing_refreshed",
            bucket=bucket,
            key_count=len(keys),
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return keys

    def fetch_listing(self, bucket: str) -> ListingResult:
        """Return the cached listing of a bucket, listing it again when stale."""
        try:
            keys = self.listings.get_or_compute(bucket, lambda: self._load_listing(bucket))
        except ObjectStoreFailure as e:
            logger.warning("listing_failed", bucket=bucket, error=e.message)
            return ListingResult(bucket=bucket, keys=frozenset(), ok=False, error=e.message)
        return ListingResult(bucket=bucket, keys=keys)

    def get_listing(self, bucket: str) -> frozenset[str]:
        return self.fetch_listing(bucket).keys

    def refresh(self, bucket: str) -> ListingResult:
        """Drop the cached listing and list the bucket again."""
        self.listings.invalidate(bucket)
        return self.fetch_listing(bucket)

    def exists_in_bucket(self, bucket: str, key: str) -> bool:
        """
        Check whether key exists in bucket.

        Order: existence cache, then a still-valid listing, then a remote lookup.
        Remote lookup failures answer False and are not cached.
        """
        cache_key = (bucket, key)
        cached, found = self.existence.get(cache_key)
        if found:
            return bool(cached)

        if self.listings.is_valid(bucket):
            entry = self.listings.peek(bucket)
            exists = entry is not None and key in entry.value
        else:
            try:
                exists = self.store.object_exists(bucket, key)
            except ObjectStoreFailure as e:
                logger.warning("existence_check_failed", bucket=bucket, key=key, error=e.message)
                return False

        self.existence.put(cache_key, exists)
        return exists

    def batch_check_exists(self, bucket: str, keys: Iterable[str]) -> dict[str, bool]:
        """Answer many existence checks from one listing, seeding the existence cache."""
        listing = self.fetch_listing(bucket)
        results = {key: key in listing.keys for key in keys}
        if listing.ok:
            for key, exists in results.items():
                self.existence.put((bucket, key), exists)
        return results

    def clear(self) -> int:
        """Empty the listing and existence caches. Returns entries removed."""
        return self.listings.clear() + self.existence.clear()

    def stats(self) -> dict[str, dict[str, float]]:
        return {
            cache.name: cache.summary()
            for cache in (self.listings, self.existence)
        }
