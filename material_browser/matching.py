"""Bulk identifier -> object key matching against cached bucket listings.

An identifier matches ``identifier + ext`` for the first extension (in the given
priority order) whose key is present in the bucket listing. Small batches run
sequentially; larger ones are partitioned across a thread pool where each worker
fills its own dict, merged once all workers finish.
"""

import math
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, Sequence

import structlog

from material_browser import metrics
from material_browser.config import settings
from material_browser.object_store import ObjectListingCache

logger = structlog.get_logger()


def find_match(
    identifier: str, keys: frozenset[str], extensions: Sequence[str]
) -> str | None:
    """Return the first ``identifier + ext`` present in keys, or None."""
    for ext in extensions:
        candidate = identifier + ext
        if candidate in keys:
            return candidate
    return None


def _normalize(identifiers: Iterable[str | None]) -> list[str]:
    """Trim, drop blanks and duplicates, keep first-seen order."""
    seen: dict[str, None] = {}
    for identifier in identifiers:
        if identifier is None:
            continue
        trimmed = str(identifier).strip()
        if trimmed:
            seen.setdefault(trimmed, None)
    return list(seen)


def _match_chunk(
    chunk: Sequence[str], keys: frozenset[str], extensions: Sequence[str]
) -> dict[str, str | None]:
    return {identifier: find_match(identifier, keys, extensions) for identifier in chunk}


@dataclass(frozen=True)
class BatchMatchResult:
    """Matches for one bucket plus whether the listing behind them was available."""

    bucket: str
    matches: dict[str, str | None] = field(default_factory=dict)
    ok: bool = True
    strategy: str = "sequential"
    error: str | None = None

    @property
    def degraded(self) -> bool:
        return not self.ok

    @property
    def match_count(self) -> int:
        return sum(1 for key in self.matches.values() if key is not None)

    def get(self, identifier: str | None) -> str | None:
        if identifier is None:
            return None
        return self.matches.get(identifier.strip())


class BatchMatcher:
    """
    Resolve identifiers to object keys of a bucket.

    Args:
        listings: Listing cache the bucket keys are read from
        parallel_threshold: Batches larger than this run in parallel
        max_workers: Upper bound on worker threads for parallel batches
    """

    def __init__(
        self,
        listings: ObjectListingCache,
        parallel_threshold: int | None = None,
        max_workers: int | None = None,
    ):
        self.listings = listings
        self.parallel_threshold = (
            settings.match_parallel_threshold if parallel_threshold is None else parallel_threshold
        )
        self.max_workers = max_workers or settings.match_max_workers

    def match_all(
        self,
        bucket: str,
        identifiers: Iterable[str | None],
        extensions: Sequence[str],
    ) -> dict[str, str | None]:
        return self.match_batch(bucket, identifiers, extensions).matches

    def match_batch(
        self,
        bucket: str,
        identifiers: Iterable[str | None],
        extensions: Sequence[str],
    ) -> BatchMatchResult:
        ids = _normalize(identifiers)
        if not ids:
            return BatchMatchResult(bucket=bucket)

        listing = self.listings.fetch_listing(bucket)
        strategy = "sequential" if len(ids) <= self.parallel_threshold else "parallel"

        start_time = time.time()
        if strategy == "sequential":
            matches = _match_chunk(ids, listing.keys, extensions)
        else:
            matches = self._match_parallel(ids, listing.keys, extensions)
        duration = time.time() - start_time

        result = BatchMatchResult(
            bucket=bucket,
            matches=matches,
            ok=listing.ok,
            strategy=strategy,
            error=listing.error,
        )

        metrics.MATCH_BATCHES.labels(strategy=strategy).inc()
        metrics.MATCH_DURATION.labels(strategy=strategy).observe(duration)
        metrics.MATCH_HITS.labels(bucket=bucket).inc(result.match_count)

        logger.info(
            "batch_match_completed",
            bucket=bucket,
            strategy=strategy,
            identifiers=len(ids),
            matched=result.match_count,
            listing_ok=listing.ok,
            duration_ms=round(duration * 1000, 2),
        )
        return result

    def _match_parallel(
        self, ids: list[str], keys: frozenset[str], extensions: Sequence[str]
    ) -> dict[str, str | None]:
        workers = min(self.max_workers, len(ids))
        chunk_size = math.ceil(len(ids) / workers)
        chunks = [ids[i:i + chunk_size] for i in range(0, len(ids), chunk_size)]

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="match") as executor:
            partials = list(
                executor.map(lambda chunk: _match_chunk(chunk, keys, extensions), chunks)
            )

        merged: dict[str, str | None] = {}
        for partial in partials:
            merged.update(partial)
        return merged
