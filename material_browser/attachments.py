"""Content of matched attachments: images as data URIs, thumbnails, text and CSV files."""

import base64
import csv
import io
import time
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import IO, Callable

import structlog
from PIL import Image, UnidentifiedImageError

from material_browser.cache import TTLCache
from material_browser.config import settings
from material_browser.exceptions import InvalidRequest, ObjectNotFound, ObjectStoreFailure
from material_browser.object_store import ObjectListingCache, ObjectStore

logger = structlog.get_logger()

IMAGE_MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "jfif": "image/jpeg",
    "jpe": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "bmp": "image/bmp",
    "webp": "image/webp",
}

DOWNLOAD_KINDS = ("image", "text")


def image_mime_type(file_name: str) -> str:
    """MIME type by extension; unknown extensions are treated as JPEG."""
    extension = PurePosixPath(file_name).suffix.lstrip(".").lower()
    return IMAGE_MIME_TYPES.get(extension, "image/jpeg")


def to_data_uri(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


@dataclass
class CsvContent:
    file_name: str
    headers: list[str] = field(default_factory=list)
    rows: list[list[str]] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)


def parse_csv(file_name: str, text: str) -> CsvContent:
    """First non-empty line is the header row; blank lines are skipped, cells trimmed."""
    content = CsvContent(file_name=file_name)
    for record in csv.reader(io.StringIO(text)):
        cells = [cell.strip() for cell in record]
        if not any(cells):
            continue
        if not content.headers:
            content.headers = cells
        else:
            content.rows.append(cells)
    return content


class AttachmentService:
    """
    Reads attachment objects from the image and text buckets.

    Thumbnails and text previews are cached for settings.content_cache_ttl seconds.
    A failed render is cached as None so a broken object is not fetched again
    until the entry expires or the caches are cleared.
    """

    def __init__(
        self,
        store: ObjectStore,
        listings: ObjectListingCache,
        ttl: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.listings = listings
        ttl = ttl or settings.content_cache_ttl
        self.thumbnails: TTLCache[str, str | None] = TTLCache("thumbnail", ttl, clock=clock)
        self.previews: TTLCache[str, str | None] = TTLCache("preview", ttl, clock=clock)

    @staticmethod
    def bucket_for(kind: str) -> str:
        if kind == "image":
            return settings.image_bucket_name
        if kind == "text":
            return settings.text_bucket_name
        raise InvalidRequest(
            f"Unknown file kind: {kind}", details={"kind": kind, "allowed": list(DOWNLOAD_KINDS)}
        )

    def _read(self, bucket: str, file_name: str) -> bytes:
        body = self.store.get_object(bucket, file_name)
        try:
            return body.read()
        finally:
            body.close()

    def _read_text(self, file_name: str) -> str:
        data = self._read(settings.text_bucket_name, file_name)
        return data.decode("utf-8", errors="replace")

    def _require(self, bucket: str, file_name: str) -> None:
        if not self.listings.exists_in_bucket(bucket, file_name):
            raise ObjectNotFound(
                f"File not found: {file_name}", details={"bucket": bucket, "key": file_name}
            )

    # ========================================
    # Images
    # ========================================

    def image_data_uri(self, file_name: str) -> str:
        """Full image as a data URI."""
        data = self._read(settings.image_bucket_name, file_name)
        return to_data_uri(data, image_mime_type(file_name))

    def thumbnail_data_uri(self, file_name: str) -> str | None:
        """
        Thumbnail (settings.thumbnail_width x thumbnail_height, aspect preserved).

        Raises ObjectNotFound if the image does not exist; returns None if it
        exists but could not be rendered.
        """
        self._require(settings.image_bucket_name, file_name)
        return self.thumbnails.get_or_compute(
            file_name, lambda: self._render_thumbnail(file_name)
        )

    def _render_thumbnail(self, file_name: str) -> str | None:
        start_time = time.time()
        fmt = settings.thumbnail_format.lower()
        try:
            data = self._read(settings.image_bucket_name, file_name)
            with Image.open(io.BytesIO(data)) as image:
                image.thumbnail(
                    (settings.thumbnail_width, settings.thumbnail_height),
                    Image.Resampling.LANCZOS,
                )
                if fmt in ("jpeg", "jpg") and image.mode != "RGB":
                    image = image.convert("RGB")
                output = io.BytesIO()
                image.save(output, format="JPEG" if fmt == "jpg" else fmt.upper())
        except (UnidentifiedImageError, OSError, ValueError, ObjectStoreFailure) as e:
            logger.error("thumbnail_failed", file_name=file_name, error=str(e))
            return None

        logger.debug(
            "thumbnail_rendered",
            file_name=file_name,
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return to_data_uri(output.getvalue(), f"image/{'jpeg' if fmt == 'jpg' else fmt}")

    # ========================================
    # Text
    # ========================================

    def text_content(self, file_name: str) -> str:
        return self._read_text(file_name)

    def text_preview(self, file_name: str) -> str | None:
        """First settings.text_preview_length characters, with "..." when truncated."""
        self._require(settings.text_bucket_name, file_name)
        return self.previews.get_or_compute(file_name, lambda: self._render_preview(file_name))

    def _render_preview(self, file_name: str) -> str | None:
        try:
            content = self._read_text(file_name)
        except ObjectStoreFailure as e:
            logger.error("text_preview_failed", file_name=file_name, error=e.message)
            return None

        limit = settings.text_preview_length
        if len(content) > limit:
            return content[:limit] + "..."
        return content

    def csv_content(self, file_name: str) -> CsvContent:
        content = parse_csv(file_name, self._read_text(file_name))
        logger.debug("csv_parsed", file_name=file_name, rows=content.row_count)
        return content

    # ========================================
    # Downloads
    # ========================================

    def open_download(self, kind: str, file_name: str) -> IO[bytes]:
        """Open the raw object for streaming. Raises ObjectNotFound before any bytes are sent."""
        return self.store.get_object(self.bucket_for(kind), file_name)

    def clear(self) -> int:
        return self.thumbnails.clear() + self.previews.clear()

    def stats(self) -> dict[str, dict[str, float]]:
        return {
            cache.name: cache.summary()
            for cache in (self.thumbnails, self.previews)
        }
