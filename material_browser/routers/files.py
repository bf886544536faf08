"""Attachment content endpoints backed by the object store.

Images and text documents matched to table rows are loaded lazily by the client
through these endpoints (the table data only carries file names).
"""

from pathlib import PurePosixPath
from typing import IO, Iterator

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from material_browser.attachments import AttachmentService
from material_browser.config import settings
from material_browser.dependencies import get_attachments
from material_browser.models.responses import (
    CsvResponse,
    ErrorResponse,
    ImageResponse,
    TextPreviewResponse,
    TextResponse,
)
from material_browser.routers import content_disposition

logger = structlog.get_logger()
router = APIRouter(prefix=f"{settings.api_prefix}/oss", tags=["files"])

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
}

DOWNLOAD_CHUNK_SIZE = 64 * 1024


def _is_csv(file_name: str) -> bool:
    return PurePosixPath(file_name).suffix.lower() == ".csv"


def _iter_body(body: IO[bytes]) -> Iterator[bytes]:
    try:
        while True:
            chunk = body.read(DOWNLOAD_CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    finally:
        body.close()


@router.get(
    "/image/{file_name:path}",
    response_model=ImageResponse,
    responses=ERROR_RESPONSES,
    summary="Full image",
    description="Full image as a base64 data URI (MIME type by extension).",
)
def get_image(
    file_name: str,
    attachments: AttachmentService = Depends(get_attachments),
) -> ImageResponse:
    logger.info("get_image", file_name=file_name)
    return ImageResponse(file_name=file_name, data_uri=attachments.image_data_uri(file_name))


@router.get(
    "/thumbnail/{file_name:path}",
    response_model=ImageResponse,
    responses=ERROR_RESPONSES,
    summary="Image thumbnail",
    description="Cached thumbnail data URI. data_uri is null if the image could not be rendered.",
)
def get_thumbnail(
    file_name: str,
    attachments: AttachmentService = Depends(get_attachments),
) -> ImageResponse:
    return ImageResponse(
        file_name=file_name, data_uri=attachments.thumbnail_data_uri(file_name)
    )


@router.get(
    "/text/{file_name:path}",
    response_model=TextResponse | CsvResponse,
    responses=ERROR_RESPONSES,
    summary="Full text",
    description="Full text content. CSV files are returned parsed (headers, rows).",
)
def get_text(
    file_name: str,
    attachments: AttachmentService = Depends(get_attachments),
) -> TextResponse | CsvResponse:
    logger.info("get_text", file_name=file_name)
    if _is_csv(file_name):
        return get_csv(file_name, attachments)
    return TextResponse(file_name=file_name, content=attachments.text_content(file_name))


@router.get(
    "/csv/{file_name:path}",
    response_model=CsvResponse,
    responses=ERROR_RESPONSES,
    summary="Parsed CSV file",
)
def get_csv(
    file_name: str,
    attachments: AttachmentService = Depends(get_attachments),
) -> CsvResponse:
    content = attachments.csv_content(file_name)
    return CsvResponse(
        file_name=content.file_name,
        headers=content.headers,
        rows=content.rows,
        row_count=content.row_count,
    )


@router.get(
    "/preview/{file_name:path}",
    response_model=TextPreviewResponse,
    responses=ERROR_RESPONSES,
    summary="Text preview",
    description="Cached text preview, truncated to the configured length with '...'.",
)
def get_text_preview(
    file_name: str,
    attachments: AttachmentService = Depends(get_attachments),
) -> TextPreviewResponse:
    return TextPreviewResponse(file_name=file_name, preview=attachments.text_preview(file_name))


@router.get(
    "/download/{kind}/{file_name:path}",
    responses=ERROR_RESPONSES,
    summary="Download file",
    description="Stream the raw object as an attachment. kind is 'image' or 'text'.",
)
def download_file(
    kind: str,
    file_name: str,
    attachments: AttachmentService = Depends(get_attachments),
) -> StreamingResponse:
    logger.info("download_file", kind=kind, file_name=file_name)
    headers = {"Content-Disposition": content_disposition(PurePosixPath(file_name).name)}
    body = attachments.open_download(kind, file_name)
    return StreamingResponse(
        _iter_body(body),
        media_type="application/octet-stream",
        headers=headers,
    )
