"""API routers."""

from urllib.parse import quote


def content_disposition(file_name: str) -> str:
    """Attachment header value that survives non-ASCII names.

    HTTP headers are latin-1 on the wire, so the raw name goes in the RFC 5987
    ``filename*`` parameter and ``filename`` carries an ASCII fallback.
    """
    fallback = (
        file_name.encode("ascii", "replace").decode("ascii").replace("?", "_")
        .replace('"', "_").replace("\\", "_")
    )
    if fallback == file_name:
        return f'attachment; filename="{file_name}"'
    return f"attachment; filename=\"{fallback}\"; filename*=utf-8''{quote(file_name)}"
