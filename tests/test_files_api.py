"""Tests for attachment content endpoints under /api/oss."""

import base64

from fastapi.testclient import TestClient

from material_browser.config import settings


class TestImageEndpoints:
    """Tests for full images and thumbnails."""

    def test_image(self, client: TestClient, services, object_store):
        response = client.get("/api/oss/image/1.png")

        assert response.status_code == 200
        data = response.json()
        assert data["file_name"] == "1.png"
        header, payload = data["data_uri"].split(",", 1)
        assert header == "data:image/png;base64"
        assert base64.b64decode(payload) == object_store.buckets["images"]["1.png"]

    def test_missing_image(self, client: TestClient, services):
        response = client.get("/api/oss/image/404.png")

        assert response.status_code == 404
        data = response.json()
        assert data["success"] is False
        assert data["error"] == "object_not_found"

    def test_thumbnail(self, client: TestClient, services):
        response = client.get("/api/oss/thumbnail/2.jpg")

        assert response.status_code == 200
        assert response.json()["data_uri"].startswith("data:image/jpeg;base64,")

    def test_broken_thumbnail_is_null(self, client: TestClient, services):
        """Test that an unrenderable image yields data_uri=null rather than an error."""
        response = client.get("/api/oss/thumbnail/broken.jpg")

        assert response.status_code == 200
        assert response.json()["data_uri"] is None

    def test_missing_thumbnail(self, client: TestClient, services):
        response = client.get("/api/oss/thumbnail/nothing.png")

        assert response.status_code == 404


class TestTextEndpoints:
    """Tests for text content, previews and CSV parsing."""

    def test_text(self, client: TestClient, services):
        response = client.get("/api/oss/text/short.md")

        assert response.status_code == 200
        assert response.json()["content"] == "# Title"

    def test_text_csv_is_parsed(self, client: TestClient, services):
        response = client.get("/api/oss/text/3.csv")

        assert response.status_code == 200
        data = response.json()
        assert data["headers"] == ["name", "qty"]
        assert data["rows"] == [["bolt", "4"], ["nut, hex", "10"]]
        assert data["row_count"] == 2

    def test_csv(self, client: TestClient, services):
        response = client.get("/api/oss/csv/3.csv")

        assert response.status_code == 200
        assert response.json()["file_name"] == "3.csv"

    def test_preview(self, client: TestClient, services):
        response = client.get("/api/oss/preview/1.txt")

        assert response.status_code == 200
        preview = response.json()["preview"]
        assert preview == "x" * 100 + "..."

    def test_missing_text(self, client: TestClient, services):
        assert client.get("/api/oss/text/missing.txt").status_code == 404
        assert client.get("/api/oss/preview/missing.txt").status_code == 404


class TestDownload:
    """Tests for GET /api/oss/download/{kind}/{file_name}."""

    def test_download_text(self, client: TestClient, services):
        response = client.get("/api/oss/download/text/short.md")

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/octet-stream"
        assert response.headers["content-disposition"] == 'attachment; filename="short.md"'
        assert response.content == b"# Title"

    def test_download_image(self, client: TestClient, services, object_store):
        response = client.get("/api/oss/download/image/2.png")

        assert response.status_code == 200
        assert response.content == object_store.buckets["images"]["2.png"]

    def test_download_non_ascii_name(self, client: TestClient, services, object_store):
        """Test that a non-ASCII object name is sent as an RFC 5987 filename."""
        object_store.put(settings.image_bucket_name, "材料 1.png", b"png bytes")

        response = client.get("/api/oss/download/image/材料 1.png")

        assert response.status_code == 200
        disposition = response.headers["content-disposition"]
        assert disposition == (
            "attachment; filename=\"__ 1.png\"; filename*=utf-8''%E6%9D%90%E6%96%99%201.png"
        )
        assert response.content == b"png bytes"

    def test_download_nested_key_uses_base_name(self, client: TestClient, services, object_store):
        object_store.put(settings.text_bucket_name, "docs/été.txt", "bonjour")

        response = client.get("/api/oss/download/text/docs/été.txt")

        assert response.status_code == 200
        assert response.headers["content-disposition"].endswith("filename*=utf-8''%C3%A9t%C3%A9.txt")
        assert response.text == "bonjour"

    def test_download_missing(self, client: TestClient, services):
        response = client.get("/api/oss/download/image/missing.png")

        assert response.status_code == 404

    def test_download_unknown_kind(self, client: TestClient, services):
        response = client.get("/api/oss/download/video/1.png")

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"
