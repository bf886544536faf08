"""Tests for database browsing endpoints."""

import csv
import io

from fastapi.testclient import TestClient

from material_browser.config import settings

from conftest import create_database


def _read_csv(text: str) -> list[list[str]]:
    return list(csv.reader(io.StringIO(text)))


class TestListDatabases:
    """Tests for GET /api/databases."""

    def test_list_databases(self, client: TestClient, catalog_db, services):
        response = client.get("/api/databases")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["databases"] == ["catalog"]

    def test_list_databases_missing_directory(self, client: TestClient, services, missing_data_dir):
        """Test that an unreachable databases directory maps to 503."""
        response = client.get("/api/databases")

        assert response.status_code == 503
        assert response.json()["error"] == "connection_failed"


class TestListTables:
    """Tests for GET /api/databases/{database_name}/tables."""

    def test_list_tables(self, client: TestClient, catalog_db, services):
        response = client.get("/api/databases/catalog/tables")

        assert response.status_code == 200
        data = response.json()
        assert data["database"] == "catalog"

        tables = {t["name"]: t for t in data["tables"]}
        assert sorted(tables) == ["events", "items", "notes"]

        items = tables["items"]
        assert items["column_count"] == 4
        assert items["row_count"] == 5
        assert items["available"] is True
        assert items["columns"][0]["name"] == "id"
        assert items["columns"][0]["nullable"] is False

    def test_unknown_database(self, client: TestClient, catalog_db, services):
        response = client.get("/api/databases/nowhere/tables")

        assert response.status_code == 404
        data = response.json()
        assert data["success"] is False
        assert data["error"] == "database_not_found"

    def test_invalid_database_name(self, client: TestClient, catalog_db, services):
        response = client.get("/api/databases/bad.name/tables")

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"


class TestTableData:
    """Tests for GET /api/databases/{database_name}/tables/{table_name}/data."""

    def test_first_page(self, client: TestClient, catalog_db, services):
        response = client.get("/api/databases/catalog/tables/items/data?limit=2")

        assert response.status_code == 200
        data = response.json()
        assert data["columns"] == ["id", "name", "price", "added", "image", "text"]
        assert data["row_count"] == 2
        assert data["total_count"] == 5
        assert data["current_page"] == 1
        assert data["has_next"] is True
        assert data["has_previous"] is False
        assert data["strategy"] == "offset"

        first = data["rows"][0]
        assert first[0] == 1
        assert first[4]["file_name"] == "1.png"
        assert first[4]["exists"] is True
        assert first[4]["load_async"] is True
        assert first[5]["file_name"] == "1.txt"

        second = data["rows"][1]
        assert second[4]["file_name"] == "2.jpg"
        assert second[5] == {
            "file_name": None,
            "exists": False,
            "load_async": False,
            "state": "absent",
        }

    def test_offset_page(self, client: TestClient, catalog_db, services):
        response = client.get("/api/databases/catalog/tables/events/data?limit=10&offset=40")

        data = response.json()
        assert [row[0] for row in data["rows"]] == list(range(40, 50))
        assert data["has_next"] is False
        assert data["has_previous"] is True
        assert data["current_page"] == 5

    def test_default_page_size(self, client: TestClient, catalog_db, services):
        response = client.get("/api/databases/catalog/tables/events/data")

        data = response.json()
        assert data["page_size"] == settings.default_page_size
        assert data["row_count"] == 50

    def test_zero_limit_rejected(self, client: TestClient, catalog_db, services):
        response = client.get("/api/databases/catalog/tables/items/data?limit=0")

        assert response.status_code == 422

    def test_negative_offset_rejected(self, client: TestClient, catalog_db, services):
        response = client.get("/api/databases/catalog/tables/items/data?offset=-5")

        assert response.status_code == 422

    def test_degraded_attachments(self, client: TestClient, catalog_db, services, object_store):
        """Test that a failed bucket listing still returns the page."""
        object_store.failing_buckets.add(settings.text_bucket_name)

        response = client.get("/api/databases/catalog/tables/items/data")

        assert response.status_code == 200
        data = response.json()
        assert data["attachments_degraded"] is True
        assert data["rows"][0][5]["state"] == "failed"
        assert data["rows"][0][5]["exists"] is False
        assert data["rows"][0][4]["state"] == "found"

    def test_unknown_table(self, client: TestClient, catalog_db, services):
        response = client.get("/api/databases/catalog/tables/ghost/data")

        assert response.status_code == 500
        assert response.json()["error"] == "query_failed"


class TestStatistics:
    def test_statistics(self, client: TestClient, catalog_db, services):
        response = client.get("/api/databases/catalog/statistics")

        assert response.status_code == 200
        data = response.json()
        assert data["table_count"] == 3
        assert data["total_rows"] == 58
        assert data["available"] is True


class TestCsvDownload:
    """Tests for GET /api/databases/{database_name}/tables/{table_name}/download/csv."""

    def test_current_page(self, client: TestClient, catalog_db, services):
        """Test that the page export includes attachment file names."""
        response = client.get("/api/databases/catalog/tables/items/download/csv")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert 'filename="catalog_items_current_page.csv"' in response.headers["content-disposition"]

        rows = _read_csv(response.text)
        assert rows[0] == ["id", "name", "price", "added", "image", "text"]
        assert rows[1] == ["1", "Lamp", "19.9", "2024-01-05", "1.png", "1.txt"]
        assert rows[3][1] == "Desk, oak"
        assert rows[3][4:] == ["", "3.csv"]
        assert len(rows) == 6

    def test_full_data(self, client: TestClient, catalog_db, services):
        """Test that the full export streams every row and renders NULL."""
        response = client.get("/api/databases/catalog/tables/events/download/csv?full_data=true")

        assert response.status_code == 200
        assert 'filename="catalog_events_complete_data.csv"' in response.headers["content-disposition"]

        rows = _read_csv(response.text)
        assert rows[0] == ["event_id", "label"]
        assert len(rows) == 51
        assert rows[50] == ["49", "event 49"]

    def test_full_data_nulls(self, client: TestClient, catalog_db, services):
        response = client.get("/api/databases/catalog/tables/items/download/csv?full_data=true")

        rows = _read_csv(response.text)
        assert rows[0] == ["id", "name", "price", "added"]
        assert rows[4] == ["4", "Rug", "NULL", "NULL"]

    def test_full_data_unknown_database(self, client: TestClient, catalog_db, services):
        response = client.get("/api/databases/nowhere/tables/items/download/csv?full_data=true")

        assert response.status_code == 404

    def test_non_ascii_table_name(self, client: TestClient, temp_data_dir, services):
        """Test that both exports of a non-ASCII table name carry an RFC 5987 filename."""
        create_database(
            temp_data_dir["duckdb_dir"],
            "shop",
            [
                'CREATE TABLE "材料" (id INTEGER PRIMARY KEY, name VARCHAR)',
                "INSERT INTO \"材料\" VALUES (1, 'bolt'), (2, 'nut')",
            ],
        )

        page = client.get("/api/databases/shop/tables/材料/download/csv")
        full = client.get("/api/databases/shop/tables/材料/download/csv?full_data=true")

        assert page.status_code == 200
        assert page.headers["content-disposition"] == (
            "attachment; filename=\"shop___current_page.csv\"; "
            "filename*=utf-8''shop_%E6%9D%90%E6%96%99_current_page.csv"
        )
        assert full.status_code == 200
        assert full.headers["content-disposition"].endswith(
            "filename*=utf-8''shop_%E6%9D%90%E6%96%99_complete_data.csv"
        )
        assert _read_csv(full.text) == [["id", "name"], ["1", "bolt"], ["2", "nut"]]

    def test_full_data_without_cached_columns(
        self, client: TestClient, catalog_db, services, monkeypatch
    ):
        """Test that the header falls back to the first row's field names."""
        monkeypatch.setattr(services.metadata, "get_columns", lambda database, table: [])

        response = client.get("/api/databases/catalog/tables/events/download/csv?full_data=true")

        assert response.status_code == 200
        rows = _read_csv(response.text)
        assert rows[0] == ["event_id", "label"]
        assert rows[1] == ["0", "event 0"]
        assert len(rows) == 51
