"""Pytest configuration and fixtures."""

import io
import tempfile
from pathlib import Path

import duckdb
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from material_browser.config import settings
from material_browser.dependencies import build_services, reset_services, set_services
from material_browser.exceptions import ListingFailure, ObjectNotFound
from material_browser.main import app
from material_browser.pool import ConnectionPoolRegistry


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryObjectStore:
    """ObjectStore double holding bucket contents in dicts and counting calls."""

    def __init__(self):
        self.buckets: dict[str, dict[str, bytes]] = {}
        self.failing_buckets: set[str] = set()
        self.list_calls = 0
        self.get_calls = 0
        self.exists_calls = 0

    def put(self, bucket: str, key: str, data: bytes | str) -> None:
        if isinstance(data, str):
            data = data.encode("utf-8")
        self.buckets.setdefault(bucket, {})[key] = data

    def get_object(self, bucket: str, key: str):
        self.get_calls += 1
        try:
            return io.BytesIO(self.buckets[bucket][key])
        except KeyError:
            raise ObjectNotFound(f"Object not found: {key}", details={"bucket": bucket, "key": key})

    def list_objects(self, bucket: str):
        self.list_calls += 1
        if bucket in self.failing_buckets:
            raise ListingFailure(f"Failed to list bucket {bucket}", details={"bucket": bucket})
        yield from sorted(self.buckets.get(bucket, {}))

    def object_exists(self, bucket: str, key: str) -> bool:
        self.exists_calls += 1
        return key in self.buckets.get(bucket, {})


def png_bytes(size: tuple[int, int] = (400, 300), color: str = "red") -> bytes:
    output = io.BytesIO()
    Image.new("RGB", size, color).save(output, format="PNG")
    return output.getvalue()


def create_database(duckdb_dir: Path, name: str, statements: list[str]) -> Path:
    """Create a DuckDB database file and close the writer before any pool opens it."""
    path = duckdb_dir / f"{name}.duckdb"
    conn = duckdb.connect(str(path))
    try:
        for statement in statements:
            conn.execute(statement)
    finally:
        conn.close()
    return path


CATALOG_STATEMENTS = [
    """
    CREATE TABLE items (
        id INTEGER PRIMARY KEY,
        name VARCHAR,
        price DECIMAL(10, 2),
        added DATE
    )
    """,
    """
    INSERT INTO items VALUES
        (1, 'Lamp', 19.90, DATE '2024-01-05'),
        (2, 'Chair', 45.00, DATE '2024-02-11'),
        (3, 'Desk, oak', 120.50, DATE '2024-03-20'),
        (4, 'Rug', NULL, NULL),
        (5, 'Shelf', 60.00, DATE '2024-05-01')
    """,
    "CREATE TABLE notes (ID VARCHAR, body VARCHAR)",
    "INSERT INTO notes VALUES ('1', 'first'), (' 2 ', 'second'), ('', 'blank')",
    "CREATE TABLE events (event_id BIGINT PRIMARY KEY, label VARCHAR)",
    "INSERT INTO events SELECT range, 'event ' || range FROM range(50)",
]


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    return TestClient(app)


@pytest.fixture
def temp_data_dir(monkeypatch):
    """Create temporary data directories for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp_path = Path(tmpdir)

        data_dir = tmp_path / "data"
        duckdb_dir = data_dir / "databases"
        duckdb_dir.mkdir(parents=True, exist_ok=True)

        monkeypatch.setattr(settings, "data_dir", data_dir)
        monkeypatch.setattr(settings, "duckdb_dir", duckdb_dir)
        monkeypatch.setattr(settings, "pool_min_idle", 1)
        monkeypatch.setattr(settings, "pool_max_size", 4)
        monkeypatch.setattr(settings, "pool_connection_timeout", 2.0)

        yield {
            "data_dir": data_dir,
            "duckdb_dir": duckdb_dir,
        }


@pytest.fixture
def missing_data_dir(monkeypatch):
    """Configure settings with non-existent paths for testing errors."""
    nonexistent = Path("/nonexistent/path/that/does/not/exist")

    monkeypatch.setattr(settings, "data_dir", nonexistent)
    monkeypatch.setattr(settings, "duckdb_dir", nonexistent / "databases")

    yield nonexistent


@pytest.fixture
def catalog_db(temp_data_dir):
    """Database 'catalog' with tables items (PK id), notes (ID, no PK) and events."""
    return create_database(temp_data_dir["duckdb_dir"], "catalog", CATALOG_STATEMENTS)


@pytest.fixture
def object_store():
    """Object store with images for ids 1 and 2 and text files for ids 1 and 3."""
    store = InMemoryObjectStore()
    store.put(settings.image_bucket_name, "1.png", png_bytes())
    store.put(settings.image_bucket_name, "2.jpg", png_bytes(color="blue"))
    store.put(settings.image_bucket_name, "2.png", png_bytes(color="green"))
    store.put(settings.image_bucket_name, "broken.jpg", b"not an image")
    store.put(settings.text_bucket_name, "1.txt", "x" * 150)
    store.put(settings.text_bucket_name, "3.csv", "name,qty\nbolt, 4\n\n\"nut, hex\",10\n")
    store.put(settings.text_bucket_name, "short.md", "# Title")
    return store


@pytest.fixture
def services(temp_data_dir, object_store):
    """Wire fresh services around the temp databases directory and the in-memory store."""
    built = build_services(store=object_store, registry=ConnectionPoolRegistry())
    set_services(built)
    yield built
    reset_services()
