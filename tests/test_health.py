"""Smoke tests for application health and database initialization."""

from app.repositories.duckdb_repo import DuckDBRepo
from helpers import FakeDetector


def test_db_creates_all_tables(db: DuckDBRepo) -> None:
    """DuckDB schema initialization creates all tables."""
    tables = db.connection.execute("SHOW TABLES").fetchall()
    table_names = sorted(t[0] for t in tables)
    assert table_names == ["evaluation_runs", "run_boxes", "run_images"]


def test_schema_initialization_is_idempotent(db: DuckDBRepo) -> None:
    db.initialize_schema()
    tables = db.connection.execute("SHOW TABLES").fetchall()
    assert len(tables) == 3


async def test_health_endpoint(make_app_client) -> None:
    """GET /health returns status ok."""
    client, _ = make_app_client(FakeDetector({}))
    async with client:
        response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
