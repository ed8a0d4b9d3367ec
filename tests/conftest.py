"""Shared pytest fixtures for detection evaluation tests."""

from collections.abc import Callable
from pathlib import Path

import httpx
import pytest
from fastapi import FastAPI
from PIL import Image

from app.config import Settings
from app.repositories.duckdb_repo import DuckDBRepo
from app.repositories.run_repository import RunRepository
from app.repositories.storage import StorageBackend
from app.routers import evaluations
from app.services.evaluation_service import EvaluationService
from app.services.image_service import ImageService


@pytest.fixture()
def tmp_db_path(tmp_path: Path) -> Path:
    """Return a temporary DuckDB file path."""
    return tmp_path / "test.duckdb"


@pytest.fixture()
def db(tmp_db_path: Path) -> DuckDBRepo:
    """Create a DuckDBRepo with a temporary database, initialize schema, then close."""
    repo = DuckDBRepo(tmp_db_path)
    repo.initialize_schema()
    yield repo
    repo.close()


@pytest.fixture()
def storage() -> StorageBackend:
    return StorageBackend()


@pytest.fixture()
def run_repository(
    db: DuckDBRepo, storage: StorageBackend, tmp_path: Path
) -> RunRepository:
    return RunRepository(db=db, storage=storage, export_dir=tmp_path / "exports")


@pytest.fixture()
def test_settings(tmp_path: Path) -> Settings:
    """Settings with no backoff or inter-group delay so tests run instantly."""
    return Settings(
        db_path=tmp_path / "settings.duckdb",
        export_dir=tmp_path / "exports",
        batch_size=2,
        retry_attempts=2,
        retry_delay_seconds=0.0,
        inter_batch_delay_seconds=0.0,
    )


@pytest.fixture()
def sample_images_dir(tmp_path: Path) -> Path:
    """Create three small PNG images with distinct colors (distinct bytes)."""
    img_dir = tmp_path / "images"
    img_dir.mkdir()
    for name, color in (
        ("img_001.png", "red"),
        ("img_002.png", "green"),
        ("img_003.png", "blue"),
    ):
        Image.new("RGB", (400, 300), color=color).save(img_dir / name, "PNG")
    return img_dir


@pytest.fixture()
def make_app_client(
    run_repository: RunRepository,
    storage: StorageBackend,
    test_settings: Settings,
) -> Callable[[Callable], tuple[httpx.AsyncClient, EvaluationService]]:
    """Build a test app around the evaluations router with a given detector."""

    def _make(detect: Callable) -> tuple[httpx.AsyncClient, EvaluationService]:
        test_app = FastAPI()
        service = EvaluationService(
            repository=run_repository,
            storage=storage,
            image_service=ImageService(storage=storage),
            detect=detect,
            settings=test_settings,
        )
        test_app.state.run_repository = run_repository
        test_app.state.evaluation_service = service
        test_app.include_router(evaluations.router)

        @test_app.get("/health")
        async def health_check() -> dict[str, str]:
            return {"status": "ok"}

        client = httpx.AsyncClient(
            transport=httpx.ASGITransport(app=test_app),
            base_url="http://testserver",
        )
        return client, service

    return _make
