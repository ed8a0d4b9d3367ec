"""Detection evaluation FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import get_settings
from app.repositories.duckdb_repo import DuckDBRepo
from app.repositories.run_repository import RunRepository
from app.repositories.storage import StorageBackend
from app.services.detector import HttpDetector, TokenProvider
from app.services.evaluation_service import EvaluationService
from app.services.image_service import ImageService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application startup and shutdown.

    On startup:
    - Create DuckDB connection and initialize schema.
    - Create StorageBackend, RunRepository, ImageService.
    - Create the shared httpx client, token provider and detector.
    - Store all services on app.state for dependency injection.

    On shutdown:
    - Close the httpx client.
    - Close DuckDB connection.
    """
    settings = get_settings()

    # Database
    db = DuckDBRepo(settings.db_path)
    db.initialize_schema()
    app.state.db = db

    # Storage and persistence
    storage = StorageBackend()
    run_repository = RunRepository(
        db=db, storage=storage, export_dir=Path(settings.export_dir)
    )
    app.state.run_repository = run_repository

    # Detection endpoint (transport timeout only; no per-call timeout by default)
    http_client = httpx.AsyncClient(timeout=httpx.Timeout(60.0))
    token_provider = None
    if settings.token_url:
        token_provider = TokenProvider(
            http_client,
            token_url=settings.token_url,
            client_id=settings.client_id,
            client_secret=settings.client_secret,
        )
    detector = HttpDetector(
        http_client,
        url=settings.detector_url,
        api_key=settings.detector_api_key,
        token_provider=token_provider,
    )
    if not settings.detector_url:
        logger.warning("DETEVAL_DETECTOR_URL is not set; detection calls will fail")

    app.state.evaluation_service = EvaluationService(
        repository=run_repository,
        storage=storage,
        image_service=ImageService(storage=storage),
        detect=detector.detect,
        settings=settings,
    )

    yield

    # Shutdown
    await http_client.aclose()
    db.connection.execute("CHECKPOINT")
    db.close()


app = FastAPI(
    title="Detection Evaluation",
    description="Batch evaluation of object-detection endpoints against ground truth",
    version="0.1.0",
    lifespan=lifespan,
)

# In local dev: allow the frontend dev server origin.
settings = get_settings()
if not settings.behind_proxy:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# Router includes
from app.routers import evaluations  # noqa: E402

app.include_router(evaluations.router)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Simple health check endpoint."""
    return {"status": "ok"}
