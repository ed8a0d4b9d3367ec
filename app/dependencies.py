"""FastAPI dependency injection for DuckDB and application services."""

from fastapi import Request

from app.repositories.run_repository import RunRepository
from app.services.evaluation_service import EvaluationService


def get_run_repository(request: Request) -> RunRepository:
    """Return the application-wide RunRepository stored on app.state."""
    return request.app.state.run_repository


def get_evaluation_service(request: Request) -> EvaluationService:
    """Return the application-wide EvaluationService stored on app.state."""
    return request.app.state.evaluation_service
