"""Detection evaluation service configuration using Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Evaluation service settings.

    All fields can be overridden via environment variables with
    the DETEVAL_ prefix (e.g., DETEVAL_DETECTOR_URL).
    """

    db_path: Path = Path("data/evaluations.duckdb")
    export_dir: Path = Path("data/exports")
    host: str = "0.0.0.0"
    port: int = 8000
    behind_proxy: bool = False

    # Remote detection endpoint
    detector_url: str = ""
    detector_api_key: str | None = None
    token_url: str | None = None
    client_id: str = ""
    client_secret: str = ""
    model_version: str = "v1"

    # Batch orchestration
    batch_size: int = 4
    retry_attempts: int = 2
    retry_delay_seconds: float = 1.0
    inter_batch_delay_seconds: float = 0.1
    detect_timeout_seconds: float | None = None

    default_confidence_threshold: float = 0.5
    default_iou_threshold: float = 0.5

    model_config = {
        "env_prefix": "DETEVAL_",
        "env_file": ".env",
        "extra": "ignore",
        "protected_namespaces": (),
    }


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings (singleton)."""
    return Settings()
