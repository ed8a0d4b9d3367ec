"""DuckDB connection wrapper with schema initialization."""

from pathlib import Path

import duckdb


class DuckDBRepo:
    """Manages a DuckDB connection and schema lifecycle.

    Opens a single persistent connection at startup.  Callers obtain
    cursors via ``connection.cursor()`` for concurrent read access.
    """

    def __init__(self, db_path: str | Path) -> None:
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.connection: duckdb.DuckDBPyConnection = duckdb.connect(str(db_path))
        self.connection.execute("PRAGMA threads=4")

    def initialize_schema(self) -> None:
        """Create evaluation tables if they do not already exist.

        Summaries live in ``evaluation_runs`` so listing never touches the
        (much larger) per-box table.
        """
        self.connection.execute("""
            CREATE TABLE IF NOT EXISTS evaluation_runs (
                id                   VARCHAR NOT NULL,
                created_at           TIMESTAMP DEFAULT current_timestamp,
                model_version        VARCHAR NOT NULL,
                total_images         INTEGER NOT NULL,
                confidence_threshold DOUBLE NOT NULL,
                iou_threshold        DOUBLE NOT NULL,
                metrics              JSON NOT NULL
            )
        """)

        self.connection.execute("""
            CREATE TABLE IF NOT EXISTS run_images (
                run_id          VARCHAR NOT NULL,
                image_index     INTEGER NOT NULL,
                file_name       VARCHAR NOT NULL
            )
        """)

        self.connection.execute("""
            CREATE TABLE IF NOT EXISTS run_boxes (
                run_id          VARCHAR NOT NULL,
                image_index     INTEGER NOT NULL,
                box_index       INTEGER NOT NULL,
                source          VARCHAR NOT NULL,
                class_name      VARCHAR NOT NULL,
                x               DOUBLE NOT NULL,
                y               DOUBLE NOT NULL,
                width           DOUBLE NOT NULL,
                height          DOUBLE NOT NULL,
                confidence      DOUBLE
            )
        """)

    def close(self) -> None:
        """Close the underlying DuckDB connection."""
        self.connection.close()
