"""SQLite engine setup and startup checks."""

import logging
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DatabaseError
from sqlmodel import SQLModel, create_engine

# Imported for table registration on SQLModel.metadata.
from clickup_orchestrator.storage import models  # noqa: F401

logger = logging.getLogger(__name__)


class CorruptStateError(RuntimeError):
    """Persisted state cannot be trusted; the service must not start."""


def create_db_engine(db_path: Path) -> Engine:
    """Create the SQLite engine shared by all stores."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )


def init_schema(engine: Engine) -> None:
    """Verify the database file and create missing tables.

    Raises:
        CorruptStateError: If SQLite reports the file as damaged or not a database
    """
    try:
        with engine.connect() as conn:
            result = conn.execute(text("PRAGMA integrity_check")).scalar()
    except DatabaseError as e:
        raise CorruptStateError(f"Database {engine.url.database} is unreadable: {e}") from e

    if result != "ok":
        raise CorruptStateError(f"Database {engine.url.database} failed integrity check: {result}")

    SQLModel.metadata.create_all(engine)
    logger.info(f"[Database] Schema ready at {engine.url.database}")
