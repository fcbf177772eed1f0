import logging
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url

from bizdir.core.config import settings

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
_database_url_override: Optional[str] = None


def _report_connection_failure(database_url: str, exc: Exception) -> None:
    """Log high-signal diagnostics when the application cannot reach the database."""
    logger.warning("Could not connect to database: %s", exc)
    logger.warning("The application will start but database operations will fail until the connection succeeds.")

    try:
        url = make_url(database_url)
    except Exception as parse_error:  # pragma: no cover
        logger.warning("Unable to parse DATABASE_URL (%s); skipping detailed diagnostics.", parse_error)
        return

    logger.warning(
        "Database connection settings: dialect=%s driver=%s host=%s port=%s database=%s username=%s",
        url.get_backend_name(),
        url.get_driver_name() or "default",
        url.host or "localhost",
        url.port or "(default)",
        url.database,
        url.username,
    )


def _build_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Import jobs run on worker threads
        connect_args["check_same_thread"] = False
    return create_engine(database_url, connect_args=connect_args)


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        database_url = _database_url_override or settings.database_url
        try:
            _engine = _build_engine(database_url)
            # Test connection eagerly so failures surface immediately.
            with _engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            _report_connection_failure(database_url, e)
            # Create the engine anyway so callers can proceed (may still fail later).
            _engine = _build_engine(database_url)
    return _engine


def configure_engine(database_url: Optional[str]) -> Engine:
    """Point the process at a different database (used by tests and scripts)."""
    global _engine, _database_url_override
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _database_url_override = database_url
    return get_engine()
