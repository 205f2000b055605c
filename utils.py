"""
Small helpers shared by the CLI, the app factory and recurring scheduling.

Relative paths in config.yaml are taken relative to the application
directory, so the ledger and log file land in the same place no matter
where the CLI is started from.
"""

import calendar
import logging
import os
from datetime import date
from pathlib import Path
from typing import Any, Dict, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from exceptions import ConfigError

logger = logging.getLogger(__name__)

APP_DIR = Path(__file__).resolve().parent
CONNECTION_ENV_VAR = "DB_CONNECTION_STRING"


def _app_path(value: str) -> Path:
    path = Path(value).expanduser()
    return path if path.is_absolute() else APP_DIR / path


def _make_parent(path: Path, purpose: str) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigError(
            f"Cannot create directory for {purpose}",
            details={"path": str(path.parent)},
            original_error=e,
        ) from e


def _sqlite_file(connection_string: str) -> Optional[Path]:
    """Return the database file behind a SQLite URL, or None for anything else."""
    try:
        url = make_url(connection_string)
    except ArgumentError as e:
        raise ConfigError(
            "Invalid database connection string", original_error=e
        ) from e
    if not url.drivername.startswith("sqlite"):
        return None
    if not url.database or url.database == ":memory:":
        return None
    return _app_path(url.database)


def resolve_connection_string(config: Optional[Dict[str, Any]] = None) -> str:
    """
    Pick the ledger database URL.

    DB_CONNECTION_STRING wins over database.connection_string, which wins
    over a SQLite file at database.data_dir/database.path. For SQLite files
    the parent directory is created.

    Raises:
        ConfigError: If the URL cannot be parsed or its directory created
    """
    db_config = (config or {}).get("database", {})
    connection_string = os.environ.get(CONNECTION_ENV_VAR) or db_config.get("connection_string")
    if not connection_string:
        db_file = _app_path(db_config.get("data_dir", "data")) / db_config.get("path", "finance.db")
        connection_string = f"sqlite:///{db_file.as_posix()}"

    db_file = _sqlite_file(connection_string)
    if db_file is not None:
        _make_parent(db_file, "SQLite database")
    logger.debug("Using database %s", make_url(connection_string).render_as_string())
    return connection_string


def resolve_log_path(log_path: str) -> Path:
    """Absolute path for the configured log file, with its directory created."""
    resolved = _app_path(log_path)
    _make_parent(resolved, "log file")
    return resolved


def add_months(start: date, months: int) -> date:
    """
    Shift a date by whole months, clamping the day to the target month's end.

    Jan 31 + 1 month is Feb 28 (or 29), and Feb 29 + 12 months is Feb 28.
    """
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(start.day, last_day))
