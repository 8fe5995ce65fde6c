"""Structured logging configuration.

Every record emitted while an estimation pass runs carries that pass's
``run_id``, so the store, client and orchestrator lines of one pass can be
pulled out of ``logs/app.log`` together.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator, Optional

from pythonjsonlogger import jsonlogger

from greener.config import settings

SERVICE_NAME = "greener"

_current_run_id: ContextVar[Optional[str]] = ContextVar("estimation_run_id", default=None)


@contextmanager
def bind_run_id(run_id: str) -> Iterator[None]:
    """Tag log records from this task (and tasks it spawns) with ``run_id``."""
    token = _current_run_id.set(run_id)
    try:
        yield
    finally:
        _current_run_id.reset(token)


class RunIdFilter(logging.Filter):
    """Copy the bound estimation run id onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        run_id = getattr(record, "run_id", None) or _current_run_id.get()
        record.run_id = run_id
        record.run_tag = f"[run {run_id[:8]}] " if run_id else ""
        return True


class EstimationJsonFormatter(jsonlogger.JsonFormatter):
    """JSON lines with service, run and source location fields."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')
        log_record['service'] = SERVICE_NAME
        log_record['level'] = record.levelname
        log_record['source'] = f"{record.module}.{record.funcName}:{record.lineno}"

        log_record.pop('run_tag', None)
        if not log_record.get('run_id'):
            log_record.pop('run_id', None)


def _rotating_handler(path: Path, level: int, formatter: logging.Formatter) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        path,
        maxBytes=settings.log_max_bytes,
        backupCount=settings.log_backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(RunIdFilter())
    return handler


def setup_logging(base_dir: str | Path | None = None) -> Path:
    """Configure root logging for the API server and the import script.

    Args:
        base_dir: Directory that holds the logs/ folder. Defaults to the
                  current working directory.

    Returns:
        The logs directory in use.
    """
    logs_dir = (Path(base_dir) if base_dir else Path.cwd()) / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper()))
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(run_tag)s%(message)s")
    )
    console_handler.addFilter(RunIdFilter())
    root_logger.addHandler(console_handler)

    json_formatter = EstimationJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    root_logger.addHandler(_rotating_handler(logs_dir / "app.log", logging.DEBUG, json_formatter))
    root_logger.addHandler(_rotating_handler(logs_dir / "error.log", logging.ERROR, json_formatter))

    # Per-request chatter from the LLM, cache and database clients
    for name in ("httpx", "openai", "aiosqlite", "asyncio"):
        logging.getLogger(name).setLevel(logging.WARNING)

    return logs_dir
