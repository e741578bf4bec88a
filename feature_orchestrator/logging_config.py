"""Logging setup: console + JSON-lines file, with the active feature stamped on each record."""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import TYPE_CHECKING, Iterator

if TYPE_CHECKING:
    from .config import OrchestratorConfig

# Set for the duration of one feature run. Tasks spawned inside the run inherit it.
_current_feature: ContextVar[str | None] = ContextVar("orchestrator_feature", default=None)


@contextmanager
def feature_context(feature_id: str) -> Iterator[None]:
    """Attribute every log record emitted inside the block to ``feature_id``."""
    token = _current_feature.set(feature_id)
    try:
        yield
    finally:
        _current_feature.reset(token)


class FeatureContextFilter(logging.Filter):
    """Adds ``feature_id`` and a ``feature_tag`` console prefix to each record.

    An explicit ``extra={"feature_id": ...}`` wins over the ambient context.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        feature_id = getattr(record, "feature_id", None) or _current_feature.get()
        record.feature_id = feature_id
        record.feature_tag = f"[{feature_id}] " if feature_id else ""
        return True


class JSONFormatter(logging.Formatter):
    """JSON Lines format for structured log files."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
        }
        feature_id = getattr(record, "feature_id", None)
        if feature_id:
            entry["feature_id"] = feature_id
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def setup_logger(config: OrchestratorConfig) -> logging.Logger:
    """Create the ``orchestrator`` logger once per process.

    The JSON-lines file lands in ``<project>/<log_dir>`` with one file per start.
    """
    logger = logging.getLogger("orchestrator")
    logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    if logger.handlers:
        return logger

    context = FeatureContextFilter()

    console = logging.StreamHandler(sys.stdout)
    console.addFilter(context)
    console.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] %(feature_tag)s%(message)s",
        datefmt="%H:%M:%S",
    ))
    logger.addHandler(console)

    if config.structured_log:
        log_dir = config.project_dir / config.log_dir
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"orchestrator-{datetime.now().strftime('%Y%m%d-%H%M%S')}.jsonl"
        file_handler = logging.FileHandler(log_file)
        file_handler.addFilter(context)
        file_handler.setFormatter(JSONFormatter())
        logger.addHandler(file_handler)

    return logger
