"""Centralized logging configuration and timing helpers."""

from __future__ import annotations

import json
import logging
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterator


class JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        elapsed = getattr(record, "elapsed_ms", None)
        if elapsed is not None:
            payload["elapsed_ms"] = elapsed
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True)


def configure_logging(
    level: str = "INFO",
    log_file: str | None = None,
    json_format: bool = False,
) -> None:
    """Configure root logging with console + rotating file handler."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(numeric_level)

    # Avoid duplicate handlers on reloads
    if root.handlers:
        return

    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    formatter: logging.Formatter = (
        JsonFormatter() if json_format else logging.Formatter(fmt, datefmt="%H:%M:%S")
    )

    console = logging.StreamHandler()
    console.setLevel(numeric_level)
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            path,
            maxBytes=5 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


@contextmanager
def log_timing(logger: logging.Logger, label: str) -> Iterator[dict[str, float]]:
    """Log how long the wrapped block took, at DEBUG.

    Yields a dict whose ``elapsed_ms`` entry is filled in on exit, so callers
    can include the duration in their own summary line.
    """
    timing: dict[str, float] = {"elapsed_ms": 0.0}
    start = time.perf_counter()
    try:
        yield timing
    finally:
        timing["elapsed_ms"] = round((time.perf_counter() - start) * 1000, 2)
        logger.debug("%s took %.2fms", label, timing["elapsed_ms"], extra={"elapsed_ms": timing["elapsed_ms"]})
