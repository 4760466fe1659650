from __future__ import annotations

import contextvars
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(project_id)s | %(segment_id)s | %(transport)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

LOG_PROJECT_ID: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("log_project_id", default=None)
LOG_SEGMENT_ID: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("log_segment_id", default=None)
LOG_TRANSPORT: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("log_transport", default=None)


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.project_id = LOG_PROJECT_ID.get() or "-"
        record.segment_id = LOG_SEGMENT_ID.get() or "-"
        record.transport = LOG_TRANSPORT.get() or "-"
        return True


@contextmanager
def log_context(
    project_id: Optional[str] = None,
    segment_id: Optional[str] = None,
    transport: Optional[str] = None,
) -> Iterator[None]:
    tokens = []
    if project_id is not None:
        tokens.append((LOG_PROJECT_ID, LOG_PROJECT_ID.set(project_id)))
    if segment_id is not None:
        tokens.append((LOG_SEGMENT_ID, LOG_SEGMENT_ID.set(segment_id)))
    if transport is not None:
        tokens.append((LOG_TRANSPORT, LOG_TRANSPORT.set(transport)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def configure_logging(
    log_file: str = "logs/orbitour.log",
    level: int | str = logging.INFO,
    enable_console: bool = False,
    force: bool = False,
) -> logging.Logger:
    root = logging.getLogger()
    if getattr(root, "_orbitour_logging_configured", False) and not force:
        return root

    if force:
        for handler in list(root.handlers):
            root.removeHandler(handler)
        for log_filter in list(root.filters):
            root.removeFilter(log_filter)

    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    # Filters sit on the handlers so records from child loggers get the context fields too.
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    file_handler.addFilter(ContextFilter())
    root.addHandler(file_handler)

    if enable_console:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        stream_handler.addFilter(ContextFilter())
        root.addHandler(stream_handler)

    root.addFilter(ContextFilter())
    root.setLevel(level)
    logging.captureWarnings(True)
    root._orbitour_logging_configured = True
    return root
