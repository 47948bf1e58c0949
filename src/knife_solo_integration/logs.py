"""Structured logging for the harness.

Console output goes through the globally configured structlog pipeline.
Each test class (and the runner) additionally gets its own JSON-lines file
under ``log/``, which the subcommand executor appends raw command output to.
"""

import logging
import threading
from pathlib import Path
from typing import IO, Any

import structlog

_FILE_PROCESSORS: list[Any] = [
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.JSONRenderer(),
]

_handles: dict[Path, IO[str]] = {}
_handles_lock = threading.Lock()


def configure_logging(verbose: bool = False) -> None:
    """Configure console logging for a harness process."""
    level = logging.DEBUG if verbose else logging.INFO
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def log_file_for(log_dir: Path, name: str) -> Path:
    """Return ``log_dir/<name>-integration.log``, creating the directory."""
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / f"{name}-integration.log"


def integration_logger(log_dir: Path, name: str) -> Any:
    """Return a logger that writes JSON lines to the integration log of ``name``.

    Loggers for the same file share one append-mode handle.
    """
    path = log_file_for(log_dir, name)
    with _handles_lock:
        handle = _handles.get(path)
        if handle is None or handle.closed:
            handle = open(path, "a", encoding="utf-8")
            _handles[path] = handle

    return structlog.wrap_logger(
        structlog.WriteLogger(handle),
        processors=_FILE_PROCESSORS,
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG),
        context_class=dict,
    ).bind(source=name)


def close_integration_logs() -> None:
    """Close every integration log handle opened by this process."""
    with _handles_lock:
        for handle in _handles.values():
            handle.close()
        _handles.clear()
