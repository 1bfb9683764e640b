"""structlog configuration for vdctl.

Two output modes on stderr:
- Human (default): console renderer, colored on a TTY
- JSON (--log-json): structured JSON lines

Sessions additionally attach a JSON-lines file handler inside their
workspace plus an error tracker (see :func:`session_log`), so a session
that logged an error keeps its transcript for diagnosis.
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

ROOT_LOGGER = "vdctl"
_QUIET_LIBRARIES = ("httpx", "httpcore", "filelock")


def _shared_processors() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def _foreign_pre_chain() -> list[structlog.types.Processor]:
    # stdlib records carry structured fields via ``extra={...}``.
    return [*_shared_processors(), structlog.stdlib.ExtraAdder()]


def _json_formatter() -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_foreign_pre_chain(),
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
    )


def configure_logging(
    *,
    verbose: bool = False,
    log_json: bool = False,
) -> None:
    """Configure structlog processors and output routing.

    Args:
        verbose: Enable DEBUG-level output. When False, only WARNING+.
        log_json: Use JSON renderer instead of console renderer.
    """
    vd_level = logging.DEBUG if verbose else logging.WARNING

    structlog.configure(
        processors=[
            *_shared_processors(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    if log_json:
        formatter = _json_formatter()
    else:
        formatter = structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_foreign_pre_chain(),
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
            ],
        )

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(vd_level)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.WARNING)

    logging.getLogger(ROOT_LOGGER).setLevel(vd_level)
    for name in _QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)


class ErrorTracker(logging.Handler):
    """Counts ERROR-and-above records without emitting anything."""

    def __init__(self) -> None:
        super().__init__(level=logging.ERROR)
        self.count = 0

    def emit(self, record: logging.LogRecord) -> None:
        self.count += 1

    @property
    def tripped(self) -> bool:
        return self.count > 0


@contextmanager
def session_log(path: Path) -> Iterator[ErrorTracker]:
    """Mirror every ``vdctl`` record at DEBUG+ into *path* as JSON lines.

    Yields the :class:`ErrorTracker` for the block. Handlers are removed
    and the file closed on exit, including when the block raises.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(path, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(_json_formatter())
    tracker = ErrorTracker()

    vd_logger = logging.getLogger(ROOT_LOGGER)
    previous_level = vd_logger.level
    vd_logger.addHandler(file_handler)
    vd_logger.addHandler(tracker)
    # The transcript captures DEBUG; the stderr handler keeps its own level.
    vd_logger.setLevel(logging.DEBUG)
    try:
        yield tracker
    finally:
        vd_logger.removeHandler(tracker)
        vd_logger.removeHandler(file_handler)
        vd_logger.setLevel(previous_level)
        file_handler.close()
