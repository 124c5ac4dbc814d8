"""Structured logging for Olly.

In the interactive terminal, rendered log lines go to the UI one at a time so
they never split a streamed answer. Everything logged during a turn carries
the session id and mode through structlog contextvars.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Callable, Iterator

import structlog
from structlog.typing import Processor

from olly.config import LoggingConfig, get_config

LogSink = Callable[[str], None]


class _LineForwarder:
    """Text stream that hands each complete line to a sink."""

    def __init__(self, sink: LogSink):
        self.sink = sink
        self._pending = ""

    def write(self, text: str) -> int:
        *lines, self._pending = (self._pending + text).split("\n")
        for line in lines:
            if line:
                self.sink(line)
        return len(text)

    def flush(self) -> None:
        # structlog prints whole lines; a partial one waits for its newline
        pass


def _renderer(settings: LoggingConfig, to_sink: bool) -> Processor:
    if settings.format == "json":
        return structlog.processors.JSONRenderer()
    # sink lines are printed as plain text, no ANSI colours
    return structlog.dev.ConsoleRenderer(colors=not to_sink and sys.stderr.isatty())


def configure_logging(level: str | None = None, sink: LogSink | None = None) -> None:
    """Configure structlog from the ``logging`` config section.

    Args:
        level: Level name overriding ``logging.level`` (``--verbose`` passes DEBUG)
        sink: Callback receiving rendered lines instead of stderr
    """
    settings = get_config().logging
    log_level = getattr(logging, (level or settings.level).upper(), logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(settings, to_sink=sink is not None),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(
            file=_LineForwarder(sink) if sink is not None else sys.stderr
        ),
        cache_logger_on_first_use=True,
    )


@contextmanager
def turn_context(session_id: str, mode: str) -> Iterator[None]:
    """Tag every log line emitted inside the block with the session and mode."""
    with structlog.contextvars.bound_contextvars(session_id=session_id, mode=mode):
        yield


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger, usually ``get_logger(__name__)``."""
    return structlog.get_logger(name) if name else structlog.get_logger()
