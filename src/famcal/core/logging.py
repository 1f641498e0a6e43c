"""Structured logging for famcal.

Plain ``logging.getLogger(__name__)`` call sites are rendered through
structlog's ``ProcessorFormatter``, so modules never import structlog
directly.

Console output is either ``text`` (coloured, for development) or ``json``
(one object per line, for log shipping). An optional ``log_root`` adds a
JSON file handler next to the console one.

Every record is tagged with the family and calendar currently being synced
(when there is one) and with the active OpenTelemetry trace ids.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

_family_context: ContextVar[str | None] = ContextVar("famcal_family_id", default=None)
_calendar_context: ContextVar[str | None] = ContextVar("famcal_calendar_id", default=None)

# Libraries that log every request at INFO.
_NOISE_LOGGERS = (
    "httpx",
    "httpcore",
    "asyncpg",
    "alembic.runtime.migration",
)

_LOG_FILENAME = "famcal.log"


@contextmanager
def sync_log_context(family_id: str | None, calendar_id: str) -> Iterator[None]:
    """Tag every record emitted inside the block with the calendar being synced."""
    family_token = _family_context.set(family_id)
    calendar_token = _calendar_context.set(calendar_id)
    try:
        yield
    finally:
        _calendar_context.reset(calendar_token)
        _family_context.reset(family_token)


def add_sync_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Copy the family and calendar ContextVars into the event dict."""
    family_id = _family_context.get()
    if family_id is not None:
        event_dict["family"] = family_id
    calendar_id = _calendar_context.get()
    if calendar_id is not None:
        event_dict.setdefault("calendar", calendar_id)
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    ctx = trace.get_current_span().get_span_context()
    if ctx and ctx.trace_id:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def _pre_chain(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_sync_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(
    renderer: structlog.types.Processor, pre_chain: list[structlog.types.Processor]
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | str | None = None,
) -> None:
    """Install famcal's handlers on the root logger.

    Safe to call more than once; existing root handlers are replaced.

    Parameters
    ----------
    level:
        Root level name, case-insensitive. Unknown names fall back to INFO.
    fmt:
        ``"json"`` for JSON lines on stderr, anything else for coloured text.
    log_root:
        When set, JSON records are also appended to ``{log_root}/famcal.log``.
    """
    if fmt == "json":
        pre_chain = _pre_chain("iso")
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        pre_chain = _pre_chain("%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(renderer, pre_chain))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    if log_root is not None:
        log_dir = Path(log_root)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / _LOG_FILENAME)
        file_handler.setFormatter(
            _formatter(structlog.processors.JSONRenderer(), _pre_chain("iso"))
        )
        file_handler.setLevel(logging.DEBUG)
        root.addHandler(file_handler)

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
