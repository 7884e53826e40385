"""Structured logging for calmirror, context-aware per sync unit.

Uses structlog's ProcessorFormatter so every ``logging.getLogger(__name__)``
call site gets structured output without changes.

Two output formats:
- ``text``: colored, human-readable console output (default)
- ``json``: JSON lines, for log aggregation

The active unit and the OTel trace context are injected by processors that
read a ContextVar and the current span.  When ``log_root`` is set, JSON logs
are also written to ``{log_root}/calmirror.log`` and HTTP client chatter to
``{log_root}/http.log``.
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

from calmirror.google.errors import redact_credential_values

# ---------------------------------------------------------------------------
# Unit context (asyncio-safe via ContextVar)
# ---------------------------------------------------------------------------

_unit_context: ContextVar[str | None] = ContextVar("calmirror_unit", default=None)


def set_unit_context(name: str | None) -> None:
    """Set the sync unit for the current async context."""
    _unit_context.set(name)


def get_unit_context() -> str | None:
    return _unit_context.get()


@contextmanager
def unit_context(name: str) -> Iterator[None]:
    """Scope log records emitted inside the block to unit *name*."""
    token = _unit_context.set(name)
    try:
        yield
    finally:
        _unit_context.reset(token)


# ---------------------------------------------------------------------------
# Structlog processors
# ---------------------------------------------------------------------------


def add_unit_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject the ``unit`` key from the ContextVar into the event dict."""
    event_dict["unit"] = _unit_context.get()
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``trace_id`` and ``span_id`` from the current OTel span."""
    ctx = trace.get_current_span().get_span_context()
    if ctx and ctx.trace_id:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    else:
        event_dict["trace_id"] = "0" * 32
        event_dict["span_id"] = "0" * 16
    return event_dict


# ---------------------------------------------------------------------------
# Credential redaction
# ---------------------------------------------------------------------------


class CredentialRedactionFilter(logging.Filter):
    """Scrub bearer tokens, refresh tokens and client secrets from records.

    Never drops a record.  When something is redacted the message is stored
    pre-formatted and ``args`` is cleared so it cannot be re-interpolated.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        redacted = redact_credential_values(message)
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True


# ---------------------------------------------------------------------------
# Noise suppression
# ---------------------------------------------------------------------------

_NOISE_LOGGERS = ("httpx", "httpcore")

LOG_FILENAME = "calmirror.log"
HTTP_LOG_FILENAME = "http.log"


def _build_processors(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_unit_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _make_file_handler(
    path: Path,
    processors: list,
    redaction: logging.Filter,
) -> logging.FileHandler:
    """Create a JSON file handler at *path*."""
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=processors,
    )
    handler = logging.FileHandler(path)
    handler.setFormatter(formatter)
    handler.setLevel(logging.DEBUG)
    handler.addFilter(redaction)
    return handler


# ---------------------------------------------------------------------------
# configure_logging()
# ---------------------------------------------------------------------------


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | str | None = None,
    unit_name: str | None = None,
) -> None:
    """Configure structured logging for the process.

    Parameters
    ----------
    level:
        Root log level (e.g. "DEBUG", "INFO", "WARNING").
    fmt:
        ``"text"`` for colored console output, ``"json"`` for JSON lines.
    log_root:
        Directory for JSON log files.  Created when missing.
    unit_name:
        Optional default unit for records emitted outside a sync attempt.
    """
    if unit_name:
        set_unit_context(unit_name)

    if fmt == "json":
        console_processors = _build_processors(time_fmt="iso")
        renderer = structlog.processors.JSONRenderer()
    else:
        console_processors = _build_processors(time_fmt="%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=console_processors,
    )

    redaction = CredentialRedactionFilter()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(redaction)

    root = logging.getLogger()
    root.handlers.clear()
    for existing in [f for f in root.filters if isinstance(f, CredentialRedactionFilter)]:
        root.removeFilter(existing)
    root.addFilter(redaction)
    root.addHandler(console_handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        log_root = Path(log_root)
        log_root.mkdir(parents=True, exist_ok=True)
        file_processors = _build_processors(time_fmt="iso")

        root.addHandler(_make_file_handler(log_root / LOG_FILENAME, file_processors, redaction))

        http_handler = _make_file_handler(
            log_root / HTTP_LOG_FILENAME, file_processors, redaction
        )
        for name in _NOISE_LOGGERS:
            noisy = logging.getLogger(name)
            for existing in [h for h in noisy.handlers if isinstance(h, logging.FileHandler)]:
                noisy.removeHandler(existing)
                existing.close()
            noisy.addHandler(http_handler)

    structlog.configure(
        processors=[
            *console_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
