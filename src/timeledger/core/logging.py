"""Structured logging for the sync engine: context-aware and secret-safe.

Modules log through ``logging.getLogger(__name__)``; structlog's
ProcessorFormatter renders those records as colored console lines (``text``)
or JSON lines (``json``).

The current sync context (user, provider, connection) and OTel trace context
are injected automatically.  Every event passes through a redaction processor
so provider tokens and passwords never reach a log sink.

With ``log_root`` set, JSON copies land in::

    logs/
      sync/             # Engine application logs (JSON)
        timeledger.log
      http/             # httpx / uvicorn transport logs (JSON)
        timeledger.log
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

from timeledger.errors import redact_secrets

# ---------------------------------------------------------------------------
# Sync context (asyncio-safe via ContextVar)
# ---------------------------------------------------------------------------

_sync_context: ContextVar[dict[str, str] | None] = ContextVar("sync_context", default=None)


@contextmanager
def sync_context(**values: str | None) -> Iterator[None]:
    """Bind sync identifiers (``user_id``, ``provider``, ``connection_id``) for a block."""
    current = dict(_sync_context.get() or {})
    current.update({key: value for key, value in values.items() if value is not None})
    token = _sync_context.set(current)
    try:
        yield
    finally:
        _sync_context.reset(token)


def get_sync_context() -> dict[str, str]:
    return dict(_sync_context.get() or {})


# ---------------------------------------------------------------------------
# Structlog processors
# ---------------------------------------------------------------------------


def add_sync_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject the bound sync identifiers into the event dict."""
    for key, value in (_sync_context.get() or {}).items():
        event_dict.setdefault(key, value)
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``trace_id`` and ``span_id`` from the current OTel span."""
    span = trace.get_current_span()
    ctx = span.get_span_context()
    if ctx and ctx.trace_id:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    else:
        event_dict["trace_id"] = "0" * 32
        event_dict["span_id"] = "0" * 16
    return event_dict


def redact_event(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Scrub credential values from every string field of the event."""
    for key, value in list(event_dict.items()):
        if isinstance(value, str):
            event_dict[key] = redact_secrets(value)
    return event_dict


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

# Transport loggers: WARNING on the console, everything in http/ when log_root is set.
_NOISE_LOGGERS = (
    "uvicorn.access",
    "uvicorn.error",
    "httpx",
    "httpcore",
)

_LOG_SUBDIRS = {"app": "sync", "transport": "http"}


def _pre_chain(timestamp_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp_fmt),
        add_sync_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
        structlog.stdlib.PositionalArgumentsFormatter(),
        redact_event,
    ]


def _formatter(
    renderer: structlog.types.Processor, pre_chain: list[structlog.types.Processor]
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


def _json_file_handler(path: Path) -> logging.FileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), _pre_chain("iso")))
    return handler


# ---------------------------------------------------------------------------
# configure_logging()
# ---------------------------------------------------------------------------


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
    service_name: str = "timeledger",
) -> None:
    """Route stdlib and structlog output through one redacting processor chain.

    Parameters
    ----------
    level:
        Root log level (e.g. "DEBUG", "INFO", "WARNING").
    fmt:
        ``"text"`` renders colored console lines, ``"json"`` renders JSON lines.
    log_root:
        When set, JSON copies are also written to::

            {log_root}/sync/{service_name}.log   (engine logs)
            {log_root}/http/{service_name}.log   (httpx / uvicorn logs)

    service_name:
        Base name of the log files.
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
    # Reconfiguration replaces handlers instead of stacking them
    root.handlers.clear()
    root.addHandler(console)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    transport_handler: logging.Handler | None = None
    if log_root is not None:
        log_root = Path(log_root)
        root.addHandler(_json_file_handler(log_root / _LOG_SUBDIRS["app"] / f"{service_name}.log"))
        transport_handler = _json_file_handler(
            log_root / _LOG_SUBDIRS["transport"] / f"{service_name}.log"
        )

    for name in _NOISE_LOGGERS:
        noisy = logging.getLogger(name)
        noisy.setLevel(logging.WARNING)
        if transport_handler is not None:
            noisy.addHandler(transport_handler)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
