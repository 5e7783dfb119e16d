"""Structured logging for the action gate.

Every module logs through ``logging.getLogger(__name__)``; this module
routes those records through structlog's ProcessorFormatter so they come
out either as coloured console lines (``text``) or as JSON lines
(``json``). An optional log file always receives JSON.

Each record is stamped with the gateway name, the organization whose action
is being processed (when known) and the current OTel trace/span ids.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

_service_context: ContextVar[str | None] = ContextVar("gateway_name", default=None)
_tenant_context: ContextVar[str | None] = ContextVar("organization_id", default=None)

# Third-party loggers that are chatty at INFO.
_NOISE_LOGGERS = (
    "uvicorn.access",
    "uvicorn.error",
    "httpx",
    "httpcore",
)

_ZERO_TRACE_ID = "0" * 32
_ZERO_SPAN_ID = "0" * 16


def set_service_context(name: str) -> None:
    _service_context.set(name)


def set_tenant_context(organization_id: object | None) -> None:
    """Bind the organization being processed to the current task's logs."""
    _tenant_context.set(None if organization_id is None else str(organization_id))


def get_tenant_context() -> str | None:
    return _tenant_context.get()


def add_gateway_context(logger: logging.Logger, method_name: str, event_dict: dict) -> dict:  # noqa: ARG001
    """Add ``gateway`` and, when bound, ``organization``."""
    event_dict["gateway"] = _service_context.get()
    organization = _tenant_context.get()
    if organization is not None:
        event_dict["organization"] = organization
    return event_dict


def add_otel_context(logger: logging.Logger, method_name: str, event_dict: dict) -> dict:  # noqa: ARG001
    """Add ``trace_id``/``span_id`` of the current span, zeros outside one."""
    span_context = trace.get_current_span().get_span_context()
    if span_context and span_context.trace_id:
        event_dict["trace_id"] = format(span_context.trace_id, "032x")
        event_dict["span_id"] = format(span_context.span_id, "016x")
    else:
        event_dict["trace_id"] = _ZERO_TRACE_ID
        event_dict["span_id"] = _ZERO_SPAN_ID
    return event_dict


def _pre_chain(*, iso_time: bool) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso" if iso_time else "%H:%M:%S"),
        add_gateway_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(*, as_json: bool) -> structlog.stdlib.ProcessorFormatter:
    renderer = (
        structlog.processors.JSONRenderer() if as_json else structlog.dev.ConsoleRenderer()
    )
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=_pre_chain(iso_time=as_json),
    )


def _file_handler(log_file: Path) -> logging.Handler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_file)
    handler.setFormatter(_formatter(as_json=True))
    handler.setLevel(logging.DEBUG)
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_file: Path | None = None,
    service_name: str | None = None,
) -> None:
    """Install the gate's handlers on the root logger.

    Calling it again replaces the handlers installed by the previous call.

    Parameters
    ----------
    level:
        Root log level name, e.g. ``"DEBUG"``. Unknown names fall back to INFO.
    fmt:
        ``"text"`` or ``"json"`` for the stderr handler.
    log_file:
        Optional extra destination, always written as JSON lines.
    service_name:
        Gateway name stamped on every record.
    """
    if service_name:
        set_service_context(service_name)
    as_json = fmt == "json"

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(as_json=as_json))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    if log_file is not None:
        root.addHandler(_file_handler(Path(log_file)))
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    # Direct structlog.get_logger() callers share the same pipeline.
    structlog.configure(
        processors=[
            *_pre_chain(iso_time=as_json),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
