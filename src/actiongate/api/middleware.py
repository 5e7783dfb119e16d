"""API error handling: domain exceptions to status codes.

Every error uses the ``{"error": {"code": "...", "message": "..."}}``
envelope.

Status code mapping:
- ``ActionNotFoundError`` / ``ApprovalNotFoundError`` -> 404
- ``StaleDecisionError`` / ``ActionBusyError`` / ``InvalidTransitionError`` -> 409
- ``ActionHeldError`` -> 409 with code ``ACTION_HELD``
- ``ValueError`` / ``ConfigError`` -> 422
- ``AuditWriteError`` -> 503
- Any other ``Exception`` -> 500
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from actiongate.api.models import ErrorDetail, ErrorResponse
from actiongate.errors import (
    ActionBusyError,
    ActionHeldError,
    ActionNotFoundError,
    ApprovalNotFoundError,
    AuditWriteError,
    ConfigError,
    InvalidTransitionError,
    StaleDecisionError,
)

logger = logging.getLogger(__name__)


def _error(status_code: int, code: str, message: str, details: dict | None = None) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, details=details))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_not_found(request: Request, exc: Exception) -> JSONResponse:
    logger.info("Not found on %s: %s", request.url.path, exc)
    return _error(404, "NOT_FOUND", str(exc))


async def _handle_stale_decision(request: Request, exc: StaleDecisionError) -> JSONResponse:
    logger.info("Stale decision: %s", exc)
    return _error(
        409,
        "STALE_DECISION",
        str(exc),
        {"request_id": str(exc.request_id), "current_status": exc.current_status},
    )


async def _handle_conflict(request: Request, exc: Exception) -> JSONResponse:
    logger.info("Conflict on %s: %s", request.url.path, exc)
    code = "ACTION_BUSY" if isinstance(exc, ActionBusyError) else "INVALID_TRANSITION"
    return _error(409, code, str(exc))


async def _handle_held(request: Request, exc: ActionHeldError) -> JSONResponse:
    logger.warning("Held action touched on %s: %s", request.url.path, exc)
    return _error(409, "ACTION_HELD", str(exc), {"action_id": str(exc.action_id)})


async def _handle_validation(request: Request, exc: Exception) -> JSONResponse:
    logger.info("Validation error: %s", exc)
    return _error(422, "VALIDATION_ERROR", str(exc))


async def _handle_audit_failure(request: Request, exc: AuditWriteError) -> JSONResponse:
    return _error(
        503,
        "AUDIT_UNAVAILABLE",
        "Audit trail unavailable; the action is held for manual reconciliation",
    )


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """Turns any unhandled exception into a 500 with the standard envelope."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to *app*."""
    app.add_exception_handler(ActionNotFoundError, _handle_not_found)  # type: ignore[arg-type]
    app.add_exception_handler(ApprovalNotFoundError, _handle_not_found)  # type: ignore[arg-type]
    app.add_exception_handler(StaleDecisionError, _handle_stale_decision)  # type: ignore[arg-type]
    app.add_exception_handler(ActionBusyError, _handle_conflict)  # type: ignore[arg-type]
    app.add_exception_handler(InvalidTransitionError, _handle_conflict)  # type: ignore[arg-type]
    app.add_exception_handler(ActionHeldError, _handle_held)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_validation)  # type: ignore[arg-type]
    app.add_exception_handler(ConfigError, _handle_validation)  # type: ignore[arg-type]
    app.add_exception_handler(AuditWriteError, _handle_audit_failure)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
