"""
FastAPI exception handlers for the SSO federation API.

This module provides centralized exception handling that:
- Maps federation errors to their HTTP status and error code
- Handles request validation errors with clean messages
- Reports unexpected exceptions to Sentry
- Prevents IdP error bodies, stack traces and certificates from leaking

All error responses follow the format:
{
    "success": false,
    "error": "Human-readable message",
    "error_code": "MACHINE_READABLE_CODE",
    "details": {}  # Optional additional context
}
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

import sentry_sdk
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.auth.sso.errors import SSOErrorCode, SSOFederationError
from src.config import get_settings

logger = logging.getLogger(__name__)

INTERNAL_ERROR_CODE = "INTERNAL_ERROR"
VALIDATION_ERROR_CODE = "VALIDATION_ERROR"


def format_validation_errors(errors: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    """
    Format request validation errors as field/message pairs.

    Input values are never echoed back.
    """
    formatted = []
    for error in errors:
        loc = error.get("loc", [])
        field_parts = [str(p) for p in loc if p != "body"]
        field = ".".join(field_parts) if field_parts else "request"

        error_type = error.get("type", "")
        if error_type == "missing":
            msg = f"Field '{field}' is required"
        elif error_type == "string_type":
            msg = f"Field '{field}' must be a string"
        elif error_type == "string_too_long":
            msg = f"Field '{field}' is too long"
        else:
            msg = f"Field '{field}' is invalid"

        formatted.append({"field": field, "message": msg})

    return formatted[:10]


def create_error_response(
    status_code: int,
    error: str,
    error_code: str,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    """Create a standardized error response."""
    content = {
        "success": False,
        "error": error,
        "error_code": error_code,
    }
    if details:
        content["details"] = details

    return JSONResponse(status_code=status_code, content=content)


def report_to_sentry(
    exc: Exception,
    request: Optional[Request] = None,
    extra_context: Optional[Dict[str, Any]] = None,
) -> Optional[str]:
    """
    Report an exception to Sentry with request context.

    Returns:
        Sentry event ID if reported, None otherwise.
    """
    try:
        client = sentry_sdk.get_client()
        if not client.is_active():
            return None

        with sentry_sdk.new_scope() as scope:
            if request:
                scope.set_context("request", {
                    "method": request.method,
                    "path": request.url.path,
                })
                request_id = getattr(request.state, "request_id", None)
                if request_id:
                    scope.set_tag("request_id", request_id)

            if extra_context:
                scope.set_context("extra", extra_context)

            return sentry_sdk.capture_exception(exc)

    except Exception as e:
        logger.warning(f"Failed to report exception to Sentry: {e}")
        return None


# =============================================================================
# Exception Handlers
# =============================================================================


async def sso_federation_exception_handler(
    request: Request,
    exc: SSOFederationError,
) -> JSONResponse:
    """
    Handle SSOFederationError and subclasses.

    The body comes from exc.to_dict(), which never includes the internal
    message. Authentication failures are already logged by the pipeline.
    """
    if exc.status_code >= 500:
        logger.error(
            "%s: %s",
            exc.__class__.__name__,
            exc.internal_message or exc.message,
            extra=exc.log_context(),
        )
        report_to_sentry(exc, request, extra_context=exc.log_context())
    else:
        logger.debug("Returning %s (%s)", exc.error_code.value, exc.status_code)

    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Handle FastAPI request validation errors."""
    errors = format_validation_errors(exc.errors())

    logger.warning(
        f"Validation error on {request.method} {request.url.path}: "
        f"{len(errors)} error(s)"
    )

    if len(errors) == 1:
        error_message = errors[0]["message"]
    else:
        error_message = f"Validation failed with {len(errors)} error(s)"

    return create_error_response(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        error=error_message,
        error_code=VALIDATION_ERROR_CODE,
        details={"errors": errors},
    )


async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Handle Starlette/FastAPI HTTPException (404 routes, 405 methods)."""
    status_code_mapping = {
        400: SSOErrorCode.INVALID_REQUEST.value,
        403: SSOErrorCode.PERMISSION_DENIED.value,
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
    }
    error_code = status_code_mapping.get(exc.status_code, INTERNAL_ERROR_CODE)
    detail = exc.detail if isinstance(exc.detail, str) else "Request failed"

    return create_error_response(
        status_code=exc.status_code,
        error=detail,
        error_code=error_code,
    )


async def unhandled_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """
    Catch-all for unexpected errors.

    Logs the full traceback, reports to Sentry and returns a generic
    message with a reference id.
    """
    error_reference = str(uuid.uuid4())[:8]

    logger.error(
        f"Unhandled exception [ref:{error_reference}] on "
        f"{request.method} {request.url.path}: {type(exc).__name__}",
        exc_info=True,
    )

    event_id = report_to_sentry(
        exc,
        request,
        extra_context={"error_reference": error_reference},
    )

    details = {"error_reference": error_reference}
    if event_id and not get_settings().is_production:
        details["sentry_event_id"] = event_id

    return create_error_response(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        error="An unexpected error occurred. Please try again later.",
        error_code=INTERNAL_ERROR_CODE,
        details=details,
    )


# =============================================================================
# Handler Registration
# =============================================================================


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI application."""
    app.add_exception_handler(SSOFederationError, sso_federation_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    logger.debug("Exception handlers registered")
