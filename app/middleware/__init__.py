"""Middleware components for the SSO federation API."""

from .logging import REQUEST_ID_HEADER, RequestLoggingMiddleware

__all__ = [
    "REQUEST_ID_HEADER",
    "RequestLoggingMiddleware",
]
