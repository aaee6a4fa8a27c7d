"""Pydantic models for the SSO federation API."""

from .requests import (
    SSOCallbackRequest,
    SSOCallbackResponse,
    SSOConfigResponse,
    SSOLogoutRequest,
    SSOLogoutResponse,
    SSOUserResponse,
)

__all__ = [
    "SSOCallbackRequest",
    "SSOCallbackResponse",
    "SSOConfigResponse",
    "SSOLogoutRequest",
    "SSOLogoutResponse",
    "SSOUserResponse",
]
