"""
Health check endpoint.
"""

import logging
import time
from typing import Any, Dict

import sentry_sdk
from fastapi import APIRouter, Request

from src import db
from src.auth.sso.saml_service import is_saml_runtime_initialized
from src.config import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def get_database_status(request: Request) -> Dict[str, Any]:
    """
    Check PostgreSQL connectivity.

    Reports "memory" when the app runs on the in-memory identity store.
    """
    backend = getattr(request.app.state, "store_backend", "unknown")
    if backend != "postgres":
        return {"backend": backend, "connected": True}

    try:
        start_time = time.perf_counter()
        await db.fetchrow("SELECT 1")
        latency_ms = (time.perf_counter() - start_time) * 1000
        return {
            "backend": backend,
            "connected": True,
            "latency_ms": round(latency_ms, 2),
        }
    except Exception as e:
        logger.warning(f"Database health check failed: {type(e).__name__}")
        return {
            "backend": backend,
            "connected": False,
            "error": type(e).__name__,
        }


def get_sentry_status() -> Dict[str, Any]:
    settings = get_settings().sentry
    return {
        "configured": settings.is_configured,
        "active": sentry_sdk.get_client().is_active() if settings.is_configured else False,
    }


@router.get("/health", summary="Service health")
async def health(request: Request) -> Dict[str, Any]:
    database = await get_database_status(request)
    saml_ready = is_saml_runtime_initialized()
    healthy = database["connected"] and saml_ready

    return {
        "status": "healthy" if healthy else "degraded",
        "database": database,
        "saml_runtime": saml_ready,
        "sentry": get_sentry_status(),
    }
