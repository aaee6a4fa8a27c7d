"""
HTTP server for the SSO federation service.

Assembles the FastAPI application from the app package: exception
handlers, request logging, SSO routes and the service wiring performed
in the lifespan.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import sentry_sdk
import uvicorn
from fastapi import FastAPI
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

# Configure structured logging FIRST, before other imports that use logging
from src.utils.logging import setup_logging

logger = setup_logging(service_name="sso-federation")

from src.config import Settings, get_settings

from app.error_handlers import register_exception_handlers
from app.middleware import RequestLoggingMiddleware
from app.routes import health_router, sso_admin_router, sso_router
from src import db
from src.auth.sso.dispatcher import FederationDispatcher
from src.auth.sso.login_service import SSOLoginService
from src.auth.sso.saml_service import init_saml_runtime
from src.organizations.audit_service import AuditService
from src.organizations.sso_config_service import SSOConfigService
from src.organizations.store import IdentityStore, InMemoryIdentityStore, PostgresIdentityStore

# =============================================================================
# Sentry Error Tracking Configuration
# =============================================================================

SENSITIVE_BREADCRUMB_KEYS = (
    "secret", "token", "authorization", "bearer", "samlresponse", "code_verifier", "password",
)


def filter_sensitive_breadcrumbs(crumb, hint):
    """Drop header values and log messages that may carry credentials."""
    if crumb.get("category") == "http":
        data = crumb.get("data")
        if isinstance(data, dict) and isinstance(data.get("headers"), dict):
            for key in list(data["headers"].keys()):
                if any(s in key.lower() for s in SENSITIVE_BREADCRUMB_KEYS):
                    data["headers"][key] = "[FILTERED]"

    if crumb.get("category") in ("console", "log") and "message" in crumb:
        message = str(crumb["message"]).lower()
        if any(s in message for s in SENSITIVE_BREADCRUMB_KEYS):
            crumb["message"] = "[FILTERED - may contain sensitive data]"

    return crumb


def init_sentry(settings: Settings) -> bool:
    if not settings.sentry.is_configured:
        logger.info("Sentry DSN not configured, error tracking disabled")
        return False

    sentry_sdk.init(
        dsn=settings.sentry.sentry_dsn,
        environment=settings.sentry.sentry_environment,
        traces_sample_rate=settings.sentry.sentry_traces_sample_rate,
        integrations=[
            StarletteIntegration(transaction_style="endpoint"),
            FastApiIntegration(transaction_style="endpoint"),
        ],
        before_breadcrumb=filter_sensitive_breadcrumbs,
        send_default_pii=False,
        release=settings.sentry.sentry_release,
    )
    logger.info(f"Sentry initialized for environment: {settings.sentry.sentry_environment}")
    return True


# =============================================================================
# Application Factory
# =============================================================================


def _default_store() -> IdentityStore:
    if db.is_database_configured():
        return PostgresIdentityStore()
    logger.warning("DATABASE_URL not set; using the in-memory identity store")
    return InMemoryIdentityStore()


def create_app(
    store: Optional[IdentityStore] = None,
    dispatcher: Optional[FederationDispatcher] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        store: Identity store; defaults to Postgres when DATABASE_URL is set
        dispatcher: Federation dispatcher; tests inject one with mock IdPs
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Process-wide initialization and shutdown."""
        init_saml_runtime()

        identity_store = store or _default_store()
        audit_service = AuditService(identity_store)

        app.state.store = identity_store
        app.state.store_backend = (
            "postgres" if isinstance(identity_store, PostgresIdentityStore) else "memory"
        )
        app.state.audit_service = audit_service
        app.state.login_service = SSOLoginService(
            identity_store, audit_service, dispatcher=dispatcher
        )
        app.state.config_service = SSOConfigService(identity_store, audit_service)

        logger.info("SSO federation service started", extra={"config": settings.get_config_summary()})
        yield

        try:
            await audit_service.drain()
        except Exception as e:
            logger.warning("Failed to flush audit events: %s", e)
        try:
            await db.close_pool()
        except Exception as e:
            logger.warning("Failed to close Postgres pool: %s", e)

    app = FastAPI(
        title="SSO Federation API",
        description="Enterprise single sign-on (OIDC and SAML2) with domain-based tenant binding.",
        version="1.0.0",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "health", "description": "Health checks"},
            {"name": "sso", "description": "Single Sign-On login and logout (OIDC/SAML2)"},
            {"name": "sso-admin", "description": "SSO configuration and administration"},
        ],
    )

    register_exception_handlers(app)

    if settings.logging.request_logging_enabled:
        app.add_middleware(RequestLoggingMiddleware)

    app.include_router(health_router)
    app.include_router(sso_router)
    app.include_router(sso_admin_router)

    return app


init_sentry(get_settings())
app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
