"""
Audit emitter for SSO activity.

This module provides:
- Fire-and-forget audit events for SSO logins and configuration changes
- Request context extraction (client IP, user agent, request id)

Security Notes:
- Audit writes never raise into the login or admin flow
- Sensitive data is filtered before logging
- The client IP prefers the first X-Forwarded-For hop
"""

import asyncio
import logging
from typing import Any, Dict, Mapping, Optional, Set

from src.organizations.store import IdentityStore
from src.types.organization import AuditAction, AuditLogCreate, ResourceType
from src.utils.logging import get_request_id

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================


# Fields that should never be logged (even in metadata)
SENSITIVE_FIELDS = frozenset({
    "password",
    "secret",
    "id_token",
    "idtoken",
    "access_token",
    "refresh_token",
    "code_verifier",
    "codeverifier",
    "private_key",
    "certificate",
    "samlresponse",
    "authorization",
})

# Maximum size for logged values (truncate if larger)
MAX_VALUE_SIZE = 10000

MAX_USER_AGENT_LENGTH = 500


# =============================================================================
# Request Context
# =============================================================================


def extract_ip_address(
    headers: Optional[Mapping[str, str]],
    peer_address: Optional[str] = None,
) -> Optional[str]:
    """
    Client IP: first X-Forwarded-For hop, then X-Real-IP, then the peer.

    Header lookup is case-insensitive for plain dicts as well as
    Starlette's Headers.
    """
    lowered = {k.lower(): v for k, v in (headers or {}).items()}

    forwarded = lowered.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop

    real_ip = (lowered.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip

    return peer_address


def build_request_context(
    headers: Optional[Mapping[str, str]],
    peer_address: Optional[str] = None,
) -> Dict[str, Any]:
    """Collect the audit-relevant request attributes."""
    lowered = {k.lower(): v for k, v in (headers or {}).items()}
    return {
        "ip_address": extract_ip_address(headers, peer_address),
        "user_agent": lowered.get("user-agent"),
        "request_id": get_request_id(),
    }


# =============================================================================
# Audit Service
# =============================================================================


class AuditService:
    """
    Writes audit events to the identity store in the background.

    log() is fail-safe and awaitable for callers that want the entry id;
    the log_sso_* helpers schedule it as a task and return immediately.
    """

    def __init__(self, store: IdentityStore):
        self.store = store
        self._pending: Set[asyncio.Task] = set()

    async def log(
        self,
        action: AuditAction,
        resource_type: ResourceType,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        request_context: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """
        Write one audit event.

        Exceptions are caught and logged, never raised.

        Returns:
            The audit log entry ID, or None if logging failed.
        """
        try:
            sanitized_metadata = self._sanitize_data(metadata) if metadata else {}

            ip_address = None
            user_agent = None
            if request_context:
                ip_address = request_context.get("ip_address")
                user_agent = request_context.get("user_agent")
                if user_agent and len(user_agent) > MAX_USER_AGENT_LENGTH:
                    user_agent = user_agent[:MAX_USER_AGENT_LENGTH]
                request_id = request_context.get("request_id")
                if request_id:
                    sanitized_metadata.setdefault("request_id", request_id)

            entry = AuditLogCreate(
                organization_id=organization_id,
                user_id=user_id,
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata=sanitized_metadata,
            )
            log_id = await self.store.insert_audit_log(entry)

            logger.debug(
                "Audit logged: %s on %s",
                action.value,
                resource_type.value,
                extra={"audit_id": log_id, "organization_id": organization_id},
            )
            return log_id

        except Exception as e:
            logger.error(
                "Failed to log audit event: %s",
                e,
                extra={"action": str(action), "resource_type": str(resource_type)},
            )
            return None

    def emit(self, **kwargs: Any) -> Optional[asyncio.Task]:
        """Schedule log(**kwargs) without waiting for it."""
        try:
            task = asyncio.get_running_loop().create_task(self.log(**kwargs))
        except RuntimeError:
            logger.error("Audit event dropped: no running event loop")
            return None

        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def log_sso_login(
        self,
        organization_id: str,
        user_id: str,
        protocol: str,
        created_user: bool,
        created_membership: bool,
        request_context: Optional[Dict[str, Any]] = None,
    ) -> Optional[asyncio.Task]:
        return self.emit(
            action=AuditAction.SSO_LOGIN,
            resource_type=ResourceType.USER,
            user_id=user_id,
            organization_id=organization_id,
            resource_id=user_id,
            metadata={
                "protocol": protocol,
                "created_user": created_user,
                "created_membership": created_membership,
            },
            request_context=request_context,
        )

    def log_sso_config_change(
        self,
        organization_id: str,
        actor_user_id: str,
        old_config: Optional[Dict[str, Any]],
        new_config: Dict[str, Any],
        request_context: Optional[Dict[str, Any]] = None,
    ) -> Optional[asyncio.Task]:
        return self.emit(
            action=AuditAction.SSO_CONFIG_UPDATED,
            resource_type=ResourceType.ORGANIZATION,
            user_id=actor_user_id,
            organization_id=organization_id,
            resource_id=organization_id,
            metadata={"old_values": old_config, "new_values": new_config},
            request_context=request_context,
        )

    async def drain(self) -> None:
        """Wait for scheduled writes; used at shutdown and in tests."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # =========================================================================
    # Helper Methods
    # =========================================================================

    def _sanitize_data(
        self,
        data: Optional[Dict[str, Any]],
    ) -> Optional[Dict[str, Any]]:
        """
        Sanitize data by removing sensitive fields and truncating large values.
        """
        if data is None:
            return None

        sanitized = {}

        for key, value in data.items():
            key_lower = str(key).lower()
            if any(sensitive in key_lower for sensitive in SENSITIVE_FIELDS):
                sanitized[key] = "[REDACTED]"
                continue

            if isinstance(value, dict):
                sanitized[key] = self._sanitize_data(value)
            elif isinstance(value, list):
                sanitized[key] = [
                    self._sanitize_data(item) if isinstance(item, dict) else item
                    for item in value[:100]  # Limit list size
                ]
            elif isinstance(value, str) and len(value) > MAX_VALUE_SIZE:
                sanitized[key] = value[:MAX_VALUE_SIZE] + "...[truncated]"
            else:
                sanitized[key] = value

        return sanitized


# =============================================================================
# Service Singleton
# =============================================================================


_audit_service: Optional[AuditService] = None


def get_audit_service() -> AuditService:
    """
    Get the audit service singleton.

    Raises:
        RuntimeError: If service not initialized.
    """
    if _audit_service is None:
        raise RuntimeError(
            "AuditService not initialized. "
            "Call init_audit_service() first."
        )
    return _audit_service


def init_audit_service(store: IdentityStore) -> AuditService:
    """Initialize the audit service singleton."""
    global _audit_service
    _audit_service = AuditService(store)
    logger.info("AuditService initialized")
    return _audit_service
