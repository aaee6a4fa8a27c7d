"""
Protocol configuration parser.

Turns the configuration document stored for an organization into a
validated, immutable OrganizationSsoConfig. Storage format concerns stay
here so the validators only ever see typed configuration.
"""

import json
import logging
from typing import Any, Mapping, Optional, Union

from pydantic import ValidationError

from src.auth.sso.errors import ConfigInvalid
from src.types.sso import OrganizationSsoConfig, supported_protocols

logger = logging.getLogger(__name__)

RawConfig = Union[str, bytes, Mapping[str, Any]]


def parse_sso_config(
    raw_config: Optional[RawConfig],
    organization_id: Optional[str] = None,
) -> OrganizationSsoConfig:
    """
    Parse a stored SSO configuration.

    Args:
        raw_config: JSON text or an already-decoded mapping
        organization_id: Owning organization, for error context

    Returns:
        Validated OrganizationSsoConfig

    Raises:
        ConfigInvalid: missing/unknown protocol, missing protocol section,
            or any field failing validation
    """
    if raw_config is None:
        raise ConfigInvalid(
            "SSO configuration is missing",
            organization_id=organization_id,
        )

    data = raw_config
    if isinstance(raw_config, (str, bytes)):
        try:
            data = json.loads(raw_config)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ConfigInvalid(
                organization_id=organization_id,
                internal_message=f"SSO configuration is not valid JSON: {e.msg if hasattr(e, 'msg') else e}",
            ) from e

    if not isinstance(data, Mapping):
        raise ConfigInvalid(
            organization_id=organization_id,
            internal_message=f"SSO configuration must be an object, got {type(data).__name__}",
        )

    protocol = data.get("protocol")
    if not isinstance(protocol, str) or protocol.strip().lower() not in supported_protocols():
        raise ConfigInvalid(
            "SSO configuration has a missing or unsupported protocol",
            organization_id=organization_id,
            details={"supported_protocols": supported_protocols()},
        )

    try:
        config = OrganizationSsoConfig.model_validate(dict(data))
    except ValidationError as e:
        # Locations and messages only; input values may hold secrets.
        problems = [
            f"{'.'.join(str(part) for part in error['loc']) or 'config'}: {error['msg']}"
            for error in e.errors(include_url=False, include_input=False)
        ]
        raise ConfigInvalid(
            organization_id=organization_id,
            details={"errors": problems},
            internal_message="; ".join(problems),
        ) from e

    logger.debug(
        "Parsed SSO configuration (org: %s, protocol: %s)",
        organization_id,
        config.protocol.value,
    )
    return config
