"""
OpenID Connect (OIDC) Validator.

Turns an authorization code into a FederatedIdentity:

    Unauthenticated -> CodeExchanged -> TokenValidated -> Extracted

- Authorization code exchange (PKCE verifier + redirect URI, client_secret_post)
- ID token signature verification against the IdP's JWKS
- exp / iss (exact) / aud checks, sub and email presence
- Claim extraction with name and group fallbacks
- Best-effort RP-initiated logout

Security Considerations:
- The token request has a bounded timeout and is never retried;
  authorization codes are single-use
- Provider error bodies are kept in internal_message only
- Only asymmetric signing algorithms are accepted
- The nonce claim is not checked: the authorization request, and with it the
  nonce, is owned by the browser-side flow
"""

import logging
import time
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import httpx
import jwt

from src.auth.sso.errors import (
    AudienceMismatch,
    InvalidIdToken,
    InvalidIssuer,
    MissingClaim,
    MissingIdToken,
    SSOFederationError,
    TokenExchangeFailed,
    TokenExpired,
)
from src.config import OIDCSettings, get_settings
from src.types.sso import (
    FederatedIdentity,
    LogoutParams,
    OidcConfig,
    OidcParams,
    SSOProtocol,
)

logger = logging.getLogger(__name__)

PROTOCOL = SSOProtocol.OIDC.value

ALLOWED_ALGORITHMS = ["RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512"]


class JWKSCache:
    """
    Per-URI cache of JSON Web Key Sets.

    Entries live for ttl_seconds. A token signed with a key id that is not in
    the cached set triggers one refetch, which picks up IdP key rotation.
    Discovery documents are cached alongside with the same TTL.
    """

    def __init__(self, ttl_seconds: int = 3600, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._jwks: Dict[str, Tuple[float, jwt.PyJWKSet]] = {}
        self._discovery: Dict[str, Tuple[float, Dict[str, Any]]] = {}

    def _fresh(self, fetched_at: float) -> bool:
        return self._clock() - fetched_at < self.ttl_seconds

    def get_jwks(self, uri: str) -> Optional[jwt.PyJWKSet]:
        entry = self._jwks.get(uri)
        if entry and self._fresh(entry[0]):
            return entry[1]
        return None

    def put_jwks(self, uri: str, jwk_set: jwt.PyJWKSet) -> None:
        self._jwks[uri] = (self._clock(), jwk_set)

    def get_discovery(self, url: str) -> Optional[Dict[str, Any]]:
        entry = self._discovery.get(url)
        if entry and self._fresh(entry[0]):
            return entry[1]
        return None

    def put_discovery(self, url: str, document: Dict[str, Any]) -> None:
        self._discovery[url] = (self._clock(), document)

    def clear(self) -> None:
        self._jwks.clear()
        self._discovery.clear()


class OIDCService:
    """
    OIDC validator for the authorization-code flow.

    The service holds no per-request state; the only shared state is the
    JWKS cache. An httpx transport can be injected for tests.
    """

    def __init__(
        self,
        settings: Optional[OIDCSettings] = None,
        jwks_cache: Optional[JWKSCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings().oidc
        self.jwks_cache = jwks_cache or JWKSCache(self.settings.jwks_cache_ttl_seconds)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.oidc_http_timeout_seconds,
            transport=self._transport,
        )

    async def validate(
        self,
        code: str,
        config: OidcConfig,
        params: OidcParams,
        organization_id: str,
    ) -> FederatedIdentity:
        """
        Exchange the code, validate the ID token and extract the identity.

        Raises:
            SSOFederationError subclasses, tagged with protocol and organization
        """
        try:
            tokens = await self.exchange_code(code, config, params)
            claims = await self.validate_id_token(tokens["id_token"], config)
            identity = self.extract_identity(claims, organization_id)
        except SSOFederationError as e:
            e.with_context(PROTOCOL, organization_id)
            raise

        logger.info(
            "OIDC token validated for subject %s (org: %s)",
            identity.subject,
            organization_id,
        )
        return identity

    async def exchange_code(
        self,
        code: str,
        config: OidcConfig,
        params: OidcParams,
    ) -> Dict[str, Any]:
        """
        Exchange an authorization code at the token endpoint.

        Returns:
            Token response; always contains a non-empty id_token
        """
        token_endpoint = config.effective_token_endpoint
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": config.client_id,
            "client_secret": config.client_secret.get_secret_value(),
            "redirect_uri": params.redirect_uri,
            "code_verifier": params.code_verifier,
        }

        try:
            async with self._client() as client:
                response = await client.post(
                    token_endpoint,
                    data=form,
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            raise TokenExchangeFailed(
                internal_message=f"Token request to {token_endpoint} failed: {e!r}",
            ) from e

        if not response.is_success:
            raise TokenExchangeFailed(
                internal_message=(
                    f"Token endpoint {token_endpoint} returned HTTP "
                    f"{response.status_code}: {response.text[:500]}"
                ),
            )

        try:
            data = response.json()
        except ValueError as e:
            raise TokenExchangeFailed(
                internal_message=f"Token endpoint {token_endpoint} returned non-JSON body",
            ) from e

        if not isinstance(data, dict) or not data.get("id_token"):
            raise MissingIdToken(
                internal_message=f"Token response keys: {sorted(data) if isinstance(data, dict) else type(data).__name__}",
            )

        logger.debug("Authorization code exchanged at %s", token_endpoint)
        return data

    async def validate_id_token(self, id_token: str, config: OidcConfig) -> Dict[str, Any]:
        """
        Verify the ID token signature and registered claims.

        Returns:
            Decoded claims
        """
        signing_key = await self.get_signing_key(id_token, config)

        try:
            claims = jwt.decode(
                id_token,
                signing_key.key,
                algorithms=ALLOWED_ALGORITHMS,
                audience=config.client_id,
                issuer=config.issuer,
                leeway=self.settings.oidc_clock_skew_seconds,
                options={
                    "verify_signature": True,
                    "verify_exp": True,
                    "verify_aud": True,
                    "verify_iss": True,
                    "require": ["exp", "iss", "aud"],
                },
            )
        except jwt.ExpiredSignatureError as e:
            raise TokenExpired(internal_message=str(e)) from e
        except jwt.InvalidIssuerError as e:
            raise InvalidIssuer(
                internal_message=f"Expected issuer {config.issuer}: {e}",
            ) from e
        except jwt.InvalidAudienceError as e:
            raise AudienceMismatch(
                internal_message=f"Expected audience {config.client_id}: {e}",
            ) from e
        except jwt.MissingRequiredClaimError as e:
            if e.claim == "iss":
                raise InvalidIssuer(internal_message=str(e)) from e
            if e.claim == "aud":
                raise AudienceMismatch(internal_message=str(e)) from e
            raise MissingClaim(
                details={"claim": e.claim},
                internal_message=str(e),
            ) from e
        except jwt.PyJWTError as e:
            raise InvalidIdToken(internal_message=f"ID token rejected: {e}") from e

        if claims.get("iss") != config.issuer:
            raise InvalidIssuer(
                internal_message=f"Expected issuer {config.issuer}, got {claims.get('iss')!r}",
            )

        for claim in ("sub", "email"):
            value = claims.get(claim)
            if not isinstance(value, str) or not value.strip():
                raise MissingClaim(
                    details={"claim": claim},
                    internal_message=f"ID token has no usable '{claim}' claim",
                )

        return claims

    @staticmethod
    def extract_identity(claims: Dict[str, Any], organization_id: str) -> FederatedIdentity:
        """Map validated claims onto a FederatedIdentity."""
        email = claims["email"]
        name = claims.get("name")
        if not isinstance(name, str) or not name.strip():
            name = email.split("@", 1)[0]

        groups = _string_list(claims.get("groups"))
        if not groups:
            groups = _string_list(claims.get("roles"))

        return FederatedIdentity(
            subject=claims["sub"],
            email=email,
            display_name=name,
            protocol=SSOProtocol.OIDC,
            organization_id=organization_id,
            groups=groups,
        )

    # =========================================================================
    # Key material
    # =========================================================================

    async def get_signing_key(self, id_token: str, config: OidcConfig) -> jwt.PyJWK:
        """
        Find the JWK that signed the token, refetching once on an unknown kid.
        """
        try:
            header = jwt.get_unverified_header(id_token)
        except jwt.PyJWTError as e:
            raise InvalidIdToken(internal_message=f"Undecodable ID token header: {e}") from e

        kid = header.get("kid")
        jwks_uri = await self.resolve_jwks_uri(config)

        jwk_set = self.jwks_cache.get_jwks(jwks_uri)
        refreshed = False
        if jwk_set is None:
            jwk_set = await self._fetch_jwks(jwks_uri)
            refreshed = True

        key = _select_key(jwk_set, kid)
        if key is None and not refreshed:
            logger.info("Signing key %s not in cached JWKS, refetching %s", kid, jwks_uri)
            jwk_set = await self._fetch_jwks(jwks_uri)
            key = _select_key(jwk_set, kid)

        if key is None:
            raise InvalidIdToken(
                internal_message=f"No signing key matches kid={kid!r} at {jwks_uri}",
            )
        return key

    async def resolve_jwks_uri(self, config: OidcConfig) -> str:
        if config.jwks_uri:
            return config.jwks_uri

        discovery = await self.discover_configuration(config)
        jwks_uri = discovery.get("jwks_uri")
        if not jwks_uri:
            raise InvalidIdToken(
                internal_message=f"Discovery document for {config.issuer} has no jwks_uri",
            )
        return jwks_uri

    async def discover_configuration(self, config: OidcConfig) -> Dict[str, Any]:
        """Fetch (or reuse) {issuer}/.well-known/openid-configuration."""
        discovery_url = config.discovery_url
        cached = self.jwks_cache.get_discovery(discovery_url)
        if cached is not None:
            return cached

        document = await self._get_json(discovery_url, "discovery document")
        self.jwks_cache.put_discovery(discovery_url, document)
        return document

    async def _fetch_jwks(self, jwks_uri: str) -> jwt.PyJWKSet:
        document = await self._get_json(jwks_uri, "JWKS")
        try:
            jwk_set = jwt.PyJWKSet.from_dict(document)
        except jwt.PyJWTError as e:
            raise InvalidIdToken(internal_message=f"Unusable JWKS at {jwks_uri}: {e}") from e

        self.jwks_cache.put_jwks(jwks_uri, jwk_set)
        logger.debug("Fetched %d signing keys from %s", len(jwk_set.keys), jwks_uri)
        return jwk_set

    async def _get_json(self, url: str, what: str) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.get(url, follow_redirects=True)
                response.raise_for_status()
                document = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise InvalidIdToken(internal_message=f"Failed to fetch {what} from {url}: {e}") from e

        if not isinstance(document, dict):
            raise InvalidIdToken(internal_message=f"{what} at {url} is not a JSON object")
        return document

    # =========================================================================
    # Logout
    # =========================================================================

    @staticmethod
    def build_logout_url(config: OidcConfig, params: LogoutParams) -> Optional[str]:
        """
        Build the RP-initiated logout URL.

        Returns:
            Logout URL or None if no logout endpoint is configured
        """
        if not config.logout_endpoint:
            return None

        query = {}
        if params.id_token_hint:
            query["id_token_hint"] = params.id_token_hint
        if params.post_logout_redirect_uri:
            query["post_logout_redirect_uri"] = params.post_logout_redirect_uri

        if query:
            separator = "&" if "?" in config.logout_endpoint else "?"
            return f"{config.logout_endpoint}{separator}{urlencode(query)}"
        return config.logout_endpoint

    async def logout(self, config: OidcConfig, params: LogoutParams) -> bool:
        """
        Notify the IdP of logout. Never raises.

        Returns:
            True when the IdP answered with a 2xx or 3xx status
        """
        logout_url = self.build_logout_url(config, params)
        if logout_url is None:
            logger.debug("No OIDC logout endpoint configured for issuer %s", config.issuer)
            return False

        try:
            async with self._client() as client:
                response = await client.get(logout_url, follow_redirects=False)
        except httpx.HTTPError as e:
            logger.warning("OIDC logout request to %s failed: %r", config.logout_endpoint, e)
            return False

        if response.status_code < 400:
            logger.info("OIDC logout accepted by %s", config.logout_endpoint)
            return True

        logger.warning(
            "OIDC logout rejected by %s with HTTP %s",
            config.logout_endpoint,
            response.status_code,
        )
        return False


def _select_key(jwk_set: jwt.PyJWKSet, kid: Optional[str]) -> Optional[jwt.PyJWK]:
    signing_keys = [k for k in jwk_set.keys if getattr(k, "public_key_use", None) in (None, "sig")]
    if kid is None:
        # Tokens without kid are only accepted against a single-key set.
        return signing_keys[0] if len(signing_keys) == 1 else None
    for key in signing_keys:
        if key.key_id == kid:
            return key
    return None


def _string_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value] if value else []
    if isinstance(value, (list, tuple)):
        return [item for item in value if isinstance(item, str)]
    return []


# Singleton instance
_oidc_service: Optional[OIDCService] = None


def get_oidc_service() -> OIDCService:
    """Get the process-wide OIDC service (shares one JWKS cache)."""
    global _oidc_service
    if _oidc_service is None:
        _oidc_service = OIDCService()
    return _oidc_service


def clear_oidc_service_cache() -> None:
    """Drop the singleton and its JWKS cache."""
    global _oidc_service
    _oidc_service = None
