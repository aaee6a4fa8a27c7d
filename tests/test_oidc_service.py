"""
Tests for the OIDC validator.

Uses an in-process identity provider (httpx.MockTransport) and RSA keys
generated per test session.
"""

import json
from urllib.parse import parse_qs

import httpx
import pytest

from conftest import (
    ACME_CLIENT_ID,
    ACME_CLIENT_SECRET,
    ACME_ISSUER,
    CODE_VERIFIER,
    REDIRECT_URI,
    MockIdP,
    generate_rsa_key,
    id_token_claims,
    mint_id_token,
    oidc_config_dict,
    public_jwk,
)
from src.auth.sso.config_parser import parse_sso_config
from src.auth.sso.errors import (
    AudienceMismatch,
    InvalidIdToken,
    InvalidIssuer,
    MissingClaim,
    MissingIdToken,
    SSOErrorCode,
    TokenExchangeFailed,
    TokenExpired,
)
from src.auth.sso.oidc_service import JWKSCache, OIDCService
from src.config import OIDCSettings
from src.types.sso import LogoutParams, OidcParams, SSOProtocol


PARAMS = OidcParams(code_verifier=CODE_VERIFIER, redirect_uri=REDIRECT_URI)


def acme_config(**overrides):
    return parse_sso_config(oidc_config_dict(**overrides)).oidc


class TestCodeExchange:
    """Tests for the token endpoint call."""

    @pytest.mark.asyncio
    async def test_valid_login_returns_identity(self, oidc_service, mock_idp):
        """A valid code yields the identity from the ID token claims."""
        identity = await oidc_service.validate("auth-code-1", acme_config(), PARAMS, "org-acme")

        assert identity.subject == "u1"
        assert identity.email == "alice@acme.com"
        assert identity.display_name == "Alice Example"
        assert identity.protocol is SSOProtocol.OIDC
        assert identity.organization_id == "org-acme"
        assert identity.groups == []

    @pytest.mark.asyncio
    async def test_token_request_form(self, oidc_service, mock_idp):
        """The code, PKCE verifier, redirect URI and client credentials are posted."""
        await oidc_service.validate("auth-code-1", acme_config(), PARAMS, "org-acme")

        (token_request,) = mock_idp.requests_to("/token")
        form = {k: v[0] for k, v in parse_qs(token_request.content.decode()).items()}
        assert token_request.method == "POST"
        assert form == {
            "grant_type": "authorization_code",
            "code": "auth-code-1",
            "client_id": ACME_CLIENT_ID,
            "client_secret": ACME_CLIENT_SECRET,
            "redirect_uri": REDIRECT_URI,
            "code_verifier": CODE_VERIFIER,
        }

    @pytest.mark.asyncio
    async def test_token_endpoint_error_is_not_leaked(self, oidc_service, mock_idp):
        """A 400 from the IdP becomes TokenExchangeFailed without its body."""
        mock_idp.token_status = 400
        mock_idp.token_body = {"error": "invalid_grant", "error_description": "code reused xyz-789"}

        with pytest.raises(TokenExchangeFailed) as exc_info:
            await oidc_service.validate("used-code", acme_config(), PARAMS, "org-acme")

        error = exc_info.value
        assert error.error_code is SSOErrorCode.TOKEN_EXCHANGE_FAILED
        assert error.protocol == "oidc"
        assert error.organization_id == "org-acme"
        assert "xyz-789" not in json.dumps(error.to_dict())
        assert "xyz-789" in error.internal_message

    @pytest.mark.asyncio
    async def test_token_request_not_retried(self, oidc_service, mock_idp):
        """Authorization codes are single-use: one request per attempt."""
        mock_idp.token_status = 503
        mock_idp.token_body = "unavailable"

        with pytest.raises(TokenExchangeFailed):
            await oidc_service.validate("code", acme_config(), PARAMS, "org-acme")
        assert len(mock_idp.requests_to("/token")) == 1

    @pytest.mark.asyncio
    async def test_network_error(self, oidc_service, mock_idp):
        """Transport failures become TokenExchangeFailed."""
        mock_idp.token_error = httpx.ConnectError("connection refused")

        with pytest.raises(TokenExchangeFailed):
            await oidc_service.validate("code", acme_config(), PARAMS, "org-acme")

    @pytest.mark.asyncio
    async def test_missing_id_token(self, oidc_service, mock_idp):
        """A token response without id_token is rejected."""
        mock_idp.token_body = {"access_token": "at-only", "token_type": "Bearer"}

        with pytest.raises(MissingIdToken):
            await oidc_service.validate("code", acme_config(), PARAMS, "org-acme")

    @pytest.mark.asyncio
    async def test_default_token_endpoint(self, oidc_service, mock_idp):
        """Without tokenEndpoint the code goes to {issuer}/token."""
        await oidc_service.validate("code", acme_config(tokenEndpoint=None), PARAMS, "org-acme")
        assert str(mock_idp.requests_to("/token")[0].url) == f"{ACME_ISSUER}/token"


class TestIdTokenValidation:
    """Tests for signature and claim checks."""

    @pytest.mark.asyncio
    async def test_expired_token(self, oidc_service, mock_idp, idp_key):
        """exp in the past beyond the skew is rejected."""
        claims = id_token_claims(iat=1_000_000, exp=1_000_300)
        mock_idp.id_token = mint_id_token(idp_key, claims)

        with pytest.raises(TokenExpired):
            await oidc_service.validate("code", acme_config(), PARAMS, "org-acme")

    @pytest.mark.asyncio
    async def test_wrong_issuer(self, oidc_service, mock_idp, idp_key):
        """The issuer must match exactly."""
        mock_idp.id_token = mint_id_token(idp_key, id_token_claims(iss=f"{ACME_ISSUER}/"))

        with pytest.raises(InvalidIssuer):
            await oidc_service.validate("code", acme_config(), PARAMS, "org-acme")

    @pytest.mark.asyncio
    async def test_issuer_prefix_rejected(self, oidc_service, idp_key):
        """An issuer that is only a prefix of the configured one is not accepted."""
        token = mint_id_token(idp_key, id_token_claims(iss="https://idp.acme"))

        with pytest.raises(InvalidIssuer):
            await oidc_service.validate_id_token(token, acme_config())

    @pytest.mark.asyncio
    async def test_wrong_audience(self, oidc_service, mock_idp, idp_key):
        """aud must contain the client id."""
        mock_idp.id_token = mint_id_token(idp_key, id_token_claims(aud="someone-else"))

        with pytest.raises(AudienceMismatch):
            await oidc_service.validate("code", acme_config(), PARAMS, "org-acme")

    @pytest.mark.asyncio
    async def test_audience_list_containing_client(self, oidc_service, mock_idp, idp_key):
        """A list audience is accepted when it includes the client id."""
        mock_idp.id_token = mint_id_token(
            idp_key, id_token_claims(aud=["other-api", ACME_CLIENT_ID])
        )

        identity = await oidc_service.validate("code", acme_config(), PARAMS, "org-acme")
        assert identity.subject == "u1"

    @pytest.mark.asyncio
    async def test_missing_email(self, oidc_service, mock_idp, idp_key):
        """A token without email is rejected."""
        mock_idp.id_token = mint_id_token(idp_key, id_token_claims(email=None))

        with pytest.raises(MissingClaim) as exc_info:
            await oidc_service.validate("code", acme_config(), PARAMS, "org-acme")
        assert exc_info.value.details == {"claim": "email"}

    @pytest.mark.asyncio
    async def test_missing_subject(self, oidc_service, mock_idp, idp_key):
        """A token without sub is rejected."""
        mock_idp.id_token = mint_id_token(idp_key, id_token_claims(sub=None))

        with pytest.raises(MissingClaim) as exc_info:
            await oidc_service.validate("code", acme_config(), PARAMS, "org-acme")
        assert exc_info.value.details == {"claim": "sub"}

    @pytest.mark.asyncio
    async def test_signed_by_unknown_key(self, oidc_service, mock_idp, attacker_key):
        """A token signed by a key outside the JWKS is rejected."""
        mock_idp.id_token = mint_id_token(attacker_key)

        with pytest.raises(InvalidIdToken):
            await oidc_service.validate("code", acme_config(), PARAMS, "org-acme")

    @pytest.mark.asyncio
    async def test_unknown_kid(self, oidc_service, mock_idp, idp_key):
        """A kid the IdP does not publish is rejected."""
        mock_idp.id_token = mint_id_token(idp_key, kid="rotated-away")

        with pytest.raises(InvalidIdToken):
            await oidc_service.validate("code", acme_config(), PARAMS, "org-acme")

    @pytest.mark.asyncio
    async def test_garbage_token(self, oidc_service, mock_idp):
        """A token that is not a JWT is rejected."""
        mock_idp.id_token = "not-a-jwt"

        with pytest.raises(InvalidIdToken):
            await oidc_service.validate("code", acme_config(), PARAMS, "org-acme")

    @pytest.mark.asyncio
    async def test_token_without_kid_single_key(self, oidc_service, mock_idp, idp_key):
        """Without kid the only published signing key is used."""
        mock_idp.id_token = mint_id_token(idp_key, kid=None)

        identity = await oidc_service.validate("code", acme_config(), PARAMS, "org-acme")
        assert identity.email == "alice@acme.com"


class TestClaimMapping:
    """Tests for identity extraction from claims."""

    @pytest.mark.asyncio
    async def test_name_falls_back_to_email_local_part(self, oidc_service, mock_idp, idp_key):
        """Without name the display name is the email local part."""
        mock_idp.id_token = mint_id_token(idp_key, id_token_claims(name=None))

        identity = await oidc_service.validate("code", acme_config(), PARAMS, "org-acme")
        assert identity.display_name == "alice"

    @pytest.mark.asyncio
    async def test_groups_claim(self, oidc_service, mock_idp, idp_key):
        """groups is mapped in order."""
        mock_idp.id_token = mint_id_token(
            idp_key, id_token_claims(groups=["eng", "ops"], roles=["ignored"])
        )

        identity = await oidc_service.validate("code", acme_config(), PARAMS, "org-acme")
        assert identity.groups == ["eng", "ops"]

    @pytest.mark.asyncio
    async def test_roles_fallback(self, oidc_service, mock_idp, idp_key):
        """roles is used when groups is absent."""
        mock_idp.id_token = mint_id_token(idp_key, id_token_claims(roles=["admin"]))

        identity = await oidc_service.validate("code", acme_config(), PARAMS, "org-acme")
        assert identity.groups == ["admin"]


class TestJwksResolution:
    """Tests for JWKS caching, rotation and discovery."""

    @pytest.mark.asyncio
    async def test_jwks_is_cached(self, oidc_service, mock_idp):
        """A second login reuses the cached key set."""
        await oidc_service.validate("code-1", acme_config(), PARAMS, "org-acme")
        await oidc_service.validate("code-2", acme_config(), PARAMS, "org-acme")

        assert len(mock_idp.requests_to("/jwks")) == 1

    @pytest.mark.asyncio
    async def test_key_rotation_refetches_once(self, oidc_service, mock_idp, idp_key):
        """A new kid triggers one JWKS refetch."""
        await oidc_service.validate("code-1", acme_config(), PARAMS, "org-acme")

        rotated_key = generate_rsa_key()
        mock_idp.jwks = {"keys": [public_jwk(idp_key), public_jwk(rotated_key, kid="acme-key-2")]}
        mock_idp.id_token = mint_id_token(rotated_key, kid="acme-key-2")

        identity = await oidc_service.validate("code-2", acme_config(), PARAMS, "org-acme")
        assert identity.subject == "u1"
        assert len(mock_idp.requests_to("/jwks")) == 2

    @pytest.mark.asyncio
    async def test_discovery_when_jwks_uri_missing(self, oidc_service, mock_idp):
        """Without jwksUri the discovery document supplies it."""
        identity = await oidc_service.validate(
            "code", acme_config(jwksUri=None), PARAMS, "org-acme"
        )

        assert identity.subject == "u1"
        assert len(mock_idp.requests_to("/.well-known/openid-configuration")) == 1
        assert len(mock_idp.requests_to("/jwks")) == 1

    @pytest.mark.asyncio
    async def test_encryption_keys_are_ignored(self, idp_key):
        """Keys published with use=enc never verify tokens."""
        enc_jwk = public_jwk(idp_key)
        enc_jwk["use"] = "enc"
        idp = MockIdP([enc_jwk])
        idp.id_token = mint_id_token(idp_key)
        service = OIDCService(settings=OIDCSettings(), jwks_cache=JWKSCache(), transport=idp.transport)

        with pytest.raises(InvalidIdToken):
            await service.validate("code", acme_config(), PARAMS, "org-acme")


class TestLogout:
    """Tests for RP-initiated logout."""

    def test_logout_url_with_hint(self):
        """id_token_hint and post_logout_redirect_uri are appended."""
        url = OIDCService.build_logout_url(
            acme_config(),
            LogoutParams(id_token_hint="tok", post_logout_redirect_uri="https://app.example.com/"),
        )
        assert url.startswith(f"{ACME_ISSUER}/logout?")
        assert "id_token_hint=tok" in url
        assert "post_logout_redirect_uri=https%3A%2F%2Fapp.example.com%2F" in url

    @pytest.mark.asyncio
    async def test_logout_without_endpoint(self, oidc_service, mock_idp):
        """No logout endpoint means no request and False."""
        result = await oidc_service.logout(acme_config(logoutEndpoint=None), LogoutParams())

        assert result is False
        assert mock_idp.requests == []

    @pytest.mark.asyncio
    async def test_logout_redirect_accepted(self, oidc_service, mock_idp):
        """A redirect from the IdP counts as success."""
        assert await oidc_service.logout(acme_config(), LogoutParams(id_token_hint="tok")) is True
        assert len(mock_idp.requests_to("/logout")) == 1

    @pytest.mark.asyncio
    async def test_logout_rejected(self, oidc_service, mock_idp):
        """A 4xx from the IdP returns False."""
        mock_idp.logout_status = 400
        assert await oidc_service.logout(acme_config(), LogoutParams()) is False

    @pytest.mark.asyncio
    async def test_logout_network_error_never_raises(self, oidc_service, mock_idp):
        """Transport failures are swallowed for logout."""
        mock_idp.logout_error = httpx.ConnectError("down")
        assert await oidc_service.logout(acme_config(), LogoutParams()) is False
