"""
Pytest configuration and shared fixtures for SSO federation tests.

This module provides common fixtures used across all test files:
- Throwaway RSA keys and self-signed IdP certificates
- A mock OIDC identity provider behind httpx.MockTransport
- Signed SAML response builders (signxml)
- In-memory identity store and audit service
"""

import base64
import json
import os
import sys
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

import httpx
import jwt
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from lxml import etree
from signxml import XMLSigner
from signxml.algorithms import SignatureConstructionMethod

# Environment setup before any imports
os.environ["ENVIRONMENT"] = "development"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["REQUEST_LOGGING_ENABLED"] = "true"
for _name in ("DATABASE_URL", "DATABASE_URL_DIRECT", "SENTRY_DSN"):
    os.environ.pop(_name, None)

# Ensure project root is in path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from src.auth.sso.oidc_service import JWKSCache, OIDCService
from src.auth.sso.saml_service import SAMLService, init_saml_runtime
from src.config import OIDCSettings
from src.organizations.audit_service import AuditService
from src.organizations.store import InMemoryIdentityStore


ACME_DOMAIN = "acme.com"
ACME_ISSUER = "https://idp.acme.com"
ACME_CLIENT_ID = "acme-portal"
ACME_CLIENT_SECRET = "acme-client-secret-value"
ACME_KID = "acme-key-1"
REDIRECT_URI = "https://app.example.com/sso/callback"
CODE_VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"

SAML_IDP_ENTITY_ID = "https://sso.globex.com/metadata"
GLOBEX_DOMAIN = "globex.com"

SAML_NS = "urn:oasis:names:tc:SAML:2.0:assertion"
SAMLP_NS = "urn:oasis:names:tc:SAML:2.0:protocol"
EXCLUSIVE_C14N = "http://www.w3.org/2001/10/xml-exc-c14n#"

# Second precision keeps SAML instants exact for boundary tests.
NOW = datetime.now(timezone.utc).replace(microsecond=0)


# =============================================================================
# Keys and certificates
# =============================================================================


def generate_rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def private_key_pem(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def make_certificate(
    key: rsa.RSAPrivateKey,
    common_name: str = "idp.test",
    not_before: Optional[datetime] = None,
    not_after: Optional[datetime] = None,
) -> str:
    """Self-signed PEM certificate for key."""
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or NOW - timedelta(days=1))
        .not_valid_after(not_after or NOW + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    return certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")


@pytest.fixture(scope="session", autouse=True)
def saml_runtime():
    """The SAML runtime is a process-wide precondition."""
    init_saml_runtime()


@pytest.fixture(scope="session")
def idp_key() -> rsa.RSAPrivateKey:
    return generate_rsa_key()


@pytest.fixture(scope="session")
def attacker_key() -> rsa.RSAPrivateKey:
    return generate_rsa_key()


@pytest.fixture(scope="session")
def idp_certificate(idp_key) -> str:
    return make_certificate(idp_key, common_name="sso.globex.com")


@pytest.fixture(scope="session")
def attacker_certificate(attacker_key) -> str:
    return make_certificate(attacker_key, common_name="sso.globex.com")


# =============================================================================
# OIDC
# =============================================================================


def public_jwk(key: rsa.RSAPrivateKey, kid: str = ACME_KID) -> Dict[str, Any]:
    jwk = json.loads(jwt.algorithms.RSAAlgorithm.to_jwk(key.public_key()))
    jwk.update({"kid": kid, "use": "sig", "alg": "RS256"})
    return jwk


def id_token_claims(**overrides: Any) -> Dict[str, Any]:
    """Valid acme.com ID token claims; pass a value of None to drop a claim."""
    issued_at = int(datetime.now(timezone.utc).timestamp())
    claims = {
        "iss": ACME_ISSUER,
        "aud": ACME_CLIENT_ID,
        "sub": "u1",
        "email": "alice@acme.com",
        "name": "Alice Example",
        "iat": issued_at,
        "exp": issued_at + 300,
    }
    claims.update(overrides)
    return {k: v for k, v in claims.items() if v is not None}


def mint_id_token(
    key: rsa.RSAPrivateKey,
    claims: Optional[Dict[str, Any]] = None,
    kid: Optional[str] = ACME_KID,
) -> str:
    headers = {"kid": kid} if kid is not None else None
    return jwt.encode(claims or id_token_claims(), key, algorithm="RS256", headers=headers)


class MockIdP:
    """
    In-process OIDC provider for httpx.MockTransport.

    Serves /token, /jwks, /.well-known/openid-configuration and /logout
    under ACME_ISSUER and records every request.
    """

    def __init__(self, keys: Iterable[Dict[str, Any]]):
        self.jwks = {"keys": list(keys)}
        self.id_token: Optional[str] = None
        self.token_status = 200
        self.token_body: Optional[Any] = None
        self.token_error: Optional[Exception] = None
        self.logout_status = 302
        self.logout_error: Optional[Exception] = None
        self.requests: List[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/token":
            if self.token_error is not None:
                raise self.token_error
            if self.token_body is not None:
                if isinstance(self.token_body, str):
                    return httpx.Response(self.token_status, text=self.token_body)
                return httpx.Response(self.token_status, json=self.token_body)
            return httpx.Response(
                self.token_status,
                json={"access_token": "at-123", "token_type": "Bearer", "id_token": self.id_token},
            )

        if path == "/jwks":
            return httpx.Response(200, json=self.jwks)

        if path == "/.well-known/openid-configuration":
            return httpx.Response(
                200,
                json={
                    "issuer": ACME_ISSUER,
                    "token_endpoint": f"{ACME_ISSUER}/token",
                    "jwks_uri": f"{ACME_ISSUER}/jwks",
                },
            )

        if path == "/logout":
            if self.logout_error is not None:
                raise self.logout_error
            return httpx.Response(self.logout_status)

        return httpx.Response(404)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def requests_to(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]


@pytest.fixture
def mock_idp(idp_key) -> MockIdP:
    idp = MockIdP([public_jwk(idp_key)])
    idp.id_token = mint_id_token(idp_key)
    return idp


@pytest.fixture
def oidc_service(mock_idp) -> OIDCService:
    return OIDCService(
        settings=OIDCSettings(),
        jwks_cache=JWKSCache(ttl_seconds=3600),
        transport=mock_idp.transport,
    )


def oidc_config_dict(**overrides: Any) -> Dict[str, Any]:
    oidc = {
        "issuer": ACME_ISSUER,
        "clientId": ACME_CLIENT_ID,
        "clientSecret": ACME_CLIENT_SECRET,
        "authorizationEndpoint": f"{ACME_ISSUER}/authorize",
        "tokenEndpoint": f"{ACME_ISSUER}/token",
        "jwksUri": f"{ACME_ISSUER}/jwks",
        "logoutEndpoint": f"{ACME_ISSUER}/logout",
    }
    oidc.update(overrides)
    return {
        "protocol": "oidc",
        "oidc": {k: v for k, v in oidc.items() if v is not None},
        "domainVerificationRequired": True,
        "jitProvisioningEnabled": True,
    }


# =============================================================================
# SAML2
# =============================================================================


def saml_instant(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def saml_config_dict(certificate: str, **overrides: Any) -> Dict[str, Any]:
    saml2 = {
        "idpEntityId": SAML_IDP_ENTITY_ID,
        "ssoUrl": "https://sso.globex.com/saml/sso",
        "sloUrl": "https://sso.globex.com/saml/slo",
        "certificate": certificate,
        "requireSignedAssertions": True,
    }
    saml2.update(overrides)
    return {
        "protocol": "saml2",
        "saml2": {k: v for k, v in saml2.items() if v is not None},
        "domainVerificationRequired": True,
        "jitProvisioningEnabled": True,
    }


def _attribute_xml(name: str, values: Iterable[str]) -> str:
    rendered = "".join(f"<saml:AttributeValue>{v}</saml:AttributeValue>" for v in values)
    return f'<saml:Attribute Name="{name}">{rendered}</saml:Attribute>'


def _sign(element: etree._Element, key: rsa.RSAPrivateKey, certificate: str) -> etree._Element:
    signer = XMLSigner(
        method=SignatureConstructionMethod.enveloped,
        signature_algorithm="rsa-sha256",
        digest_algorithm="sha256",
        c14n_algorithm=EXCLUSIVE_C14N,
    )
    return signer.sign(element, key=private_key_pem(key), cert=certificate)


def build_saml_response(
    key: Optional[rsa.RSAPrivateKey] = None,
    certificate: Optional[str] = None,
    sign: Optional[str] = "assertion",
    email: Optional[str] = "bob@globex.com",
    name: Optional[str] = "Bob Globex",
    name_id: Optional[str] = "bob-nameid",
    groups: Iterable[str] = ("engineering", "admins"),
    not_before: Optional[datetime] = None,
    not_on_or_after: Optional[datetime] = None,
    include_conditions: bool = True,
    extra_attributes: Optional[Dict[str, List[str]]] = None,
    encode: bool = True,
) -> str:
    """
    Build a SAML Response, optionally signed.

    sign is "assertion" (signed standalone, then embedded), "response",
    or None for an unsigned document.
    """
    issued = NOW
    not_before = not_before or issued - timedelta(minutes=1)
    not_on_or_after = not_on_or_after or issued + timedelta(minutes=5)

    attributes = []
    if email is not None:
        attributes.append(_attribute_xml("email", [email]))
    if name is not None:
        attributes.append(_attribute_xml("name", [name]))
    if groups:
        attributes.append(_attribute_xml("groups", list(groups)))
    for attr_name, values in (extra_attributes or {}).items():
        attributes.append(_attribute_xml(attr_name, values))

    subject = f"<saml:Subject><saml:NameID>{name_id}</saml:NameID></saml:Subject>" if name_id else ""
    conditions = (
        f'<saml:Conditions NotBefore="{saml_instant(not_before)}" '
        f'NotOnOrAfter="{saml_instant(not_on_or_after)}"/>'
        if include_conditions
        else ""
    )

    assertion_xml = (
        f'<saml:Assertion xmlns:saml="{SAML_NS}" ID="_{uuid.uuid4().hex}" '
        f'Version="2.0" IssueInstant="{saml_instant(issued)}">'
        f"<saml:Issuer>{SAML_IDP_ENTITY_ID}</saml:Issuer>"
        f"{subject}{conditions}"
        f"<saml:AttributeStatement>{''.join(attributes)}</saml:AttributeStatement>"
        f"</saml:Assertion>"
    )
    assertion = etree.fromstring(assertion_xml.encode("utf-8"))
    if sign == "assertion":
        assertion = _sign(assertion, key, certificate)

    response = etree.fromstring(
        (
            f'<samlp:Response xmlns:samlp="{SAMLP_NS}" xmlns:saml="{SAML_NS}" '
            f'ID="_{uuid.uuid4().hex}" Version="2.0" IssueInstant="{saml_instant(issued)}">'
            f"<saml:Issuer>{SAML_IDP_ENTITY_ID}</saml:Issuer>"
            f"</samlp:Response>"
        ).encode("utf-8")
    )
    response.append(assertion)
    if sign == "response":
        response = _sign(response, key, certificate)

    xml_bytes = etree.tostring(response)
    if not encode:
        return xml_bytes.decode("utf-8")
    return base64.b64encode(xml_bytes).decode("ascii")


def encode_xml(xml: str) -> str:
    return base64.b64encode(xml.encode("utf-8")).decode("ascii")


def fixed_clock(moment: datetime):
    return lambda: moment


@pytest.fixture
def saml_service() -> SAMLService:
    return SAMLService(clock=fixed_clock(NOW))


# =============================================================================
# Store and audit
# =============================================================================


@pytest.fixture
def store() -> InMemoryIdentityStore:
    return InMemoryIdentityStore()


@pytest.fixture
def audit_service(store) -> AuditService:
    return AuditService(store)
