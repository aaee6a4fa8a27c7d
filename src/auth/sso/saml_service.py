"""
SAML 2.0 Validator.

Turns a Base64 SAML Response posted to the ACS endpoint into a
FederatedIdentity:

    RawResponse -> Decoded -> Unmarshalled -> SignatureVerified
        -> ConditionsVerified -> AttributesExtracted

Security Considerations:
- XML is parsed with a hardened lxml parser (no entities, no network)
- The IdP certificate must be within its validity period
- With requireSignedAssertions (the default) the Response or its first
  Assertion must carry a valid XML-DSig signature from the IdP certificate
- Conditions and attributes are read from the signed content returned by the
  verifier, never from the raw document, so wrapped elements are ignored
- NotBefore/NotOnOrAfter allow a symmetric clock skew (300 seconds)

init_saml_runtime() must be called once at process start, before the first
validation.
"""

import base64
import binascii
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from cryptography import x509
from lxml import etree
from signxml import XMLVerifier
from signxml.exceptions import InvalidSignature as SignXMLInvalidSignature
from signxml.verifier import SignatureConfiguration

from src.auth.sso.errors import (
    AssertionExpired,
    AssertionNotYetValid,
    InvalidIdpCertificate,
    InvalidSignature,
    MalformedResponse,
    MissingEmailAttribute,
    NoAssertion,
    SAMLRuntimeNotInitialized,
    SSOFederationError,
    UnsignedAssertion,
)
from src.config import SAMLSettings, get_settings
from src.types.sso import FederatedIdentity, LogoutParams, Saml2Config, SSOProtocol
from src.utils.logging import Timer

logger = logging.getLogger(__name__)

PROTOCOL = SSOProtocol.SAML2.value

# SAML namespace constants
SAML_NS = "urn:oasis:names:tc:SAML:2.0:assertion"
SAMLP_NS = "urn:oasis:names:tc:SAML:2.0:protocol"
XMLDSIG_NS = "http://www.w3.org/2000/09/xmldsig#"

NS = {"saml": SAML_NS, "samlp": SAMLP_NS, "ds": XMLDSIG_NS}

RESPONSE_TAG = f"{{{SAMLP_NS}}}Response"
ASSERTION_TAG = f"{{{SAML_NS}}}Assertion"
SIGNATURE_TAG = f"{{{XMLDSIG_NS}}}Signature"

NAME_ID_KEY = "NameID"


# =============================================================================
# Runtime bootstrap
# =============================================================================

_parser: Optional[etree.XMLParser] = None


def init_saml_runtime() -> None:
    """
    Build the process-wide hardened XML parser.

    Idempotent; called from the server lifespan and the test session.
    """
    global _parser
    if _parser is not None:
        return
    _parser = etree.XMLParser(
        resolve_entities=False,
        no_network=True,
        remove_comments=True,
        remove_pis=True,
        load_dtd=False,
        huge_tree=False,
    )
    logger.info("SAML2 runtime initialized")


def is_saml_runtime_initialized() -> bool:
    return _parser is not None


def _require_parser() -> etree.XMLParser:
    if _parser is None:
        raise SAMLRuntimeNotInitialized(
            "init_saml_runtime() must be called before validating SAML responses"
        )
    return _parser


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SAMLService:
    """
    SAML2 assertion consumer.

    Stateless apart from settings; the clock is injectable for tests.
    """

    def __init__(
        self,
        settings: Optional[SAMLSettings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.settings = settings or get_settings().saml
        self._clock = clock

    @property
    def clock_skew(self) -> timedelta:
        return timedelta(seconds=self.settings.saml_clock_skew_seconds)

    def validate(
        self,
        saml_response: str,
        config: Saml2Config,
        organization_id: str,
    ) -> FederatedIdentity:
        """
        Validate a SAML Response and extract the identity.

        Raises:
            SSOFederationError subclasses, tagged with protocol and organization
        """
        parser = _require_parser()
        logger.info(
            "Validating SAML2 assertion (org: %s, IdP: %s)",
            organization_id,
            config.idp_entity_id,
        )

        try:
            now = self._clock()
            xml_bytes = self.decode_response(saml_response)
            certificate = self.load_certificate(config.certificate, now)
            response = self.parse_response(xml_bytes, parser)
            assertion = self.verify_signatures(
                response, certificate, config.require_signed_assertions
            )
            self.validate_conditions(assertion, now)
            attributes = self.extract_attributes(assertion)
            identity = self.map_attributes(attributes, config, organization_id)
        except SSOFederationError as e:
            e.with_context(PROTOCOL, organization_id)
            raise

        logger.info(
            "SAML2 assertion validated for subject %s (org: %s)",
            identity.subject,
            organization_id,
        )
        return identity

    # =========================================================================
    # Decode / certificate / unmarshal
    # =========================================================================

    @staticmethod
    def decode_response(saml_response: str) -> bytes:
        """Base64-decode the response and check it is UTF-8 text."""
        compact = "".join(saml_response.split())
        try:
            decoded = base64.b64decode(compact, validate=True)
            decoded.decode("utf-8")
        except (binascii.Error, ValueError) as e:
            raise MalformedResponse(
                internal_message=f"SAML response is not Base64-encoded UTF-8: {e}",
            ) from e

        if not decoded.strip():
            raise MalformedResponse(internal_message="SAML response decoded to empty")

        logger.debug("Decoded SAML response (length: %d bytes)", len(decoded))
        return decoded

    @staticmethod
    def load_certificate(pem: str, now: Optional[datetime] = None) -> x509.Certificate:
        """
        Parse the IdP certificate and check its validity period.
        """
        now = now or _utcnow()
        try:
            certificate = x509.load_pem_x509_certificate(pem.encode("utf-8"))
        except ValueError as e:
            raise InvalidIdpCertificate(
                internal_message=f"IdP certificate could not be parsed: {e}",
            ) from e

        if now < certificate.not_valid_before_utc:
            raise InvalidIdpCertificate(
                internal_message=f"IdP certificate not valid before {certificate.not_valid_before_utc.isoformat()}",
            )
        if now > certificate.not_valid_after_utc:
            raise InvalidIdpCertificate(
                internal_message=f"IdP certificate expired at {certificate.not_valid_after_utc.isoformat()}",
            )

        logger.debug(
            "Loaded IdP certificate: subject=%s, issuer=%s",
            certificate.subject.rfc4514_string(),
            certificate.issuer.rfc4514_string(),
        )
        return certificate

    @staticmethod
    def parse_response(xml_bytes: bytes, parser: etree.XMLParser) -> etree._Element:
        """
        Parse the XML and check it is a samlp:Response with an assertion.
        """
        try:
            root = etree.fromstring(xml_bytes, parser=parser)
        except etree.XMLSyntaxError as e:
            raise MalformedResponse(internal_message=f"Invalid SAML XML: {e}") from e

        if root.tag != RESPONSE_TAG:
            raise MalformedResponse(
                internal_message=f"SAML document root is {root.tag}, expected Response",
            )

        if root.find(ASSERTION_TAG) is None:
            if root.find(f"{{{SAML_NS}}}EncryptedAssertion") is not None:
                logger.warning("Encrypted SAML assertions are not supported")
            raise NoAssertion()

        return root

    # =========================================================================
    # Signatures
    # =========================================================================

    def verify_signatures(
        self,
        response: etree._Element,
        certificate: x509.Certificate,
        require_signed: bool,
    ) -> etree._Element:
        """
        Verify the Response and first-Assertion signatures that are present.

        Returns:
            The assertion to trust: taken from the verified signed content when
            a signature exists, otherwise from the document (opt-out only).
        """
        assertion = response.find(ASSERTION_TAG)
        response_signed = response.find(SIGNATURE_TAG) is not None
        assertion_signed = assertion.find(SIGNATURE_TAG) is not None

        if not response_signed and not assertion_signed:
            if require_signed:
                raise UnsignedAssertion()
            logger.warning("Accepting unsigned SAML assertion: signature requirement disabled")
            return assertion

        trusted = None
        if response_signed:
            signed_response = self._verify_element(response, certificate, "response")
            trusted = signed_response.find(ASSERTION_TAG)
            if trusted is None:
                raise InvalidSignature(
                    internal_message="Response signature does not cover an assertion",
                )

        if assertion_signed:
            trusted = self._verify_element(assertion, certificate, "assertion")
            if trusted.tag != ASSERTION_TAG:
                raise InvalidSignature(
                    internal_message=f"Assertion signature covers {trusted.tag}",
                )

        return trusted

    @staticmethod
    def _verify_element(
        element: etree._Element,
        certificate: x509.Certificate,
        label: str,
    ) -> etree._Element:
        """XML-DSig check of the signature that is a direct child of element."""
        # Serialized on its own so the enveloped reference resolves to element.
        payload = etree.tostring(element)
        try:
            with Timer(f"saml_{label}_signature_verification", logger):
                result = XMLVerifier().verify(
                    payload,
                    x509_cert=certificate,
                    expect_config=SignatureConfiguration(location="./"),
                )
        except (SignXMLInvalidSignature, ValueError) as e:
            raise InvalidSignature(
                internal_message=f"SAML {label} signature rejected: {e}",
            ) from e

        logger.debug("SAML %s signature validated successfully", label)
        return result.signed_xml

    # =========================================================================
    # Conditions
    # =========================================================================

    def validate_conditions(self, assertion: etree._Element, now: Optional[datetime] = None) -> None:
        """
        Check NotBefore/NotOnOrAfter with the configured clock skew.
        """
        now = now or self._clock()
        conditions = assertion.find("saml:Conditions", NS)
        if conditions is None:
            logger.warning("SAML assertion has no conditions")
            return

        not_before = _parse_instant(conditions.get("NotBefore"))
        not_on_or_after = _parse_instant(conditions.get("NotOnOrAfter"))

        if not_before is not None and now < not_before - self.clock_skew:
            raise AssertionNotYetValid(
                internal_message=f"NotBefore {not_before.isoformat()}, now {now.isoformat()}",
            )

        if not_on_or_after is not None and now > not_on_or_after + self.clock_skew:
            raise AssertionExpired(
                internal_message=f"NotOnOrAfter {not_on_or_after.isoformat()}, now {now.isoformat()}",
            )

        logger.debug(
            "SAML assertion conditions validated (NotBefore: %s, NotOnOrAfter: %s)",
            not_before,
            not_on_or_after,
        )

    # =========================================================================
    # Attributes
    # =========================================================================

    @staticmethod
    def extract_attributes(assertion: etree._Element) -> Dict[str, Any]:
        """
        Collect NameID and AttributeStatement values.

        A single value is stored as a string, several as a list in
        document order.
        """
        attributes: Dict[str, Any] = {}

        name_id = assertion.find("saml:Subject/saml:NameID", NS)
        if name_id is not None and name_id.text and name_id.text.strip():
            attributes[NAME_ID_KEY] = name_id.text.strip()

        for attribute in assertion.iterfind("saml:AttributeStatement/saml:Attribute", NS):
            name = attribute.get("Name")
            if not name:
                continue
            values: List[str] = []
            for value in attribute.iterfind("saml:AttributeValue", NS):
                text = "".join(value.itertext()).strip()
                if text:
                    values.append(text)
            if len(values) == 1:
                attributes[name] = values[0]
            elif values:
                attributes[name] = values

        logger.debug("Extracted %d attributes from SAML assertion", len(attributes))
        return attributes

    @staticmethod
    def map_attributes(
        attributes: Dict[str, Any],
        config: Saml2Config,
        organization_id: str,
    ) -> FederatedIdentity:
        """Resolve email/name/subject/groups through the tenant's mapping."""
        email_attribute = config.mapped_attribute("email")
        email = _first_value(attributes.get(email_attribute))
        if not email:
            raise MissingEmailAttribute(
                details={"attribute": email_attribute},
                internal_message=f"Available attributes: {sorted(attributes)}",
            )

        name = _first_value(attributes.get(config.mapped_attribute("name")))
        if not name:
            name = email.split("@", 1)[0]

        subject = _first_value(attributes.get(config.mapped_attribute("subject")))
        if not subject:
            subject = email

        groups = _all_values(attributes.get(config.mapped_attribute("groups")))

        return FederatedIdentity(
            subject=subject,
            email=email,
            display_name=name,
            protocol=SSOProtocol.SAML2,
            organization_id=organization_id,
            groups=groups,
        )

    # =========================================================================
    # Logout
    # =========================================================================

    @staticmethod
    def logout(config: Saml2Config, params: LogoutParams) -> bool:
        """
        Best-effort Single Logout.

        No LogoutRequest is built or signed; the request is only recorded.
        """
        if not config.slo_url:
            logger.warning("SLO URL not configured for IdP: %s", config.idp_entity_id)
            return False

        logger.info(
            "SAML2 logout initiated to IdP %s (NameID: %s, SessionIndex: %s)",
            config.idp_entity_id,
            params.name_id or "-",
            params.session_index or "-",
        )
        return True


_FRACTION = re.compile(r"\.(\d+)")


def _parse_instant(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    # xs:dateTime allows any number of fractional digits; fromisoformat wants 3 or 6.
    text = _FRACTION.sub(
        lambda m: "." + m.group(1)[:6].ljust(6, "0"),
        value.strip().replace("Z", "+00:00"),
        count=1,
    )
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise MalformedResponse(internal_message=f"Invalid SAML timestamp {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _first_value(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value or None
    if isinstance(value, list) and value:
        return value[0]
    return None


def _all_values(value: Any) -> List[str]:
    if isinstance(value, list):
        return list(value)
    if isinstance(value, str):
        return [value]
    return []


# Singleton instance
_saml_service: Optional[SAMLService] = None


def get_saml_service() -> SAMLService:
    """Get the process-wide SAML service."""
    global _saml_service
    if _saml_service is None:
        _saml_service = SAMLService()
    return _saml_service
