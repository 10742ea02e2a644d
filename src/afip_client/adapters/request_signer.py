"""
Request signer adapter — builds and signs the access-request ticket.

Adapter layer — produces the loginTicketRequest XML with lxml and wraps it
in a CMS/PKCS#7 SignedData envelope with cryptography (PyCA):

  AccessRequest
    → lxml: <loginTicketRequest version="1.0"> ... </loginTicketRequest>
    → cryptography: PKCS7SignatureBuilder (SHA-256, Binary, content + cert embedded)
    → base64 text for the loginCms call

The Binary option keeps the exact document bytes (no MIME line-ending
canonicalization). The envelope is not detached from its content: the
authentication service reads the ticket out of the envelope, and it needs
the signer certificate embedded to verify it.
"""

from __future__ import annotations

import base64
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta, timezone

import structlog
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs7
from lxml import etree

from afip_client.adapters.certificate_store import CertificateStore
from afip_client.domain.errors import AuthenticationError
from afip_client.domain.models import AccessRequest, CertificateCredentials, Environment

log = structlog.get_logger()

# Argentina observes no daylight saving time; the service expects -03:00.
ARGENTINA_TZ = timezone(timedelta(hours=-3), "ART")

_AUTHORITY = "O=AFIP,C=AR,SERIALNUMBER=CUIT 33693450239"
DESTINATIONS: dict[Environment, str] = {
    Environment.TESTING: f"CN=wsaahomo,{_AUTHORITY}",
    Environment.PRODUCTION: f"CN=wsaa,{_AUTHORITY}",
}

# uniqueId is an xs:unsignedInt on the remote side.
_ID_SPAN = 2**32


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RequestIdGenerator:
    """
    Issue unique, increasing request ids from a millisecond clock.

    Ids are milliseconds since the epoch folded into the unsignedInt range.
    Two calls within the same millisecond (or a clock that steps back) get
    `last + 1`, so ids never repeat within a process. The fold wraps about
    every 49 days; a candidate more than half the range behind the last id
    is taken as a wrap rather than a collision.
    """

    def __init__(self, clock_ns: Callable[[], int] = time.time_ns) -> None:
        self._clock_ns = clock_ns
        self._last: int | None = None
        self._lock = threading.Lock()

    def next_id(self) -> int:
        with self._lock:
            candidate = (self._clock_ns() // 1_000_000) % _ID_SPAN
            if self._last is not None:
                behind = (self._last - candidate) % _ID_SPAN
                if behind < _ID_SPAN // 2:
                    candidate = (self._last + 1) % _ID_SPAN
            self._last = candidate
            return candidate


def requester_identity(tenant_id: str, alias: str | None = None) -> str:
    """Fixed-format source DN: CN=<alias>,O=AFIP,C=AR,SERIALNUMBER=CUIT <tenant>."""
    return f"CN={alias or tenant_id},O=AFIP,C=AR,SERIALNUMBER=CUIT {tenant_id}"


def format_ticket_time(moment: datetime) -> str:
    """Render a ticket timestamp as 2025-06-01T09:00:00.000-03:00."""
    local = moment.astimezone(ARGENTINA_TZ).replace(microsecond=0)
    return local.isoformat(timespec="milliseconds")


def render_access_request(request: AccessRequest) -> bytes:
    """Serialize an AccessRequest to the loginTicketRequest XML document."""
    root = etree.Element("loginTicketRequest", version="1.0")
    header = etree.SubElement(root, "header")
    for tag, text in (
        ("source", request.source),
        ("destination", request.destination),
        ("uniqueId", str(request.unique_id)),
        ("generationTime", format_ticket_time(request.generation_time)),
        ("expirationTime", format_ticket_time(request.expiration_time)),
    ):
        etree.SubElement(header, tag).text = text
    etree.SubElement(root, "service").text = request.service
    return etree.tostring(root, xml_declaration=True, encoding="UTF-8")


@dataclass(frozen=True, slots=True)
class SignedEnvelope:
    """What a DER SignedData envelope carries, for verification and diagnostics."""

    der: bytes = field(repr=False)
    certificates: tuple[x509.Certificate, ...]

    def embeds(self, document: bytes) -> bool:
        return document in self.der


def unwrap_envelope(envelope_b64: str) -> SignedEnvelope:
    """Decode a base64 envelope and list the certificates embedded in it."""
    der = base64.b64decode(envelope_b64, validate=True)
    certificates = pkcs7.load_der_pkcs7_certificates(der)
    return SignedEnvelope(der=der, certificates=tuple(certificates))


class RequestSigner:
    """
    Build time-boxed access requests and sign them for the authentication service.

    Each call to `build_request` gets a fresh unique id; the validity window
    starts at the clock's "now" and lasts `validity`.
    """

    def __init__(
        self,
        certificate_store: CertificateStore,
        id_generator: RequestIdGenerator | None = None,
        clock: Callable[[], datetime] = _utcnow,
        validity: timedelta = timedelta(hours=24),
    ) -> None:
        self._store = certificate_store
        self._ids = id_generator or RequestIdGenerator()
        self._clock = clock
        self._validity = validity

    def build_request(
        self,
        service: str,
        tenant_id: str,
        environment: Environment,
        alias: str | None = None,
    ) -> AccessRequest:
        generated = self._clock()
        request = AccessRequest(
            unique_id=self._ids.next_id(),
            generation_time=generated,
            expiration_time=generated + self._validity,
            source=requester_identity(tenant_id, alias),
            destination=DESTINATIONS[environment],
            service=service,
        )
        log.debug("access_request.built", service=service, tenant=tenant_id, unique_id=request.unique_id)
        return request

    def sign(self, request: AccessRequest, credentials: CertificateCredentials) -> str:
        """
        Sign the rendered request and return the base64 DER envelope.

        Key material is loaded for this call only.
        """
        document = render_access_request(request)
        certificate, key = self._store.load(credentials)
        try:
            der = (
                pkcs7.PKCS7SignatureBuilder()
                .set_data(document)
                .add_signer(certificate, key, hashes.SHA256())  # type: ignore[arg-type]
                .sign(serialization.Encoding.DER, [pkcs7.PKCS7Options.Binary])
            )
        except (TypeError, ValueError) as e:
            raise AuthenticationError(f"Signing the access request failed: {e}") from e

        envelope = base64.b64encode(der).decode("ascii")
        unwrapped = unwrap_envelope(envelope)
        if not unwrapped.embeds(document) or certificate not in unwrapped.certificates:
            raise AuthenticationError("Signed envelope lacks the ticket or the signer certificate")
        log.info("access_request.signed", unique_id=request.unique_id, size_bytes=len(der))
        return envelope
