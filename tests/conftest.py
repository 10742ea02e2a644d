"""
Shared test fixtures and helpers for the afip_client test suite.

Provides:
  - throwaway RSA keys and X.509 certificates generated with cryptography
  - a fixed clock and valid tenant identifiers
  - SOAP response builders for the authentication and invoicing services
"""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from afip_client.domain.models import (
    CertificateCredentials,
    Concept,
    Invoice,
    InvoiceTotals,
    LineItem,
    Receiver,
    Token,
)

TENANT_ID = "20123456786"
OTHER_TENANT_ID = "30712345671"
NOW = datetime(2025, 5, 20, 15, 0, 0, tzinfo=UTC)

# ─────────────────────── Certificates ───────────────────────


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    """One RSA key for the session (generation is slow)."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_rsa_key() -> rsa.RSAPrivateKey:
    """A second key, for key/certificate mismatch tests."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def build_certificate(
    key: rsa.RSAPrivateKey,
    tenant_id: str = TENANT_ID,
    not_before: datetime = NOW - timedelta(days=30),
    not_after: datetime = NOW + timedelta(days=365),
    common_name: str = "test-alias",
) -> x509.Certificate:
    """Self-signed certificate shaped like the ones the tax authority issues."""
    subject = x509.Name([
        x509.NameAttribute(NameOID.COUNTRY_NAME, "AR"),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test Company"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        x509.NameAttribute(NameOID.SERIAL_NUMBER, f"CUIT {tenant_id}"),
    ])
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(0x1F2E3D4C)
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )


def write_pair(
    directory: Path,
    certificate: x509.Certificate,
    key: rsa.RSAPrivateKey,
    passphrase: str | None = None,
    cert_name: str = "certificate.crt",
    key_name: str = "private.key",
) -> CertificateCredentials:
    """Write PEM files and return credentials pointing at them."""
    directory.mkdir(parents=True, exist_ok=True)
    encryption: serialization.KeySerializationEncryption = (
        serialization.BestAvailableEncryption(passphrase.encode())
        if passphrase
        else serialization.NoEncryption()
    )
    cert_path = directory / cert_name
    key_path = directory / key_name
    cert_path.write_bytes(certificate.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            encryption,
        )
    )
    return CertificateCredentials(cert_path, key_path, passphrase)


@pytest.fixture()
def credentials(tmp_path: Path, rsa_key: rsa.RSAPrivateKey) -> CertificateCredentials:
    """A valid, matching certificate/key pair on disk."""
    return write_pair(tmp_path / "certs", build_certificate(rsa_key), rsa_key)


def fixed_clock() -> datetime:
    return NOW


# ─────────────────────── Domain samples ───────────────────────


def make_token(expires_in: timedelta = timedelta(hours=12), token: str = "T1", sign: str = "S1") -> Token:
    return Token(token=token, sign=sign, expires_at=NOW + expires_in, generated_at=NOW)


def make_invoice(
    invoice_type: int = 6,
    number: int = 0,
    tax_condition_code: int | None = 5,
    tax_condition_text: str | None = None,
    concept: Concept = Concept.PRODUCTS,
    **overrides: object,
) -> Invoice:
    """A one-line 21% invoice of 100.00 + 21.00."""
    items = (LineItem("Widget", Decimal("1"), Decimal("100.00"), Decimal("21")),)
    values: dict[str, object] = {
        "point_of_sale": 1,
        "invoice_type": invoice_type,
        "number": number,
        "issue_date": date(2025, 5, 20),
        "concept": concept,
        "receiver": Receiver(
            document_type=99,
            document_number="0",
            tax_condition_code=tax_condition_code,
            tax_condition_text=tax_condition_text,
        ),
        "totals": InvoiceTotals.from_items(items),
        "items": items,
    }
    values.update(overrides)
    return Invoice(**values)  # type: ignore[arg-type]


# ─────────────────────── SOAP responses ───────────────────────

SOAP_ENV = "http://schemas.xmlsoap.org/soap/envelope/"
WSFE_NS = "http://ar.gov.afip.dif.FEV1/"
WSAA_NS = "http://wsaa.view.sua.dvad.gov.ar/"


def soap_envelope(body: str) -> bytes:
    return (
        f'<?xml version="1.0" encoding="utf-8"?>'
        f'<soap:Envelope xmlns:soap="{SOAP_ENV}"><soap:Body>{body}</soap:Body></soap:Envelope>'
    ).encode()


def soap_fault(code: str, message: str) -> bytes:
    return soap_envelope(
        f"<soap:Fault><faultcode>{code}</faultcode><faultstring>{message}</faultstring></soap:Fault>"
    )


def login_ticket_response(
    token: str = "T1",
    sign: str = "S1",
    generation: str = "2025-05-20T12:00:00.000-03:00",
    expiration: str | None = "2025-05-20T13:00:00.000-03:00",
    source: str = "CN=wsaahomo, O=AFIP, C=AR, SERIALNUMBER=CUIT 33693450239",
) -> bytes:
    """loginCms reply; the ticket XML travels escaped inside loginCmsReturn."""
    expiration_xml = f"<expirationTime>{expiration}</expirationTime>" if expiration else ""
    ticket = (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
        '<loginTicketResponse version="1.0"><header>'
        f"<source>{source}</source><destination>SERIALNUMBER=CUIT {TENANT_ID}</destination>"
        f"<uniqueId>123</uniqueId><generationTime>{generation}</generationTime>{expiration_xml}"
        f"</header><credentials><token>{token}</token><sign>{sign}</sign></credentials>"
        "</loginTicketResponse>"
    )
    escaped = ticket.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
    return soap_envelope(
        f'<loginCmsResponse xmlns="{WSAA_NS}"><loginCmsReturn>{escaped}</loginCmsReturn></loginCmsResponse>'
    )


def wsfe_response(method: str, result_xml: str) -> bytes:
    return soap_envelope(
        f'<{method}Response xmlns="{WSFE_NS}"><{method}Result>{result_xml}</{method}Result></{method}Response>'
    )


def last_authorized_response(number: int, point_of_sale: int = 1, invoice_type: int = 6) -> bytes:
    return wsfe_response(
        "FECompUltimoAutorizado",
        f"<PtoVta>{point_of_sale}</PtoVta><CbteTipo>{invoice_type}</CbteTipo><CbteNro>{number}</CbteNro>",
    )


def authorize_response(
    header_result: str = "A",
    detail_result: str = "A",
    number: int = 8,
    cae: str = "12345678901234",
    cae_expiration: str = "20250601",
    observations: str = "",
    errors: str = "",
    events: str = "",
) -> bytes:
    return wsfe_response(
        "FECAESolicitar",
        f"<FeCabResp><Cuit>{TENANT_ID}</Cuit><PtoVta>1</PtoVta><CbteTipo>6</CbteTipo>"
        f"<FchProceso>20250520120000</FchProceso><CantReg>1</CantReg>"
        f"<Resultado>{header_result}</Resultado><Reproceso>N</Reproceso></FeCabResp>"
        f"<FeDetResp><FECAEDetResponse><Concepto>1</Concepto><DocTipo>99</DocTipo><DocNro>0</DocNro>"
        f"<CbteDesde>{number}</CbteDesde><CbteHasta>{number}</CbteHasta><CbteFch>20250520</CbteFch>"
        f"<Resultado>{detail_result}</Resultado>{observations}"
        f"<CAE>{cae}</CAE><CAEFchVto>{cae_expiration}</CAEFchVto></FECAEDetResponse></FeDetResp>"
        f"{events}{errors}",
    )
