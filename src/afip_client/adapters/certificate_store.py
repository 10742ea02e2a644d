"""
Certificate store adapter — resolves and validates a tenant's signing pair.

Two resolution strategies:
  - multi-tenant: {base_path}/{tenant_id}/certificate.crt + private.key
  - single-tenant: one fixed certificate/key pair
The per-tenant directory wins when both of its files exist.

Validation uses cryptography (PyCA) to load the certificate (PEM or DER)
and the private key, and refuses the pair with a descriptive
CertificateError when a file is missing, unreadable, outside its validity
window, or when the key does not belong to the certificate. Nothing is
cached: material is read per operation and dropped after signing.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import structlog
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes
from cryptography.x509.oid import NameOID

from afip_client.domain.errors import CertificateError, CertificateProblem
from afip_client.domain.models import CertificateCredentials, CertificateInfo

log = structlog.get_logger()

_SERIAL_CUIT = re.compile(r"CUIT\s*(\d{11})")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CertificateStore:
    """
    Resolve and validate certificate/key pairs per tenant.

    Either `cert_path`/`key_path` (fixed pair) or `base_path` (per-tenant
    directories) must be configured; both may be, in which case the
    per-tenant layout takes precedence when present on disk.
    """

    def __init__(
        self,
        cert_path: Path | str | None = None,
        key_path: Path | str | None = None,
        passphrase: str | None = None,
        base_path: Path | str | None = None,
        tenant_cert_filename: str = "certificate.crt",
        tenant_key_filename: str = "private.key",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._cert_path = Path(cert_path) if cert_path is not None else None
        self._key_path = Path(key_path) if key_path is not None else None
        self._passphrase = passphrase
        self._base_path = Path(base_path) if base_path is not None else None
        self._tenant_cert_filename = tenant_cert_filename
        self._tenant_key_filename = tenant_key_filename
        self._clock = clock

    def resolve(self, tenant_id: str) -> CertificateCredentials:
        """Pick the certificate pair for `tenant_id` (tenant directory first)."""
        if self._base_path is not None:
            tenant_dir = self._base_path / tenant_id
            cert = tenant_dir / self._tenant_cert_filename
            key = tenant_dir / self._tenant_key_filename
            if cert.is_file() and key.is_file():
                log.debug("certificate.resolved", tenant=tenant_id, strategy="tenant_directory")
                return CertificateCredentials(cert, key, self._passphrase)

        if self._cert_path is not None and self._key_path is not None:
            log.debug("certificate.resolved", tenant=tenant_id, strategy="fixed_pair")
            return CertificateCredentials(self._cert_path, self._key_path, self._passphrase)

        raise CertificateError(
            CertificateProblem.NOT_FOUND,
            f"no certificate configured for tenant {tenant_id}",
            context={"tenant": tenant_id},
        )

    def validate(self, credentials: CertificateCredentials) -> CertificateInfo:
        """
        Check that the pair is present, readable, current and matching.

        Returns a CertificateInfo summary; raises CertificateError otherwise.
        """
        certificate, key = self.load(credentials)

        now = self._clock()
        if now < certificate.not_valid_before_utc:
            raise CertificateError(
                CertificateProblem.NOT_YET_VALID,
                f"{credentials.cert_path} is valid from {certificate.not_valid_before_utc.isoformat()}",
            )
        if now > certificate.not_valid_after_utc:
            raise CertificateError(
                CertificateProblem.EXPIRED,
                f"{credentials.cert_path} expired on {certificate.not_valid_after_utc.isoformat()}",
            )

        if _public_bytes(certificate.public_key()) != _public_bytes(key.public_key()):
            raise CertificateError(
                CertificateProblem.KEY_MISMATCH,
                f"{credentials.key_path} does not belong to {credentials.cert_path}",
            )

        info = describe_certificate(certificate)
        log.info(
            "certificate.validated",
            serial=info.serial_number,
            expires=info.not_valid_after.isoformat(),
        )
        return info

    def load(
        self, credentials: CertificateCredentials
    ) -> tuple[x509.Certificate, PrivateKeyTypes]:
        """Read the certificate and the (decrypted) private key from disk."""
        cert_data = _read(credentials.cert_path, "certificate")
        key_data = _read(credentials.key_path, "private key")
        return _load_certificate(cert_data, credentials.cert_path), _load_key(
            key_data, credentials.key_path, credentials.passphrase
        )


def describe_certificate(certificate: x509.Certificate) -> CertificateInfo:
    """Summarize subject, serial, validity and the CUIT in subject serialNumber."""
    common_names = certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    serial_attrs = certificate.subject.get_attributes_for_oid(NameOID.SERIAL_NUMBER)
    tenant_id = None
    if serial_attrs:
        match = _SERIAL_CUIT.search(str(serial_attrs[0].value))
        tenant_id = match.group(1) if match else None
    return CertificateInfo(
        subject=certificate.subject.rfc4514_string(),
        common_name=str(common_names[0].value) if common_names else None,
        serial_number=format(certificate.serial_number, "x"),
        not_valid_before=certificate.not_valid_before_utc,
        not_valid_after=certificate.not_valid_after_utc,
        tenant_id=tenant_id,
    )


def _read(path: Path, label: str) -> bytes:
    try:
        return path.read_bytes()
    except FileNotFoundError:
        raise CertificateError(CertificateProblem.NOT_FOUND, f"{label} file {path} does not exist") from None
    except OSError as e:
        raise CertificateError(CertificateProblem.CORRUPT, f"{label} file {path} is unreadable: {e}") from e


def _load_certificate(data: bytes, path: Path) -> x509.Certificate:
    try:
        if b"-----BEGIN" in data:
            return x509.load_pem_x509_certificate(data)
        return x509.load_der_x509_certificate(data)
    except ValueError as e:
        raise CertificateError(CertificateProblem.CORRUPT, f"{path} is not an X.509 certificate") from e


def _load_key(data: bytes, path: Path, passphrase: str | None) -> PrivateKeyTypes:
    password = passphrase.encode() if passphrase else None
    try:
        if b"-----BEGIN" in data:
            return serialization.load_pem_private_key(data, password=password)
        return serialization.load_der_private_key(data, password=password)
    except (ValueError, TypeError) as e:
        # TypeError: passphrase given for a plain key, or missing for an encrypted one
        raise CertificateError(
            CertificateProblem.CORRUPT,
            f"{path} could not be loaded as a private key (wrong passphrase?)",
        ) from e


def _public_bytes(public_key: object) -> bytes:
    return public_key.public_bytes(  # type: ignore[attr-defined]
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
