"""
Error taxonomy — every failure the library surfaces to callers.

Each error carries a structured ErrorCode, a human-readable message and,
when the remote service supplied one, the remote code/message pair.
Layers enrich `context` (operation, tenant) as the error propagates and
chain the original cause with `raise ... from`, so nothing is discarded.

  InvoicingError
    ├── CertificateError       (not found, expired, corrupt, key mismatch)
    ├── AuthenticationError    (ticket exchange failed)
    ├── ValidationError        (local invoice/tenant checks)
    │     └── InvalidTenantError
    ├── AuthorizationError     (remote rejected the invoice or query)
    ├── TransportError         (network/HTTP failure)
    │     └── RemoteFaultError (SOAP fault)
    └── ConfigurationError
"""

from __future__ import annotations

from enum import Enum, unique
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Sequence

    from afip_client.domain.models import RemoteMessage


@unique
class ErrorCode(Enum):
    """Structured error codes, one per branch of the taxonomy."""

    CERTIFICATE_ERROR = "CERTIFICATE_ERROR"
    """Signing material missing, expired, unreadable or mismatched."""

    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    """Access ticket could not be obtained."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    """Input rejected locally, before any remote call."""

    AUTHORIZATION_ERROR = "AUTHORIZATION_ERROR"
    """The invoicing service rejected the request."""

    TRANSPORT_ERROR = "TRANSPORT_ERROR"
    """Network, HTTP or SOAP envelope failure."""

    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    """Missing or inconsistent configuration."""


class InvoicingError(Exception):
    """Base class for every error raised by afip_client."""

    code: ErrorCode = ErrorCode.CONFIGURATION_ERROR

    def __init__(
        self,
        message: str,
        *,
        remote_code: str | None = None,
        remote_message: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.remote_code = remote_code
        self.remote_message = remote_message
        self.context: dict[str, Any] = dict(context or {})

    def add_context(self, **context: Any) -> InvoicingError:
        """Record where the error passed through; existing keys are kept."""
        for key, value in context.items():
            self.context.setdefault(key, value)
        return self

    def full_message(self) -> str:
        """Message plus remote code/message and context, for operators."""
        parts = [self.message]
        if self.remote_code is not None:
            parts.append(f"[remote code: {self.remote_code}]")
        if self.remote_message is not None:
            parts.append(f"[remote message: {self.remote_message}]")
        if self.context:
            rendered = ", ".join(f"{k}={v}" for k, v in sorted(self.context.items()))
            parts.append(f"({rendered})")
        return " ".join(parts)

    def __str__(self) -> str:
        return self.full_message()


@unique
class CertificateProblem(Enum):
    """Why a certificate/key pair was refused."""

    NOT_FOUND = "not found"
    EXPIRED = "expired"
    NOT_YET_VALID = "not yet valid"
    CORRUPT = "corrupt"
    KEY_MISMATCH = "key/certificate mismatch"


class CertificateError(InvoicingError):
    """Signing material is unusable. Fatal, never retried."""

    code = ErrorCode.CERTIFICATE_ERROR

    def __init__(self, reason: CertificateProblem, message: str, **kwargs: Any) -> None:
        super().__init__(f"Certificate {reason.value}: {message}", **kwargs)
        self.reason = reason


class AuthenticationError(InvoicingError):
    """The access ticket exchange failed after transport-level retries."""

    code = ErrorCode.AUTHENTICATION_ERROR


class ValidationError(InvoicingError):
    """Input rejected locally, before any network round-trip."""

    code = ErrorCode.VALIDATION_ERROR


class InvalidTenantError(ValidationError):
    """Tenant identifier is not a structurally valid CUIT."""


class AuthorizationError(InvoicingError):
    """
    The invoicing service refused the request.

    `messages` holds every error and observation entry the remote returned;
    `remote_code`/`remote_message` mirror the first of them.
    """

    code = ErrorCode.AUTHORIZATION_ERROR

    def __init__(
        self,
        message: str,
        messages: Sequence[RemoteMessage] = (),
        **kwargs: Any,
    ) -> None:
        self.messages: tuple[RemoteMessage, ...] = tuple(messages)
        if self.messages:
            kwargs.setdefault("remote_code", str(self.messages[0].code))
            kwargs.setdefault("remote_message", self.messages[0].message)
        super().__init__(message, **kwargs)


class TransportError(InvoicingError):
    """Network, HTTP or envelope failure talking to a remote service."""

    code = ErrorCode.TRANSPORT_ERROR


class RemoteFaultError(TransportError):
    """The remote answered with a SOAP fault."""

    def __init__(self, fault_code: str, fault_string: str, **kwargs: Any) -> None:
        super().__init__(
            f"SOAP fault {fault_code}: {fault_string}",
            remote_code=fault_code,
            remote_message=fault_string,
            **kwargs,
        )
        self.fault_code = fault_code
        self.fault_string = fault_string


class ConfigurationError(InvoicingError):
    """Configuration is missing or inconsistent."""

    code = ErrorCode.CONFIGURATION_ERROR
