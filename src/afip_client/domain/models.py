"""
Domain models — immutable value objects for tickets, invoices and results.

These are pure value objects with no I/O. Amounts are Decimal so that the
wire rendering is exact and deterministic; dates are plain `date` objects
and only become YYYYMMDD strings at the wire boundary.

All models are frozen dataclasses (immutable) following functional principles.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import IntEnum, StrEnum
from pathlib import Path

_ZERO = Decimal("0")
_CENT = Decimal("0.01")


def round_amount(value: Decimal) -> Decimal:
    """Quantize an amount to cents (half-up, as the tax authority rounds)."""
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


class Environment(StrEnum):
    """Remote environment: homologation (testing) or production."""

    TESTING = "testing"
    PRODUCTION = "production"


class Concept(IntEnum):
    """What the invoice bills for."""

    PRODUCTS = 1
    SERVICES = 2
    PRODUCTS_AND_SERVICES = 3

    @property
    def includes_services(self) -> bool:
        return self is not Concept.PRODUCTS


# ─────────────────────── Authentication ───────────────────────


@dataclass(frozen=True, slots=True)
class Token:
    """
    Access ticket issued by the authentication service.

    Scoped to one (tenant, service, environment). Valid strictly before
    `expires_at`.
    """

    token: str = field(repr=False)
    sign: str = field(repr=False)
    expires_at: datetime
    generated_at: datetime

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at

    def seconds_until_expiration(self, now: datetime) -> int:
        return max(0, int((self.expires_at - now).total_seconds()))


@dataclass(frozen=True, slots=True)
class CertificateCredentials:
    """Paths to a tenant's certificate and private key, plus the key passphrase."""

    cert_path: Path
    key_path: Path
    passphrase: str | None = field(default=None, repr=False)


@dataclass(frozen=True, slots=True)
class CertificateInfo:
    """Diagnostic summary of a validated certificate."""

    subject: str
    common_name: str | None
    serial_number: str
    not_valid_before: datetime
    not_valid_after: datetime
    tenant_id: str | None = None


@dataclass(frozen=True, slots=True)
class AccessRequest:
    """
    The access-request ticket (loginTicketRequest) before signing.

    Immutable once built; one signed copy is consumed by exactly one
    authentication exchange.
    """

    unique_id: int
    generation_time: datetime
    expiration_time: datetime
    source: str
    destination: str
    service: str


# ─────────────────────── Invoices ───────────────────────


@dataclass(frozen=True, slots=True)
class Receiver:
    """
    The invoice receiver.

    `tax_condition_code` is the official numeric code and wins over
    `tax_condition_text`, which is matched against a keyword table.
    Document type 99 with number 0 is the anonymous end consumer.
    """

    document_type: int = 99
    document_number: str = "0"
    tax_condition_code: int | None = None
    tax_condition_text: str | None = None
    name: str | None = None


@dataclass(frozen=True, slots=True)
class LineItem:
    """
    One invoice line. `tax_rate` is a percentage (21 means 21%).

    Exempt lines carry no tax and count towards the exempt total.
    """

    description: str
    quantity: Decimal
    unit_price: Decimal
    tax_rate: Decimal = Decimal("21")
    tax_amount: Decimal | None = None
    exempt: bool = False

    @property
    def net_amount(self) -> Decimal:
        return round_amount(self.quantity * self.unit_price)

    @property
    def effective_tax(self) -> Decimal:
        """Explicit tax amount when given, otherwise net × rate."""
        if self.exempt:
            return _ZERO
        if self.tax_amount is not None:
            return round_amount(self.tax_amount)
        return round_amount(self.net_amount * self.tax_rate / 100)


@dataclass(frozen=True, slots=True)
class Levy:
    """A non-VAT levy (Tributo): provincial gross income, municipal, etc."""

    levy_id: int
    description: str
    base_amount: Decimal
    rate: Decimal
    amount: Decimal


@dataclass(frozen=True, slots=True)
class InvoiceTotals:
    """
    Aggregate invoice amounts.

    Callers guarantee total = net_taxed + net_untaxed + exempt + tax + levies;
    `is_balanced` checks it but nothing enforces it.
    """

    net_taxed: Decimal
    total: Decimal
    net_untaxed: Decimal = _ZERO
    exempt: Decimal = _ZERO
    tax: Decimal = _ZERO
    levies: Decimal = _ZERO

    def is_balanced(self) -> bool:
        parts = self.net_taxed + self.net_untaxed + self.exempt + self.tax + self.levies
        return round_amount(parts) == round_amount(self.total)

    @classmethod
    def from_items(
        cls,
        items: tuple[LineItem, ...] | list[LineItem],
        levies: tuple[Levy, ...] | list[Levy] = (),
    ) -> InvoiceTotals:
        """Derive totals from line items: zero-rated lines count as untaxed net."""
        net_taxed = sum((i.net_amount for i in items if not i.exempt and i.tax_rate > 0), _ZERO)
        net_untaxed = sum((i.net_amount for i in items if not i.exempt and i.tax_rate == 0), _ZERO)
        exempt = sum((i.net_amount for i in items if i.exempt), _ZERO)
        tax = sum((i.effective_tax for i in items), _ZERO)
        levy_total = sum((round_amount(lv.amount) for lv in levies), _ZERO)
        return cls(
            net_taxed=round_amount(net_taxed),
            net_untaxed=round_amount(net_untaxed),
            exempt=round_amount(exempt),
            tax=round_amount(tax),
            levies=round_amount(levy_total),
            total=round_amount(net_taxed + net_untaxed + exempt + tax + levy_total),
        )


@dataclass(frozen=True, slots=True)
class Invoice:
    """
    An invoice to be authorized.

    `number` may be provisional (0 or any value not above the last
    authorized number); the authorization client replaces it with the next
    correlative number before submission.
    """

    point_of_sale: int
    invoice_type: int
    number: int
    issue_date: date
    concept: Concept
    receiver: Receiver
    totals: InvoiceTotals
    items: tuple[LineItem, ...] = ()
    levies: tuple[Levy, ...] = ()
    currency: str = "PES"
    exchange_rate: Decimal = Decimal("1")
    service_start: date | None = None
    service_end: date | None = None
    payment_due: date | None = None


# ─────────────────────── Remote results ───────────────────────


@dataclass(frozen=True, slots=True)
class RemoteMessage:
    """A coded entry from the remote: error, observation or event."""

    code: str
    message: str


@dataclass(frozen=True, slots=True)
class LastAuthorized:
    """Last invoice number the remote authorized for a (point of sale, type) pair."""

    point_of_sale: int
    invoice_type: int
    number: int
    issue_date: date | None = None


@dataclass(frozen=True, slots=True)
class AuthorizationResult:
    """Outcome of an accepted invoice: the CAE and what it was assigned to."""

    cae: str
    cae_expiration: date
    invoice_number: int
    point_of_sale: int
    invoice_type: int
    observations: tuple[RemoteMessage, ...] = ()

    def is_cae_valid(self, on: date) -> bool:
        return on <= self.cae_expiration


@dataclass(frozen=True, slots=True)
class InvoiceTypeEntry:
    """An invoice type the remote accepts, with its validity window."""

    code: int
    description: str
    valid_from: date | None = None
    valid_to: date | None = None

    def is_active(self, on: date) -> bool:
        return _within(on, self.valid_from, self.valid_to)


@dataclass(frozen=True, slots=True)
class PointOfSaleEntry:
    """A point of sale enabled for electronic invoicing."""

    number: int
    emission_type: str
    blocked: bool = False
    valid_from: date | None = None
    valid_to: date | None = None

    def is_active(self, on: date) -> bool:
        return _within(on, self.valid_from, self.valid_to)


def _within(on: date, start: date | None, end: date | None) -> bool:
    if start is not None and on < start:
        return False
    return end is None or on <= end


# ─────────────────────── Tenant configuration ───────────────────────


@dataclass(frozen=True, slots=True)
class TenantConfiguration:
    """Active configuration record for one tenant, as stored by the host application."""

    config_id: str
    tenant_id: str
    environment: Environment
    certificate_path: Path | None = None
    key_path: Path | None = None
    passphrase: str | None = field(default=None, repr=False)
    active: bool = True


@dataclass(frozen=True, slots=True)
class PointOfSaleRecord:
    """A point of sale as recorded locally by the host application."""

    number: int
    name: str | None = None
    active: bool = True
    blocked_since: date | None = None
