"""
Invoice mapper — validates an Invoice and renders the FECAESolicitar payload.

Validation runs before any mapping (and before any network call):
  - structural checks (point of sale, type, number, service period)
  - receiver tax condition resolved (code → keyword table → family default)
  - invoice family / receiver compatibility matrix
  - every VAT rate must have a remote id

Mapping is a pure function of the invoice: no clock, no ids, no nonces,
so mapping the same invoice twice yields byte-identical payloads. Absent
values are None and the SOAP codec leaves them out of the envelope.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any

import structlog

from afip_client.domain.errors import ValidationError
from afip_client.domain.models import Invoice, LineItem, Token, round_amount
from afip_client.domain.receipt_rules import (
    ReceiptFamily,
    check_compatibility,
    family_of,
    resolve_tax_condition,
    vat_rate_id,
)
from afip_client.domain.tenant import clean

log = structlog.get_logger()


def wire_date(value: date | None) -> str | None:
    return value.strftime("%Y%m%d") if value is not None else None


def wire_amount(value: Decimal) -> Decimal:
    return round_amount(Decimal(value))


@dataclass(frozen=True, slots=True)
class WireInvoiceRequest:
    """Header and detail blocks of one FECAESolicitar request, ready for the codec."""

    tenant_id: str
    header: dict[str, Any]
    detail: dict[str, Any]

    def as_params(self, token: Token) -> dict[str, Any]:
        """Full operation parameters with the Auth block attached."""
        return {
            "Auth": auth_block(token, self.tenant_id),
            "FeCAEReq": {
                "FeCabReq": self.header,
                "FeDetReq": {"FECAEDetRequest": self.detail},
            },
        }


def auth_block(token: Token, tenant_id: str) -> dict[str, Any]:
    return {"Token": token.token, "Sign": token.sign, "Cuit": tenant_id}


class InvoiceValidator:
    """Local checks that save a predictable remote rejection."""

    def validate(self, invoice: Invoice) -> int:
        """
        Validate `invoice` and return the resolved receiver tax condition.

        Raises ValidationError on the first problem found.
        """
        if invoice.point_of_sale <= 0:
            raise ValidationError(f"Point of sale must be positive, got {invoice.point_of_sale}")
        if invoice.invoice_type <= 0:
            raise ValidationError(f"Invoice type must be positive, got {invoice.invoice_type}")
        if invoice.number < 0:
            raise ValidationError(f"Invoice number cannot be negative, got {invoice.number}")
        if (
            invoice.service_start is not None
            and invoice.service_end is not None
            and invoice.service_start > invoice.service_end
        ):
            raise ValidationError("Service period starts after it ends")

        condition = resolve_tax_condition(invoice.receiver, invoice.invoice_type)
        check_compatibility(invoice.invoice_type, condition)
        for item in invoice.items:
            if not item.exempt:
                vat_rate_id(item.tax_rate)
        return condition


class InvoiceMapper:
    """Turn a validated Invoice into the wire schema of the invoicing service."""

    def __init__(self, validator: InvoiceValidator | None = None) -> None:
        self._validator = validator or InvoiceValidator()

    def validate(self, invoice: Invoice) -> int:
        return self._validator.validate(invoice)

    def to_wire_format(self, invoice: Invoice, tenant_id: str) -> WireInvoiceRequest:
        condition = self._validator.validate(invoice)
        totals = invoice.totals
        services = invoice.concept.includes_services

        detail: dict[str, Any] = {
            "Concepto": int(invoice.concept),
            "DocTipo": invoice.receiver.document_type,
            "DocNro": int(clean(invoice.receiver.document_number) or "0"),
            "CbteDesde": invoice.number,
            "CbteHasta": invoice.number,
            "CbteFch": wire_date(invoice.issue_date),
            "ImpTotal": wire_amount(totals.total),
            "ImpTotConc": wire_amount(totals.net_untaxed),
            "ImpNeto": wire_amount(totals.net_taxed),
            "ImpOpEx": wire_amount(totals.exempt),
            "ImpTrib": wire_amount(totals.levies),
            "ImpIVA": wire_amount(totals.tax),
            "FchServDesde": wire_date(invoice.service_start or invoice.issue_date) if services else None,
            "FchServHasta": wire_date(invoice.service_end or invoice.issue_date) if services else None,
            "FchVtoPago": wire_date(invoice.payment_due or invoice.issue_date) if services else None,
            "MonId": invoice.currency,
            "MonCotiz": Decimal(invoice.exchange_rate),
            "CondicionIVAReceptorId": condition,
            "Tributos": self._levies(invoice),
            "Iva": self._vat(invoice),
        }
        header = {
            "CantReg": 1,
            "PtoVta": invoice.point_of_sale,
            "CbteTipo": invoice.invoice_type,
        }
        log.debug(
            "invoice.mapped",
            tenant=tenant_id,
            point_of_sale=invoice.point_of_sale,
            invoice_type=invoice.invoice_type,
            number=invoice.number,
        )
        return WireInvoiceRequest(tenant_id=tenant_id, header=header, detail=detail)

    def _vat(self, invoice: Invoice) -> dict[str, Any] | None:
        # C receipts are issued by non-VAT-registered taxpayers: no breakdown.
        if family_of(invoice.invoice_type) is ReceiptFamily.C:
            return None
        entries = vat_breakdown(invoice.items)
        return {"AlicIva": entries} if entries else None

    def _levies(self, invoice: Invoice) -> dict[str, Any] | None:
        if not invoice.levies:
            return None
        return {
            "Tributo": [
                {
                    "Id": levy.levy_id,
                    "Desc": levy.description,
                    "BaseImp": wire_amount(levy.base_amount),
                    "Alic": wire_amount(levy.rate),
                    "Importe": wire_amount(levy.amount),
                }
                for levy in invoice.levies
            ]
        }


def vat_breakdown(items: tuple[LineItem, ...]) -> list[dict[str, Any]]:
    """Aggregate line items by VAT rate id; zero-amount entries are dropped."""
    buckets: dict[int, tuple[Decimal, Decimal]] = {}
    for item in items:
        if item.exempt:
            continue
        rate_id = vat_rate_id(item.tax_rate)
        base, amount = buckets.get(rate_id, (Decimal("0"), Decimal("0")))
        buckets[rate_id] = (base + item.net_amount, amount + item.effective_tax)
    return [
        {"Id": rate_id, "BaseImp": wire_amount(base), "Importe": wire_amount(amount)}
        for rate_id, (base, amount) in sorted(buckets.items())
        if amount != 0
    ]
