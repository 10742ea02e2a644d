"""
Invoice source adapters — build the typed Invoice from external shapes.

One explicit function per source shape; the caller picks the one that
matches its data. The core only ever sees `Invoice`.

`invoice_from_mapping` reads the flat dictionary layout used by web forms
and JSON APIs:

    {
      "pointOfSale": 1, "invoiceType": 6, "invoiceNumber": 0,
      "date": "20250601", "concept": 1,
      "customerDocumentType": 96, "customerDocumentNumber": "30111222",
      "receiver": {"condicion_iva_id": 5, "condicion_iva": "Consumidor Final"},
      "items": [{"description": "...", "quantity": 1, "unitPrice": 100, "taxRate": 21}],
      "tributos": [{"id": 7, "descripcion": "IIBB", "baseImponible": 100, "alicuota": 3, "importe": 3}],
      "total": 124, ...
    }

Totals are taken from the mapping when present (`total`,
`totalNetoGravado`, ...) and derived from the items otherwise.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from afip_client.domain.errors import ValidationError
from afip_client.domain.models import (
    Concept,
    Invoice,
    InvoiceTotals,
    Levy,
    LineItem,
    Receiver,
)

_ZERO = Decimal("0")


def parse_date(value: Any, field: str) -> date | None:
    """Accept a date, "YYYYMMDD" or ISO "YYYY-MM-DD"."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    for fmt in ("%Y%m%d", "%Y-%m-%d"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ValidationError(f"{field}: unrecognized date {value!r}")


def parse_amount(value: Any, field: str) -> Decimal:
    if value is None or value == "":
        return _ZERO
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"{field}: not a number: {value!r}") from None


def _line_item(data: Mapping[str, Any]) -> LineItem:
    tax_amount = data.get("taxAmount")
    return LineItem(
        description=str(data.get("description", "")),
        quantity=parse_amount(data.get("quantity", 1), "quantity"),
        unit_price=parse_amount(data.get("unitPrice"), "unitPrice"),
        tax_rate=parse_amount(data.get("taxRate", 0), "taxRate"),
        tax_amount=parse_amount(tax_amount, "taxAmount") if tax_amount is not None else None,
        exempt=bool(data.get("exento", False)),
    )


def _levy(data: Mapping[str, Any]) -> Levy:
    return Levy(
        levy_id=int(data.get("id", 0)),
        description=str(data.get("descripcion", "")),
        base_amount=parse_amount(data.get("baseImponible"), "baseImponible"),
        rate=parse_amount(data.get("alicuota"), "alicuota"),
        amount=parse_amount(data.get("importe"), "importe"),
    )


def _receiver(data: Mapping[str, Any]) -> Receiver:
    nested = data.get("receiver") or {}
    code = nested.get("condicion_iva_id", data.get("receiverTaxConditionId"))
    return Receiver(
        document_type=int(data.get("customerDocumentType", 99)),
        document_number=str(
            data.get("customerDocumentNumber") or data.get("customerCuit") or "0"
        ),
        tax_condition_code=int(code) if code is not None else None,
        tax_condition_text=nested.get("condicion_iva") or data.get("receiverTaxCondition"),
        name=nested.get("nombre"),
    )


def _totals(
    data: Mapping[str, Any], items: tuple[LineItem, ...], levies: tuple[Levy, ...]
) -> InvoiceTotals:
    if "total" not in data:
        return InvoiceTotals.from_items(items, levies)
    return InvoiceTotals(
        net_taxed=parse_amount(data.get("totalNetoGravado"), "totalNetoGravado"),
        net_untaxed=parse_amount(data.get("totalNetoNoGravado"), "totalNetoNoGravado"),
        exempt=parse_amount(data.get("totalExento"), "totalExento"),
        tax=parse_amount(data.get("totalIva"), "totalIva"),
        levies=parse_amount(data.get("totalTributos"), "totalTributos"),
        total=parse_amount(data.get("total"), "total"),
    )


def invoice_from_mapping(data: Mapping[str, Any], today: date | None = None) -> Invoice:
    """Build an Invoice from the flat dictionary layout described above."""
    items = tuple(_line_item(item) for item in data.get("items") or ())
    levies = tuple(_levy(levy) for levy in data.get("tributos") or ())
    try:
        concept = Concept(int(data.get("concept", Concept.PRODUCTS)))
    except ValueError:
        raise ValidationError(f"concept: unknown value {data.get('concept')!r}") from None

    return Invoice(
        point_of_sale=int(data.get("pointOfSale", 0)),
        invoice_type=int(data.get("invoiceType", 0)),
        number=int(data.get("invoiceNumber", 0)),
        issue_date=parse_date(data.get("date"), "date") or today or date.today(),
        concept=concept,
        receiver=_receiver(data),
        totals=_totals(data, items, levies),
        items=items,
        levies=levies,
        currency=str(data.get("moneda", "PES")),
        exchange_rate=parse_amount(data.get("cotizacionMoneda", 1), "cotizacionMoneda"),
        service_start=parse_date(data.get("fechaServicioDesde"), "fechaServicioDesde"),
        service_end=parse_date(data.get("fechaServicioHasta"), "fechaServicioHasta"),
        payment_due=parse_date(data.get("fechaVtoPago"), "fechaVtoPago"),
    )
