"""Unit tests for building Invoices from the flat mapping layout."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from afip_client.adapters.invoice_sources import invoice_from_mapping, parse_amount, parse_date
from afip_client.domain.errors import ValidationError
from afip_client.domain.models import Concept

FORM = {
    "pointOfSale": 2,
    "invoiceType": 6,
    "invoiceNumber": 0,
    "date": "20250601",
    "concept": 2,
    "customerDocumentType": 96,
    "customerDocumentNumber": "30111222",
    "receiver": {"condicion_iva_id": 5, "condicion_iva": "Consumidor Final", "nombre": "Ana"},
    "items": [
        {"description": "Consulting", "quantity": 2, "unitPrice": "50.00", "taxRate": 21},
        {"description": "Book", "quantity": 1, "unitPrice": 10, "exento": True},
    ],
    "tributos": [{"id": 7, "descripcion": "IIBB", "baseImponible": 100, "alicuota": 3, "importe": 3}],
    "fechaServicioDesde": "2025-05-01",
    "fechaServicioHasta": "2025-05-31",
}


class TestInvoiceFromMapping:
    """
    GIVEN a web form payload
    WHEN it is converted
    THEN every field lands in the typed Invoice.
    """

    def test_fields(self) -> None:
        invoice = invoice_from_mapping(FORM)

        assert (invoice.point_of_sale, invoice.invoice_type, invoice.number) == (2, 6, 0)
        assert invoice.issue_date == date(2025, 6, 1)
        assert invoice.concept is Concept.SERVICES
        assert invoice.receiver.document_type == 96
        assert invoice.receiver.document_number == "30111222"
        assert invoice.receiver.tax_condition_code == 5
        assert invoice.receiver.name == "Ana"
        assert invoice.service_start == date(2025, 5, 1)
        assert invoice.service_end == date(2025, 5, 31)
        assert invoice.payment_due is None
        assert invoice.levies[0].levy_id == 7

    def test_totals_derived_from_items(self) -> None:
        totals = invoice_from_mapping(FORM).totals
        assert totals.net_taxed == Decimal("100.00")
        assert totals.exempt == Decimal("10.00")
        assert totals.tax == Decimal("21.00")
        assert totals.levies == Decimal("3.00")
        assert totals.total == Decimal("134.00")
        assert totals.is_balanced()

    def test_explicit_totals_win(self) -> None:
        invoice = invoice_from_mapping({**FORM, "total": "121", "totalNetoGravado": "100", "totalIva": "21"})
        assert invoice.totals.total == Decimal("121")
        assert invoice.totals.exempt == Decimal("0")

    def test_flat_receiver_fields(self) -> None:
        data = {k: v for k, v in FORM.items() if k != "receiver"}
        invoice = invoice_from_mapping({**data, "receiverTaxCondition": "Monotributista"})
        assert invoice.receiver.tax_condition_code is None
        assert invoice.receiver.tax_condition_text == "Monotributista"

    def test_missing_date_uses_today(self) -> None:
        data = {k: v for k, v in FORM.items() if k != "date"}
        assert invoice_from_mapping(data, today=date(2025, 7, 1)).issue_date == date(2025, 7, 1)

    def test_unknown_concept(self) -> None:
        with pytest.raises(ValidationError, match="concept"):
            invoice_from_mapping({**FORM, "concept": 9})


class TestParsers:
    @pytest.mark.parametrize("value", ["20250601", "2025-06-01", date(2025, 6, 1)])
    def test_dates(self, value: object) -> None:
        assert parse_date(value, "date") == date(2025, 6, 1)

    def test_bad_date(self) -> None:
        with pytest.raises(ValidationError, match="fechaVtoPago"):
            parse_date("01/06/2025", "fechaVtoPago")

    def test_amounts(self) -> None:
        assert parse_amount("12.50", "x") == Decimal("12.50")
        assert parse_amount(None, "x") == Decimal("0")
        with pytest.raises(ValidationError, match="not a number"):
            parse_amount("twelve", "x")
