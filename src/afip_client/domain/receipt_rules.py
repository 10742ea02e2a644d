"""
Receipt rules — invoice-type families, receiver tax conditions, VAT ids.

The compatibility matrix is the one local check that saves a predictable
remote rejection:

  family A (and M) → receiver must be tax-registered or a small taxpayer
  family B         → receiver must be an end consumer or tax-exempt
  family C         → any receiver

Receiver tax conditions resolve by priority: the explicit numeric code,
then free text matched against TAX_CONDITION_KEYWORDS (first match wins),
then the default for the invoice family.
"""

from __future__ import annotations

import re
import unicodedata
from decimal import Decimal
from enum import IntEnum, StrEnum

from afip_client.domain.errors import ValidationError
from afip_client.domain.models import Receiver


class ReceiptFamily(StrEnum):
    A = "A"
    B = "B"
    C = "C"
    M = "M"
    OTHER = "OTHER"


_FAMILIES: dict[ReceiptFamily, frozenset[int]] = {
    ReceiptFamily.A: frozenset({1, 2, 3, 4, 5, 34, 39, 60, 63, 201, 202, 203}),
    ReceiptFamily.B: frozenset({6, 7, 8, 9, 10, 35, 40, 61, 64, 206, 207, 208}),
    ReceiptFamily.C: frozenset({11, 12, 13, 15, 211, 212, 213}),
    ReceiptFamily.M: frozenset({51, 52, 53, 54}),
}


class TaxCondition(IntEnum):
    """Receiver VAT condition codes (CondicionIVAReceptorId)."""

    REGISTERED = 1
    EXEMPT = 4
    END_CONSUMER = 5
    SMALL_TAXPAYER = 6
    UNCATEGORIZED = 7
    FOREIGN_SUPPLIER = 8
    FOREIGN_CLIENT = 9
    RELEASED = 10
    SOCIAL_SMALL_TAXPAYER = 13
    NOT_REACHED = 15
    PROMOTED_INDEPENDENT_WORKER = 16


REGISTERED_RECEIVERS = frozenset({
    TaxCondition.REGISTERED,
    TaxCondition.SMALL_TAXPAYER,
    TaxCondition.SOCIAL_SMALL_TAXPAYER,
    TaxCondition.PROMOTED_INDEPENDENT_WORKER,
})
CONSUMER_RECEIVERS = frozenset({
    TaxCondition.END_CONSUMER,
    TaxCondition.UNCATEGORIZED,
    TaxCondition.EXEMPT,
    TaxCondition.RELEASED,
    TaxCondition.NOT_REACHED,
})

_ALLOWED_RECEIVERS: dict[ReceiptFamily, frozenset[TaxCondition]] = {
    ReceiptFamily.A: REGISTERED_RECEIVERS,
    ReceiptFamily.M: REGISTERED_RECEIVERS,
    ReceiptFamily.B: CONSUMER_RECEIVERS,
}

# Ordered: more specific phrases must precede the words they contain.
TAX_CONDITION_KEYWORDS: tuple[tuple[str, TaxCondition], ...] = (
    ("monotributista social", TaxCondition.SOCIAL_SMALL_TAXPAYER),
    ("monotributo social", TaxCondition.SOCIAL_SMALL_TAXPAYER),
    ("monotributo trabajador independiente", TaxCondition.PROMOTED_INDEPENDENT_WORKER),
    ("monotributista", TaxCondition.SMALL_TAXPAYER),
    ("monotributo", TaxCondition.SMALL_TAXPAYER),
    ("no alcanzado", TaxCondition.NOT_REACHED),
    ("no categorizado", TaxCondition.UNCATEGORIZED),
    ("no inscripto", TaxCondition.UNCATEGORIZED),
    ("liberado", TaxCondition.RELEASED),
    ("exento", TaxCondition.EXEMPT),
    ("consumidor final", TaxCondition.END_CONSUMER),
    ("proveedor del exterior", TaxCondition.FOREIGN_SUPPLIER),
    ("exterior", TaxCondition.FOREIGN_CLIENT),
    ("responsable inscripto", TaxCondition.REGISTERED),
    ("inscripto", TaxCondition.REGISTERED),
    ("ri", TaxCondition.REGISTERED),
    ("cf", TaxCondition.END_CONSUMER),
)

_DEFAULT_CONDITION: dict[ReceiptFamily, TaxCondition] = {
    ReceiptFamily.A: TaxCondition.REGISTERED,
    ReceiptFamily.M: TaxCondition.REGISTERED,
}

VAT_RATE_IDS: dict[Decimal, int] = {
    Decimal("0"): 3,
    Decimal("10.5"): 4,
    Decimal("21"): 5,
    Decimal("27"): 6,
    Decimal("5"): 8,
    Decimal("2.5"): 9,
}


def family_of(invoice_type: int) -> ReceiptFamily:
    for family, codes in _FAMILIES.items():
        if invoice_type in codes:
            return family
    return ReceiptFamily.OTHER


def _fold(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(re.split(r"[^a-z0-9]+", stripped.lower())).strip()


def match_tax_condition(text: str) -> TaxCondition | None:
    """Match free text against TAX_CONDITION_KEYWORDS as whole words."""
    folded = f" {_fold(text)} "
    for keyword, condition in TAX_CONDITION_KEYWORDS:
        if f" {keyword} " in folded:
            return condition
    return None


def resolve_tax_condition(receiver: Receiver, invoice_type: int) -> int:
    """
    Resolve the receiver's tax condition code.

    Explicit code, then keyword match on the free-text description, then
    the family default (registered for A/M, end consumer otherwise).
    """
    if receiver.tax_condition_code is not None:
        return receiver.tax_condition_code
    if receiver.tax_condition_text:
        matched = match_tax_condition(receiver.tax_condition_text)
        if matched is not None:
            return int(matched)
    family = family_of(invoice_type)
    return int(_DEFAULT_CONDITION.get(family, TaxCondition.END_CONSUMER))


def check_compatibility(invoice_type: int, tax_condition: int) -> None:
    """Raise ValidationError when the invoice family cannot be issued to the receiver."""
    family = family_of(invoice_type)
    allowed = _ALLOWED_RECEIVERS.get(family)
    if allowed is None or tax_condition in allowed:
        return
    raise ValidationError(
        f"Invoice type {invoice_type} (family {family.value}) cannot be issued "
        f"to a receiver with tax condition {_describe(tax_condition)}",
        context={"invoice_type": invoice_type, "tax_condition": tax_condition},
    )


def vat_rate_id(rate: Decimal) -> int:
    """Map a VAT percentage to its remote id; unknown rates are a validation error."""
    try:
        return VAT_RATE_IDS[Decimal(rate).normalize()]
    except KeyError:
        raise ValidationError(f"Unsupported VAT rate: {rate}%") from None


def _describe(tax_condition: int) -> str:
    try:
        return f"{tax_condition} ({TaxCondition(tax_condition).name.lower()})"
    except ValueError:
        return str(tax_condition)
