"""
Tenant identifier — the 11-digit CUIT of the issuing taxpayer.

The last digit is a mod-11 check digit over the first ten, using the
weights 5,4,3,2,7,6,5,4,3,2. Anything accepted by `normalize` is
structurally valid; whether the taxpayer exists is for the remote to say.
"""

from __future__ import annotations

import re

from afip_client.domain.errors import InvalidTenantError

_WEIGHTS = (5, 4, 3, 2, 7, 6, 5, 4, 3, 2)
_NON_DIGITS = re.compile(r"\D")


def clean(value: str | int) -> str:
    """Strip separators (dashes, dots, spaces) from a tenant identifier."""
    return _NON_DIGITS.sub("", str(value))


def check_digit(first_ten: str) -> int:
    """Compute the check digit for the first ten digits of a CUIT."""
    total = sum(int(digit) * weight for digit, weight in zip(first_ten, _WEIGHTS, strict=True))
    remainder = total % 11
    if remainder < 2:
        return 0
    return 11 - remainder


def is_valid(value: str) -> bool:
    """True when `value` is exactly 11 digits with a matching check digit."""
    if len(value) != 11 or not value.isdigit():
        return False
    return check_digit(value[:10]) == int(value[10])


def normalize(value: str | int) -> str:
    """
    Clean and validate a tenant identifier.

    Returns the bare 11-digit string or raises InvalidTenantError.
    """
    cleaned = clean(value)
    if not is_valid(cleaned):
        raise InvalidTenantError(f"Invalid tenant identifier: {value!r}")
    return cleaned


def format_tenant_id(value: str | int) -> str:
    """Render a tenant identifier as XX-XXXXXXXX-X."""
    cleaned = clean(value)
    if len(cleaned) != 11:
        return str(value)
    return f"{cleaned[:2]}-{cleaned[2:10]}-{cleaned[10]}"
