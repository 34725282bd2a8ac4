"""CNPJ key helpers.

A full CNPJ has 14 digits: the 8-digit base (company root), a 4-digit
branch order and 2 check digits. The head office is branch order 0001.
"""

import re

from .errors import ValidationError

BASE_LENGTH = 8
FULL_LENGTH = 14
HEAD_OFFICE_ORDER = "0001"

_NON_DIGITS = re.compile(r"\D")

_FIRST_WEIGHTS = [5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2]
_SECOND_WEIGHTS = [6] + _FIRST_WEIGHTS


def digits(value: str) -> str:
    """Strip punctuation (dots, slash, dash, spaces) from a CNPJ string."""
    return _NON_DIGITS.sub("", value or "")


def _check_digit(numbers: str, weights: list[int]) -> str:
    total = sum(int(n) * w for n, w in zip(numbers, weights))
    rest = total % 11
    return "0" if rest < 2 else str(11 - rest)


def check_digits(first_twelve: str) -> str:
    """Compute the two modulo-11 check digits for the first 12 digits."""
    if len(first_twelve) != 12 or not first_twelve.isdigit():
        raise ValidationError(f"expected 12 digits to compute check digits, got {first_twelve!r}")
    first = _check_digit(first_twelve, _FIRST_WEIGHTS)
    second = _check_digit(first_twelve + first, _SECOND_WEIGHTS)
    return first + second


def normalize_base(value: str) -> str:
    """Return the 8-digit base key, zero-padded."""
    d = digits(value)
    if not d or len(d) > BASE_LENGTH:
        raise ValidationError(f"invalid base CNPJ: {value!r}")
    return d.zfill(BASE_LENGTH)


def normalize_full(value: str) -> str:
    """Return the 14-digit full key, zero-padded."""
    d = digits(value)
    if not d or len(d) > FULL_LENGTH:
        raise ValidationError(f"invalid CNPJ: {value!r}")
    return d.zfill(FULL_LENGTH)


def base_of(full_key: str) -> str:
    """Base key (first 8 digits) of a full key."""
    return normalize_full(full_key)[:BASE_LENGTH]


def full_key(base: str, order: str, check: str) -> str:
    """Assemble a full key from the three columns of the branches file."""
    return normalize_base(base) + order.strip().zfill(4) + check.strip().zfill(2)


def head_office_of(base: str) -> str:
    """Full key of the head office of a base key, with computed check digits."""
    first_twelve = normalize_base(base) + HEAD_OFFICE_ORDER
    return first_twelve + check_digits(first_twelve)


def is_valid(value: str) -> bool:
    """Check length and check digits of a full CNPJ."""
    d = digits(value)
    if len(d) != FULL_LENGTH:
        return False
    return check_digits(d[:12]) == d[12:]


def format_cnpj(value: str) -> str:
    """Format a full key as 00.000.000/0000-00."""
    d = normalize_full(value)
    return f"{d[:2]}.{d[2:5]}.{d[5:8]}/{d[8:12]}-{d[12:]}"
