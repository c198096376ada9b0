"""Exact amount handling.

Balances are kept as integer counts of the minimal unit (1e-8, the precision of
the chain's UFix64) and surfaced as ``Decimal``.
"""
import re
from decimal import ROUND_DOWN, Decimal, InvalidOperation

from sqlalchemy import BigInteger
from sqlalchemy.types import TypeDecorator

from house_ledger.errors import ValidationError

DECIMALS = 8
UNIT = Decimal(1).scaleb(-DECIMALS)
ZERO = Decimal(0)
# largest balance a signed 64-bit unit count can hold
MAX_AMOUNT = Decimal(2 ** 63 - 1).scaleb(-DECIMALS)
MAX_ADDRESS_LENGTH = 66
ADDRESS_RE = re.compile(r"0x[0-9A-Za-z]+")


def to_decimal(value) -> Decimal:
    """Convert an int, str, float or Decimal to Decimal without binary float noise."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValidationError("Amount must be a number")
    if isinstance(value, float):
        value = repr(value)
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid amount: {value!r}") from exc


def validate_amount(value, field: str = "Amount") -> Decimal:
    amount = to_decimal(value)
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    if amount <= 0:
        raise ValidationError(f"{field} must be greater than zero")
    if amount > MAX_AMOUNT:
        raise ValidationError(f"{field} is too large")
    if amount != amount.quantize(UNIT, rounding=ROUND_DOWN):
        raise ValidationError(f"{field} has more than {DECIMALS} decimal places")
    return amount


def validate_address(address) -> str:
    if not isinstance(address, str) or not address:
        raise ValidationError("Address is required")
    if len(address) > MAX_ADDRESS_LENGTH or not ADDRESS_RE.fullmatch(address):
        raise ValidationError("Invalid address format. Addresses must start with 0x")
    return address


def to_units(value) -> int:
    return int((to_decimal(value) * (10 ** DECIMALS)).to_integral_value())


def from_units(units: int) -> Decimal:
    return Decimal(int(units)).scaleb(-DECIMALS)


class Amount(TypeDecorator):
    """Decimal column persisted as integer minimal units."""

    impl = BigInteger
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return to_units(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return from_units(value)
