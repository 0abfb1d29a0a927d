"""
Money Module

Fixed-point monetary arithmetic for the ledger. Amounts are Decimal values
held at two decimal places and rounded ROUND_HALF_UP. NEVER uses float for
monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Union

from .errors import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28

CENT = Decimal('0.01')
ZERO = Decimal('0.00')

AmountLike = Union[Decimal, int, str, float]


class Currency(Enum):
    """Supported ISO 4217 currency codes with ledger precision"""
    USD = ("USD", 2)
    EUR = ("EUR", 2)
    GBP = ("GBP", 2)
    BDT = ("BDT", 2)
    INR = ("INR", 2)
    JPY = ("JPY", 2)  # Ledger amounts are always held at two decimal places
    CNY = ("CNY", 2)
    AUD = ("AUD", 2)
    CAD = ("CAD", 2)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @classmethod
    def from_code(cls, code: Union[str, 'Currency']) -> 'Currency':
        """Resolve a currency from its ISO code (case-insensitive)"""
        if isinstance(code, Currency):
            return code
        try:
            return cls[str(code).strip().upper()]
        except KeyError:
            raise ValidationError(f"Unsupported currency: {code}")


def to_decimal(value: AmountLike) -> Decimal:
    """
    Convert an input amount to Decimal.

    Floats are converted through their string form so 0.1 stays 0.1.

    Raises:
        ValidationError: If the value is not a finite number
    """
    if isinstance(value, bool):
        raise ValidationError(f"Invalid amount: {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValidationError(f"Invalid amount: {value!r}")
    else:
        raise ValidationError(f"Invalid amount: {value!r}")

    if not result.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return result


def round_money(value: AmountLike) -> Decimal:
    """Round to two decimal places, half away from zero"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def positive_amount(value: AmountLike, field_name: str = "amount") -> Decimal:
    """Parse and round an amount that must be strictly positive"""
    amount = round_money(value)
    if amount <= ZERO:
        raise ValidationError(f"{field_name.capitalize()} must be positive")
    return amount


@dataclass(frozen=True)
class Money:
    """
    Immutable amount + currency pair, used for display and comparisons
    where the currency must travel with the amount.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        object.__setattr__(self, 'amount', round_money(self.amount))

    def _check_currency(self, other: 'Money', verb: str) -> None:
        if self.currency != other.currency:
            raise ValidationError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __lt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == ZERO

    def to_string(self) -> str:
        """Format for display"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"

    def __str__(self) -> str:
        return self.to_string()
