"""
Money Primitives Module

Fixed-point money values with ISO 4217 precision. NEVER uses float for
monetary values; every amount is a Decimal quantized to its currency.
"""

from decimal import Decimal, ROUND_HALF_UP, ROUND_DOWN, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import Iterable, List
from enum import Enum

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    KES = ("KES", 2)  # Kenyan Shilling
    UGX = ("UGX", 0)  # Ugandan Shilling, no minor unit in practice
    TZS = ("TZS", 2)  # Tanzanian Shilling
    USD = ("USD", 2)  # US Dollar
    EUR = ("EUR", 2)  # Euro

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        """Smallest representable unit, e.g. Decimal('0.01')"""
        return Decimal('0.1') ** self.precision


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    All monetary values MUST use this class or raw Decimal.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        rounded = self.amount.quantize(self.currency.quantum, rounding=ROUND_HALF_UP)
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    def _check_currency(self, other: 'Money', verb: str) -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Cannot {verb} Money and {type(other).__name__}")
        if self.currency != other.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier: Decimal) -> 'Money':
        if not isinstance(multiplier, Decimal):
            multiplier = Decimal(str(multiplier))
        return Money(self.amount * multiplier, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __abs__(self) -> 'Money':
        return Money(abs(self.amount), self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency))

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
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        """Check if amount is negative"""
        return self.amount < Decimal('0')

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.amount:,.0f}"
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def money_min(first: Money, second: Money) -> Money:
    """Smaller of two same-currency amounts"""
    return first if first <= second else second


def money_sum(amounts: Iterable[Money], currency: Currency) -> Money:
    """Sum amounts starting from zero in the given currency"""
    total = Money.zero(currency)
    for amount in amounts:
        total = total + amount
    return total


def split_evenly(total: Money, parts: int) -> List[Money]:
    """
    Split an amount into equal parts without losing a single minor unit.

    Parts 1..n-1 receive the per-part share rounded down to currency
    precision; the final part absorbs the remainder so the parts always sum
    back to ``total`` exactly.

    Args:
        total: Amount to split (must not be negative)
        parts: Number of parts (>= 1)

    Returns:
        List of ``parts`` Money values
    """
    if parts < 1:
        raise ValueError("Cannot split into fewer than one part")
    if total.is_negative():
        raise ValueError("Cannot split a negative amount")

    share = (total.amount / Decimal(parts)).quantize(
        total.currency.quantum, rounding=ROUND_DOWN
    )
    head = [Money(share, total.currency) for _ in range(parts - 1)]
    last = Money(total.amount - share * (parts - 1), total.currency)
    return head + [last]


def validate_decimal_precision(value: Decimal, currency: Currency) -> Decimal:
    """
    Validate that a decimal is a whole number of the currency's minor unit

    Args:
        value: Decimal to validate
        currency: Currency defining precision

    Returns:
        The value quantized to the currency precision

    Raises:
        ValueError: If the value is not finite or carries fractions of the
            minor unit
    """
    if not value.is_finite():
        raise ValueError(f"Amount must be a finite number, got {value}")
    quantized = value.quantize(currency.quantum)
    if quantized != value:
        raise ValueError(
            f"Amount {value} has more than {currency.precision} decimal places for {currency.code}"
        )
    return quantized


def exact_money(value, currency: Currency) -> Money:
    """
    Build Money from user input without rounding.

    Raises:
        ValueError: If the input is not a number or is finer than the
            currency's minor unit
    """
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")
    return Money(validate_decimal_precision(amount, currency), currency)
