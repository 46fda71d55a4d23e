"""
Money Module

Fixed-point money for the pawn ledger. One currency per deployment,
two-decimal precision, ROUND_HALF_UP. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import Iterable, Union
from enum import Enum
import re

from .exceptions import ValidationError

getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 currency codes with precision info"""
    USD = ("USD", 2)
    EUR = ("EUR", 2)
    GBP = ("GBP", 2)
    CAD = ("CAD", 2)
    PHP = ("PHP", 2)
    
    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision


@dataclass(frozen=True)
class Money:
    """
    Immutable money value rounded to its currency's precision.
    Arithmetic between different currencies is rejected.
    """
    amount: Decimal
    currency: Currency
    
    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))
        
        rounded = self.amount.quantize(
            Decimal('0.1') ** self.currency.precision,
            rounding=ROUND_HALF_UP
        )
        object.__setattr__(self, 'amount', rounded)
    
    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)
    
    def _check(self, other: 'Money', verb: str) -> None:
        if self.currency != other.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")
    
    def __add__(self, other: 'Money') -> 'Money':
        self._check(other, "add")
        return Money(self.amount + other.amount, self.currency)
    
    def __sub__(self, other: 'Money') -> 'Money':
        self._check(other, "subtract")
        return Money(self.amount - other.amount, self.currency)
    
    def __mul__(self, multiplier: Decimal) -> 'Money':
        if not isinstance(multiplier, Decimal):
            multiplier = Decimal(str(multiplier))
        return Money(self.amount * multiplier, self.currency)
    
    def __truediv__(self, divisor: Decimal) -> 'Money':
        if not isinstance(divisor, Decimal):
            divisor = Decimal(str(divisor))
        return Money(self.amount / divisor, self.currency)
    
    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)
    
    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency
    
    def __hash__(self) -> int:
        return hash((self.amount, self.currency))
    
    def __lt__(self, other: 'Money') -> bool:
        self._check(other, "compare")
        return self.amount < other.amount
    
    def __le__(self, other: 'Money') -> bool:
        self._check(other, "compare")
        return self.amount <= other.amount
    
    def __gt__(self, other: 'Money') -> bool:
        self._check(other, "compare")
        return self.amount > other.amount
    
    def __ge__(self, other: 'Money') -> bool:
        self._check(other, "compare")
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
    
    def floor_zero(self) -> 'Money':
        """Clamp negative amounts to zero"""
        if self.is_negative():
            return Money.zero(self.currency)
        return self
    
    def to_string(self) -> str:
        """Format for display"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def sum_money(values: Iterable[Money], currency: Currency) -> Money:
    """Sum Money values, starting from zero in the given currency"""
    total = Money.zero(currency)
    for value in values:
        total = total + value
    return total


def currency_from_code(code: str) -> Currency:
    """Look up a Currency by ISO code"""
    try:
        return Currency[code.upper()]
    except KeyError:
        raise ValidationError(f"Unsupported currency: {code}")


def decimal_from_string(value: Union[str, int, Decimal]) -> Decimal:
    """
    Safely convert user input to Decimal.
    
    Accepts Decimal and int unchanged, strips currency symbols and thousands
    separators from strings. Floats are rejected.
    
    Raises:
        ValidationError: If the value cannot be converted to a finite Decimal
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(f"Monetary values must not be floats: {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    else:
        if not value or not isinstance(value, str):
            raise ValidationError("Value must be a non-empty string")
        clean_value = re.sub(r'[^\d.\-+]', '', value.strip().replace(',', ''))
        try:
            result = Decimal(clean_value)
        except InvalidOperation:
            raise ValidationError(f"Cannot convert '{value}' to Decimal")
    if not result.is_finite():
        raise ValidationError(f"Value must be finite: {value!r}")
    return result
