"""Fixed-point money arithmetic on integer minor units."""
from decimal import Decimal, ROUND_HALF_UP
from functools import total_ordering
from typing import List, Sequence, Union

# Currencies whose minor unit is not 1/100
MINOR_UNIT_EXPONENTS = {
    'JPY': 0,
    'KRW': 0,
    'BHD': 3,
    'KWD': 3,
}

DEFAULT_EXPONENT = 2


def minor_unit_exponent(currency: str) -> int:
    return MINOR_UNIT_EXPONENTS.get(currency.upper(), DEFAULT_EXPONENT)


def round_half_up(value: Decimal) -> int:
    """Round a Decimal amount of minor units to the nearest integer, ties away from zero."""
    return int(value.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


class CurrencyMismatchError(ValueError):
    """Raised when combining Money values of different currencies."""


@total_ordering
class Money:
    """
    Immutable amount of money stored as integer minor units (cents).

    Every externally observable value is already rounded to the currency's
    minor unit; percentage operations round half-up at the point of computation.
    """

    __slots__ = ('_cents', '_currency')

    def __init__(self, cents: int, currency: str = 'ZAR'):
        if isinstance(cents, bool) or not isinstance(cents, int):
            raise TypeError(f'Money requires integer minor units, got {type(cents).__name__}')
        object.__setattr__(self, '_cents', cents)
        object.__setattr__(self, '_currency', currency.upper())

    def __setattr__(self, name, value):
        raise AttributeError('Money is immutable')

    @property
    def cents(self) -> int:
        return self._cents

    @property
    def currency(self) -> str:
        return self._currency

    @classmethod
    def zero(cls, currency: str = 'ZAR') -> 'Money':
        return cls(0, currency)

    @classmethod
    def from_decimal(cls, amount: Union[Decimal, str, int], currency: str = 'ZAR') -> 'Money':
        """Build from a major-unit amount such as Decimal('12.345'), rounding half-up."""
        if isinstance(amount, float):
            raise TypeError('Money never accepts floats, use Decimal or str')
        scale = Decimal(10) ** minor_unit_exponent(currency)
        return cls(round_half_up(Decimal(amount) * scale), currency)

    def to_decimal(self) -> Decimal:
        exponent = minor_unit_exponent(self._currency)
        return (Decimal(self._cents) / (Decimal(10) ** exponent)).quantize(Decimal(1).scaleb(-exponent))

    def _check(self, other: 'Money') -> None:
        if not isinstance(other, Money):
            raise TypeError(f'Cannot combine Money with {type(other).__name__}')
        if other._currency != self._currency:
            raise CurrencyMismatchError(f'{self._currency} != {other._currency}')

    def add(self, other: 'Money') -> 'Money':
        self._check(other)
        return Money(self._cents + other._cents, self._currency)

    def subtract(self, other: 'Money') -> 'Money':
        self._check(other)
        return Money(self._cents - other._cents, self._currency)

    def multiply_by_quantity(self, quantity: int) -> 'Money':
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise TypeError('Quantity must be an integer')
        return Money(self._cents * quantity, self._currency)

    def percentage_of(self, percent: Union[Decimal, str, int]) -> 'Money':
        """Return `percent`% of this amount, e.g. percentage_of(Decimal('15')) for 15%."""
        if isinstance(percent, float):
            raise TypeError('Percentages must be Decimal, str or int')
        raw = Decimal(self._cents) * Decimal(percent) / Decimal(100)
        return Money(round_half_up(raw), self._currency)

    def clamp_non_negative(self) -> 'Money':
        if self._cents < 0:
            return Money(0, self._currency)
        return self

    def min(self, other: 'Money') -> 'Money':
        self._check(other)
        return self if self._cents <= other._cents else other

    def compare(self, other: 'Money') -> int:
        """Three-way comparison: -1, 0 or 1."""
        self._check(other)
        return (self._cents > other._cents) - (self._cents < other._cents)

    def allocate(self, weights: Sequence[int]) -> List['Money']:
        """
        Split this amount across `weights` proportionally (largest remainder).

        The parts always sum exactly to the original amount. Ties on the
        remainder go to the earlier weight, so the split is deterministic.
        """
        if not weights:
            return []
        if any(w < 0 for w in weights):
            raise ValueError('Allocation weights must be non-negative')
        total_weight = sum(weights)
        if total_weight == 0:
            weights = [1] * len(weights)
            total_weight = len(weights)

        sign = -1 if self._cents < 0 else 1
        amount = abs(self._cents)
        parts = [amount * w // total_weight for w in weights]
        remainders = [amount * w % total_weight for w in weights]
        leftover = amount - sum(parts)
        order = sorted(range(len(weights)), key=lambda i: (-remainders[i], i))
        for i in order[:leftover]:
            parts[i] += 1
        return [Money(sign * p, self._currency) for p in parts]

    @property
    def is_zero(self) -> bool:
        return self._cents == 0

    def __add__(self, other):
        return self.add(other)

    def __sub__(self, other):
        return self.subtract(other)

    def __neg__(self):
        return Money(-self._cents, self._currency)

    def __eq__(self, other):
        if not isinstance(other, Money):
            return NotImplemented
        return self._cents == other._cents and self._currency == other._currency

    def __lt__(self, other):
        if not isinstance(other, Money):
            return NotImplemented
        return self.compare(other) < 0

    def __hash__(self):
        return hash((self._cents, self._currency))

    def __repr__(self):
        return f"<Money({self.to_decimal()} {self._currency})>"

    def __str__(self):
        return f"{self.to_decimal()} {self._currency}"
