"""
agritrust/core/money.py

Money value type. Every monetary value carries its asset code and all
arithmetic is Decimal. Floats are refused at construction.

    Money("58500", "RLUSD") - Money("11700", "RLUSD")  → Money("46800", "RLUSD")
    Money("1", "RLUSD") + Money("1", "XRP")            → CurrencyMismatchError
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from typing import Any, Dict, Union

from agritrust.core.exceptions import ConfigurationError, CurrencyMismatchError

DEFAULT_PRECISION = 6

Number = Union[Decimal, int, str]


def to_decimal(value: Number, field: str = "value") -> Decimal:
    """Convert int / str / Decimal to Decimal. Floats are rejected."""
    if isinstance(value, bool) or isinstance(value, float):
        raise ConfigurationError(
            f"{field} must be Decimal, int or str, got {type(value).__name__}",
            {"value": value},
        )
    try:
        result = Decimal(value) if not isinstance(value, Decimal) else value
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ConfigurationError(
            f"{field} is not a valid decimal: {value!r}"
        ) from exc
    if not result.is_finite():
        raise ConfigurationError(f"{field} must be finite, got {value!r}")
    return result


def minimum_unit(precision: int = DEFAULT_PRECISION) -> Decimal:
    """Smallest representable amount at the given precision (1e-6 for 6)."""
    return Decimal(1).scaleb(-precision)


@dataclass(frozen=True)
class Money:
    """An exact amount of a named asset."""

    amount: Decimal
    asset:  str

    def __init__(self, amount: Number, asset: str) -> None:
        if not isinstance(asset, str) or not asset.strip():
            raise ConfigurationError("asset code must be a non-empty string")
        object.__setattr__(self, "amount", to_decimal(amount, "amount"))
        object.__setattr__(self, "asset", asset.strip())

    # ── Arithmetic ────────────────────────────────────────────

    def _check(self, other: "Money") -> None:
        if not isinstance(other, Money):
            raise TypeError(f"expected Money, got {type(other).__name__}")
        if other.asset != self.asset:
            raise CurrencyMismatchError(
                "Cross-asset arithmetic is not allowed",
                {"left": self.asset, "right": other.asset},
            )

    def __add__(self, other: "Money") -> "Money":
        self._check(other)
        return Money(self.amount + other.amount, self.asset)

    def __sub__(self, other: "Money") -> "Money":
        self._check(other)
        return Money(self.amount - other.amount, self.asset)

    def __lt__(self, other: "Money") -> bool:
        self._check(other)
        return self.amount < other.amount

    def __le__(self, other: "Money") -> bool:
        self._check(other)
        return self.amount <= other.amount

    def __gt__(self, other: "Money") -> bool:
        self._check(other)
        return self.amount > other.amount

    def __ge__(self, other: "Money") -> bool:
        self._check(other)
        return self.amount >= other.amount

    def times(self, rate: Number) -> "Money":
        """Scale by a Decimal rate. No rounding."""
        return Money(self.amount * to_decimal(rate, "rate"), self.asset)

    def quantize(self, precision: int = DEFAULT_PRECISION) -> "Money":
        """Round half-even to `precision` fractional digits."""
        return Money(
            self.amount.quantize(minimum_unit(precision), rounding=ROUND_HALF_EVEN),
            self.asset,
        )

    @classmethod
    def zero(cls, asset: str) -> "Money":
        return cls(Decimal(0), asset)

    def is_zero(self) -> bool:
        return self.amount == 0

    def is_positive(self) -> bool:
        return self.amount > 0

    # ── Serialization ─────────────────────────────────────────

    def to_dict(self) -> Dict[str, str]:
        return {"amount": format_amount(self.amount), "asset": self.asset}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Money":
        return cls(data["amount"], data["asset"])

    def __str__(self) -> str:
        return f"{format_amount(self.amount)} {self.asset}"


def format_amount(amount: Decimal) -> str:
    """Plain (non-scientific) string form of a Decimal."""
    if amount == 0:
        amount = abs(amount)
    return format(amount, "f")
