from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from kudimarket.errors import ValidationError

MINOR_PER_UNIT = 100


@dataclass(frozen=True, order=True)
class Money:
    """Non-negative amount held as an integer count of minor units (pesewas)."""

    minor: int

    def __post_init__(self):
        if isinstance(self.minor, bool) or not isinstance(self.minor, int):
            raise ValidationError("money must be an integer number of minor units")
        if self.minor < 0:
            raise ValidationError("money cannot be negative", amount=self.minor)

    @classmethod
    def zero(cls) -> "Money":
        return cls(0)

    @classmethod
    def parse(cls, value) -> "Money":
        """Parse a decimal string or number from API input, e.g. ``"12.50"``."""
        if value is None or value == "":
            raise ValidationError("amount is required")
        if isinstance(value, bool):
            raise ValidationError("invalid amount")
        try:
            amount = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValidationError("invalid amount", value=str(value))
        if not amount.is_finite():
            raise ValidationError("invalid amount", value=str(value))
        minor = amount * MINOR_PER_UNIT
        if minor != minor.to_integral_value():
            raise ValidationError("amount has more than two decimal places", value=str(value))
        return cls(int(minor))

    def __add__(self, other: "Money") -> "Money":
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self.minor + other.minor)

    def __sub__(self, other: "Money") -> "Money":
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self.minor - other.minor)

    def multiply(self, quantity: int) -> "Money":
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
            raise ValidationError("quantity must be a non-negative integer")
        return Money(self.minor * quantity)

    def is_zero(self) -> bool:
        return self.minor == 0

    def to_decimal(self) -> Decimal:
        return (Decimal(self.minor) / MINOR_PER_UNIT).quantize(Decimal("0.01"))

    def display(self) -> str:
        return f"{self.to_decimal():.2f}"

    def __str__(self):
        return self.display()


def money_sum(amounts) -> Money:
    total = Money.zero()
    for amount in amounts:
        total = total + amount
    return total
