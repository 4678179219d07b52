"""
Fixed-point Amount

Exact minor-unit arithmetic tagged with the asset's decimal count. No float
ever touches an amount: parsing goes through string digits, display goes
through integer division.
"""

import re
from dataclasses import dataclass
from typing import Union

from .errors import AssetMismatchError, InvalidAmountError

DISPLAY_PRECISION = 4

_DECIMAL_PATTERN = re.compile(r"^(\d*)(?:\.(\d*))?$")


@dataclass(frozen=True)
class Amount:
    """Non-negative integer of minor units plus the asset's decimal count"""
    minor_units: int
    decimals: int

    def __post_init__(self):
        if isinstance(self.minor_units, bool) or not isinstance(self.minor_units, int):
            raise InvalidAmountError(f"minor units must be an int, got {type(self.minor_units).__name__}")
        if isinstance(self.decimals, bool) or not isinstance(self.decimals, int):
            raise InvalidAmountError(f"decimals must be an int, got {type(self.decimals).__name__}")
        if self.minor_units < 0:
            raise InvalidAmountError(f"amount cannot be negative: {self.minor_units}")
        if self.decimals < 0:
            raise InvalidAmountError(f"decimals cannot be negative: {self.decimals}")

    @classmethod
    def zero(cls, decimals: int) -> 'Amount':
        return cls(0, decimals)

    @classmethod
    def from_minor(cls, value: Union[int, str], decimals: int) -> 'Amount':
        """
        Build from a minor-unit integer or its decimal-digit string

        Chain and indexer responses hand over balances as strings or ints;
        anything else (floats included) is rejected.
        """
        if isinstance(value, str):
            text = value.strip()
            if not text.isdigit():
                raise InvalidAmountError(f"not a minor-unit integer: {value!r}")
            return cls(int(text), decimals)
        return cls(value, decimals)

    @classmethod
    def from_decimal_string(cls, text: str, decimals: int) -> 'Amount':
        """
        Parse a human-entered decimal string into exact minor units

        Args:
            text: Decimal string such as "1", "0.25" or ".5"
            decimals: Asset decimal count

        Returns:
            Amount

        Raises:
            InvalidAmountError: empty, signed, exponent, or more fractional
                digits than the asset supports
        """
        if not isinstance(text, str):
            raise InvalidAmountError(f"amount must be a string, got {type(text).__name__}")

        match = _DECIMAL_PATTERN.match(text.strip())
        if not match:
            raise InvalidAmountError(f"not a decimal amount: {text!r}")

        integer_part, fraction_part = match.group(1), match.group(2) or ""
        if not integer_part and not fraction_part:
            raise InvalidAmountError(f"not a decimal amount: {text!r}")

        if len(fraction_part) > decimals:
            raise InvalidAmountError(f"{text!r} has more than {decimals} fractional digits")

        minor = int(integer_part or "0") * 10 ** decimals
        if fraction_part:
            minor += int(fraction_part.ljust(decimals, "0"))
        return cls(minor, decimals)

    def _check_compatible(self, other: object) -> 'Amount':
        if not isinstance(other, Amount):
            raise AssetMismatchError(f"cannot combine Amount with {type(other).__name__}")
        if other.decimals != self.decimals:
            raise AssetMismatchError(
                f"decimal mismatch: {self.decimals} vs {other.decimals}"
            )
        return other

    def __add__(self, other: 'Amount') -> 'Amount':
        other = self._check_compatible(other)
        return Amount(self.minor_units + other.minor_units, self.decimals)

    def __sub__(self, other: 'Amount') -> 'Amount':
        other = self._check_compatible(other)
        if other.minor_units > self.minor_units:
            raise InvalidAmountError(
                f"subtraction below zero: {self.minor_units} - {other.minor_units}"
            )
        return Amount(self.minor_units - other.minor_units, self.decimals)

    def saturating_sub(self, other: 'Amount') -> 'Amount':
        """Subtract, clamping at zero"""
        other = self._check_compatible(other)
        return Amount(max(self.minor_units - other.minor_units, 0), self.decimals)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Amount):
            return NotImplemented
        return self.minor_units == self._check_compatible(other).minor_units

    def __hash__(self) -> int:
        return hash((self.minor_units, self.decimals))

    def __lt__(self, other: 'Amount') -> bool:
        return self.minor_units < self._check_compatible(other).minor_units

    def __le__(self, other: 'Amount') -> bool:
        return self.minor_units <= self._check_compatible(other).minor_units

    def __gt__(self, other: 'Amount') -> bool:
        return self.minor_units > self._check_compatible(other).minor_units

    def __ge__(self, other: 'Amount') -> bool:
        return self.minor_units >= self._check_compatible(other).minor_units

    def is_zero(self) -> bool:
        return self.minor_units == 0

    def to_minor_string(self) -> str:
        return str(self.minor_units)

    def to_exact_string(self) -> str:
        """Full-precision decimal string with trailing zeros trimmed"""
        integer_part, remainder = divmod(self.minor_units, 10 ** self.decimals)
        if not remainder:
            return str(integer_part)
        return f"{integer_part}.{remainder:0{self.decimals}d}".rstrip('0')

    def to_display_string(self, precision: int = DISPLAY_PRECISION) -> str:
        """
        Render as "<integer>.<fraction>" truncated (never rounded)

        Args:
            precision: Fractional digits to show

        Returns:
            Display string with exactly `precision` fractional digits
        """
        scale = 10 ** self.decimals
        integer_part, remainder = divmod(self.minor_units, scale)

        if precision <= 0:
            return str(integer_part)

        if self.decimals >= precision:
            fraction = remainder // 10 ** (self.decimals - precision)
        else:
            fraction = remainder * 10 ** (precision - self.decimals)

        return f"{integer_part}.{fraction:0{precision}d}"

    def __str__(self) -> str:
        return self.to_display_string()
