"""Unsigned vault arithmetic shared by bet placement, claims and refunds."""

from dataclasses import dataclass

from veil.core.exceptions import ArithmeticOverflowError

U32_MAX = 2**32 - 1
U64_MAX = 2**64 - 1
U128_MAX = 2**128 - 1


def checked_add(a: int, b: int, limit: int = U64_MAX) -> int:
    """Add two unsigned values, failing instead of wrapping."""
    if a < 0 or b < 0:
        raise ArithmeticOverflowError(f"Negative operand in unsigned add: {a} + {b}")
    total = a + b
    if total > limit:
        raise ArithmeticOverflowError(f"Overflow: {a} + {b} exceeds {limit}")
    return total


def ensure_u64(value: int, name: str = "value") -> int:
    if value < 0 or value > U64_MAX:
        raise ArithmeticOverflowError(f"{name} {value} outside unsigned 64-bit range")
    return value


@dataclass(frozen=True)
class VaultBalance:
    """Snapshot of a vault's monotonic counters."""

    total_deposits: int = 0
    total_withdrawals: int = 0

    @property
    def balance(self) -> int:
        return self.total_deposits - self.total_withdrawals

    def deposit(self, amount: int) -> "VaultBalance":
        return VaultBalance(
            total_deposits=checked_add(self.total_deposits, amount),
            total_withdrawals=self.total_withdrawals,
        )

    def withdraw(self, amount: int) -> "VaultBalance":
        """Record a withdrawal; withdrawals may never exceed deposits."""
        withdrawals = checked_add(self.total_withdrawals, amount)
        if withdrawals > self.total_deposits:
            raise ArithmeticOverflowError(
                f"Insufficient vault balance: need {amount}, have {self.balance}"
            )
        return VaultBalance(
            total_deposits=self.total_deposits,
            total_withdrawals=withdrawals,
        )
