"""Column types for unsigned ledger quantities."""

from typing import Any

from sqlalchemy import BigInteger, String
from sqlalchemy.types import TypeDecorator

_I64_OFFSET = 2**64
_I64_MAX = 2**63 - 1


class U64(TypeDecorator):
    """
    Unsigned 64-bit integer stored in a signed BIGINT column.

    Values above 2**63 - 1 are stored as their two's complement, so the full
    range round-trips exactly. SQL-side ordering of such values is not
    meaningful.
    """

    impl = BigInteger
    cache_ok = True

    def process_bind_param(self, value: int | None, dialect: Any) -> int | None:
        if value is None:
            return None
        value = int(value)
        if value < 0 or value >= _I64_OFFSET:
            raise ValueError(f"{value} outside unsigned 64-bit range")
        return value - _I64_OFFSET if value > _I64_MAX else value

    def process_result_value(self, value: int | None, dialect: Any) -> int | None:
        if value is None:
            return None
        value = int(value)
        return value + _I64_OFFSET if value < 0 else value


class U128(TypeDecorator):
    """Unsigned 128-bit integer stored as fixed-width hex (nonces)."""

    impl = String(32)
    cache_ok = True

    def process_bind_param(self, value: int | None, dialect: Any) -> str | None:
        if value is None:
            return None
        return format(int(value), "032x")

    def process_result_value(self, value: str | None, dialect: Any) -> int | None:
        if value is None:
            return None
        return int(value, 16)
