"""
Encrypted pool accumulator.

The accumulator is the contract the confidential network executes: it keeps
{yes_pool, no_pool, bet_count} encrypted and only ever declassifies pool
totals, a payout split, a bet count or a claim check. The settlement side
never sees individual bets or intermediate values.

ReferenceAccumulator implements the contract over a keyed keystream cipher.
It is not confidential; it exists so the pool arithmetic can be exercised
without a real network.
"""

import hashlib
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from veil.engine.vault import U32_MAX, U64_MAX, U128_MAX

CIPHERTEXT_LEN = 32
AGGREGATE_FIELDS = 3  # yes_pool, no_pool, bet_count
AGGREGATE_LEN = CIPHERTEXT_LEN * AGGREGATE_FIELDS
BET_FIELDS = 2  # outcome, amount
KEY_LEN = 32


class Circuit(str, Enum):
    """Named circuits the confidential network can execute."""

    INIT = "init_market_state"
    AGGREGATE = "place_bet"
    REVEAL_TOTALS = "reveal_market_totals"
    PAYOUT_SPLIT = "calculate_payout_pools"
    VERIFY_CLAIM = "verify_bet_claim"
    BET_COUNT = "get_bet_count"

    @property
    def mutates_aggregate(self) -> bool:
        return self in (Circuit.INIT, Circuit.AGGREGATE)


class AccumulatorOverflowError(Exception):
    """A pool or count would leave its unsigned domain."""

    pass


@dataclass(frozen=True)
class EncryptedAggregate:
    """Encrypted {yes_pool, no_pool, bet_count} and the nonce it was sealed with."""

    ciphertexts: tuple[bytes, bytes, bytes]
    nonce: int

    @classmethod
    def empty(cls) -> "EncryptedAggregate":
        zero = bytes(CIPHERTEXT_LEN)
        return cls(ciphertexts=(zero, zero, zero), nonce=0)

    @classmethod
    def from_bytes(cls, data: bytes, nonce: int) -> "EncryptedAggregate":
        if len(data) != AGGREGATE_LEN:
            raise ValueError(f"Encrypted aggregate must be {AGGREGATE_LEN} bytes, got {len(data)}")
        parts = tuple(
            bytes(data[i * CIPHERTEXT_LEN:(i + 1) * CIPHERTEXT_LEN])
            for i in range(AGGREGATE_FIELDS)
        )
        return cls(ciphertexts=parts, nonce=nonce)

    def to_bytes(self) -> bytes:
        return b"".join(self.ciphertexts)


@dataclass(frozen=True)
class EncryptedBet:
    """A bettor's encrypted {outcome, amount} plus the key material to open it."""

    outcome: bytes
    amount: bytes
    bettor_key: bytes
    nonce: int


@dataclass(frozen=True)
class MarketTotals:
    yes_pool: int
    no_pool: int
    total_pool: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "yes_pool": self.yes_pool,
            "no_pool": self.no_pool,
            "total_pool": self.total_pool,
        }


@dataclass(frozen=True)
class PayoutSplit:
    winning_pool: int
    losing_pool: int
    total_pool: int
    outcome: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "winning_pool": self.winning_pool,
            "losing_pool": self.losing_pool,
            "total_pool": self.total_pool,
            "outcome": self.outcome,
        }


class PoolAccumulator(Protocol):
    """Operations the confidential network runs on an encrypted aggregate."""

    def init(self, nonce: int) -> EncryptedAggregate: ...

    def aggregate(self, bet: EncryptedBet, current: EncryptedAggregate) -> EncryptedAggregate: ...

    def reveal_totals(self, aggregate: EncryptedAggregate) -> MarketTotals: ...

    def compute_payout_split(self, aggregate: EncryptedAggregate, outcome: bool) -> PayoutSplit: ...

    def verify_claim(self, original: EncryptedBet, claimed_outcome: bool, claimed_amount: int) -> bool: ...

    def reveal_bet_count(self, aggregate: EncryptedAggregate) -> int: ...


def _keystream(key: bytes, nonce: int, index: int) -> bytes:
    material = key + nonce.to_bytes(16, "little") + index.to_bytes(4, "little")
    return hashlib.blake2b(material, digest_size=CIPHERTEXT_LEN).digest()


def encrypt_scalar(value: int, key: bytes, nonce: int, index: int) -> bytes:
    plain = value.to_bytes(CIPHERTEXT_LEN, "little")
    stream = _keystream(key, nonce, index)
    return bytes(p ^ s for p, s in zip(plain, stream))


def decrypt_scalar(ciphertext: bytes, key: bytes, nonce: int, index: int) -> int:
    stream = _keystream(key, nonce, index)
    return int.from_bytes(bytes(c ^ s for c, s in zip(ciphertext, stream)), "little")


def encrypt_bet(outcome: bool, amount: int, bettor_key: bytes, nonce: int) -> EncryptedBet:
    """Client-side helper: seal a bet for the reference network."""
    if len(bettor_key) != KEY_LEN:
        raise ValueError(f"Bettor key must be {KEY_LEN} bytes")
    return EncryptedBet(
        outcome=encrypt_scalar(1 if outcome else 0, bettor_key, nonce, 0),
        amount=encrypt_scalar(amount, bettor_key, nonce, 1),
        bettor_key=bettor_key,
        nonce=nonce,
    )


class ReferenceAccumulator:
    """
    Plaintext-backed accumulator.

    Aggregates are sealed under the network's own key; bets are opened with
    the bettor's key material. Arithmetic fails closed on overflow.
    """

    def __init__(self, network_key: bytes):
        self._key = hashlib.blake2b(network_key, digest_size=KEY_LEN).digest()

    def _seal(self, yes_pool: int, no_pool: int, bet_count: int, nonce: int) -> EncryptedAggregate:
        return EncryptedAggregate(
            ciphertexts=(
                encrypt_scalar(yes_pool, self._key, nonce, 0),
                encrypt_scalar(no_pool, self._key, nonce, 1),
                encrypt_scalar(bet_count, self._key, nonce, 2),
            ),
            nonce=nonce,
        )

    def _open(self, aggregate: EncryptedAggregate) -> tuple[int, int, int]:
        yes_pool, no_pool, bet_count = (
            decrypt_scalar(ct, self._key, aggregate.nonce, i)
            for i, ct in enumerate(aggregate.ciphertexts)
        )
        # Anything out of range was not sealed by this network
        if yes_pool > U64_MAX or no_pool > U64_MAX:
            raise AccumulatorOverflowError("Aggregate pool outside unsigned 64-bit range")
        if bet_count > U32_MAX:
            raise AccumulatorOverflowError("Aggregate bet count outside unsigned 32-bit range")
        return yes_pool, no_pool, bet_count

    @staticmethod
    def _open_bet(bet: EncryptedBet) -> tuple[bool, int]:
        outcome = decrypt_scalar(bet.outcome, bet.bettor_key, bet.nonce, 0)
        amount = decrypt_scalar(bet.amount, bet.bettor_key, bet.nonce, 1)
        if amount > U64_MAX:
            raise AccumulatorOverflowError("Bet amount outside unsigned 64-bit range")
        return outcome == 1, amount

    def init(self, nonce: int) -> EncryptedAggregate:
        return self._seal(0, 0, 0, nonce & U128_MAX)

    def aggregate(self, bet: EncryptedBet, current: EncryptedAggregate) -> EncryptedAggregate:
        yes_pool, no_pool, bet_count = self._open(current)
        outcome, amount = self._open_bet(bet)

        if outcome:
            yes_pool += amount
        else:
            no_pool += amount
        bet_count += 1

        if yes_pool > U64_MAX or no_pool > U64_MAX:
            raise AccumulatorOverflowError("Pool exceeds unsigned 64-bit range")
        if bet_count > U32_MAX:
            raise AccumulatorOverflowError("Bet count exceeds unsigned 32-bit range")

        # Re-seal under a fresh nonce so every version of the aggregate differs
        return self._seal(yes_pool, no_pool, bet_count, (current.nonce + 1) & U128_MAX)

    def reveal_totals(self, aggregate: EncryptedAggregate) -> MarketTotals:
        yes_pool, no_pool, _ = self._open(aggregate)
        total = yes_pool + no_pool
        if total > U64_MAX:
            raise AccumulatorOverflowError("Total pool exceeds unsigned 64-bit range")
        return MarketTotals(yes_pool=yes_pool, no_pool=no_pool, total_pool=total)

    def compute_payout_split(self, aggregate: EncryptedAggregate, outcome: bool) -> PayoutSplit:
        totals = self.reveal_totals(aggregate)
        if outcome:
            winning, losing = totals.yes_pool, totals.no_pool
        else:
            winning, losing = totals.no_pool, totals.yes_pool
        return PayoutSplit(
            winning_pool=winning,
            losing_pool=losing,
            total_pool=totals.total_pool,
            outcome=outcome,
        )

    def verify_claim(self, original: EncryptedBet, claimed_outcome: bool, claimed_amount: int) -> bool:
        outcome, amount = self._open_bet(original)
        return outcome == claimed_outcome and amount == claimed_amount

    def reveal_bet_count(self, aggregate: EncryptedAggregate) -> int:
        _, _, bet_count = self._open(aggregate)
        return bet_count
