"""
Parimutuel payout calculation.

Winners split the revealed total pool, minus the market fee, in proportion
to their stake in the winning pool. Every division floors; the remainder
(dust) stays in the vault.
"""

from dataclasses import dataclass
from typing import Any

from veil.core.exceptions import ArithmeticOverflowError, ClaimMismatchError
from veil.engine.vault import ensure_u64

BPS_DENOMINATOR = 10_000


@dataclass(frozen=True)
class PayoutResult:
    """Outcome of settling one claim."""

    won: bool
    payout: int
    fee: int = 0
    distributable: int = 0
    winning_pool: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "won": self.won,
            "payout": self.payout,
            "fee": self.fee,
            "distributable": self.distributable,
            "winning_pool": self.winning_pool,
        }


def calculate_fee(total_pool: int, fee_bps: int) -> int:
    """
    Fee taken from the total pool, floored.

    Python ints stand in for the 128-bit intermediate, so the product never
    overflows; with fee_bps <= 1000 the fee is at most a tenth of the pool.
    """
    ensure_u64(total_pool, "total_pool")
    if fee_bps < 0:
        raise ArithmeticOverflowError(f"Negative fee rate: {fee_bps}")
    return total_pool * fee_bps // BPS_DENOMINATOR


def distributable_pool(total_pool: int, fee_bps: int) -> int:
    """Total pool minus fee, saturating at zero."""
    return max(0, total_pool - calculate_fee(total_pool, fee_bps))


def winning_pool_for(outcome: bool, revealed_yes: int, revealed_no: int) -> int:
    return revealed_yes if outcome else revealed_no


def calculate_payout(
    claimed_outcome: bool,
    claimed_amount: int,
    recorded_stake: int,
    winning_outcome: bool,
    revealed_yes: int,
    revealed_no: int,
    revealed_total: int,
    fee_bps: int,
) -> PayoutResult:
    """
    Compute the disbursement for one claim.

    Raises:
        ClaimMismatchError: claimed_amount differs from the recorded stake.
    """
    if claimed_amount != recorded_stake:
        raise ClaimMismatchError(
            f"Claimed amount {claimed_amount} does not match recorded stake",
            code="invalid_bet_claim",
        )

    if claimed_outcome != winning_outcome:
        # Loser: stake stays in the pool
        return PayoutResult(won=False, payout=0)

    winning_pool = winning_pool_for(winning_outcome, revealed_yes, revealed_no)
    fee = calculate_fee(revealed_total, fee_bps)
    distributable = max(0, revealed_total - fee)

    if winning_pool == 0:
        payout = 0
    else:
        payout = claimed_amount * distributable // winning_pool

    return PayoutResult(
        won=True,
        payout=ensure_u64(payout, "payout"),
        fee=fee,
        distributable=distributable,
        winning_pool=winning_pool,
    )
