"""
Market and bet state machines.

Markets move forward along Open -> Closed -> Resolving -> Resolved, with
Cancelled reachable from Open or Closed. Bets move Pending -> Confirmed ->
Claimed, or to Refunded once their market is cancelled. No transition ever
moves a record backwards.
"""

from enum import Enum

from veil.core.exceptions import (
    AuthorizationError,
    BetAlreadyClaimedError,
    StatePreconditionError,
)


class MarketStatus(str, Enum):
    """Status of a confidential market."""

    OPEN = "open"            # Accepting bets
    CLOSED = "closed"        # No more bets, awaiting resolution
    RESOLVING = "resolving"  # Payout split computation queued
    RESOLVED = "resolved"    # Totals revealed, payouts available
    CANCELLED = "cancelled"  # Refunds available


class BetStatus(str, Enum):
    """Status of a bet record."""

    PENDING = "pending"      # Placed, awaiting aggregation callback
    CONFIRMED = "confirmed"  # Aggregated into the encrypted pools
    CLAIMED = "claimed"      # Payout settled
    REFUNDED = "refunded"    # Stake returned from a cancelled market


class OracleMode(str, Enum):
    """How a market's outcome is decided."""

    MANUAL = "manual"
    AUTOMATED_FEED = "automated_feed"
    JURY = "jury"


MARKET_TRANSITIONS: dict[MarketStatus, frozenset[MarketStatus]] = {
    MarketStatus.OPEN: frozenset({MarketStatus.CLOSED, MarketStatus.CANCELLED}),
    MarketStatus.CLOSED: frozenset({MarketStatus.RESOLVING, MarketStatus.CANCELLED}),
    MarketStatus.RESOLVING: frozenset({MarketStatus.RESOLVED}),
    MarketStatus.RESOLVED: frozenset(),
    MarketStatus.CANCELLED: frozenset(),
}

BET_TRANSITIONS: dict[BetStatus, frozenset[BetStatus]] = {
    BetStatus.PENDING: frozenset({BetStatus.CONFIRMED, BetStatus.REFUNDED}),
    BetStatus.CONFIRMED: frozenset({BetStatus.CLAIMED, BetStatus.REFUNDED}),
    BetStatus.CLAIMED: frozenset(),
    BetStatus.REFUNDED: frozenset(),
}

TERMINAL_MARKET_STATUSES = frozenset({MarketStatus.RESOLVED, MarketStatus.CANCELLED})


def next_market_status(current: MarketStatus, target: MarketStatus) -> MarketStatus:
    """Return target if current -> target is a legal market transition."""
    if target not in MARKET_TRANSITIONS[current]:
        raise StatePreconditionError(
            f"Market cannot move from {current.value} to {target.value}",
            code="invalid_market_transition",
        )
    return target


def next_bet_status(current: BetStatus, target: BetStatus) -> BetStatus:
    """Return target if current -> target is a legal bet transition."""
    if target not in BET_TRANSITIONS[current]:
        raise StatePreconditionError(
            f"Bet cannot move from {current.value} to {target.value}",
            code="invalid_bet_transition",
        )
    return target


def ensure_can_bet(
    status: MarketStatus,
    aggregate_initialized: bool,
    now: int,
    resolution_time: int,
) -> None:
    if status != MarketStatus.OPEN:
        raise StatePreconditionError("Market is not open for betting", code="market_not_open")
    if not aggregate_initialized:
        raise StatePreconditionError("Encrypted aggregate not initialized", code="aggregate_not_initialized")
    if now >= resolution_time:
        raise StatePreconditionError("Betting period has ended", code="betting_period_ended")


def ensure_can_close(status: MarketStatus, is_creator: bool, now: int, resolution_time: int) -> None:
    """Creator may close early; anyone may close once the deadline passes."""
    if status != MarketStatus.OPEN:
        raise StatePreconditionError("Market is not open", code="market_not_open")
    if not is_creator and now < resolution_time:
        raise AuthorizationError("Only the creator can close before the deadline", code="unauthorized")


def ensure_can_cancel(status: MarketStatus, is_creator: bool) -> None:
    if not is_creator:
        raise AuthorizationError("Only the creator can cancel a market", code="unauthorized")
    if status == MarketStatus.RESOLVED:
        raise StatePreconditionError("Market has already been resolved", code="market_already_resolved")
    if status == MarketStatus.CANCELLED:
        raise StatePreconditionError("Market has been cancelled", code="market_cancelled")
    next_market_status(status, MarketStatus.CANCELLED)


def authorize_resolver(oracle_mode: OracleMode, creator: str, caller: str) -> None:
    """
    Check the caller may resolve under the market's oracle mode.

    Only manual resolution is implemented; automated feeds and juries reduce
    to creator authorization until their verifiers exist.
    """
    if oracle_mode not in RESOLVER_CHECKS:
        raise AuthorizationError(f"Unsupported oracle mode: {oracle_mode}", code="invalid_oracle")
    if not RESOLVER_CHECKS[oracle_mode](creator, caller):
        raise AuthorizationError("Caller may not resolve this market", code="unauthorized")


def _creator_only(creator: str, caller: str) -> bool:
    return creator == caller


# TODO: verify feed attestations and jury consensus once those oracles are wired up
RESOLVER_CHECKS = {
    OracleMode.MANUAL: _creator_only,
    OracleMode.AUTOMATED_FEED: _creator_only,
    OracleMode.JURY: _creator_only,
}


def ensure_can_claim(market_status: MarketStatus, bet_status: BetStatus, claimed: bool) -> None:
    if market_status != MarketStatus.RESOLVED:
        raise StatePreconditionError("Market is not resolved", code="market_not_resolved")
    if claimed or bet_status in (BetStatus.CLAIMED, BetStatus.REFUNDED):
        raise BetAlreadyClaimedError("Bet already claimed", code="bet_already_claimed")
    if bet_status != BetStatus.CONFIRMED:
        raise StatePreconditionError("Bet not confirmed", code="bet_not_confirmed")


def ensure_can_refund(market_status: MarketStatus, bet_status: BetStatus, claimed: bool) -> None:
    if market_status != MarketStatus.CANCELLED:
        raise StatePreconditionError("Market is not cancelled", code="market_not_cancelled")
    if claimed or bet_status in (BetStatus.CLAIMED, BetStatus.REFUNDED):
        raise BetAlreadyClaimedError("Bet already claimed", code="bet_already_claimed")
