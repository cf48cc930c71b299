"""
Market service.

Runs every settlement entry point and every computation callback against
one ledger transaction. Nothing here commits: the caller's
Ledger.transaction() commits all writes of an entry point together, or
rolls them all back when an error escapes.
"""

import logging
import time
from typing import Any, Callable
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from veil.config import settings
from veil.core import metrics
from veil.core.exceptions import (
    AggregationInFlightError,
    AuthorizationError,
    ComputationOutputError,
    InvalidInputError,
    NotFoundError,
    StatePreconditionError,
)
from veil.core.security import ClusterSigner
from veil.db.database import Ledger, after_commit
from veil.db.models import BetRecord, Computation, Market, UserStats, Vault, VaultEntry
from veil.engine.accumulator import AGGREGATE_LEN, CIPHERTEXT_LEN, KEY_LEN, Circuit, EncryptedBet
from veil.engine.payout import PayoutResult, calculate_payout
from veil.engine.state_machine import (
    BetStatus,
    MarketStatus,
    OracleMode,
    authorize_resolver,
    ensure_can_bet,
    ensure_can_cancel,
    ensure_can_claim,
    ensure_can_close,
    ensure_can_refund,
    next_bet_status,
    next_market_status,
)
from veil.engine.vault import U32_MAX, U64_MAX, U128_MAX, checked_add, ensure_u64
from veil.services.cluster import (
    AggregateOutput,
    BetCountOutput,
    ClaimVerificationOutput,
    ConfidentialNetwork,
    PayoutSplitOutput,
    SignedComputationOutput,
    TotalsOutput,
    encode_aggregate,
    encode_bet,
)
from veil.services.computation import ComputationCoordinator, callback_route
from veil.services.events import (
    AggregateInitialized,
    AggregateInitRequested,
    BetConfirmed,
    BetCountRevealed,
    BetPlaced,
    ClaimRejected,
    ClaimVerificationRequested,
    EventBus,
    MarketCancelled,
    MarketClosed,
    MarketCreated,
    MarketResolutionRequested,
    MarketResolved,
    MarketTotalsAudited,
    PayoutClaimed,
    RefundClaimed,
    event_bus,
)

logger = logging.getLogger(__name__)


class MarketService:
    """Entry points and callback mutations for confidential markets."""

    def __init__(
        self,
        session: AsyncSession,
        network: ConfidentialNetwork,
        signer: ClusterSigner | None = None,
        clock: Callable[[], int] | None = None,
        bus: EventBus | None = None,
        verify_claims: bool | None = None,
    ):
        self.session = session
        self.clock = clock or (lambda: int(time.time()))
        self.bus = bus or event_bus
        self.verify_claims = (
            settings.confidential_claim_verification if verify_claims is None else verify_claims
        )
        self.coordinator = ComputationCoordinator(
            session,
            network,
            signer or ClusterSigner.from_settings(),
            clock=self.clock,
            bus=self.bus,
        )
        self.callback_handlers = {
            callback_route(Circuit.INIT): self._on_aggregate_initialized,
            callback_route(Circuit.AGGREGATE): self._on_bet_aggregated,
            callback_route(Circuit.PAYOUT_SPLIT): self._on_payout_split,
            callback_route(Circuit.VERIFY_CLAIM): self._on_claim_verified,
            callback_route(Circuit.REVEAL_TOTALS): self._on_totals_revealed,
            callback_route(Circuit.BET_COUNT): self._on_bet_count_revealed,
        }

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_market(self, market_id: UUID) -> Market | None:
        return await self.session.get(Market, market_id)

    async def require_market(self, market_id: UUID) -> Market:
        market = await self.get_market(market_id)
        if market is None:
            raise NotFoundError(f"Market {market_id} not found", code="market_not_found")
        return market

    async def get_market_by_key(self, creator: str, market_number: int) -> Market | None:
        """Look up a market by its (creator, market number) address."""
        result = await self.session.execute(
            select(Market).where(
                Market.creator == creator,
                Market.market_number == market_number,
            )
        )
        return result.scalar_one_or_none()

    async def list_markets(
        self,
        status: MarketStatus | None = None,
        creator: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Market]:
        query = select(Market)
        if status is not None:
            query = query.where(Market.status == status)
        if creator is not None:
            query = query.where(Market.creator == creator)
        result = await self.session.execute(
            query.order_by(Market.created_at.desc()).limit(limit).offset(offset)
        )
        return list(result.scalars().all())

    async def get_bet(self, market_id: UUID, bettor: str) -> BetRecord | None:
        """Look up a bettor's record by its (market, bettor) address."""
        result = await self.session.execute(
            select(BetRecord).where(
                BetRecord.market_id == market_id,
                BetRecord.bettor == bettor,
            )
        )
        return result.scalar_one_or_none()

    async def require_bet(self, market_id: UUID, bettor: str) -> BetRecord:
        bet = await self.get_bet(market_id, bettor)
        if bet is None:
            raise NotFoundError(f"No bet by {bettor} in market {market_id}", code="bet_not_found")
        return bet

    async def list_bets(
        self,
        market_id: UUID | None = None,
        bettor: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[BetRecord]:
        query = select(BetRecord)
        if market_id is not None:
            query = query.where(BetRecord.market_id == market_id)
        if bettor is not None:
            query = query.where(BetRecord.bettor == bettor)
        result = await self.session.execute(
            query.order_by(BetRecord.placed_at, BetRecord.bet_index).limit(limit).offset(offset)
        )
        return list(result.scalars().all())

    async def get_user_stats(self, bettor: str) -> UserStats | None:
        return await self.session.get(UserStats, bettor)

    async def get_vault(self, market_id: UUID) -> Vault | None:
        return await self.session.get(Vault, market_id)

    async def require_vault(self, market_id: UUID) -> Vault:
        vault = await self.get_vault(market_id)
        if vault is None:
            raise NotFoundError(f"Vault for market {market_id} not found", code="vault_not_found")
        return vault

    async def list_vault_entries(self, market_id: UUID) -> list[VaultEntry]:
        result = await self.session.execute(
            select(VaultEntry)
            .where(VaultEntry.market_id == market_id)
            .order_by(VaultEntry.created_at)
        )
        return list(result.scalars().all())

    async def get_computation(self, computation_id: int) -> Computation | None:
        return await self.coordinator.get(computation_id)

    async def list_outstanding(self, market_id: UUID | None = None) -> list[Computation]:
        return await self.coordinator.outstanding(market_id=market_id)

    # =========================================================================
    # MARKET LIFECYCLE
    # =========================================================================

    async def create_market(
        self,
        creator: str,
        market_number: int,
        question: str,
        resolution_time: int,
        fee_bps: int,
        oracle_mode: OracleMode = OracleMode.MANUAL,
        oracle_feed: str | None = None,
    ) -> Market:
        """
        Create a market with a zeroed, uninitialized aggregate and an empty vault.

        Raises:
            InvalidInputError: question empty or too long, deadline not in
                the future, fee above the cap, market number out of range.
            StatePreconditionError: creator already used this market number.
        """
        now = self.clock()

        if not question.strip():
            raise InvalidInputError("Question must not be empty", code="invalid_input")
        if len(question.encode("utf-8")) > settings.max_question_len:
            raise InvalidInputError(
                f"Question exceeds {settings.max_question_len} bytes",
                code="invalid_input",
            )
        if resolution_time <= now:
            raise InvalidInputError("Resolution time must be in the future", code="invalid_input")
        if fee_bps < 0 or fee_bps > settings.max_fee_bps:
            raise InvalidInputError(
                f"Fee must be between 0 and {settings.max_fee_bps} bps",
                code="invalid_input",
            )
        if market_number < 0 or market_number > U64_MAX:
            raise InvalidInputError("Market number outside unsigned 64-bit range", code="invalid_input")

        if await self.get_market_by_key(creator, market_number) is not None:
            raise StatePreconditionError(
                f"Market {market_number} already exists for {creator}",
                code="market_exists",
            )

        market = Market(
            id=uuid4(),
            creator=creator,
            market_number=market_number,
            question=question,
            resolution_time=resolution_time,
            created_at=now,
            fee_bps=fee_bps,
            oracle_mode=oracle_mode,
            oracle_feed=oracle_feed,
            status=MarketStatus.OPEN,
            outcome=None,
            encrypted_aggregate=bytes(AGGREGATE_LEN),
            aggregate_nonce=0,
            aggregate_initialized=False,
            pending_aggregation_id=None,
            revealed_yes_pool=0,
            revealed_no_pool=0,
            revealed_total_pool=0,
            bet_count=0,
            total_liquidity_approx=0,
        )
        self.session.add(market)
        self.session.add(Vault(market_id=market.id, total_deposits=0, total_withdrawals=0))
        await self.session.flush()

        self._record_transition(MarketStatus.OPEN)
        self.bus.emit(
            self.session,
            MarketCreated(
                market_id=market.id,
                timestamp=now,
                creator=creator,
                market_number=market_number,
                question=question,
                resolution_time=resolution_time,
                fee_bps=fee_bps,
            ),
        )
        logger.info(f"Market created: {market.id} by {creator}, fee={fee_bps}bps")
        return market

    async def init_aggregate(
        self,
        market_id: UUID,
        caller: str,
        computation_id: int,
        nonce: int,
    ) -> Computation:
        """Queue creation of the market's zero aggregate."""
        market = await self.require_market(market_id)

        if caller != market.creator:
            raise AuthorizationError("Only the creator can initialize the aggregate", code="unauthorized")
        if market.status != MarketStatus.OPEN:
            raise StatePreconditionError("Market is not open", code="market_not_open")
        if market.aggregate_initialized:
            raise StatePreconditionError(
                "Encrypted aggregate already initialized",
                code="aggregate_already_initialized",
            )
        if nonce < 0 or nonce > U128_MAX:
            raise InvalidInputError("Nonce outside unsigned 128-bit range", code="invalid_input")

        computation = await self.coordinator.queue(
            market, Circuit.INIT, computation_id, {"nonce": nonce}
        )
        self.bus.emit(
            self.session,
            AggregateInitRequested(
                market_id=market.id,
                timestamp=self.clock(),
                computation_id=computation_id,
            ),
        )
        return computation

    async def close_market(self, market_id: UUID, caller: str) -> Market:
        market = await self.require_market(market_id)
        now = self.clock()

        ensure_can_close(market.status, caller == market.creator, now, market.resolution_time)
        self._transition(market, MarketStatus.CLOSED)

        self.bus.emit(
            self.session,
            MarketClosed(
                market_id=market.id,
                timestamp=now,
                closed_by=caller,
                bet_count=market.bet_count,
                total_liquidity=market.total_liquidity_approx,
            ),
        )
        logger.info(
            f"Market closed: {market.id}, {market.bet_count} bets, "
            f"{market.total_liquidity_approx} staked"
        )
        return market

    async def resolve_market(
        self,
        market_id: UUID,
        caller: str,
        computation_id: int,
        outcome: bool,
    ) -> Computation:
        """
        Queue the payout split for the given outcome.

        Legal from Closed, or again from Resolving once an earlier payout
        split has failed or been abandoned. Rejected while an aggregate mutation is in flight
        so every confirmed bet is counted in the revealed totals.
        """
        market = await self.require_market(market_id)

        if market.status == MarketStatus.RESOLVING:
            if await self.coordinator.outstanding(market.id, Circuit.PAYOUT_SPLIT):
                raise StatePreconditionError(
                    "Resolution already in progress",
                    code="resolution_in_progress",
                )
        elif market.status != MarketStatus.CLOSED:
            raise StatePreconditionError("Market is not closed", code="market_not_closed")

        if not market.aggregate_initialized:
            raise StatePreconditionError("Encrypted aggregate not initialized", code="aggregate_not_initialized")

        authorize_resolver(market.oracle_mode, market.creator, caller)

        if market.aggregation_in_flight:
            raise AggregationInFlightError(
                f"Computation {market.pending_aggregation_id} is still updating market {market.id}",
                code="aggregation_in_flight",
            )

        computation = await self.coordinator.queue(
            market,
            Circuit.PAYOUT_SPLIT,
            computation_id,
            {"aggregate": encode_aggregate(market.aggregate), "outcome": outcome},
        )
        if market.status == MarketStatus.CLOSED:
            self._transition(market, MarketStatus.RESOLVING)

        self.bus.emit(
            self.session,
            MarketResolutionRequested(
                market_id=market.id,
                timestamp=self.clock(),
                resolver=caller,
                outcome=outcome,
                computation_id=computation_id,
            ),
        )
        logger.info(f"Market resolution requested: {market.id}, outcome={outcome}")
        return computation

    async def cancel_market(self, market_id: UUID, caller: str) -> Market:
        market = await self.require_market(market_id)

        ensure_can_cancel(market.status, caller == market.creator)
        self._transition(market, MarketStatus.CANCELLED)

        self.bus.emit(
            self.session,
            MarketCancelled(
                market_id=market.id,
                timestamp=self.clock(),
                cancelled_by=caller,
                bet_count=market.bet_count,
                total_liquidity=market.total_liquidity_approx,
            ),
        )
        logger.info(f"Market cancelled: {market.id}, {market.bet_count} bets to refund")
        return market

    # =========================================================================
    # BETTING
    # =========================================================================

    async def place_bet(
        self,
        market_id: UUID,
        bettor: str,
        computation_id: int,
        encrypted_outcome: bytes,
        encrypted_amount: bytes,
        bettor_key: bytes,
        nonce: int,
        stake: int,
    ) -> BetRecord:
        """
        Deposit the plaintext stake and queue aggregation of the encrypted bet.

        The bet stays Pending until the aggregation callback confirms it.
        """
        market = await self.require_market(market_id)
        now = self.clock()

        ensure_can_bet(market.status, market.aggregate_initialized, now, market.resolution_time)

        if stake < settings.min_bet:
            raise InvalidInputError(f"Bet below minimum of {settings.min_bet}", code="bet_amount_too_low")
        if stake > settings.max_bet:
            raise InvalidInputError(f"Bet above maximum of {settings.max_bet}", code="bet_amount_too_high")
        if len(encrypted_outcome) != CIPHERTEXT_LEN or len(encrypted_amount) != CIPHERTEXT_LEN:
            raise InvalidInputError(f"Ciphertexts must be {CIPHERTEXT_LEN} bytes", code="invalid_input")
        if len(bettor_key) != KEY_LEN:
            raise InvalidInputError(f"Bettor key must be {KEY_LEN} bytes", code="invalid_input")
        if nonce < 0 or nonce > U128_MAX:
            raise InvalidInputError("Nonce outside unsigned 128-bit range", code="invalid_input")

        if await self.get_bet(market.id, bettor) is not None:
            raise StatePreconditionError(
                f"{bettor} already has a bet in market {market.id}",
                code="bet_exists",
            )
        if market.aggregation_in_flight:
            raise AggregationInFlightError(
                f"Computation {market.pending_aggregation_id} is still updating market {market.id}",
                code="aggregation_in_flight",
            )

        vault = await self.require_vault(market.id)
        vault.apply(vault.snapshot.deposit(stake))
        market.total_liquidity_approx = checked_add(market.total_liquidity_approx, stake)

        bet = BetRecord(
            id=uuid4(),
            market_id=market.id,
            bettor=bettor,
            bet_index=await self._next_bet_index(market.id),
            encrypted_outcome=encrypted_outcome,
            encrypted_amount=encrypted_amount,
            bettor_key=bettor_key,
            bettor_nonce=nonce,
            stake=stake,
            status=BetStatus.PENDING,
            placed_at=now,
            pending_computation_id=computation_id,
            claimed=False,
        )
        self.session.add(bet)
        self._journal(market.id, bettor, "deposit", stake, vault.balance, now)

        stats = await self._stats_for(bettor)
        stats.total_bets += 1
        stats.total_wagered = checked_add(stats.total_wagered, stake)
        stats.markets_participated += 1

        await self.session.flush()
        await self.coordinator.queue(
            market,
            Circuit.AGGREGATE,
            computation_id,
            self._aggregation_arguments(market, bet.encrypted_bet),
            bet=bet,
        )

        async def _record() -> None:
            metrics.record_deposit(stake)

        after_commit(self.session, _record)
        self.bus.emit(
            self.session,
            BetPlaced(
                market_id=market.id,
                timestamp=now,
                bettor=bettor,
                bet_index=bet.bet_index,
                stake=stake,
                computation_id=computation_id,
            ),
        )
        logger.info(f"Bet placed: market={market.id}, bettor={bettor}, amount={stake}")
        return bet

    async def retry_bet_aggregation(
        self,
        market_id: UUID,
        bettor: str,
        computation_id: int,
    ) -> Computation:
        """Re-queue aggregation for a Pending bet whose computation failed."""
        market = await self.require_market(market_id)
        bet = await self.require_bet(market_id, bettor)

        if market.status not in (MarketStatus.OPEN, MarketStatus.CLOSED):
            raise StatePreconditionError(
                f"Cannot aggregate bets in a {market.status.value} market",
                code="market_not_open",
            )
        if bet.status != BetStatus.PENDING:
            raise StatePreconditionError("Bet is not pending aggregation", code="bet_not_pending")
        if bet.pending_computation_id is not None:
            raise AggregationInFlightError(
                f"Computation {bet.pending_computation_id} for this bet is still outstanding",
                code="aggregation_in_flight",
            )

        computation = await self.coordinator.queue(
            market,
            Circuit.AGGREGATE,
            computation_id,
            self._aggregation_arguments(market, bet.encrypted_bet),
            bet=bet,
        )
        bet.pending_computation_id = computation_id
        logger.info(f"Bet aggregation re-queued: market={market.id}, bettor={bettor}")
        return computation

    # =========================================================================
    # PAYOUTS
    # =========================================================================

    async def claim_payout(
        self,
        market_id: UUID,
        bettor: str,
        claimed_outcome: bool,
        claimed_amount: int,
        computation_id: int | None = None,
    ) -> BetRecord:
        """
        Settle a bet on a resolved market.

        With claim verification enabled the claim is first checked against
        the encrypted bet and settles from the verification callback;
        otherwise it settles immediately.

        Raises:
            ClaimMismatchError: claimed_amount differs from the stake.
            BetAlreadyClaimedError: bet already claimed or refunded.
        """
        market = await self.require_market(market_id)
        bet = await self.require_bet(market_id, bettor)

        ensure_can_claim(market.status, bet.status, bet.claimed)
        if bet.pending_computation_id is not None:
            raise StatePreconditionError(
                "Claim verification already in progress",
                code="claim_verification_in_progress",
            )

        result = self._payout_for(market, bet, claimed_outcome, claimed_amount)

        if not self.verify_claims:
            await self._settle_claim(market, bet, result)
            return bet

        if computation_id is None:
            raise InvalidInputError(
                "A computation id is required to verify the claim",
                code="computation_id_required",
            )
        await self.coordinator.queue(
            market,
            Circuit.VERIFY_CLAIM,
            computation_id,
            {
                "bet": encode_bet(bet.encrypted_bet),
                "claimed_outcome": claimed_outcome,
                "claimed_amount": claimed_amount,
            },
            bet=bet,
        )
        bet.pending_computation_id = computation_id

        self.bus.emit(
            self.session,
            ClaimVerificationRequested(
                market_id=market.id,
                timestamp=self.clock(),
                bettor=bettor,
                computation_id=computation_id,
            ),
        )
        logger.info(f"Claim verification requested: market={market.id}, bettor={bettor}")
        return bet

    async def claim_refund(self, market_id: UUID, bettor: str) -> BetRecord:
        """Return the original stake of a bet in a cancelled market."""
        market = await self.require_market(market_id)
        bet = await self.require_bet(market_id, bettor)
        now = self.clock()

        ensure_can_refund(market.status, bet.status, bet.claimed)

        refund = bet.stake
        vault = await self.require_vault(market.id)
        vault.apply(vault.snapshot.withdraw(refund))
        self._journal(market.id, bettor, "refund", refund, vault.balance, now)

        bet.status = next_bet_status(bet.status, BetStatus.REFUNDED)
        bet.claimed = True
        bet.payout_amount = refund
        bet.settled_at = now

        self._record_withdrawal("refund", refund)
        self.bus.emit(
            self.session,
            RefundClaimed(market_id=market.id, timestamp=now, bettor=bettor, refund=refund),
        )
        logger.info(f"Refund claimed: bettor={bettor}, amount={refund}")
        return bet

    # =========================================================================
    # AUDIT
    # =========================================================================

    async def reveal_totals(self, market_id: UUID, computation_id: int) -> Computation:
        """Queue an independent declassification of the pools of a resolved market."""
        market = await self.require_market(market_id)
        if market.status != MarketStatus.RESOLVED:
            raise StatePreconditionError("Market is not resolved", code="market_not_resolved")

        return await self.coordinator.queue(
            market,
            Circuit.REVEAL_TOTALS,
            computation_id,
            {"aggregate": encode_aggregate(market.aggregate)},
        )

    async def reveal_bet_count(self, market_id: UUID, computation_id: int) -> Computation:
        market = await self.require_market(market_id)
        if not market.aggregate_initialized:
            raise StatePreconditionError("Encrypted aggregate not initialized", code="aggregate_not_initialized")

        return await self.coordinator.queue(
            market,
            Circuit.BET_COUNT,
            computation_id,
            {"aggregate": encode_aggregate(market.aggregate)},
        )

    # =========================================================================
    # COMPUTATIONS
    # =========================================================================

    async def fail_computation(
        self,
        computation_id: int,
        caller: str,
        reason: str = "abandoned by caller",
    ) -> Computation:
        """
        Abandon an outstanding computation so the action can be resubmitted.

        For when no acceptable output will arrive, e.g. after the network's
        response failed verification. The market creator may abandon any of
        the market's computations; a bettor only those for their own bet.
        Outputs arriving later for the computation are rejected as replays.

        Raises:
            NotFoundError: unknown computation id.
            StatePreconditionError: computation already completed or failed.
            AuthorizationError: caller is neither the creator nor the bettor.
        """
        computation = await self.coordinator.get(computation_id)
        if computation is None:
            raise NotFoundError(f"Computation {computation_id} not found", code="computation_not_found")
        if not computation.is_outstanding:
            raise StatePreconditionError(
                f"Computation {computation_id} already {computation.status.value}",
                code="computation_not_outstanding",
            )

        market = await self.require_market(computation.market_id)
        bet = None
        if computation.bet_id is not None:
            bet = await self.session.get(BetRecord, computation.bet_id)

        if caller != market.creator and (bet is None or caller != bet.bettor):
            raise AuthorizationError(
                "Only the market creator or the bettor can abandon this computation",
                code="unauthorized",
            )

        self.coordinator.fail(computation, market, bet, reason, result="abandoned")
        logger.info(f"Computation {computation_id} abandoned by {caller}: {reason}")
        return computation

    # =========================================================================
    # CALLBACKS
    # =========================================================================

    async def handle_callback(self, output: SignedComputationOutput) -> Computation:
        return await self.coordinator.handle_callback(output, self.callback_handlers)

    async def _on_aggregate_initialized(
        self,
        computation: Computation,
        market: Market,
        bet: BetRecord | None,
        output: AggregateOutput,
    ) -> None:
        market.store_aggregate(output.to_aggregate())
        market.aggregate_initialized = True

        self.bus.emit(
            self.session,
            AggregateInitialized(market_id=market.id, timestamp=self.clock(), nonce=output.nonce),
        )
        logger.info(f"Encrypted aggregate initialized for market: {market.id}")

    async def _on_bet_aggregated(
        self,
        computation: Computation,
        market: Market,
        bet: BetRecord | None,
        output: AggregateOutput,
    ) -> None:
        if bet is None:
            raise ComputationOutputError(
                f"Aggregation {computation.id} has no bet record",
                code="invalid_output",
            )

        market.store_aggregate(output.to_aggregate())
        market.bet_count = checked_add(market.bet_count, 1, U32_MAX)

        # A bet refunded from a cancelled market stays refunded
        if bet.status != BetStatus.PENDING:
            logger.info(f"Aggregated {bet.status.value} bet: market={market.id}, bet_index={bet.bet_index}")
            return

        bet.status = next_bet_status(bet.status, BetStatus.CONFIRMED)
        bet.confirmed_at = self.clock()

        self.bus.emit(
            self.session,
            BetConfirmed(
                market_id=market.id,
                timestamp=self.clock(),
                bettor=bet.bettor,
                bet_index=bet.bet_index,
            ),
        )
        logger.info(f"Bet confirmed: market={market.id}, bet_index={bet.bet_index}")

    async def _on_payout_split(
        self,
        computation: Computation,
        market: Market,
        bet: BetRecord | None,
        output: PayoutSplitOutput,
    ) -> None:
        requested = bool(computation.arguments.get("outcome"))
        if output.outcome != requested:
            raise ComputationOutputError(
                f"Payout split computed for outcome {output.outcome}, requested {requested}",
                code="invalid_output",
            )
        if output.winning_pool + output.losing_pool != output.total_pool:
            raise ComputationOutputError("Payout split pools do not sum to the total", code="invalid_output")
        ensure_u64(output.total_pool, "total_pool")

        self._transition(market, MarketStatus.RESOLVED)
        market.outcome = output.outcome
        market.resolved_at = self.clock()
        if output.outcome:
            market.revealed_yes_pool = output.winning_pool
            market.revealed_no_pool = output.losing_pool
        else:
            market.revealed_yes_pool = output.losing_pool
            market.revealed_no_pool = output.winning_pool
        market.revealed_total_pool = output.total_pool

        self.bus.emit(
            self.session,
            MarketResolved(
                market_id=market.id,
                timestamp=market.resolved_at,
                outcome=output.outcome,
                yes_pool=market.revealed_yes_pool,
                no_pool=market.revealed_no_pool,
                total_pool=market.revealed_total_pool,
            ),
        )
        logger.info(
            f"Market resolved: {market.id}, outcome={output.outcome}, "
            f"YES={market.revealed_yes_pool}, NO={market.revealed_no_pool}, "
            f"total={market.revealed_total_pool}"
        )

    async def _on_claim_verified(
        self,
        computation: Computation,
        market: Market,
        bet: BetRecord | None,
        output: ClaimVerificationOutput,
    ) -> None:
        if bet is None:
            raise ComputationOutputError(
                f"Claim verification {computation.id} has no bet record",
                code="invalid_output",
            )

        if not output.verified:
            self.bus.emit(
                self.session,
                ClaimRejected(
                    market_id=market.id,
                    timestamp=self.clock(),
                    bettor=bet.bettor,
                    computation_id=computation.id,
                ),
            )
            logger.warning(f"Claim rejected by verification: market={market.id}, bettor={bet.bettor}")
            return

        ensure_can_claim(market.status, bet.status, bet.claimed)
        result = self._payout_for(
            market,
            bet,
            bool(computation.arguments["claimed_outcome"]),
            int(computation.arguments["claimed_amount"]),
        )
        await self._settle_claim(market, bet, result)

    async def _on_totals_revealed(
        self,
        computation: Computation,
        market: Market,
        bet: BetRecord | None,
        output: TotalsOutput,
    ) -> None:
        consistent = (
            output.yes_pool == market.revealed_yes_pool
            and output.no_pool == market.revealed_no_pool
            and output.total_pool == market.revealed_total_pool
        )
        if consistent:
            logger.info(f"Market totals audited: {market.id}, consistent")
        else:
            logger.error(
                f"Market totals mismatch: {market.id}, revealed "
                f"YES={output.yes_pool} NO={output.no_pool} total={output.total_pool}, stored "
                f"YES={market.revealed_yes_pool} NO={market.revealed_no_pool} "
                f"total={market.revealed_total_pool}"
            )

        self.bus.emit(
            self.session,
            MarketTotalsAudited(
                market_id=market.id,
                timestamp=self.clock(),
                consistent=consistent,
                yes_pool=output.yes_pool,
                no_pool=output.no_pool,
                total_pool=output.total_pool,
            ),
        )

    async def _on_bet_count_revealed(
        self,
        computation: Computation,
        market: Market,
        bet: BetRecord | None,
        output: BetCountOutput,
    ) -> None:
        if output.bet_count != market.bet_count:
            logger.warning(
                f"Encrypted bet count {output.bet_count} differs from "
                f"confirmed count {market.bet_count} for market {market.id}"
            )
        self.bus.emit(
            self.session,
            BetCountRevealed(market_id=market.id, timestamp=self.clock(), bet_count=output.bet_count),
        )

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _transition(self, market: Market, target: MarketStatus) -> None:
        market.status = next_market_status(market.status, target)
        self._record_transition(target)

    def _record_transition(self, status: MarketStatus) -> None:
        async def _record() -> None:
            metrics.record_market_transition(status.value)

        after_commit(self.session, _record)

    def _record_withdrawal(self, kind: str, amount: int) -> None:
        async def _record() -> None:
            metrics.record_withdrawal(kind, amount)

        after_commit(self.session, _record)

    def _journal(
        self,
        market_id: UUID,
        bettor: str,
        entry_type: str,
        amount: int,
        balance_after: int,
        now: int,
    ) -> None:
        self.session.add(
            VaultEntry(
                id=uuid4(),
                market_id=market_id,
                bettor=bettor,
                type=entry_type,
                amount=amount,
                balance_after=balance_after,
                created_at=now,
            )
        )

    async def _stats_for(self, bettor: str) -> UserStats:
        stats = await self.get_user_stats(bettor)
        if stats is None:
            stats = UserStats(
                bettor=bettor,
                total_bets=0,
                total_wagered=0,
                total_won=0,
                total_lost=0,
                markets_participated=0,
                correct_predictions=0,
            )
            self.session.add(stats)
        return stats

    async def _next_bet_index(self, market_id: UUID) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(BetRecord).where(BetRecord.market_id == market_id)
        )
        return int(result.scalar_one())

    @staticmethod
    def _aggregation_arguments(market: Market, bet: EncryptedBet) -> dict[str, Any]:
        return {"bet": encode_bet(bet), "aggregate": encode_aggregate(market.aggregate)}

    @staticmethod
    def _payout_for(
        market: Market,
        bet: BetRecord,
        claimed_outcome: bool,
        claimed_amount: int,
    ) -> PayoutResult:
        if market.outcome is None:
            raise StatePreconditionError("Market outcome not revealed", code="market_not_resolved")
        return calculate_payout(
            claimed_outcome=claimed_outcome,
            claimed_amount=claimed_amount,
            recorded_stake=bet.stake,
            winning_outcome=market.outcome,
            revealed_yes=market.revealed_yes_pool,
            revealed_no=market.revealed_no_pool,
            revealed_total=market.revealed_total_pool,
            fee_bps=market.fee_bps,
        )

    async def _settle_claim(self, market: Market, bet: BetRecord, result: PayoutResult) -> None:
        """Pay out from the vault and mark the bet claimed, atomically."""
        now = self.clock()
        vault = await self.require_vault(market.id)

        if result.payout > 0:
            vault.apply(vault.snapshot.withdraw(result.payout))
            self._journal(market.id, bet.bettor, "payout", result.payout, vault.balance, now)
            self._record_withdrawal("payout", result.payout)

        bet.status = next_bet_status(bet.status, BetStatus.CLAIMED)
        bet.claimed = True
        bet.payout_amount = result.payout
        bet.settled_at = now

        stats = await self._stats_for(bet.bettor)
        if result.won:
            stats.correct_predictions += 1
            stats.total_won = checked_add(stats.total_won, result.payout)
        else:
            stats.total_lost = checked_add(stats.total_lost, bet.stake)

        self.bus.emit(
            self.session,
            PayoutClaimed(
                market_id=market.id,
                timestamp=now,
                bettor=bet.bettor,
                stake=bet.stake,
                payout=result.payout,
                won=result.won,
            ),
        )
        logger.info(
            f"Payout claimed: bettor={bet.bettor}, bet={bet.stake}, "
            f"payout={result.payout}, won={result.won}"
        )


class CallbackDispatcher:
    """
    Applies each signed output in its own ledger transaction.

    Used as the delivery sink of an in-process cluster, and by anything else
    that receives callbacks outside an HTTP request.
    """

    def __init__(
        self,
        ledger: Ledger,
        network: ConfidentialNetwork | None = None,
        signer: ClusterSigner | None = None,
        clock: Callable[[], int] | None = None,
        bus: EventBus | None = None,
        verify_claims: bool | None = None,
    ):
        self.ledger = ledger
        self.network = network
        self.signer = signer
        self.clock = clock
        self.bus = bus
        self.verify_claims = verify_claims

    async def __call__(self, output: SignedComputationOutput) -> Computation:
        if self.network is None:
            raise RuntimeError("CallbackDispatcher has no network bound")
        async with self.ledger.transaction() as session:
            service = MarketService(
                session,
                self.network,
                signer=self.signer,
                clock=self.clock,
                bus=self.bus,
                verify_claims=self.verify_claims,
            )
            return await service.handle_callback(output)
