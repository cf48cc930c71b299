"""
Computation lifecycle coordinator.

Bridges entry points that need confidential computation to the network and
applies each signed result exactly once. A market carries at most one
outstanding aggregate-mutating computation; its aggregate only changes from
the callback of that computation, and only while the aggregate nonce still
matches the one the computation was issued against.
"""

import logging
import time
from typing import Any, Awaitable, Callable, Mapping

from pydantic import BaseModel, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from veil.core import metrics
from veil.core.exceptions import (
    AggregationInFlightError,
    ComputationOutputError,
    ComputationReplayError,
    InvalidInputError,
    NotFoundError,
    StaleAggregateError,
    VeilError,
)
from veil.core.security import ClusterSigner
from veil.db.database import Ledger, after_commit, ledger_of
from veil.db.models import BetRecord, Computation, ComputationStatus, Market
from veil.engine.accumulator import Circuit
from veil.engine.vault import U64_MAX
from veil.services.cluster import (
    OUTPUT_MODELS,
    STATUS_ABORTED,
    STATUS_COMPLETED,
    ComputationRequest,
    ConfidentialNetwork,
    SignedComputationOutput,
)
from veil.services.events import ComputationFailed, EventBus, event_bus

logger = logging.getLogger(__name__)

CallbackHandler = Callable[[Computation, Market, BetRecord | None, Any], Awaitable[None]]


def callback_route(circuit: Circuit) -> str:
    return f"{circuit.value}_callback"


class ComputationCoordinator:
    """Queues computations and applies their signed outputs."""

    def __init__(
        self,
        session: AsyncSession,
        network: ConfidentialNetwork,
        signer: ClusterSigner,
        clock: Callable[[], int] | None = None,
        bus: EventBus | None = None,
    ):
        self.session = session
        self.network = network
        self.signer = signer
        self.clock = clock or (lambda: int(time.time()))
        self.bus = bus or event_bus

    async def get(self, computation_id: int) -> Computation | None:
        return await self.session.get(Computation, computation_id)

    async def outstanding(
        self,
        market_id: Any | None = None,
        circuit: Circuit | None = None,
    ) -> list[Computation]:
        """Computations queued and not yet called back."""
        query = select(Computation).where(Computation.status == ComputationStatus.QUEUED)
        if market_id is not None:
            query = query.where(Computation.market_id == market_id)
        if circuit is not None:
            query = query.where(Computation.circuit == circuit)
        result = await self.session.execute(query.order_by(Computation.queued_at))
        return list(result.scalars().all())

    async def queue(
        self,
        market: Market,
        circuit: Circuit,
        computation_id: int,
        arguments: dict[str, Any],
        bet: BetRecord | None = None,
    ) -> Computation:
        """
        Record a computation and submit it once the transaction commits.

        Raises:
            InvalidInputError: computation id out of range or already used.
            AggregationInFlightError: an aggregate-mutating computation is
                already outstanding for the market.
        """
        if computation_id < 0 or computation_id > U64_MAX:
            raise InvalidInputError(
                f"Computation id {computation_id} outside unsigned 64-bit range",
                code="invalid_computation_id",
            )
        if await self.get(computation_id) is not None:
            raise InvalidInputError(
                f"Computation id {computation_id} already used",
                code="duplicate_computation_id",
            )

        if circuit.mutates_aggregate:
            if market.aggregation_in_flight:
                raise AggregationInFlightError(
                    f"Computation {market.pending_aggregation_id} is still updating market {market.id}",
                    code="aggregation_in_flight",
                )
            market.pending_aggregation_id = computation_id

        computation = Computation(
            id=computation_id,
            circuit=circuit,
            market_id=market.id,
            bet_id=bet.id if bet is not None else None,
            callback_route=callback_route(circuit),
            status=ComputationStatus.QUEUED,
            mutates_aggregate=circuit.mutates_aggregate,
            aggregate_nonce=market.aggregate_nonce,
            arguments=arguments,
            queued_at=self.clock(),
        )
        self.session.add(computation)
        await self.session.flush()

        request = ComputationRequest(
            circuit=circuit,
            computation_id=computation_id,
            arguments=arguments,
            callback_route=computation.callback_route,
        )

        ledger = ledger_of(self.session)

        async def _submit() -> None:
            metrics.record_computation_queued(circuit.value)
            try:
                await self.network.submit(request)
            except Exception as e:
                logger.exception(f"Submission of computation {computation_id} ({circuit.value}) failed")
                if ledger is None:
                    raise
                await self._release_unsubmitted(ledger, computation_id, f"submission failed: {e}")

        after_commit(self.session, _submit)

        logger.info(f"Queued computation {computation_id} ({circuit.value}) for market {market.id}")
        return computation

    async def handle_callback(
        self,
        output: SignedComputationOutput,
        handlers: Mapping[str, CallbackHandler],
    ) -> Computation:
        """
        Verify and apply one signed output.

        An aborted computation is recorded as FAILED and releases its guards;
        every other rejection raises and leaves the computation QUEUED.

        Raises:
            NotFoundError: unknown computation id.
            ComputationReplayError: computation already completed or failed.
            ComputationVerificationError: signature does not verify.
            ComputationOutputError: output does not decode for the circuit.
            StaleAggregateError: aggregate changed since queue time.
        """
        computation = await self.get(output.computation_id)
        if computation is None:
            raise NotFoundError(f"Computation {output.computation_id} not found", code="computation_not_found")

        circuit = computation.circuit.value
        try:
            return await self._apply(computation, output, handlers)
        except VeilError as e:
            metrics.record_computation_callback(circuit, "rejected")
            logger.warning(f"Rejected output for computation {computation.id} ({circuit}): {e.message}")
            raise

    async def _apply(
        self,
        computation: Computation,
        output: SignedComputationOutput,
        handlers: Mapping[str, CallbackHandler],
    ) -> Computation:
        if not computation.is_outstanding:
            raise ComputationReplayError(
                f"Computation {computation.id} already {computation.status.value}",
                code="computation_replay",
            )

        claims = self.signer.verify(output.signature, computation.id)

        if claims.get("circuit") != computation.circuit.value:
            raise ComputationOutputError(
                f"Output is for circuit {claims.get('circuit')}, expected {computation.circuit.value}",
                code="circuit_mismatch",
            )

        market = await self.session.get(Market, computation.market_id)
        if market is None:
            raise NotFoundError(f"Market {computation.market_id} not found", code="market_not_found")
        bet = None
        if computation.bet_id is not None:
            bet = await self.session.get(BetRecord, computation.bet_id)

        status = claims.get("status")
        if status == STATUS_ABORTED:
            self.fail(computation, market, bet, str(claims.get("reason") or "aborted"))
            return computation

        if status != STATUS_COMPLETED:
            raise ComputationOutputError(f"Unknown computation status: {status}", code="invalid_output")

        parsed = self._decode(computation.circuit, claims.get("output"))

        if computation.mutates_aggregate and market.aggregate_nonce != computation.aggregate_nonce:
            raise StaleAggregateError(
                f"Aggregate of market {market.id} changed since computation {computation.id} was queued",
                code="stale_aggregate",
            )

        handler = handlers.get(computation.callback_route)
        if handler is None:
            raise ComputationOutputError(
                f"No handler for callback route {computation.callback_route}",
                code="unknown_callback_route",
            )

        await handler(computation, market, bet, parsed)

        self._finish(computation, market, bet, ComputationStatus.COMPLETED, result=claims.get("output"))
        self._record_after_commit(computation.circuit.value, "applied")
        logger.info(f"Applied computation {computation.id} ({computation.circuit.value}) to market {market.id}")
        return computation

    def fail(
        self,
        computation: Computation,
        market: Market,
        bet: BetRecord | None,
        reason: str,
        result: str = "aborted",
    ) -> None:
        """Record computation as FAILED and release the guards it holds."""
        self._finish(computation, market, bet, ComputationStatus.FAILED, error=reason)
        self.bus.emit(
            self.session,
            ComputationFailed(
                market_id=market.id,
                timestamp=self.clock(),
                computation_id=computation.id,
                circuit=computation.circuit.value,
                reason=reason,
            ),
        )
        self._record_after_commit(computation.circuit.value, result)
        logger.warning(f"Computation {computation.id} ({computation.circuit.value}) failed: {reason}")

    async def _release_unsubmitted(self, ledger: Ledger, computation_id: int, reason: str) -> None:
        """Fail a computation the network never accepted, in a transaction of its own."""
        async with ledger.transaction() as session:
            coordinator = ComputationCoordinator(
                session, self.network, self.signer, clock=self.clock, bus=self.bus
            )
            computation = await coordinator.get(computation_id)
            if computation is None or not computation.is_outstanding:
                return
            market = await session.get(Market, computation.market_id)
            bet = None
            if computation.bet_id is not None:
                bet = await session.get(BetRecord, computation.bet_id)
            coordinator.fail(computation, market, bet, reason, result="unsubmitted")

    @staticmethod
    def _decode(circuit: Circuit, payload: Any) -> BaseModel:
        model = OUTPUT_MODELS[circuit]
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            raise ComputationOutputError(
                f"Output does not decode for circuit {circuit.value}",
                code="invalid_output",
            ) from e

    def _finish(
        self,
        computation: Computation,
        market: Market,
        bet: BetRecord | None,
        status: ComputationStatus,
        result: dict | None = None,
        error: str | None = None,
    ) -> None:
        computation.status = status
        computation.result = result
        computation.error = error
        computation.completed_at = self.clock()

        if market.pending_aggregation_id == computation.id:
            market.pending_aggregation_id = None
        if bet is not None and bet.pending_computation_id == computation.id:
            bet.pending_computation_id = None

    def _record_after_commit(self, circuit: str, result: str) -> None:
        async def _record() -> None:
            metrics.record_computation_callback(circuit, result)

        after_commit(self.session, _record)
