"""
Confidential computation network boundary.

Requests name a circuit, carry a caller-chosen computation id, a JSON
argument payload (plaintext scalars and hex ciphertexts) and the callback
route to invoke. Responses are signed by the computing cluster; the signed
claims carry the typed output for the circuit or an abort notice.

HttpComputationNetwork forwards requests to a remote network. The
LocalComputationCluster runs circuits in-process with a PoolAccumulator and
signs its outputs the same way, for development and tests.
"""

import logging
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Protocol

import httpx
from pydantic import BaseModel, Field

from veil.config import settings
from veil.core.security import ClusterSigner
from veil.engine.accumulator import (
    AccumulatorOverflowError,
    Circuit,
    EncryptedAggregate,
    EncryptedBet,
    PoolAccumulator,
    ReferenceAccumulator,
)

logger = logging.getLogger(__name__)

STATUS_COMPLETED = "completed"
STATUS_ABORTED = "aborted"


class ComputationRequest(BaseModel):
    """A computation submitted to the confidential network."""

    circuit: Circuit
    computation_id: int = Field(..., ge=0)
    arguments: dict[str, Any] = Field(default_factory=dict)
    callback_route: str


class SignedComputationOutput(BaseModel):
    """A cluster's signed response for one computation."""

    computation_id: int = Field(..., ge=0)
    signature: str


# Typed outputs per circuit

class AggregateOutput(BaseModel):
    ciphertexts: str
    nonce: int = Field(..., ge=0)

    def to_aggregate(self) -> EncryptedAggregate:
        return EncryptedAggregate.from_bytes(bytes.fromhex(self.ciphertexts), self.nonce)


class TotalsOutput(BaseModel):
    yes_pool: int = Field(..., ge=0)
    no_pool: int = Field(..., ge=0)
    total_pool: int = Field(..., ge=0)


class PayoutSplitOutput(BaseModel):
    winning_pool: int = Field(..., ge=0)
    losing_pool: int = Field(..., ge=0)
    total_pool: int = Field(..., ge=0)
    outcome: bool


class ClaimVerificationOutput(BaseModel):
    verified: bool


class BetCountOutput(BaseModel):
    bet_count: int = Field(..., ge=0)


OUTPUT_MODELS: dict[Circuit, type[BaseModel]] = {
    Circuit.INIT: AggregateOutput,
    Circuit.AGGREGATE: AggregateOutput,
    Circuit.REVEAL_TOTALS: TotalsOutput,
    Circuit.PAYOUT_SPLIT: PayoutSplitOutput,
    Circuit.VERIFY_CLAIM: ClaimVerificationOutput,
    Circuit.BET_COUNT: BetCountOutput,
}


# Argument payload encoding

def encode_aggregate(aggregate: EncryptedAggregate) -> dict[str, Any]:
    return {"ciphertexts": aggregate.to_bytes().hex(), "nonce": aggregate.nonce}


def decode_aggregate(data: dict[str, Any]) -> EncryptedAggregate:
    return EncryptedAggregate.from_bytes(bytes.fromhex(data["ciphertexts"]), int(data["nonce"]))


def encode_bet(bet: EncryptedBet) -> dict[str, Any]:
    return {
        "outcome": bet.outcome.hex(),
        "amount": bet.amount.hex(),
        "bettor_key": bet.bettor_key.hex(),
        "nonce": bet.nonce,
    }


def decode_bet(data: dict[str, Any]) -> EncryptedBet:
    return EncryptedBet(
        outcome=bytes.fromhex(data["outcome"]),
        amount=bytes.fromhex(data["amount"]),
        bettor_key=bytes.fromhex(data["bettor_key"]),
        nonce=int(data["nonce"]),
    )


class ConfidentialNetwork(Protocol):
    """Accepts computation requests; results arrive later as signed callbacks."""

    async def submit(self, request: ComputationRequest) -> None: ...


CallbackSink = Callable[[SignedComputationOutput], Awaitable[Any]]


class HttpComputationNetwork:
    """Submits computations to a remote confidential network over HTTP."""

    def __init__(self, base_url: str, timeout: float = 10.0):
        self._client = httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def submit(self, request: ComputationRequest) -> None:
        response = await self._client.post(
            "/computations",
            json=request.model_dump(mode="json"),
        )
        response.raise_for_status()
        logger.info(f"Submitted computation {request.computation_id} ({request.circuit.value})")


class LocalComputationCluster:
    """
    In-process confidential network.

    Submitted requests wait until process() or process_pending() executes
    them, so tests control exactly when each callback lands. With
    auto_process set, every submission is executed and delivered at once.
    """

    def __init__(
        self,
        signer: ClusterSigner,
        accumulator: PoolAccumulator,
        deliver: CallbackSink | None = None,
        auto_process: bool = False,
    ):
        self.signer = signer
        self.accumulator = accumulator
        self.deliver = deliver
        self.auto_process = auto_process
        self._queue: OrderedDict[int, ComputationRequest] = OrderedDict()
        self._aborts: dict[int, str] = {}

    @classmethod
    def from_settings(
        cls,
        deliver: CallbackSink | None = None,
        auto_process: bool = False,
    ) -> "LocalComputationCluster":
        return cls(
            signer=ClusterSigner.from_settings(),
            accumulator=ReferenceAccumulator(settings.mxe_key.encode()),
            deliver=deliver,
            auto_process=auto_process,
        )

    @property
    def pending(self) -> list[int]:
        return list(self._queue)

    async def submit(self, request: ComputationRequest) -> None:
        if request.computation_id in self._queue:
            raise ValueError(f"Computation {request.computation_id} already queued")
        self._queue[request.computation_id] = request
        if self.auto_process:
            await self.process(request.computation_id)

    def abort(self, computation_id: int, reason: str = "aborted by cluster") -> None:
        """Make the next execution of computation_id report an abort."""
        self._aborts[computation_id] = reason

    def execute(self, request: ComputationRequest) -> SignedComputationOutput:
        """Run the request's circuit and sign the result."""
        reason = self._aborts.pop(request.computation_id, None)
        body: dict[str, Any]
        if reason is None:
            try:
                body = {
                    "circuit": request.circuit.value,
                    "status": STATUS_COMPLETED,
                    "output": self._run_circuit(request.circuit, request.arguments),
                }
            except (AccumulatorOverflowError, KeyError, ValueError) as e:
                reason = f"{type(e).__name__}: {e}"

        if reason is not None:
            logger.warning(f"Computation {request.computation_id} aborted: {reason}")
            body = {
                "circuit": request.circuit.value,
                "status": STATUS_ABORTED,
                "reason": reason,
            }

        return SignedComputationOutput(
            computation_id=request.computation_id,
            signature=self.signer.sign(request.computation_id, body),
        )

    async def process(self, computation_id: int) -> SignedComputationOutput:
        request = self._queue.pop(computation_id)
        output = self.execute(request)
        if self.deliver is not None:
            await self.deliver(output)
        return output

    async def process_pending(self) -> list[SignedComputationOutput]:
        return [await self.process(computation_id) for computation_id in self.pending]

    def _run_circuit(self, circuit: Circuit, args: dict[str, Any]) -> dict[str, Any]:
        acc = self.accumulator

        if circuit == Circuit.INIT:
            return encode_aggregate(acc.init(int(args["nonce"])))

        if circuit == Circuit.AGGREGATE:
            updated = acc.aggregate(decode_bet(args["bet"]), decode_aggregate(args["aggregate"]))
            return encode_aggregate(updated)

        if circuit == Circuit.REVEAL_TOTALS:
            return acc.reveal_totals(decode_aggregate(args["aggregate"])).to_dict()

        if circuit == Circuit.PAYOUT_SPLIT:
            split = acc.compute_payout_split(decode_aggregate(args["aggregate"]), bool(args["outcome"]))
            return split.to_dict()

        if circuit == Circuit.VERIFY_CLAIM:
            verified = acc.verify_claim(
                decode_bet(args["bet"]),
                bool(args["claimed_outcome"]),
                int(args["claimed_amount"]),
            )
            return {"verified": verified}

        if circuit == Circuit.BET_COUNT:
            return {"bet_count": acc.reveal_bet_count(decode_aggregate(args["aggregate"]))}

        raise ValueError(f"Unknown circuit: {circuit}")
