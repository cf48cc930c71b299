"""Callback handling: authenticity, exactly-once application and in-flight guards."""

import pytest

from veil.core.exceptions import (
    AggregationInFlightError,
    AuthorizationError,
    ClaimMismatchError,
    ComputationOutputError,
    ComputationReplayError,
    ComputationVerificationError,
    InvalidInputError,
    NotFoundError,
    StaleAggregateError,
    StatePreconditionError,
)
from veil.core.security import ClusterSigner
from veil.db.database import after_commit
from veil.db.models import ComputationStatus
from veil.engine.state_machine import BetStatus, MarketStatus
from veil.services.cluster import STATUS_COMPLETED, SignedComputationOutput

CLUSTER_ID = "test-cluster"
CLUSTER_KEY = "test-cluster-signing-key"


async def computation(harness, computation_id):
    async with harness.service() as svc:
        return await svc.get_computation(computation_id)


async def market_and_bet(harness, market_id, bettor):
    async with harness.service() as svc:
        return await svc.require_market(market_id), await svc.get_bet(market_id, bettor)


def forge(signer, computation_id, circuit, output):
    body = {"circuit": circuit, "status": STATUS_COMPLETED, "output": output}
    return SignedComputationOutput(
        computation_id=computation_id,
        signature=signer.sign(computation_id, body),
    )


class TestReplay:
    @pytest.mark.asyncio
    async def test_output_applies_once(self, harness):
        market_id = await harness.open_market()
        computation_id = await harness.place(market_id, "bob", True, 2_000_000, process=False)
        output = await harness.cluster.process(computation_id)

        with pytest.raises(ComputationReplayError):
            await harness.dispatcher(output)

        market, bet = await market_and_bet(harness, market_id, "bob")
        assert market.bet_count == 1
        assert bet.status == BetStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_unknown_computation(self, harness, signer):
        await harness.open_market()
        with pytest.raises(NotFoundError):
            await harness.dispatcher(forge(signer, 999, "place_bet", {}))


class TestAuthenticity:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "impostor",
        [
            ClusterSigner(CLUSTER_ID, "not-the-cluster-key"),
            ClusterSigner("other-cluster", CLUSTER_KEY),
        ],
    )
    async def test_untrusted_output_leaves_computation_queued(self, harness, impostor):
        market_id = await harness.open_market()
        computation_id = await harness.place(market_id, "bob", True, 2_000_000, process=False)

        forged = forge(impostor, computation_id, "place_bet", {"ciphertexts": "00" * 96, "nonce": 8})

        with pytest.raises(ComputationVerificationError):
            await harness.dispatcher(forged)

        queued = await computation(harness, computation_id)
        market, bet = await market_and_bet(harness, market_id, "bob")
        assert queued.status == ComputationStatus.QUEUED
        assert market.bet_count == 0
        assert market.pending_aggregation_id == computation_id
        assert bet.status == BetStatus.PENDING

        # The genuine output still lands afterwards
        await harness.cluster.process(computation_id)
        market, bet = await market_and_bet(harness, market_id, "bob")
        assert bet.status == BetStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_circuit_mismatch_rejected(self, harness, signer):
        market_id = await harness.open_market()
        computation_id = await harness.place(market_id, "bob", True, 2_000_000, process=False)

        with pytest.raises(ComputationOutputError):
            await harness.dispatcher(forge(signer, computation_id, "get_bet_count", {"bet_count": 5}))

        queued = await computation(harness, computation_id)
        assert queued.status == ComputationStatus.QUEUED

    @pytest.mark.asyncio
    async def test_undecodable_output_rejected(self, harness, signer):
        market_id = await harness.open_market()
        computation_id = await harness.place(market_id, "bob", True, 2_000_000, process=False)

        with pytest.raises(ComputationOutputError):
            await harness.dispatcher(forge(signer, computation_id, "place_bet", {"nonce": 1}))

        market, _ = await market_and_bet(harness, market_id, "bob")
        assert market.aggregate_nonce == 7


class TestInFlightGuard:
    @pytest.mark.asyncio
    async def test_second_bet_waits_for_first(self, harness):
        market_id = await harness.open_market()
        first = await harness.place(market_id, "bob", True, 2_000_000, process=False)

        with pytest.raises(AggregationInFlightError):
            await harness.place(market_id, "carol", False, 1_000_000)

        async with harness.service() as svc:
            vault = await svc.require_vault(market_id)
            assert await svc.get_bet(market_id, "carol") is None
        assert vault.total_deposits == 2_000_000

        await harness.cluster.process(first)
        await harness.place(market_id, "carol", False, 1_000_000)

        market, _ = await market_and_bet(harness, market_id, "carol")
        assert market.bet_count == 2

    @pytest.mark.asyncio
    async def test_init_while_in_flight(self, harness):
        market_id = await harness.create_market()
        async with harness.service() as svc:
            await svc.init_aggregate(market_id, "alice", harness.next_id(), nonce=1)

        with pytest.raises(AggregationInFlightError):
            async with harness.service() as svc:
                await svc.init_aggregate(market_id, "alice", harness.next_id(), nonce=2)

    @pytest.mark.asyncio
    async def test_resolve_waits_for_aggregation(self, harness):
        market_id = await harness.open_market()
        pending = await harness.place(market_id, "bob", True, 2_000_000, process=False)
        await harness.close(market_id)

        with pytest.raises(AggregationInFlightError):
            await harness.resolve(market_id, True)

        market, _ = await market_and_bet(harness, market_id, "bob")
        assert market.status == MarketStatus.CLOSED

        await harness.cluster.process(pending)
        await harness.resolve(market_id, True)

        market, _ = await market_and_bet(harness, market_id, "bob")
        assert market.status == MarketStatus.RESOLVED
        assert market.revealed_yes_pool == 2_000_000

    @pytest.mark.asyncio
    async def test_stale_aggregate_rejected(self, harness):
        market_id = await harness.open_market()
        computation_id = await harness.place(market_id, "bob", True, 2_000_000, process=False)

        async with harness.service() as svc:
            market = await svc.require_market(market_id)
            market.aggregate_nonce = 99

        with pytest.raises(StaleAggregateError):
            await harness.cluster.process(computation_id)

        queued = await computation(harness, computation_id)
        assert queued.status == ComputationStatus.QUEUED

    @pytest.mark.asyncio
    async def test_duplicate_computation_id(self, harness):
        market_id = await harness.open_market()
        with pytest.raises(InvalidInputError):
            async with harness.service() as svc:
                await svc.reveal_bet_count(market_id, computation_id=1)


class TestAbort:
    @pytest.mark.asyncio
    async def test_aborted_bet_can_be_retried(self, harness, events):
        market_id = await harness.open_market()
        computation_id = await harness.place(market_id, "bob", True, 2_000_000, process=False)
        harness.cluster.abort(computation_id, "cluster unavailable")
        await harness.cluster.process(computation_id)

        failed = await computation(harness, computation_id)
        market, bet = await market_and_bet(harness, market_id, "bob")
        assert failed.status == ComputationStatus.FAILED
        assert failed.error == "cluster unavailable"
        assert bet.status == BetStatus.PENDING
        assert bet.pending_computation_id is None
        assert not market.aggregation_in_flight
        assert market.aggregate_nonce == 7
        assert "ComputationFailed" in [e.name for e in events]

        retry_id = harness.next_id()
        async with harness.service() as svc:
            await svc.retry_bet_aggregation(market_id, "bob", retry_id)
        await harness.cluster.process(retry_id)

        market, bet = await market_and_bet(harness, market_id, "bob")
        assert bet.status == BetStatus.CONFIRMED
        assert market.bet_count == 1

    @pytest.mark.asyncio
    async def test_retry_rejected_while_outstanding(self, harness):
        market_id = await harness.open_market()
        await harness.place(market_id, "bob", True, 2_000_000, process=False)

        with pytest.raises(AggregationInFlightError):
            async with harness.service() as svc:
                await svc.retry_bet_aggregation(market_id, "bob", harness.next_id())

    @pytest.mark.asyncio
    async def test_retry_rejected_for_confirmed_bet(self, harness):
        market_id = await harness.open_market()
        await harness.place(market_id, "bob", True, 2_000_000)

        with pytest.raises(StatePreconditionError):
            async with harness.service() as svc:
                await svc.retry_bet_aggregation(market_id, "bob", harness.next_id())

    @pytest.mark.asyncio
    async def test_resolution_retried_after_abort(self, harness):
        market_id = await harness.open_market()
        await harness.place(market_id, "bob", True, 2_000_000)
        await harness.close(market_id)

        first = await harness.resolve(market_id, True, process=False)
        with pytest.raises(StatePreconditionError):
            await harness.resolve(market_id, True)

        harness.cluster.abort(first)
        await harness.cluster.process(first)

        market, _ = await market_and_bet(harness, market_id, "bob")
        assert market.status == MarketStatus.RESOLVING

        await harness.resolve(market_id, True)
        market, _ = await market_and_bet(harness, market_id, "bob")
        assert market.status == MarketStatus.RESOLVED
        assert market.outcome is True


class TestClaimVerification:
    @pytest.mark.asyncio
    async def test_verified_claim_pays_out(self, verifying_harness):
        h = verifying_harness
        market_id = await h.open_market()
        await h.place(market_id, "bettor1", True, 2_000_000)
        await h.place(market_id, "bettor2", False, 1_000_000)
        await h.close(market_id)
        await h.resolve(market_id, True)

        computation_id = h.next_id()
        async with h.service() as svc:
            bet = await svc.claim_payout(market_id, "bettor1", True, 2_000_000, computation_id)
        assert bet.status == BetStatus.CONFIRMED
        assert bet.pending_computation_id == computation_id

        await h.cluster.process(computation_id)

        _, bet = await market_and_bet(h, market_id, "bettor1")
        assert bet.status == BetStatus.CLAIMED
        assert bet.payout_amount == 2_850_000

    @pytest.mark.asyncio
    async def test_false_outcome_claim_rejected(self, verifying_harness, events):
        h = verifying_harness
        market_id = await h.open_market()
        await h.place(market_id, "bettor1", False, 2_000_000)
        await h.place(market_id, "bettor2", True, 1_000_000)
        await h.close(market_id)
        await h.resolve(market_id, True)

        computation_id = h.next_id()
        async with h.service() as svc:
            await svc.claim_payout(market_id, "bettor1", True, 2_000_000, computation_id)
        await h.cluster.process(computation_id)

        _, bet = await market_and_bet(h, market_id, "bettor1")
        assert bet.status == BetStatus.CONFIRMED
        assert not bet.claimed
        assert bet.pending_computation_id is None
        assert "ClaimRejected" in [e.name for e in events]

        async with h.service() as svc:
            vault = await svc.require_vault(market_id)
        assert vault.total_withdrawals == 0

    @pytest.mark.asyncio
    async def test_mismatched_amount_rejected_before_queue(self, verifying_harness):
        h = verifying_harness
        market_id = await h.open_market()
        await h.place(market_id, "bettor1", True, 2_000_000)
        await h.close(market_id)
        await h.resolve(market_id, True)

        with pytest.raises(ClaimMismatchError):
            async with h.service() as svc:
                await svc.claim_payout(market_id, "bettor1", True, 1_000_000, h.next_id())
        assert h.cluster.pending == []

    @pytest.mark.asyncio
    async def test_computation_id_required(self, verifying_harness):
        h = verifying_harness
        market_id = await h.open_market()
        await h.place(market_id, "bettor1", True, 2_000_000)
        await h.close(market_id)
        await h.resolve(market_id, True)

        with pytest.raises(InvalidInputError):
            async with h.service() as svc:
                await svc.claim_payout(market_id, "bettor1", True, 2_000_000)


class TestAudit:
    @pytest.mark.asyncio
    async def test_reveal_totals_matches_resolution(self, harness, events):
        market_id = await harness.open_market()
        await harness.place(market_id, "bettor1", True, 2_000_000)
        await harness.place(market_id, "bettor2", False, 1_000_000)
        await harness.close(market_id)
        await harness.resolve(market_id, False)

        computation_id = harness.next_id()
        async with harness.service() as svc:
            await svc.reveal_totals(market_id, computation_id)
        await harness.cluster.process(computation_id)

        audit = next(e for e in events if e.name == "MarketTotalsAudited")
        assert audit.consistent
        assert (audit.yes_pool, audit.no_pool, audit.total_pool) == (2_000_000, 1_000_000, 3_000_000)

    @pytest.mark.asyncio
    async def test_reveal_totals_requires_resolution(self, harness):
        market_id = await harness.open_market()
        with pytest.raises(StatePreconditionError):
            async with harness.service() as svc:
                await svc.reveal_totals(market_id, harness.next_id())

    @pytest.mark.asyncio
    async def test_reveal_bet_count(self, harness, events):
        market_id = await harness.open_market()
        await harness.place(market_id, "bettor1", True, 2_000_000)
        await harness.place(market_id, "bettor2", False, 1_000_000)

        computation_id = harness.next_id()
        async with harness.service() as svc:
            await svc.reveal_bet_count(market_id, computation_id)
        await harness.cluster.process(computation_id)

        revealed = next(e for e in events if e.name == "BetCountRevealed")
        assert revealed.bet_count == 2

        # Non-mutating circuits leave the aggregate alone
        market, _ = await market_and_bet(harness, market_id, "bettor1")
        assert market.aggregate_nonce == 9
        assert not market.aggregation_in_flight


class TestAbandon:
    """Recovering from computations that will never get an acceptable output."""

    @pytest.mark.asyncio
    async def test_resolution_resubmitted_after_rejected_output(self, harness):
        market_id = await harness.open_market()
        await harness.place(market_id, "bob", True, 2_000_000)
        await harness.close(market_id)
        first = await harness.resolve(market_id, True, process=False)

        forged = forge(
            ClusterSigner(CLUSTER_ID, "not-the-cluster-key"),
            first,
            "calculate_payout_pools",
            {"winning_pool": 0, "losing_pool": 0, "total_pool": 0, "outcome": True},
        )
        with pytest.raises(ComputationVerificationError):
            await harness.dispatcher(forged)
        with pytest.raises(StatePreconditionError):
            await harness.resolve(market_id, True)

        async with harness.service() as svc:
            await svc.fail_computation(first, "alice", "output failed verification")

        failed = await computation(harness, first)
        assert failed.status == ComputationStatus.FAILED
        assert failed.error == "output failed verification"

        await harness.resolve(market_id, True)
        market, _ = await market_and_bet(harness, market_id, "bob")
        assert market.status == MarketStatus.RESOLVED
        assert market.revealed_yes_pool == 2_000_000

        # A late genuine output for the abandoned computation is a replay
        with pytest.raises(ComputationReplayError):
            await harness.cluster.process(first)

    @pytest.mark.asyncio
    async def test_bettor_abandons_own_aggregation(self, harness, events):
        market_id = await harness.open_market()
        stuck = await harness.place(market_id, "bob", True, 2_000_000, process=False)

        async with harness.service() as svc:
            await svc.fail_computation(stuck, "bob")

        market, bet = await market_and_bet(harness, market_id, "bob")
        assert not market.aggregation_in_flight
        assert bet.status == BetStatus.PENDING
        assert bet.pending_computation_id is None
        assert "ComputationFailed" in [e.name for e in events]

        retry_id = harness.next_id()
        async with harness.service() as svc:
            await svc.retry_bet_aggregation(market_id, "bob", retry_id)
        await harness.cluster.process(retry_id)

        _, bet = await market_and_bet(harness, market_id, "bob")
        assert bet.status == BetStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_stranger_cannot_abandon(self, harness):
        market_id = await harness.open_market()
        stuck = await harness.place(market_id, "bob", True, 2_000_000, process=False)

        with pytest.raises(AuthorizationError):
            async with harness.service() as svc:
                await svc.fail_computation(stuck, "mallory")

        queued = await computation(harness, stuck)
        assert queued.status == ComputationStatus.QUEUED

    @pytest.mark.asyncio
    async def test_bettor_cannot_abandon_market_computation(self, harness):
        market_id = await harness.open_market()
        await harness.place(market_id, "bob", True, 2_000_000)
        count_id = harness.next_id()
        async with harness.service() as svc:
            await svc.reveal_bet_count(market_id, count_id)

        with pytest.raises(AuthorizationError):
            async with harness.service() as svc:
                await svc.fail_computation(count_id, "bob")

    @pytest.mark.asyncio
    async def test_settled_computation_cannot_be_abandoned(self, harness):
        await harness.open_market()
        with pytest.raises(StatePreconditionError):
            async with harness.service() as svc:
                await svc.fail_computation(1, "alice")


class TestSubmission:
    @pytest.mark.asyncio
    async def test_failed_submission_releases_guard(self, harness, events):
        market_id = await harness.open_market()

        async def unreachable(request):
            raise RuntimeError("network unreachable")

        harness.cluster.submit = unreachable
        computation_id = await harness.place(market_id, "bob", True, 2_000_000, process=False)
        del harness.cluster.submit

        failed = await computation(harness, computation_id)
        market, bet = await market_and_bet(harness, market_id, "bob")
        assert failed.status == ComputationStatus.FAILED
        assert "network unreachable" in failed.error
        assert not market.aggregation_in_flight
        assert bet.status == BetStatus.PENDING
        assert bet.pending_computation_id is None

        names = [e.name for e in events]
        assert "BetPlaced" in names
        assert "ComputationFailed" in names

        retry_id = harness.next_id()
        async with harness.service() as svc:
            await svc.retry_bet_aggregation(market_id, "bob", retry_id)
        await harness.cluster.process(retry_id)

        _, bet = await market_and_bet(harness, market_id, "bob")
        assert bet.status == BetStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_failing_hook_does_not_skip_later_hooks(self, test_ledger):
        ran = []

        async def broken():
            raise RuntimeError("boom")

        async def recorded():
            ran.append("recorded")

        async with test_ledger.transaction() as session:
            after_commit(session, broken)
            after_commit(session, recorded)

        assert ran == ["recorded"]
