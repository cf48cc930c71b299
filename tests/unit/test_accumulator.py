"""Tests for the reference encrypted pool accumulator."""

import pytest

from veil.engine.accumulator import (
    AGGREGATE_LEN,
    AccumulatorOverflowError,
    Circuit,
    EncryptedAggregate,
    ReferenceAccumulator,
    decrypt_scalar,
    encrypt_bet,
    encrypt_scalar,
)
from veil.engine.vault import U64_MAX

KEY = bytes(range(32))


@pytest.fixture
def acc():
    return ReferenceAccumulator(b"network-key")


def bet(outcome: bool, amount: int, nonce: int = 1):
    return encrypt_bet(outcome, amount, KEY, nonce)


class TestCipher:
    def test_scalar_roundtrip(self):
        ct = encrypt_scalar(2_000_000, KEY, nonce=5, index=1)
        assert len(ct) == 32
        assert decrypt_scalar(ct, KEY, nonce=5, index=1) == 2_000_000

    def test_nonce_changes_ciphertext(self):
        assert encrypt_scalar(42, KEY, 1, 0) != encrypt_scalar(42, KEY, 2, 0)

    def test_bet_key_must_be_32_bytes(self):
        with pytest.raises(ValueError):
            encrypt_bet(True, 1, b"short", 1)


class TestAggregate:
    """Pool arithmetic under encryption."""

    def test_init_is_zero(self, acc):
        agg = acc.init(nonce=9)
        assert agg.nonce == 9
        totals = acc.reveal_totals(agg)
        assert (totals.yes_pool, totals.no_pool, totals.total_pool) == (0, 0, 0)
        assert acc.reveal_bet_count(agg) == 0

    def test_bets_land_in_their_pool(self, acc):
        agg = acc.init(nonce=0)
        agg = acc.aggregate(bet(True, 2_000_000), agg)
        agg = acc.aggregate(bet(False, 1_000_000, nonce=2), agg)

        totals = acc.reveal_totals(agg)
        assert totals.yes_pool == 2_000_000
        assert totals.no_pool == 1_000_000
        assert totals.total_pool == 3_000_000
        assert acc.reveal_bet_count(agg) == 2

    def test_aggregate_advances_nonce(self, acc):
        agg = acc.init(nonce=10)
        updated = acc.aggregate(bet(True, 5), agg)
        assert updated.nonce == 11
        assert updated.ciphertexts != agg.ciphertexts

    def test_pool_overflow_fails_closed(self, acc):
        agg = acc.aggregate(bet(True, U64_MAX), acc.init(nonce=0))
        with pytest.raises(AccumulatorOverflowError):
            acc.aggregate(bet(True, 1, nonce=2), agg)

    def test_total_overflow_fails_closed(self, acc):
        agg = acc.aggregate(bet(True, U64_MAX), acc.init(nonce=0))
        agg = acc.aggregate(bet(False, 1, nonce=2), agg)
        with pytest.raises(AccumulatorOverflowError):
            acc.reveal_totals(agg)

    def test_other_network_cannot_read_aggregate(self, acc):
        agg = acc.aggregate(bet(True, 123), acc.init(nonce=0))
        other = ReferenceAccumulator(b"other-key")
        with pytest.raises(AccumulatorOverflowError):
            other.reveal_totals(agg)
        with pytest.raises(AccumulatorOverflowError):
            other.reveal_bet_count(agg)

    def test_foreign_aggregate_never_aggregated(self, acc):
        foreign = ReferenceAccumulator(b"other-key").init(nonce=0)
        with pytest.raises(AccumulatorOverflowError):
            acc.aggregate(bet(True, 5), foreign)


class TestDeclassification:
    @pytest.mark.parametrize("outcome,winning,losing", [(True, 700, 300), (False, 300, 700)])
    def test_payout_split_buckets_by_outcome(self, acc, outcome, winning, losing):
        agg = acc.init(nonce=0)
        agg = acc.aggregate(bet(True, 700), agg)
        agg = acc.aggregate(bet(False, 300, nonce=2), agg)

        split = acc.compute_payout_split(agg, outcome)
        assert split.winning_pool == winning
        assert split.losing_pool == losing
        assert split.total_pool == 1_000
        assert split.outcome is outcome

    def test_verify_claim(self, acc):
        original = bet(True, 2_000_000)
        assert acc.verify_claim(original, True, 2_000_000)
        assert not acc.verify_claim(original, False, 2_000_000)
        assert not acc.verify_claim(original, True, 1_999_999)


class TestWireForm:
    def test_aggregate_bytes_roundtrip(self, acc):
        agg = acc.init(nonce=3)
        data = agg.to_bytes()
        assert len(data) == AGGREGATE_LEN
        assert EncryptedAggregate.from_bytes(data, 3) == agg

    def test_rejects_wrong_length(self):
        with pytest.raises(ValueError):
            EncryptedAggregate.from_bytes(b"\x00" * 95, 0)

    def test_only_init_and_aggregate_mutate(self):
        mutating = {c for c in Circuit if c.mutates_aggregate}
        assert mutating == {Circuit.INIT, Circuit.AGGREGATE}
