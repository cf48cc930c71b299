from veil.engine.accumulator import (
    Circuit,
    EncryptedAggregate,
    EncryptedBet,
    MarketTotals,
    PayoutSplit,
    PoolAccumulator,
    ReferenceAccumulator,
    encrypt_bet,
)
from veil.engine.payout import PayoutResult, calculate_fee, calculate_payout
from veil.engine.state_machine import BetStatus, MarketStatus, OracleMode
from veil.engine.vault import VaultBalance

__all__ = [
    "BetStatus",
    "Circuit",
    "EncryptedAggregate",
    "EncryptedBet",
    "MarketStatus",
    "MarketTotals",
    "OracleMode",
    "PayoutResult",
    "PayoutSplit",
    "PoolAccumulator",
    "ReferenceAccumulator",
    "VaultBalance",
    "calculate_fee",
    "calculate_payout",
    "encrypt_bet",
]
