from veil.db.models.bet import BetRecord, UserStats
from veil.db.models.computation import Computation, ComputationStatus
from veil.db.models.market import Market, Vault, VaultEntry

__all__ = [
    "BetRecord",
    "Computation",
    "ComputationStatus",
    "Market",
    "UserStats",
    "Vault",
    "VaultEntry",
]
