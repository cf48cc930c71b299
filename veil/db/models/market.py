"""Database models for confidential markets and their vaults."""

from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from veil.db.database import Base
from veil.db.types import U64, U128
from veil.engine.accumulator import AGGREGATE_LEN, EncryptedAggregate
from veil.engine.state_machine import MarketStatus, OracleMode
from veil.engine.vault import VaultBalance


class Market(Base):
    """
    A binary parimutuel market whose pools stay encrypted until resolution.

    encrypted_aggregate and aggregate_nonce only ever change together, from
    an accepted computation callback. pending_aggregation_id is set while an
    aggregate-mutating computation is outstanding.
    """

    __tablename__ = "markets"
    __table_args__ = (
        UniqueConstraint("creator", "market_number", name="uq_market_creator_number"),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    creator: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    market_number: Mapped[int] = mapped_column(U64, nullable=False)

    # Configuration
    question: Mapped[str] = mapped_column(String(200), nullable=False)
    resolution_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fee_bps: Mapped[int] = mapped_column(Integer, nullable=False)

    # Oracle
    oracle_mode: Mapped[OracleMode] = mapped_column(
        SQLEnum(OracleMode), default=OracleMode.MANUAL, nullable=False
    )
    oracle_feed: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # Status
    status: Mapped[MarketStatus] = mapped_column(
        SQLEnum(MarketStatus), default=MarketStatus.OPEN, nullable=False, index=True
    )
    outcome: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    resolved_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Encrypted state
    encrypted_aggregate: Mapped[bytes] = mapped_column(
        LargeBinary(AGGREGATE_LEN), default=bytes(AGGREGATE_LEN), nullable=False
    )
    aggregate_nonce: Mapped[int] = mapped_column(U128, default=0, nullable=False)
    aggregate_initialized: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    pending_aggregation_id: Mapped[int | None] = mapped_column(U64, nullable=True)

    # Revealed state (zero until resolved)
    revealed_yes_pool: Mapped[int] = mapped_column(U64, default=0, nullable=False)
    revealed_no_pool: Mapped[int] = mapped_column(U64, default=0, nullable=False)
    revealed_total_pool: Mapped[int] = mapped_column(U64, default=0, nullable=False)

    # Counters
    bet_count: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_liquidity_approx: Mapped[int] = mapped_column(U64, default=0, nullable=False)

    @property
    def aggregate(self) -> EncryptedAggregate:
        return EncryptedAggregate.from_bytes(self.encrypted_aggregate, self.aggregate_nonce)

    def store_aggregate(self, aggregate: EncryptedAggregate) -> None:
        self.encrypted_aggregate = aggregate.to_bytes()
        self.aggregate_nonce = aggregate.nonce

    @property
    def aggregation_in_flight(self) -> bool:
        return self.pending_aggregation_id is not None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "id": str(self.id),
            "creator": self.creator,
            "market_number": self.market_number,
            "question": self.question,
            "resolution_time": self.resolution_time,
            "created_at": self.created_at,
            "fee_bps": self.fee_bps,
            "oracle_mode": self.oracle_mode.value,
            "status": self.status.value,
            "aggregate_initialized": self.aggregate_initialized,
            "aggregation_in_flight": self.aggregation_in_flight,
            "bet_count": self.bet_count,
            "total_liquidity_approx": self.total_liquidity_approx,
        }

        if self.status == MarketStatus.RESOLVED:
            data["outcome"] = self.outcome
            data["resolved_at"] = self.resolved_at
            data["revealed_yes_pool"] = self.revealed_yes_pool
            data["revealed_no_pool"] = self.revealed_no_pool
            data["revealed_total_pool"] = self.revealed_total_pool

        return data

    def __repr__(self) -> str:
        return f"<Market {self.id}: {self.question[:30]}...>"


class Vault(Base):
    """Value held for one market; deposits and withdrawals only ever grow."""

    __tablename__ = "vaults"

    market_id: Mapped[UUID] = mapped_column(ForeignKey("markets.id"), primary_key=True)
    total_deposits: Mapped[int] = mapped_column(U64, default=0, nullable=False)
    total_withdrawals: Mapped[int] = mapped_column(U64, default=0, nullable=False)

    @property
    def balance(self) -> int:
        return self.total_deposits - self.total_withdrawals

    @property
    def snapshot(self) -> VaultBalance:
        return VaultBalance(self.total_deposits, self.total_withdrawals)

    def apply(self, snapshot: VaultBalance) -> None:
        self.total_deposits = snapshot.total_deposits
        self.total_withdrawals = snapshot.total_withdrawals

    def to_dict(self) -> dict[str, Any]:
        return {
            "market_id": str(self.market_id),
            "total_deposits": self.total_deposits,
            "total_withdrawals": self.total_withdrawals,
            "balance": self.balance,
        }

    def __repr__(self) -> str:
        return f"<Vault {self.market_id}: {self.balance}>"


class VaultEntry(Base):
    """Journal line for every movement into or out of a vault."""

    __tablename__ = "vault_entries"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    market_id: Mapped[UUID] = mapped_column(ForeignKey("markets.id"), index=True)
    bettor: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False)  # deposit, payout, refund
    amount: Mapped[int] = mapped_column(U64, nullable=False)
    balance_after: Mapped[int] = mapped_column(U64, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "market_id": str(self.market_id),
            "bettor": self.bettor,
            "type": self.type,
            "amount": self.amount,
            "balance_after": self.balance_after,
            "created_at": self.created_at,
        }

    def __repr__(self) -> str:
        return f"<VaultEntry {self.type} {self.amount} for {self.bettor}>"
