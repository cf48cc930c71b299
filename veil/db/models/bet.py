"""Database models for bet records and bettor statistics."""

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
from veil.engine.accumulator import CIPHERTEXT_LEN, KEY_LEN, EncryptedBet
from veil.engine.state_machine import BetStatus


class BetRecord(Base):
    """
    One bettor's position in one market.

    The outcome stays encrypted; the stake is plaintext because the vault has
    to account for it. The stake never changes after placement.
    """

    __tablename__ = "bet_records"
    __table_args__ = (
        UniqueConstraint("market_id", "bettor", name="uq_bet_market_bettor"),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    market_id: Mapped[UUID] = mapped_column(ForeignKey("markets.id"), index=True)
    bettor: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    bet_index: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Encrypted position
    encrypted_outcome: Mapped[bytes] = mapped_column(LargeBinary(CIPHERTEXT_LEN), nullable=False)
    encrypted_amount: Mapped[bytes] = mapped_column(LargeBinary(CIPHERTEXT_LEN), nullable=False)
    bettor_key: Mapped[bytes] = mapped_column(LargeBinary(KEY_LEN), nullable=False)
    bettor_nonce: Mapped[int] = mapped_column(U128, nullable=False)

    # Plaintext stake for vault accounting
    stake: Mapped[int] = mapped_column(U64, nullable=False)

    status: Mapped[BetStatus] = mapped_column(
        SQLEnum(BetStatus), default=BetStatus.PENDING, nullable=False
    )
    placed_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    confirmed_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    settled_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Aggregation or claim verification outstanding for this bet
    pending_computation_id: Mapped[int | None] = mapped_column(U64, nullable=True)

    claimed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    payout_amount: Mapped[int | None] = mapped_column(U64, nullable=True)

    @property
    def encrypted_bet(self) -> EncryptedBet:
        return EncryptedBet(
            outcome=self.encrypted_outcome,
            amount=self.encrypted_amount,
            bettor_key=self.bettor_key,
            nonce=self.bettor_nonce,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "market_id": str(self.market_id),
            "bettor": self.bettor,
            "bet_index": self.bet_index,
            "encrypted_outcome": self.encrypted_outcome.hex(),
            "encrypted_amount": self.encrypted_amount.hex(),
            "bettor_nonce": self.bettor_nonce,
            "stake": self.stake,
            "status": self.status.value,
            "placed_at": self.placed_at,
            "confirmed_at": self.confirmed_at,
            "settled_at": self.settled_at,
            "claimed": self.claimed,
            "payout_amount": self.payout_amount,
        }

    def __repr__(self) -> str:
        return f"<BetRecord {self.bettor} in {self.market_id}: {self.stake} {self.status.value}>"


class UserStats(Base):
    """Lifetime betting statistics for one bettor."""

    __tablename__ = "user_stats"

    bettor: Mapped[str] = mapped_column(String(64), primary_key=True)
    total_bets: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_wagered: Mapped[int] = mapped_column(U64, default=0, nullable=False)
    total_won: Mapped[int] = mapped_column(U64, default=0, nullable=False)
    total_lost: Mapped[int] = mapped_column(U64, default=0, nullable=False)
    markets_participated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    correct_predictions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "bettor": self.bettor,
            "total_bets": self.total_bets,
            "total_wagered": self.total_wagered,
            "total_won": self.total_won,
            "total_lost": self.total_lost,
            "markets_participated": self.markets_participated,
            "correct_predictions": self.correct_predictions,
        }
