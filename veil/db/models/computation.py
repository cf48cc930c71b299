"""Database model tracking confidential computations from queue to callback."""

from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, BigInteger, Boolean, Enum as SQLEnum, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from veil.db.database import Base
from veil.db.types import U64, U128
from veil.engine.accumulator import Circuit


class ComputationStatus(str, Enum):
    QUEUED = "queued"
    COMPLETED = "completed"
    FAILED = "failed"


class Computation(Base):
    """
    One queued confidential computation.

    The id is chosen by the caller and must be unique. A computation leaves
    QUEUED exactly once; any later output for the same id is a replay.
    """

    __tablename__ = "computations"

    id: Mapped[int] = mapped_column(U64, primary_key=True, autoincrement=False)
    circuit: Mapped[Circuit] = mapped_column(SQLEnum(Circuit), nullable=False)
    market_id: Mapped[UUID] = mapped_column(ForeignKey("markets.id"), index=True)
    bet_id: Mapped[UUID | None] = mapped_column(ForeignKey("bet_records.id"), nullable=True)
    callback_route: Mapped[str] = mapped_column(String(64), nullable=False)

    status: Mapped[ComputationStatus] = mapped_column(
        SQLEnum(ComputationStatus), default=ComputationStatus.QUEUED, nullable=False, index=True
    )
    mutates_aggregate: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Aggregate nonce the computation was issued against
    aggregate_nonce: Mapped[int | None] = mapped_column(U128, nullable=True)

    arguments: Mapped[dict] = mapped_column(JSON, default=dict)
    result: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    queued_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    completed_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    @property
    def is_outstanding(self) -> bool:
        return self.status == ComputationStatus.QUEUED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "circuit": self.circuit.value,
            "market_id": str(self.market_id),
            "bet_id": str(self.bet_id) if self.bet_id else None,
            "callback_route": self.callback_route,
            "status": self.status.value,
            "mutates_aggregate": self.mutates_aggregate,
            "result": self.result,
            "error": self.error,
            "queued_at": self.queued_at,
            "completed_at": self.completed_at,
        }

    def __repr__(self) -> str:
        return f"<Computation {self.id} {self.circuit.value} {self.status.value}>"
