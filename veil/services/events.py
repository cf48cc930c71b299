"""
Market notifications.

Every accepted transition publishes a structured event once its transaction
commits. Events are informational: subscribers may miss them without any
effect on ledger state.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from veil.db.database import after_commit

logger = logging.getLogger(__name__)


@dataclass
class MarketEvent:
    """Base notification; name is the event type consumers switch on."""

    market_id: UUID
    timestamp: int

    @property
    def name(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["market_id"] = str(self.market_id)
        data["event"] = self.name
        return data


@dataclass
class MarketCreated(MarketEvent):
    creator: str = ""
    market_number: int = 0
    question: str = ""
    resolution_time: int = 0
    fee_bps: int = 0


@dataclass
class AggregateInitRequested(MarketEvent):
    computation_id: int = 0


@dataclass
class AggregateInitialized(MarketEvent):
    nonce: int = 0


@dataclass
class BetPlaced(MarketEvent):
    bettor: str = ""
    bet_index: int = 0
    stake: int = 0
    computation_id: int = 0


@dataclass
class BetConfirmed(MarketEvent):
    bettor: str = ""
    bet_index: int = 0


@dataclass
class MarketClosed(MarketEvent):
    closed_by: str = ""
    bet_count: int = 0
    total_liquidity: int = 0


@dataclass
class MarketResolutionRequested(MarketEvent):
    resolver: str = ""
    outcome: bool = False
    computation_id: int = 0


@dataclass
class MarketResolved(MarketEvent):
    outcome: bool = False
    yes_pool: int = 0
    no_pool: int = 0
    total_pool: int = 0


@dataclass
class ClaimVerificationRequested(MarketEvent):
    bettor: str = ""
    computation_id: int = 0


@dataclass
class ClaimRejected(MarketEvent):
    bettor: str = ""
    computation_id: int = 0


@dataclass
class PayoutClaimed(MarketEvent):
    bettor: str = ""
    stake: int = 0
    payout: int = 0
    won: bool = False


@dataclass
class MarketCancelled(MarketEvent):
    cancelled_by: str = ""
    bet_count: int = 0
    total_liquidity: int = 0


@dataclass
class RefundClaimed(MarketEvent):
    bettor: str = ""
    refund: int = 0


@dataclass
class ComputationFailed(MarketEvent):
    computation_id: int = 0
    circuit: str = ""
    reason: str = ""


@dataclass
class MarketTotalsAudited(MarketEvent):
    consistent: bool = True
    yes_pool: int = 0
    no_pool: int = 0
    total_pool: int = 0


@dataclass
class BetCountRevealed(MarketEvent):
    bet_count: int = 0


Subscriber = Callable[[MarketEvent], Awaitable[None]]


@dataclass
class EventBus:
    """Fan-out of committed market events to async subscribers."""

    subscribers: list[Subscriber] = field(default_factory=list)

    def subscribe(self, subscriber: Subscriber) -> None:
        self.subscribers.append(subscriber)

    async def publish(self, event: MarketEvent) -> None:
        logger.info(f"{event.name}: {event.to_dict()}")
        for subscriber in list(self.subscribers):
            try:
                await subscriber(event)
            except Exception:
                # A failing consumer must not affect committed state
                logger.exception(f"Subscriber failed on {event.name} for market {event.market_id}")

    def emit(self, session: AsyncSession, event: MarketEvent) -> None:
        """Publish event after session's transaction commits."""

        async def _publish() -> None:
            await self.publish(event)

        after_commit(session, _publish)


# Global event bus
event_bus = EventBus()
