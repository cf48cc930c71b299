"""Response models shared by the API routes."""

from uuid import UUID

from pydantic import BaseModel


class MarketResponse(BaseModel):
    id: UUID
    creator: str
    market_number: int
    question: str
    resolution_time: int
    created_at: int
    fee_bps: int
    oracle_mode: str
    status: str
    aggregate_initialized: bool
    aggregation_in_flight: bool
    bet_count: int
    total_liquidity_approx: int
    # Present once resolved
    outcome: bool | None = None
    resolved_at: int | None = None
    revealed_yes_pool: int | None = None
    revealed_no_pool: int | None = None
    revealed_total_pool: int | None = None


class BetResponse(BaseModel):
    id: UUID
    market_id: UUID
    bettor: str
    bet_index: int
    encrypted_outcome: str
    encrypted_amount: str
    bettor_nonce: int
    stake: int
    status: str
    placed_at: int
    confirmed_at: int | None
    settled_at: int | None
    claimed: bool
    payout_amount: int | None


class ComputationResponse(BaseModel):
    id: int
    circuit: str
    market_id: UUID
    bet_id: UUID | None
    callback_route: str
    status: str
    mutates_aggregate: bool
    result: dict | None
    error: str | None
    queued_at: int
    completed_at: int | None


class VaultEntryResponse(BaseModel):
    id: UUID
    market_id: UUID
    bettor: str
    type: str
    amount: int
    balance_after: int
    created_at: int


class VaultResponse(BaseModel):
    market_id: UUID
    total_deposits: int
    total_withdrawals: int
    balance: int
    entries: list[VaultEntryResponse] = []


class UserStatsResponse(BaseModel):
    bettor: str
    total_bets: int
    total_wagered: int
    total_won: int
    total_lost: int
    markets_participated: int
    correct_predictions: int
