"""
Confidential market API routes.

Every mutating endpoint runs as one ledger transaction; any domain error
rolls it back and is reported with the matching HTTP status.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from veil.api.deps import get_market_service
from veil.api.schemas import (
    BetResponse,
    ComputationResponse,
    MarketResponse,
    VaultEntryResponse,
    VaultResponse,
)
from veil.core.exceptions import NotFoundError, VeilError, bad_request, not_found, to_http_exception
from veil.core.security import get_current_caller
from veil.engine.state_machine import MarketStatus, OracleMode
from veil.services.market_service import MarketService

router = APIRouter()


# Request models

class CreateMarketRequest(BaseModel):
    """Question length and fee cap are checked by the service."""

    market_number: int = Field(..., ge=0)
    question: str = Field(..., min_length=1)
    resolution_time: int = Field(..., description="Unix timestamp, seconds")
    fee_bps: int = Field(..., ge=0)
    oracle_mode: OracleMode = OracleMode.MANUAL
    oracle_feed: str | None = Field(None, max_length=128)


class InitAggregateRequest(BaseModel):
    computation_id: int = Field(..., ge=0)
    nonce: int = Field(..., ge=0)


class PlaceBetRequest(BaseModel):
    """Ciphertexts and key material are hex encoded."""

    computation_id: int = Field(..., ge=0)
    encrypted_outcome: str
    encrypted_amount: str
    bettor_key: str
    nonce: int = Field(..., ge=0)
    stake: int = Field(..., gt=0)


class ComputationIdRequest(BaseModel):
    computation_id: int = Field(..., ge=0)


class ResolveMarketRequest(BaseModel):
    computation_id: int = Field(..., ge=0)
    outcome: bool


class ClaimPayoutRequest(BaseModel):
    claimed_outcome: bool
    claimed_amount: int = Field(..., ge=0)
    # Required when claims are verified against the encrypted bet
    computation_id: int | None = Field(None, ge=0)


def _hex(value: str, name: str) -> bytes:
    try:
        return bytes.fromhex(value)
    except ValueError:
        raise bad_request(f"{name} must be hex encoded")


# Routes

@router.post("", response_model=MarketResponse, status_code=status.HTTP_201_CREATED)
async def create_market(
    request: CreateMarketRequest,
    caller: str = Depends(get_current_caller),
    service: MarketService = Depends(get_market_service),
) -> MarketResponse:
    """Create a market; its encrypted aggregate must be initialized before betting."""
    try:
        market = await service.create_market(
            creator=caller,
            market_number=request.market_number,
            question=request.question,
            resolution_time=request.resolution_time,
            fee_bps=request.fee_bps,
            oracle_mode=request.oracle_mode,
            oracle_feed=request.oracle_feed,
        )
    except VeilError as e:
        raise to_http_exception(e) from e
    return MarketResponse.model_validate(market.to_dict())


@router.get("", response_model=list[MarketResponse])
async def list_markets(
    market_status: MarketStatus | None = Query(None, alias="status"),
    creator: str | None = None,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    service: MarketService = Depends(get_market_service),
) -> list[MarketResponse]:
    """List markets, optionally filtered by status or creator."""
    markets = await service.list_markets(status=market_status, creator=creator, limit=limit, offset=offset)
    return [MarketResponse.model_validate(m.to_dict()) for m in markets]


@router.get("/by-key/{creator}/{market_number}", response_model=MarketResponse)
async def get_market_by_key(
    creator: str,
    market_number: int,
    service: MarketService = Depends(get_market_service),
) -> MarketResponse:
    market = await service.get_market_by_key(creator, market_number)
    if market is None:
        raise not_found("Market not found")
    return MarketResponse.model_validate(market.to_dict())


@router.get("/{market_id}", response_model=MarketResponse)
async def get_market(
    market_id: UUID,
    service: MarketService = Depends(get_market_service),
) -> MarketResponse:
    market = await service.get_market(market_id)
    if market is None:
        raise not_found("Market not found")
    return MarketResponse.model_validate(market.to_dict())


@router.post(
    "/{market_id}/init",
    response_model=ComputationResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def init_aggregate(
    market_id: UUID,
    request: InitAggregateRequest,
    caller: str = Depends(get_current_caller),
    service: MarketService = Depends(get_market_service),
) -> ComputationResponse:
    """Queue creation of the zero encrypted aggregate."""
    try:
        computation = await service.init_aggregate(
            market_id, caller, request.computation_id, request.nonce
        )
    except VeilError as e:
        raise to_http_exception(e) from e
    return ComputationResponse.model_validate(computation.to_dict())


@router.post(
    "/{market_id}/bets",
    response_model=BetResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def place_bet(
    market_id: UUID,
    request: PlaceBetRequest,
    caller: str = Depends(get_current_caller),
    service: MarketService = Depends(get_market_service),
) -> BetResponse:
    """
    Place an encrypted bet.

    The stake is deposited immediately; the bet stays pending until the
    network has added it to the encrypted pools.
    """
    try:
        bet = await service.place_bet(
            market_id=market_id,
            bettor=caller,
            computation_id=request.computation_id,
            encrypted_outcome=_hex(request.encrypted_outcome, "encrypted_outcome"),
            encrypted_amount=_hex(request.encrypted_amount, "encrypted_amount"),
            bettor_key=_hex(request.bettor_key, "bettor_key"),
            nonce=request.nonce,
            stake=request.stake,
        )
    except VeilError as e:
        raise to_http_exception(e) from e
    return BetResponse.model_validate(bet.to_dict())


@router.post(
    "/{market_id}/bets/retry",
    response_model=ComputationResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def retry_bet_aggregation(
    market_id: UUID,
    request: ComputationIdRequest,
    caller: str = Depends(get_current_caller),
    service: MarketService = Depends(get_market_service),
) -> ComputationResponse:
    """Re-queue aggregation of the caller's pending bet after a failed computation."""
    try:
        computation = await service.retry_bet_aggregation(market_id, caller, request.computation_id)
    except VeilError as e:
        raise to_http_exception(e) from e
    return ComputationResponse.model_validate(computation.to_dict())


@router.get("/{market_id}/bets", response_model=list[BetResponse])
async def list_bets(
    market_id: UUID,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    service: MarketService = Depends(get_market_service),
) -> list[BetResponse]:
    bets = await service.list_bets(market_id=market_id, limit=limit, offset=offset)
    return [BetResponse.model_validate(b.to_dict()) for b in bets]


@router.get("/{market_id}/bets/{bettor}", response_model=BetResponse)
async def get_bet(
    market_id: UUID,
    bettor: str,
    service: MarketService = Depends(get_market_service),
) -> BetResponse:
    bet = await service.get_bet(market_id, bettor)
    if bet is None:
        raise not_found("Bet not found")
    return BetResponse.model_validate(bet.to_dict())


@router.post("/{market_id}/close", response_model=MarketResponse)
async def close_market(
    market_id: UUID,
    caller: str = Depends(get_current_caller),
    service: MarketService = Depends(get_market_service),
) -> MarketResponse:
    """Close betting. The creator may close early; anyone may after the deadline."""
    try:
        market = await service.close_market(market_id, caller)
    except VeilError as e:
        raise to_http_exception(e) from e
    return MarketResponse.model_validate(market.to_dict())


@router.post(
    "/{market_id}/resolve",
    response_model=ComputationResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def resolve_market(
    market_id: UUID,
    request: ResolveMarketRequest,
    caller: str = Depends(get_current_caller),
    service: MarketService = Depends(get_market_service),
) -> ComputationResponse:
    """Queue the payout split; the market is resolved when it lands."""
    try:
        computation = await service.resolve_market(
            market_id, caller, request.computation_id, request.outcome
        )
    except VeilError as e:
        raise to_http_exception(e) from e
    return ComputationResponse.model_validate(computation.to_dict())


@router.post("/{market_id}/claim", response_model=BetResponse)
async def claim_payout(
    market_id: UUID,
    request: ClaimPayoutRequest,
    caller: str = Depends(get_current_caller),
    service: MarketService = Depends(get_market_service),
) -> BetResponse:
    try:
        bet = await service.claim_payout(
            market_id,
            caller,
            request.claimed_outcome,
            request.claimed_amount,
            computation_id=request.computation_id,
        )
    except VeilError as e:
        raise to_http_exception(e) from e
    return BetResponse.model_validate(bet.to_dict())


@router.post("/{market_id}/cancel", response_model=MarketResponse)
async def cancel_market(
    market_id: UUID,
    caller: str = Depends(get_current_caller),
    service: MarketService = Depends(get_market_service),
) -> MarketResponse:
    try:
        market = await service.cancel_market(market_id, caller)
    except VeilError as e:
        raise to_http_exception(e) from e
    return MarketResponse.model_validate(market.to_dict())


@router.post("/{market_id}/refund", response_model=BetResponse)
async def claim_refund(
    market_id: UUID,
    caller: str = Depends(get_current_caller),
    service: MarketService = Depends(get_market_service),
) -> BetResponse:
    try:
        bet = await service.claim_refund(market_id, caller)
    except VeilError as e:
        raise to_http_exception(e) from e
    return BetResponse.model_validate(bet.to_dict())


@router.post(
    "/{market_id}/reveal-totals",
    response_model=ComputationResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def reveal_totals(
    market_id: UUID,
    request: ComputationIdRequest,
    caller: str = Depends(get_current_caller),
    service: MarketService = Depends(get_market_service),
) -> ComputationResponse:
    """Audit a resolved market's stored totals against a fresh declassification."""
    try:
        computation = await service.reveal_totals(market_id, request.computation_id)
    except VeilError as e:
        raise to_http_exception(e) from e
    return ComputationResponse.model_validate(computation.to_dict())


@router.post(
    "/{market_id}/reveal-bet-count",
    response_model=ComputationResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def reveal_bet_count(
    market_id: UUID,
    request: ComputationIdRequest,
    caller: str = Depends(get_current_caller),
    service: MarketService = Depends(get_market_service),
) -> ComputationResponse:
    try:
        computation = await service.reveal_bet_count(market_id, request.computation_id)
    except VeilError as e:
        raise to_http_exception(e) from e
    return ComputationResponse.model_validate(computation.to_dict())


@router.get("/{market_id}/vault", response_model=VaultResponse)
async def get_vault(
    market_id: UUID,
    service: MarketService = Depends(get_market_service),
) -> VaultResponse:
    """Vault counters and the journal of every movement."""
    try:
        vault = await service.require_vault(market_id)
    except NotFoundError as e:
        raise to_http_exception(e) from e
    entries = await service.list_vault_entries(market_id)
    return VaultResponse(
        **vault.to_dict(),
        entries=[VaultEntryResponse.model_validate(entry.to_dict()) for entry in entries],
    )
