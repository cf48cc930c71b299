from fastapi import APIRouter, Depends, Query

from veil.api.deps import get_market_service
from veil.api.schemas import BetResponse, UserStatsResponse
from veil.core.exceptions import not_found
from veil.services.market_service import MarketService

router = APIRouter()


@router.get("/{bettor}/stats", response_model=UserStatsResponse)
async def get_user_stats(
    bettor: str,
    service: MarketService = Depends(get_market_service),
) -> UserStatsResponse:
    """Lifetime betting statistics."""
    stats = await service.get_user_stats(bettor)
    if stats is None:
        raise not_found("No statistics for bettor")
    return UserStatsResponse.model_validate(stats.to_dict())


@router.get("/{bettor}/bets", response_model=list[BetResponse])
async def list_bettor_bets(
    bettor: str,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    service: MarketService = Depends(get_market_service),
) -> list[BetResponse]:
    bets = await service.list_bets(bettor=bettor, limit=limit, offset=offset)
    return [BetResponse.model_validate(b.to_dict()) for b in bets]
