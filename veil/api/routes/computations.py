"""
Computation callback receiver and operator views.

The confidential network posts signed outputs to /callback. A rejected
output (bad signature, replay, undecodable payload) changes nothing.
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from veil.api.deps import get_market_service
from veil.api.schemas import ComputationResponse
from veil.core.exceptions import VeilError, not_found, to_http_exception
from veil.core.security import get_current_caller
from veil.services.cluster import SignedComputationOutput
from veil.services.market_service import MarketService

router = APIRouter()


class FailComputationRequest(BaseModel):
    reason: str = Field("abandoned by caller", min_length=1, max_length=200)


@router.post("/callback", response_model=ComputationResponse)
async def computation_callback(
    output: SignedComputationOutput,
    service: MarketService = Depends(get_market_service),
) -> ComputationResponse:
    try:
        computation = await service.handle_callback(output)
    except VeilError as e:
        raise to_http_exception(e) from e
    return ComputationResponse.model_validate(computation.to_dict())


@router.get("/outstanding", response_model=list[ComputationResponse])
async def list_outstanding(
    market_id: UUID | None = None,
    service: MarketService = Depends(get_market_service),
) -> list[ComputationResponse]:
    """Computations still waiting for a callback."""
    computations = await service.list_outstanding(market_id)
    return [ComputationResponse.model_validate(c.to_dict()) for c in computations]


@router.get("/{computation_id}", response_model=ComputationResponse)
async def get_computation(
    computation_id: int,
    service: MarketService = Depends(get_market_service),
) -> ComputationResponse:
    computation = await service.get_computation(computation_id)
    if computation is None:
        raise not_found("Computation not found")
    return ComputationResponse.model_validate(computation.to_dict())


@router.post("/{computation_id}/fail", response_model=ComputationResponse)
async def fail_computation(
    computation_id: int,
    request: FailComputationRequest,
    caller: str = Depends(get_current_caller),
    service: MarketService = Depends(get_market_service),
) -> ComputationResponse:
    """
    Abandon an outstanding computation, releasing its guards.

    Used when no acceptable output will arrive; the action can then be
    resubmitted with a fresh computation id.
    """
    try:
        computation = await service.fail_computation(computation_id, caller, request.reason)
    except VeilError as e:
        raise to_http_exception(e) from e
    return ComputationResponse.model_validate(computation.to_dict())
