"""Shared FastAPI dependencies."""

from functools import lru_cache

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from veil.config import settings
from veil.core.security import ClusterSigner
from veil.db.database import get_session, ledger
from veil.services.cluster import (
    ConfidentialNetwork,
    HttpComputationNetwork,
    LocalComputationCluster,
)
from veil.services.market_service import CallbackDispatcher, MarketService


def build_network() -> ConfidentialNetwork:
    """Remote network when a URL is configured, otherwise an in-process cluster."""
    if settings.computation_network_url:
        return HttpComputationNetwork(
            settings.computation_network_url,
            timeout=settings.computation_network_timeout,
        )

    dispatcher = CallbackDispatcher(ledger)
    cluster = LocalComputationCluster.from_settings(deliver=dispatcher, auto_process=True)
    dispatcher.network = cluster
    return cluster


@lru_cache
def get_network() -> ConfidentialNetwork:
    return build_network()


@lru_cache
def get_signer() -> ClusterSigner:
    return ClusterSigner.from_settings()


async def get_market_service(
    session: AsyncSession = Depends(get_session),
    network: ConfidentialNetwork = Depends(get_network),
    signer: ClusterSigner = Depends(get_signer),
) -> MarketService:
    return MarketService(session, network, signer=signer)
