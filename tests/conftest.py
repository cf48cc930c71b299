import itertools
from contextlib import asynccontextmanager
from typing import AsyncGenerator
from uuid import UUID

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from veil.api.deps import get_network, get_signer
from veil.core.security import ClusterSigner, create_access_token
from veil.db import models  # noqa: F401
from veil.db.database import Base, Ledger, get_session
from veil.engine.accumulator import ReferenceAccumulator, encrypt_bet
from veil.main import app
from veil.services.cluster import LocalComputationCluster
from veil.services.events import EventBus, MarketEvent
from veil.services.market_service import CallbackDispatcher, MarketService


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
NOW = 1_700_000_000
CLUSTER_ID = "test-cluster"
CLUSTER_KEY = "test-cluster-signing-key"


class FakeClock:
    """Settable unix clock."""

    def __init__(self, now: int = NOW):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


class Harness:
    """Runs entry points against a test ledger and an in-process cluster."""

    def __init__(
        self,
        ledger: Ledger,
        signer: ClusterSigner,
        accumulator: ReferenceAccumulator,
        clock: FakeClock,
        bus: EventBus,
        verify_claims: bool = False,
    ):
        self.ledger = ledger
        self.signer = signer
        self.clock = clock
        self.bus = bus
        self.verify_claims = verify_claims
        self.dispatcher = CallbackDispatcher(
            ledger, signer=signer, clock=clock, bus=bus, verify_claims=verify_claims
        )
        self.cluster = LocalComputationCluster(signer, accumulator, deliver=self.dispatcher)
        self.dispatcher.network = self.cluster
        self._ids = itertools.count(1)

    def next_id(self) -> int:
        return next(self._ids)

    @asynccontextmanager
    async def service(self) -> AsyncGenerator[MarketService, None]:
        async with self.ledger.transaction() as session:
            yield MarketService(
                session,
                self.cluster,
                signer=self.signer,
                clock=self.clock,
                bus=self.bus,
                verify_claims=self.verify_claims,
            )

    async def create_market(
        self,
        creator: str = "alice",
        market_number: int = 1,
        fee_bps: int = 500,
        question: str = "Will it rain tomorrow?",
    ) -> UUID:
        async with self.service() as svc:
            market = await svc.create_market(
                creator=creator,
                market_number=market_number,
                question=question,
                resolution_time=self.clock() + 3600,
                fee_bps=fee_bps,
            )
        return market.id

    async def open_market(self, creator: str = "alice", **kwargs) -> UUID:
        """Create a market and land its aggregate initialization."""
        market_id = await self.create_market(creator=creator, **kwargs)
        async with self.service() as svc:
            computation = await svc.init_aggregate(market_id, creator, self.next_id(), nonce=7)
        await self.cluster.process(computation.id)
        return market_id

    async def place(
        self,
        market_id: UUID,
        bettor: str,
        outcome: bool,
        stake: int,
        process: bool = True,
    ) -> int:
        """Place an encrypted bet; returns its computation id."""
        computation_id = self.next_id()
        key = bettor.encode().ljust(32, b"\x00")[:32]
        sealed = encrypt_bet(outcome, stake, key, nonce=computation_id)
        async with self.service() as svc:
            await svc.place_bet(
                market_id=market_id,
                bettor=bettor,
                computation_id=computation_id,
                encrypted_outcome=sealed.outcome,
                encrypted_amount=sealed.amount,
                bettor_key=sealed.bettor_key,
                nonce=sealed.nonce,
                stake=stake,
            )
        if process:
            await self.cluster.process(computation_id)
        return computation_id

    async def close(self, market_id: UUID, caller: str = "alice") -> None:
        async with self.service() as svc:
            await svc.close_market(market_id, caller)

    async def resolve(self, market_id: UUID, outcome: bool, caller: str = "alice", process: bool = True) -> int:
        computation_id = self.next_id()
        async with self.service() as svc:
            await svc.resolve_market(market_id, caller, computation_id, outcome)
        if process:
            await self.cluster.process(computation_id)
        return computation_id


@pytest_asyncio.fixture
async def test_engine():
    """Create a test database engine shared by every session of a test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def test_ledger(test_engine) -> Ledger:
    factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    return Ledger(factory)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def signer() -> ClusterSigner:
    return ClusterSigner(CLUSTER_ID, CLUSTER_KEY)


@pytest.fixture
def accumulator() -> ReferenceAccumulator:
    return ReferenceAccumulator(b"test-mxe-key")


@pytest.fixture
def events() -> list[MarketEvent]:
    return []


@pytest.fixture
def bus(events) -> EventBus:
    async def collect(event: MarketEvent) -> None:
        events.append(event)

    bus = EventBus()
    bus.subscribe(collect)
    return bus


@pytest.fixture
def harness(test_ledger, signer, accumulator, clock, bus) -> Harness:
    return Harness(test_ledger, signer, accumulator, clock, bus)


@pytest.fixture
def verifying_harness(test_ledger, signer, accumulator, clock, bus) -> Harness:
    """Harness whose claims are checked against the encrypted bet."""
    return Harness(test_ledger, signer, accumulator, clock, bus, verify_claims=True)


@pytest_asyncio.fixture
async def client(test_ledger, signer, accumulator) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client whose computations settle immediately."""
    dispatcher = CallbackDispatcher(test_ledger, signer=signer, verify_claims=False)
    cluster = LocalComputationCluster(signer, accumulator, deliver=dispatcher, auto_process=True)
    dispatcher.network = cluster

    async def override_get_session():
        async with test_ledger.transaction() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_network] = lambda: cluster
    app.dependency_overrides[get_signer] = lambda: signer

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Bearer headers for a caller identity."""

    def _headers(caller: str) -> dict[str, str]:
        token = create_access_token({"sub": caller})
        return {"Authorization": f"Bearer {token}"}

    return _headers
