import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy.pool import NullPool

import ridebid.cache as cache
from ridebid.db import make_engine, init_db
from ridebid.distance import DistanceProvider
from ridebid.locks import RideLocks
from ridebid.schemas import RideCreate
from ridebid.services import Marketplace
from ridebid.test.fakes import FakeGateway, FakeRedis

# a Wednesday, 11:00 in New York
SCHEDULED = datetime(2026, 11, 4, 16, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(cache, "redis_client", fake)
    return fake


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'ridebid.db'}"


@pytest.fixture
def ride_request():
    def _make(**overrides):
        data = dict(
            rider_id=100,
            pickup_location="12 Elm St",
            dropoff_location="General Hospital",
            scheduled_time=SCHEDULED,
        )
        data.update(overrides)
        return RideCreate(**data)
    return _make


@pytest.fixture
def run(db_url):
    """Run ``scenario(market)`` on a fresh event loop against the test database."""
    def _run(scenario, gateway=None, **options):
        async def main():
            engine = make_engine(db_url, poolclass=NullPool)
            await init_db(engine)
            market = Marketplace(
                engine=engine,
                payments=gateway or FakeGateway(),
                distance=DistanceProvider(base_url=""),
                locks=RideLocks(),
                **options,
            )
            try:
                return await scenario(market)
            finally:
                await market.notifier.drain()
                await engine.dispose()
        return asyncio.run(main())
    return _run
