"""
Pytest configuration and fixtures for order lifecycle tests.

Each test gets its own SQLite database file, a geocoding cache backed by a
fake provider and a dispatcher that records queued sync jobs.
"""
import pytest
import pytest_asyncio
from sqlalchemy.pool import NullPool

from app.database import build_engine, build_session_factory, init_db
from app.services.delivery_pricing import DeliveryPricingEngine
from app.services.geocoding_service import GeocodingCache
from app.services.order_state_machine import OrderStateMachine
from tests.utils import (
    FakeGeocodeProvider,
    MutableClock,
    RecordingDispatcher,
    make_warehouse,
)


# ==================== Database ====================

@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite so concurrent sessions use separate connections."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}", poolclass=NullPool)
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def warehouse(session_factory):
    """Vendor warehouse 20 km from the destination serving cement and iron."""
    async with session_factory() as session:
        wh = make_warehouse("WH-MUM-01", 20)
        session.add(wh)
        await session.commit()
        return wh


# ==================== Services ====================

@pytest.fixture
def geocode_provider():
    return FakeGeocodeProvider()


@pytest.fixture
def geocoder(geocode_provider):
    return GeocodingCache(geocode_provider, ttl_seconds=3600, max_size=100)


@pytest.fixture
def pricing_engine():
    return DeliveryPricingEngine(search_radius_km=500)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def machine_for(geocoder, pricing_engine, dispatcher, clock):
    """Build a state machine bound to a given session."""
    def build(session, email_service=None) -> OrderStateMachine:
        return OrderStateMachine(
            session,
            geocoder=geocoder,
            pricing_engine=pricing_engine,
            dispatcher=dispatcher,
            email_service=email_service,
            clock=clock,
        )
    return build


@pytest.fixture
def machine(db, machine_for):
    return machine_for(db)
