"""
OrderGuard — shared test fixtures
In-memory SQLite (async via aiosqlite), Kafka stubbed, rate limiting off.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from orderguard.api.limiter import limiter
from orderguard.core.phone import PhoneNumber, normalize
from orderguard.core.scoring import normalize_address
from orderguard.main import app
from orderguard.models.models import Order
from orderguard.services.db import Base, get_db
from orderguard.services.security import ADMIN_SCOPE, DEFAULT_SCOPES, create_token_pair

# ===========================================================================
# Database: one shared in-memory connection
# ===========================================================================
TEST_DB_URL = "sqlite+aiosqlite://"                    # :memory:

test_engine = create_async_engine(
    TEST_DB_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(bind=test_engine, class_=AsyncSession, expire_on_commit=False)


async def _override_get_db():
    async with TestingSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@pytest.fixture(autouse=True)
def _disable_rate_limit():
    limiter.enabled = False
    yield
    limiter.enabled = True


@pytest_asyncio.fixture()
async def db_session():
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with TestingSessionLocal() as session:
        yield session
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture()
async def client(db_session):
    app.dependency_overrides[get_db] = _override_get_db
    # Stub out Kafka producer on app.state
    app.state.kafka_producer = AsyncMock()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


# ===========================================================================
# Auth headers
# ===========================================================================
@pytest.fixture()
def auth_headers():
    tokens = create_token_pair("shop-manager", scopes=list(DEFAULT_SCOPES))
    return {"Authorization": f"Bearer {tokens['access_token']}"}


@pytest.fixture()
def admin_headers():
    tokens = create_token_pair("owner", scopes=[*DEFAULT_SCOPES, ADMIN_SCOPE])
    return {"Authorization": f"Bearer {tokens['access_token']}"}


# ===========================================================================
# Helpers
# ===========================================================================
def _make_order(minutes_ago: int = 30, **kwargs) -> Order:
    """Order row as the orders API would have stored it."""
    defaults = dict(
        billing_phone="01712345678",
        ip_address="103.4.145.10",
        first_name="Rahim",
        last_name="Uddin",
        address_1="House 12, Road 5",
        city="Dhaka",
        postcode="1207",
        status="processing",
        total=1_250.0,
        created_at=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
    )
    defaults.update(kwargs)
    phone = normalize(defaults["billing_phone"])
    defaults.setdefault("phone_key", phone.canonical if isinstance(phone, PhoneNumber) else None)
    defaults.setdefault(
        "address_key",
        normalize_address(defaults["address_1"], defaults["city"], defaults["postcode"]) or None,
    )
    return Order(**defaults)


@pytest.fixture()
def make_order():
    return _make_order
