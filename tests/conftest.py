import httpx
import pytest
from fakeredis import aioredis as fake_aioredis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from grove.gateway import reset_gateway, set_gateway
from grove.gateway.fake_adapter import FakeGateway
from grove.schema import create_schema

FUTURE = "2099-01-01T00:00:00+00:00"
PAST = "2000-01-01T00:00:00+00:00"


@pytest.fixture
async def engine(tmp_path):
    # ファイル DB: 複数セッションが本当に並行して動く
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'grove.db'}",
        connect_args={"timeout": 15},
    )
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def redis():
    client = fake_aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def gateway():
    fake = FakeGateway()
    set_gateway(fake)
    yield fake
    reset_gateway()


async def execute(session, sql: str, **params):
    result = await session.execute(text(sql), params)
    await session.commit()
    return result


@pytest.fixture
async def catalog(session):
    """商品・木・区画・ウォレットの最小カタログ"""
    await execute(
        session,
        "INSERT INTO products (id, name, price, token_price, active) VALUES "
        "('soap', 'Olive Soap', 20.00, 200, :yes), "
        "('oil', 'Olive Oil', 10.00, NULL, :yes), "
        "('cheap', 'Seed Packet', 0.60, 6, :yes), "
        "('retired', 'Old Mug', 8.00, NULL, :no)",
        yes=True, no=False,
    )
    await execute(
        session,
        "INSERT INTO product_variants (id, product_id, name, price, token_price) VALUES "
        "('oil-1l', 'oil', '1L', 18.00, NULL)",
    )
    await execute(
        session,
        "INSERT INTO trees (id, name, species, location, price, token_price, max_adopters, adopter_count, status) "
        "VALUES ('tree-1', 'Old Olive', 'Olea europaea', 'Ajloun', 30.00, 300, 2, 0, 'Available')",
    )
    await execute(
        session,
        "INSERT INTO land_plots (id, name, location, price, token_price, total_slots, occupied_slots, status) "
        "VALUES ('plot-1', 'North Terrace', 'Jerash', 40.00, 400, 10, 0, 'Available'), "
        "('plot-small', 'Small Grove', 'Salt', 15.00, NULL, 3, 0, 'Available')",
    )
    await execute(
        session,
        "INSERT INTO user_wallets (user_id, wallet_address) VALUES ('alice', '0xA11CE')",
    )


@pytest.fixture
def add_discount(session):
    """割引コードを直接作る (管理 API を通さない)"""

    async def _add(code: str, **overrides):
        values = {
            "code": code,
            "percentage": 10,
            "user_id": None,
            "max_usage": 1,
            "current_usage": 0,
            "min_order_amount": 0,
            "max_discount_amount": None,
            "expires_at": FUTURE,
            "status": "active",
            "created_at": PAST,
        }
        values.update(overrides)
        await execute(
            session,
            "INSERT INTO discounts (code, percentage, user_id, max_usage, current_usage, min_order_amount, "
            "max_discount_amount, expires_at, status, created_at) VALUES (:code, :percentage, :user_id, "
            ":max_usage, :current_usage, :min_order_amount, :max_discount_amount, :expires_at, :status, :created_at)",
            **values,
        )

    return _add


@pytest.fixture
async def client(session_factory, redis, gateway, monkeypatch):
    from grove import main

    monkeypatch.setattr(main, "async_session", session_factory)
    monkeypatch.setattr(main, "redis_pool", redis)
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
