import json
import os
from datetime import datetime, timezone
from uuid import uuid4

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import httpx
import pytest
from sqlalchemy import event, insert, select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from app import main
from app.db import create_tables, products, users
from app.schemas import OrderItemRequest, ShippingAddress


class RecordingRedis:
    """publish された内容を記録するだけの Redis 代替"""

    def __init__(self) -> None:
        self.messages: list[tuple[str, dict]] = []

    async def publish(self, channel: str, message: str) -> int:
        self.messages.append((channel, json.loads(message)))
        return 1

    def event_types(self) -> list[str]:
        return [message["event_type"] for _, message in self.messages]


@pytest.fixture
async def engine(tmp_path, request):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    if request.node.get_closest_marker("foreign_keys"):
        # SQLite は接続ごとに外部キー制約を有効にする必要がある
        @event.listens_for(engine.sync_engine, "connect")
        def enable_foreign_keys(dbapi_connection, _record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    await create_tables(engine)
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
def redis():
    return RecordingRedis()


@pytest.fixture
def add_user(session):
    async def _add_user(name="Alice Martin", email=None, role="USER") -> str:
        user_id = str(uuid4())
        await session.execute(insert(users).values(
            id=user_id,
            name=name,
            email=email or f"{user_id[:8]}@example.com",
            role=role,
        ))
        await session.commit()
        return user_id

    return _add_user


@pytest.fixture
def add_product(session):
    async def _add_product(name="Desk Lamp", price=2500, stock=5, status="ACTIVE") -> str:
        product_id = str(uuid4())
        await session.execute(insert(products).values(
            id=product_id,
            name=name,
            slug=f"{name.lower().replace(' ', '-')}-{product_id[:8]}",
            price=price,
            stock=stock,
            status=status,
            updated_at=datetime.now(timezone.utc),
        ))
        await session.commit()
        return product_id

    return _add_product


@pytest.fixture
def product_state(session):
    async def _product_state(product_id: str) -> tuple[int, str]:
        result = await session.execute(
            select(products.c.stock, products.c.status).where(products.c.id == product_id)
        )
        row = result.fetchone()
        await session.commit()
        return row.stock, row.status

    return _product_state


@pytest.fixture
def address():
    return ShippingAddress(
        street="12 rue de la Paix",
        city="Paris",
        state="Ile-de-France",
        postal_code="75002",
        country="France",
    )


def line(product_id: str, quantity: int) -> OrderItemRequest:
    return OrderItemRequest(product_id=product_id, quantity=quantity)


@pytest.fixture
def make_line():
    return line


@pytest.fixture
async def client(session_factory, redis):
    async def override_session():
        async with session_factory() as session:
            yield session

    main.app.dependency_overrides[main.get_session] = override_session
    main.app.dependency_overrides[main.get_redis] = lambda: redis
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    main.app.dependency_overrides.clear()


def auth_headers(user_id: str, role: str = "USER") -> dict:
    return {"X-User-Id": user_id, "X-User-Role": role}


@pytest.fixture
def headers():
    return auth_headers
