"""Pytest fixtures for order placement tests (file-backed SQLite via aiosqlite)."""

import json
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import func, insert, select
from sqlalchemy.ext.asyncio import create_async_engine

from order_service import schema
from order_service.collaborators import UserDirectory
from order_service.coordinator import OrderCoordinator
from order_service.errors import CartClearFailure
from order_service.inventory import InventoryLedger
from order_service.publisher import EventPublisher
from order_service.repository import OrderRepository

PRODUCTS = [
    {"id": "P1", "name": "Brake pad", "price": Decimal("19.99"), "quantity": 5},
    {"id": "P2", "name": "Oil filter", "price": Decimal("5.50"), "quantity": 0},
    {"id": "P3", "name": "Spark plug", "price": Decimal("7.25"), "quantity": 10},
]

USERS = [
    {"id": "u1", "email": "alice@example.com", "first_name": "Alice", "last_name": "Smith", "role": "customer"},
    {"id": "u2", "email": "bob@example.com", "first_name": "Bob", "last_name": None, "role": "customer"},
    {"id": "admin", "email": "admin@example.com", "first_name": None, "last_name": None, "role": "admin"},
]


class RecordingRedis:
    """Captures what EventPublisher sends instead of talking to a Redis server."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, dict]] = []

    async def publish(self, channel: str, message: str) -> int:
        self.messages.append((channel, json.loads(message)))
        return 0

    def event_types(self, channel: str | None = None) -> list[str]:
        return [m["event_type"] for c, m in self.messages if channel is None or c == channel]


class FakeCart:
    def __init__(self) -> None:
        self.items = {"u1": ["P1"], "u2": ["P3"]}
        self.fail = False
        self.cleared: list[str] = []

    async def clear(self, user_id: str) -> None:
        if self.fail:
            raise CartClearFailure("cart service down")
        self.items.pop(user_id, None)
        self.cleared.append(user_id)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}",
        connect_args={"timeout": 30},
    )
    await schema.create_all(engine)
    async with engine.begin() as conn:
        await conn.execute(insert(schema.users), USERS)
        await conn.execute(insert(schema.products), PRODUCTS)
    yield engine
    await engine.dispose()


@pytest.fixture
def redis() -> RecordingRedis:
    return RecordingRedis()


@pytest.fixture
def publisher(redis) -> EventPublisher:
    return EventPublisher(redis)


@pytest.fixture
def ledger(engine, publisher) -> InventoryLedger:
    return InventoryLedger(engine, publisher)


@pytest.fixture
def repository(engine) -> OrderRepository:
    return OrderRepository(engine)


@pytest.fixture
def cart() -> FakeCart:
    return FakeCart()


@pytest.fixture
def coordinator(engine, ledger, repository, cart, publisher) -> OrderCoordinator:
    return OrderCoordinator(
        ledger=ledger,
        orders=repository,
        users=UserDirectory(engine),
        cart=cart,
        publisher=publisher,
        persist_timeout=2.0,
    )


async def stock(engine, product_id: str) -> int:
    async with engine.connect() as conn:
        return await conn.scalar(
            select(schema.products.c.quantity).where(schema.products.c.id == product_id)
        )


async def row_count(engine, table) -> int:
    async with engine.connect() as conn:
        return await conn.scalar(select(func.count()).select_from(table))
