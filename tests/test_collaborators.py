"""Tests for the external collaborators, event publishing and settings."""

from decimal import Decimal

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from order_service.collaborators import AuthVerifier, CartService, Catalog, UserDirectory
from order_service.config import Settings
from order_service.errors import CartClearFailure, CompensationFailure, InsufficientStockError, StoreUnavailable
from order_service.events import OrderPlaced
from order_service.models import Identity, Role
from order_service.publisher import EventPublisher


def client_for(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ── AuthVerifier ─────────────────────────────────


@pytest.mark.asyncio
async def test_auth_verifier_returns_identity():
    def handler(request):
        assert request.headers["Authorization"] == "Bearer good"
        return httpx.Response(200, json={"user_id": 7, "role": "admin"})

    async with client_for(handler) as client:
        identity = await AuthVerifier("http://auth/", client).verify("good")

    assert identity == Identity(user_id="7", role=Role.ADMIN)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(401),
        httpx.Response(403),
        httpx.Response(200, json={"user_id": "u1", "role": "superuser"}),
        httpx.Response(200, json={"role": "customer"}),
    ],
)
async def test_auth_verifier_rejects(response):
    async with client_for(lambda request: response) as client:
        assert await AuthVerifier("http://auth", client).verify("token") is None


@pytest.mark.asyncio
async def test_auth_verifier_empty_credential_skips_call():
    def handler(request):
        raise AssertionError("auth service should not be called")

    async with client_for(handler) as client:
        assert await AuthVerifier("http://auth", client).verify("") is None


@pytest.mark.asyncio
async def test_auth_verifier_outage_is_store_unavailable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async with client_for(handler) as client:
        with pytest.raises(StoreUnavailable):
            await AuthVerifier("http://auth", client).verify("token")

    async with client_for(lambda request: httpx.Response(502)) as client:
        with pytest.raises(StoreUnavailable):
            await AuthVerifier("http://auth", client).verify("token")


# ── CartService ──────────────────────────────────


@pytest.mark.asyncio
async def test_cart_clear_calls_cart_service():
    seen = []

    def handler(request):
        seen.append((request.method, str(request.url)))
        return httpx.Response(204)

    async with client_for(handler) as client:
        await CartService("http://cart/", client).clear("u1")

    assert seen == [("DELETE", "http://cart/carts/u1/items")]


@pytest.mark.asyncio
async def test_cart_clear_failure_on_error_status():
    async with client_for(lambda request: httpx.Response(500)) as client:
        with pytest.raises(CartClearFailure):
            await CartService("http://cart", client).clear("u1")


@pytest.mark.asyncio
async def test_cart_clear_failure_on_transport_error():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    async with client_for(handler) as client:
        with pytest.raises(CartClearFailure):
            await CartService("http://cart", client).clear("u1")


# ── UserDirectory / Catalog ──────────────────────


@pytest.mark.asyncio
async def test_user_directory_exists(engine):
    users = UserDirectory(engine)
    assert await users.exists("u1") is True
    assert await users.exists("ghost") is False


@pytest.mark.asyncio
async def test_catalog_reads(engine):
    catalog = Catalog(engine)

    assert await catalog.price_of("P3") == Decimal("7.25")
    assert await catalog.price_of("nope") is None
    product = await catalog.get_product("P1")
    assert product["name"] == "Brake pad"
    assert product["quantity"] == 5
    assert [p["name"] for p in await catalog.list_products()] == ["Brake pad", "Oil filter", "Spark plug"]


# ── EventPublisher ───────────────────────────────


class DownRedis:
    async def publish(self, channel, message):
        raise RedisConnectionError("redis is down")


@pytest.mark.asyncio
async def test_publisher_sends_json(redis):
    event = OrderPlaced(
        order_id="o-1",
        user_id="u1",
        total_amount=Decimal("39.98"),
        item_count=1,
        timestamp="2026-01-01T00:00:00+00:00",
    )
    await EventPublisher(redis).publish("order_events", event)

    channel, message = redis.messages[0]
    assert channel == "order_events"
    assert message["event_type"] == "OrderPlaced"
    assert message["data"]["total_amount"] == "39.98"


@pytest.mark.asyncio
async def test_publisher_swallows_redis_errors(caplog):
    event = OrderPlaced(
        order_id="o-1",
        user_id="u1",
        total_amount=Decimal("1.00"),
        item_count=1,
        timestamp="2026-01-01T00:00:00+00:00",
    )
    await EventPublisher(DownRedis()).publish("order_events", event)

    assert any("Failed to publish OrderPlaced" in r.getMessage() for r in caplog.records)


# ── Settings / errors ────────────────────────────


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://shop@db/shop")
    monkeypatch.setenv("AUTH_SERVICE_URL", "http://auth:8000")
    monkeypatch.setenv("CART_SERVICE_URL", "http://cart:8000")
    monkeypatch.setenv("PERSIST_TIMEOUT_SECONDS", "1.5")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.delenv("REDIS_URL", raising=False)

    settings = Settings.from_env()

    assert settings.database_url == "postgresql+asyncpg://shop@db/shop"
    assert settings.persist_timeout == 1.5
    assert settings.redis_url == "redis://localhost:6379"
    assert settings.log_level == "DEBUG"


def test_settings_require_database_url(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(KeyError):
        Settings.from_env()


def test_compensation_failure_payload():
    cause = InsufficientStockError("P2", requested=1, available=0)
    failure = CompensationFailure(cause, [("P1", 2)])

    payload = failure.to_dict()
    assert failure.status_code == 500
    assert payload["error"] == "COMPENSATION_FAILURE"
    assert payload["cause"] == "INSUFFICIENT_STOCK"
    assert payload["unreleased"] == [{"product_id": "P1", "quantity": 2}]
