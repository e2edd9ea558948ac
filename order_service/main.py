"""
Order Service — FastAPI エントリーポイント

注文確定 API。エンジン・Redis・HTTP クライアントは lifespan で生成し、
app.state に載せて依存性として各エンドポイントへ渡す。
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import assert_never

import httpx
import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import create_async_engine

from . import schema
from .collaborators import AuthVerifier, CartService, Catalog, UserDirectory
from .config import Settings
from .coordinator import OrderCoordinator
from .errors import Forbidden, NotFoundError, OrderNotFound, OrderPlacementError, Unauthorized
from .inventory import InventoryLedger
from .models import Identity, PlaceOrderItem, Role
from .publisher import EventPublisher
from .repository import OrderRepository

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@dataclass
class Services:
    coordinator: OrderCoordinator
    orders: OrderRepository
    catalog: Catalog
    auth: AuthVerifier


def build_services(settings: Settings, engine, redis: aioredis.Redis, http: httpx.AsyncClient) -> Services:
    publisher = EventPublisher(redis)
    orders = OrderRepository(engine)
    coordinator = OrderCoordinator(
        ledger=InventoryLedger(engine, publisher),
        orders=orders,
        users=UserDirectory(engine),
        cart=CartService(settings.cart_service_url, http),
        publisher=publisher,
        persist_timeout=settings.persist_timeout,
    )
    return Services(
        coordinator=coordinator,
        orders=orders,
        catalog=Catalog(engine),
        auth=AuthVerifier(settings.auth_service_url, http),
    )


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            app.state.services = services
            yield
            return

        cfg = settings or Settings.from_env()
        configure_logging(cfg.log_level)
        engine = create_async_engine(cfg.database_url, echo=False)
        await schema.create_all(engine)
        redis = aioredis.from_url(cfg.redis_url, decode_responses=True)
        http = httpx.AsyncClient(timeout=cfg.http_timeout)
        app.state.services = build_services(cfg, engine, redis, http)
        logger.info("Order service started (persist timeout=%.1fs)", cfg.persist_timeout)
        try:
            yield
        finally:
            await http.aclose()
            await redis.aclose()
            await engine.dispose()

    app = FastAPI(title="Order Service", lifespan=lifespan)
    if services is not None:
        app.state.services = services

    app.add_exception_handler(OrderPlacementError, _placement_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.include_router(router)
    return app


async def _placement_error_handler(request: Request, exc: OrderPlacementError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = _jsonable_errors(exc)
    return JSONResponse(
        status_code=400,
        content={
            "message": _validation_message(errors),
            "error": "VALIDATION_ERROR",
            "detail": errors,
        },
    )


def _jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]


def _validation_message(errors: list[dict]) -> str:
    """例: "items.0.quantity: Input should be a valid integer" """
    parts = []
    for err in errors:
        # 先頭の "body" は利用者には意味がない
        loc = [str(p) for p in err["loc"] if p != "body"]
        parts.append(f"{'.'.join(loc)}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts) or "Invalid request"


# ── Dependencies ─────────────────────────────────


def get_services(request: Request) -> Services:
    return request.app.state.services


async def current_identity(
    authorization: str | None = Header(default=None),
    services: Services = Depends(get_services),
) -> Identity:
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthorized("Unauthorized")
    identity = await services.auth.verify(authorization[len("Bearer "):])
    if identity is None:
        raise Unauthorized("Unauthorized")
    return identity


async def admin_identity(identity: Identity = Depends(current_identity)) -> Identity:
    if identity.role is not Role.ADMIN:
        raise Forbidden("Access denied. Admin privileges required.")
    return identity


# ── Request Models ───────────────────────────────


class OrderItemIn(BaseModel):
    product_id: str | int
    quantity: int


class PlaceOrderRequest(BaseModel):
    shipping_address: str = ""
    payment_method: str = ""
    items: list[OrderItemIn] = []


# ── Endpoints ────────────────────────────────────

router = APIRouter()


@router.post("/api/orders", status_code=201)
async def place_order(
    req: PlaceOrderRequest,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    """注文確定（在庫引き当て → 注文保存 → カートクリア）"""
    result = await services.coordinator.place_order(
        identity.user_id,
        req.shipping_address,
        req.payment_method,
        [PlaceOrderItem(product_id=str(i.product_id), quantity=i.quantity) for i in req.items],
    )
    return {
        "message": "Order created successfully",
        "data": result.order.to_dict(),
        "order_id": result.order.id,
        "saga_log": result.saga_log,
    }


@router.get("/api/orders")
async def list_orders(
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    """自分の注文一覧（管理者は全件）"""
    match identity.role:
        case Role.ADMIN:
            found = await services.orders.list_all()
        case Role.CUSTOMER:
            found = await services.orders.list_for_user(identity.user_id)
        case _:
            assert_never(identity.role)
    return {
        "message": "Orders retrieved successfully",
        "data": [order.to_dict() for order in found],
    }


@router.get("/api/orders/{order_id}")
async def get_order(
    order_id: str,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    order = await services.orders.get(order_id)
    if order is None:
        raise OrderNotFound("Order not found", order_id=order_id)
    match identity.role:
        case Role.ADMIN:
            pass
        case Role.CUSTOMER:
            # 他人の注文は存在しないものとして扱う
            if order.user_id != identity.user_id:
                raise OrderNotFound("Order not found", order_id=order_id)
        case _:
            assert_never(identity.role)
    return {"data": order.to_dict()}


@router.get("/api/admin/orders")
async def admin_list_orders(
    _admin: Identity = Depends(admin_identity),
    services: Services = Depends(get_services),
):
    found = await services.orders.list_all()
    return {"success": True, "data": [o.to_dict() for o in found], "count": len(found)}


@router.get("/api/products")
async def list_products(services: Services = Depends(get_services)):
    return await services.catalog.list_products()


@router.get("/api/products/{product_id}")
async def get_product(product_id: str, services: Services = Depends(get_services)):
    product = await services.catalog.get_product(product_id)
    if not product:
        raise NotFoundError(product_id)
    return product


@router.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}


app = create_app()
