"""
Order Service — 外部協調サービス

注文確定の中核から見た外部サービス:
  - AuthVerifier : 認証トークン → 利用者 ID とロール（Auth Service へ HTTP）
  - UserDirectory: 利用者が存在するか（users テーブル）
  - Catalog      : 商品の価格・在庫の参照（読み取り専用）
  - CartService  : 注文確定後のカートのクリア（Cart Service へ HTTP）
"""

import logging
from decimal import Decimal

import httpx
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from .errors import CartClearFailure, StoreUnavailable
from .models import Identity, Role
from .schema import products, users

logger = logging.getLogger(__name__)


class AuthVerifier:
    def __init__(self, base_url: str, client: httpx.AsyncClient) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client

    async def verify(self, credential: str) -> Identity | None:
        """トークンを検証する。無効なら None。"""
        if not credential:
            return None
        try:
            resp = await self.client.get(
                f"{self.base_url}/verify",
                headers={"Authorization": f"Bearer {credential}"},
            )
        except httpx.HTTPError as e:
            raise StoreUnavailable("Auth service unavailable") from e

        if resp.status_code in (401, 403):
            return None
        if resp.status_code >= 500:
            raise StoreUnavailable("Auth service unavailable", status=resp.status_code)
        if resp.status_code != 200:
            return None

        data = resp.json()
        user_id = data.get("user_id") or data.get("id")
        try:
            role = Role(data.get("role", Role.CUSTOMER.value))
        except ValueError:
            logger.warning("Rejecting token with unknown role %r", data.get("role"))
            return None
        if user_id is None:
            return None
        return Identity(user_id=str(user_id), role=role)


class UserDirectory:
    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    async def exists(self, user_id: str) -> bool:
        try:
            async with self.engine.connect() as conn:
                found = await conn.scalar(select(users.c.id).where(users.c.id == user_id))
        except SQLAlchemyError as e:
            raise StoreUnavailable("User directory unavailable") from e
        return found is not None


class Catalog:
    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    async def get_product(self, product_id: str) -> dict | None:
        async with self.engine.connect() as conn:
            row = (await conn.execute(select(products).where(products.c.id == product_id))).first()
        if not row:
            return None
        return _product_dict(row)

    async def list_products(self) -> list[dict]:
        async with self.engine.connect() as conn:
            result = await conn.execute(select(products).order_by(products.c.name))
            return [_product_dict(row) for row in result.fetchall()]

    async def price_of(self, product_id: str) -> Decimal | None:
        async with self.engine.connect() as conn:
            price = await conn.scalar(select(products.c.price).where(products.c.id == product_id))
        return None if price is None else Decimal(price)


def _product_dict(row) -> dict:
    return {
        "id": row.id,
        "name": row.name,
        "price": str(Decimal(row.price)),
        "quantity": row.quantity,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


class CartService:
    def __init__(self, base_url: str, client: httpx.AsyncClient) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client

    async def clear(self, user_id: str) -> None:
        try:
            resp = await self.client.delete(f"{self.base_url}/carts/{user_id}/items")
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise CartClearFailure(f"Failed to clear cart for user {user_id}: {e}") from e
