"""
Order Service — 注文リポジトリ (OrderRepository)

注文と明細は 1 つのトランザクションでまとめて書き込む。
途中まで書かれた注文が他の読み手から見えることはない。
"""

import logging
from collections import defaultdict
from decimal import Decimal

from sqlalchemy import insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from .errors import PersistenceError, ValidationError
from .models import Order, OrderLineItem, OrderStatus, full_name
from .schema import order_items, orders, products, users

logger = logging.getLogger(__name__)


class OrderRepository:
    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    async def create(self, order: Order) -> Order:
        """注文と全明細を 1 トランザクションで保存する。"""
        if not order.items:
            raise ValidationError("An order must have at least one line item")

        try:
            async with self.engine.begin() as conn:
                await conn.execute(
                    insert(orders).values(
                        id=order.id,
                        user_id=order.user_id,
                        status=order.status.value,
                        shipping_address=order.shipping_address,
                        payment_method=order.payment_method,
                        total_amount=order.total_amount,
                        created_at=order.created_at,
                    )
                )
                await conn.execute(
                    insert(order_items),
                    [
                        {
                            "order_id": order.id,
                            "product_id": item.product_id,
                            "quantity": item.quantity,
                            "price": item.unit_price_at_purchase,
                        }
                        for item in order.items
                    ],
                )
        except SQLAlchemyError as e:
            logger.warning("[order=%s] persisting order failed: %s", order.id, e)
            raise PersistenceError(f"Failed to persist order {order.id}", order_id=order.id) from e

        logger.info("[order=%s] order persisted with %d items", order.id, len(order.items))
        return order

    async def get(self, order_id: str) -> Order | None:
        found = await self._load(orders.c.id == order_id)
        return found[0] if found else None

    async def list_for_user(self, user_id: str) -> list[Order]:
        return await self._load(orders.c.user_id == user_id)

    async def list_all(self) -> list[Order]:
        """管理者向け: 全注文"""
        return await self._load(None)

    async def _load(self, condition) -> list[Order]:
        # 注文者のメールと氏名を users から結合する（退会済みでも注文は返す）
        query = (
            select(
                orders,
                users.c.email.label("user_email"),
                users.c.first_name,
                users.c.last_name,
            )
            .select_from(orders.outerjoin(users, orders.c.user_id == users.c.id))
            .order_by(orders.c.created_at.desc(), orders.c.id)
        )
        if condition is not None:
            query = query.where(condition)
        try:
            async with self.engine.connect() as conn:
                rows = (await conn.execute(query)).fetchall()
                items = await _load_items(conn, [row.id for row in rows])
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to read orders") from e

        return [
            Order(
                id=row.id,
                user_id=row.user_id,
                status=OrderStatus(row.status),
                shipping_address=row.shipping_address,
                payment_method=row.payment_method,
                total_amount=Decimal(row.total_amount),
                created_at=row.created_at,
                items=tuple(items[row.id]),
                user_email=row.user_email,
                customer_name=full_name(row.first_name, row.last_name),
            )
            for row in rows
        ]


async def _load_items(conn: AsyncConnection, order_ids: list[str]) -> dict[str, list[OrderLineItem]]:
    grouped: dict[str, list[OrderLineItem]] = defaultdict(list)
    if not order_ids:
        return grouped
    result = await conn.execute(
        select(order_items, products.c.name.label("product_name"))
        .select_from(order_items.outerjoin(products, order_items.c.product_id == products.c.id))
        .where(order_items.c.order_id.in_(order_ids))
        .order_by(order_items.c.order_id, order_items.c.product_id)
    )
    for row in result:
        grouped[row.order_id].append(
            OrderLineItem(
                order_id=row.order_id,
                product_id=row.product_id,
                quantity=row.quantity,
                unit_price_at_purchase=Decimal(row.price),
                product_name=row.product_name,
            )
        )
    return grouped
