"""
Order Service — 在庫台帳 (InventoryLedger)

在庫の引き当て(Reserve)と解放(Release)を担当する。

引き当ては 1 本の条件付き UPDATE で行う:

    UPDATE products SET quantity = quantity - :q
    WHERE id = :p AND quantity >= :q
    RETURNING price, quantity

先に SELECT してから UPDATE する方式は競合(TOCTOU)を起こす。
条件付き UPDATE なら同じ行への書き込みはストアが直列化するので、
合計が在庫を超える 2 つの引き当てが両方成功することはない。
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from .errors import NotFoundError, StoreUnavailable, ValidationError
from .events import InventoryReleased, InventoryReservationFailed, InventoryReserved
from .models import Reservation, ReservationOutcome
from .publisher import INVENTORY_CHANNEL, EventPublisher
from .schema import products

logger = logging.getLogger(__name__)


class DenialReason(str, Enum):
    NOT_FOUND = "not_found"
    INSUFFICIENT_STOCK = "insufficient_stock"


class InventoryLedger:
    def __init__(self, engine: AsyncEngine, publisher: EventPublisher | None = None) -> None:
        self.engine = engine
        self.publisher = publisher

    async def reserve(
        self,
        product_id: str,
        quantity: int,
        order_id: str | None = None,
    ) -> Reservation:
        """
        在庫引き当て

        成功すれば価格のスナップショット付きの GRANTED、
        商品がない / 在庫不足なら DENIED を返す。
        I/O 障害は StoreUnavailable（呼び出し側で再試行可能）。
        """
        _check_quantity(quantity)
        now = datetime.now(timezone.utc)
        available = None
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(
                    update(products)
                    .where(products.c.id == product_id, products.c.quantity >= quantity)
                    .values(quantity=products.c.quantity - quantity, updated_at=now)
                    .returning(products.c.price, products.c.quantity)
                )
                row = result.first()
                if row is None:
                    # 0 行 → 商品がないのか在庫不足なのかを区別する
                    available = await conn.scalar(
                        select(products.c.quantity).where(products.c.id == product_id)
                    )
        except SQLAlchemyError as e:
            raise _unavailable("reserve", product_id, e) from e

        if row is None:
            reason = DenialReason.NOT_FOUND if available is None else DenialReason.INSUFFICIENT_STOCK
            logger.warning(
                "[order=%s] reservation denied: %s qty=%d (%s, available=%s)",
                order_id, product_id, quantity, reason.value, available,
            )
            await self._publish(
                InventoryReservationFailed(
                    product_id=product_id,
                    order_id=order_id,
                    quantity_requested=quantity,
                    quantity_available=available,
                    reason=reason.value,
                    timestamp=now,
                )
            )
            return Reservation(
                product_id=product_id,
                quantity=quantity,
                outcome=ReservationOutcome.DENIED,
                reason=reason.value,
                available=available,
            )

        price = Decimal(row.price)
        logger.info(
            "[order=%s] inventory reserved: %s qty=%d (remaining=%d)",
            order_id, product_id, quantity, row.quantity,
        )
        await self._publish(
            InventoryReserved(
                product_id=product_id,
                order_id=order_id,
                quantity=quantity,
                price_snapshot=price,
                remaining=row.quantity,
                timestamp=now,
            )
        )
        return Reservation(
            product_id=product_id,
            quantity=quantity,
            outcome=ReservationOutcome.GRANTED,
            price_snapshot=price,
        )

    async def release(
        self,
        product_id: str,
        quantity: int,
        order_id: str | None = None,
    ) -> None:
        """
        在庫解放（補償）

        無条件に在庫を戻す。1 回の引き当てにつき 1 回だけ呼ぶこと。
        二重解放の防止は呼び出し側の責務。
        """
        _check_quantity(quantity)
        now = datetime.now(timezone.utc)
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(
                    update(products)
                    .where(products.c.id == product_id)
                    .values(quantity=products.c.quantity + quantity, updated_at=now)
                    .returning(products.c.quantity)
                )
                remaining = result.scalar()
        except SQLAlchemyError as e:
            raise _unavailable("release", product_id, e) from e

        if remaining is None:
            raise NotFoundError(product_id)

        logger.info(
            "[order=%s] inventory released: %s qty=%d (remaining=%d)",
            order_id, product_id, quantity, remaining,
        )
        await self._publish(
            InventoryReleased(
                product_id=product_id,
                order_id=order_id,
                quantity=quantity,
                remaining=remaining,
                timestamp=now,
            )
        )

    async def _publish(self, event) -> None:
        if self.publisher is not None:
            await self.publisher.publish(INVENTORY_CHANNEL, event)


def _check_quantity(quantity: int) -> None:
    # 負の数量で引き当てると在庫が増えてしまう
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError(f"quantity must be a positive integer, got {quantity!r}")


def _unavailable(action: str, product_id: str, error: SQLAlchemyError) -> StoreUnavailable:
    logger.warning("Inventory %s failed for %s: %s", action, product_id, error)
    return StoreUnavailable(
        f"Inventory store unavailable during {action} of {product_id}",
        product_id=product_id,
    )
