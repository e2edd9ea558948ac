"""
Order Service — 注文確定オーケストレーター (OrderCoordinator)

Saga パターン（オーケストレーション型）:
  在庫の引き当て → 注文の保存 → カートのクリア を順に実行する。
  途中で失敗した場合は、引き当て済みの在庫をすべて解放(補償)してから
  具体的なエラーを 1 つだけ呼び出し側に返す。

  状態遷移:
  ┌──────────────────────────────────────────────────────────────┐
  │  INIT → RESERVING → PERSISTING → COMMITTED → CART_CLEAR → DONE │
  │            │             │                                     │
  │            └─────────────┴──→ COMPENSATING → ABORTED           │
  └──────────────────────────────────────────────────────────────┘

  ABORTED の後に注文の行が見えることはない。
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Sequence
from uuid import uuid4

from .collaborators import CartService, UserDirectory
from .errors import (
    CartClearFailure,
    CompensationFailure,
    InsufficientStockError,
    NotFoundError,
    OrderPlacementError,
    PersistenceError,
    UserNotFound,
    ValidationError,
)
from .events import InventoryReconciliationRequired, OrderPlaced, OrderPlacementFailed
from .inventory import DenialReason, InventoryLedger
from .models import Order, OrderLineItem, OrderStatus, PlaceOrderItem, Reservation, total_of
from .publisher import INVENTORY_CHANNEL, ORDER_CHANNEL, EventPublisher
from .repository import OrderRepository

logger = logging.getLogger(__name__)


class PlacementState(str, Enum):
    INIT = "INIT"
    RESERVING = "RESERVING"
    PERSISTING = "PERSISTING"
    COMMITTED = "COMMITTED"
    CART_CLEAR = "CART_CLEAR"
    DONE = "DONE"
    COMPENSATING = "COMPENSATING"
    ABORTED = "ABORTED"


@dataclass
class PlacementResult:
    order: Order
    saga_log: list[dict]


@dataclass
class _Run:
    """1 回の注文確定の実行状態"""
    order_id: str
    user_id: str
    state: PlacementState = PlacementState.INIT
    granted: list[Reservation] = field(default_factory=list)
    saga_log: list[dict] = field(default_factory=list)

    def step(self, action: str, **extra) -> dict:
        entry = {
            "step": len(self.saga_log) + 1,
            "action": action,
            "status": "EXECUTING",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **extra,
        }
        self.saga_log.append(entry)
        return entry

    def enter(self, state: PlacementState) -> None:
        logger.debug("[order=%s] %s -> %s", self.order_id, self.state.value, state.value)
        self.state = state


class OrderCoordinator:
    def __init__(
        self,
        ledger: InventoryLedger,
        orders: OrderRepository,
        users: UserDirectory,
        cart: CartService,
        publisher: EventPublisher | None = None,
        persist_timeout: float = 5.0,
    ) -> None:
        self.ledger = ledger
        self.orders = orders
        self.users = users
        self.cart = cart
        self.publisher = publisher
        self.persist_timeout = persist_timeout

    async def place_order(
        self,
        user_id: str,
        shipping_address: str,
        payment_method: str,
        items: Sequence[PlaceOrderItem],
    ) -> PlacementResult:
        """
        注文を確定する。

        成功時は保存済みの注文と Saga ログを返す。
        失敗時は補償を終えてから OrderPlacementError のサブクラスを送出する。
        """
        shipping_address, payment_method, requested = _validate(
            shipping_address, payment_method, items
        )
        if not await self.users.exists(user_id):
            raise UserNotFound("User account not found. Please log in again.", user_id=user_id)

        run = _Run(order_id=str(uuid4()), user_id=user_id)
        logger.info(
            "[order=%s] placement started user=%s items=%d",
            run.order_id, user_id, len(requested),
        )

        # ── RESERVING: 商品 ID 昇順で引き当て ──────────────
        run.enter(PlacementState.RESERVING)
        try:
            for item in requested:
                entry = run.step("ReserveInventory", product_id=item.product_id, quantity=item.quantity)
                try:
                    reservation = await self.ledger.reserve(item.product_id, item.quantity, run.order_id)
                except OrderPlacementError as e:
                    _fail(entry, e)
                    await self._abort(run, e)
                if not reservation.granted:
                    error = _denial_error(reservation)
                    _fail(entry, error)
                    await self._abort(run, error)
                run.granted.append(reservation)
                entry["status"] = "COMPLETED"
        except asyncio.CancelledError:
            await self._compensate(run)
            raise

        # ── PERSISTING ─────────────────────────────────
        run.enter(PlacementState.PERSISTING)
        order = self._build_order(run, shipping_address, payment_method)
        entry = run.step("CreateOrder", total_amount=str(order.total_amount))
        try:
            order = await self._persist(run, order)
        except CompensationFailure as e:
            _fail(entry, e)
            raise
        except OrderPlacementError as e:
            _fail(entry, e)
            await self._abort(run, e)
        except asyncio.CancelledError:
            await self._settle_cancelled(run, order)
            raise
        entry["status"] = "COMPLETED"

        # ── COMMITTED: 引き当ては注文に消費された ───────────
        run.enter(PlacementState.COMMITTED)
        run.granted.clear()
        logger.info(
            "[order=%s] order committed total=%s items=%d",
            order.id, order.total_amount, len(order.items),
        )
        # ここから先の失敗で確定済みの注文をエラーにしてはならない
        try:
            await self._publish(
                ORDER_CHANNEL,
                OrderPlaced(
                    order_id=order.id,
                    user_id=user_id,
                    total_amount=order.total_amount,
                    item_count=len(order.items),
                    timestamp=datetime.now(timezone.utc),
                ),
            )
        except Exception:
            logger.warning("[order=%s] publishing OrderPlaced failed", order.id, exc_info=True)

        # ── CART_CLEAR: ベストエフォート ──────────────────
        run.enter(PlacementState.CART_CLEAR)
        entry = run.step("ClearCart")
        try:
            await self.cart.clear(user_id)
            entry["status"] = "COMPLETED"
        except CartClearFailure as e:
            # 注文は確定済み。ロールバックしない。
            logger.warning("[order=%s] cart clear failed for user=%s: %s", order.id, user_id, e)
            _fail(entry, e)
        except Exception as e:
            logger.warning(
                "[order=%s] cart clear failed for user=%s: %r", order.id, user_id, e, exc_info=True
            )
            _fail(entry, e)

        run.enter(PlacementState.DONE)
        return PlacementResult(order=order, saga_log=run.saga_log)

    def _build_order(self, run: _Run, shipping_address: str, payment_method: str) -> Order:
        # 合計は引き当て時の価格スナップショットから算出する
        lines = tuple(
            OrderLineItem(
                order_id=run.order_id,
                product_id=r.product_id,
                quantity=r.quantity,
                unit_price_at_purchase=r.price_snapshot,
            )
            for r in run.granted
        )
        return Order(
            id=run.order_id,
            user_id=run.user_id,
            status=OrderStatus.COMMITTED,
            shipping_address=shipping_address,
            payment_method=payment_method,
            total_amount=total_of(lines),
            created_at=datetime.now(timezone.utc),
            items=lines,
        )

    async def _persist(self, run: _Run, order: Order) -> Order:
        try:
            return await asyncio.wait_for(self.orders.create(order), self.persist_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "[order=%s] persisting exceeded %.2fs deadline", order.id, self.persist_timeout
            )

        # コミットが期限と競合した可能性がある。見えていれば確定扱い。
        try:
            persisted = await self.orders.get(order.id)
        except PersistenceError as e:
            # 確定したかどうか判断できない: 解放すると二重計上の恐れがある
            cause = PersistenceError(
                f"Persisting order {order.id} timed out and its outcome is unknown",
                order_id=order.id,
            )
            unreleased = [(r.product_id, r.quantity) for r in run.granted]
            for product_id, quantity in unreleased:
                await self._flag_reconciliation(run, product_id, quantity, e)
            run.granted.clear()
            run.enter(PlacementState.ABORTED)
            raise CompensationFailure(cause, unreleased, saga_log=run.saga_log) from e

        if persisted is None:
            raise PersistenceError(
                f"Persisting order {order.id} timed out after {self.persist_timeout}s",
                order_id=order.id,
            )
        logger.info("[order=%s] order became visible after the deadline", order.id)
        return persisted

    async def _settle_cancelled(self, run: _Run, order: Order) -> None:
        """保存中にキャンセルされた実行の引き当てを片付ける。CancelledError は呼び出し側が送出し直す。"""
        try:
            persisted = await self.orders.get(order.id)
        except OrderPlacementError as e:
            # 確定したかどうか判断できない: 解放せずに照合を依頼する
            logger.warning("[order=%s] cancelled while persisting; outcome unknown", order.id)
            for reservation in list(run.granted):
                await self._flag_reconciliation(run, reservation.product_id, reservation.quantity, e)
            run.granted.clear()
            run.enter(PlacementState.ABORTED)
            return

        if persisted is None:
            await self._compensate(run)
            run.enter(PlacementState.ABORTED)
        else:
            # 保存は完了していた: 引き当ては注文に消費済み
            run.granted.clear()
            run.enter(PlacementState.COMMITTED)

    async def _abort(self, run: _Run, error: OrderPlacementError) -> None:
        """補償を実行し、呼び出し側へ返すエラーを送出する。戻らない。"""
        logger.warning(
            "[order=%s] placement aborted in %s: %s", run.order_id, run.state.value, error.message
        )
        unreleased = await self._compensate(run)
        run.enter(PlacementState.ABORTED)

        await self._publish(
            ORDER_CHANNEL,
            OrderPlacementFailed(
                order_id=run.order_id,
                user_id=run.user_id,
                error=error.code,
                saga_log=run.saga_log,
                timestamp=datetime.now(timezone.utc),
            ),
        )

        if unreleased:
            raise CompensationFailure(error, unreleased, saga_log=run.saga_log) from error
        error.details["saga_log"] = run.saga_log
        raise error

    async def _compensate(self, run: _Run) -> list[tuple[str, int]]:
        """引き当て済みの在庫を逆順に 1 回ずつ解放する。解放できなかったものを返す。"""
        run.enter(PlacementState.COMPENSATING)
        unreleased: list[tuple[str, int]] = []
        while run.granted:
            # pop してから解放する: 同じ引き当てを二度解放しない
            reservation = run.granted.pop()
            entry = run.step(
                "ReleaseInventory (COMPENSATING)",
                product_id=reservation.product_id,
                quantity=reservation.quantity,
            )
            try:
                await self.ledger.release(reservation.product_id, reservation.quantity, run.order_id)
                entry["status"] = "COMPLETED"
            except OrderPlacementError as e:
                _fail(entry, e)
                unreleased.append((reservation.product_id, reservation.quantity))
                await self._flag_reconciliation(run, reservation.product_id, reservation.quantity, e)
        return unreleased

    async def _flag_reconciliation(self, run: _Run, product_id: str, quantity: int, error: Exception) -> None:
        logger.critical(
            "[order=%s] COMPENSATION FAILED: %s qty=%d was not released (%s). "
            "Manual stock reconciliation required.",
            run.order_id, product_id, quantity, error,
        )
        await self._publish(
            INVENTORY_CHANNEL,
            InventoryReconciliationRequired(
                product_id=product_id,
                order_id=run.order_id,
                quantity=quantity,
                error=str(error),
                timestamp=datetime.now(timezone.utc),
            ),
        )

    async def _publish(self, channel: str, event) -> None:
        if self.publisher is not None:
            await self.publisher.publish(channel, event)


def _validate(
    shipping_address: str,
    payment_method: str,
    items: Sequence[PlaceOrderItem],
) -> tuple[str, str, list[PlaceOrderItem]]:
    """入力を検証し、同じ商品をまとめて商品 ID 昇順に並べる。"""
    shipping_address = (shipping_address or "").strip()
    payment_method = (payment_method or "").strip()
    if not shipping_address or not payment_method or not items:
        raise ValidationError("Shipping address, payment method, and items are required")

    merged: dict[str, int] = {}
    for item in items:
        product_id = str(item.product_id).strip() if item.product_id is not None else ""
        if not product_id:
            raise ValidationError("Every item needs a product_id")
        quantity = item.quantity
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError(
                f"Quantity for product ID {product_id} must be a positive integer",
                product_id=product_id,
            )
        merged[product_id] = merged.get(product_id, 0) + quantity

    return (
        shipping_address,
        payment_method,
        [PlaceOrderItem(product_id=p, quantity=q) for p, q in sorted(merged.items())],
    )


def _denial_error(reservation: Reservation) -> OrderPlacementError:
    if reservation.reason == DenialReason.NOT_FOUND.value:
        return NotFoundError(reservation.product_id)
    return InsufficientStockError(
        reservation.product_id,
        requested=reservation.quantity,
        available=reservation.available or 0,
    )


def _fail(entry: dict, error: Exception) -> None:
    entry["status"] = "FAILED"
    entry["error"] = getattr(error, "message", None) or str(error)
