"""
Order Service — ドメインモデル

Order / OrderLineItem は確定後は不変。
Reservation は永続化しない一時的な値で、在庫引き当ての結果を表す。
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum

CENT = Decimal("0.01")


class OrderStatus(str, Enum):
    PENDING = "pending"
    COMMITTED = "committed"
    FAILED = "failed"


class Role(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


class ReservationOutcome(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"


@dataclass(frozen=True)
class Identity:
    """AuthVerifier が返す利用者情報"""
    user_id: str
    role: Role


@dataclass(frozen=True)
class PlaceOrderItem:
    product_id: str
    quantity: int


@dataclass(frozen=True)
class Reservation:
    product_id: str
    quantity: int
    outcome: ReservationOutcome
    price_snapshot: Decimal | None = None
    reason: str | None = None
    available: int | None = None

    @property
    def granted(self) -> bool:
        return self.outcome is ReservationOutcome.GRANTED


@dataclass(frozen=True)
class OrderLineItem:
    order_id: str
    product_id: str
    quantity: int
    unit_price_at_purchase: Decimal
    # 読み出し時に products から結合する表示用の値
    product_name: str | None = None

    @property
    def subtotal(self) -> Decimal:
        return (self.unit_price_at_purchase * self.quantity).quantize(CENT)

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "price": str(self.unit_price_at_purchase),
            "subtotal": str(self.subtotal),
            "product_name": self.product_name,
            "product": {"id": self.product_id, "name": self.product_name},
        }


@dataclass(frozen=True)
class Order:
    id: str
    user_id: str
    status: OrderStatus
    shipping_address: str
    payment_method: str
    total_amount: Decimal
    created_at: datetime
    items: tuple[OrderLineItem, ...] = field(default_factory=tuple)
    # 読み出し時に users から結合する表示用の値
    user_email: str | None = None
    customer_name: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "user_email": self.user_email,
            "customer_name": self.customer_name,
            "customer_email": self.user_email,
            "status": self.status.value,
            "shipping_address": self.shipping_address,
            "payment_method": self.payment_method,
            "total_amount": str(self.total_amount),
            "created_at": self.created_at.isoformat(),
            "order_items": [item.to_dict() for item in self.items],
        }


def full_name(first_name: str | None, last_name: str | None) -> str | None:
    name = f"{first_name or ''} {last_name or ''}".strip()
    return name or None


def total_of(items) -> Decimal:
    """明細から合計金額を算出する。"""
    return sum((item.subtotal for item in items), Decimal("0")).quantize(CENT)
