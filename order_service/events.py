"""
Order Service — イベント定義

注文確定の過程で発生した事実。Redis Pub/Sub で他サービスへ通知する。
イベントは過去形で命名し、不変として扱う。
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class InventoryReserved(BaseModel):
    """在庫が引き当てられた"""
    product_id: str
    order_id: str | None
    quantity: int
    price_snapshot: Decimal
    remaining: int
    timestamp: datetime


class InventoryReservationFailed(BaseModel):
    """在庫引き当てが失敗した（商品なし / 在庫不足）"""
    product_id: str
    order_id: str | None
    quantity_requested: int
    quantity_available: int | None
    reason: str
    timestamp: datetime


class InventoryReleased(BaseModel):
    """引き当て済み在庫が解放された（補償）"""
    product_id: str
    order_id: str | None
    quantity: int
    remaining: int
    timestamp: datetime


class InventoryReconciliationRequired(BaseModel):
    """補償の解放に失敗した。手動で在庫を照合する必要がある。"""
    product_id: str
    order_id: str
    quantity: int
    error: str
    timestamp: datetime


class OrderPlaced(BaseModel):
    """注文が確定された"""
    order_id: str
    user_id: str
    total_amount: Decimal
    item_count: int
    timestamp: datetime


class OrderPlacementFailed(BaseModel):
    """注文確定が中断された（補償済み）"""
    order_id: str
    user_id: str
    error: str
    saga_log: list[dict]
    timestamp: datetime
