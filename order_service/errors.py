"""
Order Service — エラー定義

注文確定の各段階で発生しうるエラー。
status_code / code は HTTP レスポンスにそのまま使われる。
"""


class OrderPlacementError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, **details) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {"message": self.message, "error": self.code, **self.details}


class ValidationError(OrderPlacementError):
    """入力不備。引き当て前に拒否する。"""
    status_code = 400
    code = "VALIDATION_ERROR"


class UserNotFound(OrderPlacementError):
    status_code = 400
    code = "USER_NOT_FOUND"


class Unauthorized(OrderPlacementError):
    status_code = 401
    code = "UNAUTHORIZED"


class Forbidden(OrderPlacementError):
    status_code = 403
    code = "FORBIDDEN"


class OrderNotFound(OrderPlacementError):
    status_code = 404
    code = "ORDER_NOT_FOUND"


class NotFoundError(OrderPlacementError):
    """商品が存在しない"""
    status_code = 404
    code = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: str, **details) -> None:
        super().__init__(f"Product with ID {product_id} not found", product_id=product_id, **details)
        self.product_id = product_id


ProductNotFound = NotFoundError


class InsufficientStockError(OrderPlacementError):
    """条件付き UPDATE が 0 行だった（在庫不足）"""
    status_code = 409
    code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: str, requested: int, available: int, **details) -> None:
        super().__init__(
            f"Insufficient quantity for product ID {product_id}: "
            f"requested={requested}, available={available}",
            product_id=product_id,
            requested=requested,
            available=available,
            **details,
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class StoreUnavailable(OrderPlacementError):
    """一時的な I/O 障害。呼び出し側で再試行できる。"""
    status_code = 503
    code = "STORE_UNAVAILABLE"


class PersistenceError(OrderPlacementError):
    status_code = 500
    code = "PERSISTENCE_ERROR"


class CompensationFailure(OrderPlacementError):
    """
    中断後の在庫解放そのものが失敗した。

    在庫数が実際より少なく記録されたままになるため、手動での照合が必要。
    """
    status_code = 500
    code = "COMPENSATION_FAILURE"

    def __init__(self, cause: OrderPlacementError, unreleased: list[tuple[str, int]], **details) -> None:
        super().__init__(
            "Order aborted and stock release failed; manual reconciliation required",
            cause=cause.code,
            unreleased=[{"product_id": p, "quantity": q} for p, q in unreleased],
            **details,
        )
        self.cause = cause
        self.unreleased = unreleased


class CartClearFailure(Exception):
    """カートのクリアに失敗した。ログに残すだけで注文には影響しない。"""
