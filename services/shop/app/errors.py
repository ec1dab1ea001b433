"""
Shop Service — ドメインエラー

コマンド/クエリ層はこれらの例外を送出し、main.py の例外ハンドラが
HTTP ステータスに変換する。DB やキャッシュのエラーは変換せずにそのまま伝播させる。
"""

from uuid import UUID


class ShopError(Exception):
    """ドメインエラーの基底クラス"""


class NotFound(ShopError):
    """参照されたユーザー・商品・注文が存在しない"""

    def __init__(self, entity: str, entity_id: UUID | str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} with ID {entity_id} not found")


class InsufficientStock(ShopError):
    """要求数量が在庫数を上回っている"""

    def __init__(self, product_id: UUID, requested: int, available: int) -> None:
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock: requested={requested}, available={available}"
        )


class InvalidTransition(ShopError):
    """許可されていない注文ステータス遷移"""

    def __init__(self, current: str, target: str, message: str | None = None) -> None:
        self.current = current
        self.target = target
        super().__init__(message or f"cannot change order status from {current} to {target}")


class InvalidInput(ShopError):
    """入力値がドメインの前提条件を満たさない"""
