"""
Shop Service — 在庫台帳 (Stock Ledger)

商品の在庫数を変更できる唯一のコンポーネント。
どちらの操作も 1 回のストア呼び出しで「判定と書き込み」を行う。

  adjust(product_id, delta): stock = max(0, stock + delta)
      負になる分は 0 にクリップする（エラーにはしない）。
      クリップが発生した場合は呼び出し側が在庫確認を省いたか、
      同時実行の競合に当たったことを意味するので WARNING を出す。

  take(product_id, quantity): stock >= quantity のときだけ減算
      注文作成で使う条件付き減算。足りなければ InsufficientStock。

書き込み後のキャッシュ無効化は store.after_commit に登録し、commit 後に行う。
commit 自体は呼び出し側（コマンドハンドラ）の責務。
"""

import logging
from uuid import UUID

from .errors import InsufficientStock, InvalidInput, NotFound
from .lookup import EntityLookup
from .models import Product, utcnow

logger = logging.getLogger(__name__)


class StockLedger:
    def __init__(self, store, products: EntityLookup[Product]) -> None:
        self.store = store
        self.products = products

    async def adjust(self, product_id: UUID, delta: int) -> int:
        result = await self.store.products.adjust_stock(product_id, delta, utcnow())
        if result is None:
            raise NotFound("Product", product_id)

        new_stock, clamped = result
        if clamped:
            logger.warning(
                "Stock clamped to zero: product=%s delta=%s", product_id, delta
            )
        self.store.after_commit(self.products.invalidate, product_id)
        return new_stock

    async def take(self, product_id: UUID, quantity: int) -> int:
        if quantity < 1:
            raise InvalidInput("quantity must be at least 1")

        new_stock = await self.store.products.take_stock(product_id, quantity, utcnow())
        if new_stock is None:
            product = await self.store.products.get(product_id)
            if product is None:
                raise NotFound("Product", product_id)
            # キャッシュ上の在庫は古かったので捨てる
            await self.products.invalidate(product_id)
            raise InsufficientStock(product_id, quantity, product.stock)

        self.store.after_commit(self.products.invalidate, product_id)
        return new_stock
