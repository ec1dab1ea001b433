"""
Shop Service — FastAPI エントリーポイント

ユーザー・商品・注文の API。注文の作成とキャンセルは在庫と連動する。
ドメインエラーは例外ハンドラで HTTP ステータスに変換する:

    NotFound          → 404
    InsufficientStock → 409
    InvalidTransition → 400
    InvalidInput      → 422
"""

import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, queries, schema
from .cache import MemoryCache, RedisCache
from .config import (
    CACHE_BACKEND,
    CACHE_PREFIX,
    DATABASE_URL,
    LOG_LEVEL,
    REDIS_URL,
    use_memory_store,
)
from .errors import InsufficientStock, InvalidInput, InvalidTransition, NotFound
from .memory import MemoryDatabase, MemoryStore
from .models import Order, OrderStatus, Product, ShippingAddress, User, UserRole
from .repository import SqlStore

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

if use_memory_store():
    engine = None
    async_session = None
    memory_db: MemoryDatabase | None = MemoryDatabase()
else:
    engine = create_async_engine(DATABASE_URL, echo=False)
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    memory_db = None

redis_pool: aioredis.Redis | None = None
cache: MemoryCache | RedisCache | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool, cache
    if CACHE_BACKEND == "redis":
        redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
        cache = RedisCache(redis_pool, prefix=CACHE_PREFIX)
    else:
        cache = MemoryCache()
    if engine is not None:
        await schema.create_tables(engine)
    logger.info("Shop service started (cache=%s)", CACHE_BACKEND)
    yield
    if redis_pool is not None:
        await redis_pool.aclose()
    if engine is not None:
        await engine.dispose()


app = FastAPI(title="Shop Service", lifespan=lifespan)


@asynccontextmanager
async def open_store():
    """リクエストごとの作業単位を開く"""
    if memory_db is not None:
        yield MemoryStore(memory_db)
    else:
        async with async_session() as session:
            yield SqlStore(session)


# ── Exception Handlers ───────────────────────────


@app.exception_handler(NotFound)
async def handle_not_found(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InsufficientStock)
async def handle_insufficient_stock(request: Request, exc: InsufficientStock):
    return JSONResponse(
        status_code=409,
        content={
            "detail": str(exc),
            "requested": exc.requested,
            "available": exc.available,
        },
    )


@app.exception_handler(InvalidTransition)
async def handle_invalid_transition(request: Request, exc: InvalidTransition):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(InvalidInput)
async def handle_invalid_input(request: Request, exc: InvalidInput):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


# ── Request / Response Models ────────────────────


class CreateUserRequest(BaseModel):
    email: str
    first_name: str
    last_name: str
    role: UserRole = UserRole.USER
    is_active: bool = True


class UpdateUserRequest(BaseModel):
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    role: UserRole | None = None
    is_active: bool | None = None


class UserPage(BaseModel):
    data: list[User]
    total: int
    page: int
    limit: int


class CreateProductRequest(BaseModel):
    name: str
    price: Decimal = Field(ge=0)
    stock: int = Field(default=0, ge=0)
    description: str = ""
    category: str = ""
    is_available: bool = True


class UpdateProductRequest(BaseModel):
    name: str | None = None
    price: Decimal | None = Field(default=None, ge=0)
    description: str | None = None
    category: str | None = None
    is_available: bool | None = None


class AdjustStockRequest(BaseModel):
    delta: int


class CreateOrderRequest(BaseModel):
    user_id: UUID
    product_id: UUID
    quantity: int = Field(ge=1)
    shipping_address: ShippingAddress | None = None
    notes: str | None = None


class UpdateStatusRequest(BaseModel):
    status: OrderStatus


# ── Users ────────────────────────────────────────


@app.post("/users", status_code=201, response_model=User)
async def create_user(req: CreateUserRequest):
    async with open_store() as store:
        return await commands.create_user(
            store, req.email, req.first_name, req.last_name, req.role, req.is_active
        )


@app.get("/users", response_model=UserPage)
async def list_users(page: int = 1, limit: int = 10, search: str | None = None):
    """ユーザー一覧（ページング・名前/メール検索付き）"""
    async with open_store() as store:
        return await queries.list_users(store, page=page, limit=limit, search=search)


@app.get("/users/active", response_model=list[User])
async def list_active_users():
    async with open_store() as store:
        return await queries.list_active_users(store)


@app.get("/users/{user_id}", response_model=User)
async def get_user(user_id: UUID):
    async with open_store() as store:
        return await queries.get_user(store, cache, user_id)


@app.get("/users/{user_id}/profile")
async def get_user_profile(user_id: UUID):
    async with open_store() as store:
        return await queries.get_user_profile(store, cache, user_id)


@app.patch("/users/{user_id}", response_model=User)
async def update_user(user_id: UUID, req: UpdateUserRequest):
    async with open_store() as store:
        return await commands.update_user(
            store, cache, user_id, req.model_dump(exclude_unset=True, exclude_none=True)
        )


@app.delete("/users/{user_id}", status_code=204)
async def remove_user(user_id: UUID):
    """ユーザー削除（論理削除）"""
    async with open_store() as store:
        await commands.remove_user(store, cache, user_id)


# ── Products ─────────────────────────────────────


@app.post("/products", status_code=201, response_model=Product)
async def create_product(req: CreateProductRequest):
    async with open_store() as store:
        return await commands.create_product(
            store,
            req.name,
            req.price,
            stock=req.stock,
            description=req.description,
            category=req.category,
            is_available=req.is_available,
        )


@app.get("/products", response_model=list[Product])
async def list_products(category: str | None = None):
    async with open_store() as store:
        return await queries.list_products(store, category)


@app.get("/products/low-stock", response_model=list[Product])
async def list_low_stock(threshold: int | None = None):
    async with open_store() as store:
        return await queries.list_low_stock(store, threshold)


@app.get("/products/{product_id}", response_model=Product)
async def get_product(product_id: UUID):
    async with open_store() as store:
        return await queries.get_product(store, cache, product_id)


@app.patch("/products/{product_id}", response_model=Product)
async def update_product(product_id: UUID, req: UpdateProductRequest):
    async with open_store() as store:
        return await commands.update_product(
            store, cache, product_id, req.model_dump(exclude_unset=True, exclude_none=True)
        )


@app.post("/products/{product_id}/stock")
async def adjust_stock(product_id: UUID, req: AdjustStockRequest):
    """在庫調整（入荷は正、棚卸し差異などは負の delta）"""
    async with open_store() as store:
        stock = await commands.adjust_stock(store, cache, product_id, req.delta)
        return {"product_id": str(product_id), "stock": stock}


@app.delete("/products/{product_id}", status_code=204)
async def delete_product(product_id: UUID):
    async with open_store() as store:
        await commands.delete_product(store, cache, product_id)


# ── Orders ───────────────────────────────────────


@app.post("/orders", status_code=201, response_model=Order)
async def create_order(req: CreateOrderRequest):
    """注文作成（在庫を減算する）"""
    async with open_store() as store:
        return await commands.create_order(
            store,
            cache,
            req.user_id,
            req.product_id,
            req.quantity,
            shipping_address=req.shipping_address,
            notes=req.notes,
        )


@app.get("/orders", response_model=list[Order])
async def list_orders(status: OrderStatus | None = None, user_id: UUID | None = None):
    async with open_store() as store:
        return await queries.list_orders(store, status=status, user_id=user_id)


@app.get("/orders/{order_id}", response_model=Order)
async def get_order(order_id: UUID):
    async with open_store() as store:
        return await queries.get_order(store, order_id)


@app.patch("/orders/{order_id}/status", response_model=Order)
async def update_order_status(order_id: UUID, req: UpdateStatusRequest):
    async with open_store() as store:
        return await commands.update_order_status(store, cache, order_id, req.status)


@app.delete("/orders/{order_id}", response_model=Order)
async def cancel_order(order_id: UUID):
    """注文キャンセル（在庫を戻す）"""
    async with open_store() as store:
        return await commands.cancel_order(store, cache, order_id)


# ── Cache (学習・デバッグ用) ─────────────────────


@app.get("/cache/stats")
async def get_cache_stats():
    return await queries.cache_stats(cache)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "shop-service"}
