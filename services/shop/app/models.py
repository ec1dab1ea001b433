"""
Shop Service — エンティティ定義

User / Product / Order を pydantic モデルとして定義する。
キャッシュには model_dump(mode="json") した dict を格納し、
取り出すときに model_validate で復元する。
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator

CENTS = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class UserRole(str, Enum):
    ADMIN = "admin"
    USER = "user"
    GUEST = "guest"


class User(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    email: str
    first_name: str
    last_name: str
    role: UserRole = UserRole.USER
    is_active: bool = True
    is_deleted: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Product(BaseModel):
    """
    商品

    stock は StockLedger 経由でのみ変更される。price は小数点以下2桁に丸める。
    """

    id: UUID = Field(default_factory=uuid4)
    name: str
    description: str = ""
    category: str = ""
    price: Decimal = Field(ge=0)
    stock: int = Field(default=0, ge=0)
    is_available: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("price")
    @classmethod
    def _quantize_price(cls, value: Decimal) -> Decimal:
        return value.quantize(CENTS)


class ShippingAddress(BaseModel):
    street: str
    city: str
    country: str
    zip_code: str = ""


class Order(BaseModel):
    """
    注文

    total_price は作成時点の単価 × 数量のスナップショット。
    後から商品価格が変わっても再計算しない。
    """

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    product_id: UUID
    quantity: int = Field(ge=1)
    total_price: Decimal
    status: OrderStatus = OrderStatus.PENDING
    notes: str | None = None
    shipping_address: ShippingAddress | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("total_price")
    @classmethod
    def _quantize_total(cls, value: Decimal) -> Decimal:
        return value.quantize(CENTS)
