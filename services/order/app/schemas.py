"""
Order Service — リクエストモデルと列挙型

API は camelCase の JSON を受け取る (フロントエンドの管理画面に合わせる)。
Python 側では snake_case の属性として扱う。
"""

from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class ProductStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    OUT_OF_STOCK = "OUT_OF_STOCK"


class Role(str, Enum):
    ADMIN = "ADMIN"
    USER = "USER"


# 終端状態: ここからのステータス変更は一切できない
TERMINAL_STATUSES = (OrderStatus.CANCELLED, OrderStatus.DELIVERED)
# 顧客がキャンセルできる状態
CANCELLABLE_STATUSES = (OrderStatus.PENDING, OrderStatus.PROCESSING)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OrderItemRequest(CamelModel):
    product_id: UUID
    quantity: int = Field(gt=0)


class ShippingAddress(CamelModel):
    street: str = Field(min_length=5)
    city: str = Field(min_length=2)
    state: str = Field(min_length=2)
    postal_code: str = Field(min_length=4)
    country: str = Field(min_length=2)


class CreateOrderRequest(CamelModel):
    items: list[OrderItemRequest] = Field(min_length=1)
    shipping_address: ShippingAddress

    @field_validator("items")
    @classmethod
    def no_duplicate_products(cls, items: list[OrderItemRequest]) -> list[OrderItemRequest]:
        ids = [item.product_id for item in items]
        if len(ids) != len(set(ids)):
            raise ValueError("Each product may appear only once per order")
        return items


class UpdateStatusRequest(BaseModel):
    status: OrderStatus


SortField = Literal["createdAt", "updatedAt", "total", "status", "orderNumber"]


class OrderFilters(CamelModel):
    """一覧取得のクエリパラメータ"""

    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)
    search: str | None = None
    sort_by: SortField = "createdAt"
    order: Literal["asc", "desc"] = "desc"
    status: OrderStatus | None = None
    customer_id: UUID | None = None

    @field_validator("search")
    @classmethod
    def blank_search_is_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None
