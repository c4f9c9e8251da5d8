"""
Order Service — リクエスト / レスポンスモデル

ストアフロントと管理画面の両方の形式 (camelCase / snake_case) を受け付ける。
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


# ── Request Models ───────────────────────────────

class DeliveryAddress(BaseModel):
    street: str = Field(validation_alias=AliasChoices("street", "address"))
    city: str
    state: Optional[str] = None
    zip: Optional[str] = Field(None, validation_alias=AliasChoices("zip", "zipCode", "zip_code"))
    phone: Optional[str] = None


class OrderItemRequest(BaseModel):
    """
    注文明細。ストアフロントのフラット形式:
        {pizza_id, name, image, size, quantity, unit_price | price}
    とネスト形式:
        {pizza_id, quantity, price, pizzas: {name, image}, pizza_sizes: {name}}
    の両方を受け付ける。total / total_price は参考値なので無視する。
    """

    pizza_id: Optional[str] = None
    name: Optional[str] = None
    image: Optional[str] = None
    size: Optional[str] = None
    # 数値でない・1 未満の数量は価格計算時に 1 に丸める
    quantity: Any = 1
    unit_price: Optional[Decimal] = None

    @model_validator(mode="before")
    @classmethod
    def _flatten(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        pizzas = data.pop("pizzas", None)
        sizes = data.pop("pizza_sizes", None)
        if isinstance(pizzas, dict):
            data["name"] = data.get("name") or pizzas.get("name")
            data["image"] = data.get("image") or pizzas.get("image")
        if isinstance(sizes, dict):
            data["size"] = data.get("size") or sizes.get("name")
        if data.get("unit_price") is None and data.get("price") is not None:
            data["unit_price"] = data["price"]
        if data.get("pizza_id") is not None:
            data["pizza_id"] = str(data["pizza_id"])
        if data.get("quantity") is None:
            data["quantity"] = 1
        return data


class CreateOrderRequest(BaseModel):
    items: List[OrderItemRequest] = Field(
        default_factory=list, validation_alias=AliasChoices("items", "cartItems")
    )
    delivery_address: Optional[DeliveryAddress] = Field(
        None, validation_alias=AliasChoices("deliveryAddress", "delivery_address")
    )
    special_instructions: Optional[str] = Field(
        None, validation_alias=AliasChoices("specialInstructions", "special_instructions")
    )
    # 未指定は代金引換扱いにしない (決済済みとして pending から始まる)
    payment_method: Optional[str] = Field(
        None, validation_alias=AliasChoices("paymentMethod", "payment_method")
    )
    # 参考値。サーバー側で必ず再計算する
    total_amount: Optional[Decimal] = Field(
        None, validation_alias=AliasChoices("totalAmount", "total_amount")
    )


class UpdateStatusRequest(BaseModel):
    status: str


# ── Response Models ──────────────────────────────

class OrderItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    pizza_id: Optional[str]
    name: Optional[str]
    image: Optional[str]
    size: Optional[str]
    quantity: int
    unit_price: Decimal
    total_price: Decimal


class CustomerRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    first_name: Optional[str]
    last_name: Optional[str]
    email: str
    phone: Optional[str]


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: Optional[str]
    order_number: str
    status: str
    payment_status: str
    payment_method: Optional[str]
    delivery_address: Optional[dict]
    special_instructions: Optional[str]
    estimated_delivery_time: Optional[datetime]
    delivered_at: Optional[datetime]
    total_amount: Decimal
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    items: List[OrderItemRead]


class AdminOrderRead(OrderRead):
    user: Optional[CustomerRead]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateOrderResponse(CamelModel):
    order_id: str
    order_number: str
    status: str
    estimated_delivery: Optional[datetime]
    total_amount: Decimal


class OrderStats(CamelModel):
    total_orders: int
    pending_orders: int
    completed_orders: int
    total_revenue: Decimal
    average_order_value: Decimal
    total_customers: int


class SyncSnapshot(BaseModel):
    changed: bool
    timestamp: int
    orders: List[dict]
