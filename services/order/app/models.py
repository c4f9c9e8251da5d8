"""
Order Service — テーブル定義

注文ストア (orders / order_items) と、価格計算・認可のために読む
カタログ (pizzas / pizza_sizes) とユーザー (users)。
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), nullable=False, unique=True, index=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    phone = Column(String(30), nullable=True)
    role = Column(String(20), nullable=False, default="customer")
    created_at = Column(DateTime(timezone=True), default=_now)


class Pizza(Base):
    __tablename__ = "pizzas"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(120), nullable=False, index=True)
    description = Column(Text, nullable=False, default="")
    image = Column(String(500), nullable=True)
    base_price = Column(Numeric(10, 2), nullable=False)
    category = Column(String(20), nullable=False, index=True)
    ingredients = Column(JSON, nullable=False, default=list)  # 個数が価格に影響する
    available = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)

    sizes = relationship(
        "PizzaSize",
        back_populates="pizza",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class PizzaSize(Base):
    __tablename__ = "pizza_sizes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pizza_id = Column(String(36), ForeignKey("pizzas.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(20), nullable=False)
    diameter = Column(String(20), nullable=True)
    price_multiplier = Column(Numeric(6, 3), nullable=False, default=1)

    pizza = relationship("Pizza", back_populates="sizes")


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    order_number = Column(String(40), nullable=False, unique=True)
    status = Column(String(30), nullable=False, default="pending", index=True)
    payment_status = Column(String(20), nullable=False, default="pending")
    payment_method = Column(String(30), nullable=True)
    delivery_address = Column(JSON, nullable=True)
    special_instructions = Column(Text, nullable=True)
    estimated_delivery_time = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    total_amount = Column(Numeric(12, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=_now)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.position",
        lazy="selectin",
    )
    user = relationship("User", lazy="selectin")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    # カタログから削除された商品を参照し得るため外部キーにしない
    pizza_id = Column(String(36), nullable=True)
    name = Column(String(120), nullable=True)  # 注文時点のスナップショット
    image = Column(String(500), nullable=True)
    size = Column(String(20), nullable=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    total_price = Column(Numeric(12, 2), nullable=False)

    order = relationship("Order", back_populates="items")
