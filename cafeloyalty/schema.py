from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Aware datetimes in Python, naive UTC in the database."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to a UTC column")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class OrderStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    OVERDUE = "overdue"
    CANCELED = "canceled"


metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("telegram_id", BigInteger, primary_key=True, autoincrement=False),
    Column("first_name", String(255), nullable=False, default=""),
    Column("last_name", String(255)),
    Column("username", String(255), index=True),
    Column("language_code", String(16), nullable=False, default="en"),
    Column("card_number", Integer, nullable=False, unique=True),
    Column("stars", Integer, nullable=False, default=0),
    Column("created_at", UTCDateTime, nullable=False, default=utcnow),
)

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("short_id", String(8), nullable=False, index=True),
    Column("user_id", BigInteger, ForeignKey("users.telegram_id"), nullable=False),
    Column("total_amount", Integer, nullable=False),
    Column("stars_added", Integer, nullable=False),
    Column("eta_minutes", Integer, nullable=False),
    Column("table_number", String(16), nullable=False),
    Column("payment_method", String(16), nullable=False),
    Column("due_at", UTCDateTime, nullable=False),
    Column("status", String(16), nullable=False, default=OrderStatus.PENDING.value),
    Column("notified", Boolean, nullable=False, default=False),
    Column("created_at", UTCDateTime, nullable=False, default=utcnow),
)

Index("ix_orders_sweep", orders.c.status, orders.c.notified, orders.c.due_at)

order_items = Table(
    "order_items",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_id", String(36), ForeignKey("orders.id"), nullable=False, index=True),
    Column("item_id", String(64), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Integer, nullable=False),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", BigInteger, ForeignKey("users.telegram_id"), nullable=False, index=True),
    Column("type", String(16), nullable=False),
    Column("stars_change", Integer, nullable=False),
    Column("order_id", String(36), ForeignKey("orders.id")),
    Column("reward_key", String(64)),
    Column("description", Text, nullable=False, default=""),
    Column("created_at", UTCDateTime, nullable=False, default=utcnow),
)

rewards = Table(
    "rewards",
    metadata,
    Column("key", String(64), primary_key=True),
    Column("title", String(255), nullable=False),
    Column("stars_cost", Integer, nullable=False),
)

DEFAULT_REWARDS = [
    {"key": "free_espresso", "title": "Free espresso", "stars_cost": 10},
    {"key": "free_cappuccino", "title": "Free cappuccino", "stars_cost": 15},
    {"key": "free_dessert", "title": "Free dessert", "stars_cost": 20},
]
