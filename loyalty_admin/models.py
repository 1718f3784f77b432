from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from loyalty_admin.db import Base

ID_TYPE = String(36)
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")

TICKET_STATUSES = ("open", "in_progress", "resolved", "closed")
TICKET_PRIORITIES = ("low", "medium", "high", "urgent")
TRANSACTION_TYPES = ("purchase", "bonus", "redemption", "referral", "refund")

DEFAULT_POINT_VALUE_AED = 0.05

DEFAULT_RESTAURANT_SETTINGS = {
    "pointValueAED": DEFAULT_POINT_VALUE_AED,
    "blanketMode": {
        "enabled": True,
        "type": "manual",
        "manualSettings": {"pointsPerAED": 0.1},
    },
    "tierMultipliers": {
        "bronze": 1.0,
        "silver": 1.25,
        "gold": 1.5,
        "platinum": 2.0,
    },
    "tierThresholds": {
        "bronze": 0,
        "silver": 500,
        "gold": 1000,
        "platinum": 2500,
    },
}

DEFAULT_ROI_SETTINGS = {
    "default_profit_margin": 0.3,
    "estimated_cogs_percentage": 0.4,
    "labor_cost_percentage": 0.25,
    "overhead_percentage": 0.15,
    "target_roi_percentage": 200,
}


def new_id() -> str:
    return str(uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # Stored timestamps are UTC; SQLite hands them back naive.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: str | datetime) -> datetime:
    """Accept a datetime or an ISO-8601 string (a trailing ``Z`` is allowed)."""
    if isinstance(value, datetime):
        return as_utc(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True, default=new_id)
    email: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    user_metadata: Mapped[dict | None] = mapped_column(JSON_TYPE)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Restaurant(Base):
    __tablename__ = "restaurants"

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    slug: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    owner_id: Mapped[str | None] = mapped_column(ID_TYPE, ForeignKey("users.id"))
    settings: Mapped[dict | None] = mapped_column(JSON_TYPE)
    roi_settings: Mapped[dict | None] = mapped_column(JSON_TYPE)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Branch(Base):
    __tablename__ = "branches"

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True, default=new_id)
    restaurant_id: Mapped[str] = mapped_column(
        ID_TYPE, ForeignKey("restaurants.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    address: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class MenuItem(Base):
    __tablename__ = "menu_items"

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True, default=new_id)
    restaurant_id: Mapped[str] = mapped_column(
        ID_TYPE, ForeignKey("restaurants.id"), nullable=False
    )
    branch_id: Mapped[str | None] = mapped_column(ID_TYPE, ForeignKey("branches.id"))
    name: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str | None] = mapped_column(Text)
    price: Mapped[float] = mapped_column(Numeric(12, 2, asdecimal=False), nullable=False, default=0)
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = (
        Index("ix_customers_restaurant_created", "restaurant_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True, default=new_id)
    restaurant_id: Mapped[str] = mapped_column(
        ID_TYPE, ForeignKey("restaurants.id"), nullable=False
    )
    first_name: Mapped[str] = mapped_column(Text, nullable=False)
    last_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    email: Mapped[str] = mapped_column(Text, nullable=False, default="")
    phone: Mapped[str | None] = mapped_column(Text)
    total_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lifetime_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_tier: Mapped[str] = mapped_column(Text, nullable=False, default="bronze")
    total_spent: Mapped[float] = mapped_column(Numeric(12, 2, asdecimal=False), nullable=False, default=0)
    visit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_visit: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    restaurant: Mapped["Restaurant"] = relationship()


class Reward(Base):
    __tablename__ = "rewards"

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True, default=new_id)
    restaurant_id: Mapped[str] = mapped_column(
        ID_TYPE, ForeignKey("restaurants.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    points_required: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str | None] = mapped_column(Text)
    min_tier: Mapped[str] = mapped_column(Text, nullable=False, default="bronze")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint(
            "type IN ('purchase', 'bonus', 'redemption', 'referral', 'refund')",
            name="ck_transactions_type",
        ),
        Index("ix_transactions_restaurant_created", "restaurant_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True, default=new_id)
    restaurant_id: Mapped[str] = mapped_column(
        ID_TYPE, ForeignKey("restaurants.id"), nullable=False
    )
    customer_id: Mapped[str] = mapped_column(
        ID_TYPE, ForeignKey("customers.id"), nullable=False
    )
    branch_id: Mapped[str | None] = mapped_column(ID_TYPE, ForeignKey("branches.id"))
    reward_id: Mapped[str | None] = mapped_column(ID_TYPE, ForeignKey("rewards.id"))
    type: Mapped[str] = mapped_column(Text, nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_spent: Mapped[float | None] = mapped_column(Numeric(12, 2, asdecimal=False), default=0)
    description: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    restaurant: Mapped["Restaurant"] = relationship()
    customer: Mapped["Customer"] = relationship()


class RewardRedemption(Base):
    __tablename__ = "reward_redemptions"

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True, default=new_id)
    restaurant_id: Mapped[str] = mapped_column(
        ID_TYPE, ForeignKey("restaurants.id"), nullable=False
    )
    customer_id: Mapped[str] = mapped_column(
        ID_TYPE, ForeignKey("customers.id"), nullable=False
    )
    reward_id: Mapped[str] = mapped_column(
        ID_TYPE, ForeignKey("rewards.id"), nullable=False
    )
    points_used: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="completed")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class SupportTicket(Base):
    __tablename__ = "support_tickets"
    __table_args__ = (
        CheckConstraint(
            "status IN ('open', 'in_progress', 'resolved', 'closed')",
            name="ck_support_tickets_status",
        ),
        CheckConstraint(
            "priority IN ('low', 'medium', 'high', 'urgent')",
            name="ck_support_tickets_priority",
        ),
    )

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True, default=new_id)
    restaurant_id: Mapped[str] = mapped_column(
        ID_TYPE, ForeignKey("restaurants.id"), nullable=False
    )
    created_by: Mapped[str | None] = mapped_column(Text)
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="open")
    priority: Mapped[str] = mapped_column(Text, nullable=False, default="medium")
    category: Mapped[str] = mapped_column(Text, nullable=False, default="general")
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    resolved_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    restaurant: Mapped["Restaurant"] = relationship()


class SupportMessage(Base):
    __tablename__ = "support_messages"

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True, default=new_id)
    ticket_id: Mapped[str] = mapped_column(
        ID_TYPE, ForeignKey("support_tickets.id"), nullable=False
    )
    sender_type: Mapped[str] = mapped_column(Text, nullable=False)
    sender_id: Mapped[str] = mapped_column(Text, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
