from enum import Enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from storefront.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")
MONEY_TYPE = Numeric(14, 2)


class Role(str, Enum):
    STORE_OWNER = "STORE_OWNER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


class TransactionType(str, Enum):
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"


class TransactionCategory(str, Enum):
    SALES = "SALES"
    SERVICE = "SERVICE"
    INVESTMENT = "INVESTMENT"
    OTHER_INCOME = "OTHER_INCOME"
    INVENTORY_PURCHASE = "INVENTORY_PURCHASE"
    MARKETING = "MARKETING"
    SUPPLIES = "SUPPLIES"
    SALARY = "SALARY"
    RENT = "RENT"
    UTILITIES = "UTILITIES"
    SHIPPING = "SHIPPING"
    TAX = "TAX"
    OTHER_EXPENSE = "OTHER_EXPENSE"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    TRIAL = "TRIAL"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class BillingCycle(str, Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class PeriodType(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    YEARLY = "YEARLY"


class AdminAction(str, Enum):
    STORE_SUSPENDED = "STORE_SUSPENDED"
    STORE_ACTIVATED = "STORE_ACTIVATED"
    STORE_VERIFIED = "STORE_VERIFIED"


def _in_check(column: str, enum_cls: type[Enum], name: str) -> CheckConstraint:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return CheckConstraint(f"{column} IN ({values})", name=name)


class User(Base):
    __tablename__ = "app_user"
    __table_args__ = (_in_check("role", Role, "user_role"),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[str] = mapped_column(Text, nullable=False, default=Role.STORE_OWNER.value)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class Store(Base):
    __tablename__ = "store"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("app_user.id"), nullable=False, unique=True
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    subdomain: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    suspension_reason: Mapped[str | None] = mapped_column(Text)
    total_revenue: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False, default=0)
    total_sales: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class Order(Base):
    __tablename__ = "store_order"
    __table_args__ = (
        UniqueConstraint("store_id", "order_number", name="store_order_number"),
        _in_check("payment_status", PaymentStatus, "order_payment_status"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("store.id"), nullable=False, index=True
    )
    order_number: Mapped[str] = mapped_column(Text, nullable=False)
    total: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False)
    payment_status: Mapped[str] = mapped_column(
        Text, nullable=False, default=PaymentStatus.PENDING.value
    )
    paid_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class Subscription(Base):
    __tablename__ = "subscription"
    __table_args__ = (
        _in_check("status", SubscriptionStatus, "subscription_status"),
        _in_check("billing_cycle", BillingCycle, "subscription_billing_cycle"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("app_user.id"), nullable=False
    )
    store_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("store.id"), nullable=False, index=True
    )
    plan: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    price: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False)
    billing_cycle: Mapped[str] = mapped_column(
        Text, nullable=False, default=BillingCycle.MONTHLY.value
    )
    start_date: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    end_date: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class FinancialTransaction(Base):
    __tablename__ = "financial_transaction"
    __table_args__ = (
        CheckConstraint("amount > 0", name="financial_transaction_amount_positive"),
        _in_check("type", TransactionType, "financial_transaction_type"),
        _in_check("category", TransactionCategory, "financial_transaction_category"),
        Index("ix_financial_transaction_store_date", "store_id", "transaction_date"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("store.id"), nullable=False
    )
    type: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    reference: Mapped[str | None] = mapped_column(Text)
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    transaction_date: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class FinancialTransactionTag(Base):
    __tablename__ = "financial_transaction_tag"

    transaction_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("financial_transaction.id", ondelete="CASCADE"),
        primary_key=True,
    )
    tag: Mapped[str] = mapped_column(Text, primary_key=True)


class PageView(Base):
    __tablename__ = "page_view"
    __table_args__ = (Index("ix_page_view_store_viewed", "store_id", "viewed_at"),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("store.id"), nullable=False
    )
    visitor_id: Mapped[str | None] = mapped_column(Text)
    page: Mapped[str | None] = mapped_column(Text)
    viewed_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class AnalyticsSnapshot(Base):
    __tablename__ = "analytics_snapshot"
    __table_args__ = (
        UniqueConstraint("store_id", "period", "bucket_start", name="analytics_snapshot_bucket"),
        _in_check("period", PeriodType, "analytics_snapshot_period"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("store.id"), nullable=False
    )
    period: Mapped[str] = mapped_column(Text, nullable=False)
    bucket_start: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    total_views: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unique_visitors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_orders: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_revenue: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False, default=0)
    total_income: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False, default=0)
    total_expenses: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False, default=0)
    net_profit: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False, default=0)
    avg_order_value: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False, default=0)
    conversion_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class AdminActivityLog(Base):
    __tablename__ = "admin_activity_log"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    admin_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("app_user.id"), nullable=False
    )
    action: Mapped[str] = mapped_column(Text, nullable=False)
    target_type: Mapped[str] = mapped_column(Text, nullable=False)
    target_id: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSON_TYPE)
    ip_address: Mapped[str | None] = mapped_column(Text)
    user_agent: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
