from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class EntrySource(str, Enum):
    bank_sync = "bank_sync"
    manual = "manual"


class NotificationKind(str, Enum):
    budget_alert = "budget_alert"
    monthly_summary = "monthly_summary"
    general = "general"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class LedgerEntry(Base, TimestampMixin):
    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    dedup_key: Mapped[str] = mapped_column(String(64), nullable=False)
    source: Mapped[EntrySource] = mapped_column(
        SAEnum(EntrySource), nullable=False, default=EntrySource.bank_sync
    )

    __table_args__ = (
        UniqueConstraint("user_id", "dedup_key", name="uq_ledger_user_dedup_key"),
        Index("ix_ledger_user_occurred", "user_id", "occurred_at"),
        Index("ix_ledger_user_category_occurred", "user_id", "category", "occurred_at"),
        CheckConstraint("amount_cents > 0", name="ck_ledger_amount_positive"),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    limit_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    notified_for_current_period: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    # YYYY-MM of the calendar month the notified flag belongs to
    period_key: Mapped[str] = mapped_column(String(7), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "category", name="uq_budget_user_category"),
        CheckConstraint("limit_cents > 0", name="ck_budget_limit_positive"),
    )


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    kind: Mapped[NotificationKind] = mapped_column(
        SAEnum(NotificationKind), nullable=False, default=NotificationKind.general
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        Index("ix_notifications_user_created", "user_id", "created_at"),
    )
