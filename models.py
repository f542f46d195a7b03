import datetime as dt
from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


class Frequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class LegacyRecurrence(str, Enum):
    none = "none"
    weekly = "weekly"
    monthly = "monthly"
    quarterly = "quarterly"
    four_monthly = "four_monthly"
    semi_annual = "semi_annual"
    annual = "annual"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (UniqueConstraint("name", name="uq_account_name"),)


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    icon: Mapped[str] = mapped_column(String(50), nullable=False, default="category")
    color: Mapped[Optional[str]] = mapped_column(String(9))
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint("type", "name", name="uq_category_type_name"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    transfer_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id")
    )
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")
    is_validated: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    recurring_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_transactions.id")
    )
    occurrence_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    is_modified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    recurrence: Mapped[LegacyRecurrence] = mapped_column(
        SAEnum(LegacyRecurrence), default=LegacyRecurrence.none, nullable=False
    )
    recurrence_end_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    recurrence_group_id: Mapped[Optional[int]] = mapped_column(Integer)

    category: Mapped[Optional["Category"]] = relationship("Category")
    account: Mapped["Account"] = relationship("Account", foreign_keys=[account_id])
    recurring: Mapped[Optional["RecurringTransaction"]] = relationship(
        "RecurringTransaction", back_populates="occurrences"
    )

    __table_args__ = (
        UniqueConstraint(
            "recurring_id",
            "occurrence_date",
            name="uq_txn_recurring_occurrence",
        ),
        Index("ix_transactions_account_date", "account_id", "date"),
        Index("ix_transactions_category_date", "category_id", "date"),
        Index("ix_transactions_type_date", "type", "date"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )


class RecurringTransaction(Base, TimestampMixin):
    __tablename__ = "recurring_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    frequency: Mapped[Frequency] = mapped_column(SAEnum(Frequency), nullable=False)
    interval: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    category: Mapped[Optional["Category"]] = relationship("Category")
    occurrences: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="recurring"
    )

    __table_args__ = (
        CheckConstraint("interval > 0", name="ck_recurring_interval_positive"),
        CheckConstraint("amount_cents >= 0", name="ck_recurring_amount_positive"),
        Index("ix_recurring_account_active", "account_id", "is_active"),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    year_month: Mapped[str] = mapped_column(String(7), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    is_global: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        CheckConstraint(
            "(is_global = 1 AND category_id IS NULL) "
            "OR (is_global = 0 AND category_id IS NOT NULL)",
            name="ck_budget_scope_exclusive",
        ),
        UniqueConstraint(
            "year_month", "category_id", name="uq_budget_month_category"
        ),
        Index("ix_budget_year_month", "year_month"),
    )


class BudgetAlertRecord(Base, TimestampMixin):
    __tablename__ = "budget_alert_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    year_month: Mapped[str] = mapped_column(String(7), nullable=False)

    __table_args__ = (
        UniqueConstraint("budget_id", "year_month", name="uq_alert_budget_month"),
    )


class SavingsGoal(Base, TimestampMixin):
    __tablename__ = "savings_goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    target_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    current_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    icon: Mapped[str] = mapped_column(String(50), nullable=False, default="savings")
    color: Mapped[Optional[str]] = mapped_column(String(9), default="#4CAF50")
    created_date: Mapped[date] = mapped_column(Date, nullable=False)
    target_date: Mapped[Optional[date]] = mapped_column(Date)

    __table_args__ = (
        CheckConstraint("target_cents > 0", name="ck_goal_target_positive"),
        CheckConstraint("current_cents >= 0", name="ck_goal_current_positive"),
    )
