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
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class CategoryGroup(str, Enum):
    income = "income"
    giving = "giving"
    savings = "savings"
    expense = "expense"
    debt = "debt"
    misc = "misc"


class DebtType(str, Enum):
    credit_card = "credit_card"
    loan = "loan"
    mortgage = "mortgage"
    student_loan = "student_loan"
    other = "other"


class PlannedItemType(str, Enum):
    income = "income"
    expense = "expense"
    debt = "debt"


# Groups whose negative remaining is shown as a neutral difference.
DIFFERENCE_GROUPS = frozenset({CategoryGroup.income, CategoryGroup.savings})


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    group_name: Mapped[CategoryGroup] = mapped_column(
        SAEnum(CategoryGroup), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    parent_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    is_credit_card_bucket: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    is_protected: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    parent: Mapped[Optional["Category"]] = relationship(
        "Category", remote_side=[id], back_populates="children"
    )
    children: Mapped[list["Category"]] = relationship(
        "Category", back_populates="parent"
    )

    __table_args__ = (
        Index("ix_categories_user_group_parent", "user_id", "group_name", "parent_id"),
    )

    @property
    def archived(self) -> bool:
        return self.archived_at is not None


class CreditCard(Base, TimestampMixin):
    __tablename__ = "credit_cards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    apr_bps: Mapped[Optional[int]] = mapped_column(Integer)
    current_balance_cents: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    min_payment_cents: Mapped[Optional[int]] = mapped_column(Integer)

    __table_args__ = (
        CheckConstraint(
            "min_payment_cents IS NULL OR min_payment_cents >= 0",
            name="ck_credit_card_min_payment_positive",
        ),
    )


class DebtAccount(Base, TimestampMixin):
    __tablename__ = "debt_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    debt_type: Mapped[DebtType] = mapped_column(
        SAEnum(DebtType), default=DebtType.credit_card, nullable=False
    )
    balance_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    apr_bps: Mapped[Optional[int]] = mapped_column(Integer)
    min_payment_cents: Mapped[Optional[int]] = mapped_column(Integer)
    due_date: Mapped[Optional[date]] = mapped_column(Date)

    __table_args__ = (
        CheckConstraint(
            "min_payment_cents IS NULL OR min_payment_cents >= 0",
            name="ck_debt_account_min_payment_positive",
        ),
    )


class PlannedItem(Base, TimestampMixin):
    __tablename__ = "planned_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[date] = mapped_column(Date, nullable=False)
    type: Mapped[PlannedItemType] = mapped_column(
        SAEnum(PlannedItemType), nullable=False
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    credit_card_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("credit_cards.id", ondelete="SET NULL")
    )
    debt_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("debt_accounts.id", ondelete="SET NULL")
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_planned_items_amount_positive"),
        Index("ix_planned_items_user_month", "user_id", "month"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    credit_card_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("credit_cards.id", ondelete="SET NULL")
    )
    debt_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("debt_accounts.id", ondelete="SET NULL")
    )

    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_card", "user_id", "credit_card_id"),
        Index("ix_transactions_user_debt", "user_id", "debt_account_id"),
    )


class BudgetMonth(Base, TimestampMixin):
    __tablename__ = "budget_months"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[date] = mapped_column(Date, nullable=False)
    available_start_cents: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    available_end_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    start_overridden: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("user_id", "month", name="uq_budget_month_user_month"),
    )
