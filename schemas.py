import datetime as dt
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import CategoryGroup, DebtType


class CategoryIn(BaseModel):
    group_name: CategoryGroup
    name: str = Field(..., max_length=100)
    parent_id: Optional[int] = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        return value.strip()


class CreditCardIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    apr_bps: Optional[int] = Field(default=None, ge=0)
    current_balance_cents: int = 0
    min_payment_cents: Optional[int] = Field(default=None, ge=0)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        return value.strip()


class DebtAccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    debt_type: DebtType = DebtType.credit_card
    balance_cents: int = 0
    apr_bps: Optional[int] = Field(default=None, ge=0)
    min_payment_cents: Optional[int] = Field(default=None, ge=0)
    due_date: Optional[dt.date] = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        return value.strip()


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    date: date
    name: Optional[str] = Field(default=None, max_length=200)
    amount_cents: int
    category_id: Optional[int] = None
    credit_card_id: Optional[int] = None
    debt_account_id: Optional[int] = None

    @field_validator("name")
    @classmethod
    def _blank_name_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        clean = value.strip()
        return clean or None


class PlannedItemIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    month: date
    category_id: int
    name: str = Field(default="Planned total", max_length=120)
    amount_cents: int = Field(..., ge=0)
    credit_card_id: Optional[int] = None
    debt_account_id: Optional[int] = None

    @field_validator("month")
    @classmethod
    def _first_of_month(cls, value: date) -> date:
        return value.replace(day=1)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        return value.strip() or "Planned total"


class BudgetMonthIn(BaseModel):
    month: date
    available_start_cents: Optional[int] = None

    @field_validator("month")
    @classmethod
    def _first_of_month(cls, value: date) -> date:
        return value.replace(day=1)
