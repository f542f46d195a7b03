import datetime as dt
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models import Frequency, TransactionType


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    currency_code: str = Field(default="EUR", min_length=3, max_length=3)
    is_default: bool = False

    @field_validator("currency_code")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    icon: str = Field(default="category", max_length=50)
    color: Optional[str] = Field(default=None, max_length=9)

    @field_validator("type")
    @classmethod
    def _no_transfer_categories(cls, value: TransactionType) -> TransactionType:
        if value == TransactionType.transfer:
            raise ValueError("Categories are either income or expense")
        return value


class CategoryRenameIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class TransactionIn(BaseModel):
    name: str = Field(default="", max_length=120)
    amount_cents: int = Field(..., ge=0)
    type: TransactionType
    account_id: int
    category_id: Optional[int] = None
    transfer_account_id: Optional[int] = None
    date: dt.date
    note: str = Field(default="", max_length=500)
    is_validated: bool = True

    @model_validator(mode="after")
    def _transfer_target(self) -> "TransactionIn":
        if self.type == TransactionType.transfer:
            if self.transfer_account_id is None:
                raise ValueError("Transfers need a target account")
            if self.transfer_account_id == self.account_id:
                raise ValueError("Transfer target must differ from source account")
        elif self.transfer_account_id is not None:
            raise ValueError("Only transfers have a target account")
        return self


class RecurringTransactionIn(BaseModel):
    name: str = Field(default="", max_length=120)
    amount_cents: int = Field(..., ge=0)
    type: TransactionType
    account_id: int
    category_id: Optional[int] = None
    note: str = Field(default="", max_length=500)
    start_date: date
    frequency: Frequency
    interval: int = Field(default=1, gt=0)
    end_date: Optional[date] = None
    is_active: bool = True

    @model_validator(mode="after")
    def _check_schedule(self) -> "RecurringTransactionIn":
        if self.type == TransactionType.transfer:
            raise ValueError("Recurring transactions are income or expense")
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("End date must not be before start date")
        return self


class OccurrenceEditIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: Optional[int] = Field(default=None, ge=0)
    category_id: Optional[int] = None
    date: Optional[dt.date] = None
    name: Optional[str] = Field(default=None, max_length=120)
    note: Optional[str] = Field(default=None, max_length=500)


class BudgetIn(BaseModel):
    year_month: str = Field(..., pattern=r"^\d{4}-(0[1-9]|1[0-2])$")
    amount_cents: int = Field(..., gt=0)
    category_id: Optional[int] = None

    @property
    def is_global(self) -> bool:
        return self.category_id is None


class SavingsGoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    target_cents: int = Field(..., gt=0)
    current_cents: int = Field(default=0, ge=0)
    icon: str = Field(default="savings", max_length=50)
    color: Optional[str] = Field(default="#4CAF50", max_length=9)
    target_date: Optional[date] = None


class AmountIn(BaseModel):
    amount_cents: int = Field(..., gt=0)


class OccurrenceOut(BaseModel):
    template_id: int
    occurrence_date: date
    date: dt.date
    amount_cents: int
    type: TransactionType
    account_id: int
    category_id: Optional[int]
    name: str
    note: str
    transaction_id: Optional[int]
    is_modified: bool


class BudgetProgressOut(BaseModel):
    budget_id: int
    year_month: str
    is_global: bool
    category_id: Optional[int]
    amount_cents: int
    spent_cents: int
    remaining_cents: int
    percent: int


class BudgetAlertOut(BaseModel):
    budget_id: int
    period_key: str
    spent_cents: int
    budget_cents: int
    percent: int
