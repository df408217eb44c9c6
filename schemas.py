import datetime as dt
from decimal import Decimal
from typing import Annotated, Literal, Optional

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from installments import InstallmentEntryMode
from models import ApplyScope, CurrencyCode
from months import parse_month


def _check_month(value: str) -> str:
    parse_month(value)
    return value


Month = Annotated[str, AfterValidator(_check_month)]


class HouseholdIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class UserIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    household_id: Optional[int] = None


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    household_id: Optional[int] = None
    super_category_id: Optional[int] = None


class CategoryRenameIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class CategorySuperCategoryIn(BaseModel):
    super_category_id: Optional[int]


class ArchiveCategoryIn(BaseModel):
    replacement_category_id: Optional[int] = None


class SuperCategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: Optional[str] = Field(default=None, min_length=1, max_length=20)
    icon: Optional[str] = Field(default=None, min_length=1, max_length=40)
    sort_order: Optional[int] = None


class SuperCategoryUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    color: Optional[str] = Field(default=None, min_length=1, max_length=20)
    icon: Optional[str] = Field(default=None, min_length=1, max_length=40)
    sort_order: Optional[int] = None

    @model_validator(mode="after")
    def require_a_field(self) -> "SuperCategoryUpdateIn":
        if not self.model_fields_set:
            raise ValueError("At least one field is required")
        return self


class ArchiveSuperCategoryIn(BaseModel):
    replacement_super_category_id: Optional[int] = None


class ExchangeRateIn(BaseModel):
    month: Month
    currency_code: CurrencyCode
    rate_to_ars: Decimal = Field(..., gt=0)


class IncomeEntryIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=200)
    amount: Decimal
    currency_code: CurrencyCode = CurrencyCode.ars
    fx_rate: Optional[Decimal] = Field(default=None, gt=0)

    @field_validator("description")
    @classmethod
    def strip_description(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("description is required")
        return value


class IncomeEntriesIn(BaseModel):
    month: Month
    user_id: int
    entries: list[IncomeEntryIn] = Field(default_factory=list)


class FixedIn(BaseModel):
    enabled: bool


class InstallmentIn(BaseModel):
    enabled: bool
    count: Optional[int] = Field(default=None, ge=2)
    entry_mode: Optional[InstallmentEntryMode] = None
    per_installment_amount: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None

    @model_validator(mode="after")
    def require_mode_fields(self) -> "InstallmentIn":
        if not self.enabled:
            return self
        if self.count is None:
            raise ValueError("installment.count is required when installments are enabled")
        if self.entry_mode is None:
            raise ValueError(
                "installment.entry_mode is required when installments are enabled"
            )
        if (
            self.entry_mode == InstallmentEntryMode.total
            and self.total_amount is None
        ):
            raise ValueError("installment.total_amount is required for total entry mode")
        return self


def _check_fixed_and_installment(
    fixed: Optional[FixedIn],
    installment: Optional[InstallmentIn],
    amount: Optional[Decimal],
) -> None:
    if fixed and fixed.enabled and installment and installment.enabled:
        raise ValueError("fixed expenses cannot be installments")
    if (
        installment
        and installment.enabled
        and installment.entry_mode == InstallmentEntryMode.per_installment
        and installment.per_installment_amount is None
        and amount is None
    ):
        raise ValueError("per-installment amount is required")


class ExpenseIn(BaseModel):
    month: Month
    date: dt.date
    description: str = Field(..., min_length=1, max_length=200)
    category_id: int
    amount: Optional[Decimal] = None
    currency_code: CurrencyCode = CurrencyCode.ars
    fx_rate: Optional[Decimal] = Field(default=None, gt=0)
    paid_by_user_id: int
    fixed: Optional[FixedIn] = None
    installment: Optional[InstallmentIn] = None

    @model_validator(mode="after")
    def check_shape(self) -> "ExpenseIn":
        _check_fixed_and_installment(self.fixed, self.installment, self.amount)
        if not (self.installment and self.installment.enabled) and self.amount is None:
            raise ValueError("amount is required when installment is disabled")
        return self


class ExpenseUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    month: Optional[Month] = None
    date: Optional[dt.date] = None
    description: Optional[str] = Field(default=None, min_length=1, max_length=200)
    category_id: Optional[int] = None
    amount: Optional[Decimal] = None
    currency_code: Optional[CurrencyCode] = None
    fx_rate: Optional[Decimal] = Field(default=None, gt=0)
    paid_by_user_id: Optional[int] = None
    fixed: Optional[FixedIn] = None
    installment: Optional[InstallmentIn] = None
    apply_scope: Optional[ApplyScope] = None
    apply_to_future: bool = False

    @model_validator(mode="after")
    def check_shape(self) -> "ExpenseUpdateIn":
        _check_fixed_and_installment(self.fixed, self.installment, self.amount)
        return self


class ExpenseDeleteIn(BaseModel):
    apply_scope: Optional[ApplyScope] = None


ExpenseSortKey = Literal["date", "description", "category", "amount_ars", "paid_by"]


class ExpenseFilters(BaseModel):
    kind: Optional[Literal["oneTime", "fixed", "installment"]] = None
    category_id: Optional[int] = None
    paid_by_user_id: Optional[int] = None
    search: Optional[str] = None
    household_id: Optional[int] = None
    sort_by: ExpenseSortKey = "date"
    sort_dir: Literal["asc", "desc"] = "desc"


class ExpensePageIn(BaseModel):
    limit: Optional[int] = Field(default=None, ge=1, le=200)
    cursor: Optional[int] = None
    include_count: bool = True

    @model_validator(mode="after")
    def cursor_needs_limit(self) -> "ExpensePageIn":
        if self.cursor is not None and self.limit is None:
            raise ValueError("cursor requires limit")
        return self
