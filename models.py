import datetime as dt
from dataclasses import dataclass, fields
from decimal import Decimal
from enum import Enum
from typing import Optional, Union

from sqlalchemy import (
    BigInteger,
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
from sqlalchemy.types import TypeDecorator

from database import Base
from money import (
    MONEY_SCALE,
    RATE_SCALE,
    from_scaled_int,
    to_ars,
    to_scaled_int,
)


class CurrencyCode(str, Enum):
    ars = "ARS"
    usd = "USD"
    eur = "EUR"


CURRENCY_CODE_ENUM = SAEnum(
    CurrencyCode,
    name="currencycode",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class ApplyScope(str, Enum):
    single = "single"
    future = "future"
    all = "all"


class ScaledDecimal(TypeDecorator):
    """Decimal persisted as an integer count of ``10 ** -scale`` units."""

    impl = BigInteger
    cache_ok = True

    def __init__(self, scale: int) -> None:
        super().__init__()
        self.scale = scale

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return to_scaled_int(value, self.scale)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return from_scaled_int(int(value), self.scale)


Money = ScaledDecimal(MONEY_SCALE)
Rate = ScaledDecimal(RATE_SCALE)


class TimestampMixin:
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime, default=dt.datetime.utcnow, nullable=False
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime,
        default=dt.datetime.utcnow,
        onupdate=dt.datetime.utcnow,
        nullable=False,
    )


class Household(Base, TimestampMixin):
    __tablename__ = "households"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    household_id: Mapped[Optional[int]] = mapped_column(ForeignKey("households.id"))

    household: Mapped[Optional["Household"]] = relationship("Household")


DEFAULT_SUPER_CATEGORY_COLOR = "#64748b"


class SuperCategory(Base, TimestampMixin):
    __tablename__ = "super_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(48), nullable=False, unique=True)
    color: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DEFAULT_SUPER_CATEGORY_COLOR
    )
    icon: Mapped[Optional[str]] = mapped_column(String(40))
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    archived_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index("ix_super_categories_listing", "archived_at", "sort_order", "name"),
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    household_id: Mapped[Optional[int]] = mapped_column(ForeignKey("households.id"))
    super_category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("super_categories.id", ondelete="SET NULL"), index=True
    )
    archived_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime)

    super_category: Mapped[Optional["SuperCategory"]] = relationship("SuperCategory")

    __table_args__ = (
        UniqueConstraint("household_id", "name", name="uq_category_household_name"),
    )


class ExpenseTemplate(Base, TimestampMixin):
    __tablename__ = "expense_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    amount_original: Mapped[Decimal] = mapped_column(Money, nullable=False)
    amount_ars: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency_code: Mapped[CurrencyCode] = mapped_column(
        CURRENCY_CODE_ENUM, nullable=False, default=CurrencyCode.ars
    )
    fx_rate: Mapped[Decimal] = mapped_column(Rate, nullable=False)
    paid_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    household_id: Mapped[Optional[int]] = mapped_column(ForeignKey("households.id"))
    day_of_month: Mapped[int] = mapped_column(Integer, nullable=False)
    start_month: Mapped[str] = mapped_column(String(7), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    category: Mapped["Category"] = relationship("Category")
    paid_by_user: Mapped["User"] = relationship("User")

    __table_args__ = (
        CheckConstraint(
            "day_of_month >= 1 AND day_of_month <= 31",
            name="ck_template_day_of_month",
        ),
        Index("ix_expense_templates_active", "is_active"),
    )


class RecurringSkipMonth(Base, TimestampMixin):
    __tablename__ = "recurring_skip_months"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    template_id: Mapped[int] = mapped_column(
        ForeignKey("expense_templates.id", ondelete="CASCADE"), nullable=False
    )
    month: Mapped[str] = mapped_column(String(7), nullable=False)

    __table_args__ = (
        UniqueConstraint("template_id", "month", name="uq_skip_template_month"),
    )


class InstallmentSkipMonth(Base, TimestampMixin):
    __tablename__ = "installment_skip_months"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    series_id: Mapped[str] = mapped_column(String(40), nullable=False)
    month: Mapped[str] = mapped_column(String(7), nullable=False)

    __table_args__ = (
        UniqueConstraint("series_id", "month", name="uq_skip_series_month"),
    )


class InstallmentSeriesEnd(Base, TimestampMixin):
    """Last month a series may occupy after its tail was deleted."""

    __tablename__ = "installment_series_ends"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    series_id: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)
    last_month: Mapped[str] = mapped_column(String(7), nullable=False)


@dataclass(frozen=True)
class OneTime:
    pass


@dataclass(frozen=True)
class Fixed:
    template_id: int


@dataclass(frozen=True)
class Installment:
    series_id: str
    number: int
    total: int
    amount: Optional[Decimal] = None
    original_total_amount: Optional[Decimal] = None
    source: str = "manual"
    is_generated: bool = False


ExpenseKind = Union[OneTime, Fixed, Installment]


def kind_columns(kind: ExpenseKind) -> dict[str, object]:
    """Column values describing ``kind``; every other kind's columns are cleared."""
    columns: dict[str, object] = {
        "template_id": None,
        "is_installment": False,
        "installment_series_id": None,
        "installment_number": None,
        "installment_total": None,
        "installment_amount": None,
        "installment_source": None,
        "original_total_amount": None,
        "created_from_series": False,
    }
    if isinstance(kind, Fixed):
        columns["template_id"] = kind.template_id
    elif isinstance(kind, Installment):
        columns.update(
            is_installment=True,
            installment_series_id=kind.series_id,
            installment_number=kind.number,
            installment_total=kind.total,
            installment_amount=kind.amount,
            installment_source=kind.source,
            original_total_amount=kind.original_total_amount,
            created_from_series=kind.is_generated,
        )
    elif not isinstance(kind, OneTime):
        raise TypeError(f"Unknown expense kind: {kind!r}")
    return columns


class Expense(Base, TimestampMixin):
    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    amount_original: Mapped[Decimal] = mapped_column(Money, nullable=False)
    amount_ars: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency_code: Mapped[CurrencyCode] = mapped_column(
        CURRENCY_CODE_ENUM, nullable=False, default=CurrencyCode.ars
    )
    fx_rate_used: Mapped[Decimal] = mapped_column(Rate, nullable=False)
    household_id: Mapped[Optional[int]] = mapped_column(ForeignKey("households.id"))
    paid_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    template_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("expense_templates.id", ondelete="SET NULL")
    )
    is_installment: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    installment_series_id: Mapped[Optional[str]] = mapped_column(String(40))
    installment_number: Mapped[Optional[int]] = mapped_column(Integer)
    installment_total: Mapped[Optional[int]] = mapped_column(Integer)
    installment_amount: Mapped[Optional[Decimal]] = mapped_column(Money)
    installment_source: Mapped[Optional[str]] = mapped_column(String(20))
    original_total_amount: Mapped[Optional[Decimal]] = mapped_column(Money)
    created_from_series: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    category: Mapped["Category"] = relationship("Category")
    paid_by_user: Mapped["User"] = relationship("User")
    template: Mapped[Optional["ExpenseTemplate"]] = relationship("ExpenseTemplate")

    __table_args__ = (
        UniqueConstraint("template_id", "month", name="uq_expense_template_month"),
        UniqueConstraint(
            "installment_series_id", "month", name="uq_expense_series_month"
        ),
        CheckConstraint(
            "NOT (is_installment AND template_id IS NOT NULL)",
            name="ck_expense_fixed_xor_installment",
        ),
        CheckConstraint(
            "installment_number IS NULL OR "
            "(installment_number >= 1 AND installment_number <= installment_total)",
            name="ck_expense_installment_number_range",
        ),
        Index("ix_expenses_month", "month"),
        Index(
            "ix_expenses_series_number", "installment_series_id", "installment_number"
        ),
    )

    @property
    def kind(self) -> ExpenseKind:
        if self.is_installment and self.installment_series_id:
            return Installment(
                series_id=self.installment_series_id,
                number=self.installment_number or 1,
                total=self.installment_total or self.installment_number or 1,
                amount=self.installment_amount,
                original_total_amount=self.original_total_amount,
                source=self.installment_source or "manual",
                is_generated=self.created_from_series,
            )
        if self.template_id is not None:
            return Fixed(template_id=self.template_id)
        return OneTime()

    def set_kind(self, kind: ExpenseKind) -> None:
        for column, value in kind_columns(kind).items():
            setattr(self, column, value)


@dataclass
class ExpensePatch:
    """Fields to overwrite on an expense; ``None`` leaves a field untouched."""

    month: Optional[str] = None
    date: Optional[dt.date] = None
    description: Optional[str] = None
    category_id: Optional[int] = None
    paid_by_user_id: Optional[int] = None
    currency_code: Optional[CurrencyCode] = None
    fx_rate_used: Optional[Decimal] = None
    amount_original: Optional[Decimal] = None

    def apply(self, expense: Expense) -> None:
        for field in fields(self):
            value = getattr(self, field.name)
            if value is not None:
                setattr(expense, field.name, value)
        expense.amount_ars = to_ars(expense.amount_original, expense.fx_rate_used)


class MonthlyIncome(Base, TimestampMixin):
    __tablename__ = "monthly_incomes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_original: Mapped[Decimal] = mapped_column(Money, nullable=False)
    amount_ars: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency_code: Mapped[CurrencyCode] = mapped_column(
        CURRENCY_CODE_ENUM, nullable=False, default=CurrencyCode.ars
    )
    fx_rate_used: Mapped[Decimal] = mapped_column(Rate, nullable=False)

    user: Mapped["User"] = relationship("User")

    __table_args__ = (Index("ix_monthly_incomes_month_user", "month", "user_id"),)


class MonthlyExchangeRate(Base, TimestampMixin):
    __tablename__ = "monthly_exchange_rates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    currency_code: Mapped[CurrencyCode] = mapped_column(
        CURRENCY_CODE_ENUM, nullable=False
    )
    rate_to_ars: Mapped[Decimal] = mapped_column(Rate, nullable=False)

    __table_args__ = (
        UniqueConstraint("month", "currency_code", name="uq_fx_month_currency"),
        CheckConstraint("rate_to_ars > 0", name="ck_fx_rate_positive"),
    )
