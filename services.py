from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session, contains_eager

from database import atomic
from fx_rates import ExchangeRateService
from installment_series import InstallmentSeriesMaterializer, resolve_create_amount
from models import (
    DEFAULT_SUPER_CATEGORY_COLOR,
    ApplyScope,
    Category,
    Expense,
    ExpenseTemplate,
    Fixed,
    Household,
    MonthlyIncome,
    SuperCategory,
    User,
)
from money import ZERO, round_money, to_ars
from months import parse_month
from recurrence import RecurringExpenseMaterializer, TemplateValues
from schemas import (
    CategoryIn,
    ExpenseFilters,
    ExpenseIn,
    ExpensePageIn,
    ExpenseUpdateIn,
    HouseholdIn,
    IncomeEntriesIn,
    SuperCategoryIn,
    SuperCategoryUpdateIn,
    UserIn,
)
from settlement import SettlementOutput, calculate_settlement

logger = logging.getLogger(__name__)

CUSTOM_SUPER_CATEGORY_SORT_ORDER = 1000


def slugify(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value.strip().lower())
    plain = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"[^a-z0-9]+", "-", plain).strip("-")[:48]


class HouseholdService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Household]:
        stmt = select(Household).order_by(Household.created_at, Household.id)
        return list(self.session.scalars(stmt).all())

    def create(self, data: HouseholdIn) -> Household:
        name = data.name.strip()
        if not name:
            raise ValueError("Household name is required")
        household = Household(name=name)
        self.session.add(household)
        self.session.commit()
        return household


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self, household_id: Optional[int] = None) -> list[User]:
        stmt = select(User).order_by(User.created_at, User.id)
        if household_id is not None:
            stmt = stmt.where(User.household_id == household_id)
        return list(self.session.scalars(stmt).all())

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise ValueError("User not found")
        return user

    def create(self, data: UserIn) -> User:
        if data.household_id is not None and not self.session.get(
            Household, data.household_id
        ):
            raise ValueError("Household not found")
        user = User(name=data.name.strip(), household_id=data.household_id)
        self.session.add(user)
        self.session.commit()
        return user


class SuperCategoryService:
    """Groups of categories used to roll up spending."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self, include_archived: bool = False) -> list[SuperCategory]:
        stmt = select(SuperCategory).order_by(
            SuperCategory.archived_at.is_not(None),
            SuperCategory.sort_order,
            SuperCategory.name,
            SuperCategory.id,
        )
        if not include_archived:
            stmt = stmt.where(SuperCategory.archived_at.is_(None))
        return list(self.session.scalars(stmt).all())

    def get(self, super_category_id: int) -> SuperCategory:
        super_category = self.session.get(SuperCategory, super_category_id)
        if not super_category:
            raise ValueError("Super category not found")
        return super_category

    def get_active(self, super_category_id: int) -> SuperCategory:
        super_category = self.session.get(SuperCategory, super_category_id)
        if not super_category or super_category.archived_at is not None:
            raise ValueError("Super category must exist and be active")
        return super_category

    def category_counts(self, super_category_ids: Iterable[int]) -> dict[int, int]:
        ids = list(super_category_ids)
        if not ids:
            return {}
        rows = self.session.execute(
            select(Category.super_category_id, func.count(Category.id))
            .where(Category.super_category_id.in_(ids))
            .group_by(Category.super_category_id)
        ).all()
        counts = dict(rows)
        return {group_id: counts.get(group_id, 0) for group_id in ids}

    def create(self, data: SuperCategoryIn) -> SuperCategory:
        slug = slugify(data.name) or "group"
        if self.session.scalar(select(SuperCategory).where(SuperCategory.slug == slug)):
            raise ValueError("Super category name already exists")
        super_category = SuperCategory(
            name=data.name.strip(),
            slug=slug,
            color=data.color or DEFAULT_SUPER_CATEGORY_COLOR,
            icon=data.icon,
            sort_order=(
                data.sort_order
                if data.sort_order is not None
                else CUSTOM_SUPER_CATEGORY_SORT_ORDER
            ),
            is_system=False,
        )
        self.session.add(super_category)
        self.session.commit()
        return super_category

    def update(self, super_category_id: int, data: SuperCategoryUpdateIn) -> SuperCategory:
        super_category = self.get(super_category_id)
        if data.name:
            super_category.name = data.name.strip()
        if data.color:
            super_category.color = data.color
        if data.icon is not None:
            super_category.icon = data.icon
        if data.sort_order is not None:
            super_category.sort_order = data.sort_order
        self.session.commit()
        return super_category

    def archive(
        self, super_category_id: int, replacement_id: Optional[int] = None
    ) -> SuperCategory:
        """Archive a group; its categories move to ``replacement_id`` or become ungrouped."""
        source = self.get(super_category_id)
        if source.is_system:
            raise ValueError("System super categories cannot be archived")
        replacement = None
        if replacement_id is not None:
            replacement = self.session.get(SuperCategory, replacement_id)
            if not replacement or replacement.archived_at is not None:
                raise ValueError("Replacement super category must exist and be active")
            if replacement.id == source.id:
                raise ValueError("Replacement super category must be different")

        with atomic(self.session):
            self.session.execute(
                update(Category)
                .where(Category.super_category_id == source.id)
                .values(super_category_id=replacement.id if replacement else None)
            )
            source.archived_at = datetime.utcnow()
        logger.info(
            "super_category_archived: id=%s replacement=%s",
            source.id,
            replacement.id if replacement else None,
        )
        return source


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(
        self, include_archived: bool = False, household_id: Optional[int] = None
    ) -> list[Category]:
        stmt = (
            select(Category)
            .outerjoin(Category.super_category)
            .options(contains_eager(Category.super_category))
            .order_by(
                Category.archived_at.is_not(None),
                SuperCategory.sort_order.is_(None),
                SuperCategory.sort_order,
                Category.name,
                Category.id,
            )
        )
        if not include_archived:
            stmt = stmt.where(Category.archived_at.is_(None))
        if household_id is not None:
            stmt = stmt.where(Category.household_id == household_id)
        return list(self.session.scalars(stmt).all())

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise ValueError("Category not found")
        return category

    def get_active(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.archived_at is not None:
            raise ValueError("Category must exist and be active")
        return category

    def usage_counts(self, category_ids: Iterable[int]) -> dict[int, tuple[int, int]]:
        """Expense and fixed-template counts per category."""
        ids = list(category_ids)
        if not ids:
            return {}
        expenses = dict(
            self.session.execute(
                select(Expense.category_id, func.count(Expense.id))
                .where(Expense.category_id.in_(ids))
                .group_by(Expense.category_id)
            ).all()
        )
        templates = dict(
            self.session.execute(
                select(ExpenseTemplate.category_id, func.count(ExpenseTemplate.id))
                .where(ExpenseTemplate.category_id.in_(ids))
                .group_by(ExpenseTemplate.category_id)
            ).all()
        )
        return {
            category_id: (expenses.get(category_id, 0), templates.get(category_id, 0))
            for category_id in ids
        }

    def _ensure_unique_name(
        self, name: str, household_id: Optional[int], exclude_id: Optional[int] = None
    ) -> None:
        stmt = select(Category).where(func.lower(Category.name) == name.lower())
        if household_id is None:
            stmt = stmt.where(Category.household_id.is_(None))
        else:
            stmt = stmt.where(Category.household_id == household_id)
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if self.session.scalar(stmt):
            raise ValueError("Category with this name already exists")

    def create(self, data: CategoryIn) -> Category:
        if data.household_id is not None and not self.session.get(
            Household, data.household_id
        ):
            raise ValueError("Household not found")
        if data.super_category_id is not None:
            SuperCategoryService(self.session).get_active(data.super_category_id)
        name = data.name.strip()
        self._ensure_unique_name(name, data.household_id)
        category = Category(
            name=name,
            household_id=data.household_id,
            super_category_id=data.super_category_id,
        )
        self.session.add(category)
        self.session.commit()
        return category

    def rename(self, category_id: int, name: str) -> Category:
        category = self.get(category_id)
        name = name.strip()
        if not name:
            raise ValueError("Category name is required")
        self._ensure_unique_name(name, category.household_id, exclude_id=category.id)
        category.name = name
        self.session.commit()
        return category

    def assign_super_category(
        self, category_id: int, super_category_id: Optional[int]
    ) -> Category:
        category = self.get(category_id)
        if super_category_id is not None:
            SuperCategoryService(self.session).get_active(super_category_id)
        category.super_category_id = super_category_id
        self.session.commit()
        self.session.refresh(category)
        return category

    def archive(
        self, category_id: int, replacement_category_id: Optional[int] = None
    ) -> Category:
        """Archive a category, moving its expenses and templates to a replacement."""
        category = self.session.get(Category, category_id)
        if not category:
            raise ValueError("Category not found")

        in_use = self.session.scalar(
            select(func.count(Expense.id)).where(Expense.category_id == category_id)
        ) or self.session.scalar(
            select(func.count(ExpenseTemplate.id)).where(
                ExpenseTemplate.category_id == category_id
            )
        )
        if in_use and replacement_category_id is None:
            raise ValueError(
                "This category has assigned expenses. Choose a replacement "
                "category before archiving."
            )
        replacement = None
        if replacement_category_id is not None:
            if replacement_category_id == category_id:
                raise ValueError("Replacement category must be different")
            replacement = self.get_active(replacement_category_id)

        with atomic(self.session):
            if replacement is not None:
                self.session.execute(
                    update(Expense)
                    .where(Expense.category_id == category_id)
                    .values(category_id=replacement.id)
                )
                self.session.execute(
                    update(ExpenseTemplate)
                    .where(ExpenseTemplate.category_id == category_id)
                    .values(category_id=replacement.id)
                )
            category.archived_at = datetime.utcnow()
        return category

    def restore(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise ValueError("Category not found")
        category.archived_at = None
        self.session.commit()
        return category


class IncomeService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_for_month(self, month: str) -> list[MonthlyIncome]:
        parse_month(month)
        stmt = (
            select(MonthlyIncome)
            .join(MonthlyIncome.user)
            .options(contains_eager(MonthlyIncome.user))
            .where(MonthlyIncome.month == month)
            .order_by(User.created_at, User.id, MonthlyIncome.id)
        )
        return list(self.session.scalars(stmt).all())

    def replace_entries(self, data: IncomeEntriesIn) -> list[MonthlyIncome]:
        """Replace a user's income entries for the month in one transaction."""
        UserService(self.session).get(data.user_id)
        rates = ExchangeRateService(self.session)
        created: list[MonthlyIncome] = []
        with atomic(self.session):
            self.session.execute(
                delete(MonthlyIncome).where(
                    MonthlyIncome.month == data.month,
                    MonthlyIncome.user_id == data.user_id,
                )
            )
            for entry in data.entries:
                fx_rate_used = rates.require_for_month(
                    data.month, entry.currency_code, entry.fx_rate
                )
                amount_original = round_money(entry.amount)
                income = MonthlyIncome(
                    month=data.month,
                    user_id=data.user_id,
                    description=entry.description,
                    amount_original=amount_original,
                    amount_ars=to_ars(amount_original, fx_rate_used),
                    currency_code=entry.currency_code,
                    fx_rate_used=fx_rate_used,
                )
                self.session.add(income)
                created.append(income)
            self.session.flush()
        logger.info(
            "incomes_replaced: month=%s user_id=%s entries=%s",
            data.month,
            data.user_id,
            len(created),
        )
        return created


_SORT_COLUMNS = {
    "date": Expense.date,
    "description": Expense.description,
    "category": Category.name,
    "amount_ars": Expense.amount_ars,
    "paid_by": User.name,
}


@dataclass
class Pagination:
    limit: int
    next_cursor: Optional[int]
    has_more: bool
    total_count: Optional[int]

    def as_dict(self) -> dict:
        return {
            "limit": self.limit,
            "next_cursor": self.next_cursor,
            "has_more": self.has_more,
            "total_count": self.total_count,
        }


@dataclass
class ExpenseListing:
    expenses: list[Expense]
    warnings: list[str]
    pagination: Optional[Pagination] = None


class ExpenseService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def hydrate_month(self, month: str) -> list[str]:
        """Materialize fixed and installment rows for ``month``; returns warnings."""
        parse_month(month)
        with atomic(self.session):
            warnings = RecurringExpenseMaterializer(self.session).ensure_for_month(
                month
            )
            warnings += InstallmentSeriesMaterializer(self.session).ensure_for_month(
                month
            )
        return warnings

    def known_months(self) -> list[str]:
        expense_months = self.session.scalars(select(Expense.month).distinct()).all()
        income_months = self.session.scalars(
            select(MonthlyIncome.month).distinct()
        ).all()
        return sorted(set(expense_months) | set(income_months))

    def get(self, expense_id: int) -> Expense:
        expense = self.session.get(Expense, expense_id)
        if not expense:
            raise ValueError("Expense not found")
        return expense

    def list_for_month(
        self,
        month: str,
        filters: Optional[ExpenseFilters] = None,
        hydrate: Optional[bool] = None,
        page: Optional[ExpensePageIn] = None,
    ) -> ExpenseListing:
        """List a month's expenses, sorted and optionally paged by expense id.

        Generation runs only for the first page unless ``hydrate`` says otherwise.
        """
        parse_month(month)
        filters = filters or ExpenseFilters()
        page = page or ExpensePageIn()
        if hydrate is None:
            hydrate = page.cursor is None
        warnings = self.hydrate_month(month) if hydrate else []

        sort_column = _SORT_COLUMNS[filters.sort_by]
        ordering = [sort_column.asc() if filters.sort_dir == "asc" else sort_column.desc()]
        if filters.sort_by != "date":
            ordering.append(Expense.date.desc())
        ordering.append(Expense.id.desc())

        rows_stmt = self._filtered(
            select(Expense).options(
                contains_eager(Expense.category), contains_eager(Expense.paid_by_user)
            ),
            month,
            filters,
        )
        if page.limit is None:
            expenses = list(self.session.scalars(rows_stmt.order_by(*ordering)).all())
            return ExpenseListing(expenses=expenses, warnings=warnings)

        ids_stmt = self._filtered(select(Expense.id), month, filters).order_by(*ordering)
        ordered_ids = list(self.session.scalars(ids_stmt).all())
        start = 0
        if page.cursor is not None:
            try:
                start = ordered_ids.index(page.cursor) + 1
            except ValueError:
                raise ValueError("Invalid cursor") from None
        window = ordered_ids[start : start + page.limit + 1]
        has_more = len(window) > page.limit
        window = window[: page.limit]
        pagination = Pagination(
            limit=page.limit,
            next_cursor=window[-1] if has_more else None,
            has_more=has_more,
            total_count=len(ordered_ids) if page.include_count else None,
        )

        expenses = []
        if window:
            by_id = {
                expense.id: expense
                for expense in self.session.scalars(
                    rows_stmt.where(Expense.id.in_(window))
                ).all()
            }
            expenses = [by_id[expense_id] for expense_id in window]
        return ExpenseListing(expenses=expenses, warnings=warnings, pagination=pagination)

    def _filtered(self, stmt, month: str, filters: ExpenseFilters):
        stmt = (
            stmt.join(Expense.category)
            .join(Expense.paid_by_user)
            .where(Expense.month == month)
        )
        if filters.kind == "oneTime":
            stmt = stmt.where(
                Expense.template_id.is_(None), Expense.is_installment.is_(False)
            )
        elif filters.kind == "fixed":
            stmt = stmt.where(Expense.template_id.is_not(None))
        elif filters.kind == "installment":
            stmt = stmt.where(Expense.is_installment.is_(True))
        if filters.category_id:
            stmt = stmt.where(Expense.category_id == filters.category_id)
        if filters.paid_by_user_id:
            stmt = stmt.where(Expense.paid_by_user_id == filters.paid_by_user_id)
        if filters.household_id:
            stmt = stmt.where(Expense.household_id == filters.household_id)
        if filters.search:
            like = f"%{filters.search.strip().lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(Expense.description).like(like),
                    func.lower(Category.name).like(like),
                    func.lower(User.name).like(like),
                )
            )
        return stmt

    def _household_for(self, user: User, category: Category) -> int:
        household_id = user.household_id or category.household_id
        if not household_id:
            raise ValueError("User and category must belong to a household")
        if (
            user.household_id
            and category.household_id
            and user.household_id != category.household_id
        ):
            raise ValueError("User and category must belong to the same household")
        return household_id

    def create(self, data: ExpenseIn) -> Expense:
        user = UserService(self.session).get(data.paid_by_user_id)
        category = CategoryService(self.session).get_active(data.category_id)
        household_id = self._household_for(user, category)

        with atomic(self.session):
            fx_rate_used = ExchangeRateService(self.session).require_for_month(
                data.month, data.currency_code, data.fx_rate
            )
            resolved = resolve_create_amount(data.amount, data.installment)
            kind = resolved.kind
            if data.fixed and data.fixed.enabled:
                template = RecurringExpenseMaterializer(self.session).create_template(
                    TemplateValues(
                        description=data.description,
                        category_id=data.category_id,
                        amount_original=resolved.amount_original,
                        currency_code=data.currency_code,
                        fx_rate=fx_rate_used,
                        paid_by_user_id=data.paid_by_user_id,
                        day_of_month=data.date.day,
                    ),
                    household_id=household_id,
                    start_month=data.month,
                )
                kind = Fixed(template_id=template.id)

            expense = Expense(
                month=data.month,
                date=data.date,
                description=data.description,
                category_id=data.category_id,
                amount_original=resolved.amount_original,
                amount_ars=to_ars(resolved.amount_original, fx_rate_used),
                currency_code=data.currency_code,
                fx_rate_used=fx_rate_used,
                household_id=household_id,
                paid_by_user_id=data.paid_by_user_id,
            )
            expense.set_kind(kind)
            self.session.add(expense)
            self.session.flush()
        logger.info(
            "expense_created: id=%s month=%s kind=%s",
            expense.id,
            expense.month,
            type(kind).__name__,
        )
        return expense

    def update(self, expense_id: int, data: ExpenseUpdateIn) -> Optional[Expense]:
        """Apply an edit with its scope; ``None`` when the edited row was removed."""
        expense = self.get(expense_id)
        if data.paid_by_user_id is not None:
            UserService(self.session).get(data.paid_by_user_id)
        if data.category_id is not None:
            CategoryService(self.session).get_active(data.category_id)

        with atomic(self.session):
            if data.currency_code is not None or data.fx_rate is not None:
                currency_code = data.currency_code or expense.currency_code
                fx_rate = ExchangeRateService(self.session).require_for_month(
                    data.month or expense.month, currency_code, data.fx_rate
                )
                data = data.model_copy(
                    update={"currency_code": currency_code, "fx_rate": fx_rate}
                )

            updated = InstallmentSeriesMaterializer(self.session).propagate_update(
                expense, data
            )
            if (
                updated is not None
                and data.apply_to_future
                and updated.template_id is not None
            ):
                RecurringExpenseMaterializer(
                    self.session
                ).apply_template_values_to_future_months(
                    updated.template_id,
                    updated.month,
                    TemplateValues.from_expense(updated),
                )
        return updated

    def delete(self, expense_id: int, scope: Optional[ApplyScope] = None) -> int:
        expense = self.get(expense_id)
        with atomic(self.session):
            if expense.is_installment:
                removed = InstallmentSeriesMaterializer(self.session).propagate_delete(
                    expense, scope
                )
            elif expense.template_id is not None:
                removed = RecurringExpenseMaterializer(
                    self.session
                ).delete_fixed_expense(expense, scope)
            else:
                self.session.delete(expense)
                removed = 1
        logger.info("expense_deleted: id=%s rows=%s", expense_id, removed)
        return removed


class SettlementService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def for_month(
        self,
        month: str,
        household_id: Optional[int] = None,
        hydrate: bool = True,
    ) -> SettlementOutput:
        parse_month(month)
        if hydrate:
            ExpenseService(self.session).hydrate_month(month)

        users = UserService(self.session).list_all(household_id)
        incomes_by_user: dict[int, Decimal] = {user.id: ZERO for user in users}
        paid_by_user: dict[int, Decimal] = {user.id: ZERO for user in users}

        income_stmt = select(MonthlyIncome).where(MonthlyIncome.month == month)
        expense_stmt = select(Expense).where(Expense.month == month)
        if household_id is not None:
            income_stmt = income_stmt.where(
                MonthlyIncome.user_id.in_(list(incomes_by_user))
            )
            expense_stmt = expense_stmt.where(Expense.household_id == household_id)

        for income in self.session.scalars(income_stmt):
            incomes_by_user[income.user_id] = (
                incomes_by_user.get(income.user_id, ZERO) + income.amount_ars
            )
        for expense in self.session.scalars(expense_stmt):
            paid_by_user[expense.paid_by_user_id] = (
                paid_by_user.get(expense.paid_by_user_id, ZERO) + expense.amount_ars
            )
        return calculate_settlement(incomes_by_user, paid_by_user)
