import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from database import insert_ignoring_conflicts
from fx_rates import ExchangeRateService
from models import (
    ApplyScope,
    CurrencyCode,
    Expense,
    ExpensePatch,
    ExpenseTemplate,
    Fixed,
    RecurringSkipMonth,
    kind_columns,
)
from money import ARS_RATE, round_money, round_rate, to_ars
from months import month_diff, month_to_date, parse_month

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TemplateValues:
    description: str
    category_id: int
    amount_original: Decimal
    currency_code: CurrencyCode
    fx_rate: Decimal
    paid_by_user_id: int
    day_of_month: int

    @classmethod
    def from_expense(cls, expense: Expense) -> "TemplateValues":
        return cls(
            description=expense.description,
            category_id=expense.category_id,
            amount_original=expense.amount_original,
            currency_code=expense.currency_code,
            fx_rate=expense.fx_rate_used,
            paid_by_user_id=expense.paid_by_user_id,
            day_of_month=expense.date.day,
        )


class RecurringExpenseMaterializer:
    """Generates one expense per active template per month.

    Generation is pull-based and idempotent: calling ``ensure_for_month`` any
    number of times leaves exactly one row per (template, month). Problems with
    individual templates are reported as warnings and never stop the batch.
    Transactions are owned by the caller.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def create_template(
        self,
        values: TemplateValues,
        *,
        household_id: Optional[int],
        start_month: str,
    ) -> ExpenseTemplate:
        parse_month(start_month)
        amount_original = round_money(values.amount_original)
        fx_rate = round_rate(values.fx_rate)
        template = ExpenseTemplate(
            description=values.description,
            category_id=values.category_id,
            amount_original=amount_original,
            amount_ars=to_ars(amount_original, fx_rate),
            currency_code=values.currency_code,
            fx_rate=fx_rate,
            paid_by_user_id=values.paid_by_user_id,
            household_id=household_id,
            day_of_month=values.day_of_month,
            start_month=start_month,
            is_active=True,
        )
        self.session.add(template)
        self.session.flush()
        return template

    def ensure_for_month(self, month: str) -> list[str]:
        parse_month(month)
        templates = (
            self.session.scalars(
                select(ExpenseTemplate)
                .options(
                    joinedload(ExpenseTemplate.category),
                    joinedload(ExpenseTemplate.paid_by_user),
                )
                .where(ExpenseTemplate.is_active.is_(True))
                .order_by(ExpenseTemplate.created_at, ExpenseTemplate.id)
            )
            .unique()
            .all()
        )
        if not templates:
            return []

        template_ids = [template.id for template in templates]
        existing_ids = set(
            self.session.scalars(
                select(Expense.template_id).where(
                    Expense.month == month, Expense.template_id.in_(template_ids)
                )
            ).all()
        )
        skipped_ids = set(
            self.session.scalars(
                select(RecurringSkipMonth.template_id).where(
                    RecurringSkipMonth.month == month,
                    RecurringSkipMonth.template_id.in_(template_ids),
                )
            ).all()
        )
        monthly_rates = ExchangeRateService(self.session).rates_for_month(
            month, {template.currency_code for template in templates}
        )

        warnings: list[str] = []
        generated = 0
        for template in templates:
            # A template never backfills months before it was created.
            if month_diff(template.start_month, month) < 0:
                continue
            if template.category.archived_at is not None:
                warnings.append(
                    f'Fixed expense "{template.description}" was skipped because '
                    f'category "{template.category.name}" is archived.'
                )
                continue
            if template.id in existing_ids or template.id in skipped_ids:
                continue

            if template.currency_code == CurrencyCode.ars:
                fx_rate_used = ARS_RATE
            else:
                fx_rate_used = monthly_rates.get(
                    template.currency_code, round_rate(template.fx_rate)
                )
            household_id = template.household_id or template.paid_by_user.household_id
            if household_id is None:
                warnings.append(
                    f'Fixed expense "{template.description}" was skipped because '
                    "it has no household context."
                )
                continue

            try:
                with self.session.begin_nested():
                    created = self._insert_generated_row(
                        template, month, fx_rate_used, household_id
                    )
            except SQLAlchemyError as exc:
                warnings.append(
                    f'Fixed expense "{template.description}" could not be '
                    f"generated ({exc.__class__.__name__})."
                )
                continue
            if created:
                generated += 1

        for warning in warnings:
            logger.warning("recurring_skip: month=%s %s", month, warning)
        logger.info(
            "recurring_materialized: month=%s templates=%s generated=%s",
            month,
            len(templates),
            generated,
        )
        return warnings

    def _insert_generated_row(
        self,
        template: ExpenseTemplate,
        month: str,
        fx_rate_used: Decimal,
        household_id: int,
    ) -> bool:
        amount_original = round_money(template.amount_original)
        values: dict[str, object] = {
            "month": month,
            "date": month_to_date(month, template.day_of_month),
            "description": template.description,
            "category_id": template.category_id,
            "amount_original": amount_original,
            "amount_ars": to_ars(amount_original, fx_rate_used),
            "currency_code": template.currency_code,
            "fx_rate_used": fx_rate_used,
            "household_id": household_id,
            "paid_by_user_id": template.paid_by_user_id,
        }
        values.update(kind_columns(Fixed(template_id=template.id)))
        return insert_ignoring_conflicts(
            self.session, Expense, values, ["template_id", "month"]
        )

    def apply_template_values_to_future_months(
        self, template_id: int, from_month: str, values: TemplateValues
    ) -> int:
        """Rewrite the template and its generated rows after ``from_month``."""
        parse_month(from_month)
        template = self.session.get(ExpenseTemplate, template_id)
        if not template:
            raise ValueError("Template not found")

        amount_original = round_money(values.amount_original)
        fx_rate = round_rate(values.fx_rate)
        template.description = values.description
        template.category_id = values.category_id
        template.amount_original = amount_original
        template.amount_ars = to_ars(amount_original, fx_rate)
        template.currency_code = values.currency_code
        template.fx_rate = fx_rate
        template.paid_by_user_id = values.paid_by_user_id
        template.day_of_month = values.day_of_month

        future_rows = self.session.scalars(
            select(Expense).where(
                Expense.template_id == template_id, Expense.month > from_month
            )
        ).all()
        for row in future_rows:
            ExpensePatch(
                date=month_to_date(row.month, values.day_of_month),
                description=values.description,
                category_id=values.category_id,
                paid_by_user_id=values.paid_by_user_id,
                currency_code=values.currency_code,
                fx_rate_used=fx_rate,
                amount_original=amount_original,
            ).apply(row)
        self.session.flush()
        logger.info(
            "template_propagated: template_id=%s from_month=%s rows=%s",
            template_id,
            from_month,
            len(future_rows),
        )
        return len(future_rows)

    def delete_fixed_expense(
        self, expense: Expense, scope: Optional[ApplyScope] = None
    ) -> int:
        if expense.template_id is None:
            raise ValueError("Expense is not a fixed expense")
        scope = ApplyScope(scope or ApplyScope.single)
        template_id = expense.template_id

        if scope == ApplyScope.single:
            month = expense.month
            self.session.delete(expense)
            self.session.flush()
            insert_ignoring_conflicts(
                self.session,
                RecurringSkipMonth,
                {"template_id": template_id, "month": month},
                ["template_id", "month"],
            )
            return 1

        stmt = delete(Expense).where(Expense.template_id == template_id)
        if scope == ApplyScope.future:
            stmt = stmt.where(Expense.month >= expense.month)
        result = self.session.execute(stmt)

        template = self.session.get(ExpenseTemplate, template_id)
        if template:
            template.is_active = False
        self.session.flush()
        return result.rowcount
