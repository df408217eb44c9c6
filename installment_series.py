import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import insert_ignoring_conflicts
from installments import InstallmentEntryMode, compute_installment_amounts
from models import (
    ApplyScope,
    Expense,
    ExpenseKind,
    ExpensePatch,
    Installment,
    InstallmentSeriesEnd,
    InstallmentSkipMonth,
    OneTime,
    kind_columns,
)
from money import DecimalLike, round_money, round_rate, to_ars
from months import add_months, month_diff, month_to_date, parse_month
from schemas import ExpenseUpdateIn, InstallmentIn

logger = logging.getLogger(__name__)

MANUAL_SOURCE = "manual"


class UnsupportedScopeChange(ValueError):
    pass


def new_series_id() -> str:
    return f"ser_{uuid.uuid4()}"


def effective_scope(expense: Expense, scope: Optional[ApplyScope]) -> ApplyScope:
    """Installment rows default to ``future``; everything else to ``single``."""
    if scope is not None:
        return ApplyScope(scope)
    if expense.is_installment:
        return ApplyScope.future
    return ApplyScope.single


def schedule_for_row(row: Expense) -> list[str]:
    total = row.installment_total or row.installment_number or 1
    if row.original_total_amount is not None:
        schedule = compute_installment_amounts(
            total,
            InstallmentEntryMode.total,
            total_amount=row.original_total_amount,
        )
    else:
        per_installment = (
            row.installment_amount
            if row.installment_amount is not None
            else row.amount_original
        )
        schedule = compute_installment_amounts(
            total,
            InstallmentEntryMode.per_installment,
            per_installment_amount=per_installment,
        )
    return schedule.amounts


@dataclass(frozen=True)
class ResolvedAmount:
    amount_original: Decimal
    kind: ExpenseKind


def resolve_create_amount(
    amount: Optional[DecimalLike], installment: Optional[InstallmentIn]
) -> ResolvedAmount:
    """Amount of the row being written plus its kind, starting a new series if asked."""
    if installment is None or not installment.enabled:
        if amount is None:
            raise ValueError("amount is required when installment is disabled")
        return ResolvedAmount(round_money(amount), OneTime())

    count = installment.count or 1
    entry_mode = installment.entry_mode or InstallmentEntryMode.per_installment
    per_installment = (
        installment.per_installment_amount
        if installment.per_installment_amount is not None
        else amount
    )
    schedule = compute_installment_amounts(
        count,
        entry_mode,
        per_installment_amount=per_installment,
        total_amount=installment.total_amount,
    )
    first = Decimal(schedule.amounts[0])
    original_total = None
    if entry_mode == InstallmentEntryMode.total and installment.total_amount is not None:
        original_total = round_money(installment.total_amount)
    return ResolvedAmount(
        amount_original=first,
        kind=Installment(
            series_id=new_series_id(),
            number=1,
            total=count,
            amount=first,
            original_total_amount=original_total,
            source=MANUAL_SOURCE,
        ),
    )


class InstallmentSeriesMaterializer:
    """Lazily extends installment series and applies scoped edits to them.

    A series is anchored by its earliest row. Reading a month generates the
    row whose number is the anchor's number plus the month offset, as long as
    it falls inside the series and the month was not removed on purpose.
    Transactions are owned by the caller.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def series_rows(
        self, series_id: str, *, from_month: Optional[str] = None
    ) -> list[Expense]:
        stmt = select(Expense).where(Expense.installment_series_id == series_id)
        if from_month is not None:
            stmt = stmt.where(Expense.month >= from_month)
        stmt = stmt.order_by(Expense.month, Expense.id)
        return list(self.session.scalars(stmt).all())

    def ensure_for_month(self, month: str) -> list[str]:
        parse_month(month)
        rows = self.session.scalars(
            select(Expense)
            .where(
                Expense.is_installment.is_(True),
                Expense.installment_series_id.is_not(None),
                Expense.month <= month,
            )
            .order_by(Expense.installment_series_id, Expense.month, Expense.id)
        ).all()

        by_series: dict[str, list[Expense]] = {}
        for row in rows:
            by_series.setdefault(row.installment_series_id, []).append(row)
        if not by_series:
            return []
        skipped = set(
            self.session.scalars(
                select(InstallmentSkipMonth.series_id).where(
                    InstallmentSkipMonth.month == month,
                    InstallmentSkipMonth.series_id.in_(list(by_series)),
                )
            ).all()
        )
        skipped.update(
            self.session.scalars(
                select(InstallmentSeriesEnd.series_id).where(
                    InstallmentSeriesEnd.last_month < month,
                    InstallmentSeriesEnd.series_id.in_(list(by_series)),
                )
            ).all()
        )

        warnings: list[str] = []
        generated = 0
        for series_id, series in by_series.items():
            anchor = series[0]
            if not anchor.installment_number or not anchor.installment_total:
                continue
            if series_id in skipped or any(row.month == month for row in series):
                continue

            # The latest earlier row carries any future-scoped edits.
            latest = series[-1]
            total = latest.installment_total or anchor.installment_total
            number = anchor.installment_number + month_diff(anchor.month, month)
            if number < 1 or number > total:
                continue
            if latest.household_id is None:
                warnings.append(
                    f'Installment "{latest.description}" was skipped for {month} '
                    "because it has no household context."
                )
                continue

            amount_original = Decimal(schedule_for_row(latest)[number - 1])
            values: dict[str, object] = {
                "month": month,
                "date": month_to_date(month, anchor.date.day),
                "description": latest.description,
                "category_id": latest.category_id,
                "amount_original": amount_original,
                "amount_ars": to_ars(amount_original, latest.fx_rate_used),
                "currency_code": latest.currency_code,
                "fx_rate_used": latest.fx_rate_used,
                "household_id": latest.household_id,
                "paid_by_user_id": latest.paid_by_user_id,
            }
            values.update(
                kind_columns(
                    Installment(
                        series_id=series_id,
                        number=number,
                        total=total,
                        amount=amount_original,
                        original_total_amount=latest.original_total_amount,
                        source=latest.installment_source or MANUAL_SOURCE,
                        is_generated=True,
                    )
                )
            )
            try:
                with self.session.begin_nested():
                    created = insert_ignoring_conflicts(
                        self.session, Expense, values, ["installment_series_id", "month"]
                    )
            except SQLAlchemyError as exc:
                warnings.append(
                    f'Installment "{latest.description}" could not be generated '
                    f"for {month} ({exc.__class__.__name__})."
                )
                continue
            if created:
                generated += 1

        for warning in warnings:
            logger.warning("installment_skip: month=%s %s", month, warning)
        if generated:
            logger.info(
                "installments_materialized: month=%s generated=%s", month, generated
            )
        return warnings

    def skip_month(self, series_id: str, month: str) -> None:
        """Keep lazy generation from refilling ``month`` for ``series_id``."""
        insert_ignoring_conflicts(
            self.session,
            InstallmentSkipMonth,
            {"series_id": series_id, "month": month},
            ["series_id", "month"],
        )

    def end_series(self, series_id: str, last_month: str) -> None:
        """Stop lazy generation for ``series_id`` after ``last_month``."""
        marker = self.session.scalar(
            select(InstallmentSeriesEnd).where(
                InstallmentSeriesEnd.series_id == series_id
            )
        )
        if marker is None:
            self.session.add(
                InstallmentSeriesEnd(series_id=series_id, last_month=last_month)
            )
        elif last_month < marker.last_month:
            marker.last_month = last_month

    def propagate_update(
        self, existing: Expense, data: ExpenseUpdateIn
    ) -> Optional[Expense]:
        """Apply ``data`` to ``existing`` and, depending on scope, its series.

        Returns ``None`` when the edit shrank the series below ``existing``.
        """
        scope = effective_scope(existing, data.apply_scope)
        if (
            not existing.is_installment
            or not existing.installment_series_id
            or scope == ApplyScope.single
        ):
            return self.update_single(existing, data)

        if data.month is not None and data.month != existing.month:
            raise UnsupportedScopeChange(
                "Changing the month of an installment is only supported with "
                "apply_scope=single"
            )
        if data.installment is not None and not data.installment.enabled:
            raise UnsupportedScopeChange(
                "Disabling installments is only supported with apply_scope=single"
            )

        series_id = existing.installment_series_id
        rows = self.series_rows(
            series_id,
            from_month=None if scope == ApplyScope.all else existing.month,
        )

        installment = data.installment
        new_total = (
            (installment.count if installment else None)
            or existing.installment_total
            or 1
        )
        entry_mode = installment.entry_mode if installment else None
        if installment and installment.per_installment_amount is not None:
            per_installment = installment.per_installment_amount
        elif data.amount is not None:
            per_installment = data.amount
        elif existing.installment_amount is not None:
            per_installment = existing.installment_amount
        else:
            per_installment = existing.amount_original
        if installment and entry_mode == InstallmentEntryMode.total:
            total_amount = installment.total_amount
        else:
            total_amount = existing.original_total_amount
        if entry_mode is None:
            entry_mode = (
                InstallmentEntryMode.total
                if total_amount is not None
                else InstallmentEntryMode.per_installment
            )
        schedule = compute_installment_amounts(
            new_total,
            entry_mode,
            per_installment_amount=per_installment,
            total_amount=total_amount,
        ).amounts
        original_total = (
            round_money(total_amount)
            if entry_mode == InstallmentEntryMode.total
            else None
        )
        fx_rate = round_rate(data.fx_rate) if data.fx_rate is not None else None
        if installment is not None and installment.count is not None:
            # An explicit count sets the series length again.
            self.session.execute(
                delete(InstallmentSeriesEnd).where(
                    InstallmentSeriesEnd.series_id == series_id
                )
            )

        removed = 0
        for row in rows:
            if not row.installment_number:
                continue
            if row.installment_number > new_total:
                self.session.delete(row)
                removed += 1
                continue
            amount = Decimal(schedule[row.installment_number - 1])
            ExpensePatch(
                date=month_to_date(row.month, data.date.day) if data.date else None,
                description=data.description,
                category_id=data.category_id,
                paid_by_user_id=data.paid_by_user_id,
                currency_code=data.currency_code,
                fx_rate_used=fx_rate,
                amount_original=amount,
            ).apply(row)
            row.set_kind(
                Installment(
                    series_id=series_id,
                    number=row.installment_number,
                    total=new_total,
                    amount=amount,
                    original_total_amount=original_total,
                    source=MANUAL_SOURCE,
                    is_generated=row.created_from_series,
                )
            )
        self.session.flush()
        logger.info(
            "installment_series_updated: series=%s scope=%s rows=%s removed=%s",
            series_id,
            scope.value,
            len(rows) - removed,
            removed,
        )
        if existing.installment_number and existing.installment_number > new_total:
            return None
        return existing

    def update_single(self, existing: Expense, data: ExpenseUpdateIn) -> Expense:
        patch = ExpensePatch(
            month=data.month,
            date=data.date,
            description=data.description,
            category_id=data.category_id,
            paid_by_user_id=data.paid_by_user_id,
            currency_code=data.currency_code,
            fx_rate_used=round_rate(data.fx_rate) if data.fx_rate is not None else None,
            amount_original=round_money(data.amount) if data.amount is not None else None,
        )
        installment = data.installment
        kind: Optional[ExpenseKind] = None
        if installment is not None and installment.enabled:
            resolved = resolve_create_amount(data.amount, installment)
            patch.amount_original = resolved.amount_original
            kind = resolved.kind
        elif installment is not None and existing.is_installment:
            kind = OneTime()

        old_series_id = existing.installment_series_id if existing.is_installment else None
        old_month = existing.month
        patch.apply(existing)
        if kind is not None:
            existing.set_kind(kind)
        self.session.flush()
        if old_series_id and (
            existing.installment_series_id != old_series_id or existing.month != old_month
        ):
            self.skip_month(old_series_id, old_month)
        return existing

    def propagate_delete(
        self, existing: Expense, scope: Optional[ApplyScope] = None
    ) -> int:
        scope = effective_scope(existing, scope)
        series_id = existing.installment_series_id
        if not existing.is_installment or not series_id:
            self.session.delete(existing)
            self.session.flush()
            return 1

        if scope == ApplyScope.single:
            month = existing.month
            self.session.delete(existing)
            self.session.flush()
            self.skip_month(series_id, month)
            return 1

        month = existing.month
        stmt = delete(Expense).where(Expense.installment_series_id == series_id)
        if scope == ApplyScope.future:
            stmt = stmt.where(Expense.month >= month)
        result = self.session.execute(stmt)

        if scope == ApplyScope.future:
            # Earlier installments stay as they are; only lazy generation stops.
            self.end_series(series_id, add_months(month, -1))
        else:
            self.session.execute(
                delete(InstallmentSkipMonth).where(
                    InstallmentSkipMonth.series_id == series_id
                )
            )
            self.session.execute(
                delete(InstallmentSeriesEnd).where(
                    InstallmentSeriesEnd.series_id == series_id
                )
            )
        self.session.flush()
        logger.info(
            "installment_series_deleted: series=%s scope=%s rows=%s",
            series_id,
            scope.value,
            result.rowcount,
        )
        return result.rowcount
