import logging
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

import recurrence
from database import Base, create_db_engine
from fx_rates import ExchangeRateService
from models import (
    ApplyScope,
    Category,
    CurrencyCode,
    Expense,
    ExpenseTemplate,
    Fixed,
    Household,
    RecurringSkipMonth,
    User,
)
from recurrence import RecurringExpenseMaterializer, TemplateValues
from schemas import ExpenseIn, ExpenseUpdateIn, FixedIn
from services import ExpenseService


def _session() -> Session:
    engine = create_db_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _seed(session: Session) -> tuple[User, Category]:
    household = Household(name="Casa")
    session.add(household)
    session.flush()
    user = User(name="Ana", household_id=household.id)
    category = Category(name="Rent", household_id=household.id)
    session.add_all([user, category])
    session.commit()
    return user, category


def _fixed_expense(session: Session, user: User, category: Category, **overrides) -> Expense:
    data = dict(
        month="2024-01",
        date=date(2024, 1, 31),
        description="Rent",
        category_id=category.id,
        amount=Decimal("1000"),
        paid_by_user_id=user.id,
        fixed=FixedIn(enabled=True),
    )
    data.update(overrides)
    return ExpenseService(session).create(ExpenseIn(**data))


def _template_rows(session: Session, template_id: int) -> list[Expense]:
    return list(
        session.scalars(
            select(Expense)
            .where(Expense.template_id == template_id)
            .order_by(Expense.month)
        ).all()
    )


def test_fixed_expense_is_generated_once_per_month():
    with _session() as session:
        user, category = _seed(session)
        expense = _fixed_expense(session, user, category)
        materializer = RecurringExpenseMaterializer(session)

        assert materializer.ensure_for_month("2024-02") == []
        assert materializer.ensure_for_month("2024-02") == []
        session.commit()

        rows = _template_rows(session, expense.template_id)
        assert [(row.month, row.date) for row in rows] == [
            ("2024-01", date(2024, 1, 31)),
            ("2024-02", date(2024, 2, 29)),
        ]
        generated = rows[1]
        assert generated.amount_ars == Decimal("1000.00")
        assert generated.household_id == user.household_id
        assert generated.kind == Fixed(template_id=expense.template_id)
        assert not generated.is_installment


def test_template_does_not_backfill_earlier_months():
    with _session() as session:
        user, category = _seed(session)
        expense = _fixed_expense(session, user, category, month="2024-03", date=date(2024, 3, 5))

        RecurringExpenseMaterializer(session).ensure_for_month("2024-02")
        session.commit()

        assert [row.month for row in _template_rows(session, expense.template_id)] == [
            "2024-03"
        ]


def test_archived_category_is_reported_and_skipped(caplog):
    with _session() as session:
        user, category = _seed(session)
        expense = _fixed_expense(session, user, category)
        category.archived_at = datetime(2024, 1, 15)
        session.commit()

        with caplog.at_level(logging.WARNING, logger="recurrence"):
            warnings = RecurringExpenseMaterializer(session).ensure_for_month("2024-02")

        assert warnings == [
            'Fixed expense "Rent" was skipped because category "Rent" is archived.'
        ]
        assert "is archived" in caplog.text
        assert len(_template_rows(session, expense.template_id)) == 1


def test_template_without_household_is_reported_and_others_continue():
    with _session() as session:
        user, category = _seed(session)
        _fixed_expense(session, user, category)
        loner = User(name="Loner")
        session.add(loner)
        session.flush()
        materializer = RecurringExpenseMaterializer(session)
        orphan = materializer.create_template(
            TemplateValues(
                description="Gym",
                category_id=category.id,
                amount_original=Decimal("50"),
                currency_code=CurrencyCode.ars,
                fx_rate=Decimal("1"),
                paid_by_user_id=loner.id,
                day_of_month=10,
            ),
            household_id=None,
            start_month="2024-01",
        )
        session.commit()

        warnings = materializer.ensure_for_month("2024-02")
        session.commit()

        assert warnings == [
            'Fixed expense "Gym" was skipped because it has no household context.'
        ]
        assert _template_rows(session, orphan.id) == []
        months = session.scalars(
            select(Expense.month).where(Expense.description == "Rent")
        ).all()
        assert sorted(months) == ["2024-01", "2024-02"]


def test_generated_rows_use_month_rate_then_template_rate():
    with _session() as session:
        user, category = _seed(session)
        expense = _fixed_expense(
            session,
            user,
            category,
            amount=Decimal("10"),
            currency_code=CurrencyCode.usd,
            fx_rate=Decimal("1000"),
        )
        ExchangeRateService(session).upsert("2024-02", CurrencyCode.usd, "1100")
        session.commit()

        materializer = RecurringExpenseMaterializer(session)
        materializer.ensure_for_month("2024-02")
        materializer.ensure_for_month("2024-03")
        session.commit()

        rows = _template_rows(session, expense.template_id)
        assert [(row.month, row.fx_rate_used, row.amount_ars) for row in rows] == [
            ("2024-01", Decimal("1000.000000"), Decimal("10000.00")),
            ("2024-02", Decimal("1100.000000"), Decimal("11000.00")),
            ("2024-03", Decimal("1000.000000"), Decimal("10000.00")),
        ]
        # Generation reads the month rate but never pins one.
        assert ExchangeRateService(session).get("2024-03", CurrencyCode.usd) is None


def test_single_delete_is_not_regenerated():
    with _session() as session:
        user, category = _seed(session)
        expense = _fixed_expense(session, user, category)
        service = ExpenseService(session)
        service.hydrate_month("2024-02")
        february = _template_rows(session, expense.template_id)[1]

        assert service.delete(february.id, ApplyScope.single) == 1
        service.hydrate_month("2024-02")
        service.hydrate_month("2024-03")

        assert [row.month for row in _template_rows(session, expense.template_id)] == [
            "2024-01",
            "2024-03",
        ]
        skip = session.scalars(select(RecurringSkipMonth)).one()
        assert (skip.template_id, skip.month) == (expense.template_id, "2024-02")


def test_future_delete_deactivates_template():
    with _session() as session:
        user, category = _seed(session)
        expense = _fixed_expense(session, user, category)
        service = ExpenseService(session)
        service.hydrate_month("2024-02")
        service.hydrate_month("2024-03")
        february = _template_rows(session, expense.template_id)[1]

        assert service.delete(february.id, ApplyScope.future) == 2
        service.hydrate_month("2024-04")

        assert [row.month for row in _template_rows(session, expense.template_id)] == [
            "2024-01"
        ]
        assert session.get(ExpenseTemplate, expense.template_id).is_active is False


def test_all_delete_removes_every_generated_row():
    with _session() as session:
        user, category = _seed(session)
        expense = _fixed_expense(session, user, category)
        service = ExpenseService(session)
        service.hydrate_month("2024-02")
        template_id = expense.template_id

        assert service.delete(expense.id, ApplyScope.all) == 2
        service.hydrate_month("2024-03")

        assert _template_rows(session, template_id) == []


def test_apply_to_future_rewrites_template_and_later_rows():
    with _session() as session:
        user, category = _seed(session)
        expense = _fixed_expense(session, user, category)
        service = ExpenseService(session)
        service.hydrate_month("2024-02")
        service.hydrate_month("2024-03")
        february = _template_rows(session, expense.template_id)[1]

        service.update(
            february.id,
            ExpenseUpdateIn(
                amount=Decimal("1200"),
                date=date(2024, 2, 10),
                apply_to_future=True,
            ),
        )
        service.hydrate_month("2024-04")

        rows = _template_rows(session, expense.template_id)
        assert [(row.month, row.date, row.amount_ars) for row in rows] == [
            ("2024-01", date(2024, 1, 31), Decimal("1000.00")),
            ("2024-02", date(2024, 2, 10), Decimal("1200.00")),
            ("2024-03", date(2024, 3, 10), Decimal("1200.00")),
            ("2024-04", date(2024, 4, 10), Decimal("1200.00")),
        ]
        template = session.get(ExpenseTemplate, expense.template_id)
        assert (template.amount_original, template.day_of_month) == (Decimal("1200.00"), 10)


def test_failed_insert_is_reported_and_other_templates_continue(monkeypatch):
    with _session() as session:
        user, category = _seed(session)
        rent = _fixed_expense(session, user, category)
        internet = _fixed_expense(session, user, category, description="Internet")
        insert = recurrence.insert_ignoring_conflicts

        def failing_insert(session, model, values, conflict_columns):
            if values.get("description") == "Rent":
                raise OperationalError("INSERT INTO expenses", {}, Exception("disk I/O error"))
            return insert(session, model, values, conflict_columns)

        monkeypatch.setattr(recurrence, "insert_ignoring_conflicts", failing_insert)
        warnings = ExpenseService(session).hydrate_month("2024-02")

        assert warnings == [
            'Fixed expense "Rent" could not be generated (OperationalError).'
        ]
        assert [row.month for row in _template_rows(session, rent.template_id)] == [
            "2024-01"
        ]
        assert [row.month for row in _template_rows(session, internet.template_id)] == [
            "2024-01",
            "2024-02",
        ]
