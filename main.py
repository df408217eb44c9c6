import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from sqlalchemy.orm import Session, sessionmaker

from config import get_settings
from database import get_session_factory
from fx_rates import ExchangeRateService
from models import (
    ApplyScope,
    Category,
    Expense,
    MonthlyExchangeRate,
    MonthlyIncome,
    SuperCategory,
    User,
)
from money import format_money, format_rate
from months import current_month
from schemas import (
    ArchiveCategoryIn,
    ArchiveSuperCategoryIn,
    CategoryIn,
    CategoryRenameIn,
    CategorySuperCategoryIn,
    ExchangeRateIn,
    ExpenseDeleteIn,
    ExpenseFilters,
    ExpenseIn,
    ExpensePageIn,
    ExpenseUpdateIn,
    HouseholdIn,
    IncomeEntriesIn,
    Month,
    SuperCategoryIn,
    SuperCategoryUpdateIn,
    UserIn,
)
from services import (
    CategoryService,
    ExpenseService,
    HouseholdService,
    IncomeService,
    SettlementService,
    SuperCategoryService,
    UserService,
)
from settlement import NonPositiveIncome

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def get_db(request: Request):
    factory: Optional[sessionmaker[Session]] = request.app.state.session_factory
    db = (factory or get_session_factory())()
    try:
        yield db
    finally:
        db.close()


def http_error(exc: ValueError) -> HTTPException:
    message = str(exc)
    lowered = message.lower()
    if lowered.endswith("not found"):
        status_code = 404
    elif lowered.endswith("already exists"):
        status_code = 409
    else:
        status_code = 400
    return HTTPException(status_code=status_code, detail=message)


def serialize_user(user: User) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "household_id": user.household_id,
        "created_at": user.created_at.isoformat(),
    }


def serialize_category(
    category: Category, counts: Optional[tuple[int, int]] = None
) -> dict:
    expense_count, fixed_expense_count = counts or (0, 0)
    super_category = category.super_category
    return {
        "id": category.id,
        "name": category.name,
        "household_id": category.household_id,
        "archived_at": category.archived_at.isoformat() if category.archived_at else None,
        "expense_count": expense_count,
        "fixed_expense_count": fixed_expense_count,
        "super_category_id": category.super_category_id,
        "super_category_name": super_category.name if super_category else None,
        "super_category_color": super_category.color if super_category else None,
    }


def serialize_super_category(super_category: SuperCategory, category_count: int = 0) -> dict:
    return {
        "id": super_category.id,
        "name": super_category.name,
        "slug": super_category.slug,
        "color": super_category.color,
        "icon": super_category.icon,
        "sort_order": super_category.sort_order,
        "is_system": super_category.is_system,
        "archived_at": (
            super_category.archived_at.isoformat() if super_category.archived_at else None
        ),
        "category_count": category_count,
    }



def serialize_rate(rate: MonthlyExchangeRate) -> dict:
    return {
        "id": rate.id,
        "month": rate.month,
        "currency_code": rate.currency_code.value,
        "rate_to_ars": format_rate(rate.rate_to_ars),
    }


def serialize_income(income: MonthlyIncome) -> dict:
    return {
        "id": income.id,
        "month": income.month,
        "user_id": income.user_id,
        "user_name": income.user.name,
        "description": income.description,
        "amount_original": format_money(income.amount_original),
        "amount_ars": format_money(income.amount_ars),
        "currency_code": income.currency_code.value,
        "fx_rate_used": format_rate(income.fx_rate_used),
    }


def serialize_expense(expense: Expense) -> dict:
    installment = None
    if expense.is_installment:
        installment = {
            "series_id": expense.installment_series_id,
            "number": expense.installment_number,
            "total": expense.installment_total,
            "amount": (
                format_money(expense.installment_amount)
                if expense.installment_amount is not None
                else None
            ),
            "original_total_amount": (
                format_money(expense.original_total_amount)
                if expense.original_total_amount is not None
                else None
            ),
            "source": expense.installment_source,
            "created_from_series": expense.created_from_series,
        }
    return {
        "id": expense.id,
        "month": expense.month,
        "date": expense.date.isoformat(),
        "description": expense.description,
        "category_id": expense.category_id,
        "category_name": expense.category.name,
        "amount_original": format_money(expense.amount_original),
        "amount_ars": format_money(expense.amount_ars),
        "currency_code": expense.currency_code.value,
        "fx_rate_used": format_rate(expense.fx_rate_used),
        "household_id": expense.household_id,
        "paid_by_user_id": expense.paid_by_user_id,
        "paid_by_user_name": expense.paid_by_user.name,
        "fixed": {
            "enabled": expense.template_id is not None,
            "template_id": expense.template_id,
        },
        "installment": installment,
    }


def create_app(session_factory: Optional[sessionmaker[Session]] = None) -> FastAPI:
    app = FastAPI(title="FairSplit")
    app.state.session_factory = session_factory

    @app.on_event("startup")
    def startup_event():
        configure_logging()

    @app.get("/api/health")
    def health():
        return {"status": "ok"}

    @app.get("/api/months")
    def list_months(db: Session = Depends(get_db)):
        return {
            "current": current_month(),
            "months": ExpenseService(db).known_months(),
        }

    @app.get("/api/households")
    def list_households(db: Session = Depends(get_db)):
        return [
            {"id": household.id, "name": household.name}
            for household in HouseholdService(db).list_all()
        ]

    @app.post("/api/households", status_code=201)
    def create_household(data: HouseholdIn, db: Session = Depends(get_db)):
        try:
            household = HouseholdService(db).create(data)
        except ValueError as exc:
            raise http_error(exc) from exc
        return {"id": household.id, "name": household.name}

    @app.get("/api/users")
    def list_users(household_id: Optional[int] = None, db: Session = Depends(get_db)):
        return [serialize_user(user) for user in UserService(db).list_all(household_id)]

    @app.post("/api/users", status_code=201)
    def create_user(data: UserIn, db: Session = Depends(get_db)):
        try:
            user = UserService(db).create(data)
        except ValueError as exc:
            raise http_error(exc) from exc
        return serialize_user(user)

    @app.get("/api/categories")
    def list_categories(
        include_archived: bool = False,
        household_id: Optional[int] = None,
        db: Session = Depends(get_db),
    ):
        service = CategoryService(db)
        categories = service.list_all(include_archived, household_id)
        counts = service.usage_counts(category.id for category in categories)
        return [serialize_category(category, counts[category.id]) for category in categories]

    @app.post("/api/categories", status_code=201)
    def create_category(data: CategoryIn, db: Session = Depends(get_db)):
        try:
            category = CategoryService(db).create(data)
        except ValueError as exc:
            raise http_error(exc) from exc
        return serialize_category(category)

    @app.put("/api/categories/{category_id}")
    def rename_category(
        category_id: int, data: CategoryRenameIn, db: Session = Depends(get_db)
    ):
        service = CategoryService(db)
        try:
            category = service.rename(category_id, data.name)
        except ValueError as exc:
            raise http_error(exc) from exc
        return serialize_category(category, service.usage_counts([category.id])[category.id])

    @app.put("/api/categories/{category_id}/super-category")
    def assign_super_category(
        category_id: int, data: CategorySuperCategoryIn, db: Session = Depends(get_db)
    ):
        service = CategoryService(db)
        try:
            category = service.assign_super_category(category_id, data.super_category_id)
        except ValueError as exc:
            raise http_error(exc) from exc
        return serialize_category(category, service.usage_counts([category.id])[category.id])

    @app.post("/api/categories/{category_id}/archive", status_code=204)
    def archive_category(
        category_id: int,
        data: Optional[ArchiveCategoryIn] = None,
        db: Session = Depends(get_db),
    ):
        data = data or ArchiveCategoryIn()
        try:
            CategoryService(db).archive(category_id, data.replacement_category_id)
        except ValueError as exc:
            raise http_error(exc) from exc
        return Response(status_code=204)

    @app.post("/api/categories/{category_id}/restore")
    def restore_category(category_id: int, db: Session = Depends(get_db)):
        try:
            category = CategoryService(db).restore(category_id)
        except ValueError as exc:
            raise http_error(exc) from exc
        return serialize_category(category)

    @app.get("/api/super-categories")
    def list_super_categories(include_archived: bool = False, db: Session = Depends(get_db)):
        service = SuperCategoryService(db)
        super_categories = service.list_all(include_archived)
        counts = service.category_counts(item.id for item in super_categories)
        return [serialize_super_category(item, counts[item.id]) for item in super_categories]

    @app.post("/api/super-categories", status_code=201)
    def create_super_category(data: SuperCategoryIn, db: Session = Depends(get_db)):
        try:
            super_category = SuperCategoryService(db).create(data)
        except ValueError as exc:
            raise http_error(exc) from exc
        return serialize_super_category(super_category)

    @app.put("/api/super-categories/{super_category_id}")
    def update_super_category(
        super_category_id: int,
        data: SuperCategoryUpdateIn,
        db: Session = Depends(get_db),
    ):
        service = SuperCategoryService(db)
        try:
            super_category = service.update(super_category_id, data)
        except ValueError as exc:
            raise http_error(exc) from exc
        count = service.category_counts([super_category.id])[super_category.id]
        return serialize_super_category(super_category, count)

    @app.post("/api/super-categories/{super_category_id}/archive", status_code=204)
    def archive_super_category(
        super_category_id: int,
        data: Optional[ArchiveSuperCategoryIn] = None,
        db: Session = Depends(get_db),
    ):
        data = data or ArchiveSuperCategoryIn()
        try:
            SuperCategoryService(db).archive(
                super_category_id, data.replacement_super_category_id
            )
        except ValueError as exc:
            raise http_error(exc) from exc
        return Response(status_code=204)


    @app.get("/api/exchange-rates")
    def list_exchange_rates(month: Month, db: Session = Depends(get_db)):
        return [serialize_rate(rate) for rate in ExchangeRateService(db).list_for_month(month)]

    @app.put("/api/exchange-rates")
    def upsert_exchange_rate(data: ExchangeRateIn, db: Session = Depends(get_db)):
        try:
            rate = ExchangeRateService(db).upsert(
                data.month, data.currency_code, data.rate_to_ars
            )
            db.commit()
        except ValueError as exc:
            db.rollback()
            raise http_error(exc) from exc
        return serialize_rate(rate)

    @app.get("/api/incomes")
    def list_incomes(month: Month, db: Session = Depends(get_db)):
        return [serialize_income(income) for income in IncomeService(db).list_for_month(month)]

    @app.put("/api/incomes")
    def replace_incomes(data: IncomeEntriesIn, db: Session = Depends(get_db)):
        try:
            incomes = IncomeService(db).replace_entries(data)
        except ValueError as exc:
            raise http_error(exc) from exc
        return [serialize_income(income) for income in incomes]

    @app.get("/api/expenses")
    def list_expenses(
        month: Month,
        kind: Optional[str] = None,
        category_id: Optional[int] = None,
        paid_by_user_id: Optional[int] = None,
        search: Optional[str] = None,
        household_id: Optional[int] = None,
        sort_by: str = "date",
        sort_dir: str = "desc",
        limit: Optional[int] = None,
        cursor: Optional[int] = None,
        include_count: bool = True,
        hydrate: Optional[bool] = None,
        db: Session = Depends(get_db),
    ):
        try:
            filters = ExpenseFilters(
                kind=kind,
                category_id=category_id,
                paid_by_user_id=paid_by_user_id,
                search=search,
                household_id=household_id,
                sort_by=sort_by,
                sort_dir=sort_dir,
            )
            page = ExpensePageIn(limit=limit, cursor=cursor, include_count=include_count)
            listing = ExpenseService(db).list_for_month(month, filters, hydrate, page)
        except ValueError as exc:
            raise http_error(exc) from exc
        return {
            "month": month,
            "warnings": listing.warnings,
            "expenses": [serialize_expense(expense) for expense in listing.expenses],
            "pagination": listing.pagination.as_dict() if listing.pagination else None,
        }

    @app.post("/api/expenses", status_code=201)
    def create_expense(data: ExpenseIn, db: Session = Depends(get_db)):
        try:
            expense = ExpenseService(db).create(data)
        except ValueError as exc:
            raise http_error(exc) from exc
        return serialize_expense(expense)

    @app.put("/api/expenses/{expense_id}")
    def update_expense(
        expense_id: int, data: ExpenseUpdateIn, db: Session = Depends(get_db)
    ):
        try:
            expense = ExpenseService(db).update(expense_id, data)
        except ValueError as exc:
            raise http_error(exc) from exc
        if expense is None:
            return Response(status_code=204)
        return serialize_expense(expense)

    @app.delete("/api/expenses/{expense_id}", status_code=204)
    def delete_expense(
        expense_id: int,
        apply_scope: Optional[ApplyScope] = None,
        data: Optional[ExpenseDeleteIn] = None,
        db: Session = Depends(get_db),
    ):
        if apply_scope is None and data is not None:
            apply_scope = data.apply_scope
        try:
            ExpenseService(db).delete(expense_id, apply_scope)
        except ValueError as exc:
            raise http_error(exc) from exc
        return Response(status_code=204)

    @app.get("/api/settlement")
    def get_settlement(
        month: Month,
        household_id: Optional[int] = None,
        hydrate: bool = True,
        db: Session = Depends(get_db),
    ):
        try:
            settlement = SettlementService(db).for_month(month, household_id, hydrate)
        except NonPositiveIncome as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"month": month, **settlement.as_dict()}

    return app


app = create_app()
