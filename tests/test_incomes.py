from decimal import Decimal

import pytest
from sqlalchemy.orm import Session

from database import Base, create_db_engine
from fx_rates import ExchangeRateService, MissingFxRate
from models import CurrencyCode, Household, User
from schemas import IncomeEntriesIn, IncomeEntryIn
from services import IncomeService


def _session() -> Session:
    engine = create_db_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _user(session: Session) -> User:
    household = Household(name="Casa")
    session.add(household)
    session.flush()
    user = User(name="Ana", household_id=household.id)
    session.add(user)
    session.commit()
    return user


def test_replace_entries_converts_and_pins_rate():
    with _session() as session:
        user = _user(session)
        service = IncomeService(session)

        incomes = service.replace_entries(
            IncomeEntriesIn(
                month="2024-05",
                user_id=user.id,
                entries=[
                    IncomeEntryIn(description="Salary", amount=Decimal("500000")),
                    IncomeEntryIn(
                        description="Freelance",
                        amount=Decimal("120.555"),
                        currency_code=CurrencyCode.usd,
                        fx_rate=Decimal("1000.1234567"),
                    ),
                ],
            )
        )

        assert [(i.amount_original, i.fx_rate_used, i.amount_ars) for i in incomes] == [
            (Decimal("500000.00"), Decimal("1.000000"), Decimal("500000.00")),
            (Decimal("120.56"), Decimal("1000.123457"), Decimal("120574.88")),
        ]
        pinned = ExchangeRateService(session).get("2024-05", CurrencyCode.usd)
        assert pinned.rate_to_ars == Decimal("1000.123457")


def test_month_rate_wins_over_explicit_rate():
    with _session() as session:
        user = _user(session)
        ExchangeRateService(session).upsert("2024-05", CurrencyCode.eur, "1200")
        session.commit()

        [income] = IncomeService(session).replace_entries(
            IncomeEntriesIn(
                month="2024-05",
                user_id=user.id,
                entries=[
                    IncomeEntryIn(
                        description="Bonus",
                        amount=Decimal("10"),
                        currency_code=CurrencyCode.eur,
                        fx_rate=Decimal("9999"),
                    )
                ],
            )
        )

        assert income.fx_rate_used == Decimal("1200.000000")
        assert income.amount_ars == Decimal("12000.00")


def test_replace_is_atomic_when_a_rate_is_missing():
    with _session() as session:
        user = _user(session)
        service = IncomeService(session)
        service.replace_entries(
            IncomeEntriesIn(
                month="2024-05",
                user_id=user.id,
                entries=[IncomeEntryIn(description="Salary", amount=Decimal("100"))],
            )
        )

        with pytest.raises(MissingFxRate):
            service.replace_entries(
                IncomeEntriesIn(
                    month="2024-05",
                    user_id=user.id,
                    entries=[
                        IncomeEntryIn(description="Salary", amount=Decimal("200")),
                        IncomeEntryIn(
                            description="Rent out",
                            amount=Decimal("50"),
                            currency_code=CurrencyCode.usd,
                        ),
                    ],
                )
            )

        incomes = service.list_for_month("2024-05")
        assert [(i.description, i.amount_ars) for i in incomes] == [
            ("Salary", Decimal("100.00"))
        ]
        assert incomes[0].user.name == "Ana"


def test_replace_with_no_entries_clears_the_month():
    with _session() as session:
        user = _user(session)
        service = IncomeService(session)
        service.replace_entries(
            IncomeEntriesIn(
                month="2024-05",
                user_id=user.id,
                entries=[IncomeEntryIn(description="Salary", amount=Decimal("100"))],
            )
        )

        assert service.replace_entries(IncomeEntriesIn(month="2024-05", user_id=user.id)) == []
        assert service.list_for_month("2024-05") == []


def test_unknown_user_is_rejected():
    with _session() as session:
        with pytest.raises(ValueError, match="User not found"):
            IncomeService(session).replace_entries(
                IncomeEntriesIn(month="2024-05", user_id=42)
            )


def test_ars_has_no_exchange_rate():
    with _session() as session:
        with pytest.raises(ValueError):
            ExchangeRateService(session).upsert("2024-05", CurrencyCode.ars, "1")
