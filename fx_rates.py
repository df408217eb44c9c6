from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import CurrencyCode, MonthlyExchangeRate
from money import ARS_RATE, DecimalLike, round_rate
from months import parse_month

logger = logging.getLogger(__name__)


class MissingFxRate(ValueError):
    def __init__(self, currency_code: CurrencyCode, month: str) -> None:
        super().__init__(
            f"Missing FX rate for {currency_code.value} in {month}. "
            "Configure the monthly rate or provide an override."
        )
        self.currency_code = currency_code
        self.month = month


class ExchangeRateService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_for_month(self, month: str) -> list[MonthlyExchangeRate]:
        parse_month(month)
        stmt = (
            select(MonthlyExchangeRate)
            .where(MonthlyExchangeRate.month == month)
            .order_by(MonthlyExchangeRate.currency_code)
        )
        return list(self.session.scalars(stmt).all())

    def get(
        self, month: str, currency_code: CurrencyCode
    ) -> Optional[MonthlyExchangeRate]:
        return self.session.scalar(
            select(MonthlyExchangeRate).where(
                MonthlyExchangeRate.month == month,
                MonthlyExchangeRate.currency_code == currency_code,
            )
        )

    def upsert(
        self, month: str, currency_code: CurrencyCode, rate_to_ars: DecimalLike
    ) -> MonthlyExchangeRate:
        parse_month(month)
        currency_code = CurrencyCode(currency_code)
        if currency_code == CurrencyCode.ars:
            raise ValueError("ARS is the settlement currency and has no exchange rate")
        rate = round_rate(rate_to_ars)
        if rate <= 0:
            raise ValueError("Exchange rate must be positive")

        row = self.get(month, currency_code)
        if row is None:
            row = MonthlyExchangeRate(
                month=month, currency_code=currency_code, rate_to_ars=rate
            )
            self.session.add(row)
        else:
            row.rate_to_ars = rate
        self.session.flush()
        return row

    def rates_for_month(
        self, month: str, currencies: Iterable[CurrencyCode]
    ) -> dict[CurrencyCode, Decimal]:
        wanted = {CurrencyCode(code) for code in currencies} - {CurrencyCode.ars}
        if not wanted:
            return {}
        rows = self.session.scalars(
            select(MonthlyExchangeRate).where(
                MonthlyExchangeRate.month == month,
                MonthlyExchangeRate.currency_code.in_(wanted),
            )
        ).all()
        return {row.currency_code: row.rate_to_ars for row in rows}

    def resolve_for_month(
        self,
        month: str,
        currency_code: CurrencyCode,
        explicit_rate: Optional[DecimalLike] = None,
        *,
        pin: bool = True,
    ) -> Optional[Decimal]:
        """Rate to use for ``currency_code`` records in ``month``.

        The month's pinned rate wins over ``explicit_rate``. When the month has
        no rate yet and ``pin`` is set, ``explicit_rate`` becomes the month's
        rate.
        """
        currency_code = CurrencyCode(currency_code)
        if currency_code == CurrencyCode.ars:
            return ARS_RATE

        row = self.get(month, currency_code)
        if row is not None:
            return row.rate_to_ars
        if explicit_rate is None:
            return None
        if pin:
            logger.info(
                "fx_rate_pinned: month=%s currency=%s rate=%s",
                month,
                currency_code.value,
                round_rate(explicit_rate),
            )
            return self.upsert(month, currency_code, explicit_rate).rate_to_ars
        return round_rate(explicit_rate)

    def require_for_month(
        self,
        month: str,
        currency_code: CurrencyCode,
        explicit_rate: Optional[DecimalLike] = None,
        *,
        pin: bool = True,
    ) -> Decimal:
        rate = self.resolve_for_month(month, currency_code, explicit_rate, pin=pin)
        if rate is None:
            raise MissingFxRate(CurrencyCode(currency_code), month)
        return rate
