from decimal import Decimal

import pytest

from installments import (
    InstallmentEntryMode,
    InvalidInstallmentCount,
    MissingInstallmentAmount,
    compute_installment_amounts,
)


def test_total_mode_puts_remainder_on_last_installment():
    schedule = compute_installment_amounts(
        3, InstallmentEntryMode.total, total_amount="100"
    )
    assert schedule.amounts == ["33.33", "33.33", "33.34"]
    assert schedule.total_amount == "100.00"


def test_per_installment_mode():
    schedule = compute_installment_amounts(
        3, InstallmentEntryMode.per_installment, per_installment_amount=10
    )
    assert schedule.amounts == ["10.00", "10.00", "10.00"]
    assert schedule.as_dict() == {
        "amounts": ["10.00", "10.00", "10.00"],
        "total_amount": "30.00",
    }


def test_single_installment_is_the_rounded_total():
    schedule = compute_installment_amounts(
        1, InstallmentEntryMode.total, total_amount="99.999"
    )
    assert schedule.amounts == ["100.00"]


@pytest.mark.parametrize("count", range(1, 25))
@pytest.mark.parametrize("total", ["100", "0.05", "1234.567", "-50.01", "7"])
def test_total_mode_always_sums_to_rounded_total(count, total):
    schedule = compute_installment_amounts(
        count, InstallmentEntryMode.total, total_amount=total
    )
    assert len(schedule.amounts) == count
    assert sum(Decimal(amount) for amount in schedule.amounts) == Decimal(
        schedule.total_amount
    )


@pytest.mark.parametrize("count", [0, -1, True, 2.5])
def test_invalid_count(count):
    with pytest.raises(InvalidInstallmentCount):
        compute_installment_amounts(
            count, InstallmentEntryMode.total, total_amount="10"
        )


def test_missing_amount_for_mode():
    with pytest.raises(MissingInstallmentAmount):
        compute_installment_amounts(3, InstallmentEntryMode.total)
    with pytest.raises(MissingInstallmentAmount):
        compute_installment_amounts(
            3, InstallmentEntryMode.per_installment, total_amount="10"
        )
