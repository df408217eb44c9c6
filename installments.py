from dataclasses import dataclass
from enum import Enum
from typing import Optional

from money import DecimalLike, format_money, round_money


class InstallmentEntryMode(str, Enum):
    per_installment = "perInstallment"
    total = "total"


class InvalidInstallmentCount(ValueError):
    pass


class MissingInstallmentAmount(ValueError):
    pass


@dataclass(frozen=True)
class InstallmentSchedule:
    amounts: list[str]
    total_amount: str

    def as_dict(self) -> dict[str, object]:
        return {"amounts": list(self.amounts), "total_amount": self.total_amount}


def compute_installment_amounts(
    count: int,
    entry_mode: InstallmentEntryMode,
    *,
    per_installment_amount: Optional[DecimalLike] = None,
    total_amount: Optional[DecimalLike] = None,
) -> InstallmentSchedule:
    """Split an amount into ``count`` monthly installments.

    In ``total`` mode every installment gets ``round2(total / count)`` and the
    last one absorbs the rounding remainder, so the amounts always add up to
    the rounded total.
    """
    if isinstance(count, bool) or not isinstance(count, int) or count < 1:
        raise InvalidInstallmentCount("Installment count must be a positive integer")

    entry_mode = InstallmentEntryMode(entry_mode)
    if entry_mode == InstallmentEntryMode.per_installment:
        if per_installment_amount is None:
            raise MissingInstallmentAmount(
                "per_installment_amount is required in perInstallment mode"
            )
        installment = round_money(per_installment_amount)
        return InstallmentSchedule(
            amounts=[format_money(installment)] * count,
            total_amount=format_money(installment * count),
        )

    if total_amount is None:
        raise MissingInstallmentAmount("total_amount is required in total mode")

    total = round_money(total_amount)
    if count == 1:
        return InstallmentSchedule(
            amounts=[format_money(total)], total_amount=format_money(total)
        )

    base = round_money(total / count)
    last = round_money(total - base * (count - 1))
    amounts = [format_money(base)] * (count - 1) + [format_money(last)]
    return InstallmentSchedule(amounts=amounts, total_amount=format_money(total))
