from dataclasses import dataclass
from typing import Hashable, Mapping, Optional

from money import ZERO, DecimalLike, format_money, format_rate, round_money, to_decimal


class NonPositiveIncome(ValueError):
    def __init__(self) -> None:
        super().__init__(
            "Cannot calculate settlement when total income is non-positive "
            "and expenses are non-zero."
        )


@dataclass(frozen=True)
class Transfer:
    from_user_id: Hashable
    to_user_id: Hashable
    amount: str

    def as_dict(self) -> dict[str, object]:
        return {
            "from_user_id": self.from_user_id,
            "to_user_id": self.to_user_id,
            "amount": self.amount,
        }


@dataclass(frozen=True)
class SettlementOutput:
    total_income: str
    total_expenses: str
    expense_ratio: str
    fair_share_by_user: dict
    paid_by_user: dict
    difference_by_user: dict
    transfer: Optional[Transfer]

    def as_dict(self) -> dict[str, object]:
        return {
            "total_income": self.total_income,
            "total_expenses": self.total_expenses,
            "expense_ratio": self.expense_ratio,
            "fair_share_by_user": dict(self.fair_share_by_user),
            "paid_by_user": dict(self.paid_by_user),
            "difference_by_user": dict(self.difference_by_user),
            "transfer": self.transfer.as_dict() if self.transfer else None,
        }


def _ordered_keys(*mappings: Mapping) -> list:
    keys: list = []
    for mapping in mappings:
        for key in mapping:
            if key not in keys:
                keys.append(key)
    return keys


def _largest_gap(candidates: list, differences: Mapping, *, owing: bool):
    """Participant with the biggest imbalance; equal amounts resolve by key."""
    if owing:
        ordered = sorted(candidates, key=lambda key: (differences[key], str(key)))
    else:
        ordered = sorted(candidates, key=lambda key: (-differences[key], str(key)))
    return ordered[0] if ordered else None


def calculate_settlement(
    incomes_by_user: Mapping[Hashable, DecimalLike],
    paid_by_user: Mapping[Hashable, DecimalLike],
) -> SettlementOutput:
    """Split the month's expenses in proportion to income.

    Only one transfer is proposed, from the largest debtor to the largest
    creditor. With three or more participants that transfer can leave other
    balances open.
    """
    user_ids = _ordered_keys(incomes_by_user, paid_by_user)
    incomes = {key: to_decimal(incomes_by_user.get(key, ZERO)) for key in user_ids}
    paid = {key: to_decimal(paid_by_user.get(key, ZERO)) for key in user_ids}

    total_income = sum(incomes.values(), ZERO)
    total_expenses = sum(paid.values(), ZERO)
    if total_income <= 0 and total_expenses > 0:
        raise NonPositiveIncome()

    expense_ratio = ZERO if total_income == 0 else total_expenses / total_income

    fair_share = {key: incomes[key] * expense_ratio for key in user_ids}
    # Differences are rounded once; the transfer is computed from these values.
    differences = {key: round_money(paid[key] - fair_share[key]) for key in user_ids}

    sender = _largest_gap(
        [key for key in user_ids if differences[key] < 0], differences, owing=True
    )
    receiver = _largest_gap(
        [key for key in user_ids if differences[key] > 0], differences, owing=False
    )
    transfer = None
    if sender is not None and receiver is not None:
        amount = min(abs(differences[sender]), differences[receiver])
        if amount > 0:
            transfer = Transfer(
                from_user_id=sender, to_user_id=receiver, amount=format_money(amount)
            )

    return SettlementOutput(
        total_income=format_money(total_income),
        total_expenses=format_money(total_expenses),
        expense_ratio=format_rate(expense_ratio),
        fair_share_by_user={key: format_money(fair_share[key]) for key in user_ids},
        paid_by_user={key: format_money(paid[key]) for key in user_ids},
        difference_by_user={key: format_money(differences[key]) for key in user_ids},
        transfer=transfer,
    )
