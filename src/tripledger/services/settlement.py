from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Mapping, Sequence

from tripledger.db.models import Expense
from tripledger.services.split import allocate, merge_shares

SETTLED_EPSILON = 1e-9


@dataclass(slots=True)
class Transfer:
    from_member: str
    to_member: str
    amount: float


def _settled(expenses: Iterable[Expense]) -> list[Expense]:
    return [expense for expense in expenses if not expense.is_processing]


def member_paid_amount(expenses: Sequence[Expense], member_id: str) -> float:
    return sum(
        expense.grand_total for expense in _settled(expenses) if expense.paid_by_member_id == member_id
    )


def member_owed_amount(expenses: Sequence[Expense], member_id: str) -> float:
    return sum(allocate(expense).get(member_id, 0.0) for expense in _settled(expenses))


def member_balance(expenses: Sequence[Expense], member_id: str) -> float:
    return member_paid_amount(expenses, member_id) - member_owed_amount(expenses, member_id)


def debt_between(balance1: float, balance2: float) -> float:
    """Signed amount member 1 is owed by member 2, given both balances.

    Positive: member 2 owes member 1. Negative: member 1 owes member 2.
    """
    if balance1 > 0 and balance2 < 0:
        return min(balance1, -balance2)
    if balance1 < 0 and balance2 > 0:
        return -min(-balance1, balance2)
    return 0.0


def debt_amount(expenses: Sequence[Expense], member1_id: str, member2_id: str) -> float:
    return debt_between(member_balance(expenses, member1_id), member_balance(expenses, member2_id))


@dataclass(slots=True)
class TripBalances:
    """Paid/owed figures for a trip, computed once from its enabled expenses."""

    paid_by: dict[str, float] = field(default_factory=dict)
    owed_by: dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_expenses(cls, expenses: Sequence[Expense], member_ids: Sequence[str] = ()) -> TripBalances:
        settled = _settled(expenses)
        paid_by: dict[str, float] = {member_id: 0.0 for member_id in member_ids}
        for expense in settled:
            if expense.paid_by_member_id is not None:
                payer = expense.paid_by_member_id
                paid_by[payer] = paid_by.get(payer, 0.0) + expense.grand_total
        owed_by = {member_id: 0.0 for member_id in member_ids}
        owed_by.update(merge_shares(allocate(expense) for expense in settled))
        return cls(paid_by=paid_by, owed_by=owed_by)

    @property
    def member_ids(self) -> list[str]:
        return list(dict.fromkeys([*self.paid_by, *self.owed_by]))

    def paid(self, member_id: str) -> float:
        return self.paid_by.get(member_id, 0.0)

    def owed(self, member_id: str) -> float:
        return self.owed_by.get(member_id, 0.0)

    def balance(self, member_id: str) -> float:
        return self.paid(member_id) - self.owed(member_id)

    def balances(self) -> dict[str, float]:
        return {member_id: self.balance(member_id) for member_id in self.member_ids}

    def debt(self, member1_id: str, member2_id: str) -> float:
        return debt_between(self.balance(member1_id), self.balance(member2_id))

    def transfers(self) -> List[Transfer]:
        return settle(self.balances())


def settle(balances: Mapping[str, float], epsilon: float = SETTLED_EPSILON) -> List[Transfer]:
    creditors: list[tuple[str, float]] = []
    debtors: list[tuple[str, float]] = []

    for member_id, balance in balances.items():
        if balance > epsilon:
            creditors.append((member_id, balance))
        elif balance < -epsilon:
            debtors.append((member_id, -balance))

    creditors.sort(key=lambda x: x[1], reverse=True)
    debtors.sort(key=lambda x: x[1], reverse=True)

    transfers: list[Transfer] = []
    i, j = 0, 0

    while i < len(creditors) and j < len(debtors):
        cred_id, cred_amount = creditors[i]
        debt_id, debt_amount_left = debtors[j]

        transfer_amount = min(cred_amount, debt_amount_left)
        transfers.append(Transfer(from_member=debt_id, to_member=cred_id, amount=transfer_amount))

        cred_amount -= transfer_amount
        debt_amount_left -= transfer_amount

        if cred_amount <= epsilon:
            i += 1
        else:
            creditors[i] = (cred_id, cred_amount)

        if debt_amount_left <= epsilon:
            j += 1
        else:
            debtors[j] = (debt_id, debt_amount_left)

    return transfers
