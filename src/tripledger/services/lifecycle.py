from __future__ import annotations

from enum import Enum
from typing import Optional

from tripledger.db.models import Expense, ExpenseState


class LedgerAction(str, Enum):
    NOOP = "noop"
    ADD = "add"
    SUBTRACT = "subtract"
    APPLY_DELTA = "apply_delta"


TRANSITIONS: dict[tuple[ExpenseState, ExpenseState], LedgerAction] = {
    (ExpenseState.REMOVED, ExpenseState.PROCESSING): LedgerAction.NOOP,
    (ExpenseState.REMOVED, ExpenseState.SETTLED): LedgerAction.ADD,
    (ExpenseState.REMOVED, ExpenseState.REMOVED): LedgerAction.NOOP,
    (ExpenseState.PROCESSING, ExpenseState.PROCESSING): LedgerAction.NOOP,
    (ExpenseState.PROCESSING, ExpenseState.SETTLED): LedgerAction.ADD,
    (ExpenseState.PROCESSING, ExpenseState.REMOVED): LedgerAction.NOOP,
    # receipt re-analysis puts a settled expense back into processing
    (ExpenseState.SETTLED, ExpenseState.PROCESSING): LedgerAction.SUBTRACT,
    (ExpenseState.SETTLED, ExpenseState.SETTLED): LedgerAction.APPLY_DELTA,
    (ExpenseState.SETTLED, ExpenseState.REMOVED): LedgerAction.SUBTRACT,
}


def state_of(expense: Optional[Expense]) -> ExpenseState:
    if expense is None:
        return ExpenseState.REMOVED
    return expense.state


def classify_transition(before: Optional[Expense], after: Optional[Expense]) -> LedgerAction:
    return TRANSITIONS[(state_of(before), state_of(after))]
