import pytest

from tripledger.db.models import Expense, ExpenseState
from tripledger.services.lifecycle import TRANSITIONS, LedgerAction, classify_transition, state_of

PROCESSING = Expense(id="e1", grand_total=10, is_processing=True)
SETTLED = Expense(id="e1", grand_total=10)


def test_every_state_pair_has_an_action():
    states = list(ExpenseState)
    assert {(a, b) for a in states for b in states} == set(TRANSITIONS)


def test_state_of_missing_expense_is_removed():
    assert state_of(None) is ExpenseState.REMOVED


@pytest.mark.parametrize(
    ("before", "after", "action"),
    [
        (None, PROCESSING, LedgerAction.NOOP),
        (None, SETTLED, LedgerAction.ADD),
        (PROCESSING, SETTLED, LedgerAction.ADD),
        (PROCESSING, None, LedgerAction.NOOP),
        (SETTLED, SETTLED, LedgerAction.APPLY_DELTA),
        (SETTLED, None, LedgerAction.SUBTRACT),
        (SETTLED, PROCESSING, LedgerAction.SUBTRACT),
    ],
)
def test_classify_transition(before, after, action):
    assert classify_transition(before, after) is action
