import pytest

from tripledger.db.models import Expense
from tripledger.services.settlement import (
    Transfer,
    TripBalances,
    debt_amount,
    member_balance,
    member_owed_amount,
    member_paid_amount,
    settle,
)


def expense(expense_id, payer, total, shared, items=None, **extra):
    return Expense(
        id=expense_id,
        paid_by_member_id=payer,
        grand_total=total,
        shared_with_member_ids=shared,
        items=items or [],
        **extra,
    )


def test_paid_amount():
    expenses = [
        expense("1", "alice", 100, ["alice", "bob"]),
        expense("2", "alice", 50, ["alice", "bob"]),
        expense("3", "bob", 75, ["alice", "bob"]),
    ]
    assert member_paid_amount(expenses, "alice") == 150
    assert member_paid_amount(expenses, "charlie") == 0


def test_owed_amount_for_non_participant_is_zero():
    expenses = [expense("1", "alice", 100, ["alice", "bob"])]
    assert member_owed_amount(expenses, "charlie") == 0


def test_balance_and_debt_two_members():
    expenses = [expense("1", "A", 100, ["A", "B"])]

    assert member_balance(expenses, "A") == 50
    assert member_balance(expenses, "B") == -50
    assert debt_amount(expenses, "A", "B") == 50
    assert debt_amount(expenses, "B", "A") == -50


def test_three_party_settlement():
    expenses = [
        expense("1", "A", 90, ["A", "B", "C"]),
        expense("2", "B", 60, ["A", "B", "C"]),
    ]

    assert member_balance(expenses, "A") == pytest.approx(40)
    assert member_balance(expenses, "B") == pytest.approx(10)
    assert member_balance(expenses, "C") == pytest.approx(-50)
    assert debt_amount(expenses, "A", "C") == pytest.approx(40)
    assert debt_amount(expenses, "B", "C") == pytest.approx(10)
    assert debt_amount(expenses, "C", "A") == pytest.approx(-40)
    assert debt_amount(expenses, "A", "B") == 0


def test_debt_is_capped_by_smaller_balance():
    expenses = [expense("1", "alice", 150, ["alice", "bob", "charlie"])]
    assert debt_amount(expenses, "alice", "bob") == pytest.approx(50)


def test_balanced_members_owe_nothing():
    expenses = [
        expense("1", "alice", 100, ["alice", "bob"]),
        expense("2", "bob", 100, ["alice", "bob"]),
    ]
    assert debt_amount(expenses, "alice", "bob") == 0


def test_processing_expenses_are_ignored():
    expenses = [
        expense("1", "A", 100, ["A", "B"]),
        expense("2", "B", 500, ["A", "B"], is_processing=True),
    ]
    assert member_balance(expenses, "A") == 50
    assert member_paid_amount(expenses, "B") == 0


def test_owed_sum_matches_grand_totals():
    expenses = [
        expense("1", "A", 100, ["A", "B", "C"], items=[
            {"name": "Pizza", "price": 60, "sharedByMemberIds": ["A", "B"]},
            {"name": "Drinks", "price": 40},
        ]),
        expense("2", "B", 87.65, ["B", "C", "D"], items=[
            {"name": "Sushi", "price": 33.3, "quantity": 2, "sharedByMemberIds": ["C"]},
            {"name": "Tea", "price": 3.1, "quantity": 3, "sharedByMemberIds": ["B", "D", "X"]},
        ]),
        expense("3", "C", 150, ["A", "B", "C", "D"]),
        expense("4", "D", 19.99, ["A", "D"], items=[
            {"name": "Free", "price": 0},
        ]),
    ]
    members = ["A", "B", "C", "D"]

    owed = sum(member_owed_amount(expenses, member) for member in members)

    assert owed == pytest.approx(sum(e.grand_total for e in expenses), abs=1e-6)
    assert sum(TripBalances.from_expenses(expenses, members).balances().values()) == pytest.approx(0, abs=1e-6)


def test_trip_balances_matches_free_functions():
    expenses = [
        expense("1", "A", 90, ["A", "B", "C"]),
        expense("2", "B", 60, ["A", "B", "C"]),
    ]

    balances = TripBalances.from_expenses(expenses, ["A", "B", "C", "D"])

    for member in ["A", "B", "C", "D"]:
        assert balances.paid(member) == pytest.approx(member_paid_amount(expenses, member))
        assert balances.owed(member) == pytest.approx(member_owed_amount(expenses, member))
    assert balances.balance("D") == 0
    assert balances.debt("C", "A") == pytest.approx(-40)


def test_settle_balances():
    balances = {"A": 40.0, "B": 10.0, "C": -50.0}

    transfers = settle(balances)

    assert transfers == [
        Transfer(from_member="C", to_member="A", amount=pytest.approx(40.0)),
        Transfer(from_member="C", to_member="B", amount=pytest.approx(10.0)),
    ]

    after = dict(balances)
    for t in transfers:
        after[t.to_member] -= t.amount
        after[t.from_member] += t.amount

    assert all(value == pytest.approx(0, abs=1e-9) for value in after.values())


def test_trip_balances_transfers_clear_every_balance():
    expenses = [
        expense("1", "A", 100, ["A", "B", "C"]),
        expense("2", "B", 10, ["A", "B", "C"]),
    ]

    transfers = TripBalances.from_expenses(expenses, ["A", "B", "C"]).transfers()

    # A paid 100 of 110 and owes a third of it
    assert sum(t.amount for t in transfers) == pytest.approx(100 - 110 / 3, abs=1e-6)
    assert {t.from_member for t in transfers} == {"B", "C"}
    assert {t.to_member for t in transfers} == {"A"}
