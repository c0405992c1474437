import pytest
from pydantic import ValidationError

from tripledger.db.models import (
    Expense,
    ExpenseDetailItem,
    ExpenseState,
    TotalsDelta,
    TripTotals,
)


def test_expense_accepts_camel_case_records():
    expense = Expense.model_validate(
        {
            "id": "e1",
            "grandTotal": 42.5,
            "paidByMemberId": "A",
            "sharedWithMemberIds": ["A", "B", "A"],
            "isProcessing": False,
            "enabled": None,
            "items": [{"name": "Tea", "price": 2, "translatedName": "茶"}],
            "imageUrls": ["ignored"],
        }
    )

    assert expense.grand_total == 42.5
    assert expense.shared_with_member_ids == ("A", "B")
    assert expense.enabled is True
    assert expense.items[0].translated_name == "茶"
    assert expense.state is ExpenseState.SETTLED


def test_expense_accepts_database_rows():
    expense = Expense.model_validate(
        {
            "id": "e2",
            "trip_id": "t1",
            "grand_total": 10,
            "shared_with_member_ids": None,
            "is_processing": True,
            "items": None,
        }
    )

    assert expense.shared_with_member_ids == ()
    assert expense.items == ()
    assert expense.state is ExpenseState.PROCESSING


def test_missing_numbers_default_instead_of_failing():
    expense = Expense.model_validate({"id": "e3", "grandTotal": None, "items": [{"name": "?"}]})

    assert expense.grand_total == 0
    assert expense.items[0].price == 0
    assert expense.items[0].line_total == 0


def test_non_numeric_total_is_rejected():
    with pytest.raises(ValidationError):
        Expense.model_validate({"id": "e4", "grandTotal": "a lot"})


def test_item_quantity_defaults_to_one_but_zero_is_kept():
    assert ExpenseDetailItem(price=5).line_total == 5
    assert ExpenseDetailItem(price=5, quantity=3).line_total == 15
    assert ExpenseDetailItem(price=5, quantity=0).line_total == 0


def test_empty_item_sharing_means_inherit():
    assert ExpenseDetailItem(price=1, shared_by_member_ids=[]).shared_by_member_ids is None
    assert ExpenseDetailItem(price=1).shared_by_member_ids is None
    assert ExpenseDetailItem(price=1, shared_by_member_ids=["A", "A"]).shared_by_member_ids == ("A",)


def test_totals_apply_delta():
    totals = TripTotals(total_expenses=100, enabled_total_expenses=70, disabled_total_expenses=30, expense_count=2)

    updated = totals.apply(TotalsDelta(total=10, enabled=-20, disabled=30, count=0))

    assert updated == TripTotals(
        total_expenses=110,
        enabled_total_expenses=50,
        disabled_total_expenses=60,
        expense_count=2,
    )
    assert updated.is_consistent()
    assert not TripTotals(total_expenses=1).is_consistent()


def test_totals_delta_arithmetic():
    delta = TotalsDelta(total=5, enabled=5, count=1)
    assert (delta + -delta).is_zero()
