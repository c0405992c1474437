from __future__ import annotations

from typing import Iterable, Mapping, Sequence

from tripledger.db.models import Expense, ExpenseDetailItem


def split_amount(amount: float, consumers: Sequence[str]) -> dict[str, float]:
    if not consumers:
        return {}
    share = amount / len(consumers)
    return {consumer: share for consumer in consumers}


def merge_shares(shares: Iterable[Mapping[str, float]]) -> dict[str, float]:
    result: dict[str, float] = {}
    for share in shares:
        for member_id, amount in share.items():
            result[member_id] = result.get(member_id, 0.0) + amount
    return result


def subtract_shares(after: Mapping[str, float], before: Mapping[str, float]) -> dict[str, float]:
    result: dict[str, float] = {}
    for member_id in dict.fromkeys([*after, *before]):
        delta = after.get(member_id, 0.0) - before.get(member_id, 0.0)
        if delta != 0:
            result[member_id] = delta
    return result


def expense_sharing_set(expense: Expense, member_ids: Sequence[str] = ()) -> tuple[str, ...]:
    """Members splitting the whole expense.

    An expense without its own sharing set falls back to ``member_ids``, the
    trip roster, when the caller supplies one.
    """
    if expense.shared_with_member_ids:
        return expense.shared_with_member_ids
    return tuple(dict.fromkeys(member_ids))


def item_sharing_set(item: ExpenseDetailItem, base: Sequence[str]) -> tuple[str, ...]:
    if item.shared_by_member_ids is None:
        return tuple(base)
    allowed = set(base)
    return tuple(member_id for member_id in item.shared_by_member_ids if member_id in allowed)


def allocate(expense: Expense, member_ids: Sequence[str] = ()) -> dict[str, float]:
    """Return how much of ``expense.grand_total`` each member consumes.

    Items only decide proportions: every member's item subtotal is scaled by
    ``grand_total / items_total`` so tax and tip that were not itemized are
    spread the same way and the shares add up to the grand total. Items whose
    sharing set ends up empty are skipped. Enabled/processing flags are the
    caller's business.
    """
    base = expense_sharing_set(expense, member_ids)

    items_total = expense.items_total
    if not expense.items or items_total <= 0:
        return _drop_zero(split_amount(expense.grand_total, base))

    per_item = [split_amount(item.line_total, item_sharing_set(item, base)) for item in expense.items]
    member_items = merge_shares(per_item)
    scale = expense.grand_total / items_total
    return _drop_zero({member_id: subtotal * scale for member_id, subtotal in member_items.items()})


def _drop_zero(shares: Mapping[str, float]) -> dict[str, float]:
    return {member_id: amount for member_id, amount in shares.items() if amount != 0}
