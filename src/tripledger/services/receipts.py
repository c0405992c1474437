"""Turns structured receipt-recognition results into expense updates.

Image recognition itself runs elsewhere. This module only derives the next
version of an ``Expense`` from its output; storing that version is what
drives the aggregation engine.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tripledger.db.models import Expense, ExpenseDetailItem
from tripledger.logging import get_logger

log = get_logger(__name__)

PAID_AT_FORMAT = "%Y-%m-%d %H:%M"

TIMEZONE_BY_CURRENCY = {
    "JPY": "Asia/Tokyo",
    "CNY": "Asia/Shanghai",
    "KRW": "Asia/Seoul",
    "TWD": "Asia/Taipei",
    "HKD": "Asia/Hong_Kong",
    "SGD": "Asia/Singapore",
    "MYR": "Asia/Kuala_Lumpur",
    "THB": "Asia/Bangkok",
    "IDR": "Asia/Jakarta",
    "VND": "Asia/Ho_Chi_Minh",
    "PHP": "Asia/Manila",
    "USD": "America/New_York",
    "CAD": "America/Toronto",
    "EUR": "Europe/Paris",
    "GBP": "Europe/London",
    "AUD": "Australia/Sydney",
    "NZD": "Pacific/Auckland",
    "INR": "Asia/Kolkata",
}


class ReceiptError(ValueError):
    pass


class ReceiptItem(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    name: str
    translated_name: Optional[str] = None
    quantity: Optional[float] = None
    price: float


class ReceiptData(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    grand_total: Optional[float] = None
    paid_at_string: Optional[str] = None
    currency: str
    items: list[ReceiptItem] = Field(default_factory=list)
    description: Optional[str] = None


def timezone_for_currency(currency: str) -> ZoneInfo:
    return ZoneInfo(TIMEZONE_BY_CURRENCY.get(currency.upper(), "UTC"))


def parse_paid_at(value: Optional[str], trip_currency: str) -> Optional[datetime]:
    if not value or not value.strip():
        return None

    tz = timezone_for_currency(trip_currency)
    try:
        naive = datetime.strptime(value.strip(), PAID_AT_FORMAT)
    except ValueError:
        log.warning("receipt.paid_at.invalid", value=value, tz=tz.key)
        return None

    return naive.replace(tzinfo=tz).astimezone(timezone.utc)


def apply_receipt(
    expense: Expense,
    receipt: ReceiptData,
    trip_currency: str,
    receipt_image_url: Optional[str] = None,
) -> Expense:
    items = tuple(
        ExpenseDetailItem(
            name=item.name,
            translated_name=item.translated_name,
            price=item.price,
            quantity=item.quantity,
        )
        for item in receipt.items
    )
    grand_total = receipt.grand_total
    if grand_total is None:
        grand_total = sum(item.line_total for item in items)
        log.info("receipt.grand_total.from_items", expense_id=expense.id, grand_total=grand_total)

    update: dict[str, object] = {
        "grand_total": grand_total,
        "items": items,
        "description": receipt.description,
        "is_processing": False,
        "processing_error": None,
    }
    paid_at = parse_paid_at(receipt.paid_at_string, trip_currency)
    if paid_at is not None:
        update["paid_at"] = paid_at
    if receipt_image_url is not None:
        update["receipt_image_url"] = receipt_image_url

    return expense.model_copy(update=update)


def fail_receipt(expense: Expense, message: str) -> Expense:
    return expense.model_copy(update={"is_processing": False, "processing_error": message})


def begin_reanalysis(expense: Expense) -> Expense:
    if not expense.receipt_image_url:
        raise ReceiptError(f"expense {expense.id} has no receipt image")
    if expense.is_processing:
        raise ReceiptError(f"expense {expense.id} is already being processed")
    return expense.model_copy(update={"is_processing": True, "processing_error": None})
