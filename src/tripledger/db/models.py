from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

TOLERANCE = 1e-6


class ExpenseState(str, Enum):
    """Lifecycle of one expense as seen by the aggregation engine.

    ``REMOVED`` doubles as "not stored yet", the before-image of a create.
    """

    REMOVED = "removed"
    PROCESSING = "processing"
    SETTLED = "settled"


@dataclass(slots=True, frozen=True)
class TotalsDelta:
    total: float = 0.0
    enabled: float = 0.0
    disabled: float = 0.0
    count: int = 0

    def __add__(self, other: TotalsDelta) -> TotalsDelta:
        return TotalsDelta(
            total=self.total + other.total,
            enabled=self.enabled + other.enabled,
            disabled=self.disabled + other.disabled,
            count=self.count + other.count,
        )

    def __neg__(self) -> TotalsDelta:
        return TotalsDelta(
            total=-self.total,
            enabled=-self.enabled,
            disabled=-self.disabled,
            count=-self.count,
        )

    def is_zero(self) -> bool:
        return self.total == 0 and self.enabled == 0 and self.disabled == 0 and self.count == 0


@dataclass(slots=True, frozen=True)
class TripTotals:
    total_expenses: float = 0.0
    enabled_total_expenses: float = 0.0
    disabled_total_expenses: float = 0.0
    expense_count: int = 0

    def apply(self, delta: TotalsDelta) -> TripTotals:
        return TripTotals(
            total_expenses=self.total_expenses + delta.total,
            enabled_total_expenses=self.enabled_total_expenses + delta.enabled,
            disabled_total_expenses=self.disabled_total_expenses + delta.disabled,
            expense_count=self.expense_count + delta.count,
        )

    def is_consistent(self, tolerance: float = TOLERANCE) -> bool:
        bucket_sum = self.enabled_total_expenses + self.disabled_total_expenses
        return abs(self.total_expenses - bucket_sum) <= tolerance


@dataclass(slots=True)
class Trip:
    id: str
    name: str
    trip_currency: str
    default_currency: str
    exchange_rate: float
    owner_id: Optional[str]
    totals: TripTotals = field(default_factory=TripTotals)
    version: int = 0


@dataclass(slots=True)
class TripMember:
    id: str
    trip_id: str
    name: str
    avatar_emoji: Optional[str] = None
    is_host: bool = False
    spending: float = 0.0


class _Record(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


def _unique(values: Any) -> tuple[str, ...]:
    return tuple(dict.fromkeys(str(value) for value in values))


class ExpenseDetailItem(_Record):
    name: str = ""
    translated_name: Optional[str] = None
    price: float = 0.0
    quantity: Optional[float] = None
    # None inherits the expense's sharing set
    shared_by_member_ids: Optional[tuple[str, ...]] = None

    @field_validator("name", mode="before")
    @classmethod
    def _missing_name(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("price", mode="before")
    @classmethod
    def _missing_price(cls, value: Any) -> Any:
        return 0.0 if value is None else value

    @field_validator("shared_by_member_ids", mode="before")
    @classmethod
    def _empty_sharing_inherits(cls, value: Any) -> Any:
        if not value:
            return None
        return _unique(value)

    @property
    def line_total(self) -> float:
        quantity = 1.0 if self.quantity is None else self.quantity
        return self.price * quantity


class Expense(_Record):
    id: str = ""
    grand_total: float = 0.0
    paid_by_member_id: Optional[str] = None
    shared_with_member_ids: tuple[str, ...] = ()
    enabled: bool = True
    is_processing: bool = False
    items: tuple[ExpenseDetailItem, ...] = ()

    description: Optional[str] = None
    category: Optional[str] = None
    input_currency: Optional[str] = None
    paid_at: Optional[datetime] = None
    receipt_image_url: Optional[str] = None
    processing_error: Optional[str] = None

    @field_validator("grand_total", mode="before")
    @classmethod
    def _missing_total(cls, value: Any) -> Any:
        return 0.0 if value is None else value

    @field_validator("shared_with_member_ids", mode="before")
    @classmethod
    def _normalize_sharing(cls, value: Any) -> Any:
        if value is None:
            return ()
        return _unique(value)

    @field_validator("enabled", mode="before")
    @classmethod
    def _missing_enabled(cls, value: Any) -> Any:
        return True if value is None else value

    @field_validator("is_processing", mode="before")
    @classmethod
    def _missing_processing(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("items", mode="before")
    @classmethod
    def _missing_items(cls, value: Any) -> Any:
        return () if value is None else value

    @property
    def state(self) -> ExpenseState:
        return ExpenseState.PROCESSING if self.is_processing else ExpenseState.SETTLED

    @property
    def items_total(self) -> float:
        return sum(item.line_total for item in self.items)
