from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncContextManager, Mapping, Optional, Protocol, Sequence, Union

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from tripledger.config import Settings
from tripledger.db.models import TOLERANCE, Expense, TotalsDelta, Trip, TripTotals
from tripledger.db.repo import TransactionConflict
from tripledger.logging import get_logger
from tripledger.services.lifecycle import LedgerAction, classify_transition
from tripledger.services.split import allocate, merge_shares, subtract_shares

ExpenseInput = Union[Expense, Mapping[str, Any]]


class MissingParentError(LookupError):
    def __init__(self, trip_id: str, member_id: Optional[str] = None) -> None:
        self.trip_id = trip_id
        self.member_id = member_id
        if member_id is None:
            message = f"trip {trip_id} does not exist"
        else:
            message = f"member {member_id} of trip {trip_id} does not exist"
        super().__init__(message)


class AggregationFailedError(RuntimeError):
    pass


class LedgerUnitOfWork(Protocol):
    async def get_trip(self, trip_id: str) -> Trip | None: ...

    async def list_member_ids(self, trip_id: str) -> list[str]: ...

    async def list_settled_expenses(self, trip_id: str) -> list[Expense]: ...

    async def write_trip_totals(self, trip: Trip, totals: TripTotals) -> None: ...

    async def increment_member_spending(self, trip_id: str, member_id: str, amount: float) -> bool: ...

    async def set_member_spending(self, trip_id: str, member_id: str, amount: float) -> bool: ...

    async def get_member_spending(self, trip_id: str) -> dict[str, float]: ...

    async def get_allocation(self, trip_id: str, expense_id: str) -> dict[str, float]: ...

    async def write_allocation(self, trip_id: str, expense_id: str, shares: Mapping[str, float]) -> None: ...

    async def replace_allocations(self, trip_id: str, allocations: Mapping[str, Mapping[str, float]]) -> None: ...


class LedgerStore(Protocol):
    def transaction(self) -> AsyncContextManager[LedgerUnitOfWork]: ...

    async def list_trip_ids(self) -> list[str]: ...


def to_expense(value: ExpenseInput) -> Expense:
    if isinstance(value, Expense):
        return value
    return Expense.model_validate(value)


def _bucket_delta(expense: Expense, sign: int) -> TotalsDelta:
    amount = sign * expense.grand_total
    return TotalsDelta(
        total=amount,
        enabled=amount if expense.enabled else 0.0,
        disabled=0.0 if expense.enabled else amount,
        count=sign,
    )


def spending_contribution(expense: Optional[Expense], member_ids: Sequence[str]) -> dict[str, float]:
    """Running-spend share of one expense; disabled expenses count for nothing."""
    if expense is None or not expense.enabled:
        return {}
    return allocate(expense, member_ids)


@dataclass(slots=True, frozen=True)
class LedgerChange:
    action: LedgerAction
    totals: TotalsDelta
    before: Optional[Expense] = None
    after: Optional[Expense] = None

    @property
    def expense_id(self) -> str:
        subject = self.after if self.after is not None else self.before
        return subject.id if subject is not None else ""

    def allocation(self, member_ids: Sequence[str]) -> dict[str, float]:
        return spending_contribution(self.after, member_ids)

    def member_deltas(
        self,
        member_ids: Sequence[str],
        previous: Optional[Mapping[str, float]] = None,
    ) -> dict[str, float]:
        """Spending change per member.

        ``previous`` is the allocation recorded when the old image was applied.
        Without it the old image is re-allocated against ``member_ids``, which
        only matches what was applied while the roster is unchanged.
        """
        if previous is None:
            previous = spending_contribution(self.before, member_ids)
        return subtract_shares(self.allocation(member_ids), previous)


def _ledger_fields_changed(before: Expense, after: Expense) -> bool:
    return (
        before.grand_total != after.grand_total
        or before.enabled != after.enabled
        or before.items != after.items
        or before.shared_with_member_ids != after.shared_with_member_ids
    )


def plan_change(before: Optional[Expense], after: Optional[Expense]) -> LedgerChange | None:
    action = classify_transition(before, after)

    if action is LedgerAction.ADD:
        assert after is not None
        return LedgerChange(action=action, totals=_bucket_delta(after, 1), after=after)

    if action is LedgerAction.SUBTRACT:
        assert before is not None
        return LedgerChange(action=action, totals=_bucket_delta(before, -1), before=before)

    if action is LedgerAction.APPLY_DELTA:
        assert before is not None and after is not None
        if not _ledger_fields_changed(before, after):
            return None
        totals = _bucket_delta(after, 1) + _bucket_delta(before, -1)
        return LedgerChange(action=action, totals=totals, before=before, after=after)

    return None


@dataclass(slots=True)
class ReconciliationReport:
    trip_id: str
    previous: TripTotals
    recomputed: TripTotals
    member_drift: dict[str, float] = field(default_factory=dict)

    @property
    def totals_drifted(self) -> bool:
        return any(
            abs(new - old) > TOLERANCE
            for old, new in (
                (self.previous.total_expenses, self.recomputed.total_expenses),
                (self.previous.enabled_total_expenses, self.recomputed.enabled_total_expenses),
                (self.previous.disabled_total_expenses, self.recomputed.disabled_total_expenses),
                (self.previous.expense_count, self.recomputed.expense_count),
            )
        )

    @property
    def drifted(self) -> bool:
        return self.totals_drifted or bool(self.member_drift)


class AggregationEngine:
    """Keeps trip totals and member running spend in step with expense writes.

    Every handler plans its change without I/O, then applies it in one store
    transaction. A ``TransactionConflict`` re-runs the whole attempt, so trip
    state and the roster are read fresh and member deltas recomputed before
    anything is written again.
    """

    def __init__(self, store: LedgerStore, max_attempts: int = 5, backoff_seconds: float = 0.05) -> None:
        self._store = store
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._log = get_logger(__name__)

    @classmethod
    def from_settings(cls, store: LedgerStore, settings: Settings) -> AggregationEngine:
        return cls(
            store,
            max_attempts=settings.aggregation_max_attempts,
            backoff_seconds=settings.aggregation_backoff_seconds,
        )

    async def on_expense_created(self, trip_id: str, expense: ExpenseInput) -> LedgerChange | None:
        return await self._handle(trip_id, "created", None, to_expense(expense))

    async def on_expense_updated(
        self,
        trip_id: str,
        before: ExpenseInput,
        after: ExpenseInput,
    ) -> LedgerChange | None:
        return await self._handle(trip_id, "updated", to_expense(before), to_expense(after))

    async def on_expense_deleted(self, trip_id: str, expense: ExpenseInput) -> LedgerChange | None:
        return await self._handle(trip_id, "deleted", to_expense(expense), None)

    async def reconcile_trip(self, trip_id: str) -> ReconciliationReport:
        log = self._log.bind(trip_id=trip_id, event_type="reconcile")
        report: ReconciliationReport = await self._run(log, self._reconcile_once, trip_id)
        if report.drifted:
            log.warning(
                "reconcile.drift",
                previous=_totals_dict(report.previous),
                recomputed=_totals_dict(report.recomputed),
                member_drift=report.member_drift,
            )
        else:
            log.info("reconcile.clean")
        return report

    async def reconcile_all(self) -> list[ReconciliationReport]:
        reports: list[ReconciliationReport] = []
        for trip_id in await self._store.list_trip_ids():
            try:
                reports.append(await self.reconcile_trip(trip_id))
            except (MissingParentError, AggregationFailedError):
                # already logged; one broken trip must not stop the pass
                continue
        return reports

    async def _handle(
        self,
        trip_id: str,
        event_type: str,
        before: Optional[Expense],
        after: Optional[Expense],
    ) -> LedgerChange | None:
        change = plan_change(before, after)
        subject = after if after is not None else before
        log = self._log.bind(
            trip_id=trip_id,
            expense_id=subject.id if subject is not None else None,
            event_type=event_type,
        )
        if change is None:
            log.debug("aggregation.skipped")
            return None

        log = log.bind(action=change.action.value)
        await self._run(log, self._apply_once, trip_id, change, log)
        log.info(
            "aggregation.applied",
            total_delta=change.totals.total,
            enabled_delta=change.totals.enabled,
            disabled_delta=change.totals.disabled,
            count_delta=change.totals.count,
        )
        return change

    async def _run(self, log: Any, operation: Any, *args: Any) -> Any:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._backoff_seconds, max=2.0),
            retry=retry_if_exception_type(TransactionConflict),
            before_sleep=lambda state: log.warning(
                "aggregation.conflict",
                attempt=state.attempt_number,
                error=str(state.outcome.exception()) if state.outcome else None,
            ),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await operation(*args)
        except MissingParentError as exc:
            log.error("aggregation.missing_parent", member_id=exc.member_id, error=str(exc))
            raise
        except TransactionConflict as exc:
            log.error("aggregation.retries_exhausted", attempts=self._max_attempts, error=str(exc))
            raise AggregationFailedError(
                f"gave up after {self._max_attempts} conflicting attempts"
            ) from exc

    async def _apply_once(self, trip_id: str, change: LedgerChange, log: Any) -> None:
        async with self._store.transaction() as tx:
            trip = await tx.get_trip(trip_id)
            if trip is None:
                raise MissingParentError(trip_id)

            member_ids = await tx.list_member_ids(trip_id)
            roster = set(member_ids)
            # reverse what was recorded for the old image, not a re-split over today's roster
            previous = await tx.get_allocation(trip_id, change.expense_id)
            deltas = change.member_deltas(member_ids, previous)
            unknown = [member_id for member_id in deltas if member_id not in roster]
            if unknown:
                log.warning("aggregation.unknown_members", member_ids=unknown)

            await tx.write_trip_totals(trip, trip.totals.apply(change.totals))
            for member_id, amount in deltas.items():
                if member_id not in roster:
                    continue
                if not await tx.increment_member_spending(trip_id, member_id, amount):
                    raise MissingParentError(trip_id, member_id)

            shares = change.allocation(member_ids)
            await tx.write_allocation(
                trip_id,
                change.expense_id,
                {member_id: amount for member_id, amount in shares.items() if member_id in roster},
            )

    async def _reconcile_once(self, trip_id: str) -> ReconciliationReport:
        async with self._store.transaction() as tx:
            trip = await tx.get_trip(trip_id)
            if trip is None:
                raise MissingParentError(trip_id)

            member_ids = await tx.list_member_ids(trip_id)
            expenses = await tx.list_settled_expenses(trip_id)

            totals = TripTotals()
            for expense in expenses:
                totals = totals.apply(_bucket_delta(expense, 1))

            roster = set(member_ids)
            allocations: dict[str, dict[str, float]] = {}
            for expense in expenses:
                shares = spending_contribution(expense, member_ids)
                shares = {member_id: amount for member_id, amount in shares.items() if member_id in roster}
                if shares:
                    allocations[expense.id] = shares

            spending = {member_id: 0.0 for member_id in member_ids}
            spending.update(merge_shares(allocations.values()))

            current = await tx.get_member_spending(trip_id)
            member_drift = {
                member_id: amount - current.get(member_id, 0.0)
                for member_id, amount in spending.items()
                if abs(amount - current.get(member_id, 0.0)) > TOLERANCE
            }

            await tx.write_trip_totals(trip, totals)
            for member_id, amount in spending.items():
                if not await tx.set_member_spending(trip_id, member_id, amount):
                    raise MissingParentError(trip_id, member_id)
            await tx.replace_allocations(trip_id, allocations)

            return ReconciliationReport(
                trip_id=trip_id,
                previous=trip.totals,
                recomputed=totals,
                member_drift=member_drift,
            )


def _totals_dict(totals: TripTotals) -> dict[str, float]:
    return {
        "total_expenses": totals.total_expenses,
        "enabled_total_expenses": totals.enabled_total_expenses,
        "disabled_total_expenses": totals.disabled_total_expenses,
        "expense_count": totals.expense_count,
    }
