from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Mapping

import asyncpg

from tripledger.db.models import Expense, Trip, TripMember, TripTotals
from tripledger.logging import get_logger, sql_logger
from tripledger.services.settlement import TripBalances

CONFLICT_ERRORS = (
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
)


class TransactionConflict(RuntimeError):
    """Optimistic concurrency failure; the whole unit of work must be re-run."""


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


class Database:
    def __init__(self, dsn: str) -> None:
        self._dsn = dsn
        self._pool: asyncpg.Pool | None = None
        self._log = get_logger(__name__)

    async def connect(self) -> None:
        if self._pool is None:
            dsn = self._dsn.replace("+asyncpg", "")
            self._pool = await asyncpg.create_pool(dsn, init=_init_connection)
            self._log.info("db.pool.created")

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            self._log.info("db.pool.closed")

    async def fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        await self._ensure_pool()
        assert self._pool
        sql_logger.info("sql.fetch", query=query, args=args)
        return await self._pool.fetch(query, *args)

    @asynccontextmanager
    async def transaction(self, isolation: str = "repeatable_read") -> AsyncIterator[asyncpg.Connection]:
        await self._ensure_pool()
        assert self._pool
        async with self._pool.acquire() as conn:
            try:
                async with conn.transaction(isolation=isolation):
                    yield conn
            except CONFLICT_ERRORS as exc:
                raise TransactionConflict(str(exc)) from exc

    async def _ensure_pool(self) -> None:
        if self._pool is None:
            await self.connect()


def trip_from_row(row: Mapping[str, Any]) -> Trip:
    return Trip(
        id=row["id"],
        name=row["name"],
        trip_currency=row["trip_currency"],
        default_currency=row["default_currency"],
        exchange_rate=float(row["exchange_rate"] or 0),
        owner_id=row["owner_id"],
        totals=TripTotals(
            total_expenses=float(row["total_expenses"] or 0),
            enabled_total_expenses=float(row["enabled_total_expenses"] or 0),
            disabled_total_expenses=float(row["disabled_total_expenses"] or 0),
            expense_count=int(row["expense_count"] or 0),
        ),
        version=int(row["version"]),
    )


def member_from_row(row: Mapping[str, Any]) -> TripMember:
    return TripMember(
        id=row["id"],
        trip_id=row["trip_id"],
        name=row["name"],
        avatar_emoji=row["avatar_emoji"],
        is_host=bool(row["is_host"]),
        spending=float(row["spending"] or 0),
    )


def expense_from_row(row: Mapping[str, Any]) -> Expense:
    return Expense.model_validate(dict(row))


class LedgerTransaction:
    """Reads and writes of one aggregation attempt, bound to a single connection."""

    def __init__(self, conn: asyncpg.Connection) -> None:
        self.conn = conn

    async def get_trip(self, trip_id: str) -> Trip | None:
        query = "SELECT * FROM trips WHERE id = $1"
        sql_logger.info("sql.fetchrow", query=query, args=(trip_id,))
        row = await self.conn.fetchrow(query, trip_id)
        return trip_from_row(row) if row is not None else None

    async def list_member_ids(self, trip_id: str) -> list[str]:
        query = "SELECT id FROM trip_members WHERE trip_id = $1 ORDER BY created_at, id"
        sql_logger.info("sql.fetch", query=query, args=(trip_id,))
        rows = await self.conn.fetch(query, trip_id)
        return [row["id"] for row in rows]

    async def list_settled_expenses(self, trip_id: str) -> list[Expense]:
        query = "SELECT * FROM expenses WHERE trip_id = $1 AND is_processing = false ORDER BY created_at, id"
        sql_logger.info("sql.fetch", query=query, args=(trip_id,))
        rows = await self.conn.fetch(query, trip_id)
        return [expense_from_row(row) for row in rows]

    async def write_trip_totals(self, trip: Trip, totals: TripTotals) -> None:
        query = """
            UPDATE trips
               SET total_expenses = $2,
                   enabled_total_expenses = $3,
                   disabled_total_expenses = $4,
                   expense_count = $5,
                   version = version + 1,
                   updated_at = now()
             WHERE id = $1 AND version = $6
            """
        args = (
            trip.id,
            totals.total_expenses,
            totals.enabled_total_expenses,
            totals.disabled_total_expenses,
            totals.expense_count,
            trip.version,
        )
        sql_logger.info("sql.execute", query=query, args=args)
        status = await self.conn.execute(query, *args)
        if status != "UPDATE 1":
            raise TransactionConflict(f"trip {trip.id} changed since version {trip.version}")

    async def increment_member_spending(self, trip_id: str, member_id: str, amount: float) -> bool:
        query = "UPDATE trip_members SET spending = spending + $3 WHERE trip_id = $1 AND id = $2"
        sql_logger.info("sql.execute", query=query, args=(trip_id, member_id, amount))
        status = await self.conn.execute(query, trip_id, member_id, amount)
        return status == "UPDATE 1"

    async def set_member_spending(self, trip_id: str, member_id: str, amount: float) -> bool:
        query = "UPDATE trip_members SET spending = $3 WHERE trip_id = $1 AND id = $2"
        sql_logger.info("sql.execute", query=query, args=(trip_id, member_id, amount))
        status = await self.conn.execute(query, trip_id, member_id, amount)
        return status == "UPDATE 1"

    async def get_member_spending(self, trip_id: str) -> dict[str, float]:
        query = "SELECT id, spending FROM trip_members WHERE trip_id = $1"
        sql_logger.info("sql.fetch", query=query, args=(trip_id,))
        rows = await self.conn.fetch(query, trip_id)
        return {row["id"]: float(row["spending"] or 0) for row in rows}

    async def get_allocation(self, trip_id: str, expense_id: str) -> dict[str, float]:
        query = "SELECT member_id, amount FROM expense_allocations WHERE trip_id = $1 AND expense_id = $2"
        sql_logger.info("sql.fetch", query=query, args=(trip_id, expense_id))
        rows = await self.conn.fetch(query, trip_id, expense_id)
        return {row["member_id"]: float(row["amount"]) for row in rows}

    async def write_allocation(self, trip_id: str, expense_id: str, shares: Mapping[str, float]) -> None:
        query = "DELETE FROM expense_allocations WHERE trip_id = $1 AND expense_id = $2"
        sql_logger.info("sql.execute", query=query, args=(trip_id, expense_id))
        await self.conn.execute(query, trip_id, expense_id)
        await self._insert_allocations(trip_id, {expense_id: shares})

    async def replace_allocations(self, trip_id: str, allocations: Mapping[str, Mapping[str, float]]) -> None:
        query = "DELETE FROM expense_allocations WHERE trip_id = $1"
        sql_logger.info("sql.execute", query=query, args=(trip_id,))
        await self.conn.execute(query, trip_id)
        await self._insert_allocations(trip_id, allocations)

    async def _insert_allocations(self, trip_id: str, allocations: Mapping[str, Mapping[str, float]]) -> None:
        rows = [
            (trip_id, expense_id, member_id, amount)
            for expense_id, shares in allocations.items()
            for member_id, amount in shares.items()
        ]
        if not rows:
            return
        query = "INSERT INTO expense_allocations (trip_id, expense_id, member_id, amount) VALUES ($1, $2, $3, $4)"
        sql_logger.info("sql.executemany", query=query, rows=len(rows))
        await self.conn.executemany(query, rows)


class LedgerRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[LedgerTransaction]:
        async with self.db.transaction() as conn:
            yield LedgerTransaction(conn)

    async def list_trip_ids(self) -> list[str]:
        rows = await self.db.fetch("SELECT id FROM trips WHERE archived = false ORDER BY id")
        return [row["id"] for row in rows]

    async def list_members(self, trip_id: str) -> list[TripMember]:
        rows = await self.db.fetch(
            "SELECT * FROM trip_members WHERE trip_id = $1 ORDER BY created_at, id",
            trip_id,
        )
        return [member_from_row(row) for row in rows]

    async def list_enabled_expenses(self, trip_id: str) -> list[Expense]:
        rows = await self.db.fetch(
            """
            SELECT *
            FROM expenses
            WHERE trip_id = $1
              AND enabled = true
              AND is_processing = false
            ORDER BY paid_at NULLS LAST, created_at, id
            """,
            trip_id,
        )
        return [expense_from_row(row) for row in rows]

    async def trip_balances(self, trip_id: str) -> TripBalances:
        expenses = await self.list_enabled_expenses(trip_id)
        members = await self.list_members(trip_id)
        return TripBalances.from_expenses(expenses, [member.id for member in members])
