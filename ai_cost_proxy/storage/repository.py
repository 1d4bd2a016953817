"""
Account ledger.

Holds per-user balances and the append-only usage log. The conditional
debit is the only path that moves money; it and its usage record commit in
one transaction. Amounts are stored as integer micro-dollars.
"""

import asyncio
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import DEFAULT_BALANCE, AccountState, AccountStatus, Plan, UsageRecord

logger = logging.getLogger(__name__)

MICROS_PER_UNIT = Decimal("1000000")

_ACCOUNT_COLUMNS = (
    "user_id, plan, status, balance_micros, total_spent_micros, last_used_at, updated_at"
)


def to_micros(amount: Decimal) -> int:
    """Convert a USD amount to integer micro-dollars."""
    return int((Decimal(amount) * MICROS_PER_UNIT).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_micros(micros: int) -> Decimal:
    return (Decimal(micros) / MICROS_PER_UNIT).quantize(Decimal("0.000001"))


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_status(row) -> AccountStatus:
    return AccountStatus(
        user_id=row[0],
        plan=Plan(row[1]),
        status=AccountState(row[2]),
        balance=from_micros(row[3]),
        total_spent=from_micros(row[4]),
        last_used_at=_parse_ts(row[5]),
        updated_at=_parse_ts(row[6]),
    )


def default_account_status(user_id: str) -> AccountStatus:
    """The view of a brand-new account: free plan, active, $5.00, nothing spent."""
    return AccountStatus(
        user_id=user_id,
        plan=Plan.FREE,
        status=AccountState.ACTIVE,
        balance=DEFAULT_BALANCE,
        total_spent=Decimal("0"),
        updated_at=_now(),
    )


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the account_status and api_usage tables if they don't exist.

    api_usage is an append-only ledger: no UPDATE or DELETE is ever issued
    against it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS account_status (
                user_id TEXT PRIMARY KEY,
                plan TEXT NOT NULL DEFAULT 'free',
                status TEXT NOT NULL DEFAULT 'active',
                balance_micros INTEGER NOT NULL,
                total_spent_micros INTEGER NOT NULL DEFAULT 0,
                last_used_at TEXT,
                updated_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS api_usage (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES account_status(user_id) ON DELETE CASCADE,
                model TEXT NOT NULL,
                cost_micros INTEGER NOT NULL CHECK (cost_micros >= 0),
                timestamp TEXT NOT NULL
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_api_usage_user ON api_usage (user_id, timestamp)"
        )
    finally:
        conn.close()


class AccountLedger:
    """Async facade over the sqlite ledger.

    Each operation opens its own connection on a worker thread so the event
    loop never blocks on storage.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the ledger with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    async def get_or_create(self, user_id: str) -> AccountStatus:
        """Read a user's account, creating the default one on first access.

        Creation is an INSERT OR IGNORE keyed by user_id followed by a
        re-read, so concurrent first accesses converge on a single row.
        """
        return await asyncio.to_thread(self._get_or_create, user_id)

    async def charge(self, user_id: str, amount: Decimal, model: str) -> Optional[UsageRecord]:
        """Atomically charge a user and record the usage.

        The balance update is conditional on ``balance >= amount`` in the
        same statement, so concurrent charges can never overdraw.

        Args:
            user_id: Account to charge
            amount: Non-negative USD amount, at most 6 decimal places
            model: Model id stored on the usage record

        Returns:
            The written UsageRecord, or None when no row qualified

        Raises:
            ValueError: If amount is negative
            sqlite3.Error: On storage failure; nothing is committed
        """
        if amount < 0:
            raise ValueError("debit amount must be >= 0")
        return await asyncio.to_thread(self._debit, user_id, amount, model)

    async def debit(self, user_id: str, amount: Decimal, model: str = "unknown") -> bool:
        """True iff the conditional update affected exactly one row."""
        return await self.charge(user_id, amount, model) is not None

    async def stats(self, user_id: str) -> AccountStatus:
        """Statistics view for a user. Never fails.

        Storage errors are logged and answered with the default account
        view: the stats surface is display-only and stays available even
        when the ledger is not.
        """
        try:
            return await self.get_or_create(user_id)
        except sqlite3.Error:
            logger.exception("Stats lookup failed for user %s; serving defaults", user_id)
            return default_account_status(user_id)

    async def usage_records(self, user_id: str, limit: int = 100) -> List[UsageRecord]:
        """A user's usage records, newest first."""
        return await asyncio.to_thread(self._usage_records, user_id, limit)

    def _select_status(self, conn: sqlite3.Connection, user_id: str) -> Optional[AccountStatus]:
        row = conn.execute(
            f"SELECT {_ACCOUNT_COLUMNS} FROM account_status WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        return _row_to_status(row) if row else None

    def _get_or_create(self, user_id: str) -> AccountStatus:
        conn = get_connection(self.db_path)
        try:
            status = self._select_status(conn, user_id)
            if status is not None:
                return status

            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO account_status
                (user_id, plan, status, balance_micros, total_spent_micros, updated_at)
                VALUES (?, ?, ?, ?, 0, ?)
                """,
                (
                    user_id,
                    Plan.FREE.value,
                    AccountState.ACTIVE.value,
                    to_micros(DEFAULT_BALANCE),
                    _now().isoformat(),
                ),
            )
            if cursor.rowcount == 1:
                logger.info("Created default account for user %s", user_id)

            status = self._select_status(conn, user_id)
            if status is None:
                raise sqlite3.DatabaseError(f"account row for {user_id} missing after insert")
            return status
        finally:
            conn.close()

    def _debit(self, user_id: str, amount: Decimal, model: str) -> Optional[UsageRecord]:
        micros = to_micros(amount)
        now = _now()
        record = UsageRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            model=model,
            cost=from_micros(micros),
            timestamp=now,
        )

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute(
                """
                UPDATE account_status
                SET balance_micros = balance_micros - ?,
                    total_spent_micros = total_spent_micros + ?,
                    last_used_at = ?,
                    updated_at = ?
                WHERE user_id = ? AND balance_micros >= ?
                """,
                (micros, micros, now.isoformat(), now.isoformat(), user_id, micros),
            )
            if cursor.rowcount != 1:
                conn.execute("ROLLBACK")
                logger.warning(
                    "Debit of %s for user %s matched no row", record.cost, user_id
                )
                return None

            conn.execute(
                """
                INSERT INTO api_usage (id, user_id, model, cost_micros, timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                (record.id, user_id, model, micros, now.isoformat()),
            )
            conn.execute("COMMIT")
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

        logger.info(
            "Debited %s from user %s for %s (usage %s)", record.cost, user_id, model, record.id
        )
        return record

    def _usage_records(self, user_id: str, limit: int) -> List[UsageRecord]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                SELECT id, user_id, model, cost_micros, timestamp
                FROM api_usage
                WHERE user_id = ?
                ORDER BY timestamp DESC, rowid DESC
                LIMIT ?
                """,
                (user_id, limit),
            )
            return [
                UsageRecord(
                    id=row[0],
                    user_id=row[1],
                    model=row[2],
                    cost=from_micros(row[3]),
                    timestamp=datetime.fromisoformat(row[4]),
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()
