"""
Unit tests for the account ledger.

Tests schema creation, lazy account creation, the conditional debit and
its usage record, and the never-failing stats view.
"""

import asyncio
import os
import shutil
import sqlite3
import tempfile
from decimal import Decimal
from unittest.mock import patch

import pytest

from ai_cost_proxy.storage.db import get_connection
from ai_cost_proxy.storage.models import AccountState, Plan
from ai_cost_proxy.storage.repository import (
    AccountLedger,
    from_micros,
    initialize_schema,
    to_micros,
)


def _set_balance(db_path: str, user_id: str, balance: Decimal) -> None:
    conn = get_connection(db_path)
    try:
        conn.execute(
            "UPDATE account_status SET balance_micros = ? WHERE user_id = ?",
            (to_micros(balance), user_id),
        )
    finally:
        conn.close()


def _count_usage(db_path: str, user_id: str) -> int:
    conn = get_connection(db_path)
    try:
        return conn.execute(
            "SELECT COUNT(*) FROM api_usage WHERE user_id = ?", (user_id,)
        ).fetchone()[0]
    finally:
        conn.close()


def _count_accounts(db_path: str, user_id: str) -> int:
    conn = get_connection(db_path)
    try:
        return conn.execute(
            "SELECT COUNT(*) FROM account_status WHERE user_id = ?", (user_id,)
        ).fetchone()[0]
    finally:
        conn.close()


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify both tables are created with the expected columns."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                tables = {
                    row[0] for row in conn.execute(
                        "SELECT name FROM sqlite_master WHERE type='table'"
                    )
                }
                assert {"account_status", "api_usage"} <= tables

                columns = [col[1] for col in conn.execute("PRAGMA table_info(account_status)")]
                assert columns == [
                    'user_id', 'plan', 'status', 'balance_micros',
                    'total_spent_micros', 'last_used_at', 'updated_at',
                ]
                columns = [col[1] for col in conn.execute("PRAGMA table_info(api_usage)")]
                assert columns == ['id', 'user_id', 'model', 'cost_micros', 'timestamp']
            finally:
                conn.close()

    def test_schema_creation_is_idempotent(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)
            initialize_schema(db_path)

    def test_micros_conversion(self):
        assert to_micros(Decimal("5.00")) == 5_000_000
        assert to_micros(Decimal("0.000001")) == 1
        assert from_micros(19_999_800) == Decimal("19.999800")


class TestAccountCreation:
    """Test lazy account creation."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.ledger = AccountLedger(self.db_path)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    @pytest.mark.asyncio
    async def test_new_user_gets_default_account(self):
        status = await self.ledger.get_or_create("user-1")
        assert status.user_id == "user-1"
        assert status.plan == Plan.FREE
        assert status.status == AccountState.ACTIVE
        assert status.balance == Decimal("5.00")
        assert status.total_spent == Decimal("0")
        assert status.last_used_at is None

    @pytest.mark.asyncio
    async def test_get_or_create_twice_creates_one_row(self):
        first = await self.ledger.get_or_create("user-1")
        second = await self.ledger.get_or_create("user-1")
        assert first == second
        assert _count_accounts(self.db_path, "user-1") == 1

    @pytest.mark.asyncio
    async def test_concurrent_first_access_creates_one_row(self):
        results = await asyncio.gather(*[self.ledger.get_or_create("user-1") for _ in range(10)])
        assert all(r.balance == Decimal("5.00") for r in results)
        assert _count_accounts(self.db_path, "user-1") == 1


class TestDebit:
    """Test the conditional debit and its usage record."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.ledger = AccountLedger(self.db_path)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    @pytest.mark.asyncio
    async def test_debit_updates_balance_and_records_usage(self):
        await self.ledger.get_or_create("user-1")

        record = await self.ledger.charge("user-1", Decimal("0.25"), "gpt-4o-mini")

        assert record is not None
        assert record.cost == Decimal("0.25")
        assert record.model == "gpt-4o-mini"
        status = await self.ledger.get_or_create("user-1")
        assert status.balance == Decimal("4.75")
        assert status.total_spent == Decimal("0.25")
        assert status.last_used_at is not None

        records = await self.ledger.usage_records("user-1")
        assert [r.id for r in records] == [record.id]
        assert records[0].cost == Decimal("0.25")

    @pytest.mark.asyncio
    async def test_debit_insufficient_balance_changes_nothing(self):
        await self.ledger.get_or_create("user-1")

        assert await self.ledger.debit("user-1", Decimal("5.000001"), "gpt-4o-mini") is False

        status = await self.ledger.get_or_create("user-1")
        assert status.balance == Decimal("5.00")
        assert status.total_spent == Decimal("0")
        assert _count_usage(self.db_path, "user-1") == 0

    @pytest.mark.asyncio
    async def test_debit_unknown_user_returns_false(self):
        assert await self.ledger.debit("ghost", Decimal("0.01")) is False
        assert _count_usage(self.db_path, "ghost") == 0

    @pytest.mark.asyncio
    async def test_debit_exact_balance_succeeds(self):
        await self.ledger.get_or_create("user-1")
        assert await self.ledger.debit("user-1", Decimal("5.00"), "m") is True
        status = await self.ledger.get_or_create("user-1")
        assert status.balance == Decimal("0")

    @pytest.mark.asyncio
    async def test_zero_cost_debit_still_records_usage(self):
        await self.ledger.get_or_create("user-1")
        _set_balance(self.db_path, "user-1", Decimal("0.02"))

        assert await self.ledger.debit("user-1", Decimal("0.000000"), "google/gemini-2.5-flash")

        status = await self.ledger.get_or_create("user-1")
        assert status.balance == Decimal("0.02")
        assert _count_usage(self.db_path, "user-1") == 1

    @pytest.mark.asyncio
    async def test_negative_amount_rejected(self):
        with pytest.raises(ValueError, match=">= 0"):
            await self.ledger.debit("user-1", Decimal("-1"))

    @pytest.mark.asyncio
    async def test_concurrent_full_balance_debits_succeed_once(self):
        await self.ledger.get_or_create("user-1")

        results = await asyncio.gather(
            *[self.ledger.debit("user-1", Decimal("5.00"), "m") for _ in range(8)]
        )

        assert results.count(True) == 1
        assert results.count(False) == 7
        status = await self.ledger.get_or_create("user-1")
        assert status.balance == Decimal("0")
        assert status.total_spent == Decimal("5.00")
        assert _count_usage(self.db_path, "user-1") == 1

    @pytest.mark.asyncio
    async def test_one_usage_record_per_successful_debit(self):
        await self.ledger.get_or_create("user-1")
        for _ in range(5):
            assert await self.ledger.debit("user-1", Decimal("0.1"), "m")

        records = await self.ledger.usage_records("user-1")
        assert len(records) == 5
        assert all(r.cost == Decimal("0.1") for r in records)
        status = await self.ledger.get_or_create("user-1")
        assert status.total_spent == Decimal("0.5")

    @pytest.mark.asyncio
    async def test_failed_usage_insert_rolls_back_debit(self):
        """A debit without its usage record must never commit."""
        await self.ledger.get_or_create("user-1")
        fixed_id = "00000000-0000-0000-0000-000000000001"
        with patch("ai_cost_proxy.storage.repository.uuid.uuid4", return_value=fixed_id):
            assert await self.ledger.debit("user-1", Decimal("1.00"), "m")
            with pytest.raises(sqlite3.IntegrityError):
                # Same usage id -> primary key violation on insert
                await self.ledger.debit("user-1", Decimal("1.00"), "m")

        status = await self.ledger.get_or_create("user-1")
        assert status.balance == Decimal("4.00")
        assert status.total_spent == Decimal("1.00")
        assert _count_usage(self.db_path, "user-1") == 1

    @pytest.mark.asyncio
    async def test_usage_records_newest_first_with_limit(self):
        await self.ledger.get_or_create("user-1")
        for model in ["a", "b", "c"]:
            await self.ledger.debit("user-1", Decimal("0.01"), model)

        records = await self.ledger.usage_records("user-1", limit=2)
        assert [r.model for r in records] == ["c", "b"]


class TestStats:
    """Test the stats view, which never fails."""

    @pytest.mark.asyncio
    async def test_stats_creates_account(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)
            ledger = AccountLedger(db_path)

            status = await ledger.stats("user-1")

            assert status.balance == Decimal("5.00")
            assert _count_accounts(db_path, "user-1") == 1

    @pytest.mark.asyncio
    async def test_stats_storage_failure_returns_defaults(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            # A directory cannot be opened as a database
            ledger = AccountLedger(temp_dir)

            status = await ledger.stats("user-1")

            assert status.to_stats() == {
                "plan": "free",
                "status": "active",
                "balance": 5.0,
                "totalSpent": 0.0,
                "lastUsed": None,
            }

    @pytest.mark.asyncio
    async def test_get_or_create_storage_failure_propagates(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            ledger = AccountLedger(temp_dir)
            with pytest.raises(sqlite3.Error):
                await ledger.get_or_create("user-1")
