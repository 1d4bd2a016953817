"""
Tests for access guard and budget enforcement.
"""

import os
import shutil
import tempfile
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from ai_cost_proxy.core.errors import AccessDenied, BudgetExceeded
from ai_cost_proxy.core.estimator import CostEstimate
from ai_cost_proxy.core.guardrails import (
    REASON_NO_BALANCE,
    REASON_NOT_ACTIVE,
    check_access,
    decide_access,
    enforce_access,
    enforce_budget,
)
from ai_cost_proxy.storage.db import get_connection
from ai_cost_proxy.storage.models import AccountState, AccountStatus, Plan
from ai_cost_proxy.storage.repository import AccountLedger, initialize_schema


def _status(state=AccountState.ACTIVE, balance="5.00") -> AccountStatus:
    return AccountStatus(
        user_id="u1",
        plan=Plan.MONTHLY,
        status=state,
        balance=Decimal(balance),
        total_spent=Decimal("0"),
        updated_at=datetime.now(timezone.utc),
    )


def _estimate(cost: str) -> CostEstimate:
    return CostEstimate(input_tokens=10, output_tokens=100, total_cost=Decimal(cost), model="m")


class TestAccessDecision:
    """Test the pure admission rules."""

    def test_active_with_balance_is_admitted(self):
        decision = decide_access(_status(balance="1.50"))
        assert decision.can_use is True
        assert decision.balance == Decimal("1.50")
        assert decision.reason is None

    @pytest.mark.parametrize("state", [AccountState.EXPIRED, AccountState.CANCELLED])
    def test_inactive_subscription_denied(self, state):
        decision = decide_access(_status(state=state))
        assert decision.can_use is False
        assert decision.reason == REASON_NOT_ACTIVE
        assert decision.balance == Decimal("5.00")

    def test_status_checked_before_balance(self):
        decision = decide_access(_status(state=AccountState.EXPIRED, balance="0"))
        assert decision.reason == REASON_NOT_ACTIVE

    @pytest.mark.parametrize("balance", ["0", "-0.01"])
    def test_exhausted_balance_denied(self, balance):
        decision = decide_access(_status(balance=balance))
        assert decision.can_use is False
        assert decision.reason == REASON_NO_BALANCE

    def test_to_dict(self):
        assert decide_access(_status(balance="0")).to_dict() == {
            "canUse": False,
            "balance": 0.0,
            "reason": REASON_NO_BALANCE,
        }


class TestCheckAccess:
    """Test admission against the ledger."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.ledger = AccountLedger(self.db_path)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    @pytest.mark.asyncio
    async def test_new_user_admitted_with_opening_balance(self):
        decision = await check_access(self.ledger, "new-user")
        assert decision.can_use is True
        assert decision.balance == Decimal("5.0")

        stats = await self.ledger.stats("new-user")
        assert stats.balance == Decimal("5.0")

    @pytest.mark.asyncio
    async def test_cancelled_user_denied(self):
        await self.ledger.get_or_create("u1")
        conn = get_connection(self.db_path)
        try:
            conn.execute("UPDATE account_status SET status = 'cancelled' WHERE user_id = 'u1'")
        finally:
            conn.close()

        decision = await check_access(self.ledger, "u1")
        assert decision.can_use is False
        assert decision.reason == REASON_NOT_ACTIVE

    @pytest.mark.asyncio
    async def test_check_access_performs_no_debit(self):
        await check_access(self.ledger, "u1")
        await check_access(self.ledger, "u1")
        assert await self.ledger.usage_records("u1") == []
        assert (await self.ledger.stats("u1")).total_spent == Decimal("0")


class TestEnforcement:
    """Test exceptions raised by enforcement helpers."""

    def test_enforce_access_returns_balance(self):
        assert enforce_access(decide_access(_status(balance="2.00"))) == Decimal("2.00")

    def test_enforce_access_raises_with_balance(self):
        with pytest.raises(AccessDenied) as excinfo:
            enforce_access(decide_access(_status(balance="0")))
        assert excinfo.value.status_code == 403
        assert excinfo.value.payload() == {"error": REASON_NO_BALANCE, "balance": 0.0}

    def test_budget_within_balance_passes(self):
        enforce_budget(_estimate("0.02"), Decimal("0.02"))

    def test_budget_exceeded(self):
        with pytest.raises(BudgetExceeded) as excinfo:
            enforce_budget(_estimate("0.030000"), Decimal("0.02"))
        assert excinfo.value.status_code == 403
        assert excinfo.value.payload() == {
            "error": "estimated cost exceeds balance",
            "estimatedCost": 0.03,
            "balance": 0.02,
        }
