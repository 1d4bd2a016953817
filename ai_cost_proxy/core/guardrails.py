"""
Access guard and budget enforcement.

Decides whether a user may spend at all, then whether a particular estimate
fits the balance seen at admission.

Enforcement Order:
1. Account exists (created lazily with the free-plan defaults)
2. Subscription status - only active accounts are admitted
3. Balance - an exhausted balance is refused
4. Budget - the request estimate must fit the admitted balance
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .errors import AccessDenied, BudgetExceeded
from .estimator import CostEstimate, is_within_budget
from ai_cost_proxy.storage.models import AccountState, AccountStatus
from ai_cost_proxy.storage.repository import AccountLedger

REASON_NOT_ACTIVE = "subscription not active"
REASON_NO_BALANCE = "insufficient balance"


@dataclass(frozen=True)
class AccessDecision:
    """Result of an admission check. Balance is the last-known value."""
    can_use: bool
    balance: Optional[Decimal] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "canUse": self.can_use,
            "balance": float(self.balance) if self.balance is not None else None,
            "reason": self.reason,
        }


def decide_access(status: AccountStatus) -> AccessDecision:
    """Pure admission decision over a ledger snapshot."""
    if status.status != AccountState.ACTIVE:
        return AccessDecision(can_use=False, balance=status.balance, reason=REASON_NOT_ACTIVE)
    if status.balance <= 0:
        return AccessDecision(can_use=False, balance=status.balance, reason=REASON_NO_BALANCE)
    return AccessDecision(can_use=True, balance=status.balance)


async def check_access(ledger: AccountLedger, user_id: str) -> AccessDecision:
    """Admission check for a user. Performs no debit.

    A user without an account row gets the default one created and is
    admitted with its opening balance.
    """
    status = await ledger.get_or_create(user_id)
    return decide_access(status)


def enforce_access(decision: AccessDecision) -> Decimal:
    """Return the admitted balance.

    Raises:
        AccessDenied: If the decision refuses access
    """
    if not decision.can_use:
        raise AccessDenied(decision.reason or "access denied", balance=decision.balance)
    return decision.balance if decision.balance is not None else Decimal("0")


def enforce_budget(estimate: CostEstimate, balance: Decimal) -> None:
    """Advisory pre-check of an estimate against the admitted balance.

    The authoritative check is the conditional debit.

    Raises:
        BudgetExceeded: If the estimate is larger than the balance
    """
    if not is_within_budget(estimate, balance):
        raise BudgetExceeded(estimated_cost=estimate.total_cost, balance=balance)
