"""
Data models for storage layer.

Defines account and usage records for the prepaid ledger.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

DEFAULT_BALANCE = Decimal("5.00")


class Plan(Enum):
    """Subscription plans."""
    FREE = "free"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class AccountState(Enum):
    """Subscription status. Only ACTIVE accounts are admitted."""
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class AccountStatus:
    """Snapshot of a user's ledger row."""
    user_id: str
    plan: Plan
    status: AccountState
    balance: Decimal
    total_spent: Decimal
    updated_at: datetime
    last_used_at: Optional[datetime] = None

    def to_stats(self) -> Dict[str, Any]:
        """Public view used by the stats surface."""
        return {
            "plan": self.plan.value,
            "status": self.status.value,
            "balance": float(self.balance),
            "totalSpent": float(self.total_spent),
            "lastUsed": self.last_used_at.isoformat() if self.last_used_at else None,
        }


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of one admitted request.

    Append-only: written in the same transaction as the debit it mirrors.
    """
    id: str
    user_id: str
    model: str
    cost: Decimal
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "model": self.model,
            "cost": float(self.cost),
            "timestamp": self.timestamp.isoformat(),
        }
