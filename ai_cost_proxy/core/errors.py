"""
Error taxonomy for the proxy pipeline.

Every per-request failure is a ProxyError carrying the HTTP status and the
JSON body the caller receives. Configuration faults are not per-request
errors and live outside that hierarchy.
"""

from decimal import Decimal
from typing import Any, Dict, Optional


class ProxyError(Exception):
    """Base class for failures that end a proxied request."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def payload(self) -> Dict[str, Any]:
        """JSON body returned to the caller."""
        return {"error": self.message}


class AuthFailure(ProxyError):
    """No valid session. The caller must re-authenticate."""
    status_code = 401


class AccessDenied(ProxyError):
    """Inactive plan or exhausted balance."""
    status_code = 403

    def __init__(self, message: str, balance: Optional[Decimal] = None):
        super().__init__(message)
        self.balance = balance

    def payload(self) -> Dict[str, Any]:
        body = super().payload()
        body["balance"] = float(self.balance) if self.balance is not None else None
        return body


class BudgetExceeded(ProxyError):
    """Estimated cost is larger than the balance seen at admission."""
    status_code = 403

    def __init__(self, estimated_cost: Decimal, balance: Decimal):
        super().__init__("estimated cost exceeds balance")
        self.estimated_cost = estimated_cost
        self.balance = balance

    def payload(self) -> Dict[str, Any]:
        body = super().payload()
        body["estimatedCost"] = float(self.estimated_cost)
        body["balance"] = float(self.balance)
        return body


class DebitRaceLoss(ProxyError):
    """Conditional debit touched no row, or storage failed while debiting.

    No funds moved and no usage was recorded, so an immediate retry is safe.
    """
    status_code = 500

    def __init__(self, message: str = "debit failed, retry later", details: Optional[str] = None):
        super().__init__(message)
        self.details = details

    def payload(self) -> Dict[str, Any]:
        body = super().payload()
        if self.details:
            body["details"] = self.details
        return body


class StorageFailure(ProxyError):
    """Ledger unreachable before any money moved."""
    status_code = 500

    def __init__(self, details: str):
        super().__init__("account lookup failed")
        self.details = details

    def payload(self) -> Dict[str, Any]:
        body = super().payload()
        body["details"] = self.details
        return body


class UpstreamFailure(ProxyError):
    """Transport error talking to the provider after the debit succeeded."""
    status_code = 500

    def __init__(self, details: str):
        super().__init__("proxy request failed")
        self.details = details

    def payload(self) -> Dict[str, Any]:
        body = super().payload()
        body["details"] = self.details
        return body


class ConfigFault(RuntimeError):
    """Unknown provider, missing credential, or unroutable catalog entry."""
