"""
Request admission pipeline.

Runs each proxied request through authentication, admission, estimation,
the budget check and the debit before forwarding it upstream.

Billing is estimate-and-prepay: the estimate is charged before the upstream
call and is not refunded if the provider fails. Upstream failures after the
debit are logged with the usage id so they can be reconciled by hand.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Tuple

from .errors import AuthFailure, DebitRaceLoss, StorageFailure, UpstreamFailure
from .estimator import CostEstimate, estimate_request
from .guardrails import check_access, enforce_access, enforce_budget
from .pricing import PricingCatalog
from ai_cost_proxy.auth.identity import Identity, IdentityProvider
from ai_cost_proxy.proxy.forwarder import ProxyForwarder, UpstreamResponse
from ai_cost_proxy.storage.models import UsageRecord
from ai_cost_proxy.storage.repository import AccountLedger

logger = logging.getLogger(__name__)

REMAINING_BALANCE_HEADER = "X-Remaining-Balance"


class Stage(Enum):
    """Pipeline states. REJECTED is reachable from any state before FORWARDING."""
    AUTHENTICATING = "authenticating"
    ADMITTING = "admitting"
    ESTIMATING = "estimating"
    BUDGET_CHECK = "budget_check"
    DEBITING = "debiting"
    FORWARDING = "forwarding"
    RESPONDING = "responding"
    REJECTED = "rejected"


@dataclass
class ProxyOutcome:
    """A forwarded request, ready to relay to the caller."""
    identity: Identity
    estimate: CostEstimate
    usage: UsageRecord
    remaining_balance: Decimal
    upstream: UpstreamResponse

    def response_headers(self) -> Dict[str, str]:
        headers = dict(self.upstream.headers)
        headers[REMAINING_BALANCE_HEADER] = format(self.remaining_balance, "f")
        return headers


def parse_request_body(raw: bytes) -> Dict[str, Any]:
    """Decode a JSON request body. Absent or malformed bodies become {}."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def extract_model_and_messages(body: Dict[str, Any], fallback_model: str) -> Tuple[str, List[Any]]:
    model = body.get("model")
    if not isinstance(model, str) or not model:
        model = fallback_model
    messages = body.get("messages")
    if not isinstance(messages, list):
        messages = []
    return model, messages


class ProxyPipeline:
    """Sequences the metering steps for one proxied request."""

    def __init__(
        self,
        identity_provider: IdentityProvider,
        ledger: AccountLedger,
        forwarder: ProxyForwarder,
        catalog: PricingCatalog,
        fallback_model: str,
    ):
        self.identity_provider = identity_provider
        self.ledger = ledger
        self.forwarder = forwarder
        self.catalog = catalog
        self.fallback_model = fallback_model

    async def authenticate(self, headers: Mapping[str, str]) -> Identity:
        """Resolve the caller.

        Raises:
            AuthFailure: If there is no valid session
        """
        identity = await self.identity_provider.authenticate(headers)
        if identity is None:
            raise AuthFailure("authentication required")
        return identity

    async def run(self, headers: Mapping[str, str], body: bytes, method: str) -> ProxyOutcome:
        """Authenticate, then meter and forward the request."""
        logger.debug("Stage %s", Stage.AUTHENTICATING.value)
        identity = await self.authenticate(headers)
        return await self.handle(identity, body, method)

    async def handle(self, identity: Identity, body: bytes, method: str) -> ProxyOutcome:
        """Meter and forward a request for an authenticated caller.

        Raises:
            StorageFailure: Ledger unreachable during admission
            AccessDenied: Inactive plan or exhausted balance
            BudgetExceeded: Estimate larger than the admitted balance
            ConfigFault: Model has no routable upstream
            DebitRaceLoss: Conditional debit failed; nothing was charged
            UpstreamFailure: Transport failure after the debit
        """
        user_id = identity.id

        logger.debug("Stage %s for user %s", Stage.ADMITTING.value, user_id)
        try:
            decision = await check_access(self.ledger, user_id)
        except sqlite3.Error as exc:
            logger.exception("Admission lookup for user %s failed in storage", user_id)
            raise StorageFailure(str(exc)) from exc
        balance = enforce_access(decision)

        logger.debug("Stage %s for user %s", Stage.ESTIMATING.value, user_id)
        model, messages = extract_model_and_messages(parse_request_body(body), self.fallback_model)
        estimate = estimate_request(model, messages, self.catalog)
        # Refuse unroutable models before any money moves
        self.forwarder.resolve(model)

        logger.debug("Stage %s for user %s", Stage.BUDGET_CHECK.value, user_id)
        enforce_budget(estimate, balance)

        logger.debug("Stage %s for user %s", Stage.DEBITING.value, user_id)
        usage = await self._debit(user_id, estimate)

        logger.debug("Stage %s for user %s", Stage.FORWARDING.value, user_id)
        try:
            upstream = await self.forwarder.forward(model, body, method)
        except UpstreamFailure:
            logger.error(
                "Upstream failed after charging user %s %s (usage %s); not refunded",
                user_id, usage.cost, usage.id,
            )
            raise

        if not upstream.is_success:
            logger.warning(
                "Upstream returned %s for user %s after charging %s (usage %s)",
                upstream.status_code, user_id, usage.cost, usage.id,
            )

        logger.debug("Stage %s for user %s", Stage.RESPONDING.value, user_id)
        return ProxyOutcome(
            identity=identity,
            estimate=estimate,
            usage=usage,
            remaining_balance=balance - estimate.total_cost,
            upstream=upstream,
        )

    async def _debit(self, user_id: str, estimate: CostEstimate) -> UsageRecord:
        try:
            usage = await self.ledger.charge(user_id, estimate.total_cost, estimate.model)
        except sqlite3.Error as exc:
            logger.exception("Debit for user %s failed in storage", user_id)
            raise DebitRaceLoss(details=str(exc)) from exc
        if usage is None:
            raise DebitRaceLoss()
        return usage
