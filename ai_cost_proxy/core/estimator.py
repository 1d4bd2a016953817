"""
Cost estimation for chat-style requests.

Produces a CostEstimate from a model id and a conversation before the
request is forwarded. The estimate is what gets charged: there is no
reconciliation against provider-reported usage.

Rounding: totals are quantized to 6 decimal places with ROUND_HALF_UP.
The rounded value is compared with the balance, debited and persisted.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Sequence

from .pricing import PRICING_CATALOG, ModelCategory, PricingCatalog
from .token_counter import TokenUsage, estimate_token_count

COST_QUANTUM = Decimal("0.000001")
CURRENCY = "USD"

# (multiplier numerator, denominator, floor, ceiling)
_OPENING_TURN = (2, 1, 100, 1000)
_FOLLOW_UP_TURN = (3, 2, 200, 800)


@dataclass(frozen=True)
class CostEstimate:
    """Estimated cost of one request. Never persisted as a whole."""
    input_tokens: int
    output_tokens: int
    total_cost: Decimal
    model: str
    currency: str = CURRENCY

    @property
    def usage(self) -> TokenUsage:
        return TokenUsage(input_tokens=self.input_tokens, output_tokens=self.output_tokens)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalCost": float(self.total_cost),
            "currency": self.currency,
            "model": self.model,
        }


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(value, high))


def message_text(message: Any) -> str:
    """Extract the text content of a single message.

    Plain string content is used as-is; multi-part content contributes the
    text of its text parts. Anything else counts as empty.
    """
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            part.get("text") for part in content
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        ]
        return " ".join(parts)
    return ""


def estimate_input_tokens(messages: Sequence[Any]) -> int:
    """Tokens for all message contents joined with single spaces."""
    return estimate_token_count(" ".join(message_text(m) for m in messages))


def estimate_output_tokens(
    messages: Sequence[Any],
    model_id: str,
    catalog: PricingCatalog = PRICING_CATALOG,
) -> int:
    """Estimate completion length from the conversation shape.

    Embedding models produce no output. A single-message conversation is
    treated as an opening turn; anything else (including an empty list) as
    a follow-up turn, which tends to get shorter answers. Fractional
    results round up.
    """
    entry = catalog.lookup(model_id)
    if entry.category == ModelCategory.EMBEDDING:
        return 0

    last_tokens = estimate_token_count(message_text(messages[-1])) if messages else 0
    numerator, denominator, low, high = (
        _OPENING_TURN if len(messages) == 1 else _FOLLOW_UP_TURN
    )
    scaled = -(-last_tokens * numerator // denominator)
    return _clamp(scaled, low, high)


def estimate_cost(
    model_id: str,
    messages: Sequence[Any],
    output_tokens: int,
    catalog: PricingCatalog = PRICING_CATALOG,
) -> CostEstimate:
    """Estimate the total cost of a request.

    Args:
        model_id: Model identifier; unknown ids are priced with the
            catalog's default entry
        messages: Ordered conversation messages
        output_tokens: Expected completion tokens
        catalog: Pricing catalog to price against

    Returns:
        CostEstimate with total_cost quantized to 6 decimal places

    Raises:
        ValueError: If output_tokens is negative
    """
    if output_tokens < 0:
        raise ValueError("output_tokens must be >= 0")

    pricing = catalog.lookup(model_id).pricing
    input_tokens = estimate_input_tokens(messages)

    input_cost = (Decimal(input_tokens) / Decimal("1000")) * pricing.input_per_1k
    output_cost = (Decimal(output_tokens) / Decimal("1000")) * pricing.output_per_1k
    total_cost = (input_cost + output_cost).quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)

    return CostEstimate(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_cost=total_cost,
        model=model_id,
    )


def estimate_request(
    model_id: str,
    messages: List[Any],
    catalog: PricingCatalog = PRICING_CATALOG,
) -> CostEstimate:
    """Estimate output length and cost in one step."""
    output_tokens = estimate_output_tokens(messages, model_id, catalog)
    return estimate_cost(model_id, messages, output_tokens, catalog)


def is_within_budget(estimate: CostEstimate, balance: Decimal) -> bool:
    return estimate.total_cost <= balance


def minimum_cost(model_id: str, catalog: PricingCatalog = PRICING_CATALOG) -> Decimal:
    """Price of 100 input tokens, a floor for cheap pre-checks."""
    pricing = catalog.lookup(model_id).pricing
    cost = (Decimal(100) / Decimal("1000")) * pricing.input_per_1k
    return cost.quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)
