"""
Pricing catalog for proxied models.

Maps model identifiers to provider, upstream endpoint and per-1K-token prices.
The catalog is built once at startup and is read-only afterwards.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Iterable, List, Mapping, Optional


class Provider(Enum):
    """Upstream providers the proxy can route to."""
    OPENROUTER = "openrouter"
    DMXAPI = "dmxapi"
    CUSTOM = "custom"


class ModelCategory(Enum):
    """Kind of work a model performs."""
    CHAT = "chat"
    EMBEDDING = "embedding"
    IMAGE = "image"
    AUDIO = "audio"


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    input_per_1k: Decimal  # USD per 1K input tokens
    output_per_1k: Decimal  # USD per 1K output tokens
    unit: str = "per 1k tokens"


@dataclass(frozen=True)
class ModelLimits:
    """Optional provider limits advertised for a model."""
    max_tokens: Optional[int] = None
    rate_limit_per_minute: Optional[int] = None


@dataclass(frozen=True)
class ModelEntry:
    """A single catalog entry."""
    id: str
    name: str
    provider: Provider
    category: ModelCategory
    pricing: ModelPricing
    endpoint: str
    enabled: bool
    limits: Optional[ModelLimits] = None

    def to_dict(self) -> dict:
        """Public representation used by the /models listing."""
        limits = None
        if self.limits is not None:
            limits = {
                "maxTokens": self.limits.max_tokens,
                "rateLimit": self.limits.rate_limit_per_minute,
            }
        return {
            "id": self.id,
            "name": self.name,
            "provider": self.provider.value,
            "category": self.category.value,
            "pricing": {
                "input": float(self.pricing.input_per_1k),
                "output": float(self.pricing.output_per_1k),
                "unit": self.pricing.unit,
            },
            "limits": limits,
        }


# Used for pricing when a model is unknown or disabled. Never routable.
DEFAULT_MODEL_ENTRY = ModelEntry(
    id="unknown",
    name="Unknown Model",
    provider=Provider.CUSTOM,
    category=ModelCategory.CHAT,
    pricing=ModelPricing(
        input_per_1k=Decimal("0.001"),
        output_per_1k=Decimal("0.002"),
    ),
    endpoint="",
    enabled=False,
)


class PricingCatalog:
    """Immutable lookup from model identifier to ModelEntry.

    Declaration order is preserved so listings are stable across calls.
    """

    def __init__(self, entries: Iterable[ModelEntry], default: ModelEntry = DEFAULT_MODEL_ENTRY):
        ordered = {}
        for entry in entries:
            if entry.id in ordered:
                raise ValueError(f"Duplicate model id in catalog: {entry.id}")
            ordered[entry.id] = entry
        self._entries: Mapping[str, ModelEntry] = MappingProxyType(ordered)
        self.default = default

    def __contains__(self, model_id: str) -> bool:
        return model_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, model_id: str) -> ModelEntry:
        """Get the entry for a model.

        Args:
            model_id: Model identifier as sent by the caller

        Returns:
            The configured entry when present and enabled, otherwise the
            conservative default entry
        """
        entry = self._entries.get(model_id)
        if entry is None or not entry.enabled:
            return self.default
        return entry

    def list_enabled(self) -> List[ModelEntry]:
        """All enabled entries in declared order, recomputed on each call."""
        return [entry for entry in self._entries.values() if entry.enabled]

    def by_provider(self, provider: Provider) -> List[ModelEntry]:
        return [entry for entry in self._entries.values() if entry.provider == provider]

    def by_category(self, category: ModelCategory) -> List[ModelEntry]:
        return [entry for entry in self._entries.values() if entry.category == category]

    def providers_in_use(self) -> List[Provider]:
        """Providers referenced by at least one enabled entry."""
        seen: List[Provider] = []
        for entry in self.list_enabled():
            if entry.provider not in seen:
                seen.append(entry.provider)
        return seen


BUILTIN_MODELS = (
    ModelEntry(
        id="google/gemini-2.5-flash",
        name="Gemini 2.5 Flash",
        provider=Provider.OPENROUTER,
        category=ModelCategory.CHAT,
        pricing=ModelPricing(
            input_per_1k=Decimal("0.000001"),
            output_per_1k=Decimal("0.000002"),
        ),
        endpoint="https://openrouter.ai/api/v1/chat/completions",
        enabled=True,
        limits=ModelLimits(max_tokens=32000, rate_limit_per_minute=60),
    ),
    ModelEntry(
        id="text-embedding-ada-002",
        name="Text Embedding Ada 002",
        provider=Provider.DMXAPI,
        category=ModelCategory.EMBEDDING,
        pricing=ModelPricing(
            input_per_1k=Decimal("0.0001"),
            output_per_1k=Decimal("0"),
        ),
        endpoint="https://www.dmxapi.com/v1/embeddings",
        enabled=True,
        limits=ModelLimits(max_tokens=8192, rate_limit_per_minute=100),
    ),
    ModelEntry(
        id="gpt-4o-mini",
        name="GPT-4o Mini",
        provider=Provider.OPENROUTER,
        category=ModelCategory.CHAT,
        pricing=ModelPricing(
            input_per_1k=Decimal("0.00015"),
            output_per_1k=Decimal("0.0006"),
        ),
        endpoint="https://openrouter.ai/api/v1/chat/completions",
        enabled=True,
        limits=ModelLimits(max_tokens=16384, rate_limit_per_minute=30),
    ),
)

# Fixed catalog used when no configuration file supplies models
PRICING_CATALOG = PricingCatalog(BUILTIN_MODELS)
