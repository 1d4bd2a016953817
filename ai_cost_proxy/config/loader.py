"""
Configuration management and loading.

Handles proxy settings, provider options, the model catalog and the static
session table, plus environment variable overrides.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ai_cost_proxy.auth.identity import Identity
from ai_cost_proxy.core.pricing import (
    BUILTIN_MODELS,
    ModelCategory,
    ModelEntry,
    ModelLimits,
    ModelPricing,
    PricingCatalog,
    Provider,
)
from ai_cost_proxy.storage.db import DEFAULT_DB_PATH

CONFIG_ENV_VAR = "AI_COST_PROXY_CONFIG"
DB_ENV_VAR = "AI_COST_PROXY_DB"

DEFAULT_FALLBACK_MODEL = "google/gemini-2.5-flash"
DEFAULT_UPSTREAM_TIMEOUT = 60.0

DEFAULT_PROVIDER_HEADERS = {
    Provider.OPENROUTER: {"HTTP-Referer": "simple-test", "X-Title": "simple-agent"},
}


@dataclass(frozen=True)
class ProviderConfig:
    """Per-provider request options."""
    extra_headers: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ProxyConfig:
    """Complete proxy configuration."""
    catalog: PricingCatalog
    database: str = DEFAULT_DB_PATH
    fallback_model: str = DEFAULT_FALLBACK_MODEL
    upstream_timeout: float = DEFAULT_UPSTREAM_TIMEOUT
    providers: Dict[Provider, ProviderConfig] = field(default_factory=dict)
    sessions: Dict[str, Identity] = field(default_factory=dict)

    def __post_init__(self):
        """Validate cross-field constraints."""
        if self.upstream_timeout <= 0:
            raise ValueError("upstream_timeout must be > 0")
        if self.catalog.lookup(self.fallback_model) is self.catalog.default:
            raise ValueError(
                f"fallback_model '{self.fallback_model}' is not an enabled catalog entry"
            )

    def get_provider_config(self, provider: Provider) -> ProviderConfig:
        """Get options for a provider, empty if not specified."""
        return self.providers.get(provider, ProviderConfig())


def default_config(database: Optional[str] = None) -> ProxyConfig:
    """Configuration used when no file is supplied: the built-in catalog."""
    return ProxyConfig(
        catalog=PricingCatalog(BUILTIN_MODELS),
        database=database or DEFAULT_DB_PATH,
        providers={
            provider: ProviderConfig(extra_headers=dict(headers))
            for provider, headers in DEFAULT_PROVIDER_HEADERS.items()
        },
    )


def load_config_from_env(path: Optional[str] = None) -> ProxyConfig:
    """Load configuration from path, else the file named by AI_COST_PROXY_CONFIG,
    else the defaults.

    AI_COST_PROXY_DB, when set, overrides the database path.
    """
    path = path or os.environ.get(CONFIG_ENV_VAR)
    config = load_proxy_config(path) if path else default_config()
    database = os.environ.get(DB_ENV_VAR)
    if database:
        config = ProxyConfig(
            catalog=config.catalog,
            database=database,
            fallback_model=config.fallback_model,
            upstream_timeout=config.upstream_timeout,
            providers=config.providers,
            sessions=config.sessions,
        )
    return config


def load_proxy_config(path: str) -> ProxyConfig:
    """Load and validate proxy configuration from a YAML file.

    Strict validation ensures a typo in a price or endpoint can't silently
    fall back to defaults and mis-bill callers.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated ProxyConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Proxy config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = {'database', 'fallback_model', 'upstream_timeout', 'providers', 'models', 'sessions'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    database = raw_config.get('database', DEFAULT_DB_PATH)
    if not isinstance(database, str) or not database:
        raise ValueError("'database' must be a non-empty string")

    fallback_model = raw_config.get('fallback_model', DEFAULT_FALLBACK_MODEL)
    if not isinstance(fallback_model, str) or not fallback_model:
        raise ValueError("'fallback_model' must be a non-empty string")

    timeout = raw_config.get('upstream_timeout', DEFAULT_UPSTREAM_TIMEOUT)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ValueError("'upstream_timeout' must be > 0")

    # Parse models; the built-in catalog applies when the section is absent
    if 'models' in raw_config:
        models_data = raw_config['models']
        if not isinstance(models_data, list) or not models_data:
            raise ValueError("'models' must be a non-empty list")
        entries = [
            _parse_model_entry(item, f"models[{index}]")
            for index, item in enumerate(models_data)
        ]
    else:
        entries = list(BUILTIN_MODELS)
    catalog = PricingCatalog(entries)

    providers = _parse_providers(raw_config.get('providers'))
    sessions = _parse_sessions(raw_config.get('sessions', {}))

    return ProxyConfig(
        catalog=catalog,
        database=database,
        fallback_model=fallback_model,
        upstream_timeout=float(timeout),
        providers=providers,
        sessions=sessions,
    )


def _parse_providers(data: Any) -> Dict[Provider, ProviderConfig]:
    """Parse the providers section, defaulting to built-in headers when absent."""
    if data is None:
        return {
            provider: ProviderConfig(extra_headers=dict(headers))
            for provider, headers in DEFAULT_PROVIDER_HEADERS.items()
        }
    if not isinstance(data, dict):
        raise ValueError("'providers' must be a dictionary")

    providers = {}
    for name, options in data.items():
        provider = _parse_enum(Provider, name, f"providers.{name}")
        options = options or {}
        if not isinstance(options, dict):
            raise ValueError(f"Provider '{name}' must be a dictionary")
        unknown_keys = set(options.keys()) - {'extra_headers'}
        if unknown_keys:
            raise ValueError(f"Unknown keys in providers.{name}: {unknown_keys}")
        headers = options.get('extra_headers', {}) or {}
        if not isinstance(headers, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in headers.items()
        ):
            raise ValueError(f"'extra_headers' in providers.{name} must map strings to strings")
        providers[provider] = ProviderConfig(extra_headers=dict(headers))
    return providers


def _parse_model_entry(data: Any, path: str) -> ModelEntry:
    """Parse and validate a single catalog entry.

    Args:
        data: Model entry data
        path: Path for error messages

    Returns:
        Validated ModelEntry

    Raises:
        ValueError: If the entry is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"{path} must be a dictionary")

    allowed_keys = {'id', 'name', 'provider', 'category', 'pricing', 'endpoint', 'enabled', 'limits'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    for required in ('id', 'provider', 'category', 'pricing', 'endpoint'):
        if required not in data:
            raise ValueError(f"Missing required '{required}' in {path}")

    model_id = data['id']
    if not isinstance(model_id, str) or not model_id:
        raise ValueError(f"'id' in {path} must be a non-empty string")

    endpoint = data['endpoint']
    if not isinstance(endpoint, str):
        raise ValueError(f"'endpoint' in {path} must be a string")

    enabled = data.get('enabled', True)
    if not isinstance(enabled, bool):
        raise ValueError(f"'enabled' in {path} must be a boolean")
    if enabled and not endpoint.startswith(("http://", "https://")):
        raise ValueError(f"'endpoint' in {path} must be an http(s) URL for an enabled model")

    pricing_data = data['pricing']
    if not isinstance(pricing_data, dict):
        raise ValueError(f"'pricing' in {path} must be a dictionary")
    unknown_pricing = set(pricing_data.keys()) - {'input', 'output', 'unit'}
    if unknown_pricing:
        raise ValueError(f"Unknown pricing keys in {path}: {unknown_pricing}")
    pricing = ModelPricing(
        input_per_1k=_parse_price(pricing_data.get('input'), f"{path}.pricing.input"),
        output_per_1k=_parse_price(pricing_data.get('output'), f"{path}.pricing.output"),
        unit=str(pricing_data.get('unit', "per 1k tokens")),
    )

    limits = None
    if data.get('limits') is not None:
        limits = _parse_limits(data['limits'], f"{path}.limits")

    return ModelEntry(
        id=model_id,
        name=str(data.get('name', model_id)),
        provider=_parse_enum(Provider, data['provider'], f"{path}.provider"),
        category=_parse_enum(ModelCategory, data['category'], f"{path}.category"),
        pricing=pricing,
        endpoint=endpoint,
        enabled=enabled,
        limits=limits,
    )


def _parse_price(value: Any, path: str) -> Decimal:
    if value is None:
        raise ValueError(f"Missing required price '{path}'")
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{path}' must be a number")
    try:
        # str() keeps YAML floats like 0.000001 exact
        price = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")
    if price < 0:
        raise ValueError(f"'{path}' must be >= 0")
    return price


def _parse_limits(data: Any, path: str) -> ModelLimits:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    unknown_keys = set(data.keys()) - {'max_tokens', 'rate_limit'}
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
    for key in ('max_tokens', 'rate_limit'):
        value = data.get(key)
        if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value <= 0):
            raise ValueError(f"'{key}' in {path} must be a positive integer")
    return ModelLimits(
        max_tokens=data.get('max_tokens'),
        rate_limit_per_minute=data.get('rate_limit'),
    )


def _parse_sessions(data: Any) -> Dict[str, Identity]:
    if not isinstance(data, dict):
        raise ValueError("'sessions' must be a dictionary")

    sessions = {}
    for token, identity_data in data.items():
        path = f"sessions.{token}"
        if not isinstance(identity_data, dict):
            raise ValueError(f"{path} must be a dictionary")
        unknown_keys = set(identity_data.keys()) - {'id', 'email', 'display_name'}
        if unknown_keys:
            raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
        if not identity_data.get('id'):
            raise ValueError(f"Missing required 'id' in {path}")
        if not identity_data.get('email'):
            raise ValueError(f"Missing required 'email' in {path}")
        sessions[str(token)] = Identity(
            id=str(identity_data['id']),
            email=str(identity_data['email']),
            display_name=identity_data.get('display_name'),
        )
    return sessions


def _parse_enum(enum_cls, value: Any, path: str):
    if not isinstance(value, str):
        raise ValueError(f"'{path}' must be a string")
    try:
        return enum_cls(value.lower())
    except ValueError:
        valid = [member.value for member in enum_cls]
        raise ValueError(f"'{path}' must be one of: {valid}")
