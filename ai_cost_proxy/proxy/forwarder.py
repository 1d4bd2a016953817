"""
Upstream request forwarding.

Issues the caller's request to the provider that serves the model and hands
the response back as a raw byte stream, so streamed completions reach the
caller chunk by chunk without being decoded or re-encoded.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Iterable, Mapping, Optional

import httpx

from ai_cost_proxy.core.errors import ConfigFault, UpstreamFailure
from ai_cost_proxy.core.pricing import ModelEntry, PricingCatalog, Provider

logger = logging.getLogger(__name__)

# Response headers relayed verbatim when upstream sends them
PASSTHROUGH_HEADERS = (
    "content-type",
    "content-encoding",
    "transfer-encoding",
    "cache-control",
    "content-length",
)


def credential_env_var(provider: Provider) -> str:
    """Environment variable holding a provider's API key."""
    return f"{provider.value.upper()}_API_KEY"


class ProviderCredentials:
    """API keys keyed by provider."""

    def __init__(self, keys: Mapping[Provider, str]):
        self._keys = dict(keys)

    @classmethod
    def from_env(
        cls,
        providers: Iterable[Provider],
        environ: Optional[Mapping[str, str]] = None,
    ) -> "ProviderCredentials":
        """Resolve a key for every provider, failing on the first missing one.

        Raises:
            ConfigFault: If a provider's key is absent or empty
        """
        environ = os.environ if environ is None else environ
        keys = {}
        for provider in providers:
            value = environ.get(credential_env_var(provider))
            if not value:
                raise ConfigFault(
                    f"Missing credential {credential_env_var(provider)} for provider '{provider.value}'"
                )
            keys[provider] = value
        return cls(keys)

    def for_provider(self, provider: Provider) -> str:
        try:
            return self._keys[provider]
        except KeyError:
            raise ConfigFault(f"No credential configured for provider '{provider.value}'")


@dataclass
class UpstreamResponse:
    """Provider response whose body has not been read yet."""
    status_code: int
    reason_phrase: str
    headers: Dict[str, str]
    _response: httpx.Response = field(repr=False)

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def is_closed(self) -> bool:
        return self._response.is_closed

    async def aiter_raw(self) -> AsyncIterator[bytes]:
        """Body bytes exactly as received, in upstream chunk order.

        The upstream response is closed when iteration ends, fails, or is
        abandoned.
        """
        try:
            async for chunk in self._response.aiter_raw():
                yield chunk
        finally:
            await self._response.aclose()

    async def aclose(self) -> None:
        await self._response.aclose()


class ProxyForwarder:
    """Sends proxied requests to provider endpoints.

    Forwarding failures surface once and are never retried, since the
    caller has already been charged.
    """

    def __init__(
        self,
        catalog: PricingCatalog,
        credentials: ProviderCredentials,
        extra_headers: Optional[Mapping[Provider, Mapping[str, str]]] = None,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.catalog = catalog
        self.credentials = credentials
        self.extra_headers = {k: dict(v) for k, v in (extra_headers or {}).items()}
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    def resolve(self, model_id: str) -> ModelEntry:
        """The routable catalog entry for a model.

        Raises:
            ConfigFault: If the model is unknown, disabled, has no endpoint,
                or its provider has no credential
        """
        entry = self.catalog.lookup(model_id)
        if not entry.enabled or not entry.endpoint:
            raise ConfigFault(f"Model '{model_id}' has no enabled upstream endpoint")
        self.credentials.for_provider(entry.provider)
        return entry

    def build_headers(self, entry: ModelEntry) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.credentials.for_provider(entry.provider)}",
        }
        headers.update(self.extra_headers.get(entry.provider, {}))
        return headers

    async def forward(self, model_id: str, body: bytes, method: str) -> UpstreamResponse:
        """Issue the request upstream and return the unread response.

        Args:
            model_id: Model identifier used to pick provider and endpoint
            body: Raw request body, forwarded unmodified
            method: The caller's HTTP method

        Returns:
            UpstreamResponse streaming the provider's body

        Raises:
            ConfigFault: If the model cannot be routed
            UpstreamFailure: On network errors or timeouts
        """
        entry = self.resolve(model_id)
        request = self._client.build_request(
            method, entry.endpoint, content=body, headers=self.build_headers(entry)
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            logger.error("Upstream %s request to %s failed: %s", method, entry.endpoint, exc)
            raise UpstreamFailure(str(exc) or exc.__class__.__name__) from exc

        headers = {
            name: response.headers[name]
            for name in PASSTHROUGH_HEADERS
            if name in response.headers
        }
        if "transfer-encoding" in headers:
            headers.pop("content-length", None)

        return UpstreamResponse(
            status_code=response.status_code,
            reason_phrase=response.reason_phrase,
            headers=headers,
            _response=response,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
