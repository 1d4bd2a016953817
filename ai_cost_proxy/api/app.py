"""
HTTP surface for AI Cost Proxy.

Exposes the metered proxy plus the stats, models, usage and top-up routes.
Every route requires a valid session.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from ai_cost_proxy.auth.identity import Identity, IdentityProvider, StaticSessionIdentityProvider
from ai_cost_proxy.config.loader import ProxyConfig, load_config_from_env
from ai_cost_proxy.core.errors import ConfigFault, ProxyError
from ai_cost_proxy.core.pipeline import ProxyPipeline
from ai_cost_proxy.proxy.forwarder import ProviderCredentials, ProxyForwarder
from ai_cost_proxy.storage.repository import AccountLedger, initialize_schema

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]
SUPPORTED_PAYMENT_METHODS = ["stripe", "paypal", "alipay"]


def get_pipeline(request: Request) -> ProxyPipeline:
    return request.app.state.pipeline


async def current_identity(
    request: Request,
    pipeline: ProxyPipeline = Depends(get_pipeline),
) -> Identity:
    return await pipeline.authenticate(request.headers)


async def _proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
    return JSONResponse(exc.payload(), status_code=exc.status_code)


async def _config_fault_handler(request: Request, exc: ConfigFault) -> JSONResponse:
    logger.error("Configuration fault on %s: %s", request.url.path, exc)
    return JSONResponse({"error": "proxy misconfigured", "details": str(exc)}, status_code=500)


def create_app(
    config: Optional[ProxyConfig] = None,
    *,
    ledger: Optional[AccountLedger] = None,
    forwarder: Optional[ProxyForwarder] = None,
    identity_provider: Optional[IdentityProvider] = None,
) -> FastAPI:
    """Build the application.

    Credentials for every provider used by an enabled model are resolved
    here, so a missing key stops startup instead of failing requests.

    Raises:
        ConfigFault: If a required provider credential is missing
    """
    config = config or load_config_from_env()
    catalog = config.catalog

    if ledger is None:
        initialize_schema(config.database)
        ledger = AccountLedger(config.database)
    if forwarder is None:
        forwarder = ProxyForwarder(
            catalog,
            ProviderCredentials.from_env(catalog.providers_in_use()),
            extra_headers={p: c.extra_headers for p, c in config.providers.items()},
            timeout=config.upstream_timeout,
        )
    if identity_provider is None:
        identity_provider = StaticSessionIdentityProvider(config.sessions)

    pipeline = ProxyPipeline(
        identity_provider=identity_provider,
        ledger=ledger,
        forwarder=forwarder,
        catalog=catalog,
        fallback_model=config.fallback_model,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await forwarder.aclose()

    app = FastAPI(title="AI Cost Proxy", lifespan=lifespan)
    app.state.config = config
    app.state.pipeline = pipeline
    app.add_exception_handler(ProxyError, _proxy_error_handler)
    app.add_exception_handler(ConfigFault, _config_fault_handler)

    @app.api_route("/proxy/{path:path}", methods=PROXY_METHODS)
    async def proxy(request: Request, path: str):
        body = await request.body()
        outcome = await pipeline.run(request.headers, body, request.method)
        upstream = outcome.upstream
        return StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            headers=outcome.response_headers(),
            background=BackgroundTask(upstream.aclose),
        )

    @app.get("/stats")
    async def stats(identity: Identity = Depends(current_identity)):
        status = await pipeline.ledger.stats(identity.id)
        return {"user": identity.to_dict(), "stats": status.to_stats()}

    @app.get("/models")
    async def models(identity: Identity = Depends(current_identity)):
        return {"models": [entry.to_dict() for entry in catalog.list_enabled()]}

    @app.get("/usage")
    async def usage(
        limit: int = Query(50, ge=1, le=1000),
        identity: Identity = Depends(current_identity),
    ):
        records = await pipeline.ledger.usage_records(identity.id, limit=limit)
        return {"usage": [record.to_dict() for record in records]}

    @app.post("/topup")
    async def topup(identity: Identity = Depends(current_identity)):
        return {
            "message": "Top-up is not available yet",
            "user": identity.to_dict(),
            "supportedMethods": SUPPORTED_PAYMENT_METHODS,
        }

    return app
