"""
SACP Gateway Service — agent-facing payment gateway.

Wires the store and wallet clients, the session registry and the checkout
orchestrator into a FastAPI app. All gateway state is in-process.

Run with:
    uvicorn services.gateway.main:app --port 8080
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sacp_gateway import __version__
from sacp_gateway.config import GatewaySettings
from sacp_gateway.models import GatewayErrorResponse
from sacp_gateway.orchestrator import CheckoutOrchestrator
from sacp_gateway.router import create_gateway_router
from sacp_gateway.sessions import SessionRegistry
from sacp_gateway.store import StoreClient
from sacp_gateway.wallet import WalletClient

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[GatewaySettings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    settings = settings or GatewaySettings.from_env()
    http = http_client or httpx.AsyncClient(timeout=settings.http_timeout)

    wallet = WalletClient(
        settings.wsim_base_url,
        http_client=http,
        api_prefix=settings.api_prefix,
        timeout=settings.http_timeout,
    )
    store = StoreClient(
        settings.ssim_base_url,
        http_client=http,
        api_prefix=settings.api_prefix,
        timeout=settings.http_timeout,
    )
    registry = SessionRegistry(
        wallet,
        bearer_cache_ttl=settings.bearer_cache_ttl,
        registration_ttl=settings.pending_retention,
    )
    orchestrator = CheckoutOrchestrator(store, wallet, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "SACP gateway up: store=%s wallet=%s", settings.ssim_base_url, settings.wsim_base_url
        )
        yield
        if http_client is None:
            await http.aclose()

    app = FastAPI(
        title="SACP Gateway",
        description="Agent payment gateway: catalog, checkout and wallet authorization",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        return JSONResponse(
            status_code=400,
            content=GatewayErrorResponse(
                error="invalid_request",
                error_description=f"{loc}: {first.get('msg', 'invalid request')}" if loc else "Invalid request",
            ).model_dump(),
        )

    app.include_router(create_gateway_router(registry, orchestrator))

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "sacp-gateway", "version": __version__}

    app.state.settings = settings
    app.state.registry = registry
    app.state.orchestrator = orchestrator
    return app


_settings = GatewaySettings.from_env()
logging.basicConfig(
    level=_settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
app = create_app(_settings)
