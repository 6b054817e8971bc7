"""
SACP Gateway Router Factory.

`create_gateway_router()` exposes the session registry and checkout
orchestrator to agents as a FastAPI APIRouter.

Identity comes from `X-Session-Id` (minted by /auth/status after pairing
approval) or `Authorization: Bearer <wallet access token>`. Catalog and
checkout routes also accept guests.

Usage:
    registry = SessionRegistry(wallet)
    orchestrator = CheckoutOrchestrator(store, wallet, settings)
    app.include_router(create_gateway_router(registry, orchestrator))
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Header, Query, Response
from fastapi.responses import JSONResponse

from sacp_gateway.errors import GatewayError
from sacp_gateway.models import (
    CancelResult,
    CheckoutCreateRequest,
    CheckoutSession,
    CheckoutUpdateRequest,
    CompletionStatus,
    Order,
    PollResult,
    Product,
    RegisterRequest,
    RegistrationResult,
    SpendingLimits,
)
from sacp_gateway.orchestrator import CheckoutOrchestrator
from sacp_gateway.sessions import SessionRegistry, bearer_from_header

logger = logging.getLogger(__name__)


def _error_response(error: GatewayError) -> JSONResponse:
    if error.status_code >= 500:
        logger.warning("%s: %s", error.error, error.description)
    return JSONResponse(
        status_code=error.status_code,
        content=error.response.model_dump(mode="json", exclude_none=True),
    )


def create_gateway_router(
    registry: SessionRegistry,
    orchestrator: CheckoutOrchestrator,
    prefix: str = "",
) -> APIRouter:
    """
    Create a FastAPI APIRouter with the gateway's auth, catalog, checkout,
    payment-status, QR and order endpoints.
    """
    router = APIRouter(prefix=prefix, tags=["SACP Gateway"])

    async def _optional(x_session_id: Optional[str], authorization: Optional[str]):
        return await registry.optional(x_session_id, bearer_from_header(authorization))

    async def _required(x_session_id: Optional[str], authorization: Optional[str]):
        return await registry.require(x_session_id, bearer_from_header(authorization))

    # -- registration & sessions ---------------------------------------------

    @router.post("/auth/register", response_model=RegistrationResult)
    async def register(body: RegisterRequest):
        try:
            return await registry.start_registration(
                body.pairing_code, body.agent_name, body.agent_description
            )
        except GatewayError as e:
            return _error_response(e)

    @router.get("/auth/status/{request_id}", response_model=RegistrationResult)
    async def registration_status(request_id: str):
        try:
            return await registry.check_registration(request_id)
        except GatewayError as e:
            return _error_response(e)

    @router.get("/auth/session")
    async def describe_session(
        x_session_id: Optional[str] = Header(None, alias="X-Session-Id"),
        authorization: Optional[str] = Header(None),
    ):
        try:
            session = await _required(x_session_id, authorization)
            return {
                "session_id": session.id,
                "auth_type": session.kind,
                "agent_id": session.agent_id,
                "client_id": session.client_id,
                "expires_at": session.expires_at,
            }
        except GatewayError as e:
            return _error_response(e)

    @router.delete("/auth/session")
    async def revoke_session(
        x_session_id: Optional[str] = Header(None, alias="X-Session-Id"),
        authorization: Optional[str] = Header(None),
    ):
        try:
            session = await _required(x_session_id, authorization)
            await registry.revoke(session)
            orchestrator.forget_session(session.id)
            return {"status": "revoked", "session_id": session.id}
        except GatewayError as e:
            return _error_response(e)

    # -- catalog -------------------------------------------------------------

    @router.get("/products")
    async def browse_products(
        q: Optional[str] = None,
        category: Optional[str] = None,
        limit: int = Query(20, ge=1, le=100),
        x_session_id: Optional[str] = Header(None, alias="X-Session-Id"),
        authorization: Optional[str] = Header(None),
    ):
        try:
            auth = await _optional(x_session_id, authorization)
            products = await orchestrator.browse_products(auth, q, category, limit)
            return {"products": [p.model_dump(mode="json") for p in products]}
        except GatewayError as e:
            return _error_response(e)

    @router.get("/products/{product_id}", response_model=Product)
    async def get_product(
        product_id: str,
        x_session_id: Optional[str] = Header(None, alias="X-Session-Id"),
        authorization: Optional[str] = Header(None),
    ):
        try:
            auth = await _optional(x_session_id, authorization)
            return await orchestrator.get_product(auth, product_id)
        except GatewayError as e:
            return _error_response(e)

    # -- checkout ------------------------------------------------------------

    @router.post("/checkout", status_code=201, response_model=CheckoutSession)
    async def create_checkout(
        body: CheckoutCreateRequest,
        x_session_id: Optional[str] = Header(None, alias="X-Session-Id"),
        authorization: Optional[str] = Header(None),
    ):
        try:
            auth = await _optional(x_session_id, authorization)
            return await orchestrator.create_checkout(auth, body.items)
        except GatewayError as e:
            return _error_response(e)

    @router.get("/checkout/{session_id}", response_model=CheckoutSession)
    async def get_checkout(
        session_id: str,
        x_session_id: Optional[str] = Header(None, alias="X-Session-Id"),
        authorization: Optional[str] = Header(None),
    ):
        try:
            auth = await _optional(x_session_id, authorization)
            return await orchestrator.get_checkout(auth, session_id)
        except GatewayError as e:
            return _error_response(e)

    @router.patch("/checkout/{session_id}", response_model=CheckoutSession)
    async def update_checkout(
        session_id: str,
        body: CheckoutUpdateRequest,
        x_session_id: Optional[str] = Header(None, alias="X-Session-Id"),
        authorization: Optional[str] = Header(None),
    ):
        try:
            auth = await _optional(x_session_id, authorization)
            return await orchestrator.update_checkout(auth, session_id, body)
        except GatewayError as e:
            return _error_response(e)

    @router.delete("/checkout/{session_id}", response_model=CancelResult)
    async def cancel_checkout(
        session_id: str,
        x_session_id: Optional[str] = Header(None, alias="X-Session-Id"),
        authorization: Optional[str] = Header(None),
    ):
        try:
            auth = await _optional(x_session_id, authorization)
            return await orchestrator.cancel_checkout(auth, session_id)
        except GatewayError as e:
            return _error_response(e)

    @router.post("/checkout/{session_id}/complete")
    async def complete_checkout(
        session_id: str,
        x_session_id: Optional[str] = Header(None, alias="X-Session-Id"),
        authorization: Optional[str] = Header(None),
    ):
        try:
            auth = await _optional(x_session_id, authorization)
            result = await orchestrator.complete_checkout(auth, session_id)
        except GatewayError as e:
            return _error_response(e)
        status_code = 200 if result.status == CompletionStatus.COMPLETED else 202
        return JSONResponse(
            status_code=status_code,
            content=result.model_dump(mode="json", exclude_none=True),
        )

    @router.get(
        "/checkout/{session_id}/step-up/{step_up_id}",
        response_model=PollResult,
        response_model_exclude_none=True,
    )
    async def step_up_status(
        session_id: str,
        step_up_id: str,
        x_session_id: Optional[str] = Header(None, alias="X-Session-Id"),
        authorization: Optional[str] = Header(None),
    ):
        try:
            auth = await _required(x_session_id, authorization)
            result = await orchestrator.poll_step_up(auth, session_id, step_up_id)
            return result
        except GatewayError as e:
            return _error_response(e)

    @router.get(
        "/checkout/{session_id}/payment-status/{request_id}",
        response_model=PollResult,
        response_model_exclude_none=True,
    )
    async def payment_status(session_id: str, request_id: str):
        try:
            result = await orchestrator.poll_device_authorization(session_id, request_id)
            return result
        except GatewayError as e:
            return _error_response(e)

    @router.get("/qr/{request_id}")
    async def qr_code(request_id: str):
        try:
            image = await orchestrator.get_qr_image(request_id)
        except GatewayError as e:
            return _error_response(e)
        return Response(
            content=image,
            media_type="image/png",
            headers={"Cache-Control": "no-store"},
        )

    # -- orders & limits -----------------------------------------------------

    @router.get("/orders/{order_id}", response_model=Order)
    async def get_order(
        order_id: str,
        x_session_id: Optional[str] = Header(None, alias="X-Session-Id"),
        authorization: Optional[str] = Header(None),
    ):
        try:
            auth = await _required(x_session_id, authorization)
            return await orchestrator.get_order(auth, order_id)
        except GatewayError as e:
            return _error_response(e)

    @router.get("/limits", response_model=SpendingLimits)
    async def spending_limits(
        x_session_id: Optional[str] = Header(None, alias="X-Session-Id"),
        authorization: Optional[str] = Header(None),
    ):
        try:
            auth = await _required(x_session_id, authorization)
            return await orchestrator.get_spending_limits(auth)
        except GatewayError as e:
            return _error_response(e)

    return router
