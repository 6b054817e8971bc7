"""
Store Client — typed wrapper around the merchant's agent checkout API.

Calls carry `Authorization: Bearer <token>` only when a token is set; guest
carts are created and mutated without one. Non-2xx responses surface as
`UpstreamError` and nothing is retried here, since checkout mutations are
not idempotent upstream.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from sacp_gateway.errors import NotFoundError, UpstreamError, raise_for_upstream
from sacp_gateway.models import (
    Buyer,
    CartItem,
    CheckoutSession,
    Fulfillment,
    Order,
    Product,
)

logger = logging.getLogger(__name__)

SERVICE = "store"


class StoreClient:
    def __init__(
        self,
        base_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        token: Optional[str] = None,
        api_prefix: str = "/api/agent/v1",
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_prefix = api_prefix
        self.timeout = timeout
        self.token = token
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    def with_token(self, token: Optional[str]) -> "StoreClient":
        """Same upstream and connection pool, different caller identity."""
        return StoreClient(
            self.base_url,
            http_client=self._http,
            token=token,
            api_prefix=self.api_prefix,
            timeout=self.timeout,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
        not_found: Optional[str] = None,
    ) -> Any:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            resp = await self._http.request(
                method,
                f"{self.base_url}{self.api_prefix}{path}",
                json=json,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.HTTPError as exc:
            raise UpstreamError(502, {"message": str(exc)}, SERVICE) from exc
        if resp.status_code == 404 and not_found:
            raise NotFoundError(not_found)
        raise_for_upstream(resp, SERVICE)
        if not resp.content:
            return None
        return resp.json()

    # -- catalog --------------------------------------------------------------

    async def browse_products(
        self,
        query: Optional[str] = None,
        category: Optional[str] = None,
        limit: int = 20,
    ) -> list[Product]:
        params: dict[str, Any] = {"limit": limit}
        if query:
            params["q"] = query
        if category:
            params["category"] = category
        data = await self._request("GET", "/products", params=params)
        return [Product.model_validate(p) for p in (data or {}).get("products", [])]

    async def get_product(self, product_id: str) -> Product:
        data = await self._request(
            "GET", f"/products/{product_id}", not_found=f"Product {product_id} not found"
        )
        return Product.model_validate(data)

    # -- checkout -------------------------------------------------------------

    async def create_checkout(self, items: list[CartItem]) -> CheckoutSession:
        data = await self._request(
            "POST",
            "/sessions",
            json={"items": [i.model_dump(exclude_none=True) for i in items]},
        )
        return CheckoutSession.model_validate(data)

    async def get_checkout(self, session_id: str) -> CheckoutSession:
        data = await self._request(
            "GET", f"/sessions/{session_id}", not_found=f"Checkout {session_id} not found"
        )
        return CheckoutSession.model_validate(data)

    async def update_checkout(
        self,
        session_id: str,
        buyer: Optional[Buyer] = None,
        fulfillment: Optional[Fulfillment] = None,
        items: Optional[list[CartItem]] = None,
    ) -> CheckoutSession:
        payload: dict[str, Any] = {}
        if buyer is not None:
            payload["buyer"] = buyer.model_dump(exclude_none=True)
        if fulfillment is not None:
            payload["fulfillment"] = fulfillment.model_dump(exclude_none=True)
        if items is not None:
            payload["items"] = [i.model_dump(exclude_none=True) for i in items]
        data = await self._request(
            "PATCH",
            f"/sessions/{session_id}",
            json=payload,
            not_found=f"Checkout {session_id} not found",
        )
        return CheckoutSession.model_validate(data)

    async def complete_checkout(
        self,
        session_id: str,
        payment_token: str,
        mandate_id: Optional[str] = None,
    ) -> Order:
        payload = {"payment_token": payment_token}
        if mandate_id:
            payload["mandate_id"] = mandate_id
        data = await self._request("POST", f"/sessions/{session_id}/complete", json=payload)
        logger.info("Store completed checkout %s", session_id)
        return Order.model_validate(data)

    async def cancel_checkout(self, session_id: str) -> None:
        await self._request(
            "DELETE", f"/sessions/{session_id}", not_found=f"Checkout {session_id} not found"
        )

    # -- orders ---------------------------------------------------------------

    async def get_order(self, order_id: str) -> Order:
        data = await self._request(
            "GET", f"/orders/{order_id}", not_found=f"Order {order_id} not found"
        )
        return Order.model_validate(data)
