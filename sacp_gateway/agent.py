"""
SACP Agent Tools — @function_tool wrappers for OpenAI Agents SDK.

These tools let an OpenAI Agent shop through the SACP gateway: browse the
store, build a checkout and drive payment authorization. Completion can
answer with a step-up or a device-authorization instruction; the agent
relays the instruction to the user and polls the returned endpoint.

Usage with OpenAI Agents SDK:
    from agents import Agent
    from sacp_gateway.agent import create_gateway_tools

    tools = create_gateway_tools(gateway_url="http://localhost:8080")
    agent = Agent(name="shopper", tools=tools, instructions="...")
"""

from __future__ import annotations

from typing import Any, Optional

import httpx
from agents import function_tool
from pydantic import BaseModel


class ToolCartItem(BaseModel):
    product_id: str
    quantity: int = 1


def create_gateway_tools(
    gateway_url: str,
    session_id: Optional[str] = None,
    bearer_token: Optional[str] = None,
    timeout: float = 30.0,
) -> list:
    """
    Create @function_tool-decorated functions bound to one gateway and,
    optionally, one caller identity. With neither `session_id` nor
    `bearer_token` the agent shops as a guest.
    """
    base_url = gateway_url.rstrip("/")
    headers = {"Content-Type": "application/json"}
    if session_id:
        headers["X-Session-Id"] = session_id
    if bearer_token:
        headers["Authorization"] = f"Bearer {bearer_token}"

    async def _call(method: str, path: str, **kwargs: Any) -> dict:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.request(method, f"{base_url}{path}", headers=headers, **kwargs)
        if resp.status_code >= 400:
            raise RuntimeError(f"Gateway returned {resp.status_code}: {resp.text}")
        return resp.json()

    @function_tool
    async def browse_products(query: str = "", category: str = "", limit: int = 10) -> dict:
        """
        Browse the store's product catalog.

        Args:
            query: Free-text search (e.g. "coffee beans")
            category: Optional category filter
            limit: Maximum number of products to return
        """
        params: dict[str, Any] = {"limit": limit}
        if query:
            params["q"] = query
        if category:
            params["category"] = category
        return await _call("GET", "/products", params=params)

    @function_tool
    async def get_product(product_id: str) -> dict:
        """Get details for one product."""
        return await _call("GET", f"/products/{product_id}")

    @function_tool
    async def create_checkout(items: list[ToolCartItem]) -> dict:
        """
        Create a checkout with the given items.

        Args:
            items: Products and quantities to buy

        Returns:
            The checkout, including its session_id, status and cart totals in cents.
        """
        return await _call(
            "POST", "/checkout", json={"items": [i.model_dump() for i in items]}
        )

    @function_tool
    async def get_checkout(checkout_id: str) -> dict:
        """Get the current status and cart of a checkout."""
        return await _call("GET", f"/checkout/{checkout_id}")

    @function_tool
    async def update_checkout(
        checkout_id: str,
        buyer_name: str = "",
        buyer_email: str = "",
        buyer_phone: str = "",
        fulfillment_type: str = "shipping",
        street: str = "",
        city: str = "",
        state: str = "",
        postal_code: str = "",
        country: str = "CA",
    ) -> dict:
        """
        Add buyer and fulfillment details to a checkout. A checkout with both
        becomes ready_for_payment.

        Args:
            checkout_id: The checkout session ID
            buyer_name: Buyer's full name
            buyer_email: Buyer's email (lets the wallet notify the buyer's phone)
            buyer_phone: Buyer's phone number
            fulfillment_type: "shipping" or "pickup"
            street: Shipping street address
            city: Shipping city
            state: Province or state
            postal_code: Postal code
            country: Country code (default CA)
        """
        payload: dict[str, Any] = {}
        buyer = {k: v for k, v in {"name": buyer_name, "email": buyer_email, "phone": buyer_phone}.items() if v}
        if buyer:
            payload["buyer"] = buyer
        if street and city and postal_code:
            payload["fulfillment"] = {
                "type": fulfillment_type,
                "address": {
                    "street": street,
                    "city": city,
                    "state": state,
                    "postal_code": postal_code,
                    "country": country,
                },
            }
        elif fulfillment_type == "pickup":
            payload["fulfillment"] = {"type": "pickup"}
        return await _call("PATCH", f"/checkout/{checkout_id}", json=payload)

    @function_tool
    async def complete_checkout(checkout_id: str) -> dict:
        """
        Pay for a checkout that is ready_for_payment.

        Returns one of:
            status "completed" with order_id;
            status "step_up_required": the user must approve in the wallet
            app, then poll check_step_up_status;
            status "authorization_required": show the user the message,
            user_code and qr_code_url, then poll check_payment_status.
        """
        return await _call("POST", f"/checkout/{checkout_id}/complete")

    @function_tool
    async def check_payment_status(checkout_id: str, request_id: str) -> dict:
        """Poll a guest payment authorization. Returns pending, completed, rejected or expired."""
        return await _call("GET", f"/checkout/{checkout_id}/payment-status/{request_id}")

    @function_tool
    async def check_step_up_status(checkout_id: str, step_up_id: str) -> dict:
        """Poll a step-up approval. Returns pending, completed, rejected or expired."""
        return await _call("GET", f"/checkout/{checkout_id}/step-up/{step_up_id}")

    @function_tool
    async def cancel_checkout(checkout_id: str) -> dict:
        """Cancel a checkout and discard any pending payment authorization."""
        return await _call("DELETE", f"/checkout/{checkout_id}")

    @function_tool
    async def get_order(order_id: str) -> dict:
        """Get an order's status. Requires a registered session or bearer token."""
        return await _call("GET", f"/orders/{order_id}")

    @function_tool
    async def check_spending_limits() -> dict:
        """Get the remaining per-transaction, daily and monthly spending limits (cents)."""
        return await _call("GET", "/limits")

    return [
        browse_products,
        get_product,
        create_checkout,
        get_checkout,
        update_checkout,
        complete_checkout,
        check_payment_status,
        check_step_up_status,
        cancel_checkout,
        get_order,
        check_spending_limits,
    ]
