"""
Gateway error taxonomy.

Every error carries an HTTP status, a machine-readable kind and a
human-readable description. The router turns a raised `GatewayError`
into a JSON body shaped like `GatewayErrorResponse`.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx

from sacp_gateway.models import GatewayErrorResponse


class GatewayError(Exception):
    """Raise anywhere in the gateway to return a structured error to the agent."""

    def __init__(
        self,
        status_code: int,
        error: str,
        description: str,
        details: Optional[dict[str, Any]] = None,
    ):
        self.status_code = status_code
        self.error = error
        self.description = description
        self.details = details or {}
        self.response = GatewayErrorResponse(
            error=error, error_description=description, **self.details
        )
        super().__init__(description)


class UpstreamError(GatewayError):
    """Store or Wallet returned a non-2xx response (or could not be reached)."""

    def __init__(self, status: int, body: Any, service: str = "upstream"):
        self.status = status
        self.body = body
        self.service = service
        super().__init__(
            status_code=status if 400 <= status < 600 else 502,
            error="upstream_error",
            description=_describe_upstream(status, body, service),
            details={"service": service, "upstream_status": status, "upstream_body": body},
        )


def _describe_upstream(status: int, body: Any, service: str) -> str:
    if isinstance(body, dict):
        message = body.get("error_description") or body.get("message") or body.get("error")
        if message:
            return f"{service} returned {status}: {message}"
    return f"{service} returned {status}"


class InvalidStateError(GatewayError):
    def __init__(self, current_status: str, next_step: str, description: Optional[str] = None):
        self.current_status = current_status
        self.next_step = next_step
        super().__init__(
            status_code=400,
            error="invalid_state",
            description=description
            or f"Checkout is not ready for payment. Current status: {current_status}",
            details={"current_status": current_status, "next_step": next_step},
        )


class UnauthorizedError(GatewayError):
    def __init__(self, description: str = "Authentication required"):
        super().__init__(status_code=401, error="unauthorized", description=description)


class NotFoundError(GatewayError):
    def __init__(self, description: str = "Not found"):
        super().__init__(status_code=404, error="not_found", description=description)


class ExpiredError(GatewayError):
    def __init__(self, description: str = "Authorization request has expired"):
        super().__init__(status_code=410, error="expired", description=description)


class InvalidRequestError(GatewayError):
    """Local validation failure, raised before any upstream call."""

    def __init__(self, description: str, param: Optional[str] = None):
        super().__init__(
            status_code=400,
            error="invalid_request",
            description=description,
            details={"param": param} if param else None,
        )


class PaymentError(GatewayError):
    """Wallet answered a payment-token request with neither a token nor a step-up."""

    def __init__(self, description: str = "Wallet did not issue a payment token"):
        super().__init__(status_code=502, error="payment_error", description=description)


class AuthorizationError(GatewayError):
    """Wallet answered a device-code exchange with an unrecognised error."""

    def __init__(self, description: str = "Unknown authorization error"):
        super().__init__(status_code=502, error="authorization_error", description=description)


def upstream_body(response: httpx.Response) -> Any:
    """Decode an upstream body as JSON, falling back to text."""
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def raise_for_upstream(response: httpx.Response, service: str) -> None:
    if response.is_success:
        return
    raise UpstreamError(response.status_code, upstream_body(response), service)
