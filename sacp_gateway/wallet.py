"""
Wallet Client — OAuth, spending limits, payment tokens and step-up approval.

A client is bound to one caller identity:
- client credentials (pre-registered agent): access tokens are fetched with
  the client-credentials grant and refreshed 60s before expiry; concurrent
  callers share one in-flight token request
- a fixed access token (bearer agent, or a freshly approved device code)

The unauthenticated OAuth endpoints the gateway itself uses (introspection,
device authorization, device-code exchange, pairing-code access requests)
live on the same client.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Optional

import httpx

from sacp_gateway.errors import (
    UnauthorizedError,
    UpstreamError,
    raise_for_upstream,
    upstream_body,
)
from sacp_gateway.models import (
    AccessRequest,
    AccessRequestStatus,
    AccessToken,
    DeviceAuthorizationGrant,
    DeviceCodeOutcome,
    DeviceCodeResult,
    PaymentTokenRequest,
    PaymentTokenResponse,
    SpendingLimits,
    StepUpRequest,
    StepUpStatus,
    TokenIntrospection,
)

logger = logging.getLogger(__name__)

SERVICE = "wallet"
TOKEN_REFRESH_MARGIN = 60
DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"

_DEVICE_CODE_ERRORS = {
    "authorization_pending": DeviceCodeOutcome.PENDING,
    "slow_down": DeviceCodeOutcome.SLOW_DOWN,
    "access_denied": DeviceCodeOutcome.DENIED,
    "expired_token": DeviceCodeOutcome.EXPIRED,
}


class WalletClient:
    def __init__(
        self,
        base_url: str,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        *,
        access_token: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        api_prefix: str = "/api/agent/v1",
        timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self._client_secret = client_secret
        self.api_prefix = api_prefix
        self.timeout = timeout
        self._clock = clock
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

        self._access_token = access_token
        # A fixed token never expires from this client's point of view.
        self._token_expires_at: Optional[float] = None
        self._refresh: Optional[asyncio.Future[str]] = None

    def with_access_token(self, access_token: str) -> "WalletClient":
        return WalletClient(
            self.base_url,
            access_token=access_token,
            http_client=self._http,
            api_prefix=self.api_prefix,
            timeout=self.timeout,
            clock=self._clock,
        )

    def with_credentials(self, client_id: str, client_secret: str) -> "WalletClient":
        return WalletClient(
            self.base_url,
            client_id,
            client_secret,
            http_client=self._http,
            api_prefix=self.api_prefix,
            timeout=self.timeout,
            clock=self._clock,
        )

    def _url(self, path: str) -> str:
        return f"{self.base_url}{self.api_prefix}{path}"

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._http.request(method, url, timeout=self.timeout, **kwargs)
        except httpx.HTTPError as exc:
            raise UpstreamError(502, {"message": str(exc)}, SERVICE) from exc

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def _token_is_fresh(self) -> bool:
        if not self._access_token:
            return False
        if self._token_expires_at is None:
            return True
        return self._clock() < self._token_expires_at - TOKEN_REFRESH_MARGIN

    async def get_access_token(self) -> str:
        if self._token_is_fresh():
            return self._access_token  # type: ignore[return-value]
        if not (self.client_id and self._client_secret):
            raise UnauthorizedError("No wallet credentials available for this session")
        if self._refresh is None:
            task = asyncio.ensure_future(self._fetch_token())
            task.add_done_callback(self._clear_refresh)
            self._refresh = task
        # Shield so one cancelled caller does not abort the shared refresh.
        return await asyncio.shield(self._refresh)

    def _clear_refresh(self, task: "asyncio.Future[str]") -> None:
        if self._refresh is task:
            self._refresh = None

    async def _fetch_token(self) -> str:
        resp = await self._send(
            "POST",
            self._url("/oauth/token"),
            data={
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self._client_secret,
            },
        )
        raise_for_upstream(resp, SERVICE)
        token = AccessToken.model_validate(resp.json())
        self._access_token = token.access_token
        self._token_expires_at = self._clock() + token.expires_in
        logger.debug("Wallet access token refreshed for client %s", self.client_id)
        return token.access_token

    async def _authed(self, method: str, path: str, **kwargs: Any) -> Any:
        token = await self.get_access_token()
        resp = await self._send(
            method,
            self._url(path),
            headers={"Authorization": f"Bearer {token}"},
            **kwargs,
        )
        raise_for_upstream(resp, SERVICE)
        return resp.json()

    # ------------------------------------------------------------------
    # Limits, payment tokens & step-up
    # ------------------------------------------------------------------

    async def get_spending_limits(self) -> SpendingLimits:
        return SpendingLimits.model_validate(await self._authed("GET", "/limits"))

    async def request_payment_token(self, request: PaymentTokenRequest) -> PaymentTokenResponse:
        data = await self._authed("POST", "/payments/token", json=request.model_dump())
        return PaymentTokenResponse.model_validate(data)

    async def get_step_up_status(self, step_up_id: str) -> StepUpRequest:
        data = await self._authed("GET", f"/payments/token/{step_up_id}/status")
        return StepUpRequest.model_validate({"step_up_id": step_up_id, **data})

    async def wait_for_step_up_approval(
        self,
        step_up_id: str,
        timeout: float = 900.0,
        interval: float = 5.0,
    ) -> StepUpRequest:
        """
        Poll until the step-up leaves `pending` or `timeout` seconds pass.

        Timing out is an expected outcome: a synthetic `expired` request is
        returned instead of raising.
        """
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            status = await self.get_step_up_status(step_up_id)
            if status.status != StepUpStatus.PENDING:
                return status
            await asyncio.sleep(interval)
        return StepUpRequest(step_up_id=step_up_id, status=StepUpStatus.EXPIRED)

    # ------------------------------------------------------------------
    # Public OAuth endpoints (no client authentication)
    # ------------------------------------------------------------------

    async def introspect_token(self, token: str) -> TokenIntrospection:
        resp = await self._send("POST", self._url("/oauth/introspect"), data={"token": token})
        raise_for_upstream(resp, SERVICE)
        return TokenIntrospection.model_validate(resp.json())

    async def request_device_authorization(
        self,
        *,
        agent_name: str,
        agent_description: str,
        amount: int,
        currency: str,
        buyer_email: Optional[str] = None,
        scope: str = "browse cart purchase",
    ) -> DeviceAuthorizationGrant:
        payload: dict[str, Any] = {
            "agent_name": agent_name,
            "agent_description": agent_description,
            "scope": scope,
            "response_type": "token",
            "spending_limits": {"per_transaction": amount, "currency": currency},
        }
        if buyer_email:
            payload["buyer_email"] = buyer_email
        resp = await self._send("POST", self._url("/oauth/device_authorization"), json=payload)
        raise_for_upstream(resp, SERVICE)
        return DeviceAuthorizationGrant.model_validate(resp.json())

    async def exchange_device_code(self, device_code: str, client_id: str) -> DeviceCodeResult:
        """One RFC 8628 token request. Expected polling states are results, not errors."""
        resp = await self._send(
            "POST",
            self._url("/oauth/token"),
            data={
                "grant_type": DEVICE_CODE_GRANT,
                "device_code": device_code,
                "client_id": client_id,
            },
        )
        body = upstream_body(resp)
        if not isinstance(body, dict):
            raise_for_upstream(resp, SERVICE)
            raise UpstreamError(resp.status_code, body, SERVICE)

        if resp.is_success and body.get("access_token"):
            return DeviceCodeResult(
                outcome=DeviceCodeOutcome.APPROVED,
                access_token=body["access_token"],
                expires_in=body.get("expires_in"),
            )
        error = body.get("error")
        if error is None and not resp.is_success:
            raise UpstreamError(resp.status_code, body, SERVICE)
        return DeviceCodeResult(
            outcome=_DEVICE_CODE_ERRORS.get(error, DeviceCodeOutcome.ERROR),
            error=error,
            error_description=body.get("error_description"),
        )

    async def create_access_request(
        self,
        *,
        pairing_code: str,
        agent_name: str,
        agent_description: str,
        permissions: list[str],
        spending_limits: dict[str, Any],
    ) -> AccessRequest:
        resp = await self._send(
            "POST",
            self._url("/access-request"),
            json={
                "pairing_code": pairing_code,
                "agent_name": agent_name,
                "agent_description": agent_description,
                "permissions": permissions,
                "spending_limits": spending_limits,
            },
        )
        raise_for_upstream(resp, SERVICE)
        return AccessRequest.model_validate(resp.json())

    async def get_access_request_status(
        self,
        request_id: str,
        poll_url: Optional[str] = None,
    ) -> AccessRequestStatus:
        if not poll_url:
            url = self._url(f"/access-request/{request_id}")
        elif poll_url.startswith("/"):
            url = f"{self.base_url}{poll_url}"
        else:
            url = poll_url
        resp = await self._send("GET", url)
        raise_for_upstream(resp, SERVICE)
        return AccessRequestStatus.model_validate(resp.json())
