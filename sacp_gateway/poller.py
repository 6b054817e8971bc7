"""
Device-Authorization Poller (RFC 8628, client side).

`exchange` performs one device-code token request and reports a
`DeviceCodeOutcome`; `next_interval` applies `slow_down` backoff; `settle`
spends an approved access token exactly once: one payment-token request,
then one Store completion.
"""

from __future__ import annotations

import logging

from sacp_gateway.errors import InvalidStateError, PaymentError
from sacp_gateway.models import (
    DeviceCodeResult,
    Order,
    PaymentTokenRequest,
    PendingDeviceAuthorization,
)
from sacp_gateway.store import StoreClient
from sacp_gateway.wallet import WalletClient

logger = logging.getLogger(__name__)


class DeviceAuthorizationPoller:
    def __init__(
        self,
        wallet: WalletClient,
        store: StoreClient,
        *,
        client_id: str,
        merchant_id: str,
        max_interval: int = 30,
        slow_down_step: int = 5,
    ):
        self.wallet = wallet
        self.store = store
        self.client_id = client_id
        self.merchant_id = merchant_id
        self.max_interval = max_interval
        self.slow_down_step = slow_down_step

    def next_interval(self, current: int) -> int:
        """Backoff after `slow_down`: grows by one step, never past the cap, never shrinks."""
        return max(current, min(current + self.slow_down_step, self.max_interval))

    async def exchange(self, record: PendingDeviceAuthorization) -> DeviceCodeResult:
        result = await self.wallet.exchange_device_code(record.device_code, self.client_id)
        logger.debug("Device code poll for %s: %s", record.request_id, result.outcome.value)
        return result

    async def settle(self, record: PendingDeviceAuthorization, access_token: str) -> Order:
        store = self.store.with_token(access_token)
        checkout = await store.get_checkout(record.checkout_session_id)
        if checkout.cart.total != record.amount or checkout.cart.currency != record.currency:
            logger.warning(
                "Checkout %s total is %s %s, authorization %s covered %s %s",
                record.checkout_session_id,
                checkout.cart.total,
                checkout.cart.currency,
                record.request_id,
                record.amount,
                record.currency,
            )
            raise InvalidStateError(
                checkout.status.value,
                "Complete the checkout again to authorize the current total",
                description="Checkout total changed after the payment was authorized",
            )

        wallet = self.wallet.with_access_token(access_token)
        payment = await wallet.request_payment_token(
            PaymentTokenRequest(
                amount=record.amount,
                currency=record.currency,
                merchant_id=self.merchant_id,
                session_id=record.checkout_session_id,
            )
        )
        if payment.step_up_required:
            raise PaymentError("Wallet requested step-up after device authorization")
        if not payment.payment_token:
            raise PaymentError("Failed to get payment token after authorization")

        order = await store.complete_checkout(
            record.checkout_session_id, payment.payment_token
        )
        logger.info(
            "Device authorization %s settled checkout %s as order %s",
            record.request_id,
            record.checkout_session_id,
            order.order_id,
        )
        return order
