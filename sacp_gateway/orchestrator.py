"""
Checkout Orchestrator.

Sequences a checkout from cart to order across three caller postures:

- PreRegisteredSession: the gateway holds client credentials and asks the
  wallet for a payment token directly; the wallet may demand a step-up.
- BearerSession: same, with the caller's own OAuth access token.
- GuestSession: no credentials; completion opens an RFC 8628 device
  authorization scoped to the exact checkout total, and the poll that sees
  it approved pays and completes in the same call.

Complete and every poll resolution run under a per-checkout lock, and
pending records are consumed with an atomic `take`, so a pending
authorization resolves at most once. A resolved or expired id afterwards
reads as not found.
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime
from typing import Callable, Optional, Union

from sacp_gateway.authorization import build_authorization_url, render_qr_png
from sacp_gateway.config import GatewaySettings
from sacp_gateway.errors import (
    AuthorizationError,
    ExpiredError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
    PaymentError,
    UnauthorizedError,
)
from sacp_gateway.limits import LimitDecision, evaluate
from sacp_gateway.models import (
    BearerSession,
    CancelResult,
    CartItem,
    CheckoutSession,
    CheckoutStatus,
    CheckoutUpdateRequest,
    CompletionResult,
    CompletionStatus,
    DeviceCodeOutcome,
    GuestCheckout,
    GuestSession,
    Order,
    PaymentTokenRequest,
    PendingDeviceAuthorization,
    PendingRef,
    PendingStepUp,
    PollResult,
    PollStatus,
    PreRegisteredSession,
    Product,
    SpendingLimits,
    StepUpStatus,
)
from sacp_gateway.poller import DeviceAuthorizationPoller
from sacp_gateway.state import InMemoryStateStore, KeyedLock, StateStore
from sacp_gateway.store import StoreClient
from sacp_gateway.wallet import WalletClient

logger = logging.getLogger(__name__)

AuthSession = Union[PreRegisteredSession, BearerSession, GuestSession]

DEFAULT_AGENT_NAME = "SACP Gateway"

_NEXT_STEP = {
    CheckoutStatus.CART_BUILDING: "Update the checkout with buyer and fulfillment details",
    CheckoutStatus.AWAITING_AUTHORIZATION: "Poll the pending payment authorization",
    CheckoutStatus.COMPLETED: "Checkout is already completed; fetch the order",
    CheckoutStatus.CANCELLED: "Create a new checkout",
    CheckoutStatus.EXPIRED: "Create a new checkout",
}

_MUTABLE_STATUSES = {CheckoutStatus.CART_BUILDING, CheckoutStatus.READY_FOR_PAYMENT}


def _parse_timestamp(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


def _display_amount(amount: int, currency: str) -> str:
    return f"{currency} {amount / 100:.2f}"


class CheckoutOrchestrator:
    def __init__(
        self,
        store: StoreClient,
        wallet: WalletClient,
        settings: GatewaySettings,
        *,
        device_auths: Optional[StateStore[PendingDeviceAuthorization]] = None,
        step_ups: Optional[StateStore[PendingStepUp]] = None,
        pending_by_checkout: Optional[StateStore[PendingRef]] = None,
        guest_checkouts: Optional[StateStore[GuestCheckout]] = None,
        poller: Optional[DeviceAuthorizationPoller] = None,
        locks: Optional[KeyedLock] = None,
        qr_renderer: Callable[[str], bytes] = render_qr_png,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.wallet = wallet
        self.settings = settings
        self._clock = clock
        self._device_auths = device_auths or InMemoryStateStore(clock)
        self._step_ups = step_ups or InMemoryStateStore(clock)
        self._pending_by_checkout = pending_by_checkout or InMemoryStateStore(clock)
        self._guest_checkouts = guest_checkouts or InMemoryStateStore(clock)
        self.poller = poller or DeviceAuthorizationPoller(
            wallet,
            store,
            client_id=settings.gateway_client_id,
            merchant_id=settings.merchant_id,
            max_interval=settings.device_auth_max_interval,
            slow_down_step=settings.device_auth_slow_down_step,
        )
        self._locks = locks or KeyedLock()
        self._qr_renderer = qr_renderer
        self._wallets: dict[str, WalletClient] = {}

    # ------------------------------------------------------------------
    # Caller identity
    # ------------------------------------------------------------------

    def _wallet_for(self, auth: AuthSession) -> Optional[WalletClient]:
        if isinstance(auth, PreRegisteredSession):
            wallet = self._wallets.get(auth.id)
            if wallet is None:
                wallet = self.wallet.with_credentials(auth.client_id, auth.client_secret)
                self._wallets[auth.id] = wallet
            return wallet
        if isinstance(auth, BearerSession):
            return self.wallet.with_access_token(auth.bearer_token)
        return None

    async def _clients_for(self, auth: AuthSession) -> tuple[StoreClient, Optional[WalletClient]]:
        wallet = self._wallet_for(auth)
        if wallet is None:
            return self.store.with_token(None), None
        return self.store.with_token(await wallet.get_access_token()), wallet

    def _require_wallet(self, auth: AuthSession) -> WalletClient:
        wallet = self._wallet_for(auth)
        if wallet is None:
            raise UnauthorizedError("This operation requires an authenticated session")
        return wallet

    def forget_session(self, session_id: str) -> None:
        """Drop the cached wallet client (and its token) for a revoked session."""
        self._wallets.pop(session_id, None)

    # ------------------------------------------------------------------
    # Catalog, checkout & orders
    # ------------------------------------------------------------------

    async def browse_products(
        self,
        auth: AuthSession,
        query: Optional[str] = None,
        category: Optional[str] = None,
        limit: int = 20,
    ) -> list[Product]:
        store, _ = await self._clients_for(auth)
        return await store.browse_products(query, category, limit)

    async def get_product(self, auth: AuthSession, product_id: str) -> Product:
        store, _ = await self._clients_for(auth)
        return await store.get_product(product_id)

    async def create_checkout(self, auth: AuthSession, items: list[CartItem]) -> CheckoutSession:
        if not items:
            raise InvalidRequestError("At least one item is required", param="items")
        store, _ = await self._clients_for(auth)
        checkout = await store.create_checkout(items)
        if isinstance(auth, GuestSession):
            await self._shadow_guest_cart(checkout)
        logger.info("Checkout %s created (%s)", checkout.session_id, auth.kind)
        return checkout

    async def get_checkout(self, auth: AuthSession, checkout_id: str) -> CheckoutSession:
        store, _ = await self._clients_for(auth)
        return await store.get_checkout(checkout_id)

    async def update_checkout(
        self,
        auth: AuthSession,
        checkout_id: str,
        update: CheckoutUpdateRequest,
    ) -> CheckoutSession:
        if update.buyer is None and update.fulfillment is None and update.items is None:
            raise InvalidRequestError("Provide at least one of buyer, fulfillment or items")
        if update.items is not None and not update.items:
            raise InvalidRequestError("items must not be empty", param="items")

        store, _ = await self._clients_for(auth)
        async with self._locks.hold(checkout_id):
            # A live authorization is scoped to the current total.
            if await self._pending_by_checkout.get(checkout_id) is not None:
                raise InvalidStateError(
                    CheckoutStatus.AWAITING_AUTHORIZATION.value,
                    _NEXT_STEP[CheckoutStatus.AWAITING_AUTHORIZATION],
                    description=(
                        "Checkout has a pending payment authorization and cannot be modified. "
                        "Cancel the checkout or wait for the authorization to resolve."
                    ),
                )
            current = await store.get_checkout(checkout_id)
            if current.status not in _MUTABLE_STATUSES:
                raise InvalidStateError(
                    current.status.value,
                    _NEXT_STEP.get(current.status, "Create a new checkout"),
                    description=f"Checkout can no longer be modified. Current status: {current.status.value}",
                )
            checkout = await store.update_checkout(
                checkout_id, update.buyer, update.fulfillment, update.items
            )
            if isinstance(auth, GuestSession):
                await self._shadow_guest_cart(checkout)
        return checkout

    async def cancel_checkout(self, auth: AuthSession, checkout_id: str) -> CancelResult:
        store, _ = await self._clients_for(auth)
        async with self._locks.hold(checkout_id):
            await store.cancel_checkout(checkout_id)
            ref = await self._pending_by_checkout.take(checkout_id)
            if ref is not None:
                if ref.kind == "device_authorization":
                    await self._device_auths.delete(ref.request_id)
                else:
                    await self._step_ups.delete(ref.request_id)
            await self._guest_checkouts.delete(checkout_id)
        logger.info("Checkout %s cancelled", checkout_id)
        return CancelResult(session_id=checkout_id)

    async def get_order(self, auth: AuthSession, order_id: str) -> Order:
        self._require_wallet(auth)
        store, _ = await self._clients_for(auth)
        return await store.get_order(order_id)

    async def get_spending_limits(self, auth: AuthSession) -> SpendingLimits:
        return await self._require_wallet(auth).get_spending_limits()

    async def _shadow_guest_cart(self, checkout: CheckoutSession) -> None:
        now = self._clock()
        await self._guest_checkouts.set(
            checkout.session_id,
            GuestCheckout(checkout_session_id=checkout.session_id, cart=checkout.cart, created_at=now),
            expires_at=now + self.settings.pending_retention,
        )

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def complete_checkout(self, auth: AuthSession, checkout_id: str) -> CompletionResult:
        async with self._locks.hold(checkout_id):
            pending = await self._live_pending(auth, checkout_id)
            if pending is not None:
                return pending

            store, wallet = await self._clients_for(auth)
            checkout = await store.get_checkout(checkout_id)
            if checkout.status != CheckoutStatus.READY_FOR_PAYMENT:
                raise InvalidStateError(
                    checkout.status.value,
                    _NEXT_STEP.get(checkout.status, "Create a new checkout"),
                )

            if isinstance(auth, GuestSession) or wallet is None:
                return await self._start_device_authorization(checkout)
            return await self._pay_with_session(auth, store, wallet, checkout)

    async def _live_pending(self, auth: AuthSession, checkout_id: str) -> Optional[CompletionResult]:
        ref = await self._pending_by_checkout.get(checkout_id)
        if ref is None:
            return None
        now = self._clock()
        if ref.kind == "device_authorization" and isinstance(auth, GuestSession):
            record = await self._device_auths.get(ref.request_id)
            if record is not None and record.expires_at > now:
                return self._device_auth_instruction(record)
        elif ref.kind == "step_up" and not isinstance(auth, GuestSession):
            step_up = await self._step_ups.get(ref.request_id)
            if step_up is not None and step_up.owner_session_id == auth.id and step_up.expires_at > now:
                return self._step_up_instruction(step_up)
        return None

    async def _pay_with_session(
        self,
        auth: Union[PreRegisteredSession, BearerSession],
        store: StoreClient,
        wallet: WalletClient,
        checkout: CheckoutSession,
    ) -> CompletionResult:
        total, currency = checkout.cart.total, checkout.cart.currency

        decision: Optional[LimitDecision] = None
        if self.settings.check_limits:
            decision = evaluate(total, currency, await wallet.get_spending_limits())
            logger.info(
                "Limit check for checkout %s (%s): step_up=%s reasons=%s",
                checkout.session_id,
                _display_amount(total, currency),
                decision.requires_step_up,
                [r.value for r in decision.reasons],
            )

        payment = await wallet.request_payment_token(
            PaymentTokenRequest(
                amount=total,
                currency=currency,
                merchant_id=self.settings.merchant_id,
                session_id=checkout.session_id,
            )
        )

        if payment.step_up_required and payment.step_up_id:
            now = self._clock()
            step_up = PendingStepUp(
                step_up_id=payment.step_up_id,
                checkout_session_id=checkout.session_id,
                owner_session_id=auth.id,
                amount=total,
                currency=currency,
                expires_at=_parse_timestamp(payment.expires_at) or now + self.settings.step_up_ttl,
                limit_reasons=[r.value for r in decision.reasons] if decision else [],
            )
            await self._remember_pending(
                checkout.session_id, step_up.step_up_id, "step_up", step_up.expires_at
            )
            await self._step_ups.set(
                step_up.step_up_id,
                step_up,
                expires_at=step_up.expires_at + self.settings.pending_retention,
            )
            logger.info(
                "Step-up %s required for checkout %s", step_up.step_up_id, checkout.session_id
            )
            return self._step_up_instruction(step_up)

        if decision is not None and decision.requires_step_up:
            logger.warning(
                "Wallet auto-approved checkout %s despite limit reasons %s",
                checkout.session_id,
                [r.value for r in decision.reasons],
            )
        if not payment.payment_token:
            raise PaymentError("Failed to get payment token")

        order = await store.complete_checkout(checkout.session_id, payment.payment_token)
        logger.info("Checkout %s completed as order %s", checkout.session_id, order.order_id)
        return CompletionResult(
            status=CompletionStatus.COMPLETED,
            order_id=order.order_id,
            transaction_id=order.transaction_id,
            total=total,
            currency=currency,
            message="Purchase completed successfully!",
        )

    async def _start_device_authorization(self, checkout: CheckoutSession) -> CompletionResult:
        total, currency = checkout.cart.total, checkout.cart.currency
        shadow = await self._guest_checkouts.get(checkout.session_id)
        if shadow is not None and shadow.cart.total != total:
            logger.warning(
                "Guest checkout %s total moved from %s to %s since last update",
                checkout.session_id,
                shadow.cart.total,
                total,
            )

        buyer_email = checkout.buyer.email if checkout.buyer else None
        grant = await self.wallet.request_device_authorization(
            agent_name=(checkout.merchant.name if checkout.merchant else None) or DEFAULT_AGENT_NAME,
            agent_description=f"Payment authorization for checkout {checkout.session_id}",
            amount=total,
            currency=currency,
            buyer_email=buyer_email,
        )

        request_id = f"pay_{uuid.uuid4().hex}"
        authorization_url = build_authorization_url(
            grant.verification_uri,
            grant.user_code,
            grant.verification_uri_complete,
            buyer_email,
            self.settings.internal_api_secret,
        )
        qr_image: Optional[bytes] = None
        try:
            qr_image = self._qr_renderer(authorization_url)
        except Exception:
            logger.warning("QR rendering failed for %s", request_id, exc_info=True)

        now = self._clock()
        record = PendingDeviceAuthorization(
            request_id=request_id,
            checkout_session_id=checkout.session_id,
            device_code=grant.device_code,
            user_code=grant.user_code,
            verification_uri=grant.verification_uri,
            authorization_url=authorization_url,
            expires_at=now + grant.expires_in,
            poll_interval=grant.interval,
            amount=total,
            currency=currency,
            notification_sent=grant.notification_sent,
            qr_image=qr_image,
        )
        await self._remember_pending(
            checkout.session_id, request_id, "device_authorization", record.expires_at
        )
        await self._device_auths.set(
            request_id, record, expires_at=record.expires_at + self.settings.pending_retention
        )
        logger.info(
            "Device authorization %s opened for checkout %s (%s, notified=%s)",
            request_id,
            checkout.session_id,
            _display_amount(total, currency),
            grant.notification_sent,
        )
        return self._device_auth_instruction(record)

    async def _remember_pending(
        self, checkout_id: str, request_id: str, kind: str, expires_at: float
    ) -> None:
        await self.sweep_expired()
        await self._pending_by_checkout.set(
            checkout_id,
            PendingRef(kind=kind, request_id=request_id),
            expires_at=expires_at,
        )

    async def _forget_pending(self, checkout_id: str, request_id: str) -> None:
        ref = await self._pending_by_checkout.get(checkout_id)
        if ref is not None and ref.request_id == request_id:
            await self._pending_by_checkout.delete(checkout_id)

    async def sweep_expired(self) -> int:
        now = self._clock()
        removed = 0
        for store in (
            self._device_auths,
            self._step_ups,
            self._pending_by_checkout,
            self._guest_checkouts,
        ):
            removed += await store.sweep_expired(now)
        if removed:
            logger.debug("Swept %s expired gateway records", removed)
        return removed

    def _device_auth_instruction(self, record: PendingDeviceAuthorization) -> CompletionResult:
        display = _display_amount(record.amount, record.currency)
        if record.notification_sent:
            message = (
                f"We've sent a payment request to your phone. Check your WSIM app to approve "
                f"the {display} payment. If you don't see it, enter code {record.user_code} "
                f"at {record.verification_uri}."
            )
        else:
            message = (
                f"To complete your purchase of {display}, please enter code {record.user_code} "
                f"at {record.verification_uri} or scan the QR code with your wallet app."
            )
        return CompletionResult(
            status=CompletionStatus.AUTHORIZATION_REQUIRED,
            request_id=record.request_id,
            authorization_url=record.authorization_url,
            qr_code_url=(
                f"{self.settings.gateway_base_url}/qr/{record.request_id}"
                if record.qr_image
                else None
            ),
            user_code=record.user_code,
            verification_uri=record.verification_uri,
            poll_endpoint=f"/checkout/{record.checkout_session_id}/payment-status/{record.request_id}",
            expires_in=max(0, int(record.expires_at - self._clock())),
            notification_sent=record.notification_sent,
            amount=record.amount,
            currency=record.currency,
            message=message,
        )

    def _step_up_instruction(self, step_up: PendingStepUp) -> CompletionResult:
        return CompletionResult(
            status=CompletionStatus.STEP_UP_REQUIRED,
            step_up_id=step_up.step_up_id,
            poll_endpoint=f"/checkout/{step_up.checkout_session_id}/step-up/{step_up.step_up_id}",
            amount=step_up.amount,
            currency=step_up.currency,
            expires_in=max(0, int(step_up.expires_at - self._clock())),
            limit_reasons=step_up.limit_reasons,
            message="Purchase exceeds auto-approve limit. User must approve in wallet app.",
        )

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def poll_step_up(
        self,
        auth: AuthSession,
        checkout_id: str,
        step_up_id: str,
    ) -> PollResult:
        wallet = self._require_wallet(auth)
        async with self._locks.hold(checkout_id):
            step_up = await self._step_ups.get(step_up_id)
            if (
                step_up is None
                or step_up.checkout_session_id != checkout_id
                or step_up.owner_session_id != auth.id
            ):
                raise NotFoundError("Step-up request not found")

            if self._clock() >= step_up.expires_at:
                await self._resolve_step_up(checkout_id, step_up_id)
                logger.info("Step-up %s expired before approval", step_up_id)
                return PollResult(
                    status=PollStatus.EXPIRED,
                    message="Step-up request expired. Please try again.",
                )

            status = await wallet.get_step_up_status(step_up_id)
            if status.status == StepUpStatus.PENDING:
                logger.debug("Step-up %s still pending", step_up_id)
                return PollResult(
                    status=PollStatus.PENDING,
                    expires_in=max(0, int(step_up.expires_at - self._clock())),
                    message="Waiting for user approval in wallet app.",
                )

            await self._resolve_step_up(checkout_id, step_up_id)

            if status.status == StepUpStatus.APPROVED:
                if not status.payment_token:
                    raise PaymentError("Step-up approved without a payment token")
                store, _ = await self._clients_for(auth)
                order = await store.complete_checkout(checkout_id, status.payment_token)
                logger.info(
                    "Step-up %s approved, checkout %s completed as order %s",
                    step_up_id,
                    checkout_id,
                    order.order_id,
                )
                return PollResult(
                    status=PollStatus.COMPLETED,
                    order_id=order.order_id,
                    transaction_id=order.transaction_id,
                    message="Purchase approved and completed successfully!",
                )

            if status.status == StepUpStatus.REJECTED:
                logger.info("Step-up %s rejected", step_up_id)
                return PollResult(status=PollStatus.REJECTED, message="User rejected the purchase.")

            logger.info("Step-up %s expired in wallet", step_up_id)
            return PollResult(
                status=PollStatus.EXPIRED,
                message="Step-up request expired. Please try again.",
            )

    async def _resolve_step_up(self, checkout_id: str, step_up_id: str) -> PendingStepUp:
        step_up = await self._step_ups.take(step_up_id)
        if step_up is None:
            raise NotFoundError("Step-up request not found")
        await self._forget_pending(checkout_id, step_up_id)
        return step_up

    async def poll_device_authorization(self, checkout_id: str, request_id: str) -> PollResult:
        async with self._locks.hold(checkout_id):
            record = await self._device_auths.get(request_id)
            if record is None or record.checkout_session_id != checkout_id:
                raise NotFoundError("Payment authorization request not found")

            now = self._clock()
            if now >= record.expires_at:
                await self._resolve_device_authorization(checkout_id, request_id)
                logger.info("Device authorization %s expired", request_id)
                return PollResult(
                    status=PollStatus.EXPIRED,
                    message="Payment authorization request has expired. Please try again.",
                )

            expires_in = max(0, int(record.expires_at - now))
            if record.last_polled_at is not None and now - record.last_polled_at < record.poll_interval:
                logger.debug("Device authorization %s polled early, not forwarded", request_id)
                return PollResult(
                    status=PollStatus.PENDING,
                    expires_in=expires_in,
                    interval=record.poll_interval,
                    message="Waiting for user authorization...",
                )

            record = record.model_copy(update={"last_polled_at": now})
            await self._device_auths.update(request_id, record)

            result = await self.poller.exchange(record)

            if result.outcome == DeviceCodeOutcome.PENDING:
                return PollResult(
                    status=PollStatus.PENDING,
                    expires_in=expires_in,
                    interval=record.poll_interval,
                    message=(
                        f"Waiting for user to authorize payment. Enter code {record.user_code} "
                        f"at {record.verification_uri}"
                    ),
                )

            if result.outcome == DeviceCodeOutcome.SLOW_DOWN:
                interval = self.poller.next_interval(record.poll_interval)
                await self._device_auths.update(
                    request_id, record.model_copy(update={"poll_interval": interval})
                )
                logger.info("Device authorization %s slowed to %ss", request_id, interval)
                return PollResult(
                    status=PollStatus.PENDING,
                    expires_in=expires_in,
                    interval=interval,
                    message="Waiting for user authorization...",
                )

            if result.outcome == DeviceCodeOutcome.DENIED:
                await self._resolve_device_authorization(checkout_id, request_id)
                logger.info("Device authorization %s denied", request_id)
                return PollResult(
                    status=PollStatus.REJECTED,
                    message="User rejected the payment authorization.",
                )

            if result.outcome == DeviceCodeOutcome.EXPIRED:
                await self._resolve_device_authorization(checkout_id, request_id)
                logger.info("Device authorization %s expired in wallet", request_id)
                return PollResult(
                    status=PollStatus.EXPIRED,
                    message="Payment authorization request has expired. Please try again.",
                )

            if result.outcome == DeviceCodeOutcome.APPROVED and result.access_token:
                record = await self._resolve_device_authorization(checkout_id, request_id)
                order = await self.poller.settle(record, result.access_token)
                await self._guest_checkouts.delete(checkout_id)
                return PollResult(
                    status=PollStatus.COMPLETED,
                    order_id=order.order_id,
                    transaction_id=order.transaction_id,
                    message="Payment authorized and purchase completed successfully!",
                )

            logger.warning(
                "Unexpected device code response for %s: %s", request_id, result.error
            )
            raise AuthorizationError(result.error_description or "Unknown authorization error")

    async def _resolve_device_authorization(
        self, checkout_id: str, request_id: str
    ) -> PendingDeviceAuthorization:
        record = await self._device_auths.take(request_id)
        if record is None:
            raise NotFoundError("Payment authorization request not found")
        await self._forget_pending(checkout_id, request_id)
        return record

    async def get_qr_image(self, request_id: str) -> bytes:
        record = await self._device_auths.get(request_id)
        if record is None or record.qr_image is None:
            raise NotFoundError("QR code not found")
        if self._clock() >= record.expires_at:
            raise ExpiredError("Payment authorization request has expired")
        return record.qr_image
