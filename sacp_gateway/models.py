"""
SACP Pydantic Models — records and wire shapes for the agent payment gateway.

These models cover the Store (SSIM) agent checkout API, the Wallet (WSIM)
agent API, the gateway's own session and pending-authorization records,
and the responses the gateway returns to agents.
All monetary amounts are in the smallest currency unit (e.g. cents for CAD).
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class CheckoutStatus(str, Enum):
    CART_BUILDING = "cart_building"
    READY_FOR_PAYMENT = "ready_for_payment"
    AWAITING_AUTHORIZATION = "awaiting_authorization"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class StepUpStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class DeviceCodeOutcome(str, Enum):
    """Result of one RFC 8628 device-code exchange."""
    PENDING = "pending"
    SLOW_DOWN = "slow_down"
    DENIED = "denied"
    EXPIRED = "expired"
    APPROVED = "approved"
    ERROR = "error"


class CompletionStatus(str, Enum):
    COMPLETED = "completed"
    STEP_UP_REQUIRED = "step_up_required"
    AUTHORIZATION_REQUIRED = "authorization_required"


class PollStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"
    EXPIRED = "expired"


class RegistrationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# ---------------------------------------------------------------------------
# Store: Catalog, Cart & Checkout
# ---------------------------------------------------------------------------

class Product(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: str
    description: Optional[str] = None
    price: Any = None
    currency: Optional[str] = None
    image_url: Optional[str] = None
    available: bool = True
    category: Optional[str] = None


class CartItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    product_id: str
    quantity: int = Field(default=1, ge=1)
    price: Optional[int] = None
    name: Optional[str] = None


class Cart(BaseModel):
    items: list[CartItem] = []
    subtotal: int = 0
    tax: int = 0
    total: int = 0
    currency: str = "CAD"


class Buyer(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class Address(BaseModel):
    model_config = ConfigDict(extra="allow")

    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


class Fulfillment(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Optional[str] = None  # "shipping" | "pickup"
    address: Optional[Address] = None


class Merchant(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    name: Optional[str] = None


class CheckoutSession(BaseModel):
    """Checkout as reported by the Store. The Store owns this record."""
    model_config = ConfigDict(extra="allow")

    session_id: str = Field(validation_alias=AliasChoices("session_id", "id"))
    status: CheckoutStatus
    cart: Cart = Field(default_factory=Cart)
    buyer: Optional[Buyer] = None
    fulfillment: Optional[Fulfillment] = None
    merchant: Optional[Merchant] = None
    created_at: Optional[str] = None
    expires_at: Optional[str] = None


class Order(BaseModel):
    model_config = ConfigDict(extra="allow")

    order_id: str = Field(validation_alias=AliasChoices("order_id", "id"))
    status: Optional[str] = None
    total: Optional[int] = None
    currency: Optional[str] = None
    items: list[CartItem] = []
    created_at: Optional[str] = None
    transaction_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Wallet: OAuth, Limits & Payment Tokens
# ---------------------------------------------------------------------------

class ClientCredentials(BaseModel):
    client_id: str
    client_secret: str


class AccessToken(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int = 3600
    scope: Optional[str] = None


class TokenIntrospection(BaseModel):
    model_config = ConfigDict(extra="allow")

    active: bool = False
    client_id: Optional[str] = None
    sub: Optional[str] = None
    agent_id: Optional[str] = None
    scope: Optional[str] = None
    exp: Optional[int] = None


class SpendingLimits(BaseModel):
    per_transaction: int
    daily: int
    daily_remaining: int
    monthly: Optional[int] = None
    monthly_remaining: Optional[int] = None
    currency: str


class PaymentTokenRequest(BaseModel):
    amount: int = Field(ge=0)
    currency: str
    merchant_id: str
    session_id: str


class PaymentTokenResponse(BaseModel):
    payment_token: Optional[str] = None
    step_up_required: bool = False
    step_up_id: Optional[str] = None
    expires_at: Optional[str] = None


class StepUpRequest(BaseModel):
    step_up_id: str
    status: StepUpStatus
    amount: Optional[int] = None
    currency: Optional[str] = None
    payment_token: Optional[str] = None
    expires_at: Optional[str] = None


class DeviceAuthorizationGrant(BaseModel):
    model_config = ConfigDict(extra="allow")

    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: Optional[str] = None
    expires_in: int = 300
    interval: int = 5
    notification_sent: bool = False


class DeviceCodeResult(BaseModel):
    outcome: DeviceCodeOutcome
    access_token: Optional[str] = None
    expires_in: Optional[int] = None
    error: Optional[str] = None
    error_description: Optional[str] = None


class AccessRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    request_id: str
    poll_url: Optional[str] = None
    expires_at: Optional[str] = None


class AccessRequestStatus(BaseModel):
    model_config = ConfigDict(extra="allow")

    status: str
    agent_id: Optional[str] = None
    credentials: Optional[ClientCredentials] = None
    permissions: Optional[list[str]] = None
    spending_limits: Optional[dict[str, Any]] = None
    time_remaining_seconds: Optional[int] = None


# ---------------------------------------------------------------------------
# Gateway: Authentication Sessions
# ---------------------------------------------------------------------------

class PreRegisteredSession(BaseModel):
    """Session minted after a pairing-code registration was approved."""
    kind: Literal["pre_registered"] = "pre_registered"
    id: str
    client_id: str
    client_secret: str
    agent_id: Optional[str] = None
    created_at: float
    expires_at: Optional[float] = None


class BearerSession(BaseModel):
    """Synthetic session for an introspected OAuth bearer token."""
    kind: Literal["bearer"] = "bearer"
    id: str
    bearer_token: str
    client_id: Optional[str] = None
    agent_id: Optional[str] = None
    scope: Optional[str] = None
    created_at: float
    expires_at: Optional[float] = None


class GuestSession(BaseModel):
    kind: Literal["guest"] = "guest"
    id: Optional[str] = None


AuthSession = Annotated[
    Union[PreRegisteredSession, BearerSession, GuestSession],
    Field(discriminator="kind"),
]

GUEST = GuestSession()


class PendingRegistration(BaseModel):
    request_id: str
    agent_name: str
    poll_url: Optional[str] = None
    expires_at: Optional[str] = None


# ---------------------------------------------------------------------------
# Gateway: Pending Authorization Records
# ---------------------------------------------------------------------------

class PendingDeviceAuthorization(BaseModel):
    request_id: str
    checkout_session_id: str
    device_code: str
    user_code: str
    verification_uri: str
    authorization_url: str
    expires_at: float
    poll_interval: int
    amount: int
    currency: str
    notification_sent: bool = False
    last_polled_at: Optional[float] = None
    qr_image: Optional[bytes] = None


class PendingStepUp(BaseModel):
    step_up_id: str
    checkout_session_id: str
    owner_session_id: str
    amount: int
    currency: str
    expires_at: float
    limit_reasons: list[str] = []


class PendingRef(BaseModel):
    """Index entry pointing from a checkout to its live pending authorization."""
    kind: Literal["device_authorization", "step_up"]
    request_id: str


class GuestCheckout(BaseModel):
    """Shadow copy of a guest cart; the Store stays authoritative."""
    checkout_session_id: str
    cart: Cart
    created_at: float


# ---------------------------------------------------------------------------
# Gateway: Requests & Responses
# ---------------------------------------------------------------------------

class CheckoutCreateRequest(BaseModel):
    items: list[CartItem] = Field(min_length=1)


class CheckoutUpdateRequest(BaseModel):
    buyer: Optional[Buyer] = None
    fulfillment: Optional[Fulfillment] = None
    items: Optional[list[CartItem]] = None


class RegisterRequest(BaseModel):
    pairing_code: str = Field(min_length=1)
    agent_name: str = Field(min_length=1)
    agent_description: Optional[str] = None


class CompletionResult(BaseModel):
    status: CompletionStatus
    message: str
    order_id: Optional[str] = None
    transaction_id: Optional[str] = None
    total: Optional[int] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    # step-up
    step_up_id: Optional[str] = None
    limit_reasons: Optional[list[str]] = None
    # device authorization
    request_id: Optional[str] = None
    authorization_url: Optional[str] = None
    qr_code_url: Optional[str] = None
    user_code: Optional[str] = None
    verification_uri: Optional[str] = None
    expires_in: Optional[int] = None
    notification_sent: Optional[bool] = None
    poll_endpoint: Optional[str] = None


class PollResult(BaseModel):
    status: PollStatus
    message: str
    order_id: Optional[str] = None
    transaction_id: Optional[str] = None
    expires_in: Optional[int] = None
    interval: Optional[int] = None


class CancelResult(BaseModel):
    session_id: str
    status: CheckoutStatus = CheckoutStatus.CANCELLED
    message: str = "Checkout cancelled."


class RegistrationResult(BaseModel):
    status: RegistrationStatus
    message: str
    request_id: Optional[str] = None
    poll_endpoint: Optional[str] = None
    expires_at: Optional[str] = None
    session_id: Optional[str] = None
    agent_id: Optional[str] = None
    permissions: Optional[list[str]] = None
    spending_limits: Optional[dict[str, Any]] = None
    time_remaining_seconds: Optional[int] = None


# ---------------------------------------------------------------------------
# Error
# ---------------------------------------------------------------------------

class GatewayErrorResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    error: str
    error_description: str
