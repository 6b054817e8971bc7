"""
SACP Gateway — agent payment gateway for the store and wallet simulators.

Lets AI agents browse a merchant catalog, build a checkout and pay through
the wallet service, with pre-registered credentials, an OAuth bearer token,
or a guest device authorization approved out-of-band by the user.

Example usage for a service:
    from sacp_gateway import (
        CheckoutOrchestrator, GatewaySettings, SessionRegistry,
        StoreClient, WalletClient, create_gateway_router,
    )

    settings = GatewaySettings.from_env()
    wallet = WalletClient(settings.wsim_base_url)
    store = StoreClient(settings.ssim_base_url)
    app.include_router(create_gateway_router(
        SessionRegistry(wallet),
        CheckoutOrchestrator(store, wallet, settings),
    ))

Example usage for agents:
    from sacp_gateway.agent import create_gateway_tools

    tools = create_gateway_tools(gateway_url="https://sacp.banksim.ca")
    agent = Agent(tools=tools, ...)
"""

__version__ = "0.1.0"

# Export main models
from sacp_gateway.models import (
    BearerSession,
    CartItem,
    CheckoutSession,
    CheckoutStatus,
    CompletionResult,
    CompletionStatus,
    DeviceCodeOutcome,
    GuestSession,
    Order,
    PendingDeviceAuthorization,
    PendingStepUp,
    PollResult,
    PollStatus,
    PreRegisteredSession,
    Product,
    SpendingLimits,
    StepUpRequest,
    StepUpStatus,
)

# Export errors
from sacp_gateway.errors import (
    ExpiredError,
    GatewayError,
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
    UpstreamError,
)

# Export gateway components
from sacp_gateway.config import GatewaySettings
from sacp_gateway.limits import LimitDecision, evaluate
from sacp_gateway.orchestrator import CheckoutOrchestrator
from sacp_gateway.poller import DeviceAuthorizationPoller
from sacp_gateway.router import create_gateway_router
from sacp_gateway.sessions import SessionRegistry
from sacp_gateway.state import InMemoryStateStore, KeyedLock, StateStore
from sacp_gateway.store import StoreClient
from sacp_gateway.wallet import WalletClient

# Export agent tools
from sacp_gateway.agent import create_gateway_tools

__all__ = [
    "__version__",
    # Core Models
    "BearerSession",
    "CartItem",
    "CheckoutSession",
    "CheckoutStatus",
    "CompletionResult",
    "CompletionStatus",
    "DeviceCodeOutcome",
    "GuestSession",
    "Order",
    "PendingDeviceAuthorization",
    "PendingStepUp",
    "PollResult",
    "PollStatus",
    "PreRegisteredSession",
    "Product",
    "SpendingLimits",
    "StepUpRequest",
    "StepUpStatus",
    # Errors
    "ExpiredError",
    "GatewayError",
    "InvalidStateError",
    "NotFoundError",
    "UnauthorizedError",
    "UpstreamError",
    # Gateway Components
    "CheckoutOrchestrator",
    "DeviceAuthorizationPoller",
    "GatewaySettings",
    "InMemoryStateStore",
    "KeyedLock",
    "LimitDecision",
    "SessionRegistry",
    "StateStore",
    "StoreClient",
    "WalletClient",
    "create_gateway_router",
    "evaluate",
    # Agent Components
    "create_gateway_tools",
]
