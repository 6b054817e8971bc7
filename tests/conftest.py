import json
from urllib.parse import parse_qs

import httpx
import pytest

from sacp_gateway.config import GatewaySettings
from sacp_gateway.models import (
    GUEST,
    Address,
    Buyer,
    CartItem,
    CheckoutUpdateRequest,
    Fulfillment,
    PreRegisteredSession,
)
from sacp_gateway.orchestrator import CheckoutOrchestrator
from sacp_gateway.sessions import SessionRegistry
from sacp_gateway.store import StoreClient
from sacp_gateway.wallet import WalletClient

STORE_URL = "http://store.test"
WALLET_URL = "http://wallet.test"
GATEWAY_URL = "http://gateway.test"
PREFIX = "/api/agent/v1"

FAKE_PNG = b"\x89PNG-fake"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUpstreams:
    """In-memory store and wallet APIs behind one httpx.MockTransport handler."""

    def __init__(self):
        self.products = {
            "prod_coffee": {"id": "prod_coffee", "name": "Coffee Beans", "price": 1500, "currency": "CAD", "available": True, "category": "grocery"},
            "prod_mug": {"id": "prod_mug", "name": "Travel Mug", "price": 2500, "currency": "CAD", "available": True, "category": "kitchen"},
        }
        self.checkouts: dict[str, dict] = {}
        self.orders: dict[str, dict] = {}
        self.used_payment_tokens: set[str] = set()
        self.requests: list[httpx.Request] = []

        self.client_secret = "agent_secret"
        self.token_ttl = 3600
        self.token_requests = 0
        self.step_up_threshold = 10000
        self.step_ups: dict[str, dict] = {}
        self.payment_tokens = 0
        self.limits = {
            "per_transaction": 10000,
            "daily": 50000,
            "daily_remaining": 42000,
            "monthly": 100000,
            "monthly_remaining": 90000,
            "currency": "CAD",
        }
        self.introspection: dict = {"active": True, "client_id": "oauth_client", "sub": "agent_oauth", "exp": None}
        self.introspections = 0
        self.notification_sent = False
        self.device_auth_requests: list[dict] = []
        self.device_responses: list[tuple[int, dict]] = []
        self.access_requests: list[dict] = []
        self.access_request_status: dict = {"status": "pending", "time_remaining_seconds": 240}

    # -- helpers --------------------------------------------------------

    def calls(self, method: str, path: str) -> int:
        return sum(
            1 for r in self.requests if r.method == method and r.url.path == f"{PREFIX}{path}"
        )

    def _cart(self, items: list[dict]) -> dict:
        priced = []
        for item in items:
            product = self.products[item["product_id"]]
            priced.append({**item, "price": product["price"], "name": product["name"]})
        subtotal = sum(i["price"] * i.get("quantity", 1) for i in priced)
        tax = subtotal * 13 // 100
        return {"items": priced, "subtotal": subtotal, "tax": tax, "total": subtotal + tax, "currency": "CAD"}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        assert path.startswith(PREFIX), path
        path = path[len(PREFIX):]
        if request.url.host == "store.test":
            return self._store(request, path)
        return self._wallet(request, path)

    # -- store ----------------------------------------------------------

    def _store(self, request: httpx.Request, path: str) -> httpx.Response:
        parts = path.strip("/").split("/")
        body = json.loads(request.content) if request.content else {}

        if parts == ["products"]:
            q = request.url.params.get("q", "").lower()
            products = [p for p in self.products.values() if q in p["name"].lower()]
            return httpx.Response(200, json={"products": products})
        if parts[0] == "products":
            product = self.products.get(parts[1])
            if product is None:
                return httpx.Response(404, json={"error": "not_found"})
            return httpx.Response(200, json=product)

        if parts == ["sessions"] and request.method == "POST":
            sid = f"cs_{len(self.checkouts) + 1}"
            self.checkouts[sid] = {
                "id": sid,
                "status": "cart_building",
                "cart": self._cart(body["items"]),
                "merchant": {"id": "ssim", "name": "SSIM Store"},
            }
            return httpx.Response(201, json=self.checkouts[sid])

        if parts[0] == "sessions":
            checkout = self.checkouts.get(parts[1])
            if checkout is None:
                return httpx.Response(404, json={"error": "not_found"})
            if len(parts) == 3 and parts[2] == "complete":
                token = body.get("payment_token", "")
                if not token.startswith("ptok_") or token in self.used_payment_tokens:
                    return httpx.Response(400, json={"error": "invalid_payment_token"})
                if checkout["status"] != "ready_for_payment":
                    return httpx.Response(409, json={"error": "invalid_state", "message": checkout["status"]})
                self.used_payment_tokens.add(token)
                checkout["status"] = "completed"
                order_id = f"ord_{len(self.orders) + 1}"
                self.orders[order_id] = {
                    "id": order_id,
                    "status": "confirmed",
                    "total": checkout["cart"]["total"],
                    "currency": "CAD",
                    "items": checkout["cart"]["items"],
                    "transaction_id": f"txn_{len(self.orders) + 1}",
                }
                return httpx.Response(200, json=self.orders[order_id])
            if request.method == "GET":
                return httpx.Response(200, json=checkout)
            if request.method == "DELETE":
                checkout["status"] = "cancelled"
                return httpx.Response(204)
            if request.method == "PATCH":
                if checkout["status"] not in ("cart_building", "ready_for_payment"):
                    return httpx.Response(409, json={"error": "invalid_state"})
                if "items" in body:
                    checkout["cart"] = self._cart(body["items"])
                for key in ("buyer", "fulfillment"):
                    if key in body:
                        checkout[key] = body[key]
                ready = checkout.get("buyer") and checkout.get("fulfillment")
                checkout["status"] = "ready_for_payment" if ready else "cart_building"
                return httpx.Response(200, json=checkout)

        if parts[0] == "orders":
            order = self.orders.get(parts[1])
            if order is None:
                return httpx.Response(404, json={"error": "not_found"})
            return httpx.Response(200, json=order)

        return httpx.Response(404, json={"error": "no_route"})

    # -- wallet ---------------------------------------------------------

    def _wallet(self, request: httpx.Request, path: str) -> httpx.Response:
        if path == "/oauth/token":
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            if form["grant_type"] == "client_credentials":
                self.token_requests += 1
                if form.get("client_secret") != self.client_secret:
                    return httpx.Response(401, json={"error": "invalid_client"})
                return httpx.Response(
                    200,
                    json={"access_token": f"at_{self.token_requests}", "token_type": "Bearer", "expires_in": self.token_ttl},
                )
            if self.device_responses:
                status, body = self.device_responses.pop(0)
            else:
                status, body = 400, {"error": "authorization_pending"}
            return httpx.Response(status, json=body)

        if path == "/oauth/introspect":
            self.introspections += 1
            return httpx.Response(200, json=self.introspection)

        if path == "/oauth/device_authorization":
            self.device_auth_requests.append(json.loads(request.content))
            return httpx.Response(
                200,
                json={
                    "device_code": f"dc_{len(self.device_auth_requests)}",
                    "user_code": "WSIM-A3J2K9",
                    "verification_uri": "https://wsim.test/device",
                    "verification_uri_complete": "https://wsim.test/device?code=WSIM-A3J2K9",
                    "expires_in": 300,
                    "interval": 5,
                    "notification_sent": self.notification_sent,
                },
            )

        if path == "/access-request":
            self.access_requests.append(json.loads(request.content))
            return httpx.Response(
                201,
                json={
                    "request_id": "ar_1",
                    "poll_url": f"{WALLET_URL}{PREFIX}/access-request/ar_1",
                    "expires_at": "2030-01-01T00:00:00Z",
                },
            )
        if path.startswith("/access-request/"):
            return httpx.Response(200, json=self.access_request_status)

        if not request.headers.get("authorization", "").startswith("Bearer "):
            return httpx.Response(401, json={"error": "unauthorized"})

        if path == "/limits":
            return httpx.Response(200, json=self.limits)

        if path == "/payments/token":
            body = json.loads(request.content)
            if body["amount"] > self.step_up_threshold:
                step_up_id = f"su_{len(self.step_ups) + 1}"
                self.step_ups[step_up_id] = {"status": "pending"}
                return httpx.Response(200, json={"step_up_required": True, "step_up_id": step_up_id})
            self.payment_tokens += 1
            return httpx.Response(200, json={"payment_token": f"ptok_{self.payment_tokens}"})

        if path.startswith("/payments/token/") and path.endswith("/status"):
            step_up_id = path.split("/")[3]
            return httpx.Response(200, json=self.step_ups[step_up_id])

        return httpx.Response(404, json={"error": "no_route"})

    def approve_step_up(self, step_up_id: str) -> None:
        self.payment_tokens += 1
        self.step_ups[step_up_id] = {"status": "approved", "payment_token": f"ptok_{self.payment_tokens}"}


@pytest.fixture
def upstreams():
    return FakeUpstreams()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return GatewaySettings(
        wsim_base_url=WALLET_URL,
        ssim_base_url=STORE_URL,
        gateway_base_url=GATEWAY_URL,
    )


@pytest.fixture
def http_client(upstreams):
    return httpx.AsyncClient(transport=httpx.MockTransport(upstreams))


@pytest.fixture
def wallet(settings, http_client, clock):
    return WalletClient(
        settings.wsim_base_url, http_client=http_client, api_prefix=settings.api_prefix, clock=clock
    )


@pytest.fixture
def store(settings, http_client):
    return StoreClient(settings.ssim_base_url, http_client=http_client, api_prefix=settings.api_prefix)


@pytest.fixture
def registry(wallet, clock):
    return SessionRegistry(wallet, clock=clock)


@pytest.fixture
def orchestrator(store, wallet, settings, clock):
    return CheckoutOrchestrator(
        store, wallet, settings, qr_renderer=lambda url: FAKE_PNG, clock=clock
    )


@pytest.fixture
def agent_session(clock):
    return PreRegisteredSession(
        id="sess_test",
        client_id="agent_client",
        client_secret="agent_secret",
        agent_id="agent_1",
        created_at=clock(),
    )


@pytest.fixture
def ready_checkout(orchestrator):
    """Coffee x2 + mug by default: 5500 subtotal, 715 tax, 6215 total."""

    async def _make(auth=GUEST, items=None, email="buyer@example.com"):
        checkout = await orchestrator.create_checkout(
            auth,
            items or [CartItem(product_id="prod_coffee", quantity=2), CartItem(product_id="prod_mug")],
        )
        return await orchestrator.update_checkout(
            auth,
            checkout.session_id,
            CheckoutUpdateRequest(
                buyer=Buyer(name="Alex Buyer", email=email),
                fulfillment=Fulfillment(
                    type="shipping",
                    address=Address(street="1 Main St", city="Toronto", state="ON", postal_code="M5V 1A1", country="CA"),
                ),
            ),
        )

    return _make
