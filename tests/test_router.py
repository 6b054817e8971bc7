import httpx
import pytest
from fastapi import FastAPI

from conftest import FAKE_PNG, GATEWAY_URL
from sacp_gateway.router import create_gateway_router
from services.gateway.main import create_app

CART = {"items": [{"product_id": "prod_coffee", "quantity": 2}, {"product_id": "prod_mug"}]}
DETAILS = {
    "buyer": {"name": "Alex Buyer", "email": "buyer@example.com"},
    "fulfillment": {"type": "pickup"},
}


@pytest.fixture
def app(registry, orchestrator):
    app = FastAPI()
    app.include_router(create_gateway_router(registry, orchestrator))
    return app


def _client(app):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=GATEWAY_URL)


async def _ready_checkout(client, headers=None, cart=CART):
    created = await client.post("/checkout", json=cart, headers=headers)
    assert created.status_code == 201
    session_id = created.json()["session_id"]
    updated = await client.patch(f"/checkout/{session_id}", json=DETAILS, headers=headers)
    assert updated.json()["status"] == "ready_for_payment"
    return session_id


async def _register(client, upstreams):
    started = await client.post(
        "/auth/register", json={"pairing_code": "PAIR-1234", "agent_name": "Shopping Bot"}
    )
    assert started.json()["status"] == "pending"
    upstreams.access_request_status = {
        "status": "approved",
        "agent_id": "agent_42",
        "credentials": {"client_id": "agent_client", "client_secret": "agent_secret"},
    }
    approved = await client.get("/auth/status/ar_1")
    assert approved.json()["status"] == "approved"
    return {"X-Session-Id": approved.json()["session_id"]}


# ---------------------------------------------------------------------------
# Guest checkout over HTTP
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_guest_checkout_to_device_authorization(app, upstreams, clock):
    async with _client(app) as client:
        session_id = await _ready_checkout(client)

        complete = await client.post(f"/checkout/{session_id}/complete")
        assert complete.status_code == 202
        body = complete.json()
        assert body["status"] == "authorization_required"
        assert body["user_code"] == "WSIM-A3J2K9"
        assert "order_id" not in body

        poll = await client.get(body["poll_endpoint"])
        assert poll.status_code == 200
        assert poll.json() == {
            "status": "pending",
            "message": "Waiting for user to authorize payment. Enter code WSIM-A3J2K9 at https://wsim.test/device",
            "expires_in": 300,
            "interval": 5,
        }

        qr = await client.get(f"/qr/{body['request_id']}")
        assert qr.status_code == 200
        assert qr.headers["content-type"] == "image/png"
        assert qr.headers["cache-control"] == "no-store"
        assert qr.content == FAKE_PNG

        clock.advance(5)
        upstreams.device_responses.append((200, {"access_token": "at_device"}))
        done = await client.get(body["poll_endpoint"])
        assert done.json()["status"] == "completed"
        assert done.json()["order_id"] == "ord_1"

        replay = await client.get(body["poll_endpoint"])
        assert replay.status_code == 404
        assert replay.json()["error"] == "not_found"


@pytest.mark.asyncio
async def test_expired_qr_is_gone(app, clock):
    async with _client(app) as client:
        session_id = await _ready_checkout(client)
        body = (await client.post(f"/checkout/{session_id}/complete")).json()
        clock.advance(301)

        gone = await client.get(f"/qr/{body['request_id']}")
        missing = await client.get("/qr/pay_unknown")

    assert gone.status_code == 410
    assert gone.json()["error"] == "expired"
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_complete_before_ready_is_invalid_state(app, upstreams):
    async with _client(app) as client:
        created = await client.post("/checkout", json=CART)
        session_id = created.json()["session_id"]

        resp = await client.post(f"/checkout/{session_id}/complete")

    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_state"
    assert resp.json()["current_status"] == "cart_building"
    assert resp.json()["next_step"]
    assert upstreams.checkouts[session_id]["status"] == "cart_building"


@pytest.mark.asyncio
async def test_cancel_checkout(app, upstreams):
    async with _client(app) as client:
        session_id = await _ready_checkout(client)
        resp = await client.delete(f"/checkout/{session_id}")

    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"
    assert upstreams.checkouts[session_id]["status"] == "cancelled"


@pytest.mark.asyncio
async def test_unknown_product_is_not_found(app):
    async with _client(app) as client:
        resp = await client.get("/products/prod_nope")

    assert resp.status_code == 404
    assert resp.json()["error"] == "not_found"


@pytest.mark.asyncio
async def test_browse_products_as_guest(app):
    async with _client(app) as client:
        resp = await client.get("/products", params={"q": "mug"})

    assert resp.status_code == 200
    assert [p["id"] for p in resp.json()["products"]] == ["prod_mug"]


# ---------------------------------------------------------------------------
# Authenticated routes
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.parametrize("path", ["/orders/ord_1", "/limits", "/auth/session"])
async def test_required_routes_reject_missing_identity(app, upstreams, path):
    async with _client(app) as client:
        resp = await client.get(path)

    assert resp.status_code == 401
    assert resp.json()["error"] == "unauthorized"
    assert upstreams.requests == []


@pytest.mark.asyncio
async def test_inactive_bearer_is_unauthorized(app, upstreams):
    upstreams.introspection = {"active": False}

    async with _client(app) as client:
        resp = await client.get("/limits", headers={"Authorization": "Bearer tok_dead"})

    assert resp.status_code == 401
    assert upstreams.introspections == 1


@pytest.mark.asyncio
async def test_registered_session_lifecycle(app, upstreams):
    async with _client(app) as client:
        headers = await _register(client, upstreams)

        described = await client.get("/auth/session", headers=headers)
        assert described.json()["auth_type"] == "pre_registered"
        assert described.json()["client_id"] == "agent_client"

        limits = await client.get("/limits", headers=headers)
        assert limits.status_code == 200
        assert limits.json()["per_transaction"] == 10000

        revoked = await client.delete("/auth/session", headers=headers)
        assert revoked.json()["status"] == "revoked"

        after = await client.get("/limits", headers=headers)
        assert after.status_code == 401


@pytest.mark.asyncio
async def test_session_checkout_step_up_over_http(app, upstreams):
    big = {"items": [{"product_id": "prod_mug", "quantity": 5}]}
    async with _client(app) as client:
        headers = await _register(client, upstreams)
        session_id = await _ready_checkout(client, headers=headers, cart=big)

        complete = await client.post(f"/checkout/{session_id}/complete", headers=headers)
        assert complete.status_code == 202
        body = complete.json()
        assert body["status"] == "step_up_required"

        pending = await client.get(body["poll_endpoint"], headers=headers)
        assert pending.json()["status"] == "pending"

        anonymous = await client.get(body["poll_endpoint"])
        assert anonymous.status_code == 401

        upstreams.approve_step_up(body["step_up_id"])
        done = await client.get(body["poll_endpoint"], headers=headers)
        assert done.json()["status"] == "completed"

        order = await client.get(f"/orders/{done.json()['order_id']}", headers=headers)
        assert order.status_code == 200
        assert order.json()["total"] == 14125


@pytest.mark.asyncio
async def test_small_session_checkout_completes_with_200(app, upstreams):
    async with _client(app) as client:
        headers = await _register(client, upstreams)
        session_id = await _ready_checkout(client, headers=headers)

        resp = await client.post(f"/checkout/{session_id}/complete", headers=headers)

    assert resp.status_code == 200
    assert resp.json()["status"] == "completed"
    assert resp.json()["order_id"] == "ord_1"


# ---------------------------------------------------------------------------
# Application wiring
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_app_health_and_validation(settings, http_client):
    app = create_app(settings, http_client=http_client)

    async with _client(app) as client:
        health = await client.get("/health")
        invalid = await client.post("/checkout", json={"items": []})

    assert health.json()["status"] == "ok"
    assert invalid.status_code == 400
    assert invalid.json()["error"] == "invalid_request"
    assert invalid.json()["error_description"].startswith("items")


@pytest.mark.asyncio
async def test_bearer_session_cannot_be_revoked_by_the_gateway(app, upstreams):
    headers = {"Authorization": "Bearer tok_oauth"}
    async with _client(app) as client:
        resp = await client.delete("/auth/session", headers=headers)
        still_valid = await client.get("/auth/session", headers=headers)

    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_request"
    assert still_valid.json()["auth_type"] == "bearer"
