import json

import httpx
import pytest

from sacp_gateway.errors import NotFoundError, UpstreamError
from sacp_gateway.models import Buyer, CartItem, CheckoutStatus
from sacp_gateway.store import StoreClient


@pytest.mark.asyncio
async def test_browse_products_sends_query_and_parses_products(store, upstreams):
    products = await store.browse_products(query="mug", limit=5)

    assert [p.id for p in products] == ["prod_mug"]
    sent = upstreams.requests[-1]
    assert sent.url.params["q"] == "mug"
    assert sent.url.params["limit"] == "5"
    assert "authorization" not in sent.headers


@pytest.mark.asyncio
async def test_guest_calls_omit_authorization_and_token_calls_carry_it(store, upstreams):
    await store.create_checkout([CartItem(product_id="prod_coffee")])
    assert "authorization" not in upstreams.requests[-1].headers

    await store.with_token("at_agent").get_checkout("cs_1")
    assert upstreams.requests[-1].headers["authorization"] == "Bearer at_agent"


@pytest.mark.asyncio
async def test_create_checkout_accepts_store_id_field(store):
    checkout = await store.create_checkout(
        [CartItem(product_id="prod_coffee", quantity=2), CartItem(product_id="prod_mug")]
    )

    assert checkout.session_id == "cs_1"
    assert checkout.status == CheckoutStatus.CART_BUILDING
    assert checkout.cart.subtotal == 5500
    assert checkout.cart.tax == 715
    assert checkout.cart.total == 6215


@pytest.mark.asyncio
async def test_update_checkout_sends_only_given_fields(store, upstreams):
    await store.create_checkout([CartItem(product_id="prod_coffee")])
    await store.update_checkout("cs_1", buyer=Buyer(email="a@example.com"))

    body = json.loads(upstreams.requests[-1].content)
    assert body == {"buyer": {"email": "a@example.com"}}


@pytest.mark.asyncio
async def test_missing_resources_raise_not_found(store):
    with pytest.raises(NotFoundError):
        await store.get_product("nope")
    with pytest.raises(NotFoundError):
        await store.get_checkout("cs_missing")
    with pytest.raises(NotFoundError):
        await store.get_order("ord_missing")


@pytest.mark.asyncio
async def test_non_2xx_surfaces_upstream_status_and_body(store):
    await store.create_checkout([CartItem(product_id="prod_coffee")])

    with pytest.raises(UpstreamError) as exc:
        await store.complete_checkout("cs_1", "bogus")

    assert exc.value.status == 400
    assert exc.value.body == {"error": "invalid_payment_token"}
    assert exc.value.status_code == 400
    assert exc.value.response.error == "upstream_error"


@pytest.mark.asyncio
async def test_cancel_checkout_uses_delete_and_handles_empty_body(store, upstreams):
    await store.create_checkout([CartItem(product_id="prod_coffee")])

    assert await store.cancel_checkout("cs_1") is None
    assert upstreams.calls("DELETE", "/sessions/cs_1") == 1
    assert upstreams.checkouts["cs_1"]["status"] == "cancelled"


@pytest.mark.asyncio
async def test_transport_failure_becomes_502_upstream_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = StoreClient(
        "http://store.test", http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )

    with pytest.raises(UpstreamError) as exc:
        await client.get_checkout("cs_1")
    assert exc.value.status_code == 502
    assert exc.value.service == "store"
