import base64
import hashlib
import hmac
import json
from urllib.parse import urlencode
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from payment_bridge.clients import FintirxClient, ShopifyClient
from payment_bridge.config import Settings
from payment_bridge.exceptions import TransportError
from payment_bridge.main import app, configure_app
from payment_bridge.store import InMemoryCorrelationStore

SHOPIFY_SECRET = "shpss_test_secret"
GATEWAY_SECRET = "gw-secret"

ORDER = {
    "id": 1001,
    "financial_status": "pending",
    "billing_address": {"phone": "+10000000000"},
    "total_price": "25.00",
    "order_status_url": "https://shop.test/orders/1001/authenticate",
}


def shopify_headers(body: bytes) -> dict:
    digest = hmac.new(SHOPIFY_SECRET.encode(), body, hashlib.sha256).digest()
    return {"X-Shopify-Hmac-Sha256": base64.b64encode(digest).decode(), "Content-Type": "application/json"}


def gateway_headers(body: bytes, content_type: str = "application/json") -> dict:
    signature = hmac.new(GATEWAY_SECRET.encode(), body, hashlib.sha256).hexdigest()
    return {"X-Fintirx-Signature": signature, "Content-Type": content_type}


@pytest.fixture
def gateway():
    gateway = AsyncMock(spec=FintirxClient)
    gateway.create_order.return_value = "https://pay.test/abc"
    gateway.check_order_status.return_value = {"status": "COMPLETED", "result": {"txnStatus": "SUCCESS"}}
    gateway.check_balance.return_value = {"status": True, "balance": "120.50"}
    return gateway


@pytest.fixture
def storefront():
    storefront = AsyncMock(spec=ShopifyClient)
    storefront.capture_transaction.return_value = {"id": 1, "kind": "capture"}
    return storefront


@pytest.fixture
def store():
    return InMemoryCorrelationStore()


@pytest.fixture
def client(store, gateway, storefront):
    settings = Settings(
        shopify_webhook_secret=SHOPIFY_SECRET,
        fintirx_webhook_secret=GATEWAY_SECRET,
        default_remark="Shopify order",
    )
    configure_app(app, settings, store, gateway, storefront)
    with patch("payment_bridge.handlers.publish_event", new=AsyncMock()):
        yield httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://bridge.test")


async def post_order(client, order=ORDER):
    body = json.dumps(order).encode()
    return await client.post("/order-intake", content=body, headers=shopify_headers(body))


async def post_result(client, payload):
    body = json.dumps(payload).encode()
    return await client.post("/payment-result", content=body, headers=gateway_headers(body))


@pytest.mark.asyncio
async def test_full_round_trip(client, store, gateway, storefront):
    """
    Test case 1: Intake -> link poll -> payment result -> single capture.
    """
    response = await post_order(client)
    assert response.status_code == 200
    assert response.json()["status"] == "link_created"
    ref = await store.get_ref("1001")
    assert ref.startswith("LIK1001-")
    assert response.json()["order_id"] == "1001"
    assert response.json()["correlation_ref"] == ref

    first = await client.get("/payment-link", params={"order_id": "1001"})
    second = await client.get("/payment-link", params={"order_id": "1001"})
    assert first.json() == {"payment_link": "https://pay.test/abc"}
    assert second.json() == {"payment_link": None}

    result = {"order_id": ref, "status": "SUCCESS", "amount": "25.00", "utr": "X1"}
    captured = await post_result(client, result)
    repeated = await post_result(client, result)

    assert captured.status_code == 200
    assert captured.json()["status"] == "captured"
    assert repeated.status_code == 200
    assert repeated.json()["status"] == "already_finalized"
    storefront.capture_transaction.assert_awaited_once()
    args, _ = storefront.capture_transaction.call_args
    assert args[0] == "1001"
    assert "X1" in args[2]


@pytest.mark.asyncio
async def test_tampered_order_is_rejected(client, store, gateway):
    """
    Test case 2: A body that does not match its signature is refused with no side effects.
    """
    body = json.dumps(ORDER).encode()
    headers = shopify_headers(body)
    tampered = body.replace(b"25.00", b"0.01")

    response = await client.post("/order-intake", content=tampered, headers=headers)

    assert response.status_code == 401
    gateway.create_order.assert_not_called()
    assert await store.get_record("1001") is None


@pytest.mark.asyncio
async def test_unsigned_payment_result_is_rejected(client, store, storefront):
    await store.put("1001", "LIK1001-1")
    body = json.dumps({"order_id": "LIK1001-1", "status": "SUCCESS"}).encode()

    response = await client.post("/payment-result", content=body, headers={"Content-Type": "application/json"})

    assert response.status_code == 401
    storefront.capture_transaction.assert_not_called()


@pytest.mark.asyncio
async def test_business_noops_return_200(client, gateway):
    not_pending = await post_order(client, {**ORDER, "financial_status": "paid"})
    no_phone = await post_order(client, {**ORDER, "billing_address": {}})

    assert not_pending.status_code == 200
    assert not_pending.json()["status"] == "not_pending"
    assert no_phone.json()["status"] == "missing_phone"
    gateway.create_order.assert_not_called()


@pytest.mark.asyncio
async def test_malformed_order_is_400(client):
    body = b'{"id": 1001, "financial_status": "pending"'
    response = await client.post("/order-intake", content=body, headers=shopify_headers(body))
    assert response.status_code == 400

    missing_total = await post_order(client, {"id": 1001, "financial_status": "pending"})
    assert missing_total.status_code == 400


@pytest.mark.asyncio
async def test_empty_order_id_is_400(client, store, gateway):
    response = await post_order(client, {**ORDER, "id": ""})

    assert response.status_code == 400
    gateway.create_order.assert_not_called()
    assert await store.get_record("") is None


@pytest.mark.asyncio
async def test_gateway_transport_error_is_500_and_retryable(client, gateway):
    """
    Test case 3: Transport failures ask the storefront to redeliver; the retry succeeds.
    """
    gateway.create_order.side_effect = [TransportError("timeout"), "https://pay.test/abc"]

    failed = await post_order(client)
    retried = await post_order(client)

    assert failed.status_code == 500
    assert retried.status_code == 200
    assert retried.json()["status"] == "link_created"


@pytest.mark.asyncio
async def test_payment_result_validation(client, store, storefront):
    """
    Test case 4: Missing fields and unknown refs are 400 and never capture.
    """
    missing = await post_result(client, {"status": "SUCCESS"})
    unknown = await post_result(client, {"order_id": "LIK9999-1", "status": "SUCCESS"})

    assert missing.status_code == 400
    assert unknown.status_code == 400
    storefront.capture_transaction.assert_not_called()


@pytest.mark.asyncio
async def test_form_encoded_failed_result(client, store, storefront):
    await store.put("1001", "LIK1001-1")
    body = urlencode({"order_id": "LIK1001-1", "status": "FAILURE", "message": "declined"}).encode()

    response = await client.post(
        "/payin-webhook", content=body, headers=gateway_headers(body, "application/x-www-form-urlencoded"),
    )

    assert response.status_code == 200
    assert response.json()["status"] == "payment_failed"
    storefront.capture_transaction.assert_not_called()


@pytest.mark.asyncio
async def test_order_status(client, store, gateway):
    unknown = await client.get("/order-status", params={"order_id": "404"})
    assert unknown.status_code == 404

    await store.put("1001", "LIK1001-1")
    known = await client.get("/check-status", params={"order_id": "1001"})
    assert known.status_code == 200
    assert known.json() == {"status": "COMPLETED", "result": {"txnStatus": "SUCCESS"}}
    gateway.check_order_status.assert_awaited_once_with("LIK1001-1")


@pytest.mark.asyncio
async def test_wallet_balance_and_health(client):
    balance = await client.get("/wallet-balance")
    health = await client.get("/health")

    assert balance.json() == {"status": True, "balance": "120.50"}
    assert health.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_legacy_payment_url_path(client, store):
    await store.put("1001", "LIK1001-1")
    await store.set_payment_link("1001", "https://pay.test/legacy")

    response = await client.get("/get-payment-url", params={"order_id": "1001"})

    assert response.json() == {"payment_link": "https://pay.test/legacy"}
