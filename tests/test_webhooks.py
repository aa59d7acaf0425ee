"""
Shopify Webhook 处理测试：验签、幂等、主题映射、合规
"""
import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from mf_core.config import get_settings
from mf_core.models import WebhookEvent
from mf_core.services.event_dispatcher import EventDispatcher
from plugins.mf.channels.shopify.webhooks.handler import (
    ShopifyWebhookHandler, normalize_topic, verify_hmac
)

SHOP = "test-shop.myshopify.com"
WEBHOOK_URL = "/api/mf/v1/shopify/webhooks"


def sign(body: bytes, secret: str) -> str:
    return base64.b64encode(hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()).decode("ascii")


@pytest.fixture
def webhook_handler(reconciliation, db_manager) -> ShopifyWebhookHandler:
    return ShopifyWebhookHandler(EventDispatcher(reconciliation), db_manager=db_manager)


async def load_event(db_manager, event_id: str) -> WebhookEvent:
    async with db_manager.get_session() as session:
        return await session.scalar(select(WebhookEvent).where(WebhookEvent.event_id == event_id))



async def insert_event(db_manager, event_id: str, status: str, age: timedelta) -> None:
    claimed_at = datetime.now(timezone.utc) - age
    async with db_manager.get_transaction() as session:
        session.add(WebhookEvent(
            event_id=event_id,
            topic="orders/paid",
            shop_domain=SHOP,
            payload={},
            status=status,
            idempotency_key=f"{SHOP}:{event_id}",
            created_at=claimed_at,
            updated_at=claimed_at,
        ))

class TestSignature:

    def test_valid_signature(self):
        body = b'{"id": 1}'
        assert verify_hmac(body, sign(body, "whsec"), "whsec")

    def test_tampered_body_or_missing_header(self):
        body = b'{"id": 1}'
        signature = sign(body, "whsec")
        assert not verify_hmac(b'{"id": 2}', signature, "whsec")
        assert not verify_hmac(body, signature, "other")
        assert not verify_hmac(body, None, "whsec")


@pytest.mark.parametrize("raw, expected", [
    ("ORDERS_PAID", "orders/paid"),
    ("orders/fulfilled", "orders/fulfilled"),
    ("CUSTOMERS_DATA_REQUEST", "customers/data_request"),
    (None, "unknown"),
])
def test_normalize_topic(raw, expected):
    assert normalize_topic(raw) == expected


async def test_commit_topic_is_configurable(reconciliation, db_manager):
    handler = ShopifyWebhookHandler(EventDispatcher(reconciliation), commit_topic="ORDERS_CREATE", db_manager=db_manager)

    assert handler.resolve("orders/create") == "on_order_paid"
    assert handler.resolve("orders/paid") is None
    assert handler.resolve("orders/cancelled") == "on_order_cancelled"
    assert handler.resolve("shop/redact") == "compliance"


async def test_order_paid_is_processed_once(webhook_handler, make_material, material_service, order_payload):
    material = await make_material()
    payload = order_payload("W-1", ("1001", 3))

    first = await webhook_handler.handle_webhook("orders/paid", SHOP, "wh-1", payload)
    second = await webhook_handler.handle_webhook("orders/paid", SHOP, "wh-1", payload)

    assert first["status"] == "processed"
    assert first["result"]["processed"][0]["kind"] == "ORDER_CREATED"
    assert second["status"] == "duplicate"
    assert second["result"] == first["result"]

    summary = await material_service.material_summary(material["id"])
    assert Decimal(summary["weight_committed"]) == Decimal("15")


async def test_same_event_id_from_other_shop_is_not_a_duplicate(webhook_handler, make_material, order_payload):
    await make_material()
    payload = order_payload("W-2", ("1001", 1))

    await webhook_handler.handle_webhook("orders/paid", SHOP, "wh-shared", payload)
    other = await webhook_handler.handle_webhook("orders/paid", "other.myshopify.com", "wh-shared", payload)

    assert other["status"] == "processed"


async def test_unknown_topic_is_ignored(webhook_handler, db_manager):
    result = await webhook_handler.handle_webhook("products/update", SHOP, "wh-3", {"id": 1})

    assert result["status"] == "ignored"
    assert await load_event(db_manager, "wh-3") is None


async def test_failed_event_is_retried(webhook_handler, make_material, order_payload, db_manager, monkeypatch):
    await make_material()
    original = webhook_handler.dispatcher.on_order_paid
    calls = []

    async def flaky(payload, **kwargs):
        calls.append(payload["id"])
        if len(calls) == 1:
            raise RuntimeError("dispatcher unavailable")
        return await original(payload, **kwargs)

    monkeypatch.setattr(webhook_handler.dispatcher, "on_order_paid", flaky)
    payload = order_payload("W-4", ("1001", 1))

    failed = await webhook_handler.handle_webhook("orders/paid", SHOP, "wh-4", payload)
    assert failed["status"] == "failed"
    assert "dispatcher unavailable" in failed["error"]
    assert (await load_event(db_manager, "wh-4")).status == "failed"

    retried = await webhook_handler.handle_webhook("orders/paid", SHOP, "wh-4", payload)
    assert retried["status"] == "processed"

    event = await load_event(db_manager, "wh-4")
    assert event.status == "processed"
    assert event.retry_count == 1
    assert event.error_message is None



async def test_stalled_processing_event_is_reclaimed(reconciliation, db_manager, make_material, material_service, order_payload):
    handler = ShopifyWebhookHandler(EventDispatcher(reconciliation), db_manager=db_manager, processing_timeout=60)
    material = await make_material()
    await insert_event(db_manager, "wh-8", "processing", timedelta(minutes=10))

    result = await handler.handle_webhook("orders/paid", SHOP, "wh-8", order_payload("W-8", ("1001", 2)))

    assert result["status"] == "processed"
    event = await load_event(db_manager, "wh-8")
    assert event.status == "processed"
    assert event.retry_count == 1
    summary = await material_service.material_summary(material["id"])
    assert Decimal(summary["weight_committed"]) == Decimal("10")


async def test_in_flight_event_is_still_a_duplicate(reconciliation, db_manager, make_material, material_service, order_payload):
    handler = ShopifyWebhookHandler(EventDispatcher(reconciliation), db_manager=db_manager, processing_timeout=60)
    material = await make_material()
    await insert_event(db_manager, "wh-9", "processing", timedelta(seconds=5))

    result = await handler.handle_webhook("orders/paid", SHOP, "wh-9", order_payload("W-9", ("1001", 2)))

    assert result["status"] == "duplicate"
    assert (await load_event(db_manager, "wh-9")).retry_count == 0
    summary = await material_service.material_summary(material["id"])
    assert Decimal(summary["weight_committed"]) == Decimal("0")

async def test_customer_requests_store_nothing(webhook_handler):
    result = await webhook_handler.handle_webhook(
        "customers/data_request", SHOP, "wh-5", {"customer": {"id": 42}}
    )

    assert result["status"] == "processed"
    assert result["result"] == {"topic": "customers/data_request", "stored_customer_data": False}


async def test_shop_redact_deletes_only_that_shop(webhook_handler, make_material, material_service, order_payload, db_manager):
    await make_material()
    await make_material(variants=(("2002", "5"),), shop_domain="other.myshopify.com")
    await webhook_handler.handle_webhook("orders/paid", SHOP, "wh-6", order_payload("W-6", ("1001", 1)))

    redact = await webhook_handler.handle_webhook("SHOP_REDACT", SHOP, "wh-7", {"shop_domain": SHOP})

    assert redact["result"] == {"materials_deleted": 1, "webhook_events_deleted": 1}
    assert await material_service.list_materials(SHOP) == []
    assert len(await material_service.list_materials("other.myshopify.com")) == 1
    assert await load_event(db_manager, "wh-6") is None

    again = await webhook_handler.handle_webhook("shop/redact", SHOP, "wh-7", {"shop_domain": SHOP})
    assert again["status"] == "duplicate"


class TestWebhookRoute:

    async def test_unsigned_delivery_rejected_when_secret_configured(self, api_client, monkeypatch):
        monkeypatch.setattr(get_settings(), "shopify_webhook_secret", "whsec")

        response = await api_client.post(
            WEBHOOK_URL,
            content=b'{"id": 1}',
            headers={"X-Shopify-Topic": "orders/paid", "X-Shopify-Shop-Domain": SHOP},
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_WEBHOOK_SIGNATURE"

    async def test_signed_delivery_is_reconciled(self, api_client, make_material, order_payload, monkeypatch):
        monkeypatch.setattr(get_settings(), "shopify_webhook_secret", "whsec")
        await make_material()
        body = json.dumps(order_payload("R-1", ("1001", 2))).encode("utf-8")

        response = await api_client.post(
            WEBHOOK_URL,
            content=body,
            headers={
                "X-Shopify-Topic": "orders/paid",
                "X-Shopify-Shop-Domain": SHOP,
                "X-Shopify-Webhook-Id": "route-1",
                "X-Shopify-Hmac-Sha256": sign(body, "whsec"),
            },
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "processed"
        assert Decimal(data["result"]["processed"][0]["weight_committed"]) == Decimal("10")

    async def test_invalid_json_rejected(self, api_client, monkeypatch):
        monkeypatch.setattr(get_settings(), "shopify_webhook_secret", None)

        response = await api_client.post(
            WEBHOOK_URL,
            content=b"not json",
            headers={"X-Shopify-Topic": "orders/paid", "X-Shopify-Shop-Domain": SHOP},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_WEBHOOK_PAYLOAD"

    async def test_missing_shop_domain_rejected(self, api_client, monkeypatch):
        monkeypatch.setattr(get_settings(), "shopify_webhook_secret", None)
        monkeypatch.setattr(get_settings(), "shopify_shop_domain", None)

        response = await api_client.post(WEBHOOK_URL, json={"id": 1}, headers={"X-Shopify-Topic": "orders/paid"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "MISSING_SHOP_DOMAIN"
