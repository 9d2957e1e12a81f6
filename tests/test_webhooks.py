from __future__ import annotations

import asyncio
import json

from storelink.merchants import MerchantRepository
from storelink.security import WebhookSignatureVerifier
from storelink.storage import InstallationStore, WebhookLedger
from storelink.webhooks import (
    COMPLIANCE_TOPICS,
    LoggingFulfillmentProcessor,
    MerchantComplianceProcessor,
    WebhookDelivery,
    WebhookDispatcher,
    build_webhook_handlers,
    normalize_topic,
    registrable_topics,
)

SHOP = "example.myshopify.com"
VERIFIER = WebhookSignatureVerifier("test_secret")


class RecordingHandler:
    def __init__(self, *, error: Exception | None = None, delay: float = 0.0) -> None:
        self.calls: list[tuple[str, str, bytes]] = []
        self.error = error
        self.delay = delay

    async def __call__(self, topic: str, shop: str, body: bytes) -> None:
        self.calls.append((topic, shop, body))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error


def _delivery(topic: str = "APP_UNINSTALLED", body: bytes = b"{}", *, signed: bool = True, webhook_id: str | None = None):
    return WebhookDelivery(
        topic=topic,
        shop=SHOP,
        body=body,
        hmac=VERIFIER.sign(body) if signed else "bogus",
        webhook_id=webhook_id,
    )


def _dispatcher(handlers, *, ledger=None, timeout_seconds: float = 1.0) -> WebhookDispatcher:
    return WebhookDispatcher(verifier=VERIFIER, handlers=handlers, ledger=ledger, timeout_seconds=timeout_seconds)


def test_invalid_signature_never_invokes_handler():
    handler = RecordingHandler()
    dispatcher = _dispatcher({"APP_UNINSTALLED": handler})

    assert asyncio.run(dispatcher.handle(_delivery(signed=False))) == 401
    assert asyncio.run(dispatcher.handle(_delivery(topic="UNKNOWN_TOPIC", signed=False))) == 401
    assert handler.calls == []


def test_unregistered_topic_is_acknowledged():
    handler = RecordingHandler()
    dispatcher = _dispatcher({"APP_UNINSTALLED": handler})

    assert asyncio.run(dispatcher.handle(_delivery(topic="PRODUCTS_UPDATE"))) == 200
    assert handler.calls == []


def test_handler_failure_asks_for_redelivery():
    handler = RecordingHandler(error=RuntimeError("boom"))
    dispatcher = _dispatcher({"APP_UNINSTALLED": handler})

    assert asyncio.run(dispatcher.handle(_delivery())) == 500
    assert len(handler.calls) == 1


def test_slow_handler_hits_deadline():
    handler = RecordingHandler(delay=1.0)
    dispatcher = _dispatcher({"APP_UNINSTALLED": handler}, timeout_seconds=0.01)

    assert asyncio.run(dispatcher.handle(_delivery())) == 500


def test_duplicate_delivery_is_handled_once(session_factory):
    handler = RecordingHandler()
    dispatcher = _dispatcher({"APP_UNINSTALLED": handler}, ledger=WebhookLedger(session_factory))

    assert asyncio.run(dispatcher.handle(_delivery(webhook_id="wh-1"))) == 200
    assert asyncio.run(dispatcher.handle(_delivery(webhook_id="wh-1"))) == 200
    assert len(handler.calls) == 1


def test_failed_delivery_is_retried(session_factory):
    handler = RecordingHandler(error=RuntimeError("database unavailable"))
    dispatcher = _dispatcher({"APP_UNINSTALLED": handler}, ledger=WebhookLedger(session_factory))

    assert asyncio.run(dispatcher.handle(_delivery(webhook_id="wh-2"))) == 500
    handler.error = None
    assert asyncio.run(dispatcher.handle(_delivery(webhook_id="wh-2"))) == 200
    assert len(handler.calls) == 2


def test_uninstall_redelivery_is_idempotent(session_factory):
    installations = InstallationStore(session_factory)
    installations.add(SHOP)
    handlers = build_webhook_handlers(
        installations=installations,
        compliance=MerchantComplianceProcessor(MerchantRepository(session_factory)),
        fulfillment=LoggingFulfillmentProcessor(),
    )
    dispatcher = _dispatcher(handlers)

    assert asyncio.run(dispatcher.handle(_delivery())) == 200
    assert not installations.includes(SHOP)
    assert asyncio.run(dispatcher.handle(_delivery())) == 200
    assert not installations.includes(SHOP)


def test_shop_redact_erases_merchant_data(session_factory):
    merchants = MerchantRepository(session_factory)
    merchants.get_or_create(shop=SHOP, access_token="shpat_token")
    merchants.update_memos(shop=SHOP, memos=[("gid://shopify/Product/1", "restock soon")])
    handlers = build_webhook_handlers(
        installations=InstallationStore(session_factory),
        compliance=MerchantComplianceProcessor(merchants),
        fulfillment=LoggingFulfillmentProcessor(),
    )
    body = json.dumps({"shop_id": 1, "shop_domain": SHOP}).encode("utf-8")

    assert asyncio.run(_dispatcher(handlers).handle(_delivery(topic="SHOP_REDACT", body=body))) == 200
    assert merchants.get(SHOP) is None
    assert merchants.list_memos(SHOP) == []


def test_compliance_and_fulfillment_topics_are_routed(session_factory):
    seen: list[tuple] = []

    class Compliance:
        async def process(self, topic, shop, payload):
            seen.append(("compliance", topic, shop, payload))

    class Fulfillment:
        async def process(self, shop, payload):
            seen.append(("fulfillment", shop, payload))

    handlers = build_webhook_handlers(
        installations=InstallationStore(session_factory),
        compliance=Compliance(),
        fulfillment=Fulfillment(),
    )
    dispatcher = _dispatcher(handlers)
    request_body = json.dumps({"customer": {"id": 7}}).encode("utf-8")
    fulfillment_body = json.dumps({"id": 9, "order_id": 3, "status": "success"}).encode("utf-8")

    assert asyncio.run(dispatcher.handle(_delivery(topic="CUSTOMERS_DATA_REQUEST", body=request_body))) == 200
    assert asyncio.run(dispatcher.handle(_delivery(topic="FULFILLMENTS_CREATE", body=fulfillment_body))) == 200
    assert seen == [
        ("compliance", "CUSTOMERS_DATA_REQUEST", SHOP, {"customer": {"id": 7}}),
        ("fulfillment", SHOP, {"id": 9, "order_id": 3, "status": "success"}),
    ]


def test_non_object_payload_fails_the_delivery(session_factory):
    handlers = build_webhook_handlers(
        installations=InstallationStore(session_factory),
        compliance=MerchantComplianceProcessor(MerchantRepository(session_factory)),
        fulfillment=LoggingFulfillmentProcessor(),
    )

    assert asyncio.run(_dispatcher(handlers).handle(_delivery(topic="FULFILLMENTS_CREATE", body=b"[1, 2]"))) == 500


def test_registrable_topics_skip_compliance_topics(session_factory):
    handlers = build_webhook_handlers(
        installations=InstallationStore(session_factory),
        compliance=MerchantComplianceProcessor(MerchantRepository(session_factory)),
        fulfillment=LoggingFulfillmentProcessor(),
    )

    assert COMPLIANCE_TOPICS <= set(handlers)
    assert registrable_topics(handlers) == ["APP_UNINSTALLED", "FULFILLMENTS_CREATE"]


def test_delivery_from_headers_normalizes_topic():
    delivery = WebhookDelivery.from_headers(
        {
            "x-shopify-topic": "app/uninstalled",
            "x-shopify-shop-domain": "Example.myshopify.com",
            "x-shopify-hmac-sha256": "abc",
            "x-shopify-webhook-id": "wh-9",
        },
        b"{}",
    )

    assert delivery == WebhookDelivery(
        topic="APP_UNINSTALLED", shop=SHOP, body=b"{}", hmac="abc", webhook_id="wh-9"
    )
    assert normalize_topic("customers/data_request") == "CUSTOMERS_DATA_REQUEST"
