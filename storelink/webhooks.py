from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from fastapi import status

from storelink.merchants import MerchantRepository
from storelink.security import WebhookSignatureVerifier
from storelink.storage import InstallationStore, WebhookLedger

logger = logging.getLogger(__name__)

APP_UNINSTALLED = "APP_UNINSTALLED"
CUSTOMERS_DATA_REQUEST = "CUSTOMERS_DATA_REQUEST"
CUSTOMERS_REDACT = "CUSTOMERS_REDACT"
SHOP_REDACT = "SHOP_REDACT"
FULFILLMENTS_CREATE = "FULFILLMENTS_CREATE"

# Delivered through the app configuration, never via webhookSubscriptionCreate.
COMPLIANCE_TOPICS = frozenset({CUSTOMERS_DATA_REQUEST, CUSTOMERS_REDACT, SHOP_REDACT})

WebhookHandler = Callable[[str, str, bytes], Awaitable[None]]


class SignatureInvalidError(Exception):
    pass


class UnregisteredTopicError(Exception):
    def __init__(self, topic: str) -> None:
        super().__init__(f"No webhook handler registered for {topic}")
        self.topic = topic


def normalize_topic(topic: str | None) -> str:
    return (topic or "").strip().upper().replace("/", "_")


@dataclass(frozen=True)
class WebhookDelivery:
    topic: str
    shop: str
    body: bytes
    hmac: str | None
    webhook_id: str | None = None

    @classmethod
    def from_headers(cls, headers: Mapping[str, str], body: bytes) -> "WebhookDelivery":
        return cls(
            topic=normalize_topic(headers.get("x-shopify-topic")),
            shop=(headers.get("x-shopify-shop-domain") or "").strip().lower(),
            body=body,
            hmac=headers.get("x-shopify-hmac-sha256"),
            webhook_id=headers.get("x-shopify-webhook-id"),
        )


class ComplianceProcessor(Protocol):
    async def process(self, topic: str, shop: str, payload: dict[str, Any]) -> None: ...


class FulfillmentProcessor(Protocol):
    async def process(self, shop: str, payload: dict[str, Any]) -> None: ...


class MerchantComplianceProcessor:
    """Answers the mandatory privacy webhooks for the data this app keeps.

    Only merchant records and product memos are stored; nothing is kept per
    customer, so customer requests are acknowledged and logged.
    """

    def __init__(self, merchants: MerchantRepository) -> None:
        self._merchants = merchants

    async def process(self, topic: str, shop: str, payload: dict[str, Any]) -> None:
        if topic == SHOP_REDACT:
            self._merchants.erase(shop)
            logger.info("Erased shop data", extra={"shop": shop})
            return
        customer = payload.get("customer") or {}
        logger.info(
            "Compliance request acknowledged",
            extra={"shop": shop, "topic": topic, "customer_id": customer.get("id")},
        )


class LoggingFulfillmentProcessor:
    async def process(self, shop: str, payload: dict[str, Any]) -> None:
        logger.info(
            "Fulfillment received",
            extra={
                "shop": shop,
                "fulfillment_id": payload.get("id"),
                "order_id": payload.get("order_id"),
                "fulfillment_status": payload.get("status"),
            },
        )


def _parse_json_object(body: bytes) -> dict[str, Any]:
    payload = json.loads(body or b"{}")
    if not isinstance(payload, dict):
        raise ValueError("Webhook payload must be a JSON object")
    return payload


def build_webhook_handlers(
    *,
    installations: InstallationStore,
    compliance: ComplianceProcessor,
    fulfillment: FulfillmentProcessor,
) -> dict[str, WebhookHandler]:
    async def app_uninstalled(_topic: str, shop: str, _body: bytes) -> None:
        installations.delete(shop)
        logger.info("Shop uninstalled", extra={"shop": shop})

    async def compliance_request(topic: str, shop: str, body: bytes) -> None:
        await compliance.process(topic, shop, _parse_json_object(body))

    async def fulfillment_created(_topic: str, shop: str, body: bytes) -> None:
        await fulfillment.process(shop, _parse_json_object(body))

    handlers: dict[str, WebhookHandler] = {APP_UNINSTALLED: app_uninstalled}
    for topic in sorted(COMPLIANCE_TOPICS):
        handlers[topic] = compliance_request
    handlers[FULFILLMENTS_CREATE] = fulfillment_created
    return handlers


def registrable_topics(handlers: Mapping[str, WebhookHandler]) -> list[str]:
    return [topic for topic in handlers if topic not in COMPLIANCE_TOPICS]


class WebhookDispatcher:
    def __init__(
        self,
        *,
        verifier: WebhookSignatureVerifier,
        handlers: Mapping[str, WebhookHandler],
        ledger: WebhookLedger | None = None,
        timeout_seconds: float,
    ) -> None:
        self._verifier = verifier
        self._handlers = dict(handlers)
        self._ledger = ledger
        self._timeout_seconds = timeout_seconds

    async def process(self, delivery: WebhookDelivery) -> bool:
        """Run the handler for an authenticated delivery.

        Returns False when the delivery id was already handled. Handler
        exceptions propagate unchanged.
        """
        if not self._verifier.verify(delivery.body, delivery.hmac):
            raise SignatureInvalidError("Invalid webhook HMAC")

        handler = self._handlers.get(delivery.topic)
        if handler is None:
            raise UnregisteredTopicError(delivery.topic)

        if self._ledger is not None and delivery.webhook_id:
            if self._ledger.seen(shop=delivery.shop, topic=delivery.topic, webhook_id=delivery.webhook_id):
                return False

        await asyncio.wait_for(
            handler(delivery.topic, delivery.shop, delivery.body),
            timeout=self._timeout_seconds,
        )

        if self._ledger is not None and delivery.webhook_id:
            self._ledger.record(shop=delivery.shop, topic=delivery.topic, webhook_id=delivery.webhook_id)
        return True

    async def handle(self, delivery: WebhookDelivery) -> int:
        log_extra = {
            "shop": delivery.shop,
            "topic": delivery.topic,
            "webhook_id": delivery.webhook_id,
        }
        try:
            handled = await self.process(delivery)
        except SignatureInvalidError:
            logger.warning("Rejected webhook with invalid HMAC", extra=log_extra)
            return status.HTTP_401_UNAUTHORIZED
        except UnregisteredTopicError:
            logger.info("Ignoring webhook for unregistered topic", extra=log_extra)
            return status.HTTP_200_OK
        except asyncio.TimeoutError:
            logger.error("Webhook handler timed out", extra=log_extra)
            return status.HTTP_500_INTERNAL_SERVER_ERROR
        except Exception:
            logger.exception("Webhook handler failed", extra=log_extra)
            return status.HTTP_500_INTERNAL_SERVER_ERROR

        if not handled:
            logger.info("Duplicate webhook delivery acknowledged", extra=log_extra)
        return status.HTTP_200_OK
