import asyncio
import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("SHOPIFY_API_KEY", "test_key")
os.environ.setdefault("SHOPIFY_API_SECRET", "test_secret")
os.environ.setdefault("SHOPIFY_APP_SCOPES", "read_products,write_products")
os.environ.setdefault("SHOPIFY_APP_BASE_URL", "https://example.ngrok.app")
os.environ.setdefault("SHOPIFY_APP_DB_URL", "sqlite:///./test_storelink.db")

from storelink.config import Settings  # noqa: E402
from storelink.db import build_engine, build_session_factory, init_db  # noqa: E402
from storelink.main import create_app  # noqa: E402
from storelink.shopify_api import ShopifyApiError  # noqa: E402


class FakeShopifyApi:
    def __init__(self) -> None:
        self.scopes = "read_products,write_products"
        self.fail_exchange = False
        self.fail_register_topic: str | None = None
        self.register_delay = 0.0
        self.fail_create = False
        self.line_item_ids = [
            "gid://shopify/AppSubscriptionLineItem/1?v=1&index=0",
            "gid://shopify/AppSubscriptionLineItem/1?v=1&index=1",
        ]
        self.active_subscriptions: list[dict] = []
        self.cancel_user_errors: list[dict] = []

        self.exchanged: list[tuple[str, str]] = []
        self.registered: list[tuple[str, str, str, str]] = []
        self.created: list[dict] = []
        self.discount_created: list[dict] = []
        self.canceled: list[str] = []

    async def exchange_code_for_access_token(self, *, shop_domain: str, code: str) -> tuple[str, str]:
        self.exchanged.append((shop_domain, code))
        if self.fail_exchange:
            raise ShopifyApiError(message="OAuth token exchange failed (400): invalid code")
        return f"shpat_{code}", self.scopes

    async def register_webhook(self, *, shop_domain: str, access_token: str, topic: str, callback_url: str) -> str:
        if self.register_delay:
            await asyncio.sleep(self.register_delay)
        self.registered.append((shop_domain, access_token, topic, callback_url))
        if topic == self.fail_register_topic:
            raise ShopifyApiError(message=f"Webhook registration failed for {topic}: access denied")
        return f"gid://shopify/WebhookSubscription/{len(self.registered)}"

    def _charge(self) -> dict:
        return {
            "confirmationUrl": "https://example.myshopify.com/admin/charges/1/confirm_recurring_application_charge",
            "appSubscription": {
                "id": "gid://shopify/AppSubscription/1",
                "status": "PENDING",
                "lineItems": [{"id": item_id} for item_id in self.line_item_ids],
            },
        }

    async def create_subscription(self, **kwargs) -> dict:
        self.created.append(kwargs)
        if self.fail_create:
            raise ShopifyApiError(message="appSubscriptionCreate failed: plan invalid", status_code=409)
        return self._charge()

    async def create_discount_subscription(self, **kwargs) -> dict:
        self.discount_created.append(kwargs)
        if self.fail_create:
            raise ShopifyApiError(message="appSubscriptionCreate failed: plan invalid", status_code=409)
        return self._charge()

    async def get_active_subscriptions(self, *, shop_domain: str, access_token: str) -> list[dict]:
        return list(self.active_subscriptions)

    async def cancel_subscription(self, *, shop_domain: str, access_token: str, subscription_id: str) -> list[dict]:
        self.canceled.append(subscription_id)
        return list(self.cancel_user_errors)


@pytest.fixture()
def test_settings(tmp_path):
    dist = tmp_path / "dist"
    dist.mkdir()
    (dist / "index.html").write_text("<html><body>storelink</body></html>", encoding="utf-8")
    return Settings(
        SHOPIFY_APP_DB_URL=f"sqlite:///{tmp_path / 'storelink.db'}",
        FRONTEND_DIST_PATH=str(dist),
    )


@pytest.fixture()
def session_factory(test_settings):
    engine = build_engine(test_settings)
    init_db(engine)
    try:
        yield build_session_factory(engine)
    finally:
        engine.dispose()


@pytest.fixture()
def fake_api():
    return FakeShopifyApi()


@pytest.fixture()
def app(test_settings, fake_api):
    return create_app(test_settings, shopify_api=fake_api)


@pytest.fixture()
def api_client(app):
    with TestClient(app, base_url="https://testserver", follow_redirects=False) as client:
        yield client
