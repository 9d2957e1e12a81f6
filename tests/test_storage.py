from __future__ import annotations

from storelink.db import build_engine, build_session_factory
from storelink.storage import InstallationStore, ShopSession, SqlSessionStorage, WebhookLedger


def test_installation_add_and_delete_are_idempotent(session_factory):
    store = InstallationStore(session_factory)

    store.add("example.myshopify.com")
    store.add("example.myshopify.com")
    assert store.includes("example.myshopify.com")

    store.delete("example.myshopify.com")
    store.delete("example.myshopify.com")
    assert not store.includes("example.myshopify.com")


def test_installation_survives_new_engine(session_factory, test_settings):
    InstallationStore(session_factory).add("example.myshopify.com")

    engine = build_engine(test_settings)
    try:
        restarted = InstallationStore(build_session_factory(engine))
        assert restarted.includes("example.myshopify.com")
        assert not restarted.includes("other.myshopify.com")
    finally:
        engine.dispose()


def test_session_storage_keeps_one_session_per_shop(session_factory):
    storage = SqlSessionStorage(session_factory)

    storage.store(ShopSession(shop="example.myshopify.com", access_token="first", scope="read_products"))
    storage.store(ShopSession(shop="example.myshopify.com", access_token="second", scope="read_products"))

    loaded = storage.load("example.myshopify.com")
    assert loaded == ShopSession(shop="example.myshopify.com", access_token="second", scope="read_products")
    assert loaded.id == "offline_example.myshopify.com"
    assert storage.load("missing.myshopify.com") is None

    storage.delete("example.myshopify.com")
    assert storage.load("example.myshopify.com") is None


def test_webhook_ledger_records_each_delivery_once(session_factory):
    ledger = WebhookLedger(session_factory)

    assert not ledger.seen(shop="example.myshopify.com", topic="APP_UNINSTALLED", webhook_id="wh-1")
    ledger.record(shop="example.myshopify.com", topic="APP_UNINSTALLED", webhook_id="wh-1")
    ledger.record(shop="example.myshopify.com", topic="APP_UNINSTALLED", webhook_id="wh-1")

    assert ledger.seen(shop="example.myshopify.com", topic="APP_UNINSTALLED", webhook_id="wh-1")
    assert not ledger.seen(shop="example.myshopify.com", topic="APP_UNINSTALLED", webhook_id="wh-2")
