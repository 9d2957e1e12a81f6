from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from storelink.models import AppInstallation, OAuthState, ProcessedWebhook, ShopSessionRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShopSession:
    shop: str
    access_token: str
    scope: str = ""
    is_online: bool = False

    @property
    def id(self) -> str:
        return f"offline_{self.shop}"


@contextmanager
def unit_of_work(session_factory: sessionmaker, db: Session | None = None) -> Iterator[Session]:
    """Join the caller's open session, or run a short transaction of our own."""
    if db is not None:
        yield db
        return
    with session_factory() as session, session.begin():
        yield session


class SessionStorage(Protocol):
    def store(self, record: ShopSession, *, db: Session | None = None) -> None: ...

    def load(self, shop: str) -> ShopSession | None: ...

    def delete(self, shop: str, *, db: Session | None = None) -> None: ...


class SqlSessionStorage:
    """One offline session row per shop; a later store() overwrites the row."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def store(self, record: ShopSession, *, db: Session | None = None) -> None:
        with unit_of_work(self._session_factory, db) as session:
            session.merge(
                ShopSessionRecord(
                    shop=record.shop,
                    session_id=record.id,
                    access_token=record.access_token,
                    scope=record.scope,
                    is_online=record.is_online,
                )
            )

    def load(self, shop: str) -> ShopSession | None:
        with self._session_factory() as session:
            row = session.get(ShopSessionRecord, shop)
            if row is None:
                return None
            return ShopSession(
                shop=row.shop,
                access_token=row.access_token,
                scope=row.scope,
                is_online=row.is_online,
            )

    def delete(self, shop: str, *, db: Session | None = None) -> None:
        with unit_of_work(self._session_factory, db) as session:
            session.execute(delete(ShopSessionRecord).where(ShopSessionRecord.shop == shop))


class InstallationStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def includes(self, shop: str) -> bool:
        with self._session_factory() as session:
            return session.get(AppInstallation, shop) is not None

    def add(self, shop: str, *, db: Session | None = None) -> None:
        if db is not None:
            if db.get(AppInstallation, shop) is None:
                db.add(AppInstallation(shop=shop))
                db.flush()
            return
        try:
            with unit_of_work(self._session_factory) as session:
                if session.get(AppInstallation, shop) is None:
                    session.add(AppInstallation(shop=shop))
        except IntegrityError:
            # A concurrent add committed first; the row exists either way.
            logger.debug("Installation already present", extra={"shop": shop})

    def delete(self, shop: str, *, db: Session | None = None) -> None:
        with unit_of_work(self._session_factory, db) as session:
            session.execute(delete(AppInstallation).where(AppInstallation.shop == shop))


class OAuthStateStore:
    """Outstanding handshake nonces; each one can complete a single callback."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def issue(self, *, state: str, shop: str) -> None:
        with unit_of_work(self._session_factory) as session:
            session.add(OAuthState(state=state, shop=shop))

    def consume(self, *, state: str, shop: str) -> bool:
        with unit_of_work(self._session_factory) as session:
            result = session.execute(
                delete(OAuthState).where(OAuthState.state == state, OAuthState.shop == shop)
            )
            return result.rowcount == 1


class WebhookLedger:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def seen(self, *, shop: str, topic: str, webhook_id: str) -> bool:
        with self._session_factory() as session:
            existing = session.scalars(
                select(ProcessedWebhook).where(
                    ProcessedWebhook.shop == shop,
                    ProcessedWebhook.topic == topic,
                    ProcessedWebhook.webhook_id == webhook_id,
                )
            ).first()
            return existing is not None

    def record(self, *, shop: str, topic: str, webhook_id: str, status: str = "handled") -> None:
        try:
            with unit_of_work(self._session_factory) as session:
                session.add(ProcessedWebhook(shop=shop, topic=topic, webhook_id=webhook_id, status=status))
        except IntegrityError:
            logger.debug(
                "Webhook already recorded",
                extra={"shop": shop, "topic": topic, "webhook_id": webhook_id},
            )
