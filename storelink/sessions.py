"""Install handshake and session resolution.

A shop moves NONE -> PENDING_AUTH when `begin_auth` hands out a consent URL and
a signed state cookie, and PENDING_AUTH -> ACTIVE when `complete_auth` has
exchanged the code, registered the mandatory webhooks and committed the session
and installation rows together. A failed registration commits nothing, so the
shop stays PENDING_AUTH and the merchant can simply retry the install.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
import time
import weakref
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode, urlparse
from uuid import uuid4

from jose import jwt
from jose.exceptions import JWTError
from sqlalchemy.orm import sessionmaker

from storelink.config import Settings
from storelink.security import (
    normalize_shop_domain,
    sanitize_shop_domain,
    sign_value,
    unsign_value,
    verify_oauth_hmac,
)
from storelink.shopify_api import ShopifyApiClient, ShopifyApiError
from storelink.storage import InstallationStore, OAuthStateStore, SessionStorage, ShopSession, unit_of_work

logger = logging.getLogger(__name__)

_JWT_ALGORITHM = "HS256"
_BEARER_LEEWAY_SECONDS = 10


class AuthStateError(Exception):
    """The OAuth callback could not be tied to a handshake this app started."""


class AuthExchangeError(Exception):
    def __init__(self, message: str, *, shop: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.shop = shop
        self.retryable = retryable


@dataclass(frozen=True)
class AuthRedirect:
    url: str
    state_cookie: str


class SessionManager:
    def __init__(
        self,
        *,
        settings: Settings,
        api: ShopifyApiClient,
        storage: SessionStorage,
        installations: InstallationStore,
        session_factory: sessionmaker,
        webhook_topics: Sequence[str],
    ) -> None:
        self._settings = settings
        self._api = api
        self._storage = storage
        self._installations = installations
        self._session_factory = session_factory
        self._states = OAuthStateStore(session_factory)
        self._webhook_topics = tuple(webhook_topics)
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @property
    def webhook_callback_url(self) -> str:
        return f"{self._settings.app_base_url}/api/webhooks"

    def begin_auth(self, shop: str | None) -> AuthRedirect:
        shop_domain = normalize_shop_domain(shop)
        state = uuid4().hex
        query = urlencode(
            {
                "client_id": self._settings.SHOPIFY_API_KEY,
                "scope": self._settings.admin_scopes_csv,
                "redirect_uri": f"{self._settings.app_base_url}/api/auth/callback",
                "state": state,
            }
        )
        self._states.issue(state=state, shop=shop_domain)
        logger.info("Starting OAuth handshake", extra={"shop": shop_domain})
        return AuthRedirect(
            url=f"https://{shop_domain}/admin/oauth/authorize?{query}",
            state_cookie=sign_value(self._settings.SHOPIFY_API_SECRET, f"{state}:{shop_domain}"),
        )

    def top_level_cookie_value(self) -> str:
        return sign_value(self._settings.SHOPIFY_API_SECRET, "1")

    def has_top_level_cookie(self, cookie_value: str | None) -> bool:
        value = unsign_value(
            self._settings.SHOPIFY_API_SECRET,
            cookie_value,
            max_age_seconds=self._settings.SHOPIFY_STATE_TTL_SECONDS,
        )
        return value == "1"

    async def complete_auth(
        self,
        query_items: Sequence[tuple[str, str]],
        state_cookie: str | None,
    ) -> ShopSession:
        secret = self._settings.SHOPIFY_API_SECRET
        if not verify_oauth_hmac(secret, query_items):
            raise AuthStateError("Invalid OAuth HMAC")

        params = dict(query_items)
        shop = params.get("shop")
        code = params.get("code")
        state = params.get("state")
        if not shop or not code or not state:
            raise AuthStateError("Missing required OAuth callback params: shop, code, state")
        shop_domain = normalize_shop_domain(shop)

        cookie_value = unsign_value(
            secret,
            state_cookie,
            max_age_seconds=self._settings.SHOPIFY_STATE_TTL_SECONDS,
        )
        if cookie_value is None:
            raise AuthStateError("OAuth state cookie is missing or expired")
        expected_state, _, expected_shop = cookie_value.partition(":")
        if not hmac.compare_digest(expected_state.encode("utf-8"), state.encode("utf-8")):
            raise AuthStateError("OAuth state does not match the state cookie")
        if expected_shop != shop_domain:
            raise AuthStateError("OAuth state does not match the shop domain")
        if not self._states.consume(state=state, shop=shop_domain):
            raise AuthStateError("OAuth state has already been used")

        async with self._lock_for(shop_domain):
            try:
                access_token, scopes = await self._api.exchange_code_for_access_token(
                    shop_domain=shop_domain,
                    code=code,
                )
            except ShopifyApiError as exc:
                raise AuthExchangeError(
                    f"OAuth token exchange failed: {exc}",
                    shop=shop_domain,
                ) from exc

            record = ShopSession(shop=shop_domain, access_token=access_token, scope=scopes)

            try:
                await self._register_required_webhooks(record)
            except ShopifyApiError as exc:
                logger.warning(
                    "Webhook registration failed; installation not recorded",
                    extra={"shop": shop_domain, "error": str(exc)},
                )
                raise AuthExchangeError(
                    f"Webhook registration failed: {exc}",
                    shop=shop_domain,
                    retryable=True,
                ) from exc

            with unit_of_work(self._session_factory) as db:
                self._storage.store(record, db=db)
                self._installations.add(shop_domain, db=db)

        logger.info("Shop installed", extra={"shop": shop_domain, "scopes": scopes})
        return record

    async def _register_required_webhooks(self, record: ShopSession) -> None:
        for topic in self._webhook_topics:
            await self._api.register_webhook(
                shop_domain=record.shop,
                access_token=record.access_token,
                topic=topic,
                callback_url=self.webhook_callback_url,
            )

    def _lock_for(self, shop: str) -> asyncio.Lock:
        lock = self._locks.get(shop)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[shop] = lock
        return lock

    def issue_session_cookie(self, shop: str) -> str:
        now = int(time.time())
        claims = {
            "iss": self._settings.app_base_url,
            "sub": shop,
            "iat": now,
            "exp": now + self._settings.SHOPIFY_SESSION_TTL_SECONDS,
        }
        return jwt.encode(claims, self._settings.SHOPIFY_API_SECRET, algorithm=_JWT_ALGORITHM)

    def load_current_session(self, request: Any) -> ShopSession | None:
        """Resolve the offline session for the shop the request speaks for.

        An App Bridge bearer token wins over the app session cookie. Anything
        unsigned, expired or pointing at an unknown shop resolves to None.
        """
        shop = self._shop_from_bearer(request.headers.get("authorization"))
        if shop is None:
            shop = self._shop_from_cookie(request.cookies.get(self._settings.SHOPIFY_SESSION_COOKIE))
        if shop is None:
            return None
        return self._storage.load(shop)

    def _shop_from_bearer(self, authorization: str | None) -> str | None:
        if not authorization or not authorization.startswith("Bearer "):
            return None
        token = authorization[7:].strip()
        try:
            claims = jwt.decode(
                token,
                self._settings.SHOPIFY_API_SECRET,
                algorithms=[_JWT_ALGORITHM],
                audience=self._settings.SHOPIFY_API_KEY,
                options={"leeway": _BEARER_LEEWAY_SECONDS},
            )
        except JWTError as exc:
            logger.debug("Rejected session token", extra={"error": str(exc)})
            return None
        dest = claims.get("dest")
        if not isinstance(dest, str):
            return None
        return sanitize_shop_domain(urlparse(dest).hostname)

    def _shop_from_cookie(self, cookie_value: str | None) -> str | None:
        if not cookie_value:
            return None
        try:
            claims = jwt.decode(
                cookie_value,
                self._settings.SHOPIFY_API_SECRET,
                algorithms=[_JWT_ALGORITHM],
                issuer=self._settings.app_base_url,
            )
        except JWTError as exc:
            logger.debug("Rejected session cookie", extra={"error": str(exc)})
            return None
        return sanitize_shop_domain(claims.get("sub"))
