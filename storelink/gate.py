from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import urlencode

from fastapi import status
from fastapi.responses import HTMLResponse, RedirectResponse, Response

from storelink.merchants import MerchantRepository
from storelink.security import sanitize_shop_domain
from storelink.sessions import SessionManager
from storelink.storage import InstallationStore, ShopSession

logger = logging.getLogger(__name__)

REAUTHORIZE_HEADER = "X-Shopify-API-Request-Failure-Reauthorize"
REAUTHORIZE_URL_HEADER = "X-Shopify-API-Request-Failure-Reauthorize-Url"


class NoSessionError(Exception):
    pass


class ReauthorizationRequired(Exception):
    def __init__(self, shop: str | None, host: str | None = None) -> None:
        super().__init__("Shop must re-run the install handshake")
        self.shop = shop
        self.host = host


def auth_path(shop: str | None, host: str | None = None) -> str:
    return "/api/auth?" + urlencode({"shop": shop or "", "host": host or ""})


def frame_ancestors_csp(shop: str) -> str:
    return f"frame-ancestors https://{shop} https://admin.shopify.com;"


def top_level_redirect(request: Any, url: str) -> Response:
    """Leave the embedded iframe before navigating to `url`.

    Fetches issued by App Bridge carry a bearer token and cannot follow a
    redirect out of the admin frame, so they get a 403 with the reauthorize
    headers the frontend watches for.
    """
    if (request.headers.get("authorization") or "").startswith("Bearer "):
        return Response(
            status_code=status.HTTP_403_FORBIDDEN,
            headers={
                REAUTHORIZE_HEADER: "1",
                REAUTHORIZE_URL_HEADER: url,
                "Access-Control-Expose-Headers": f"{REAUTHORIZE_HEADER}, {REAUTHORIZE_URL_HEADER}",
            },
        )
    return RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)


_TOP_LEVEL_PAGE = """<!DOCTYPE html>
<html>
  <head>
    <meta charset="utf-8" />
    <script src="https://unpkg.com/@shopify/app-bridge@3"></script>
    <script>
      document.addEventListener("DOMContentLoaded", function () {
        var config = %(config)s;
        if (window.top === window.self) {
          window.location.href = config.redirectUrl;
        } else {
          var AppBridge = window["app-bridge"];
          var app = AppBridge.default({ apiKey: config.apiKey, host: config.host });
          AppBridge.actions.Redirect.create(app).dispatch(
            AppBridge.actions.Redirect.Action.REMOTE,
            config.redirectUrl
          );
        }
      });
    </script>
  </head>
  <body></body>
</html>
"""


def render_top_level_page(*, api_key: str, host: str, redirect_url: str) -> HTMLResponse:
    config = json.dumps({"apiKey": api_key, "host": host, "redirectUrl": redirect_url})
    config = config.replace("<", "\\u003c").replace(">", "\\u003e").replace("&", "\\u0026")
    return HTMLResponse(content=_TOP_LEVEL_PAGE % {"config": config})


class AccessGate:
    def __init__(
        self,
        *,
        sessions: SessionManager,
        installations: InstallationStore,
        merchants: MerchantRepository,
    ) -> None:
        self._sessions = sessions
        self._installations = installations
        self._merchants = merchants

    def authorize(self, request: Any) -> ShopSession:
        session = self._sessions.load_current_session(request)
        if session is None:
            raise NoSessionError("No active session for this request")
        if not self._installations.includes(session.shop):
            raise ReauthorizationRequired(session.shop, request.query_params.get("host"))
        return session

    def admit(self, request: Any) -> ShopSession:
        session = self._sessions.load_current_session(request)
        if session is None:
            shop = sanitize_shop_domain(request.query_params.get("shop"))
            if shop is None:
                raise NoSessionError("No active session and no shop to re-authorize")
            raise ReauthorizationRequired(shop, request.query_params.get("host"))
        if not self._installations.includes(session.shop):
            logger.info("Session found for uninstalled shop, re-authorizing", extra={"shop": session.shop})
            raise ReauthorizationRequired(session.shop, request.query_params.get("host"))
        self._merchants.get_or_create(shop=session.shop, access_token=session.access_token)
        return session

    def is_installed(self, shop: str) -> bool:
        return self._installations.includes(shop)
