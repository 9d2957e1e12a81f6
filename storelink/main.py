from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from urllib.parse import urlencode

from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, ORJSONResponse, PlainTextResponse, RedirectResponse, Response

from storelink.billing import (
    BillingReconciler,
    ChargeCancellationError,
    ChargeCreationError,
    SubscriptionQueryError,
    UnknownPlanError,
)
from storelink.config import Settings, settings
from storelink.db import build_engine, build_session_factory, init_db
from storelink.gate import (
    AccessGate,
    NoSessionError,
    ReauthorizationRequired,
    auth_path,
    frame_ancestors_csp,
    render_top_level_page,
    top_level_redirect,
)
from storelink.merchants import MerchantRepository, StoreDiscountLookup
from storelink.schemas import MemoResponse, MemoUpdateRequest, MerchantResponse, SubscriptionResponse
from storelink.security import InvalidShopError, WebhookSignatureVerifier, normalize_shop_domain, sanitize_shop_domain
from storelink.sessions import AuthExchangeError, AuthStateError, SessionManager
from storelink.shopify_api import ShopifyApiClient
from storelink.storage import InstallationStore, ShopSession, SqlSessionStorage, WebhookLedger
from storelink.webhooks import (
    ComplianceProcessor,
    FulfillmentProcessor,
    LoggingFulfillmentProcessor,
    MerchantComplianceProcessor,
    WebhookDelivery,
    WebhookDispatcher,
    build_webhook_handlers,
    registrable_topics,
)

logger = logging.getLogger(__name__)


def get_gate(request: Request) -> AccessGate:
    return request.app.state.gate


def require_session(request: Request, gate: AccessGate = Depends(get_gate)) -> ShopSession:
    return gate.authorize(request)


def require_installed_session(request: Request, gate: AccessGate = Depends(get_gate)) -> ShopSession:
    return gate.admit(request)


def create_app(
    app_settings: Settings | None = None,
    *,
    shopify_api: ShopifyApiClient | None = None,
    compliance: ComplianceProcessor | None = None,
    fulfillment: FulfillmentProcessor | None = None,
) -> FastAPI:
    config = app_settings or settings
    engine = build_engine(config)
    session_factory = build_session_factory(engine)
    api = shopify_api or ShopifyApiClient(config)

    installations = InstallationStore(session_factory)
    merchants = MerchantRepository(session_factory)
    handlers = build_webhook_handlers(
        installations=installations,
        compliance=compliance or MerchantComplianceProcessor(merchants),
        fulfillment=fulfillment or LoggingFulfillmentProcessor(),
    )
    sessions = SessionManager(
        settings=config,
        api=api,
        storage=SqlSessionStorage(session_factory),
        installations=installations,
        session_factory=session_factory,
        webhook_topics=registrable_topics(handlers),
    )
    dispatcher = WebhookDispatcher(
        verifier=WebhookSignatureVerifier(config.SHOPIFY_API_SECRET),
        handlers=handlers,
        ledger=WebhookLedger(session_factory),
        timeout_seconds=config.SHOPIFY_WEBHOOK_HANDLER_TIMEOUT_SECONDS,
    )
    billing = BillingReconciler(
        settings=config,
        api=api,
        merchants=merchants,
        discounts=StoreDiscountLookup(session_factory),
    )
    gate = AccessGate(sessions=sessions, installations=installations, merchants=merchants)

    @asynccontextmanager
    async def _app_lifespan(_app: FastAPI) -> AsyncIterator[None]:
        logging.basicConfig(level=config.LOG_LEVEL.upper())
        init_db(engine)
        try:
            yield
        finally:
            engine.dispose()

    app = FastAPI(
        title="Storelink Shopify App",
        default_response_class=ORJSONResponse,
        lifespan=_app_lifespan,
    )
    app.state.settings = config
    app.state.session_factory = session_factory
    app.state.shopify_api = api
    app.state.installations = installations
    app.state.merchants = merchants
    app.state.sessions = sessions
    app.state.dispatcher = dispatcher
    app.state.billing = billing
    app.state.gate = gate

    if config.BACKEND_CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=sorted(set(config.BACKEND_CORS_ORIGINS)),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    def _secure_cookie(response: Response, key: str, value: str, *, max_age: int, samesite: str) -> None:
        response.set_cookie(key, value, max_age=max_age, httponly=True, secure=True, samesite=samesite)

    @app.exception_handler(InvalidShopError)
    async def invalid_shop_handler(_request: Request, exc: InvalidShopError) -> ORJSONResponse:
        return ORJSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})

    @app.exception_handler(AuthStateError)
    async def auth_state_handler(_request: Request, exc: AuthStateError) -> ORJSONResponse:
        logger.warning("OAuth callback rejected", extra={"error": str(exc)})
        response = ORJSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"detail": str(exc)})
        response.delete_cookie(config.SHOPIFY_STATE_COOKIE)
        return response

    @app.exception_handler(AuthExchangeError)
    async def auth_exchange_handler(_request: Request, exc: AuthExchangeError) -> ORJSONResponse:
        logger.error("OAuth handshake failed", extra={"shop": exc.shop, "retryable": exc.retryable})
        response = ORJSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"detail": str(exc), "retryable": exc.retryable},
        )
        response.delete_cookie(config.SHOPIFY_STATE_COOKIE)
        return response

    @app.exception_handler(NoSessionError)
    async def no_session_handler(_request: Request, exc: NoSessionError) -> ORJSONResponse:
        return ORJSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"detail": str(exc)})

    @app.exception_handler(ReauthorizationRequired)
    async def reauthorization_handler(request: Request, exc: ReauthorizationRequired) -> Response:
        return top_level_redirect(request, f"{config.app_base_url}{auth_path(exc.shop, exc.host)}")

    @app.exception_handler(UnknownPlanError)
    async def unknown_plan_handler(_request: Request, exc: UnknownPlanError) -> ORJSONResponse:
        return ORJSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})

    @app.exception_handler(ChargeCreationError)
    @app.exception_handler(ChargeCancellationError)
    async def billing_error_handler(_request: Request, exc: Exception) -> ORJSONResponse:
        return ORJSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": str(exc)})

    @app.exception_handler(SubscriptionQueryError)
    async def subscription_query_handler(_request: Request, exc: SubscriptionQueryError) -> ORJSONResponse:
        return ORJSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"detail": str(exc)})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(_request: Request, exc: Exception) -> ORJSONResponse:
        logger.exception("Unhandled server exception", exc_info=exc)
        return ORJSONResponse(status_code=500, content={"detail": "Internal server error."})

    @app.get("/health")
    def health() -> dict[str, bool]:
        return {"ok": True}

    @app.get("/api/auth")
    def auth_begin(request: Request, shop: str | None = None, host: str | None = None):
        shop_domain = normalize_shop_domain(shop)
        top_level_cookie = request.cookies.get(config.SHOPIFY_TOP_LEVEL_OAUTH_COOKIE)
        if not sessions.has_top_level_cookie(top_level_cookie):
            query = urlencode({"shop": shop_domain, "host": host or ""})
            return RedirectResponse(url=f"/api/auth/toplevel?{query}", status_code=status.HTTP_302_FOUND)

        redirect = sessions.begin_auth(shop_domain)
        response = RedirectResponse(url=redirect.url, status_code=status.HTTP_302_FOUND)
        _secure_cookie(
            response,
            config.SHOPIFY_STATE_COOKIE,
            redirect.state_cookie,
            max_age=config.SHOPIFY_STATE_TTL_SECONDS,
            samesite="lax",
        )
        return response

    @app.get("/api/auth/toplevel")
    def auth_top_level(shop: str | None = None, host: str | None = None):
        shop_domain = normalize_shop_domain(shop)
        response = render_top_level_page(
            api_key=config.SHOPIFY_API_KEY,
            host=host or "",
            redirect_url=f"{config.app_base_url}{auth_path(shop_domain, host)}",
        )
        _secure_cookie(
            response,
            config.SHOPIFY_TOP_LEVEL_OAUTH_COOKIE,
            sessions.top_level_cookie_value(),
            max_age=config.SHOPIFY_STATE_TTL_SECONDS,
            samesite="lax",
        )
        return response

    @app.get("/api/auth/callback")
    async def auth_callback(request: Request):
        record = await sessions.complete_auth(
            list(request.query_params.multi_items()),
            request.cookies.get(config.SHOPIFY_STATE_COOKIE),
        )
        query = urlencode({"shop": record.shop, "host": request.query_params.get("host") or ""})
        response = RedirectResponse(url=f"/?{query}", status_code=status.HTTP_302_FOUND)
        response.delete_cookie(config.SHOPIFY_STATE_COOKIE)
        _secure_cookie(
            response,
            config.SHOPIFY_SESSION_COOKIE,
            sessions.issue_session_cookie(record.shop),
            max_age=config.SHOPIFY_SESSION_TTL_SECONDS,
            samesite="none",
        )
        return response

    @app.post("/api/webhooks")
    async def webhooks(request: Request):
        body = await request.body()
        delivery = WebhookDelivery.from_headers(request.headers, body)
        return Response(status_code=await dispatcher.handle(delivery))

    @app.get("/api/charge")
    async def start_charge(
        request: Request,
        plan: str | None = None,
        session: ShopSession = Depends(require_session),
    ):
        confirmation_url = await billing.start_charge(
            shop=session.shop,
            access_token=session.access_token,
            plan=plan,
        )
        return top_level_redirect(request, confirmation_url)

    @app.delete("/api/charge")
    async def cancel_charge(session: ShopSession = Depends(require_session)):
        await billing.cancel_charge(session)
        return Response(status_code=status.HTTP_200_OK)

    @app.get("/api/subscription", response_model=SubscriptionResponse)
    async def subscription_status(session: ShopSession = Depends(require_installed_session)):
        current = await billing.check_subscription(session)
        return SubscriptionResponse(
            shop=session.shop,
            state=current.state.value,
            subscriptionId=current.subscription_id,
            name=current.name,
            test=current.test,
        )

    @app.get("/api/user", response_model=MerchantResponse)
    def get_user(session: ShopSession = Depends(require_installed_session)):
        merchant = merchants.get_or_create(shop=session.shop, access_token=session.access_token)
        return MerchantResponse(
            shop=merchant.shop,
            usageSubId=merchant.usage_sub_id,
            createdAt=merchant.created_at,
            memos=[
                MemoResponse(productId=memo.product_id, memo=memo.memo, updatedAt=memo.updated_at)
                for memo in merchants.list_memos(session.shop)
            ],
        )

    @app.put("/api/memos/update")
    def update_memos(
        payload: MemoUpdateRequest,
        session: ShopSession = Depends(require_installed_session),
    ):
        updated = merchants.update_memos(
            shop=session.shop,
            memos=[(change.productId, change.memo) for change in payload.root],
        )
        logger.info("Updated product memos", extra={"shop": session.shop, "count": updated})
        return Response(status_code=status.HTTP_200_OK)

    @app.get("/{full_path:path}", include_in_schema=False)
    def embedded_shell(request: Request, full_path: str):
        shop = sanitize_shop_domain(request.query_params.get("shop"))
        if not shop:
            return PlainTextResponse("No shop provided", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

        host = request.query_params.get("host")
        if not host or not gate.is_installed(shop):
            return RedirectResponse(url=auth_path(shop, host), status_code=status.HTTP_302_FOUND)

        index_path = Path(config.FRONTEND_DIST_PATH) / "index.html"
        return HTMLResponse(
            content=index_path.read_text(encoding="utf-8"),
            headers={"Content-Security-Policy": frame_ancestors_csp(shop)},
        )

    return app


app = create_app()
