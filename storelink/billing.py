"""Recurring subscription lifecycle against the platform billing API.

Subscription state is never cached locally: it is derived on demand from the
shop's active subscriptions. The only local write is the usage line item id a
successful charge creation returns.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from storelink.config import Settings
from storelink.merchants import MerchantRepository
from storelink.shopify_api import ShopifyApiClient, ShopifyApiError
from storelink.storage import ShopSession

logger = logging.getLogger(__name__)


class UnknownPlanError(ValueError):
    def __init__(self, plan: str | None) -> None:
        super().__init__(f"Unknown billing plan: {plan!r}")
        self.plan = plan


class ChargeCreationError(Exception):
    pass


class ChargeCancellationError(Exception):
    pass


class SubscriptionQueryError(Exception):
    pass


class SubscriptionState(str, enum.Enum):
    NO_SUBSCRIPTION = "NO_SUBSCRIPTION"
    PENDING_CONFIRMATION = "PENDING_CONFIRMATION"
    ACTIVE = "ACTIVE"
    CANCELED = "CANCELED"


@dataclass(frozen=True)
class BillingPlan:
    name: str
    price: Decimal
    discount_price: Decimal
    usage_cap: Decimal
    usage_terms: str

    @property
    def discount_amount(self) -> Decimal:
        return self.price - self.discount_price


@dataclass(frozen=True)
class SubscriptionStatus:
    state: SubscriptionState
    subscription_id: str | None = None
    name: str | None = None
    test: bool | None = None


class DiscountLookup(Protocol):
    def is_eligible(self, shop: str) -> bool: ...


def load_plans(settings: Settings) -> dict[str, BillingPlan]:
    return {
        name.strip().lower(): BillingPlan(
            name=name.strip().lower(),
            price=plan.price,
            discount_price=plan.discountPrice,
            usage_cap=plan.usageCap,
            usage_terms=plan.usageTerms,
        )
        for name, plan in settings.SHOPIFY_BILLING_PLANS.items()
    }


_STATUS_TO_STATE = {
    "PENDING": SubscriptionState.PENDING_CONFIRMATION,
    "ACCEPTED": SubscriptionState.PENDING_CONFIRMATION,
    "ACTIVE": SubscriptionState.ACTIVE,
    "CANCELLED": SubscriptionState.CANCELED,
    "DECLINED": SubscriptionState.CANCELED,
    "EXPIRED": SubscriptionState.CANCELED,
    "FROZEN": SubscriptionState.ACTIVE,
}


class BillingReconciler:
    def __init__(
        self,
        *,
        settings: Settings,
        api: ShopifyApiClient,
        merchants: MerchantRepository,
        discounts: DiscountLookup,
    ) -> None:
        self._settings = settings
        self._api = api
        self._merchants = merchants
        self._discounts = discounts
        self._plans = load_plans(settings)

    def resolve_plan(self, plan: str | None) -> BillingPlan:
        resolved = self._plans.get((plan or "").strip().lower())
        if resolved is None:
            raise UnknownPlanError(plan)
        return resolved

    def _return_url(self, shop: str) -> str:
        return f"https://{shop}/admin/apps/{self._settings.SHOPIFY_API_KEY}"

    async def start_charge(self, *, shop: str, access_token: str, plan: str | None) -> str:
        billing_plan = self.resolve_plan(plan)
        discounted = self._discounts.is_eligible(shop)
        log_extra = {"shop": shop, "plan": billing_plan.name, "discounted": discounted}

        try:
            if discounted:
                charge = await self._api.create_discount_subscription(
                    shop_domain=shop,
                    access_token=access_token,
                    name=billing_plan.name,
                    price=billing_plan.price,
                    discount_amount=billing_plan.discount_amount,
                    usage_cap=billing_plan.usage_cap,
                    usage_terms=billing_plan.usage_terms,
                    return_url=self._return_url(shop),
                )
            else:
                charge = await self._api.create_subscription(
                    shop_domain=shop,
                    access_token=access_token,
                    name=billing_plan.name,
                    price=billing_plan.price,
                    usage_cap=billing_plan.usage_cap,
                    usage_terms=billing_plan.usage_terms,
                    return_url=self._return_url(shop),
                )
        except ShopifyApiError as exc:
            logger.error("Subscription creation failed", extra={**log_extra, "error": str(exc)})
            raise ChargeCreationError(str(exc)) from exc

        line_items = charge["appSubscription"]["lineItems"]
        if len(line_items) > 1 and line_items[1].get("id"):
            self._merchants.get_or_create(shop=shop, access_token=access_token)
            self._merchants.set_usage_subscription_id(shop=shop, usage_sub_id=line_items[1]["id"])

        logger.info("Subscription created, awaiting confirmation", extra=log_extra)
        return charge["confirmationUrl"]

    async def check_subscription(self, session: ShopSession) -> SubscriptionStatus:
        try:
            subscriptions = await self._api.get_active_subscriptions(
                shop_domain=session.shop,
                access_token=session.access_token,
            )
        except ShopifyApiError as exc:
            raise SubscriptionQueryError(f"Could not query subscriptions: {exc}") from exc
        if not subscriptions:
            return SubscriptionStatus(state=SubscriptionState.NO_SUBSCRIPTION)
        current = subscriptions[0]
        state = _STATUS_TO_STATE.get(str(current.get("status") or "").upper(), SubscriptionState.ACTIVE)
        return SubscriptionStatus(
            state=state,
            subscription_id=current.get("id"),
            name=current.get("name"),
            test=current.get("test"),
        )

    async def cancel_charge(self, session: ShopSession) -> None:
        try:
            subscriptions = await self._api.get_active_subscriptions(
                shop_domain=session.shop,
                access_token=session.access_token,
            )
            if not subscriptions:
                logger.info("No active subscription to cancel", extra={"shop": session.shop})
                return
            subscription_id = subscriptions[0].get("id")
            user_errors = await self._api.cancel_subscription(
                shop_domain=session.shop,
                access_token=session.access_token,
                subscription_id=subscription_id,
            )
        except ShopifyApiError as exc:
            logger.error("Subscription cancellation failed", extra={"shop": session.shop, "error": str(exc)})
            raise ChargeCancellationError(str(exc)) from exc

        if user_errors:
            messages = "; ".join(str(error.get("message")) for error in user_errors)
            raise ChargeCancellationError(f"appSubscriptionCancel failed: {messages}")
        logger.info("Subscription canceled", extra={"shop": session.shop, "subscription_id": subscription_id})
