from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

import httpx

from storelink.config import Settings

logger = logging.getLogger(__name__)

_WEBHOOK_SUBSCRIPTION_CREATE = """
mutation webhookSubscriptionCreate(
    $topic: WebhookSubscriptionTopic!
    $webhookSubscription: WebhookSubscriptionInput!
) {
    webhookSubscriptionCreate(topic: $topic, webhookSubscription: $webhookSubscription) {
        webhookSubscription { id }
        userErrors { field message }
    }
}
"""

_WEBHOOK_SUBSCRIPTIONS_BY_TOPIC = """
query webhookSubscriptionsByTopic($topics: [WebhookSubscriptionTopic!]) {
    webhookSubscriptions(first: 50, topics: $topics) {
        edges {
            node {
                id
                endpoint {
                    __typename
                    ... on WebhookHttpEndpoint { callbackUrl }
                }
            }
        }
    }
}
"""

_ACTIVE_SUBSCRIPTIONS_QUERY = """
query activeSubscriptions {
    currentAppInstallation {
        activeSubscriptions { id name status test createdAt }
    }
}
"""

_CANCEL_SUBSCRIPTION_MUTATION = """
mutation appSubscriptionCancel($id: ID!) {
    appSubscriptionCancel(id: $id) {
        appSubscription { id status }
        userErrors { field message }
    }
}
"""

_SUBSCRIPTION_FIELDS = """
            userErrors {
                field
                message
            }
            confirmationUrl
            appSubscription {
                id
                status
                lineItems {
                    id
                    plan {
                        pricingDetails {
                            __typename
                        }
                    }
                }
            }
"""

_CREATE_SUBSCRIPTION_MUTATION = (
    """
mutation appSubscriptionCreate(
    $name: String!
    $returnUrl: URL!
    $test: Boolean
    $price: Decimal!
    $currencyCode: CurrencyCode!
    $cappedAmount: Decimal!
    $terms: String!
) {
    appSubscriptionCreate(
        name: $name
        returnUrl: $returnUrl
        test: $test
        lineItems: [
            {
                plan: {
                    appRecurringPricingDetails: {
                        price: { amount: $price, currencyCode: $currencyCode }
                        interval: EVERY_30_DAYS
                    }
                }
            }
            {
                plan: {
                    appUsagePricingDetails: {
                        cappedAmount: { amount: $cappedAmount, currencyCode: $currencyCode }
                        terms: $terms
                    }
                }
            }
        ]
    ) {"""
    + _SUBSCRIPTION_FIELDS
    + """
    }
}
"""
)

_CREATE_DISCOUNT_SUBSCRIPTION_MUTATION = (
    """
mutation appSubscriptionCreateDiscounted(
    $name: String!
    $returnUrl: URL!
    $test: Boolean
    $price: Decimal!
    $discountAmount: Decimal!
    $currencyCode: CurrencyCode!
    $cappedAmount: Decimal!
    $terms: String!
) {
    appSubscriptionCreate(
        name: $name
        returnUrl: $returnUrl
        test: $test
        lineItems: [
            {
                plan: {
                    appRecurringPricingDetails: {
                        price: { amount: $price, currencyCode: $currencyCode }
                        interval: EVERY_30_DAYS
                        discount: { value: { amount: $discountAmount } }
                    }
                }
            }
            {
                plan: {
                    appUsagePricingDetails: {
                        cappedAmount: { amount: $cappedAmount, currencyCode: $currencyCode }
                        terms: $terms
                    }
                }
            }
        ]
    ) {"""
    + _SUBSCRIPTION_FIELDS
    + """
    }
}
"""
)


class ShopifyApiError(RuntimeError):
    def __init__(self, *, message: str, status_code: int = 502) -> None:
        super().__init__(message)
        self.status_code = status_code


def _user_error_messages(user_errors: list[dict[str, Any]]) -> str:
    return "; ".join(str(error.get("message")) for error in user_errors)


def _address_taken(user_errors: list[dict[str, Any]]) -> bool:
    return any("already been taken" in str(error.get("message") or "").lower() for error in user_errors)


class ShopifyApiClient:
    """Admin API calls made on behalf of an installed shop.

    Every failure surfaces as `ShopifyApiError`; callers decide how it maps to
    their own domain errors.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._timeout = settings.SHOPIFY_REQUEST_TIMEOUT_SECONDS

    async def exchange_code_for_access_token(self, *, shop_domain: str, code: str) -> tuple[str, str]:
        body = await self._post_json(
            url=f"https://{shop_domain}/admin/oauth/access_token",
            payload={
                "client_id": self._settings.SHOPIFY_API_KEY,
                "client_secret": self._settings.SHOPIFY_API_SECRET,
                "code": code,
            },
        )
        access_token = body.get("access_token")
        scopes = body.get("scope")
        if not isinstance(access_token, str) or not access_token:
            raise ShopifyApiError(message="OAuth token exchange response is missing access_token")
        if not isinstance(scopes, str):
            raise ShopifyApiError(message="OAuth token exchange response is missing scope")
        return access_token, scopes

    async def register_webhook(
        self,
        *,
        shop_domain: str,
        access_token: str,
        topic: str,
        callback_url: str,
    ) -> str:
        data = await self._admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            payload={
                "query": _WEBHOOK_SUBSCRIPTION_CREATE,
                "variables": {
                    "topic": topic,
                    "webhookSubscription": {"callbackUrl": callback_url, "format": "JSON"},
                },
            },
        )
        result = data.get("webhookSubscriptionCreate") or {}
        user_errors = result.get("userErrors") or []
        if not user_errors:
            webhook_id = (result.get("webhookSubscription") or {}).get("id")
            if not isinstance(webhook_id, str) or not webhook_id:
                raise ShopifyApiError(message=f"Webhook registration for {topic} returned no id")
            return webhook_id

        # The platform refuses a second subscription for the same address.
        if _address_taken(user_errors):
            existing_id = await self._subscribed_webhook_id(
                shop_domain=shop_domain,
                access_token=access_token,
                topic=topic,
                callback_url=callback_url,
            )
            if existing_id is not None:
                logger.info("Reusing webhook subscription", extra={"shop": shop_domain, "topic": topic})
                return existing_id
        raise ShopifyApiError(message=f"Webhook registration failed for {topic}: {_user_error_messages(user_errors)}")

    async def _subscribed_webhook_id(
        self,
        *,
        shop_domain: str,
        access_token: str,
        topic: str,
        callback_url: str,
    ) -> str | None:
        data = await self._admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            payload={"query": _WEBHOOK_SUBSCRIPTIONS_BY_TOPIC, "variables": {"topics": [topic]}},
        )
        wanted = callback_url.rstrip("/")
        for edge in (data.get("webhookSubscriptions") or {}).get("edges") or []:
            node = edge.get("node") or {}
            endpoint = node.get("endpoint") or {}
            if endpoint.get("__typename") != "WebhookHttpEndpoint":
                continue
            if str(endpoint.get("callbackUrl") or "").rstrip("/") == wanted and node.get("id"):
                return str(node["id"])
        return None

    async def create_subscription(
        self,
        *,
        shop_domain: str,
        access_token: str,
        name: str,
        price: Decimal,
        usage_cap: Decimal,
        usage_terms: str,
        return_url: str,
    ) -> dict[str, Any]:
        variables = self._subscription_variables(
            name=name,
            price=price,
            usage_cap=usage_cap,
            usage_terms=usage_terms,
            return_url=return_url,
        )
        data = await self._admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            payload={"query": _CREATE_SUBSCRIPTION_MUTATION, "variables": variables},
        )
        return self._coerce_subscription_create(data)

    async def create_discount_subscription(
        self,
        *,
        shop_domain: str,
        access_token: str,
        name: str,
        price: Decimal,
        discount_amount: Decimal,
        usage_cap: Decimal,
        usage_terms: str,
        return_url: str,
    ) -> dict[str, Any]:
        variables = self._subscription_variables(
            name=name,
            price=price,
            usage_cap=usage_cap,
            usage_terms=usage_terms,
            return_url=return_url,
        )
        variables["discountAmount"] = str(discount_amount)
        data = await self._admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            payload={"query": _CREATE_DISCOUNT_SUBSCRIPTION_MUTATION, "variables": variables},
        )
        return self._coerce_subscription_create(data)

    def _subscription_variables(
        self,
        *,
        name: str,
        price: Decimal,
        usage_cap: Decimal,
        usage_terms: str,
        return_url: str,
    ) -> dict[str, Any]:
        return {
            "name": name,
            "returnUrl": return_url,
            "test": self._settings.SHOPIFY_BILLING_TEST_MODE,
            "price": str(price),
            "currencyCode": self._settings.SHOPIFY_BILLING_CURRENCY,
            "cappedAmount": str(usage_cap),
            "terms": usage_terms,
        }

    @staticmethod
    def _coerce_subscription_create(data: dict[str, Any]) -> dict[str, Any]:
        result = data.get("appSubscriptionCreate") or {}
        user_errors = result.get("userErrors") or []
        if user_errors:
            raise ShopifyApiError(
                message=f"appSubscriptionCreate failed: {_user_error_messages(user_errors)}",
                status_code=409,
            )
        confirmation_url = result.get("confirmationUrl")
        subscription = result.get("appSubscription") or {}
        if not isinstance(confirmation_url, str) or not confirmation_url:
            raise ShopifyApiError(message="appSubscriptionCreate response is missing confirmationUrl")
        if not isinstance(subscription.get("id"), str):
            raise ShopifyApiError(message="appSubscriptionCreate response is missing appSubscription.id")
        return {
            "confirmationUrl": confirmation_url,
            "appSubscription": {
                "id": subscription["id"],
                "status": subscription.get("status"),
                "lineItems": [
                    {"id": item.get("id")}
                    for item in subscription.get("lineItems") or []
                    if isinstance(item, dict)
                ],
            },
        }

    async def get_active_subscriptions(self, *, shop_domain: str, access_token: str) -> list[dict[str, Any]]:
        data = await self._admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            payload={"query": _ACTIVE_SUBSCRIPTIONS_QUERY},
        )
        installation = data.get("currentAppInstallation") or {}
        return [item for item in installation.get("activeSubscriptions") or [] if isinstance(item, dict)]

    async def cancel_subscription(
        self,
        *,
        shop_domain: str,
        access_token: str,
        subscription_id: str,
    ) -> list[dict[str, Any]]:
        data = await self._admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            payload={"query": _CANCEL_SUBSCRIPTION_MUTATION, "variables": {"id": subscription_id}},
        )
        return list((data.get("appSubscriptionCancel") or {}).get("userErrors") or [])

    def _admin_graphql_url(self, shop_domain: str) -> str:
        return f"https://{shop_domain}/admin/api/{self._settings.SHOPIFY_ADMIN_API_VERSION}/graphql.json"

    async def _admin_graphql(
        self,
        *,
        shop_domain: str,
        access_token: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        body = await self._post_json(
            url=self._admin_graphql_url(shop_domain),
            payload=payload,
            headers={"X-Shopify-Access-Token": access_token},
        )
        if body.get("errors"):
            raise ShopifyApiError(message=f"Admin GraphQL errors for {shop_domain}: {body['errors']}")
        data = body.get("data")
        if not isinstance(data, dict):
            raise ShopifyApiError(message=f"Admin GraphQL response for {shop_domain} is missing data")
        return data

    async def _post_json(
        self,
        *,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, headers={"Accept": "application/json"}) as client:
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                body = response.json()
        except httpx.TimeoutException as exc:
            raise ShopifyApiError(message=f"Timed out calling {url}", status_code=504) from exc
        except httpx.HTTPStatusError as exc:
            raise ShopifyApiError(
                message=f"Shopify answered {exc.response.status_code} for {url}: {exc.response.text}",
            ) from exc
        except httpx.RequestError as exc:
            raise ShopifyApiError(message=f"Network error calling {url}: {exc}") from exc
        except ValueError as exc:
            raise ShopifyApiError(message=f"Shopify returned invalid JSON for {url}") from exc

        if not isinstance(body, dict):
            raise ShopifyApiError(message=f"Shopify response for {url} must be a JSON object")
        return body
