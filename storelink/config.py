from __future__ import annotations

from decimal import Decimal
from typing import Annotated

from pydantic import AnyHttpUrl, BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class BillingPlanConfig(BaseModel):
    price: Decimal = Field(gt=0)
    discountPrice: Decimal = Field(gt=0)
    usageCap: Decimal = Field(gt=0)
    usageTerms: str = Field(min_length=1)

    @model_validator(mode="after")
    def validate_discount(self) -> "BillingPlanConfig":
        if self.discountPrice > self.price:
            raise ValueError("discountPrice must not exceed price")
        return self


def _default_plans() -> dict[str, BillingPlanConfig]:
    return {
        "basic": BillingPlanConfig(
            price=Decimal("3.99"),
            discountPrice=Decimal("1.99"),
            usageCap=Decimal("100.00"),
            usageTerms="Usage charges for memos synced beyond the plan allowance",
        )
    }


class Settings(BaseSettings):
    SHOPIFY_API_KEY: str
    SHOPIFY_API_SECRET: str
    SHOPIFY_APP_SCOPES: str
    SHOPIFY_APP_BASE_URL: AnyHttpUrl
    SHOPIFY_APP_DB_URL: str = "sqlite:///./storelink.db"
    SHOPIFY_ADMIN_API_VERSION: str = "2024-10"
    SHOPIFY_REQUEST_TIMEOUT_SECONDS: float = Field(default=20.0, gt=0)

    SHOPIFY_USE_ONLINE_TOKENS: bool = False
    SHOPIFY_TOP_LEVEL_OAUTH_COOKIE: str = "shopify_top_level_oauth"
    SHOPIFY_STATE_COOKIE: str = "shopify_app_state"
    SHOPIFY_STATE_TTL_SECONDS: int = Field(default=60, gt=0)
    SHOPIFY_SESSION_COOKIE: str = "shopify_app_session"
    SHOPIFY_SESSION_TTL_SECONDS: int = Field(default=86400, gt=0)
    SHOPIFY_WEBHOOK_HANDLER_TIMEOUT_SECONDS: float = Field(default=4.0, gt=0)

    SHOPIFY_BILLING_TEST_MODE: bool = True
    SHOPIFY_BILLING_CURRENCY: str = "USD"
    SHOPIFY_BILLING_PLANS: dict[str, BillingPlanConfig] = Field(default_factory=_default_plans)

    FRONTEND_DIST_PATH: str = "./frontend/dist"
    BACKEND_CORS_ORIGINS: Annotated[list[str], NoDecode] = Field(default_factory=list)
    LOG_LEVEL: str = "INFO"

    @field_validator("SHOPIFY_APP_SCOPES")
    @classmethod
    def validate_scopes(cls, value: str) -> str:
        scopes = [scope.strip() for scope in value.split(",") if scope.strip()]
        if not scopes:
            raise ValueError("SHOPIFY_APP_SCOPES must include at least one scope")
        return ",".join(scopes)

    @field_validator("SHOPIFY_USE_ONLINE_TOKENS")
    @classmethod
    def validate_offline_tokens(cls, value: bool) -> bool:
        if value:
            raise ValueError("Only offline (persistent) access tokens are supported")
        return value

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def split_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("SHOPIFY_BILLING_PLANS")
    @classmethod
    def validate_plans(cls, value: dict[str, BillingPlanConfig]) -> dict[str, BillingPlanConfig]:
        if not value:
            raise ValueError("SHOPIFY_BILLING_PLANS must define at least one plan")
        return value

    @property
    def app_base_url(self) -> str:
        return str(self.SHOPIFY_APP_BASE_URL).rstrip("/")

    @property
    def app_host_name(self) -> str:
        return self.app_base_url.split("://", 1)[-1]

    @property
    def admin_scopes_csv(self) -> str:
        return self.SHOPIFY_APP_SCOPES

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", frozen=True)


settings = Settings()
