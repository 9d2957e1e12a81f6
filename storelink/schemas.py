from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, RootModel


class MemoChange(BaseModel):
    productId: str = Field(min_length=1, max_length=255)
    memo: str = Field(default="", max_length=10_000)


class MemoUpdateRequest(RootModel[list[MemoChange]]):
    pass


class MemoResponse(BaseModel):
    productId: str
    memo: str
    updatedAt: datetime


class MerchantResponse(BaseModel):
    shop: str
    usageSubId: str | None = None
    createdAt: datetime
    memos: list[MemoResponse] = Field(default_factory=list)


class SubscriptionResponse(BaseModel):
    shop: str
    state: str
    subscriptionId: str | None = None
    name: str | None = None
    test: bool | None = None
