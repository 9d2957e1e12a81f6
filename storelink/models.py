from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ShopSessionRecord(Base):
    __tablename__ = "shop_sessions"

    shop: Mapped[str] = mapped_column(String(length=255), primary_key=True)
    session_id: Mapped[str] = mapped_column(String(length=300), nullable=False, unique=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    scope: Mapped[str] = mapped_column(Text, nullable=False, default="")
    is_online: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class AppInstallation(Base):
    __tablename__ = "app_installations"

    shop: Mapped[str] = mapped_column(String(length=255), primary_key=True)
    installed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Merchant(Base):
    __tablename__ = "merchants"

    shop: Mapped[str] = mapped_column(String(length=255), primary_key=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    usage_sub_id: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class ProductMemo(Base):
    __tablename__ = "product_memos"
    __table_args__ = (UniqueConstraint("shop", "product_id", name="uq_product_memo"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop: Mapped[str] = mapped_column(String(length=255), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(String(length=255), nullable=False)
    memo: Mapped[str] = mapped_column(Text, nullable=False, default="")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class StoreDiscount(Base):
    __tablename__ = "store_discounts"

    shop: Mapped[str] = mapped_column(String(length=255), primary_key=True)
    eligible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class ProcessedWebhook(Base):
    __tablename__ = "processed_webhooks"
    __table_args__ = (
        UniqueConstraint("shop", "topic", "webhook_id", name="uq_processed_webhook"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop: Mapped[str] = mapped_column(String(length=255), nullable=False, index=True)
    topic: Mapped[str] = mapped_column(String(length=128), nullable=False)
    webhook_id: Mapped[str] = mapped_column(String(length=128), nullable=False)
    status: Mapped[str] = mapped_column(String(length=64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class OAuthState(Base):
    __tablename__ = "oauth_states"

    state: Mapped[str] = mapped_column(String(length=128), primary_key=True)
    shop: Mapped[str] = mapped_column(String(length=255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
