from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from storelink.models import Merchant, ProductMemo, StoreDiscount
from storelink.storage import unit_of_work

logger = logging.getLogger(__name__)


class MerchantRepository:
    """Per-shop merchant records and the product memos hanging off them."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def get(self, shop: str) -> Merchant | None:
        with self._session_factory() as session:
            return session.get(Merchant, shop)

    def get_or_create(self, *, shop: str, access_token: str) -> Merchant:
        existing = self.get(shop)
        if existing is not None:
            return existing
        try:
            with unit_of_work(self._session_factory) as session:
                merchant = Merchant(shop=shop, access_token=access_token)
                session.add(merchant)
            logger.info("Created merchant record", extra={"shop": shop})
            return merchant
        except IntegrityError:
            merchant = self.get(shop)
            if merchant is None:
                raise
            return merchant

    def set_usage_subscription_id(self, *, shop: str, usage_sub_id: str) -> None:
        with unit_of_work(self._session_factory) as session:
            merchant = session.get(Merchant, shop)
            if merchant is None:
                raise LookupError(f"No merchant record for shop={shop}")
            merchant.usage_sub_id = usage_sub_id

    def list_memos(self, shop: str) -> list[ProductMemo]:
        with self._session_factory() as session:
            return list(
                session.scalars(
                    select(ProductMemo).where(ProductMemo.shop == shop).order_by(ProductMemo.product_id)
                ).all()
            )

    def update_memos(self, *, shop: str, memos: Iterable[tuple[str, str]]) -> int:
        updated = 0
        with unit_of_work(self._session_factory) as session:
            for product_id, memo in memos:
                row = session.scalars(
                    select(ProductMemo).where(
                        ProductMemo.shop == shop,
                        ProductMemo.product_id == product_id,
                    )
                ).first()
                if row is None:
                    session.add(ProductMemo(shop=shop, product_id=product_id, memo=memo))
                else:
                    row.memo = memo
                updated += 1
        return updated

    def erase(self, shop: str) -> None:
        with unit_of_work(self._session_factory) as session:
            session.execute(delete(ProductMemo).where(ProductMemo.shop == shop))
            session.execute(delete(Merchant).where(Merchant.shop == shop))


class StoreDiscountLookup:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def is_eligible(self, shop: str) -> bool:
        with self._session_factory() as session:
            row = session.get(StoreDiscount, shop)
            return bool(row and row.eligible)
