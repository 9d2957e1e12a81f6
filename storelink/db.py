from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from storelink.config import Settings
from storelink.models import Base


def _engine_connect_args(db_url: str) -> dict:
    if db_url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


def build_engine(settings: Settings) -> Engine:
    return create_engine(
        settings.SHOPIFY_APP_DB_URL,
        future=True,
        pool_pre_ping=True,
        connect_args=_engine_connect_args(settings.SHOPIFY_APP_DB_URL),
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)
