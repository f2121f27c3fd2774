"""Order store connection setup shared by the engine and its workers."""

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from digipay.common.config import settings


def build_engine(dsn: str) -> Engine:
    return create_engine(dsn, pool_pre_ping=True)


def build_session_factory(bind: Engine) -> sessionmaker:
    """Sessions for services that read committed orders after their session closes."""

    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)


engine = build_engine(settings.postgres_dsn)
SessionLocal = build_session_factory(engine)

# JSONB on Postgres, plain JSON on other dialects (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for orders, products, stock, audit and outbox tables."""
