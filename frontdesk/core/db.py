import os

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from config.settings import get_settings

settings = get_settings()

SQLALCHEMY_DATABASE_URL = (settings.database_url or os.getenv("DATABASE_URL", "")).strip()

# Special case for local testing/CI
IS_TEST = os.getenv("PYTEST_CURRENT_TEST") is not None or settings.is_testing

if not SQLALCHEMY_DATABASE_URL and settings.is_production:
    raise RuntimeError(
        "CRITICAL: DATABASE_URL must point at the scenario store in production. "
        "SQLite fallbacks are only allowed for development and tests."
    )

if not SQLALCHEMY_DATABASE_URL:
    SQLALCHEMY_DATABASE_URL = "sqlite://" if IS_TEST else "sqlite:///./frontdesk.db"


def make_engine(url: str) -> Engine:
    """Create an engine with pooling suited to the backend."""
    if url.startswith("postgresql"):
        return create_engine(
            url,
            pool_size=20,
            max_overflow=10,
            pool_timeout=30,
            pool_recycle=1800,
            pool_pre_ping=True,
        )
    if url in ("sqlite://", "sqlite:///:memory:"):
        # In-memory SQLite must share one connection across worker threads
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return create_engine(url, connect_args={"check_same_thread": False})


engine = make_engine(SQLALCHEMY_DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()


def run_migrations(bind: Engine | None = None) -> None:
    """Bootstrap the store schema. Production stores are migrated out of band."""
    # Model classes must be registered on Base.metadata before create_all
    from frontdesk.core import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
