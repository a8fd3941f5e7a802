"""
Database configuration and session management.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base
from .settings import DATABASE_URL


def make_engine(url: str = DATABASE_URL):
    """Create an engine; SQLite gets thread sharing and in-memory pooling."""
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}  # Needed for SQLite
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


engine = make_engine()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind=None):
    """Initialize database tables."""
    Base.metadata.create_all(bind=bind or engine)
