"""
SQLAlchemy engine and session factory for the timeline store.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from proofline.config import settings


def _engine_options(database_url: str) -> dict:
    """Pool settings for server databases; SQLite only needs cross-thread access."""
    if database_url.startswith("sqlite"):
        # Alarm jobs and request handlers share connections across threads
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": settings.database_pool_pre_ping,
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
    }


engine = create_engine(settings.database_url, **_engine_options(settings.database_url))

# Stores open one short-lived session per call
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def create_tables():
    """Create the bake, step and activity tables if they are missing."""
    from proofline.db import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
