# insights_engine/db.py

from .config import settings

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

# ──────────────────────────────────────────────────────────────────────────────────────────
#                  SQLAlchemy ORM setup (entity store, alerts, settings, job runs)
# ──────────────────────────────────────────────────────────────────────────────────────────

DATABASE_URL = settings.DATABASE_URL


def make_engine(url: str):
    """
    SQLite does not take pool sizing; Postgres gets the pooled config.
    """
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
    )


# Create the engine and session factory
engine       = make_engine(DATABASE_URL)
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine
)

# Declarative base for all ORM models
Base = declarative_base()

def get_db():
    """
    FastAPI dependency: yields a SQLAlchemy Session and closes it after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def init_db(bind=None):
    """
    Ensure every ORM table exists.
    """
    from . import models  # noqa: F401  (registers tables on Base.metadata)
    Base.metadata.create_all(bind=bind or engine)
