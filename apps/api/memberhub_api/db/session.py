"""Database session management.

Uses the unified engine builder with NullPool default.
"""

from typing import Generator

from sqlalchemy.orm import Session

from memberhub_api.config.env import get_database_url
from memberhub_api.db.engine import build_engine, build_sessionmaker

# Production fail-fast happens inside get_database_url()
DATABASE_URL = get_database_url()

engine = build_engine(DATABASE_URL)

SessionLocal = build_sessionmaker(engine)


def get_db() -> Generator[Session, None, None]:
    """
    Get database session.

    Yields:
        Session: SQLAlchemy session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory():
    """Session factory used for work that must outlive a request transaction
    (post-commit dispatch, audit writes)."""
    return SessionLocal
