"""
Run Store Database

Engine and sessions for the comparison run store. The matching engine itself
never opens a session; only the persistence boundary does.

Environment:
    SQLALCHEMY_DATABASE_URL   Target database (SQLite file by default)
    DB_POOL_SIZE, DB_MAX_OVERFLOW, DB_POOL_RECYCLE   Pool sizing for server databases
"""

import os
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool, QueuePool

DEFAULT_DATABASE_URL = "sqlite:///./reconciliation.db"


def create_db_engine(url: Optional[str] = None) -> Engine:
    """Engine for the run store; SQLite gets a single shared connection."""
    url = url or os.getenv("SQLALCHEMY_DATABASE_URL", DEFAULT_DATABASE_URL)

    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            pool_pre_ping=True,
        )

    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
        max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "20")),
        pool_pre_ping=True,
        pool_recycle=int(os.getenv("DB_POOL_RECYCLE", "3600")),
    )


engine = create_db_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """
    Session for one unit of store work.

    Usage:
        db = next(get_db())
        ComparisonRunStore(db).save_run(run, company_id="acme")

    Uncommitted changes are rolled back if the caller fails.
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(bind: Optional[Engine] = None) -> None:
    """Create the comparison run and matching policy tables."""
    import comparison_run_models
    comparison_run_models.Base.metadata.create_all(bind=bind or engine)
