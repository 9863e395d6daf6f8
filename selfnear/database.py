"""
Database connection and session management for selfnear.
"""

import logging
from contextlib import contextmanager
from typing import Dict, Generator, List, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, scoped_session, sessionmaker

from selfnear.db_models import Base, VerificationAttempt
from selfnear.models import VerificationOutcome

logger = logging.getLogger(__name__)

# Global database engine and session factory
_engine = None
_SessionFactory = None

FLOW_REGISTER = "register"
FLOW_VERIFY_STORED = "verify_stored"


def init_database(db_url: str, echo: bool = False, create_tables: bool = True) -> None:
    """
    Initialize database engine and session factory.

    Args:
        db_url: SQLAlchemy database URL
        echo: If True, log all SQL statements
        create_tables: If True, create missing tables
    """
    global _engine, _SessionFactory

    if _engine is not None:
        logger.warning("Database already initialized")
        return

    engine_kwargs = {"echo": echo, "pool_pre_ping": True}
    if db_url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
    else:
        engine_kwargs.update({"pool_size": 10, "max_overflow": 20, "pool_recycle": 3600})

    _engine = create_engine(db_url, **engine_kwargs)
    _SessionFactory = scoped_session(sessionmaker(bind=_engine))

    if create_tables:
        Base.metadata.create_all(_engine)

    logger.info(f"Database initialized: {db_url.split('@')[1] if '@' in db_url else db_url}")


def get_session() -> Session:
    """
    Get a database session.

    Raises:
        RuntimeError: If database not initialized
    """
    if _SessionFactory is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")

    return _SessionFactory()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """
    Provide a transactional scope for database operations.

    Commits on success, rolls back on error.
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database transaction failed: {e}")
        raise
    finally:
        session.close()


def close_database() -> None:
    global _engine, _SessionFactory

    if _SessionFactory:
        _SessionFactory.remove()
        _SessionFactory = None

    if _engine:
        _engine.dispose()
        _engine = None


def is_initialized() -> bool:
    return _SessionFactory is not None


def check_database_health() -> dict:
    try:
        with session_scope() as session:
            session.execute(text("SELECT 1"))
        return {"status": "healthy", "connected": True}
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return {"status": "unhealthy", "connected": False, "error": str(e)}


def record_attempt(outcome: VerificationOutcome, flow: str) -> str:
    """Persist one verification pass and return its id."""

    attempt = VerificationAttempt(
        account_id=outcome.account_id,
        flow=flow,
        verified=outcome.verified,
        error_code=outcome.error_code.value if outcome.error_code else None,
        error_message=outcome.error,
        steps=[step.to_dict() for step in outcome.steps],
    )
    with session_scope() as session:
        session.add(attempt)
        session.flush()
        return attempt.id


def recent_attempts(account_id: Optional[str] = None, limit: int = 20) -> List[Dict]:
    with session_scope() as session:
        query = session.query(VerificationAttempt)
        if account_id:
            query = query.filter(VerificationAttempt.account_id == account_id)
        rows = query.order_by(VerificationAttempt.created_at.desc()).limit(limit).all()
        return [row.to_dict() for row in rows]
