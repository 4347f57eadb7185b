"""Database session management with connection pooling"""

import logging
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session
from engagement_gateway.config import settings
from engagement_gateway.domain.exceptions import DuplicateError, StorageUnavailableError

logger = logging.getLogger(__name__)

# Connection pool: max 20 connections, recycle after 1 hour to avoid stale connections
engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,  # Verify connections before using
    pool_size=10,
    max_overflow=10,
    pool_recycle=3600,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Session:
    """Dependency injection for database sessions"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def commit(db: Session) -> None:
    """Commit the unit of work; storage errors surface as a retryable domain error"""
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise DuplicateError() from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Commit failed: {e.__class__.__name__}")
        raise StorageUnavailableError() from e
