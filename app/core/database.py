import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from app.core.config import settings

logger = logging.getLogger(__name__)

connect_args = {}
if settings.DATABASE_URL.startswith("sqlite"):
    connect_args["check_same_thread"] = False

engine = create_engine(
    settings.DATABASE_URL,
    echo=settings.SQL_ECHO,
    pool_pre_ping=True,
    connect_args=connect_args,
)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

Base = declarative_base()


def get_db():
    """
    FastAPI dependency yielding a request-scoped session.

    Services commit their own units of work; anything left uncommitted when the
    request fails is rolled back here.
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def create_tables(bind=None):
    """Create every table; model modules are imported here so they register on Base."""
    from app.models import (  # noqa: F401
        beneficiary_model, import_error, import_run, invoice_model, reconciliation_model, tenant_model,
    )

    target = bind if bind is not None else engine
    logger.info(f"Creating tables: {', '.join(Base.metadata.tables.keys())}")
    Base.metadata.create_all(bind=target)
