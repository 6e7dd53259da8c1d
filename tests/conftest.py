"""
Pytest configuration and fixtures
"""
import os

# keep the app engine off PostgreSQL while tests import it
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_TABLES", "false")

import uuid

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.cache import TTLCache
from app.core.database import Base, create_tables, get_db
from app.models.tenant_model import Client, Tenant


@pytest.fixture(scope="function")
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(engine):
    """
    Create a test database session
    """
    TestingSession = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def tenant(db_session) -> Tenant:
    tenant = Tenant(tenant_id=uuid.uuid4(), slug="acme", code="ACM01", name="Acme Corretora", is_active=True)
    db_session.add(tenant)
    db_session.commit()
    return tenant


@pytest.fixture
def client_row(db_session, tenant) -> Client:
    client = Client(client_id=uuid.uuid4(), tenant_id=tenant.tenant_id, name="Industria Exemplo")
    db_session.add(client)
    db_session.commit()
    return client


@pytest.fixture
def client_id(client_row) -> uuid.UUID:
    return client_row.client_id


@pytest.fixture
def api(db_session, tenant):
    """TestClient bound to the test session, with a fresh tenant cache."""
    from app.api import deps
    from app.main import app
    from app.services.tenant_service import TenantResolver

    resolver = TenantResolver(TTLCache(ttl=30))

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[deps.get_tenant_resolver] = lambda: resolver
    # no context manager: startup would try to create tables on the app engine
    test_client = TestClient(app)
    test_client.headers.update({"X-Tenant-Slug": "acme"})
    yield test_client
    app.dependency_overrides.clear()

