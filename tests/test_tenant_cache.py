import uuid

import pytest

from app.core.cache import TTLCache
from app.core.exceptions import BadRequestException, NotFoundException
from app.models.tenant_model import Client, Tenant
from app.services.tenant_service import TenantResolver, get_client_for_tenant


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestTTLCache:
    def test_entry_expires_after_ttl(self):
        clock = FakeClock()
        cache = TTLCache(ttl=30, clock=clock)
        cache.set("k", "v")

        clock.advance(29.9)
        assert cache.get("k") == "v"
        clock.advance(0.1)
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_set_refreshes_expiry(self):
        clock = FakeClock()
        cache = TTLCache(ttl=10, clock=clock)
        cache.set("k", 1)
        clock.advance(8)
        cache.set("k", 2)
        clock.advance(8)
        assert cache.get("k") == 2

    def test_invalidate_and_clear(self):
        cache = TTLCache(ttl=10)
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.invalidate("a") is True
        assert cache.invalidate("a") is False
        assert "b" in cache
        cache.clear()
        assert "b" not in cache

    @pytest.mark.parametrize("ttl", [0, -5])
    def test_non_positive_ttl_rejected(self, ttl):
        with pytest.raises(ValueError):
            TTLCache(ttl=ttl)


class TestTenantResolver:
    def test_resolves_by_slug_or_code(self, db_session, tenant):
        resolver = TenantResolver(TTLCache(ttl=30))
        assert resolver.resolve(db_session, slug="ACME ").tenant_id == tenant.tenant_id
        assert resolver.resolve(db_session, code="ACM01").tenant_id == tenant.tenant_id

    def test_slug_wins_over_code(self, db_session, tenant):
        resolver = TenantResolver(TTLCache(ttl=30))
        assert resolver.resolve(db_session, slug="acme", code="nope").slug == "acme"

    def test_missing_header(self, db_session):
        resolver = TenantResolver(TTLCache(ttl=30))
        with pytest.raises(BadRequestException):
            resolver.resolve(db_session)

    def test_unknown_or_inactive_tenant(self, db_session, tenant):
        resolver = TenantResolver(TTLCache(ttl=30))
        with pytest.raises(NotFoundException):
            resolver.resolve(db_session, slug="globex")

        tenant.is_active = False
        db_session.commit()
        with pytest.raises(NotFoundException):
            resolver.resolve(db_session, slug="acme")

    def test_cached_until_expiry(self, db_session, tenant):
        clock = FakeClock()
        resolver = TenantResolver(TTLCache(ttl=30, clock=clock))
        resolver.resolve(db_session, slug="acme")

        tenant.name = "Acme Renomeada"
        db_session.commit()
        assert resolver.resolve(db_session, slug="acme").name == "Acme Corretora"

        clock.advance(31)
        assert resolver.resolve(db_session, slug="acme").name == "Acme Renomeada"

    def test_invalidate_forces_reload(self, db_session, tenant):
        resolver = TenantResolver(TTLCache(ttl=300))
        resolver.resolve(db_session, code="ACM01")
        tenant.name = "Outro Nome"
        db_session.commit()

        resolver.invalidate(code="ACM01")
        assert resolver.resolve(db_session, code="ACM01").name == "Outro Nome"


def test_client_of_another_tenant_is_not_found(db_session, tenant, client_id):
    resolver = TenantResolver(TTLCache(ttl=30))
    other = Tenant(tenant_id=uuid.uuid4(), slug="globex", name="Globex", is_active=True)
    db_session.add(other)
    db_session.add(Client(client_id=uuid.uuid4(), tenant_id=other.tenant_id, name="Cliente Globex"))
    db_session.commit()

    acme = resolver.resolve(db_session, slug="acme")
    globex = resolver.resolve(db_session, slug="globex")
    assert get_client_for_tenant(db_session, acme, client_id).client_id == client_id
    with pytest.raises(NotFoundException):
        get_client_for_tenant(db_session, globex, client_id)
    with pytest.raises(NotFoundException):
        get_client_for_tenant(db_session, acme, uuid.uuid4())
