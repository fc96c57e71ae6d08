"""
Tests for policy lookup, custom domain resolution and the policy cache.
"""
import uuid
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from cloaker.models.db_models import CloakedLinkDB, CloakerDomainDB, DnsStatus, SslStatus
from cloaker.services.errors import StoreUnavailable
from cloaker.services.policy import PolicyCache, PolicyStore, normalize_host

from conftest import OTHER_OWNER_ID, OWNER_ID


def _domain(db, domain, owner=OWNER_ID, verified=True, default=False):
    row = CloakerDomainDB(
        id=str(uuid.uuid4()), user_id=owner, domain=domain,
        is_verified=verified, is_default=default,
        verification_token="cloaker-verify-" + "0" * 32,
        dns_status=DnsStatus.VERIFIED if verified else DnsStatus.PENDING,
        ssl_status=SslStatus.ACTIVE if verified else SslStatus.PENDING,
    )
    db.add(row)
    db.commit()
    return row


class TestSlugLookup:

    def test_found(self, db_session, link_factory):
        link = link_factory(slug="spring", allowed_countries=["us", "br"])
        policy, found = PolicyStore(db_session).get_policy("spring")
        assert found
        assert policy.id == link.id
        assert policy.allowed_countries == ("US", "BR")

    def test_unknown_slug(self, db_session):
        assert PolicyStore(db_session).get_policy("nope") == (None, False)

    def test_store_failure(self):
        db = MagicMock()
        db.query.side_effect = OperationalError("SELECT", {}, Exception("database is down"))
        with pytest.raises(StoreUnavailable):
            PolicyStore(db, cache=PolicyCache()).get_policy("spring")


class TestCache:

    def test_hit_skips_database(self, db_session, link_factory):
        link_factory(slug="spring", min_score=40)
        store = PolicyStore(db_session)
        store.get_policy("spring")

        db_session.query(CloakedLinkDB).filter(CloakedLinkDB.slug == "spring").update({"min_score": 70})
        db_session.commit()
        assert store.get_policy("spring")[0].min_score == 40

        store.invalidate("spring")
        assert store.get_policy("spring")[0].min_score == 70

    def test_ttl_expiry(self):
        now = {"t": 0.0}
        cache = PolicyCache(ttl_seconds=30, clock=lambda: now["t"])
        cache.put(("", "spring"), None)
        assert cache.get(("", "spring")) == (True, None)
        now["t"] = 31
        assert cache.get(("", "spring")) == (False, None)

    def test_lru_eviction(self):
        cache = PolicyCache(max_entries=2)
        cache.put(("", "a"), None)
        cache.put(("", "b"), None)
        cache.get(("", "a"))
        cache.put(("", "c"), None)
        assert cache.get(("", "b"))[0] is False
        assert cache.get(("", "a"))[0] is True

    def test_invalidate_host(self):
        cache = PolicyCache()
        cache.put(("go.example.com", "a"), None)
        cache.put(("", "a"), None)
        assert cache.invalidate_host("go.example.com") == 1
        assert cache.get(("", "a"))[0] is True


class TestCustomDomains:

    def test_normalize_host(self):
        assert normalize_host("Go.Example.com:8443") == "go.example.com"
        assert normalize_host("") is None

    def test_bound_link(self, db_session, link_factory):
        _domain(db_session, "go.example.com")
        link = link_factory(slug="spring", custom_domain="go.example.com")
        policy, found = PolicyStore(db_session).get_policy("spring", "GO.example.com")
        assert found and policy.id == link.id

    def test_root_of_domain_serves_bound_link(self, db_session, link_factory):
        _domain(db_session, "go.example.com")
        link = link_factory(custom_domain="go.example.com")
        policy, found = PolicyStore(db_session).get_policy("", "go.example.com")
        assert found and policy.id == link.id

    def test_unbound_link_needs_default_domain(self, db_session, link_factory):
        _domain(db_session, "go.example.com", default=False)
        link_factory(slug="spring")
        assert PolicyStore(db_session).get_policy("spring", "go.example.com") == (None, False)

        _domain(db_session, "main.example.com", default=True)
        policy, found = PolicyStore(db_session).get_policy("spring", "main.example.com")
        assert found

    def test_other_owners_link_not_served(self, db_session, link_factory):
        _domain(db_session, "go.example.com", owner=OTHER_OWNER_ID, default=True)
        link_factory(slug="spring")
        assert PolicyStore(db_session).get_policy("spring", "go.example.com") == (None, False)

    def test_link_bound_elsewhere(self, db_session, link_factory):
        _domain(db_session, "go.example.com", default=True)
        _domain(db_session, "other.example.com")
        link_factory(slug="spring", custom_domain="other.example.com")
        assert PolicyStore(db_session).get_policy("spring", "go.example.com") == (None, False)

    def test_unverified_domain_falls_back_to_slug(self, db_session, link_factory):
        _domain(db_session, "go.example.com", verified=False)
        link = link_factory(slug="spring")
        policy, found = PolicyStore(db_session).get_policy("spring", "go.example.com")
        assert found and policy.id == link.id
