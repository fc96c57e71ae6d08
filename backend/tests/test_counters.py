"""
Tests for the atomic click counters.

Tests:
1. consume() increments both counters
2. Daily counter resets on the first click of a new local day
3. Daily and lifetime limits are never exceeded
4. 100 concurrent clicks against max_clicks_daily=N consume exactly N
"""
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timezone

from sqlalchemy.orm import sessionmaker

from cloaker.models.db_models import CloakedLinkDB
from cloaker.models.policy import LinkPolicy
from cloaker.services.counters import ClickCounter, local_today

from conftest import make_link


TODAY = date(2026, 3, 10)
TOMORROW = date(2026, 3, 11)


def _reload(db, link_id):
    db.expire_all()
    return db.get(CloakedLinkDB, link_id)


class TestConsume:

    def test_increments_both_counters(self, db_session, link_factory):
        link = link_factory()
        result = ClickCounter(db_session).consume(link.id, None, None, TODAY)
        assert result.consumed
        row = _reload(db_session, link.id)
        assert (row.clicks_today, row.clicks_count, row.last_click_reset) == (1, 1, TODAY)

    def test_daily_limit(self, db_session, link_factory):
        link = link_factory(clicks_today=2, clicks_count=10, last_click_reset=TODAY)
        counter = ClickCounter(db_session)
        assert counter.consume(link.id, 3, None, TODAY).consumed
        result = counter.consume(link.id, 3, None, TODAY)
        assert not result.consumed
        assert result.reason == "daily_quota_exceeded"
        assert _reload(db_session, link.id).clicks_today == 3

    def test_total_limit(self, db_session, link_factory):
        link = link_factory(clicks_today=0, clicks_count=5, last_click_reset=TODAY)
        result = ClickCounter(db_session).consume(link.id, 100, 5, TODAY)
        assert not result.consumed
        assert result.reason == "total_quota_exceeded"

    def test_lazy_daily_reset(self, db_session, link_factory):
        link = link_factory(clicks_today=100, clicks_count=400, last_click_reset=TODAY)
        counter = ClickCounter(db_session)
        assert not counter.consume(link.id, 100, None, TODAY).consumed
        assert counter.consume(link.id, 100, None, TOMORROW).consumed
        row = _reload(db_session, link.id)
        assert (row.clicks_today, row.clicks_count, row.last_click_reset) == (1, 401, TOMORROW)

    def test_unknown_link(self, db_session):
        result = ClickCounter(db_session).consume("missing", 10, None, TODAY)
        assert result.reason == "link_not_found"

    def test_counting_leaves_updated_at_alone(self, db_session, link_factory):
        """updated_at tracks configuration edits, not traffic."""
        edited = datetime(2026, 1, 5, 9, 30)
        link = link_factory(updated_at=edited, last_click_reset=TODAY)
        counter = ClickCounter(db_session)
        assert counter.consume(link.id, None, None, TODAY).consumed
        assert counter.consume(link.id, None, None, TOMORROW).consumed
        row = _reload(db_session, link.id)
        assert row.clicks_count == 2
        assert row.updated_at == edited


class TestSnapshot:

    def _policy(self, **overrides):
        values = {"id": "l", "user_id": "o", "slug": "s", "safe_url": "https://safe.example.com/"}
        values.update(overrides)
        return LinkPolicy(**values)

    def test_stale_day_reads_as_zero(self, db_session):
        policy = self._policy(clicks_today=80, clicks_count=300, last_click_reset=TODAY)
        assert ClickCounter(db_session).snapshot(policy, TOMORROW).clicks_today == 0
        assert ClickCounter(db_session).snapshot(policy, TODAY).clicks_today == 80

    def test_local_today_follows_link_timezone(self):
        late_utc = datetime(2026, 3, 11, 2, 0, tzinfo=timezone.utc)
        assert local_today("UTC", late_utc) == TOMORROW
        assert local_today("America/New_York", late_utc) == TODAY
        assert local_today("Bogus/Zone", late_utc) == TOMORROW


class TestConcurrentConsume:
    """Many clicks racing on one link must never overshoot the quota."""

    def test_exactly_n_consumed(self, file_engine):
        factory = sessionmaker(autocommit=False, autoflush=False, bind=file_engine)
        setup = factory()
        link = make_link(setup, last_click_reset=TODAY)
        link_id = link.id
        setup.close()

        limit = 37

        def click(_):
            db = factory()
            try:
                return ClickCounter(db).consume(link_id, limit, None, TODAY).consumed
            finally:
                db.close()

        with ThreadPoolExecutor(max_workers=20) as pool:
            results = list(pool.map(click, range(100)))

        assert sum(results) == limit
        check = factory()
        row = check.get(CloakedLinkDB, link_id)
        assert row.clicks_today == limit
        assert row.clicks_count == limit
        check.close()
