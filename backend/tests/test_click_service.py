"""
Tests for the end-to-end click pipeline (ClickService.handle).

Tests:
1. Clean visitor is allowed and counted
2. Unknown links and store failures block without a visitor record
3. Scoring past the deadline serves the safe page
4. Quota lost at consume time downgrades to block
5. Rate limit, whitelist and webhook selection
"""
import asyncio
import random
import time
from datetime import datetime, timezone
from unittest.mock import MagicMock

from cloaker.models.click import SignalBundle
from cloaker.models.db_models import CloakedLinkDB, Decision
from cloaker.services.click_service import ClickService
from cloaker.services.detection import build_visitor_context
from cloaker.services.errors import StoreUnavailable

from conftest import BROWSER_HEADERS, human_bundle_dict


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _visitor(**headers):
    merged = dict(BROWSER_HEADERS)
    merged.update(headers)
    return build_visitor_context(merged, {"utm_source": "fb"}, "10.0.0.1")


def _service(db, **kwargs):
    kwargs.setdefault("rng", random.Random(11))
    kwargs.setdefault("clock", lambda: NOW)
    return ClickService(db, **kwargs)


def _handle(service, slug, visitor=None, bundle=None):
    if bundle is None:
        bundle = SignalBundle.from_dict(human_bundle_dict())
    return asyncio.run(service.handle(slug, visitor or _visitor(), bundle))


def _counts(db, link_id):
    db.expire_all()
    row = db.get(CloakedLinkDB, link_id)
    return row.clicks_today, row.clicks_count


class TestHappyPath:

    def test_human_allowed(self, db_session, link_factory):
        link = link_factory(slug="spring")
        outcome = _handle(_service(db_session), "spring")
        assert outcome.decision == Decision.ALLOW
        assert outcome.result.redirect_url == "https://offer.example.com/"
        assert outcome.result.score >= 90
        assert outcome.fingerprint is not None
        assert _counts(db_session, link.id) == (1, 1)

    def test_visitor_record(self, db_session, link_factory):
        link = link_factory(slug="spring")
        record = _handle(_service(db_session), "spring").visitor_record
        assert record["link_id"] == link.id
        assert record["decision"] == Decision.ALLOW
        assert record["decision_reason"] == "passed"
        assert record["utm_source"] == "fb"
        assert record["country_code"] == "US"
        assert record["score_network"] == 100
        assert record["detection_details"]["admission_step"] == 13

    def test_no_webhook_unless_subscribed(self, db_session, link_factory):
        link_factory(slug="spring")
        assert _handle(_service(db_session), "spring").webhook is None


class TestFailClosed:

    def test_unknown_link(self, db_session):
        outcome = _handle(_service(db_session), "missing")
        assert outcome.decision == Decision.BLOCK
        assert outcome.result.reason == "link_not_found"
        assert outcome.visitor_record is None

    def test_store_unavailable(self, db_session):
        store = MagicMock()
        store.get_policy.side_effect = StoreUnavailable("down")
        outcome = _handle(_service(db_session, store=store), "spring")
        assert outcome.decision == Decision.BLOCK
        assert outcome.result.reason == "store_unavailable"

    def test_no_destination(self, db_session, link_factory):
        link = link_factory(slug="spring", target_url=None, target_urls=None)
        outcome = _handle(_service(db_session), "spring")
        assert outcome.decision == Decision.BLOCK
        assert outcome.result.reason == "invalid_configuration"
        assert _counts(db_session, link.id) == (0, 0)

    def test_scoring_timeout_serves_safe_page(self, db_session, link_factory):
        def slow(ctx):
            time.sleep(0.5)
            return 100

        link_factory(slug="spring")
        service = _service(db_session, deadline_ms=20, scorers={"device": slow})
        outcome = _handle(service, "spring")
        assert outcome.decision == Decision.SAFE
        assert outcome.result.reason == "scoring_timeout"
        assert outcome.result.redirect_url == "https://safe.example.com/"

    def test_scoring_timeout_keeps_whitelisted_allow(self, db_session, link_factory):
        def slow(ctx):
            time.sleep(0.5)
            return 100

        link = link_factory(slug="spring", whitelist_ips=["203.0.113.7"])
        service = _service(db_session, deadline_ms=20, scorers={"device": slow})
        outcome = _handle(service, "spring")
        assert outcome.decision == Decision.ALLOW
        assert outcome.result.reason == "ip_whitelisted"
        assert outcome.result.redirect_url == "https://offer.example.com/"
        assert outcome.visitor_record["score"] == 0
        assert _counts(db_session, link.id) == (1, 1)

    def test_wrongly_typed_bundle_is_scored_without_error(self, db_session, link_factory):
        link_factory(slug="spring")
        bundle = SignalBundle.from_dict({"userAgent": 7, "isHeadless": "false", "mouseVelocities": ["x", 2]})
        visitor = build_visitor_context({**BROWSER_HEADERS, "user-agent": ""}, {}, "10.0.0.1")
        outcome = _handle(_service(db_session), "spring", visitor=visitor, bundle=bundle)
        assert outcome.visitor_record is not None
        assert outcome.result.reason != "signal_unavailable"

    def test_detection_failure_blocks(self, db_session, link_factory, monkeypatch):
        link_factory(slug="spring")

        def broken(*args, **kwargs):
            raise TypeError("unexpected signal")

        monkeypatch.setattr("cloaker.services.click_service.detect_threat_flags", broken)
        outcome = _handle(_service(db_session), "spring")
        assert outcome.decision == Decision.BLOCK
        assert outcome.result.reason == "signal_unavailable"
        assert outcome.policy.slug == "spring"


class TestQuotaAndLimits:

    def test_filtered_clicks_do_not_consume(self, db_session, link_factory):
        link = link_factory(slug="spring", blocked_countries=["US"])
        outcome = _handle(_service(db_session), "spring")
        assert outcome.result.reason == "country_blocked"
        assert _counts(db_session, link.id) == (0, 0)

    def test_safe_decisions_consume(self, db_session, link_factory):
        link = link_factory(slug="spring", min_score=100)
        outcome = _handle(_service(db_session), "spring")
        assert outcome.decision == Decision.SAFE
        assert outcome.result.reason == "score_below_minimum"
        assert _counts(db_session, link.id) == (1, 1)

    def test_quota_lost_at_consume_downgrades(self, db_session, link_factory):
        link_factory(slug="spring", max_clicks_daily=1)
        service = _service(db_session)
        assert _handle(service, "spring").decision == Decision.ALLOW
        # cached policy still shows zero clicks, so only consume can catch it
        outcome = _handle(service, "spring")
        assert outcome.decision == Decision.BLOCK
        assert outcome.result.reason == "daily_quota_exceeded"
        assert outcome.result.redirect_url is None

    def test_rate_limited_second_click(self, db_session, link_factory):
        link_factory(slug="spring", rate_limit_per_ip=1, rate_limit_window_minutes=1)
        service = _service(db_session)
        assert _handle(service, "spring").decision == Decision.ALLOW
        assert _handle(service, "spring").result.reason == "rate_limited"

    def test_whitelisted_ip_bypasses_filters_and_counts(self, db_session, link_factory):
        link = link_factory(slug="spring", blocked_countries=["US"], whitelist_ips=["203.0.113.7"])
        outcome = _handle(_service(db_session), "spring")
        assert outcome.decision == Decision.ALLOW
        assert outcome.result.reason == "ip_whitelisted"
        assert _counts(db_session, link.id) == (1, 1)

    def test_overridden_score_blocks_bot(self, db_session, link_factory):
        link_factory(slug="spring")
        data = human_bundle_dict()
        data["hasWebdriver"] = True
        outcome = _handle(_service(db_session), "spring", bundle=SignalBundle.from_dict(data))
        assert outcome.decision == Decision.BLOCK
        assert outcome.result.reason == "bot_detected"


class TestWebhookSelection:

    def test_block_event(self, db_session, link_factory):
        link = link_factory(
            slug="spring", blocked_countries=["US"],
            webhook_enabled=True, webhook_url="https://hooks.example.com/in", webhook_events=["click", "block"],
        )
        webhook = _handle(_service(db_session), "spring").webhook
        assert webhook.url == "https://hooks.example.com/in"
        assert webhook.payload["event"] == "block"
        assert webhook.payload["link_id"] == link.id
        assert webhook.payload["visitor"]["decision"] == "block"
        assert webhook.payload["visitor"]["ip"] == "203.0.113.7"
