"""
Tests for the visitor-facing click endpoints.
"""
import base64
import json

from cloaker.models.db_models import CloakerVisitorDB, Decision
from cloaker.routers.click import (
    FINGERPRINT_COOKIE, decode_bundle, redirect_response,
)
from cloaker.services.click_service import ClickOutcome
from cloaker.services.decision import DecisionResult, block
from cloaker.models.policy import LinkPolicy

from conftest import BROWSER_HEADERS, human_bundle_dict


def _encode(data):
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


def _visitors(db):
    db.expire_all()
    return db.query(CloakerVisitorDB).all()


class TestRedirectFlow:

    def test_human_redirected_to_target(self, client, db_session, link_factory):
        link = link_factory(slug="spring")
        response = client.get(
            f"/spring?utm_source=fb&_sb={_encode(human_bundle_dict())}",
            headers=BROWSER_HEADERS,
            follow_redirects=False,
        )
        assert response.status_code == 302
        assert response.headers["location"] == "https://offer.example.com/"
        assert response.headers["cache-control"] == "no-store"
        assert FINGERPRINT_COOKIE in response.cookies

        visitors = _visitors(db_session)
        assert len(visitors) == 1
        assert visitors[0].link_id == link.id
        assert visitors[0].decision == Decision.ALLOW
        assert visitors[0].utm_source == "fb"

    def test_bundle_from_cookie(self, client, link_factory):
        link_factory(slug="spring")
        headers = {**BROWSER_HEADERS, "cookie": f"_cloak_sb={_encode(human_bundle_dict())}"}
        response = client.get("/spring", headers=headers, follow_redirects=False)
        assert response.status_code == 302
        assert FINGERPRINT_COOKIE in response.cookies

    def test_unknown_slug_is_forbidden(self, client, db_session):
        response = client.get("/nothing-here", headers=BROWSER_HEADERS, follow_redirects=False)
        assert response.status_code == 403
        assert response.text == "Forbidden"
        assert _visitors(db_session) == []

    def test_blocked_visitor_gets_generic_403(self, client, db_session, link_factory):
        link_factory(slug="spring", blocked_countries=["US"])
        response = client.get("/spring", headers=BROWSER_HEADERS, follow_redirects=False)
        assert response.status_code == 403
        record = _visitors(db_session)[0]
        assert record.decision == Decision.BLOCK
        assert record.decision_reason == "country_blocked"

    def test_crawler_blocked(self, client, link_factory):
        link_factory(slug="spring")
        headers = {**BROWSER_HEADERS, "user-agent": "Mozilla/5.0 (compatible; Googlebot/2.1)"}
        assert client.get("/spring", headers=headers, follow_redirects=False).status_code == 403

    def test_delayed_redirect_page(self, client, link_factory):
        link_factory(slug="spring", redirect_delay_ms=1500)
        response = client.get(f"/spring?_sb={_encode(human_bundle_dict())}",
                              headers=BROWSER_HEADERS, follow_redirects=False)
        assert response.status_code == 200
        assert 'http-equiv="refresh"' in response.text
        assert "https://offer.example.com/" in response.text

    def test_wrongly_typed_bundle_is_not_a_server_error(self, client, db_session, link_factory):
        link_factory(slug="spring")
        bundle = _encode({"userAgent": 7, "isHeadless": "false", "timeOnPage": {"ms": 1}})
        response = client.get(f"/spring?_sb={bundle}", headers={**BROWSER_HEADERS, "user-agent": ""},
                              follow_redirects=False)
        assert response.status_code in (302, 403)
        assert len(_visitors(db_session)) == 1

        posted = client.post("/r/spring", json={"fingerprint": {"userAgent": ["x"], "hasWebdriver": "no"}},
                             headers={**BROWSER_HEADERS, "user-agent": ""})
        assert posted.status_code == 200
        assert posted.json()["decision"] in ("allow", "safe", "block")

    def test_inactive_link(self, client, link_factory):
        link_factory(slug="spring", is_active=False)
        assert client.get("/spring", headers=BROWSER_HEADERS, follow_redirects=False).status_code == 403


class TestCollectorFlow:

    def test_allow_json(self, client, link_factory):
        link_factory(slug="spring")
        response = client.post("/r/spring", json={"fingerprint": human_bundle_dict()}, headers=BROWSER_HEADERS)
        assert response.status_code == 200
        body = response.json()
        assert body["decision"] == "allow"
        assert body["redirect_url"] == "https://offer.example.com/"
        assert body["min_score"] == 40
        assert body["score"] >= 90
        assert body["delay_ms"] == 0

    def test_block_json_hides_destination(self, client, link_factory):
        link_factory(slug="spring", blocked_countries=["US"])
        body = client.post("/r/spring", json={"fingerprint": human_bundle_dict()}, headers=BROWSER_HEADERS).json()
        assert body["decision"] == "block"
        assert body["redirect_url"] is None

    def test_safe_json(self, client, link_factory):
        link_factory(slug="spring", min_score=100)
        body = client.post("/r/spring", json={"fingerprint": human_bundle_dict()}, headers=BROWSER_HEADERS).json()
        assert body["decision"] == "safe"
        assert body["redirect_url"] == "https://safe.example.com/"

    def test_unknown_slug_json(self, client):
        body = client.post("/r/nothing", json={}, headers=BROWSER_HEADERS).json()
        assert body["decision"] == "block"
        assert body["min_score"] is None


class TestResponseHelpers:

    def _outcome(self, result):
        policy = LinkPolicy(id="l", user_id="o", slug="s", safe_url="https://safe.example.com/")
        return ClickOutcome(result=result, policy=policy)

    def test_block_modes(self):
        outcome = self._outcome(block("country_blocked"))
        assert redirect_response(outcome, "403").status_code == 403
        assert redirect_response(outcome, "204").status_code == 204
        safe = redirect_response(outcome, "safe")
        assert safe.status_code == 302
        assert safe.headers["location"] == "https://safe.example.com/"

    def test_allow_redirect(self):
        outcome = self._outcome(DecisionResult(Decision.ALLOW, "https://offer.example.com/", "passed"))
        response = redirect_response(outcome)
        assert response.status_code == 302
        assert response.headers["location"] == "https://offer.example.com/"

    def test_decode_bundle(self):
        assert decode_bundle(_encode({"timeOnPage": 4000})).time_on_page == 4000
        assert decode_bundle("%%%not-base64") is None
        assert decode_bundle(_encode([1, 2, 3])) is None
        assert decode_bundle(None) is None
