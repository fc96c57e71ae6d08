"""
Tests for the decision engine and target selection.

Tests:
1. End-to-end filter -> score -> decision scenarios
2. Weighted split converges to the configured ratio
3. Links with nowhere to send the visitor block
4. UTM passthrough keeps params already on the target
"""
import random
from collections import Counter
from datetime import datetime, timezone
from urllib.parse import parse_qs, urlsplit

from cloaker.models.click import ThreatFlags, VisitorContext
from cloaker.models.db_models import Decision
from cloaker.models.policy import LinkPolicy, WeightedTarget
from cloaker.services.decision import INVALID_CONFIGURATION, decide
from cloaker.services.decision.targets import append_utm, select_target
from cloaker.services.filters import (
    AdmissionOutcome, AdmissionStatus, CounterSnapshot, run_pre_score_filters, run_score_filter,
)

from conftest import CHROME_UA


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

SPLIT = (
    WeightedTarget("https://a.example.com/", 1),
    WeightedTarget("https://b.example.com/", 3),
)


def _policy(**overrides):
    values = {
        "id": "link-1", "user_id": "owner-1", "slug": "promo",
        "safe_url": "https://safe.example.com/", "target_urls": SPLIT,
    }
    values.update(overrides)
    return LinkPolicy(**values)


def _visitor():
    return VisitorContext(ip="203.0.113.7", user_agent=CHROME_UA, country="US",
                          query_params={"utm_source": "fb", "utm_campaign": "spring"})


def _evaluate(policy, score, flags=None, counters=None, rng=None):
    """Run the full pipeline the way the click service does."""
    flags = flags or ThreatFlags()
    admission = run_pre_score_filters(policy, _visitor(), flags, counters or CounterSnapshot(), False, NOW)
    if admission.status == AdmissionStatus.PASS:
        admission = run_score_filter(policy, flags, score, None)
    return decide(policy, admission, score, rng or random.Random(7), _visitor().utm)


# =============================================================================
# TEST: SCENARIOS
# =============================================================================

class TestScenarios:

    def test_vpn_blocked_despite_high_score(self):
        policy = _policy(min_score=40, block_vpn=True)
        result = _evaluate(policy, 85, flags=ThreatFlags(is_vpn=True))
        assert result.decision == Decision.BLOCK
        assert result.reason == "vpn_detected"
        assert result.redirect_url is None

    def test_no_filters_allows_to_a_target(self):
        result = _evaluate(_policy(), 55)
        assert result.decision == Decision.ALLOW
        assert result.redirect_url in {t.url for t in SPLIT}
        assert result.reason == "passed"

    def test_daily_quota_reached_blocks(self):
        policy = _policy(max_clicks_daily=100)
        result = _evaluate(policy, 90, counters=CounterSnapshot(clicks_today=100))
        assert result.decision == Decision.BLOCK
        assert result.reason == "daily_quota_exceeded"

    def test_low_score_gets_safe_page(self):
        result = _evaluate(_policy(min_score=60), 55)
        assert result.decision == Decision.SAFE
        assert result.redirect_url == "https://safe.example.com/"

    def test_whitelisted_ip_allowed_with_low_score(self):
        policy = _policy(whitelist_ips=("203.0.113.7",), min_score=90)
        result = _evaluate(policy, 5)
        assert result.decision == Decision.ALLOW

    def test_delay_carried_on_allow(self):
        result = _evaluate(_policy(redirect_delay_ms=1500), 80)
        assert result.delay_ms == 1500


# =============================================================================
# TEST: DECIDE
# =============================================================================

class TestDecide:

    def test_no_destination_is_invalid_configuration(self):
        policy = _policy(target_urls=(), target_url=None)
        result = decide(policy, AdmissionOutcome(AdmissionStatus.PASS, "passed", 13), 80, random.Random(1))
        assert result.decision == Decision.BLOCK
        assert result.reason == INVALID_CONFIGURATION

    def test_single_target_url_fallback(self):
        policy = _policy(target_urls=(), target_url="https://only.example.com/")
        result = decide(policy, AdmissionOutcome(AdmissionStatus.PASS, "passed", 13), 80, random.Random(1))
        assert result.redirect_url == "https://only.example.com/"

    def test_utm_passthrough(self):
        policy = _policy(target_urls=(), target_url="https://offer.example.com/lp?utm_source=own",
                         passthrough_utm=True)
        result = decide(policy, AdmissionOutcome(AdmissionStatus.PASS), 80, random.Random(1),
                        {"utm_source": "fb", "utm_campaign": "spring"})
        query = parse_qs(urlsplit(result.redirect_url).query)
        assert query == {"utm_source": ["own"], "utm_campaign": ["spring"]}

    def test_utm_ignored_without_passthrough(self):
        policy = _policy(target_urls=(), target_url="https://offer.example.com/lp")
        result = decide(policy, AdmissionOutcome(AdmissionStatus.PASS), 80, random.Random(1), {"utm_source": "fb"})
        assert result.redirect_url == "https://offer.example.com/lp"

    def test_downgrade_clears_redirect(self):
        result = _evaluate(_policy(), 80).downgrade("daily_quota_exceeded")
        assert result.decision == Decision.BLOCK
        assert result.redirect_url is None
        assert result.score == 80


# =============================================================================
# TEST: WEIGHTED SPLIT
# =============================================================================

class TestWeightedSplit:

    def test_one_to_three_split(self):
        rng = random.Random(2024)
        counts = Counter(select_target(SPLIT, rng) for _ in range(10000))
        share_a = counts["https://a.example.com/"] / 10000
        assert 0.23 <= share_a <= 0.27
        assert counts["https://a.example.com/"] + counts["https://b.example.com/"] == 10000

    def test_zero_weight_never_selected(self):
        targets = (WeightedTarget("https://a.example.com/", 0), WeightedTarget("https://b.example.com/", 2))
        rng = random.Random(3)
        assert {select_target(targets, rng) for _ in range(200)} == {"https://b.example.com/"}

    def test_empty_uses_fallback(self):
        assert select_target((), random.Random(1), fallback="https://x.example.com/") == "https://x.example.com/"
        assert select_target((), random.Random(1)) is None

    def test_append_utm_without_query(self):
        assert append_utm("https://x.example.com/p", {"utm_source": "fb"}) == "https://x.example.com/p?utm_source=fb"
