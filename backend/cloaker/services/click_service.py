"""
Click Service
=============
Runs one click through the whole pipeline:

    policy lookup -> threat flags -> pre-score filters -> scoring (deadline)
    -> score filter -> decision -> quota consume

The visitor record and the webhook delivery are built here but written and
sent by the caller after the response. Nothing in this path raises to the
visitor: store failures and bad configuration end in a block.
"""
import asyncio
import logging
import os
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple

from sqlalchemy.orm import Session

from ..models.click import SignalBundle, SubScores, ThreatFlags, VisitorContext
from ..models.db_models import Decision
from ..models.policy import LinkPolicy
from .counters import ClickCounter, RateLimiter, local_today
from .decision import DecisionResult, block, decide
from .detection import detect_threat_flags, fingerprint_hash
from .errors import StoreUnavailable
from .filters import AdmissionOutcome, AdmissionStatus, run_pre_score_filters, run_score_filter
from .policy import PolicyStore
from .scoring import apply_overrides, composite_score, score_all
from .scoring.scorers import Scorer
from .visitor_log import build_visitor_record
from .webhooks import WebhookDelivery, build_payload, select_event_type

logger = logging.getLogger(__name__)


CLICK_DEADLINE_MS = int(os.getenv("CLICK_DEADLINE_MS", "300"))

_rng = random.Random()


@dataclass
class ClickOutcome:
    result: DecisionResult
    policy: Optional[LinkPolicy] = None
    fingerprint: Optional[str] = None
    visitor_record: Optional[Dict[str, Any]] = None
    webhook: Optional[WebhookDelivery] = None

    @property
    def decision(self) -> Decision:
        return self.result.decision


@dataclass
class _Scored:
    subscores: Optional[SubScores] = None
    composite: int = 0
    score: int = 0
    overrides: List[str] = field(default_factory=list)


class ClickService:
    """One instance per request; holds the request's database session."""

    def __init__(
        self,
        db_session: Session,
        store: Optional[PolicyStore] = None,
        rng: Optional[random.Random] = None,
        deadline_ms: int = CLICK_DEADLINE_MS,
        scorers: Optional[Mapping[str, Scorer]] = None,
        tor_exit_nodes: Optional[FrozenSet[str]] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.db = db_session
        self.store = store or PolicyStore(db_session)
        self.counter = ClickCounter(db_session)
        self.limiter = RateLimiter(db_session)
        self.rng = rng or _rng
        self.deadline_ms = deadline_ms
        self.scorers = scorers
        self.tor_exit_nodes = tor_exit_nodes
        self.clock = clock

    async def handle(
        self,
        slug: Optional[str],
        visitor: VisitorContext,
        bundle: Optional[SignalBundle],
    ) -> ClickOutcome:
        started = time.perf_counter()
        now = self.clock()

        try:
            policy, found = await asyncio.to_thread(self.store.get_policy, slug, visitor.host)
        except StoreUnavailable:
            return ClickOutcome(block("store_unavailable"))
        if not found:
            logger.info(f"Click on unknown link slug={slug!r} host={visitor.host!r}")
            return ClickOutcome(block("link_not_found"))

        try:
            flags = detect_threat_flags(policy, visitor, bundle, self.tor_exit_nodes)
            fingerprint = fingerprint_hash(bundle)
        except Exception:
            logger.exception(f"Threat detection failed for link {policy.slug}, blocking")
            return ClickOutcome(block("signal_unavailable"), policy=policy)
        today = local_today(policy.timezone, now)

        try:
            rate_limited = await self._rate_limited(policy, visitor, now)
            admission = run_pre_score_filters(
                policy, visitor, flags, self.counter.snapshot(policy, today), rate_limited, now,
            )

            scored = _Scored()
            if admission.status in (AdmissionStatus.PASS, AdmissionStatus.BYPASS):
                scored, timed_out = await self._score(policy, visitor, bundle, flags)
                # A whitelisted click keeps its allow; the score is only recorded
                if admission.status == AdmissionStatus.PASS:
                    if timed_out:
                        admission = AdmissionOutcome(AdmissionStatus.SAFE, "scoring_timeout", 12)
                    else:
                        admission = run_score_filter(policy, flags, scored.score, bundle)

            result = decide(policy, admission, scored.score, self.rng, visitor.utm)

            if result.decision in (Decision.ALLOW, Decision.SAFE):
                consumed = await asyncio.to_thread(
                    self.counter.consume, policy.id, policy.max_clicks_daily, policy.max_clicks_total, today,
                )
                if not consumed.consumed:
                    result = result.downgrade(consumed.reason or "quota_exceeded")
        except StoreUnavailable:
            result = block("store_unavailable")
            admission = AdmissionOutcome(AdmissionStatus.BLOCK, "store_unavailable")
            scored = _Scored()

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            f"Click {policy.slug}: {result.decision.value} ({result.reason}) "
            f"score={scored.score}/{policy.min_score} ip={visitor.ip} {elapsed_ms}ms"
        )

        record = build_visitor_record(
            policy, visitor, flags, result, scored.subscores, scored.composite,
            scored.overrides, fingerprint, elapsed_ms, admission.step,
        )
        return ClickOutcome(
            result=result,
            policy=policy,
            fingerprint=fingerprint,
            visitor_record=record,
            webhook=self._webhook(policy, visitor, flags, result, now),
        )

    # -------------------------------------------------------------------------

    async def _rate_limited(self, policy: LinkPolicy, visitor: VisitorContext, now: datetime) -> bool:
        if not (policy.is_active and policy.has_rate_limit and visitor.ip):
            return False
        verdict = await asyncio.to_thread(
            self.limiter.hit, policy.id, visitor.ip,
            policy.rate_limit_per_ip, policy.rate_limit_window_minutes, now,
        )
        return verdict.blocked

    def _compute_scores(
        self,
        policy: LinkPolicy,
        visitor: VisitorContext,
        bundle: Optional[SignalBundle],
        flags: ThreatFlags,
    ) -> _Scored:
        subscores = score_all(bundle, visitor, self.scorers, min_dwell_ms=policy.behavior_time_ms)
        composite = composite_score(subscores)
        score, overrides = apply_overrides(composite, flags)
        return _Scored(subscores, composite, score, overrides)

    async def _score(
        self,
        policy: LinkPolicy,
        visitor: VisitorContext,
        bundle: Optional[SignalBundle],
        flags: ThreatFlags,
    ) -> Tuple[_Scored, bool]:
        try:
            scored = await asyncio.wait_for(
                asyncio.to_thread(self._compute_scores, policy, visitor, bundle, flags),
                timeout=self.deadline_ms / 1000,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Scoring exceeded {self.deadline_ms}ms for link {policy.slug}, serving safe page")
            return _Scored(), True
        return scored, False

    def _webhook(
        self,
        policy: LinkPolicy,
        visitor: VisitorContext,
        flags: ThreatFlags,
        result: DecisionResult,
        now: datetime,
    ) -> Optional[WebhookDelivery]:
        event = select_event_type(policy, result.decision)
        if event is None:
            return None
        payload = build_payload(
            event, policy.id, result.score, result.decision,
            visitor.country, flags.device_type, visitor.ip, now,
        )
        return WebhookDelivery(url=policy.webhook_url, payload=payload)
