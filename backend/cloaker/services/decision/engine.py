"""
Decision Engine

Turns the admission outcome into a terminal decision (allow / safe / block)
and the URL to send the visitor to. Pure: no I/O, randomness comes from the
caller's random.Random so tests can seed it.
"""
import logging
import random
from dataclasses import dataclass, replace
from typing import Mapping, Optional

from ...models.db_models import Decision
from ...models.policy import LinkPolicy
from ..filters.admission import AdmissionOutcome, AdmissionStatus
from .targets import append_utm, select_target

logger = logging.getLogger(__name__)


INVALID_CONFIGURATION = "invalid_configuration"


@dataclass(frozen=True)
class DecisionResult:
    decision: Decision
    redirect_url: Optional[str]
    reason: Optional[str]
    delay_ms: int = 0
    score: Optional[int] = None

    def downgrade(self, reason: str) -> "DecisionResult":
        """Same click, now blocked (e.g. quota lost at consume time)."""
        return replace(self, decision=Decision.BLOCK, redirect_url=None, reason=reason, delay_ms=0)


def block(reason: str, score: Optional[int] = None) -> DecisionResult:
    return DecisionResult(Decision.BLOCK, None, reason, 0, score)


def decide(
    policy: LinkPolicy,
    admission: AdmissionOutcome,
    score: Optional[int],
    rng: random.Random,
    utm: Optional[Mapping[str, str]] = None,
) -> DecisionResult:
    """
    Map an admission outcome to a decision.

    BLOCK -> block. SAFE -> safe_url. PASS / BYPASS -> weighted target.
    A link with nowhere to send an admitted visitor is an invalid
    configuration and blocks.
    """
    status = admission.status

    if status == AdmissionStatus.BLOCK:
        return block(admission.reason or "blocked", score)

    if status == AdmissionStatus.SAFE:
        if not policy.safe_url:
            logger.warning(f"Link {policy.id} has no safe_url, blocking")
            return block(INVALID_CONFIGURATION, score)
        return DecisionResult(Decision.SAFE, policy.safe_url, admission.reason, policy.redirect_delay_ms, score)

    url = select_target(policy.target_urls, rng, fallback=policy.target_url)
    if not url:
        logger.warning(f"Link {policy.id} has no target configured, blocking")
        return block(INVALID_CONFIGURATION, score)
    if policy.passthrough_utm and utm:
        url = append_utm(url, utm)
    return DecisionResult(Decision.ALLOW, url, admission.reason, policy.redirect_delay_ms, score)
