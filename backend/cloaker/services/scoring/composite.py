"""
Composite Scoring

Combines the present sub-scores into one weighted score, then applies the
deterministic overrides. Overrides are not blended into the average: they
replace the final score and are recorded per rule.
"""
from typing import Dict, List, Mapping, Optional, Tuple

from ...models.click import SubScores, ThreatFlags


# Weights per category (sum 100)
SCORE_WEIGHTS: Dict[str, int] = {
    "device": 15,
    "webrtc": 10,
    "mouse": 10,
    "keyboard": 10,
    "session": 10,
    "automation": 15,
    "behavior": 10,
    "fingerprint": 10,
    "network": 10,
}


def composite_score(subscores: SubScores, weights: Optional[Mapping[str, int]] = None) -> int:
    """
    Weighted mean over present sub-scores only.

    Returns 0 when no sub-score is present. Rounds half up using integer
    arithmetic so 54.5 -> 55 without float drift.
    """
    weights = weights if weights is not None else SCORE_WEIGHTS
    numerator = 0
    denominator = 0
    for category, value in subscores.present().items():
        weight = weights.get(category, 0)
        if weight <= 0:
            continue
        numerator += weight * value
        denominator += weight
    if denominator == 0:
        return 0
    return (2 * numerator + denominator) // (2 * denominator)


# Override rules, checked in order. Each forces the final score to 0.
OVERRIDE_RULES: Tuple[Tuple[str, str], ...] = (
    ("is_blacklisted", "blacklisted_ip"),
    ("is_headless", "headless_browser"),
    ("is_automated", "automation_tool"),
)


def apply_overrides(composite: int, flags: ThreatFlags) -> Tuple[int, List[str]]:
    """Returns (final_score, applied_rule_names)."""
    applied = [name for attr, name in OVERRIDE_RULES if getattr(flags, attr)]
    if applied:
        return 0, applied
    return composite, []
