"""Signal scorers and composite scoring."""
from .composite import SCORE_WEIGHTS, apply_overrides, composite_score
from .scorers import DEFAULT_SCORERS, ScoringContext, score_all

__all__ = [
    "SCORE_WEIGHTS",
    "apply_overrides",
    "composite_score",
    "DEFAULT_SCORERS",
    "ScoringContext",
    "score_all",
]
