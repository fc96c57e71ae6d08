"""Cloaker - Data Models"""
from .click import (
    # Request inputs
    SignalBundle, MousePoint, VisitorContext,
    # Detection outputs
    ThreatFlags, SubScores, SCORE_CATEGORIES,
)
from .policy import LinkPolicy, WeightedTarget

__all__ = [
    "SignalBundle", "MousePoint", "VisitorContext",
    "ThreatFlags", "SubScores", "SCORE_CATEGORIES",
    "LinkPolicy", "WeightedTarget",
]
