"""Admission filter pipeline."""
from .admission import (
    AdmissionOutcome,
    AdmissionStatus,
    CounterSnapshot,
    run_pre_score_filters,
    run_score_filter,
)

__all__ = [
    "AdmissionOutcome",
    "AdmissionStatus",
    "CounterSnapshot",
    "run_pre_score_filters",
    "run_score_filter",
]
