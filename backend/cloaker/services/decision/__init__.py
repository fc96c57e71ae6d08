"""Decision engine and target selection."""
from .engine import DecisionResult, INVALID_CONFIGURATION, block, decide
from .targets import append_utm, select_target

__all__ = [
    "DecisionResult",
    "INVALID_CONFIGURATION",
    "block",
    "decide",
    "append_utm",
    "select_target",
]
