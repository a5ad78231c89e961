# penalties.py
from typing import Any, Dict

TAB_SWITCH_PENALTY = 5
FULLSCREEN_EXIT_PENALTY = 3


def penalty_percentage(tab_switches: int, fullscreen_exits: int) -> float:
    """Score reduction in percent. Not clamped: many violations can exceed 100."""
    return int(tab_switches or 0) * TAB_SWITCH_PENALTY + int(fullscreen_exits or 0) * FULLSCREEN_EXIT_PENALTY


def penalty_multiplier(percentage: float) -> float:
    return max(0.0, (100.0 - float(percentage)) / 100.0)


def apply_penalty(original_score: float, percentage: float) -> float:
    return float(original_score) * penalty_multiplier(percentage)


def reconcile(original_score: float, tab_switches: int, fullscreen_exits: int) -> Dict[str, Any]:
    """Final score figures for one attempt; pure, so recomputing gives the same answer."""
    pct = penalty_percentage(tab_switches, fullscreen_exits)
    return {
        "original_score": float(original_score),
        "penalty_percentage": pct,
        "penalty_applied": pct > 0,
        "final_score": apply_penalty(original_score, pct),
        "tab_switches": int(tab_switches or 0),
        "fullscreen_exits": int(fullscreen_exits or 0),
    }
