# backend/nutritrack/services/goals_progress.py
"""
Goals Progress Calculator
"""

from typing import Any, Dict, Mapping, Optional, Union

from nutritrack.services.providers import GOAL_METRICS, NutritionGoalTargets

Goal = Union[NutritionGoalTargets, Mapping[str, Any], None]


def defined_targets(goal: Goal) -> Dict[str, float]:
    """Targets that are set and positive"""
    if goal is None:
        return {}
    raw = goal.targets() if isinstance(goal, NutritionGoalTargets) else goal
    targets = {}
    for metric in GOAL_METRICS:
        try:
            value = float(raw.get(metric))
        except (TypeError, ValueError):
            continue
        if value > 0:
            targets[metric] = value
    return targets


def calculate_goals_progress(totals: Mapping[str, Any], goal: Goal) -> Dict[str, Optional[int]]:
    """
    Percent of target reached per metric.

    Metrics without a defined, positive target report None, and the overall
    figure averages only the defined ones (None when there are none).
    """
    targets = defined_targets(goal)
    progress: Dict[str, Optional[int]] = {}
    for metric in GOAL_METRICS:
        if metric in targets:
            progress[metric] = round((totals.get(metric) or 0) / targets[metric] * 100)
        else:
            progress[metric] = None

    defined = [value for value in progress.values() if value is not None]
    progress["overall"] = round(sum(defined) / len(defined)) if defined else None
    return progress


def remaining_targets(totals: Mapping[str, Any], goal: Goal) -> Dict[str, float]:
    """What is left to eat today, never negative"""
    return {
        metric: round(max(target - (totals.get(metric) or 0), 0), 2)
        for metric, target in defined_targets(goal).items()
    }
