"""
Tests for goals_progress.py
"""

from nutritrack.services.goals_progress import (
    calculate_goals_progress, defined_targets, remaining_targets
)
from nutritrack.services.providers import NutritionGoalTargets


def test_progress_for_defined_targets_only():
    goal = NutritionGoalTargets(calories=2000, protein=100)
    progress = calculate_goals_progress({"calories": 1500, "protein": 120, "carbs": 80}, goal)

    assert progress["calories"] == 75
    assert progress["protein"] == 120
    assert progress["carbs"] is None
    assert progress["overall"] == 98


def test_no_targets_means_no_overall():
    progress = calculate_goals_progress({"calories": 1500}, NutritionGoalTargets())
    assert progress["overall"] is None
    assert all(value is None for value in progress.values())


def test_zero_and_invalid_targets_are_ignored():
    assert defined_targets({"calories": 0, "protein": "abc", "fat": 60}) == {"fat": 60.0}
    assert defined_targets(None) == {}


def test_remaining_never_negative():
    goal = NutritionGoalTargets(calories=2000, protein=100)
    remaining = remaining_targets({"calories": 2500, "protein": 40.5}, goal)
    assert remaining == {"calories": 0, "protein": 59.5}
