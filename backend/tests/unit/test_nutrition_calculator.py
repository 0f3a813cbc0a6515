"""
Tests for nutrition_calculator.py
Scaling, unit conversion, confidence and quality scoring
"""

import pytest
from datetime import datetime, timedelta

from nutritrack.models.entry_types import (
    CalculationSource, EntryDraft, EntryMethod, FoodItem, ItemType, RecipeItem,
    ReferenceNutrition, Unit, NUTRIENT_FIELDS
)
from nutritrack.services.nutrition_calculator import (
    calculate_confidence, calculate_nutrition, calculate_quality_score, clamp_nutrients,
    legacy_confidence, legacy_quality_score, macro_breakdown, to_grams
)

APPLE = ReferenceNutrition(
    item_type=ItemType.FOOD, item_id=1, name="Apple",
    nutrients={"calories": 52, "protein": 0.3, "carbs": 14, "fat": 0.2},
)
STIR_FRY = ReferenceNutrition(
    item_type=ItemType.RECIPE, item_id=1, name="Chicken Stir Fry",
    nutrients={"calories": 400, "protein": 30, "carbs": 40, "fat": 12}, total_servings=4,
)


class TestCalculateNutrition:

    def test_food_scales_per_100_grams(self):
        draft = EntryDraft(item=FoodItem(item_id=1, quantity=150, unit=Unit.G))
        result = calculate_nutrition(draft, APPLE)

        assert result.nutrients["calories"] == 78.0
        assert result.nutrients["protein"] == 0.45
        assert result.nutrients["carbs"] == 21.0
        assert result.calculation_source == CalculationSource.FOOD_DATABASE
        assert set(result.nutrients) == set(NUTRIENT_FIELDS)

    def test_recipe_scales_per_serving(self):
        draft = EntryDraft(item=RecipeItem(item_id=1, servings=2), entry_method=EntryMethod.RECIPE)
        result = calculate_nutrition(draft, STIR_FRY)

        assert result.nutrients["calories"] == 800.0
        assert result.nutrients["protein"] == 60.0
        assert result.calculation_source == CalculationSource.RECIPE_COMPUTATION
        assert result.confidence == 0.95

    def test_missing_reference_yields_zeros(self):
        draft = EntryDraft(item=FoodItem(item_id=999, quantity=100))
        result = calculate_nutrition(draft, None)

        assert all(value == 0 for value in result.nutrients.values())
        assert result.calculation_source == CalculationSource.CATALOG_MISS
        assert result.confidence < 0.5

    def test_kilograms_convert_before_scaling(self):
        draft = EntryDraft(item=FoodItem(item_id=1, quantity=0.5, unit=Unit.KG))
        assert calculate_nutrition(draft, APPLE).nutrients["calories"] == 260.0


class TestUnitConversion:

    def test_volume_uses_density(self):
        assert to_grams(100, Unit.ML, density_g_per_ml=1.03) == pytest.approx(103.0)

    def test_volume_defaults_to_water(self):
        assert to_grams(1, Unit.CUP) == pytest.approx(240.0)

    def test_piece_uses_piece_weight(self):
        assert to_grams(2, Unit.PIECE, piece_weight_g=180) == pytest.approx(360.0)

    def test_piece_without_weight_defaults(self):
        assert to_grams(1, Unit.PIECE) == pytest.approx(100.0)


class TestConfidence:

    def test_notes_and_trusted_method_raise_confidence(self):
        plain = EntryDraft(item=FoodItem(item_id=1, quantity=100))
        scanned = EntryDraft(item=FoodItem(item_id=1, quantity=100), notes="label",
                             entry_method=EntryMethod.BARCODE_SCAN)

        assert calculate_confidence(plain) == 0.85
        assert calculate_confidence(scanned) == 0.9

    def test_confidence_never_exceeds_one(self):
        draft = EntryDraft(item=RecipeItem(item_id=1, servings=1), notes="x",
                           entry_method=EntryMethod.IMAGE_ANALYSIS)
        assert calculate_confidence(draft) == 1.0


class TestQualityScore:

    def test_complete_food_entry(self):
        draft = EntryDraft(item=FoodItem(item_id=1, quantity=150), notes="crisp", tags=["fruit"])
        nutrients = {"calories": 78, "protein": 0.45, "carbs": 21, "fat": 0.3}
        assert calculate_quality_score(draft, nutrients) == 55

    def test_empty_nutrition_scores_quantity_only(self):
        draft = EntryDraft(item=FoodItem(item_id=1, quantity=150))
        assert calculate_quality_score(draft, {}) == 10

    def test_recipe_context_adds_points(self):
        draft = EntryDraft(item=RecipeItem(item_id=1, servings=1),
                           context={"original_recipe": {"name": "Stir Fry"}})
        assert calculate_quality_score(draft, {"calories": 400}) == 35


class TestLegacyScores:

    def test_legacy_confidence(self):
        assert legacy_confidence({"calories": 78}, 150, "note", "barcode_scan") == 1.0
        assert legacy_confidence({}, None, None, "manual") == 0.8

    def test_legacy_quality_score_is_capped(self):
        score = legacy_quality_score(
            {"calories": 78, "protein": 1, "carbs": 2, "fat": 3}, 150, "n", ["t"],
            datetime.utcnow() - timedelta(days=1), "barcode_scan", "Stir Fry"
        )
        assert score == 100

    def test_legacy_quality_score_baseline(self):
        assert legacy_quality_score({}, None, None, None, None, None, None) == 50


class TestHelpers:

    def test_clamp_nutrients_fills_and_floors(self):
        clamped = clamp_nutrients({"calories": -5, "protein": "12.346", "fat": "bad"})
        assert clamped["calories"] == 0
        assert clamped["protein"] == 12.35
        assert clamped["fat"] == 0
        assert set(clamped) == set(NUTRIENT_FIELDS)

    def test_macro_breakdown(self):
        assert macro_breakdown({"protein": 25, "carbs": 50, "fat": 25}) == {"protein": 25, "carbs": 50, "fat": 25}
        assert macro_breakdown({}) == {"protein": 0, "carbs": 0, "fat": 0}
