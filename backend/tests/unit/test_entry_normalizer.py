"""
Tests for entry_normalizer.py
Payload validation, legacy reference classification and canonical drafts
"""

import pytest
from datetime import datetime

from nutritrack.core.errors import ValidationError
from nutritrack.models.entry_types import EntryMethod, FoodItem, ItemType, MealType, RecipeItem, Unit
from nutritrack.services.entry_normalizer import (
    classify_reference, normalize_entry, normalize_tags, parse_datetime, parse_id, parse_positive
)


class TestClassifyReference:

    def test_explicit_pair_wins(self):
        assert classify_reference({"item_type": "food", "item_id": 3, "recipe_id": 9}) == (ItemType.FOOD, 3)

    def test_recipe_reference_beats_food_reference(self):
        raw = {"food_id": 2, "recipe_context": {"recipe_id": 7}}
        assert classify_reference(raw) == (ItemType.RECIPE, 7)

    def test_food_id_alone_is_food(self):
        assert classify_reference({"food_id": 2}) == (ItemType.FOOD, 2)

    def test_nothing_referenced(self):
        assert classify_reference({"quantity": 100}) is None

    def test_unknown_item_type_rejected(self):
        with pytest.raises(ValidationError):
            classify_reference({"item_type": "drink", "item_id": 1})


class TestNormalizeEntry:

    def test_food_payload(self):
        draft = normalize_entry({
            "item_type": "food", "item_id": "4", "quantity": "150", "unit": "g",
            "meal_type": "lunch", "consumed_at": "2024-03-04T12:30:00Z",
        })

        assert draft.item == FoodItem(item_id=4, quantity=150.0, unit=Unit.G)
        assert draft.meal_type == MealType.LUNCH
        assert draft.entry_method == EntryMethod.MANUAL
        assert draft.consumed_at == datetime(2024, 3, 4, 12, 30)

    def test_recipe_payload_records_portion(self):
        draft = normalize_entry({
            "item_type": "recipe", "item_id": 1, "servings": 2,
            "recipe_context": {"recipe_name": "Stir Fry", "total_servings": 4},
        })

        assert draft.item == RecipeItem(item_id=1, servings=2.0)
        assert draft.context["original_recipe"] == {
            "name": "Stir Fry", "total_servings": 4.0, "portion_consumed": 0.5
        }

    def test_legacy_food_defaults_to_100_grams(self):
        draft = normalize_entry({"food_id": 1})
        assert draft.item == FoodItem(item_id=1, quantity=100.0, unit=Unit.G)

    def test_legacy_recipe_uses_serving_size(self):
        draft = normalize_entry({"recipe_context": {"recipe_id": 1, "serving_size": 3}})
        assert draft.item == RecipeItem(item_id=1, servings=3.0)

    def test_explicit_food_requires_quantity(self):
        with pytest.raises(ValidationError):
            normalize_entry({"item_type": "food", "item_id": 1})

    def test_explicit_food_rejects_servings(self):
        with pytest.raises(ValidationError):
            normalize_entry({"item_type": "food", "item_id": 1, "quantity": 100, "servings": 1})

    def test_explicit_recipe_rejects_quantity(self):
        with pytest.raises(ValidationError):
            normalize_entry({"item_type": "recipe", "item_id": 1, "servings": 1, "quantity": 100})

    @pytest.mark.parametrize("quantity", [0, -10, "abc", float("nan")])
    def test_invalid_quantity(self, quantity):
        with pytest.raises(ValidationError):
            normalize_entry({"item_type": "food", "item_id": 1, "quantity": quantity})

    def test_missing_reference(self):
        with pytest.raises(ValidationError) as exc:
            normalize_entry({"quantity": 100})
        assert "Item identification is required" in exc.value.message

    @pytest.mark.parametrize("field, value", [
        ("meal_type", "brunch"),
        ("unit", "bucket"),
        ("entry_method", "telepathy"),
        ("rating", 6),
        ("rating", True),
        ("mood", "ecstatic"),
        ("notes", "x" * 1001),
        ("consumed_at", "yesterday"),
    ])
    def test_invalid_fields(self, field, value):
        raw = {"item_type": "food", "item_id": 1, "quantity": 100, field: value}
        with pytest.raises(ValidationError):
            normalize_entry(raw)

    def test_tags_are_cleaned(self):
        draft = normalize_entry({"food_id": 1, "tags": [" Fruit", "fruit", "", "Snack "]})
        assert draft.tags == ["fruit", "snack"]

    def test_low_ai_confidence_flags_review(self):
        draft = normalize_entry({
            "food_id": 1, "entry_method": "image_analysis", "ai_analysis": {"confidence": 0.4},
        })
        assert draft.needs_review is True

    def test_confident_ai_analysis_is_not_flagged(self):
        draft = normalize_entry({
            "food_id": 1, "entry_method": "image_analysis", "ai_analysis": {"confidence": 0.9},
        })
        assert draft.needs_review is False

    def test_metadata_shape(self):
        draft = normalize_entry({"food_id": 1, "notes": " tasty ", "rating": 4, "mood": "happy"})
        metadata = draft.metadata_dict()
        assert metadata["user_input"] == {"notes": "tasty", "tags": [], "rating": 4, "mood": "happy"}
        assert metadata["device_info"] == {}


class TestParsers:

    def test_parse_id(self):
        assert parse_id("12", "entry_id") == 12
        for bad in (0, -1, "x", None, True):
            with pytest.raises(ValidationError):
                parse_id(bad, "entry_id")

    def test_parse_positive(self):
        assert parse_positive("2.5", "servings") == 2.5
        with pytest.raises(ValidationError):
            parse_positive(0, "servings")

    def test_parse_datetime_converts_offsets_to_utc(self):
        assert parse_datetime("2024-03-04T10:00:00+02:00") == datetime(2024, 3, 4, 8, 0)

    def test_normalize_tags_accepts_comma_text(self):
        assert normalize_tags("a, B ,a") == ["a", "b"]
