# backend/nutritrack/services/nutrition_calculator.py
"""
Nutrition Calculator
Pure computation: reference nutrition + quantity/servings -> snapshot, confidence, quality score
"""

from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from nutritrack.models.entry_types import (
    CalculationSource, EntryDraft, EntryMethod, FoodItem, NutritionResult,
    RecipeItem, ReferenceNutrition, Unit, MACRO_FIELDS, NUTRIENT_FIELDS,
    TRUSTED_ENTRY_METHODS
)

# Grams per unit; volume units are scaled by density
UNIT_TO_GRAMS = {
    Unit.G: 1.0,
    Unit.KG: 1000.0,
    Unit.MG: 0.001,
    Unit.OZ: 28.3495,
    Unit.LB: 453.592,
}

UNIT_TO_ML = {
    Unit.ML: 1.0,
    Unit.L: 1000.0,
    Unit.CUP: 240.0,
    Unit.TBSP: 15.0,
    Unit.TSP: 5.0,
}

DEFAULT_DENSITY_G_PER_ML = 1.0
DEFAULT_PIECE_WEIGHT_G = 100.0

BASE_CONFIDENCE_FOOD = 0.8
BASE_CONFIDENCE_RECIPE = 0.9
CATALOG_MISS_PENALTY = 0.5


def _num(value: Any) -> float:
    """Coerce to a non-negative float; anything missing or invalid becomes 0"""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number or number < 0:  # NaN or negative
        return 0.0
    return number


def _round(value: float) -> float:
    return round(value, 2)


def zero_nutrients() -> Dict[str, float]:
    return {name: 0.0 for name in NUTRIENT_FIELDS}


def clamp_nutrients(values: Optional[Mapping[str, Any]]) -> Dict[str, float]:
    """Every nutrient field present, rounded, never negative"""
    values = values or {}
    return {name: _round(_num(values.get(name))) for name in NUTRIENT_FIELDS}


def to_grams(quantity: float, unit: Unit, density_g_per_ml: Optional[float] = None,
             piece_weight_g: Optional[float] = None) -> float:
    quantity = _num(quantity)
    unit = Unit(unit)

    if unit in UNIT_TO_GRAMS:
        return quantity * UNIT_TO_GRAMS[unit]
    if unit in UNIT_TO_ML:
        density = _num(density_g_per_ml) or DEFAULT_DENSITY_G_PER_ML
        return quantity * UNIT_TO_ML[unit] * density
    # Unit.PIECE
    return quantity * (_num(piece_weight_g) or DEFAULT_PIECE_WEIGHT_G)


def scale_nutrients(reference: Mapping[str, Any], multiplier: float) -> Dict[str, float]:
    multiplier = _num(multiplier)
    return {name: _round(_num(reference.get(name)) * multiplier) for name in NUTRIENT_FIELDS}


def calculate_confidence(draft: EntryDraft, reference_found: bool = True) -> float:
    """0-1 trust estimate for the computed snapshot"""
    if isinstance(draft.item, RecipeItem):
        confidence = BASE_CONFIDENCE_RECIPE
        has_quantity = _num(draft.item.servings) > 0
    else:
        confidence = BASE_CONFIDENCE_FOOD
        has_quantity = _num(draft.item.quantity) > 0

    if has_quantity:
        confidence += 0.05
    if draft.notes:
        confidence += 0.02
    if draft.entry_method in TRUSTED_ENTRY_METHODS:
        confidence += 0.03

    confidence = min(confidence, 1.0)
    if not reference_found:
        confidence *= CATALOG_MISS_PENALTY
    return _round(confidence)


def calculate_nutrition(draft: EntryDraft, reference: Optional[ReferenceNutrition]) -> NutritionResult:
    """Snapshot for a draft. A missing reference yields zeros, never an exception"""
    if reference is None:
        return NutritionResult(
            nutrients=zero_nutrients(),
            calculation_source=CalculationSource.CATALOG_MISS,
            confidence=calculate_confidence(draft, reference_found=False),
        )

    item = draft.item
    if isinstance(item, FoodItem):
        grams = to_grams(item.quantity, item.unit, reference.density_g_per_ml, reference.piece_weight_g)
        nutrients = scale_nutrients(reference.nutrients, grams / 100.0)
        source = CalculationSource.FOOD_DATABASE
    else:
        nutrients = scale_nutrients(reference.nutrients, item.servings)
        source = CalculationSource.RECIPE_COMPUTATION

    return NutritionResult(
        nutrients=nutrients,
        calculation_source=source,
        confidence=calculate_confidence(draft, reference_found=True),
        calculated_at=datetime.utcnow(),
    )


def calculate_quality_score(draft: EntryDraft, nutrients: Mapping[str, Any]) -> float:
    """Weighted completeness heuristic, 0-100"""
    score = 0
    if _num(nutrients.get("calories")) > 0:
        score += 20
    for macro in MACRO_FIELDS:
        if _num(nutrients.get(macro)) > 0:
            score += 5

    if isinstance(draft.item, FoodItem):
        if _num(draft.item.quantity) > 0:
            score += 10
    elif _num(draft.item.servings) > 0:
        score += 10

    if draft.notes:
        score += 5
    if draft.tags:
        score += 5
    if draft.entry_method in TRUSTED_ENTRY_METHODS:
        score += 10
    if draft.context.get("original_recipe"):
        score += 5

    return min(score, 100)


def legacy_confidence(nutrition: Mapping[str, Any], quantity: Any, notes: Any, entry_method: Optional[str]) -> float:
    """Confidence for snapshots carried over from legacy rows"""
    confidence = BASE_CONFIDENCE_FOOD
    if _num(nutrition.get("calories")) > 0:
        confidence += 0.1
    if _num(quantity) > 0:
        confidence += 0.05
    if notes:
        confidence += 0.02
    if entry_method and entry_method != EntryMethod.MANUAL.value:
        confidence += 0.03
    return _round(min(confidence, 1.0))


def legacy_quality_score(nutrition: Mapping[str, Any], quantity: Any, notes: Any, tags: Any,
                         consumed_at: Optional[datetime], entry_method: Optional[str],
                         recipe_name: Optional[str]) -> float:
    score = 50
    if _num(nutrition.get("calories")) > 0:
        score += 20
    for macro in MACRO_FIELDS:
        if _num(nutrition.get(macro)) > 0:
            score += 5
    if _num(quantity) > 0:
        score += 10
    if notes:
        score += 5
    if tags:
        score += 5
    if consumed_at is not None and consumed_at <= datetime.utcnow():
        score += 5
    if entry_method in (EntryMethod.BARCODE_SCAN.value, EntryMethod.IMAGE_ANALYSIS.value):
        score += 10
    elif entry_method == EntryMethod.MANUAL.value:
        score += 5
    if recipe_name:
        score += 5
    return min(score, 100)


def macro_breakdown(nutrients: Mapping[str, Any]) -> Dict[str, int]:
    """Percentage split of protein/carbs/fat grams"""
    total = sum(_num(nutrients.get(macro)) for macro in MACRO_FIELDS)
    if total == 0:
        return {macro: 0 for macro in MACRO_FIELDS}
    return {macro: round(_num(nutrients.get(macro)) / total * 100) for macro in MACRO_FIELDS}
