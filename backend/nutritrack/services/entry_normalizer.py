# backend/nutritrack/services/entry_normalizer.py
"""
Entry Normalizer
Validates raw consumption payloads (unified or legacy shape) and builds a canonical EntryDraft
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from nutritrack.core.config import settings
from nutritrack.core.errors import ValidationError
from nutritrack.models.entry_types import (
    EntryDraft, EntryMethod, FoodItem, ItemType, MealType, RecipeItem, Unit
)

logger = logging.getLogger(__name__)

MAX_NOTES_LENGTH = 1000
VALID_MOODS = ("happy", "satisfied", "neutral", "disappointed")
AI_ENTRY_METHODS = (EntryMethod.IMAGE_ANALYSIS, EntryMethod.VOICE)


def _choices(enum_cls) -> str:
    return ", ".join(member.value for member in enum_cls)


def is_present(value: Any) -> bool:
    return value is not None and value != ""


def parse_id(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {field_name}")
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field_name}")
    if parsed <= 0:
        raise ValidationError(f"Invalid {field_name}")
    return parsed


def parse_positive(value: Any, field_name: str) -> float:
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be a number")
    if number != number or number <= 0:
        raise ValidationError(f"{field_name} must be positive")
    return number


def parse_enum(enum_cls, value: Any, field_name: str, default):
    if not is_present(value):
        return default
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Invalid {field_name}. Must be one of: {_choices(enum_cls)}")


def parse_datetime(value: Any, field_name: str = "consumed_at") -> datetime:
    """Accept datetime or ISO-8601 text; return naive UTC"""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f"Invalid {field_name}: expected ISO-8601 timestamp")
    else:
        raise ValidationError(f"Invalid {field_name}: expected ISO-8601 timestamp")

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def classify_reference(raw: Mapping[str, Any]) -> Optional[Tuple[ItemType, Any]]:
    """
    Resolve which catalog item a payload refers to.

    An explicit item_type + item_id pair is taken as is. Otherwise a recipe
    reference wins over a food reference, so a legacy record carrying both
    is a recipe. Returns None when the payload references nothing.
    """
    consumed_item = raw.get("consumed_item") or {}
    item_type = raw.get("item_type") or consumed_item.get("item_type")
    item_id = raw.get("item_id") if is_present(raw.get("item_id")) else consumed_item.get("item_id")

    recipe_context = raw.get("recipe_context") or {}
    recipe_ref = raw.get("recipe_id") if is_present(raw.get("recipe_id")) else recipe_context.get("recipe_id")
    food_ref = raw.get("food_id")

    if is_present(item_type) and is_present(item_id):
        if item_type == ItemType.RECIPE.value:
            return ItemType.RECIPE, item_id
        if item_type == ItemType.FOOD.value:
            return ItemType.FOOD, item_id
        raise ValidationError('item_type must be "food" or "recipe"')

    if is_present(recipe_ref):
        return ItemType.RECIPE, recipe_ref
    if is_present(food_ref):
        return ItemType.FOOD, food_ref
    return None


def _build_food(raw: Mapping[str, Any], item_id: int, explicit: bool) -> FoodItem:
    consumed_item = raw.get("consumed_item") or {}
    quantity = raw.get("quantity", consumed_item.get("quantity"))
    unit = raw.get("unit", consumed_item.get("unit"))
    servings = raw.get("servings", consumed_item.get("servings"))

    if explicit and is_present(servings):
        raise ValidationError("Food entries take quantity and unit, not servings")
    if explicit and not is_present(quantity):
        raise ValidationError("Valid quantity is required for food items")

    quantity = 100.0 if not is_present(quantity) else parse_positive(quantity, "quantity")
    unit = parse_enum(Unit, unit, "unit", Unit.G)
    return FoodItem(item_id=item_id, quantity=quantity, unit=unit)


def _build_recipe(raw: Mapping[str, Any], item_id: int, explicit: bool) -> Tuple[RecipeItem, Dict[str, Any]]:
    consumed_item = raw.get("consumed_item") or {}
    recipe_context = raw.get("recipe_context") or {}
    servings = raw.get("servings", consumed_item.get("servings"))
    if not is_present(servings):
        servings = recipe_context.get("serving_size")

    if explicit and (is_present(raw.get("quantity", consumed_item.get("quantity")))
                     or is_present(raw.get("unit", consumed_item.get("unit")))):
        raise ValidationError("Recipe entries take servings, not quantity and unit")
    if explicit and not is_present(servings):
        raise ValidationError("Valid servings count is required for recipe items")

    servings = 1.0 if not is_present(servings) else parse_positive(servings, "servings")

    original_recipe: Dict[str, Any] = {}
    if recipe_context.get("recipe_name"):
        original_recipe["name"] = recipe_context["recipe_name"]
    total_servings = recipe_context.get("total_servings")
    if is_present(total_servings):
        total = parse_positive(total_servings, "total_servings")
        original_recipe["total_servings"] = total
        original_recipe["portion_consumed"] = round(servings / total, 4)
    return RecipeItem(item_id=item_id, servings=servings), original_recipe


def normalize_tags(tags: Any) -> List[str]:
    if tags is None:
        return []
    if isinstance(tags, str):
        tags = tags.split(",")
    if not isinstance(tags, (list, tuple)):
        raise ValidationError("tags must be a list of strings")
    cleaned = []
    for tag in tags:
        tag = str(tag).strip().lower()
        if tag and tag not in cleaned:
            cleaned.append(tag)
    return cleaned


def _ai_needs_review(entry_method: EntryMethod, ai_analysis: Mapping[str, Any]) -> bool:
    if entry_method not in AI_ENTRY_METHODS and not ai_analysis:
        return False
    confidence = ai_analysis.get("confidence")
    if confidence is None:
        return entry_method in AI_ENTRY_METHODS
    try:
        return float(confidence) < settings.ai_review_confidence_threshold
    except (TypeError, ValueError):
        return True


def normalize_entry(raw: Mapping[str, Any]) -> EntryDraft:
    """Validate a raw payload and build its canonical draft. Raises ValidationError"""
    if not isinstance(raw, Mapping):
        raise ValidationError("Entry payload must be an object")

    reference = classify_reference(raw)
    if reference is None:
        raise ValidationError(
            "Item identification is required (item_type+item_id, food_id, or recipe_id)"
        )
    item_type, raw_item_id = reference
    item_id = parse_id(raw_item_id, "item_id")
    explicit = is_present(raw.get("item_type")) or is_present((raw.get("consumed_item") or {}).get("item_type"))

    context = dict(raw.get("context") or {})
    if item_type == ItemType.RECIPE:
        item, original_recipe = _build_recipe(raw, item_id, explicit)
        if original_recipe:
            context["original_recipe"] = {**context.get("original_recipe", {}), **original_recipe}
    else:
        item = _build_food(raw, item_id, explicit)

    meal_type = parse_enum(MealType, raw.get("meal_type"), "meal type", MealType.OTHER)
    entry_method = parse_enum(EntryMethod, raw.get("entry_method"), "entry method", EntryMethod.MANUAL)

    consumed_at = raw.get("consumed_at")
    consumed_at = datetime.utcnow() if not is_present(consumed_at) else parse_datetime(consumed_at)

    notes = raw.get("notes") or ""
    if not isinstance(notes, str):
        raise ValidationError("notes must be text")
    if len(notes) > MAX_NOTES_LENGTH:
        raise ValidationError(f"notes cannot exceed {MAX_NOTES_LENGTH} characters")

    rating = raw.get("rating")
    if rating is not None:
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("rating must be an integer between 1 and 5")

    mood = raw.get("mood")
    if mood is not None and mood not in VALID_MOODS:
        raise ValidationError(f"Invalid mood. Must be one of: {', '.join(VALID_MOODS)}")

    ai_analysis = dict(raw.get("ai_analysis") or {})
    needs_review = _ai_needs_review(entry_method, ai_analysis)
    if needs_review:
        logger.info(f"Entry for item {item_type.value}:{item_id} flagged for review (low AI confidence)")

    return EntryDraft(
        item=item,
        meal_type=meal_type,
        consumed_at=consumed_at,
        entry_method=entry_method,
        notes=notes.strip(),
        tags=normalize_tags(raw.get("tags")),
        rating=rating,
        mood=mood,
        device_info=dict(raw.get("device_info") or {}),
        location=dict(raw.get("location") or {}),
        ai_analysis=ai_analysis,
        context=context,
        needs_review=needs_review,
    )
