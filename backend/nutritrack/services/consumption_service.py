# backend/nutritrack/services/consumption_service.py
"""
Consumption Service for NutriTrack
Entry lifecycle: create, read, update, soft/hard delete, restore, duplicate,
batch operations, quick meals and nutrition resync
"""

import logging
import uuid
from datetime import date, datetime, time, timedelta
from functools import wraps
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import asc, desc
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from nutritrack.core.config import settings
from nutritrack.core.errors import (
    AppError, BusinessError, DatabaseError, NotFoundError, ValidationError
)
from nutritrack.models.database import ConsumptionEntry
from nutritrack.models.entry_types import (
    CalculationSource, EntryDraft, EntryMethod, FoodItem, ItemType, MealType,
    NutritionResult, NUTRIENT_FIELDS
)
from nutritrack.services.aggregation import get_daily_summary, get_top_items, recompute_daily_summary
from nutritrack.services.entry_normalizer import (
    normalize_entry, parse_datetime, parse_enum, parse_id
)
from nutritrack.services.goals_progress import calculate_goals_progress, remaining_targets
from nutritrack.services.nutrition_calculator import (
    calculate_nutrition, calculate_quality_score
)
from nutritrack.services.providers import (
    ActivityLogSink, CatalogProvider, DatabaseActivityLog, GoalsProvider,
    SqlCatalogProvider, SqlGoalsProvider
)

logger = logging.getLogger(__name__)

BATCH_OPERATIONS = ("delete", "update", "duplicate", "restore", "recalculate")
UPDATABLE_FIELDS = (
    "meal_type", "consumed_at", "item_id", "quantity", "unit", "servings",
    "notes", "tags", "rating", "mood", "update_reason",
)
DUPLICATE_OVERRIDES = ("consumed_at", "meal_type", "quantity", "unit", "servings", "notes")
RECALCULATING_FIELDS = ("item_id", "quantity", "unit", "servings")
SORT_FIELDS = ("consumed_at", "created_at", "calories", "meal_type")
RELATED_ENTRIES_LIMIT = 5
SYNC_CALORIE_TOLERANCE = 5
MAX_PAGE_SIZE = 100
EXPORT_LIMIT = 10000
MIN_SEARCH_LENGTH = 2
# reason and the consumption count at which confidence saturates
SUGGESTION_REASONS = {
    ItemType.FOOD.value: ("frequently_eaten", 10),
    ItemType.RECIPE.value: ("frequently_made", 5),
}


def service_operation(description: str):
    """Roll back on failure and translate unexpected errors into the app taxonomy"""
    def decorator(func):
        @wraps(func)
        def wrapper(self, *args, **kwargs):
            try:
                return func(self, *args, **kwargs)
            except AppError:
                self.db.rollback()
                raise
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"Database error while trying to {description}: {str(e)}")
                raise DatabaseError(f"Failed to {description}", original_error=e)
            except Exception as e:
                self.db.rollback()
                logger.error(f"Error while trying to {description}: {str(e)}")
                raise BusinessError(f"Failed to {description}", original_error=e)
        return wrapper
    return decorator


def nutrition_summary(entry: ConsumptionEntry) -> Dict[str, Any]:
    summary = dict(entry.nutrition)
    summary["confidence"] = entry.confidence
    summary["calculation_source"] = entry.calculation_source
    return summary


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, str):
        return value.split(",")
    return list(value)


def _number(value: Any, field_name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be a number")


def _date_bound(value: Any, field_name: str, end: bool = False) -> Tuple[datetime, bool]:
    """
    Filter bound from a date or timestamp.

    Plain dates cover the whole day, so an end bound becomes the next
    midnight and is exclusive. Returns (bound, exclusive).
    """
    day = None
    if isinstance(value, datetime):
        return parse_datetime(value, field_name), False
    if isinstance(value, date):
        day = value
    elif isinstance(value, str) and len(value.strip()) == 10:
        try:
            day = date.fromisoformat(value.strip())
        except ValueError:
            raise ValidationError(f"Invalid {field_name}: expected YYYY-MM-DD")
    if day is None:
        return parse_datetime(value, field_name), False

    start = datetime.combine(day, time.min)
    if end:
        return start + timedelta(days=1), True
    return start, False


def search_terms(query: Any) -> List[str]:
    text = str(query or "").strip().lower()
    if len(text) < MIN_SEARCH_LENGTH:
        raise ValidationError(f"Search query must be at least {MIN_SEARCH_LENGTH} characters")
    return text.split()


def search_score(entry: ConsumptionEntry, terms: Sequence[str]) -> int:
    """How many terms appear in the entry's notes, tags or recipe name"""
    recipe = (entry.context or {}).get("original_recipe") or {}
    text = " ".join([entry.notes, " ".join(entry.tags), str(recipe.get("name") or "")]).lower()
    return sum(1 for term in terms if term in text)


class ConsumptionService:
    """Owns every write to consumption entries and keeps daily summaries in step"""

    def __init__(self, db: Session, catalog: Optional[CatalogProvider] = None,
                 goals: Optional[GoalsProvider] = None, activity_log: Optional[ActivityLogSink] = None):
        self.db = db
        self.catalog = catalog or SqlCatalogProvider(db)
        self.goals = goals or SqlGoalsProvider(db)
        self.activity_log = activity_log or DatabaseActivityLog(db)

    # ===== CREATE =====

    @service_operation("create consumption entry")
    def create_entry(self, user_id: int, raw: Mapping[str, Any]) -> Dict[str, Any]:
        user_id = parse_id(user_id, "user_id")
        draft = normalize_entry(raw)
        entry = self._persist_draft(user_id, draft)
        return {
            "entry": entry.to_dict(),
            "nutrition_summary": nutrition_summary(entry),
        }

    @service_operation("create meal from recipe")
    def create_meal_from_recipe(self, user_id: int, recipe_id: int, servings: float = 1,
                                meal_type: str = MealType.OTHER.value, consumed_at: Any = None,
                                notes: Optional[str] = None) -> Dict[str, Any]:
        recipe_id = parse_id(recipe_id, "recipe_id")
        reference = self.catalog.lookup(ItemType.RECIPE, recipe_id)
        if reference is None:
            raise NotFoundError("Recipe not found")

        raw = {
            "item_type": ItemType.RECIPE.value,
            "item_id": recipe_id,
            "servings": servings,
            "meal_type": meal_type,
            "consumed_at": consumed_at,
            "entry_method": EntryMethod.RECIPE.value,
            "notes": notes,
            "recipe_context": {"recipe_name": reference.name},
        }
        if reference.total_servings and reference.total_servings > 0:
            raw["recipe_context"]["total_servings"] = reference.total_servings
        return self.create_entry(user_id, raw)

    @service_operation("add quick meal")
    def add_quick_meal(self, user_id: int, items: Sequence[Mapping[str, Any]],
                       meal_type: str = MealType.OTHER.value, meal_name: Optional[str] = None,
                       consumed_at: Any = None, notes: Optional[str] = None,
                       tags: Optional[Sequence[str]] = None) -> Dict[str, Any]:
        """
        Log several items as one meal.

        Each item is its own entry, committed independently and grouped by a
        shared meal_session_id. Item failures are reported, not raised.
        """
        user_id = parse_id(user_id, "user_id")
        if not isinstance(items, (list, tuple)) or not items:
            raise ValidationError("Items array is required and cannot be empty")
        if len(items) > settings.quick_meal_max_items:
            raise ValidationError(f"Cannot add more than {settings.quick_meal_max_items} items in one meal")
        meal_type = parse_enum(MealType, meal_type, "meal type", MealType.OTHER)
        consumed_at = datetime.utcnow() if consumed_at is None else parse_datetime(consumed_at)

        meal_session_id = uuid.uuid4().hex
        entries = []
        failures = []
        total_nutrition = {"calories": 0.0, "protein": 0.0, "carbs": 0.0, "fat": 0.0}

        for index, item in enumerate(items):
            if not isinstance(item, Mapping):
                failures.append({"index": index, "error": "Item must be an object"})
                continue

            raw = dict(item)
            raw.update({
                "meal_type": meal_type.value,
                "consumed_at": consumed_at,
                "entry_method": EntryMethod.QUICK_MEAL.value,
                "notes": item.get("notes") or notes,
                "tags": _as_list(item.get("tags")) + _as_list(tags),
            })
            context = dict(item.get("context") or {})
            context["meal"] = {
                "is_part_of_larger_meal": True,
                "meal_session_id": meal_session_id,
                "meal_name": meal_name,
            }
            raw["context"] = context

            try:
                result = self.create_entry(user_id, raw)
            except AppError as e:
                logger.warning(f"Quick meal {meal_session_id}: item {index} failed: {e.message}")
                failures.append({"index": index, "error": e.message})
                continue

            entries.append(result)
            for name in total_nutrition:
                total_nutrition[name] += result["nutrition_summary"].get(name) or 0

        total_nutrition = {name: round(value, 2) for name, value in total_nutrition.items()}
        self.activity_log.append(user_id, "quick_meal_created", {
            "meal_type": meal_type.value,
            "meal_name": meal_name,
            "meal_session_id": meal_session_id,
            "items_count": len(entries),
            "failed_count": len(failures),
            "total_calories": total_nutrition["calories"],
        })

        return {
            "entries": entries,
            "failures": failures,
            "meal_summary": {
                "meal_session_id": meal_session_id,
                "total_items": len(entries),
                "failed_items": len(failures),
                "total_nutrition": total_nutrition,
                "meal_type": meal_type.value,
                "meal_name": meal_name,
                "consumed_at": consumed_at.isoformat(),
            },
        }

    # ===== READ =====

    @service_operation("retrieve consumption entry")
    def get_entry(self, entry_id: int, user_id: int, is_admin: bool = False) -> Dict[str, Any]:
        entry = self._get_owned(entry_id, user_id, is_admin)

        related = self.db.query(ConsumptionEntry).filter(
            ConsumptionEntry.user_id == entry.user_id,
            ConsumptionEntry.item_type == entry.item_type,
            ConsumptionEntry.item_id == entry.item_id,
            ConsumptionEntry.id != entry.id,
            ConsumptionEntry.is_deleted == False  # noqa: E712
        ).order_by(desc(ConsumptionEntry.consumed_at)).limit(RELATED_ENTRIES_LIMIT).all()

        return {
            "entry": entry.to_dict(),
            "nutrition_summary": nutrition_summary(entry),
            "related_entries": [
                {
                    "id": other.id,
                    "consumed_at": other.consumed_at.isoformat(),
                    "meal_type": other.meal_type,
                    "calories": other.calories,
                    "quantity": other.quantity,
                    "servings": other.servings,
                }
                for other in related
            ],
        }

    @service_operation("retrieve user consumptions")
    def list_entries(self, user_id: int, filters: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        user_id = parse_id(user_id, "user_id")
        filters = dict(filters or {})

        page = parse_id(filters.get("page") or 1, "page")
        limit = parse_id(filters.get("limit") or 20, "limit")
        if limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit cannot exceed {MAX_PAGE_SIZE}")

        query = self.db.query(ConsumptionEntry).filter(ConsumptionEntry.user_id == user_id)
        if not filters.get("include_deleted"):
            query = query.filter(ConsumptionEntry.is_deleted == False)  # noqa: E712
        if filters.get("meal_type"):
            meal_type = parse_enum(MealType, filters["meal_type"], "meal type", None)
            query = query.filter(ConsumptionEntry.meal_type == meal_type.value)
        if filters.get("item_type"):
            item_type = parse_enum(ItemType, filters["item_type"], "item type", None)
            query = query.filter(ConsumptionEntry.item_type == item_type.value)
        if filters.get("entry_method"):
            entry_method = parse_enum(EntryMethod, filters["entry_method"], "entry method", None)
            query = query.filter(ConsumptionEntry.entry_method == entry_method.value)
        if filters.get("date_from"):
            start, _ = _date_bound(filters["date_from"], "date_from")
            query = query.filter(ConsumptionEntry.consumed_at >= start)
        if filters.get("date_to"):
            end, exclusive = _date_bound(filters["date_to"], "date_to", end=True)
            if exclusive:
                query = query.filter(ConsumptionEntry.consumed_at < end)
            else:
                query = query.filter(ConsumptionEntry.consumed_at <= end)
        if filters.get("min_calories") is not None:
            query = query.filter(ConsumptionEntry.calories >= _number(filters["min_calories"], "min_calories"))
        if filters.get("max_calories") is not None:
            query = query.filter(ConsumptionEntry.calories <= _number(filters["max_calories"], "max_calories"))

        sort_by = filters.get("sort_by") or "consumed_at"
        if sort_by not in SORT_FIELDS:
            raise ValidationError(f"Invalid sort_by. Must be one of: {', '.join(SORT_FIELDS)}")
        order = asc if filters.get("sort_order") == "asc" else desc
        query = query.order_by(order(getattr(ConsumptionEntry, sort_by)), order(ConsumptionEntry.id))

        # Tags and free text live in JSON columns, so those filters run in Python
        tags = {tag.strip().lower() for tag in _as_list(filters.get("tags")) if str(tag).strip()}
        terms = search_terms(filters["search"]) if filters.get("search") else []
        if tags or terms:
            matching = [
                entry for entry in query.all()
                if (not tags or tags & set(entry.tags)) and (not terms or search_score(entry, terms))
            ]
            total = len(matching)
            entries = matching[(page - 1) * limit: page * limit]
        else:
            total = query.count()
            entries = query.offset((page - 1) * limit).limit(limit).all()

        total_pages = (total + limit - 1) // limit
        item_type_counts = {item_type.value: 0 for item_type in ItemType}
        for entry in entries:
            item_type_counts[entry.item_type] = item_type_counts.get(entry.item_type, 0) + 1

        return {
            "entries": [entry.to_dict(include_metadata=False) for entry in entries],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": total_pages,
                "has_next": page < total_pages,
                "has_prev": page > 1,
            },
            "filters": {key: value for key, value in filters.items() if key not in ("page", "limit")},
            "summary": {
                "total_calories": round(sum(entry.calories or 0 for entry in entries), 2),
                "item_type_counts": item_type_counts,
            },
        }

    # ===== SEARCH / SUGGESTIONS =====

    @service_operation("search consumption entries")
    def search_entries(self, user_id: int, query: Any, item_type: Optional[str] = None,
                       page: int = 1, limit: int = 20) -> Dict[str, Any]:
        """Active entries whose notes, tags or recipe name match, best matches first"""
        user_id = parse_id(user_id, "user_id")
        terms = search_terms(query)
        page = parse_id(page or 1, "page")
        limit = parse_id(limit or 20, "limit")
        if limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit cannot exceed {MAX_PAGE_SIZE}")

        candidates = self.db.query(ConsumptionEntry).filter(
            ConsumptionEntry.user_id == user_id,
            ConsumptionEntry.is_deleted == False  # noqa: E712
        )
        if item_type:
            item_type = parse_enum(ItemType, item_type, "item type", None).value
            candidates = candidates.filter(ConsumptionEntry.item_type == item_type)
        candidates = candidates.order_by(desc(ConsumptionEntry.consumed_at), desc(ConsumptionEntry.id))

        scored = [(search_score(entry, terms), entry) for entry in candidates.all()]
        scored = [pair for pair in scored if pair[0]]
        scored.sort(key=lambda pair: -pair[0])
        total = len(scored)

        return {
            "results": [entry.to_dict() for _, entry in scored[(page - 1) * limit: page * limit]],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": (total + limit - 1) // limit,
            },
            "search_query": str(query).strip(),
            "filters": {"item_type": item_type},
        }

    @service_operation("get suggestions")
    def get_suggestions(self, user_id: int, item_type: str = "food", limit: int = 10,
                        period: str = "all") -> Dict[str, Any]:
        """Frequently consumed foods or recipes from the user's own history"""
        user_id = parse_id(user_id, "user_id")
        item_type = parse_enum(ItemType, item_type, "item type", ItemType.FOOD).value
        reason, saturation = SUGGESTION_REASONS[item_type]

        top = get_top_items(self.db, user_id, period=period, limit=limit, item_type=item_type,
                            catalog=self.catalog)
        suggestions = [
            {
                "item_id": item["item_id"],
                "item_type": item["item_type"],
                "name": item["name"],
                "reason": reason,
                "confidence": round(min(item["consumption_count"] / saturation, 1.0), 2),
                "consumption_count": item["consumption_count"],
                "avg_calories": item["avg_calories"],
                "last_consumed": item["last_consumed"],
            }
            for item in top["items"]
        ]
        return {
            "suggestions": suggestions,
            "item_type": item_type,
            "period": period,
            "based_on": ["user_history"],
            "generated_at": top["generated_at"],
        }

    # ===== UPDATE / DELETE / RESTORE =====

    @service_operation("update consumption entry")
    def update_entry(self, entry_id: int, user_id: int, patch: Mapping[str, Any],
                     is_admin: bool = False) -> Dict[str, Any]:
        if not isinstance(patch, Mapping) or not patch:
            raise ValidationError("No fields to update")
        unknown = sorted(set(patch) - set(UPDATABLE_FIELDS))
        if unknown:
            raise ValidationError("Unknown fields in update", details=unknown)

        entry = self._get_owned(entry_id, user_id, is_admin)
        previous_day = entry.consumed_at.date()

        raw = self._entry_as_payload(entry)
        raw.update({key: value for key, value in patch.items() if key != "update_reason"})
        draft = normalize_entry(raw)

        self._apply_draft(entry, draft)
        recalculated = any(key in patch for key in RECALCULATING_FIELDS)
        if recalculated:
            result = calculate_nutrition(draft, self.catalog.lookup(draft.item_type, draft.item.item_id))
            self._apply_nutrition(entry, result)
        entry.quality_score = calculate_quality_score(draft, entry.nutrition)

        changes = sorted(key for key in patch if key != "update_reason")
        reason = patch.get("update_reason") or "user_edit"
        self._append_version(entry, user_id, changes, reason)
        self.db.commit()
        self.db.refresh(entry)

        self._refresh_summary(entry.user_id, previous_day)
        if entry.consumed_at.date() != previous_day:
            self._refresh_summary(entry.user_id, entry.consumed_at.date())

        self.activity_log.append(user_id, "consumption_entry_updated", {
            "entry_id": entry.id,
            "changes": changes,
            "reason": reason,
        })
        return {
            "entry": entry.to_dict(),
            "nutrition_summary": nutrition_summary(entry),
            "recalculated": recalculated,
        }

    @service_operation("delete consumption entry")
    def soft_delete(self, entry_id: int, user_id: int, reason: str = "user_delete",
                    is_admin: bool = False) -> Dict[str, Any]:
        entry = self._get_owned(entry_id, user_id, is_admin)

        entry.is_deleted = True
        entry.deleted_at = datetime.utcnow()
        entry.deleted_by = user_id
        self._append_version(entry, user_id, ["is_deleted"], reason)
        self.db.commit()

        self._refresh_summary(entry.user_id, entry.consumed_at)
        self.activity_log.append(user_id, "consumption_entry_deleted", {
            "entry_id": entry.id,
            "reason": reason,
            "deletion_type": "soft",
        })
        return {
            "message": "Consumption entry deleted successfully",
            "entry_id": entry.id,
            "can_restore": True,
        }

    @service_operation("restore consumption entry")
    def restore(self, entry_id: int, user_id: int, is_admin: bool = False) -> Dict[str, Any]:
        entry = self._get_owned(entry_id, user_id, is_admin, deleted=True,
                                message="Consumption entry not found or cannot be restored")

        entry.is_deleted = False
        entry.deleted_at = None
        entry.deleted_by = None
        self._append_version(entry, user_id, ["is_deleted"], "restored")
        self.db.commit()
        self.db.refresh(entry)

        self._refresh_summary(entry.user_id, entry.consumed_at)
        self.activity_log.append(user_id, "consumption_entry_restored", {"entry_id": entry.id})
        return {
            "message": "Consumption entry restored successfully",
            "entry": entry.to_dict(),
            "nutrition_summary": nutrition_summary(entry),
        }

    @service_operation("permanently delete consumption entry")
    def hard_delete(self, entry_id: int, user_id: int, is_admin: bool = False) -> Dict[str, Any]:
        entry = self._get_owned(entry_id, user_id, is_admin, deleted=None)
        if not is_admin and not settings.allow_owner_hard_delete:
            raise ValidationError("Permanent deletion is restricted to administrators")

        owner_id = entry.user_id
        consumed_at = entry.consumed_at
        entry_id = entry.id
        self.db.query(ConsumptionEntry).filter(
            ConsumptionEntry.original_entry_id == entry_id
        ).update({"original_entry_id": None}, synchronize_session=False)
        self.db.delete(entry)
        self.db.commit()

        self._refresh_summary(owner_id, consumed_at)
        self.activity_log.append(user_id, "consumption_entry_purged", {
            "entry_id": entry_id,
            "owner_id": owner_id,
            "deletion_type": "hard",
        })
        return {
            "message": "Consumption entry permanently deleted",
            "entry_id": entry_id,
        }

    @service_operation("duplicate consumption entry")
    def duplicate(self, entry_id: int, user_id: int,
                  overrides: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """
        Copy an active entry as a new one, optionally with a new time, meal or amount.

        The source snapshot is reused unless the amount changes.
        """
        overrides = dict(overrides or {})
        unknown = sorted(set(overrides) - set(DUPLICATE_OVERRIDES))
        if unknown:
            raise ValidationError("Unknown fields in duplicate overrides", details=unknown)

        source = self._get_owned(entry_id, user_id)
        raw = self._entry_as_payload(source)
        raw["consumed_at"] = None
        raw.update(overrides)
        draft = normalize_entry(raw)

        snapshot = None
        if not any(key in overrides for key in ("quantity", "unit", "servings")):
            snapshot = NutritionResult(
                nutrients={name: float(value) for name, value in source.nutrition.items()},
                calculation_source=CalculationSource(source.calculation_source),
                confidence=source.confidence,
                calculated_at=source.calculated_at or datetime.utcnow(),
            )

        entry = self._persist_draft(source.user_id, draft, snapshot=snapshot, original=source)
        return {
            "entry": entry.to_dict(),
            "nutrition_summary": nutrition_summary(entry),
        }

    @service_operation("recalculate nutrition")
    def recalculate_nutrition(self, entry_id: int, user_id: int, is_admin: bool = False) -> Dict[str, Any]:
        entry = self._get_owned(entry_id, user_id, is_admin)
        draft = normalize_entry(self._entry_as_payload(entry))
        result = calculate_nutrition(draft, self.catalog.lookup(draft.item_type, draft.item.item_id))

        self._apply_nutrition(entry, result)
        entry.quality_score = calculate_quality_score(draft, result.nutrients)
        self._append_version(entry, user_id, ["nutrition"], "recalculated")
        self.db.commit()
        self.db.refresh(entry)

        self._refresh_summary(entry.user_id, entry.consumed_at)
        return {
            "message": "Nutrition recalculated successfully",
            "entry": entry.to_dict(),
            "nutrition_summary": nutrition_summary(entry),
        }

    # ===== BULK =====

    @service_operation("perform batch operations")
    def batch_operations(self, user_id: int, operation: str, entry_ids: Sequence[Any],
                         update_data: Optional[Mapping[str, Any]] = None,
                         is_admin: bool = False) -> Dict[str, Any]:
        """
        Apply one operation to many entries.

        Each id is processed on its own; failures are collected in the results
        and never abort the rest of the batch.
        """
        if operation not in BATCH_OPERATIONS:
            raise ValidationError(f"Invalid batch operation. Must be one of: {', '.join(BATCH_OPERATIONS)}")
        if not isinstance(entry_ids, (list, tuple)) or not entry_ids:
            raise ValidationError("Entry IDs array is required")
        if len(entry_ids) > settings.batch_max_items:
            raise ValidationError(f"Cannot process more than {settings.batch_max_items} entries in one batch")
        if operation == "update" and not update_data:
            raise ValidationError("update_data is required for batch update")

        results = []
        success_count = 0
        error_count = 0

        for entry_id in entry_ids:
            try:
                if operation == "delete":
                    result = self.soft_delete(entry_id, user_id, reason="batch_delete", is_admin=is_admin)
                elif operation == "update":
                    result = self.update_entry(entry_id, user_id, update_data, is_admin=is_admin)
                elif operation == "duplicate":
                    result = self.duplicate(entry_id, user_id)
                elif operation == "restore":
                    result = self.restore(entry_id, user_id, is_admin=is_admin)
                else:
                    result = self.recalculate_nutrition(entry_id, user_id, is_admin=is_admin)
            except AppError as e:
                results.append({"entry_id": entry_id, "success": False, "error": e.message})
                error_count += 1
                continue

            results.append({"entry_id": entry_id, "success": True, "result": result})
            success_count += 1

        self.activity_log.append(user_id, f"batch_{operation}", {
            "total_items": len(entry_ids),
            "success_count": success_count,
            "error_count": error_count,
        })
        logger.info(f"Batch {operation} for user {user_id}: {success_count} ok, {error_count} failed")

        return {
            "operation": operation,
            "total_processed": len(entry_ids),
            "success_count": success_count,
            "error_count": error_count,
            "results": results,
        }

    @service_operation("sync nutrition data")
    def sync_nutrition(self, user_id: int, force: bool = False,
                       item_type: Optional[str] = None) -> Dict[str, Any]:
        """Re-derive active snapshots from the catalog; saves when calories moved by more than 5 kcal"""
        user_id = parse_id(user_id, "user_id")
        query = self.db.query(ConsumptionEntry).filter(
            ConsumptionEntry.user_id == user_id,
            ConsumptionEntry.is_deleted == False  # noqa: E712
        )
        if item_type:
            query = query.filter(
                ConsumptionEntry.item_type == parse_enum(ItemType, item_type, "item type", None).value
            )
        entries = query.all()

        updated = 0
        missing = 0
        errors = 0
        touched_days = set()
        for entry in entries:
            try:
                draft = normalize_entry(self._entry_as_payload(entry))
            except ValidationError as e:
                logger.error(f"Error syncing entry {entry.id}: {e.message}")
                errors += 1
                continue

            reference = self.catalog.lookup(draft.item_type, draft.item.item_id)
            if reference is None:
                missing += 1
                continue

            result = calculate_nutrition(draft, reference)
            if force or abs((entry.calories or 0) - result.nutrients["calories"]) > SYNC_CALORIE_TOLERANCE:
                self._apply_nutrition(entry, result)
                entry.quality_score = calculate_quality_score(draft, result.nutrients)
                self._append_version(entry, user_id, ["nutrition"], "nutrition_sync")
                touched_days.add(entry.consumed_at.date())
                updated += 1

        self.db.commit()
        for day in sorted(touched_days):
            self._refresh_summary(user_id, day)

        logger.info(f"Nutrition sync for user {user_id}: {updated}/{len(entries)} updated, "
                    f"{missing} missing from catalog, {errors} errors")
        return {
            "message": "Nutrition data synchronization completed",
            "total_entries": len(entries),
            "updated": updated,
            "missing_references": missing,
            "errors": errors,
            "synced_at": datetime.utcnow().isoformat(),
        }

    @service_operation("export consumption data")
    def export_entries(self, user_id: int, date_from: Any = None, date_to: Any = None,
                       include_metadata: bool = False, include_nutrition: bool = True) -> Dict[str, Any]:
        user_id = parse_id(user_id, "user_id")
        query = self.db.query(ConsumptionEntry).filter(
            ConsumptionEntry.user_id == user_id,
            ConsumptionEntry.is_deleted == False  # noqa: E712
        )
        if date_from:
            start, _ = _date_bound(date_from, "date_from")
            query = query.filter(ConsumptionEntry.consumed_at >= start)
        if date_to:
            end, exclusive = _date_bound(date_to, "date_to", end=True)
            query = query.filter(ConsumptionEntry.consumed_at < end if exclusive
                                 else ConsumptionEntry.consumed_at <= end)
        entries = query.order_by(asc(ConsumptionEntry.consumed_at)).limit(EXPORT_LIMIT).all()

        exported = []
        for entry in entries:
            data = entry.to_dict(include_metadata=include_metadata)
            row = {
                "id": entry.id,
                **data["consumed_item"],
                "meal_type": entry.meal_type,
                "consumed_at": data["consumed_at"],
                "entry_method": entry.entry_method,
            }
            if include_nutrition:
                row["nutrition"] = data["nutrition"]
                row["nutrition_confidence"] = entry.confidence
            if include_metadata:
                row["metadata"] = data["metadata"]
                row["context"] = data["context"]
                row["tracking"] = data["tracking"]
            exported.append(row)

        return {
            "user_id": user_id,
            "exported_at": datetime.utcnow().isoformat(),
            "format": "json",
            "filters": {
                "date_from": str(date_from) if date_from else None,
                "date_to": str(date_to) if date_to else None,
            },
            "total_entries": len(exported),
            "entries": exported,
        }

    # ===== GOALS =====

    @service_operation("get goals progress")
    def get_goals_progress(self, user_id: int, day: Any = None) -> Dict[str, Any]:
        user_id = parse_id(user_id, "user_id")
        summary = get_daily_summary(self.db, user_id, day or datetime.utcnow().date(),
                                    self.goals, refresh=True)
        goal = self.goals.get_active_goal(user_id)
        totals = summary["total_nutrition"]
        return {
            "date": summary["date"],
            "totals": totals,
            "goals": goal.targets() if goal else None,
            "progress": calculate_goals_progress(totals, goal) if goal else None,
            "remaining": remaining_targets(totals, goal) if goal else None,
        }

    # ===== HELPERS =====

    def _get_owned(self, entry_id: Any, user_id: Any, is_admin: bool = False,
                   deleted: Optional[bool] = False,
                   message: str = "Consumption entry not found") -> ConsumptionEntry:
        """Entry visible to the caller; foreign entries look exactly like missing ones"""
        entry_id = parse_id(entry_id, "entry_id")
        query = self.db.query(ConsumptionEntry).filter(ConsumptionEntry.id == entry_id)
        if not is_admin:
            query = query.filter(ConsumptionEntry.user_id == parse_id(user_id, "user_id"))
        if deleted is not None:
            query = query.filter(ConsumptionEntry.is_deleted == deleted)

        entry = query.first()
        if not entry:
            raise NotFoundError(message)
        return entry

    def _persist_draft(self, user_id: int, draft: EntryDraft, snapshot: Optional[NutritionResult] = None,
                       original: Optional[ConsumptionEntry] = None) -> ConsumptionEntry:
        result = snapshot
        if result is None:
            reference = self.catalog.lookup(draft.item_type, draft.item.item_id)
            if reference is None:
                logger.warning(f"Catalog miss for {draft.item_type.value}:{draft.item.item_id}; "
                               f"storing zero nutrition")
            result = calculate_nutrition(draft, reference)

        entry = ConsumptionEntry(
            user_id=user_id,
            needs_review=draft.needs_review,
            is_duplicate=original is not None,
            original_entry_id=original.id if original is not None else None,
            versions=[],
        )
        self._apply_draft(entry, draft)
        self._apply_nutrition(entry, result)
        entry.quality_score = calculate_quality_score(draft, result.nutrients)

        reason = "duplicated" if original is not None else "created"
        self._append_version(entry, user_id, ["created"], reason)
        self.db.add(entry)
        self.db.commit()
        self.db.refresh(entry)

        self._refresh_summary(user_id, entry.consumed_at)
        action = "consumption_entry_duplicated" if original is not None else "consumption_entry_created"
        self.activity_log.append(user_id, action, {
            "entry_id": entry.id,
            "item_type": entry.item_type,
            "item_id": entry.item_id,
            "meal_type": entry.meal_type,
            "calories": entry.calories,
            "entry_method": entry.entry_method,
            "original_entry_id": entry.original_entry_id,
        })
        logger.info(f"Consumption entry {entry.id} {reason} for user {user_id} "
                    f"({entry.item_type}:{entry.item_id}, {entry.calories} kcal)")
        return entry

    @staticmethod
    def _apply_draft(entry: ConsumptionEntry, draft: EntryDraft) -> None:
        entry.item_type = draft.item_type.value
        entry.item_id = draft.item.item_id
        if isinstance(draft.item, FoodItem):
            entry.quantity = draft.item.quantity
            entry.unit = draft.item.unit.value
            entry.servings = None
        else:
            entry.quantity = None
            entry.unit = None
            entry.servings = draft.item.servings
        entry.meal_type = draft.meal_type.value
        entry.consumed_at = draft.consumed_at
        entry.entry_method = draft.entry_method.value
        entry.context = dict(draft.context)
        entry.entry_metadata = draft.metadata_dict()
        entry.needs_review = draft.needs_review

    @staticmethod
    def _apply_nutrition(entry: ConsumptionEntry, result: NutritionResult) -> None:
        for name in NUTRIENT_FIELDS:
            setattr(entry, name, result.nutrients.get(name, 0.0))
        entry.calculated_at = result.calculated_at
        entry.calculation_source = result.calculation_source.value
        entry.confidence = result.confidence

    @staticmethod
    def _append_version(entry: ConsumptionEntry, user_id: int, changes: List[str], reason: str) -> None:
        now = datetime.utcnow().isoformat()
        # JSON columns only persist on reassignment
        entry.versions = list(entry.versions or []) + [{
            "changed_at": now,
            "changed_by": user_id,
            "changes": list(changes),
            "reason": reason,
        }]
        entry.last_modified = {"at": now, "by": user_id, "reason": reason}

    @staticmethod
    def _entry_as_payload(entry: ConsumptionEntry) -> Dict[str, Any]:
        """Stored entry back in unified payload shape, for re-validation"""
        metadata = entry.entry_metadata or {}
        user_input = metadata.get("user_input") or {}
        context = dict(entry.context or {})
        payload = {
            "item_type": entry.item_type,
            "item_id": entry.item_id,
            "meal_type": entry.meal_type,
            "consumed_at": entry.consumed_at,
            "entry_method": entry.entry_method,
            "notes": user_input.get("notes") or "",
            "tags": list(user_input.get("tags") or []),
            "rating": user_input.get("rating"),
            "mood": user_input.get("mood"),
            "device_info": metadata.get("device_info") or {},
            "location": metadata.get("location") or {},
            "ai_analysis": metadata.get("ai_analysis") or {},
            "context": context,
        }
        if entry.item_type == ItemType.RECIPE.value:
            payload["servings"] = entry.servings
            original_recipe = context.get("original_recipe") or {}
            if original_recipe:
                payload["recipe_context"] = {
                    "recipe_name": original_recipe.get("name"),
                    "total_servings": original_recipe.get("total_servings"),
                }
        else:
            payload["quantity"] = entry.quantity
            payload["unit"] = entry.unit
        return payload

    def _refresh_summary(self, user_id: int, when: Any) -> None:
        """Recompute the day's summary; a failure here never undoes the committed mutation"""
        day = when.date() if isinstance(when, datetime) else when
        try:
            recompute_daily_summary(self.db, user_id, day, self.goals)
        except Exception as e:
            logger.error(f"Failed to recompute daily summary for user {user_id} on {day}: {str(e)}")
