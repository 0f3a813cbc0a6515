# backend/nutritrack/services/providers.py
"""
External Providers
Catalog lookup, nutrition goals and activity logging behind small interfaces,
with database-backed defaults so the engine runs on its own
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from nutritrack.models.database import ActivityLog, Food, NutritionGoal, Recipe
from nutritrack.models.entry_types import ItemType, ReferenceNutrition, NUTRIENT_FIELDS

logger = logging.getLogger(__name__)

GOAL_METRICS = ("calories", "protein", "carbs", "fat", "fiber", "sugar", "sodium")


@dataclass
class NutritionGoalTargets:
    """Daily targets; None means the user has no goal for that metric"""
    calories: Optional[float] = None
    protein: Optional[float] = None
    carbs: Optional[float] = None
    fat: Optional[float] = None
    fiber: Optional[float] = None
    sugar: Optional[float] = None
    sodium: Optional[float] = None

    def targets(self) -> Dict[str, float]:
        return {
            metric: getattr(self, metric)
            for metric in GOAL_METRICS
            if getattr(self, metric) is not None
        }


class CatalogProvider:
    """Reference nutrition for foods (per 100 g) and recipes (per serving)"""

    def lookup(self, item_type: ItemType, item_id: int) -> Optional[ReferenceNutrition]:
        raise NotImplementedError


class GoalsProvider:
    def get_active_goal(self, user_id: int) -> Optional[NutritionGoalTargets]:
        raise NotImplementedError


class ActivityLogSink:
    def append(self, user_id: int, action: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        raise NotImplementedError


class SqlCatalogProvider(CatalogProvider):
    """Catalog over the foods and recipes tables"""

    def __init__(self, db: Session):
        self.db = db

    def lookup(self, item_type: ItemType, item_id: int) -> Optional[ReferenceNutrition]:
        try:
            if ItemType(item_type) == ItemType.RECIPE:
                return self._lookup_recipe(item_id)
            return self._lookup_food(item_id)
        except (SQLAlchemyError, ValueError, TypeError) as e:
            logger.error(f"Catalog lookup failed for {item_type}:{item_id}: {str(e)}")
            return None

    def _lookup_food(self, food_id: int) -> Optional[ReferenceNutrition]:
        food = self.db.query(Food).filter(Food.id == food_id).first()
        if not food:
            return None
        return ReferenceNutrition(
            item_type=ItemType.FOOD,
            item_id=food.id,
            name=food.name,
            nutrients={name: getattr(food, f"{name}_per_100g") or 0 for name in NUTRIENT_FIELDS},
            density_g_per_ml=food.density_g_per_ml,
            piece_weight_g=food.piece_weight_g,
        )

    def _lookup_recipe(self, recipe_id: int) -> Optional[ReferenceNutrition]:
        recipe = self.db.query(Recipe).filter(Recipe.id == recipe_id).first()
        if not recipe:
            return None
        per_serving = recipe.nutrition_per_serving or {}
        return ReferenceNutrition(
            item_type=ItemType.RECIPE,
            item_id=recipe.id,
            name=recipe.name,
            nutrients={name: per_serving.get(name, 0) for name in NUTRIENT_FIELDS},
            total_servings=recipe.servings,
        )


class SqlGoalsProvider(GoalsProvider):
    """Latest active row of nutrition_goals"""

    def __init__(self, db: Session):
        self.db = db

    def get_active_goal(self, user_id: int) -> Optional[NutritionGoalTargets]:
        try:
            goal = self.db.query(NutritionGoal).filter(
                NutritionGoal.user_id == user_id,
                NutritionGoal.is_active == True  # noqa: E712
            ).order_by(NutritionGoal.created_at.desc(), NutritionGoal.id.desc()).first()
        except SQLAlchemyError as e:
            logger.error(f"Failed to load goals for user {user_id}: {str(e)}")
            return None

        if not goal:
            return None
        return NutritionGoalTargets(
            **{metric: getattr(goal, f"daily_{metric}_target") for metric in GOAL_METRICS}
        )


class DatabaseActivityLog(ActivityLogSink):
    """Writes activity_logs rows on its own commit; never breaks the caller"""

    def __init__(self, db: Session):
        self.db = db

    def append(self, user_id: int, action: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        try:
            self.db.add(ActivityLog(
                user_id=user_id,
                action=action,
                resource="consumption",
                details=metadata or {},
            ))
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"Failed to record activity '{action}' for user {user_id}: {str(e)}")


class InMemoryActivityLog(ActivityLogSink):
    """Keeps records in a list"""

    def __init__(self):
        self.records: List[Dict[str, Any]] = []

    def append(self, user_id: int, action: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        self.records.append({"user_id": user_id, "action": action, "metadata": metadata or {}})

    def actions(self) -> List[str]:
        return [record["action"] for record in self.records]
