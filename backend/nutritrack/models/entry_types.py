# backend/nutritrack/models/entry_types.py
"""
Domain types shared by the normalizer, the calculator and the persistence layer
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union


class ItemType(str, enum.Enum):
    FOOD = "food"
    RECIPE = "recipe"


class MealType(str, enum.Enum):
    BREAKFAST = "breakfast"
    LUNCH = "lunch"
    DINNER = "dinner"
    SNACK = "snack"
    OTHER = "other"


class EntryMethod(str, enum.Enum):
    MANUAL = "manual"
    BARCODE_SCAN = "barcode_scan"
    IMAGE_ANALYSIS = "image_analysis"
    VOICE = "voice"
    RECIPE = "recipe"
    QUICK_MEAL = "quick_meal"


class Unit(str, enum.Enum):
    G = "g"
    KG = "kg"
    MG = "mg"
    ML = "ml"
    L = "l"
    PIECE = "piece"
    CUP = "cup"
    TBSP = "tbsp"
    TSP = "tsp"
    OZ = "oz"
    LB = "lb"


class CalculationSource(str, enum.Enum):
    FOOD_DATABASE = "food_database"
    RECIPE_COMPUTATION = "recipe_computation"
    MIGRATION_TRANSFER = "migration_transfer"
    CATALOG_MISS = "catalog_miss"


TRUSTED_ENTRY_METHODS = (EntryMethod.BARCODE_SCAN, EntryMethod.IMAGE_ANALYSIS)

NUTRIENT_FIELDS = (
    "calories", "protein", "carbs", "fat", "fiber", "sugar",
    "sodium", "cholesterol", "saturated_fat", "trans_fat",
)

MACRO_FIELDS = ("protein", "carbs", "fat")


@dataclass(frozen=True)
class FoodItem:
    """A food consumed by weight or volume"""
    item_id: int
    quantity: float = 100.0
    unit: Unit = Unit.G

    @property
    def item_type(self) -> ItemType:
        return ItemType.FOOD


@dataclass(frozen=True)
class RecipeItem:
    """A recipe consumed by servings"""
    item_id: int
    servings: float = 1.0

    @property
    def item_type(self) -> ItemType:
        return ItemType.RECIPE


ConsumedItem = Union[FoodItem, RecipeItem]


@dataclass
class ReferenceNutrition:
    """Catalog nutrition for one item

    Food references are per 100 g, recipe references per serving.
    """
    item_type: ItemType
    item_id: int
    name: str
    nutrients: Dict[str, float]
    total_servings: Optional[float] = None
    density_g_per_ml: Optional[float] = None
    piece_weight_g: Optional[float] = None


@dataclass
class NutritionResult:
    nutrients: Dict[str, float]
    calculation_source: CalculationSource
    confidence: float
    calculated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class EntryDraft:
    """Canonical entry, validated but not persisted"""
    item: ConsumedItem
    meal_type: MealType = MealType.OTHER
    consumed_at: datetime = field(default_factory=datetime.utcnow)
    entry_method: EntryMethod = EntryMethod.MANUAL
    notes: str = ""
    tags: List[str] = field(default_factory=list)
    rating: Optional[int] = None
    mood: Optional[str] = None
    device_info: Dict[str, Any] = field(default_factory=dict)
    location: Dict[str, Any] = field(default_factory=dict)
    ai_analysis: Dict[str, Any] = field(default_factory=dict)
    context: Dict[str, Any] = field(default_factory=dict)
    needs_review: bool = False

    @property
    def item_type(self) -> ItemType:
        return self.item.item_type

    def metadata_dict(self) -> Dict[str, Any]:
        return {
            "device_info": dict(self.device_info),
            "location": dict(self.location),
            "user_input": {
                "notes": self.notes,
                "tags": list(self.tags),
                "rating": self.rating,
                "mood": self.mood,
            },
            "ai_analysis": dict(self.ai_analysis),
        }

