#/backend/nutritrack/models/database.py
from sqlalchemy import (
    create_engine, Column, Integer, String, Float, JSON, DateTime, Date, ForeignKey,
    Text, Boolean, Index, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import declarative_base, sessionmaker
from datetime import datetime

from nutritrack.core.config import settings
from nutritrack.models.entry_types import ItemType, NUTRIENT_FIELDS

Base = declarative_base()

# Create engine
_connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}
engine = create_engine(settings.database_url, echo=settings.sql_echo, connect_args=_connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Dependency for FastAPI
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Consumption Tables
class ConsumptionEntry(Base):
    """One user's record of consuming a food quantity or a recipe portion"""
    __tablename__ = "consumption_entries"
    __table_args__ = (
        CheckConstraint(
            "(item_type = 'food' AND quantity IS NOT NULL AND unit IS NOT NULL AND servings IS NULL) OR "
            "(item_type = 'recipe' AND servings IS NOT NULL AND quantity IS NULL AND unit IS NULL)",
            name="ck_consumption_entries_item_payload"
        ),
        CheckConstraint("calories >= 0", name="ck_consumption_entries_calories"),
        Index("idx_consumption_user_date", "user_id", "consumed_at"),
        Index("idx_consumption_user_deleted_date", "user_id", "is_deleted", "consumed_at"),
        Index("idx_consumption_item", "item_type", "item_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)

    # Consumed item: food uses quantity + unit, recipe uses servings
    item_type = Column(String(10), nullable=False)
    item_id = Column(Integer, nullable=False)
    quantity = Column(Float, nullable=True)
    unit = Column(String(10), nullable=True)
    servings = Column(Float, nullable=True)

    meal_type = Column(String(20), default="other", index=True)
    consumed_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    entry_method = Column(String(20), default="manual", index=True)

    # Nutrition snapshot
    calories = Column(Float, default=0)
    protein = Column(Float, default=0)
    carbs = Column(Float, default=0)
    fat = Column(Float, default=0)
    fiber = Column(Float, default=0)
    sugar = Column(Float, default=0)
    sodium = Column(Float, default=0)
    cholesterol = Column(Float, default=0)
    saturated_fat = Column(Float, default=0)
    trans_fat = Column(Float, default=0)
    calculated_at = Column(DateTime, default=datetime.utcnow)
    calculation_source = Column(String(30), default="food_database")
    confidence = Column(Float, default=1.0)

    context = Column(JSON, default=dict)  # {"original_recipe": {...}, "preparation": {...}, "meal": {...}}
    entry_metadata = Column("metadata", JSON, default=dict)  # device_info, location, user_input, ai_analysis

    # Tracking
    is_deleted = Column(Boolean, default=False, nullable=False)
    deleted_at = Column(DateTime, nullable=True)
    deleted_by = Column(Integer, nullable=True)
    last_modified = Column(JSON, nullable=True)  # {"at": ..., "by": ..., "reason": ...}
    is_duplicate = Column(Boolean, default=False)
    original_entry_id = Column(Integer, ForeignKey("consumption_entries.id", ondelete="SET NULL"), nullable=True)
    quality_score = Column(Float, nullable=True)
    is_verified = Column(Boolean, default=False)
    needs_review = Column(Boolean, default=False)
    versions = Column(JSON, default=list)  # append-only

    # Legacy row this entry was migrated from
    original_id = Column(Integer, nullable=True, unique=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def nutrition(self) -> dict:
        return {name: getattr(self, name) or 0 for name in NUTRIENT_FIELDS}

    @property
    def notes(self) -> str:
        return ((self.entry_metadata or {}).get("user_input") or {}).get("notes") or ""

    @property
    def tags(self) -> list:
        return ((self.entry_metadata or {}).get("user_input") or {}).get("tags") or []

    def to_dict(self, include_metadata: bool = True) -> dict:
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "consumed_item": {
                "item_type": self.item_type,
                "item_id": self.item_id,
            },
            "meal_type": self.meal_type,
            "consumed_at": self.consumed_at.isoformat() if self.consumed_at else None,
            "entry_method": self.entry_method,
            "nutrition": self.nutrition,
            "nutrition_info": {
                "calculated_at": self.calculated_at.isoformat() if self.calculated_at else None,
                "calculation_source": self.calculation_source,
                "confidence": self.confidence,
            },
            "tracking": {
                "is_deleted": self.is_deleted,
                "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
                "deleted_by": self.deleted_by,
                "last_modified": self.last_modified,
                "is_duplicate": self.is_duplicate,
                "original_entry_id": self.original_entry_id,
                "quality_score": self.quality_score,
                "is_verified": self.is_verified,
                "needs_review": self.needs_review,
                "versions": self.versions or [],
            },
        }
        if self.item_type == ItemType.FOOD.value:
            data["consumed_item"]["quantity"] = self.quantity
            data["consumed_item"]["unit"] = self.unit
        else:
            data["consumed_item"]["servings"] = self.servings
        if include_metadata:
            data["context"] = self.context or {}
            data["metadata"] = self.entry_metadata or {}
        return data


class DailySummary(Base):
    """Per-user-per-day aggregate, always re-derivable from active entries"""
    __tablename__ = "daily_summaries"
    __table_args__ = (
        UniqueConstraint("user_id", "date", name="uq_daily_summaries_user_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    total_nutrition = Column(JSON, default=dict)
    meal_breakdown = Column(JSON, default=dict)
    entries_count = Column(Integer, default=0)
    unique_foods_count = Column(Integer, default=0)
    goals = Column(JSON, nullable=True)
    progress = Column(JSON, nullable=True)
    last_calculated = Column(DateTime, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "date": self.date.isoformat(),
            "total_nutrition": self.total_nutrition or {},
            "meal_breakdown": self.meal_breakdown or {},
            "entries_count": self.entries_count,
            "unique_foods_count": self.unique_foods_count,
            "goals": self.goals,
            "progress": self.progress,
            "last_calculated": self.last_calculated.isoformat() if self.last_calculated else None,
        }


class LegacyConsumptionEntry(Base):
    """Pre-unification consumption shape, read by the schema migration"""
    __tablename__ = "legacy_consumption_entries"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, index=True)
    food_id = Column(Integer, nullable=True)
    quantity = Column(Float, nullable=True)
    unit = Column(String(10), nullable=True)
    meal_type = Column(String(20), nullable=True)
    consumed_at = Column(DateTime, nullable=True)
    entry_method = Column(String(20), nullable=True)
    nutrition = Column(JSON, nullable=True)  # {"calories": 52, "protein": 0.3, ...}
    recipe_context = Column(JSON, nullable=True)  # {"recipe_id": 1, "recipe_name": "...", "serving_size": 1, "total_servings": 4}
    notes = Column(Text, nullable=True)
    tags = Column(JSON, default=list)
    is_deleted = Column(Boolean, default=False)
    deleted_at = Column(DateTime, nullable=True)
    deleted_by = Column(Integer, nullable=True)
    device_info = Column(JSON, nullable=True)
    location = Column(JSON, nullable=True)
    ai_analysis = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)


# Reference Tables (default catalog / goals / activity providers)
class Food(Base):
    __tablename__ = "foods"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), index=True)
    barcode = Column(String(100), nullable=True, index=True)
    calories_per_100g = Column(Float, default=0)
    protein_per_100g = Column(Float, default=0)
    carbs_per_100g = Column(Float, default=0)
    fat_per_100g = Column(Float, default=0)
    fiber_per_100g = Column(Float, default=0)
    sugar_per_100g = Column(Float, default=0)
    sodium_per_100g = Column(Float, default=0)  # mg
    cholesterol_per_100g = Column(Float, default=0)  # mg
    saturated_fat_per_100g = Column(Float, default=0)
    trans_fat_per_100g = Column(Float, default=0)
    density_g_per_ml = Column(Float, nullable=True)
    piece_weight_g = Column(Float, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Recipe(Base):
    __tablename__ = "recipes"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), index=True)
    servings = Column(Float, default=1)
    nutrition_per_serving = Column(JSON)  # {"calories": 450, "protein": 45, ...}
    created_at = Column(DateTime, default=datetime.utcnow)


class NutritionGoal(Base):
    __tablename__ = "nutrition_goals"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    daily_calories_target = Column(Float, nullable=True)
    daily_protein_target = Column(Float, nullable=True)
    daily_carbs_target = Column(Float, nullable=True)
    daily_fat_target = Column(Float, nullable=True)
    daily_fiber_target = Column(Float, nullable=True)
    daily_sugar_target = Column(Float, nullable=True)
    daily_sodium_target = Column(Float, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class ActivityLog(Base):
    """Audit trail of user actions on consumption data"""
    __tablename__ = "activity_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, index=True)
    action = Column(String(50), index=True)
    resource = Column(String(50), default="consumption")
    details = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
