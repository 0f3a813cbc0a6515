# backend/nutritrack/schemas/consumption.py
"""
Pydantic schemas for the Consumption API
Shapes only; value rules (positivity, enums, ranges) are enforced by the
service layer so every rejection answers with the same error envelope
"""

from pydantic import BaseModel, Field, field_validator
from typing import Dict, List, Optional, Any
from datetime import datetime


# ===== REQUEST SCHEMAS =====

class ConsumptionEntryCreate(BaseModel):
    """Unified entry payload; legacy food_id / recipe_id references are accepted too"""
    item_type: Optional[str] = Field(None, description='"food" or "recipe"')
    item_id: Optional[int] = None
    food_id: Optional[int] = Field(None, description="Legacy food reference")
    recipe_id: Optional[int] = Field(None, description="Legacy recipe reference")
    consumed_item: Optional[Dict[str, Any]] = None
    recipe_context: Optional[Dict[str, Any]] = None

    quantity: Optional[float] = Field(None, description="Amount for foods")
    unit: Optional[str] = Field(None, description="g, kg, mg, ml, l, piece, cup, tbsp, tsp, oz, lb")
    servings: Optional[float] = Field(None, description="Servings for recipes")

    meal_type: Optional[str] = None
    consumed_at: Optional[datetime] = None
    entry_method: Optional[str] = None

    notes: Optional[str] = None
    tags: Optional[List[str]] = None
    rating: Optional[int] = None
    mood: Optional[str] = None

    device_info: Optional[Dict[str, Any]] = None
    location: Optional[Dict[str, Any]] = None
    ai_analysis: Optional[Dict[str, Any]] = None
    context: Optional[Dict[str, Any]] = None


class ConsumptionEntryUpdate(BaseModel):
    """Partial update; only the fields sent are applied"""
    meal_type: Optional[str] = None
    consumed_at: Optional[datetime] = None
    item_id: Optional[int] = None
    quantity: Optional[float] = None
    unit: Optional[str] = None
    servings: Optional[float] = None
    notes: Optional[str] = None
    tags: Optional[List[str]] = None
    rating: Optional[int] = None
    mood: Optional[str] = None
    update_reason: Optional[str] = Field(None, max_length=100)


class QuickMealRequest(BaseModel):
    """Several items logged as one meal"""
    items: List[Dict[str, Any]] = Field(..., description="Entry payloads, one per item")
    meal_type: str = Field("other")
    meal_name: Optional[str] = Field(None, max_length=200)
    consumed_at: Optional[datetime] = None
    notes: Optional[str] = None
    tags: Optional[List[str]] = None


class RecipeMealRequest(BaseModel):
    """Log servings of a recipe"""
    recipe_id: int = Field(..., description="Recipe to log")
    servings: float = Field(1.0, description="Servings eaten")
    meal_type: str = Field("other")
    consumed_at: Optional[datetime] = None
    notes: Optional[str] = None


class DuplicateEntryRequest(BaseModel):
    """Overrides applied to the copy"""
    consumed_at: Optional[datetime] = None
    meal_type: Optional[str] = None
    quantity: Optional[float] = None
    unit: Optional[str] = None
    servings: Optional[float] = None
    notes: Optional[str] = None


class BatchOperationRequest(BaseModel):
    """One operation applied to many entries"""
    operation: str = Field(..., description="delete, update, duplicate, restore or recalculate")
    entry_ids: List[int] = Field(..., description="Entries to process")
    update_data: Optional[Dict[str, Any]] = Field(None, description="Patch for the update operation")

    @field_validator("operation")
    @classmethod
    def normalize_operation(cls, v):
        return v.strip().lower()


class SyncNutritionRequest(BaseModel):
    force: bool = False
    item_type: Optional[str] = None


# ===== RESPONSE SCHEMAS =====

class ApiResponse(BaseModel):
    """Envelope for successful responses"""
    success: bool = True
    data: Any = None
    message: Optional[str] = None
