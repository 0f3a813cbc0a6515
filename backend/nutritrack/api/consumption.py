# backend/nutritrack/api/consumption.py
"""
Consumption API Router for NutriTrack
Entry lifecycle, daily summaries, range statistics and the nutrition dashboard
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.orm import Session

from nutritrack.models.database import get_db
from nutritrack.services import aggregation
from nutritrack.services.consumption_service import ConsumptionService
from nutritrack.schemas.consumption import (
    # Request schemas
    ConsumptionEntryCreate,
    ConsumptionEntryUpdate,
    QuickMealRequest,
    RecipeMealRequest,
    DuplicateEntryRequest,
    BatchOperationRequest,
    SyncNutritionRequest,
    # Response schemas
    ApiResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/consumption", tags=["Consumption"])


# ===== DEPENDENCIES =====

@dataclass
class CallerIdentity:
    user_id: int
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def get_caller(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> CallerIdentity:
    """Identity is resolved upstream and forwarded in headers"""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    try:
        user_id = int(x_user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid X-User-Id header")
    if user_id <= 0:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid X-User-Id header")
    return CallerIdentity(user_id=user_id, role=(x_user_role or "user").strip().lower())


def get_consumption_service(db: Session = Depends(get_db)) -> ConsumptionService:
    return ConsumptionService(db)


def _split(value: Optional[str]):
    if not value:
        return None
    return [part.strip() for part in value.split(",") if part.strip()]


# ===== CREATE =====

@router.post("", response_model=ApiResponse, status_code=status.HTTP_201_CREATED)
def create_entry(
    request: ConsumptionEntryCreate,
    caller: CallerIdentity = Depends(get_caller),
    service: ConsumptionService = Depends(get_consumption_service)
):
    """Log a food or recipe"""
    result = service.create_entry(caller.user_id, request.model_dump(exclude_none=True))
    return ApiResponse(data=result, message="Consumption entry created successfully")


@router.post("/quick-meal", response_model=ApiResponse, status_code=status.HTTP_201_CREATED)
def add_quick_meal(
    request: QuickMealRequest,
    caller: CallerIdentity = Depends(get_caller),
    service: ConsumptionService = Depends(get_consumption_service)
):
    result = service.add_quick_meal(
        caller.user_id,
        request.items,
        meal_type=request.meal_type,
        meal_name=request.meal_name,
        consumed_at=request.consumed_at,
        notes=request.notes,
        tags=request.tags,
    )
    message = f"Quick meal added with {result['meal_summary']['total_items']} items"
    return ApiResponse(data=result, message=message)


@router.post("/recipe-meal", response_model=ApiResponse, status_code=status.HTTP_201_CREATED)
def create_meal_from_recipe(
    request: RecipeMealRequest,
    caller: CallerIdentity = Depends(get_caller),
    service: ConsumptionService = Depends(get_consumption_service)
):
    result = service.create_meal_from_recipe(
        caller.user_id,
        request.recipe_id,
        servings=request.servings,
        meal_type=request.meal_type,
        consumed_at=request.consumed_at,
        notes=request.notes,
    )
    return ApiResponse(data=result, message="Recipe meal logged successfully")


# ===== COLLECTION ENDPOINTS =====

@router.get("", response_model=ApiResponse)
def list_entries(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    meal_type: Optional[str] = Query(None),
    item_type: Optional[str] = Query(None),
    entry_method: Optional[str] = Query(None),
    date_from: Optional[str] = Query(None, description="YYYY-MM-DD or ISO timestamp"),
    date_to: Optional[str] = Query(None, description="YYYY-MM-DD or ISO timestamp"),
    min_calories: Optional[float] = Query(None, ge=0),
    max_calories: Optional[float] = Query(None, ge=0),
    tags: Optional[str] = Query(None, description="Comma separated"),
    search: Optional[str] = Query(None, description="Free text over notes, tags and recipe name"),
    include_deleted: bool = Query(False),
    sort_by: str = Query("consumed_at"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    caller: CallerIdentity = Depends(get_caller),
    service: ConsumptionService = Depends(get_consumption_service)
):
    filters = {
        "page": page,
        "limit": limit,
        "meal_type": meal_type,
        "item_type": item_type,
        "entry_method": entry_method,
        "date_from": date_from,
        "date_to": date_to,
        "min_calories": min_calories,
        "max_calories": max_calories,
        "tags": _split(tags),
        "search": search,
        "include_deleted": include_deleted,
        "sort_by": sort_by,
        "sort_order": sort_order,
    }
    filters = {key: value for key, value in filters.items() if value is not None}
    return ApiResponse(data=service.list_entries(caller.user_id, filters))


@router.get("/search", response_model=ApiResponse)
def search_entries(
    q: str = Query(..., description="At least 2 characters"),
    item_type: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    caller: CallerIdentity = Depends(get_caller),
    service: ConsumptionService = Depends(get_consumption_service)
):
    result = service.search_entries(caller.user_id, q, item_type=item_type, page=page, limit=limit)
    return ApiResponse(data=result)


@router.get("/suggestions", response_model=ApiResponse)
def get_suggestions(
    item_type: str = Query("food"),
    limit: int = Query(10, ge=1, le=50),
    period: str = Query("all"),
    caller: CallerIdentity = Depends(get_caller),
    service: ConsumptionService = Depends(get_consumption_service)
):
    result = service.get_suggestions(caller.user_id, item_type=item_type, limit=limit, period=period)
    return ApiResponse(data=result)


@router.get("/export", response_model=ApiResponse)
def export_entries(
    date_from: Optional[str] = Query(None),
    date_to: Optional[str] = Query(None),
    include_metadata: bool = Query(False),
    include_nutrition: bool = Query(True),
    caller: CallerIdentity = Depends(get_caller),
    service: ConsumptionService = Depends(get_consumption_service)
):
    result = service.export_entries(
        caller.user_id,
        date_from=date_from,
        date_to=date_to,
        include_metadata=include_metadata,
        include_nutrition=include_nutrition,
    )
    return ApiResponse(data=result)


@router.post("/sync", response_model=ApiResponse)
def sync_nutrition(
    request: SyncNutritionRequest,
    caller: CallerIdentity = Depends(get_caller),
    service: ConsumptionService = Depends(get_consumption_service)
):
    result = service.sync_nutrition(caller.user_id, force=request.force, item_type=request.item_type)
    return ApiResponse(data=result, message=result["message"])


@router.post("/batch", response_model=ApiResponse)
def batch_operations(
    request: BatchOperationRequest,
    caller: CallerIdentity = Depends(get_caller),
    service: ConsumptionService = Depends(get_consumption_service)
):
    result = service.batch_operations(
        caller.user_id,
        request.operation,
        request.entry_ids,
        update_data=request.update_data,
        is_admin=caller.is_admin,
    )
    message = f"Batch {request.operation} completed: {result['success_count']} successful, " \
              f"{result['error_count']} failed"
    return ApiResponse(data=result, message=message)


# ===== ANALYTICS =====

@router.get("/summary/daily", response_model=ApiResponse)
def get_daily_summary(
    day: Optional[date] = Query(None, alias="date"),
    refresh: bool = Query(False),
    caller: CallerIdentity = Depends(get_caller),
    service: ConsumptionService = Depends(get_consumption_service)
):
    result = aggregation.get_daily_summary(
        service.db, caller.user_id, day or datetime.utcnow().date(), service.goals, refresh=refresh
    )
    return ApiResponse(data=result)


@router.get("/dashboard", response_model=ApiResponse)
def get_dashboard(
    period: str = Query("today"),
    week_offset: int = Query(0),
    month_offset: int = Query(0),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    caller: CallerIdentity = Depends(get_caller),
    service: ConsumptionService = Depends(get_consumption_service)
):
    result = aggregation.get_nutrition_dashboard(
        service.db,
        caller.user_id,
        period=period,
        goals_provider=service.goals,
        catalog=service.catalog,
        week_offset=week_offset,
        month_offset=month_offset,
        date_from=date_from,
        date_to=date_to,
    )
    return ApiResponse(data=result)


@router.get("/stats", response_model=ApiResponse)
def get_range_stats(
    date_from: date = Query(...),
    date_to: date = Query(...),
    group_by: str = Query("day"),
    metrics: Optional[str] = Query(None, description="Comma separated nutrient names"),
    caller: CallerIdentity = Depends(get_caller),
    service: ConsumptionService = Depends(get_consumption_service)
):
    result = aggregation.get_range_stats(
        service.db, caller.user_id, date_from, date_to, group_by=group_by, metrics=_split(metrics)
    )
    return ApiResponse(data=result)


@router.get("/top-items", response_model=ApiResponse)
def get_top_items(
    period: str = Query("month"),
    limit: int = Query(10, ge=1, le=50),
    item_type: Optional[str] = Query(None),
    caller: CallerIdentity = Depends(get_caller),
    service: ConsumptionService = Depends(get_consumption_service)
):
    result = aggregation.get_top_items(
        service.db, caller.user_id, period=period, limit=limit, item_type=item_type, catalog=service.catalog
    )
    return ApiResponse(data=result)


@router.get("/trends", response_model=ApiResponse)
def get_trends(
    metric: str = Query("calories"),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    window: int = Query(aggregation.DEFAULT_TREND_WINDOW, ge=1, le=90),
    caller: CallerIdentity = Depends(get_caller),
    service: ConsumptionService = Depends(get_consumption_service)
):
    result = aggregation.get_trends(
        service.db, caller.user_id, metric=metric, date_from=date_from, date_to=date_to, window=window
    )
    return ApiResponse(data=result)


@router.get("/goals/progress", response_model=ApiResponse)
def get_goals_progress(
    day: Optional[date] = Query(None, alias="date"),
    caller: CallerIdentity = Depends(get_caller),
    service: ConsumptionService = Depends(get_consumption_service)
):
    return ApiResponse(data=service.get_goals_progress(caller.user_id, day))


# ===== SINGLE ENTRY =====

@router.get("/{entry_id}", response_model=ApiResponse)
def get_entry(
    entry_id: int,
    caller: CallerIdentity = Depends(get_caller),
    service: ConsumptionService = Depends(get_consumption_service)
):
    return ApiResponse(data=service.get_entry(entry_id, caller.user_id, is_admin=caller.is_admin))


@router.put("/{entry_id}", response_model=ApiResponse)
def update_entry(
    entry_id: int,
    request: ConsumptionEntryUpdate,
    caller: CallerIdentity = Depends(get_caller),
    service: ConsumptionService = Depends(get_consumption_service)
):
    result = service.update_entry(
        entry_id, caller.user_id, request.model_dump(exclude_unset=True), is_admin=caller.is_admin
    )
    return ApiResponse(data=result, message="Consumption entry updated successfully")


@router.delete("/{entry_id}", response_model=ApiResponse)
def delete_entry(
    entry_id: int,
    hard: bool = Query(False, description="Permanently remove the entry"),
    reason: str = Query("user_delete", max_length=100),
    caller: CallerIdentity = Depends(get_caller),
    service: ConsumptionService = Depends(get_consumption_service)
):
    if hard:
        result = service.hard_delete(entry_id, caller.user_id, is_admin=caller.is_admin)
    else:
        result = service.soft_delete(entry_id, caller.user_id, reason=reason, is_admin=caller.is_admin)
    return ApiResponse(data=result, message=result["message"])


@router.post("/{entry_id}/restore", response_model=ApiResponse)
def restore_entry(
    entry_id: int,
    caller: CallerIdentity = Depends(get_caller),
    service: ConsumptionService = Depends(get_consumption_service)
):
    result = service.restore(entry_id, caller.user_id, is_admin=caller.is_admin)
    return ApiResponse(data=result, message=result["message"])


@router.post("/{entry_id}/duplicate", response_model=ApiResponse, status_code=status.HTTP_201_CREATED)
def duplicate_entry(
    entry_id: int,
    request: Optional[DuplicateEntryRequest] = None,
    caller: CallerIdentity = Depends(get_caller),
    service: ConsumptionService = Depends(get_consumption_service)
):
    overrides = request.model_dump(exclude_none=True) if request else {}
    result = service.duplicate(entry_id, caller.user_id, overrides)
    return ApiResponse(data=result, message="Consumption entry duplicated successfully")


@router.post("/{entry_id}/recalculate", response_model=ApiResponse)
def recalculate_entry(
    entry_id: int,
    caller: CallerIdentity = Depends(get_caller),
    service: ConsumptionService = Depends(get_consumption_service)
):
    result = service.recalculate_nutrition(entry_id, caller.user_id, is_admin=caller.is_admin)
    return ApiResponse(data=result, message=result["message"])
