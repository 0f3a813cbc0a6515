# backend/nutritrack/services/aggregation.py
"""
Aggregation Engine
Daily summaries, range statistics, top items, trends and the nutrition dashboard.
Everything is recomputed from active entries; DailySummary rows are a cache.
"""

import logging
import math
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from nutritrack.core.errors import ValidationError
from nutritrack.models.database import ConsumptionEntry, DailySummary
from nutritrack.models.entry_types import ItemType, MealType, NUTRIENT_FIELDS, MACRO_FIELDS
from nutritrack.services.goals_progress import (
    calculate_goals_progress, defined_targets, remaining_targets
)
from nutritrack.services.nutrition_calculator import macro_breakdown
from nutritrack.services.providers import CatalogProvider, GoalsProvider, SqlCatalogProvider

logger = logging.getLogger(__name__)

DEFAULT_METRICS = ("calories", "protein", "carbs", "fat")
GROUP_BY_CHOICES = ("day", "week", "month")
PERIODS = ("today", "week", "month", "year", "custom")
TOP_ITEM_WINDOWS = {"week": 7, "month": 30, "year": 365, "all": None}
DEFAULT_TREND_WINDOW = 7


def day_start(day: date) -> datetime:
    return datetime.combine(day, time.min)


def _as_date(value: Any, field_name: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            pass
    raise ValidationError(f"Invalid {field_name}: expected YYYY-MM-DD")


def _check_range(date_from: date, date_to: date) -> None:
    if date_from > date_to:
        raise ValidationError("date_from must be on or before date_to")


class EntryReader:
    """Read-only view over a user's Active consumption entries"""

    def __init__(self, db: Session):
        self.db = db

    def _active(self, user_id: int):
        return self.db.query(ConsumptionEntry).filter(
            ConsumptionEntry.user_id == user_id,
            ConsumptionEntry.is_deleted == False  # noqa: E712
        )

    def entries(self, user_id: int, date_from: Optional[date] = None, date_to: Optional[date] = None,
                item_type: Optional[str] = None, since: Optional[datetime] = None) -> List[ConsumptionEntry]:
        query = self._active(user_id)
        if date_from is not None:
            query = query.filter(ConsumptionEntry.consumed_at >= day_start(date_from))
        if date_to is not None:
            query = query.filter(ConsumptionEntry.consumed_at < day_start(date_to + timedelta(days=1)))
        if since is not None:
            query = query.filter(ConsumptionEntry.consumed_at >= since)
        if item_type:
            query = query.filter(ConsumptionEntry.item_type == item_type)
        return query.order_by(ConsumptionEntry.consumed_at.asc(), ConsumptionEntry.id.asc()).all()

    def last_entry(self, user_id: int) -> Optional[ConsumptionEntry]:
        return self._active(user_id).order_by(
            ConsumptionEntry.consumed_at.desc(), ConsumptionEntry.id.desc()
        ).first()


def entry_nutrients(entry: Any) -> Optional[Dict[str, float]]:
    """Snapshot of an entry as floats, or None when it cannot be read"""
    nutrients = {}
    for name in NUTRIENT_FIELDS:
        value = getattr(entry, name, None)
        if value is None:
            nutrients[name] = 0.0
            continue
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        if math.isnan(number) or math.isinf(number) or number < 0:
            return None
        nutrients[name] = number
    return nutrients


def iter_valid(entries: Iterable[Any]) -> Iterator[Tuple[Any, Dict[str, float]]]:
    for entry in entries:
        nutrients = entry_nutrients(entry)
        if nutrients is None:
            logger.warning(f"Skipping consumption entry {getattr(entry, 'id', None)}: unreadable nutrition")
            continue
        yield entry, nutrients


def _empty_bucket() -> Dict[str, float]:
    bucket = {"calories": 0.0}
    bucket.update({macro: 0.0 for macro in MACRO_FIELDS})
    bucket["entries"] = 0
    return bucket


def _add_to_bucket(bucket: Dict[str, float], nutrients: Dict[str, float]) -> None:
    bucket["calories"] += nutrients["calories"]
    for macro in MACRO_FIELDS:
        bucket[macro] += nutrients[macro]
    bucket["entries"] += 1


def _round_bucket(bucket: Dict[str, float]) -> Dict[str, float]:
    return {key: value if key == "entries" else round(value, 2) for key, value in bucket.items()}


def summarize_entries(entries: Iterable[Any]) -> Dict[str, Any]:
    """Totals, per-meal breakdown and counts for a set of active entries"""
    totals = {name: 0.0 for name in NUTRIENT_FIELDS}
    meals = {meal.value: _empty_bucket() for meal in MealType}
    items = set()
    count = 0

    for entry, nutrients in iter_valid(entries):
        count += 1
        for name in NUTRIENT_FIELDS:
            totals[name] += nutrients[name]
        meal = entry.meal_type if entry.meal_type in meals else MealType.OTHER.value
        _add_to_bucket(meals[meal], nutrients)
        items.add((entry.item_type, entry.item_id))

    breakdown = {meal: _round_bucket(bucket) for meal, bucket in meals.items()}
    total_nutrition = {name: round(value, 2) for name, value in totals.items()}
    # calories and macros are the sum of the rounded meal buckets
    for name in ("calories",) + MACRO_FIELDS:
        total_nutrition[name] = round(sum(bucket[name] for bucket in breakdown.values()), 2)

    return {
        "total_nutrition": total_nutrition,
        "meal_breakdown": breakdown,
        "entries_count": count,
        "unique_foods_count": len(items),
    }


# ===== DAILY SUMMARIES =====

def recompute_daily_summary(db: Session, user_id: int, day: Any,
                            goals_provider: Optional[GoalsProvider] = None) -> DailySummary:
    """
    Rebuild the summary row for (user_id, day) from active entries and upsert it.

    Repeated calls with no intervening change return an identical row;
    last_calculated only moves when the stored values change.
    """
    day = _as_date(day, "date")
    payload = summarize_entries(EntryReader(db).entries(user_id, day, day))
    goal = goals_provider.get_active_goal(user_id) if goals_provider else None
    values = {
        "total_nutrition": payload["total_nutrition"],
        "meal_breakdown": payload["meal_breakdown"],
        "entries_count": payload["entries_count"],
        "unique_foods_count": payload["unique_foods_count"],
        "goals": goal.targets() if goal else None,
        "progress": calculate_goals_progress(payload["total_nutrition"], goal) if goal else None,
    }

    summary = db.query(DailySummary).filter(
        DailySummary.user_id == user_id,
        DailySummary.date == day
    ).first()
    if summary and summary.last_calculated and all(
        getattr(summary, name) == value for name, value in values.items()
    ):
        return summary

    if not summary:
        summary = DailySummary(user_id=user_id, date=day)
        db.add(summary)
    for name, value in values.items():
        setattr(summary, name, value)
    summary.last_calculated = datetime.utcnow()

    try:
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"Recomputed daily summary for user {user_id} on {day.isoformat()}: "
                f"{payload['entries_count']} entries, {payload['total_nutrition']['calories']} kcal")
    return summary


def get_daily_summary(db: Session, user_id: int, day: Any,
                      goals_provider: Optional[GoalsProvider] = None, refresh: bool = False) -> Dict[str, Any]:
    """Cached summary for a day, created on first access"""
    day = _as_date(day, "date")
    summary = None
    if not refresh:
        summary = db.query(DailySummary).filter(
            DailySummary.user_id == user_id,
            DailySummary.date == day
        ).first()
    if summary is None:
        summary = recompute_daily_summary(db, user_id, day, goals_provider)
    return summary.to_dict()


def daily_series(db: Session, user_id: int, date_from: Any, date_to: Any) -> List[Dict[str, Any]]:
    """One row per calendar day in [date_from, date_to]; days without entries are zero"""
    date_from = _as_date(date_from, "date_from")
    date_to = _as_date(date_to, "date_to")
    _check_range(date_from, date_to)

    by_day: Dict[date, List[ConsumptionEntry]] = {}
    for entry in EntryReader(db).entries(user_id, date_from, date_to):
        by_day.setdefault(entry.consumed_at.date(), []).append(entry)

    series = []
    day = date_from
    while day <= date_to:
        summary = summarize_entries(by_day.get(day, []))
        row = {"date": day.isoformat()}
        row.update(summary["total_nutrition"])
        row["entries"] = summary["entries_count"]
        series.append(row)
        day += timedelta(days=1)
    return series


# ===== RANGE STATISTICS =====

def _bucket_key(day: date, group_by: str) -> str:
    if group_by == "week":
        return (day - timedelta(days=day.weekday())).isoformat()
    if group_by == "month":
        return day.strftime("%Y-%m")
    return day.isoformat()


def _validate_metrics(metrics: Optional[Sequence[str]]) -> Tuple[str, ...]:
    metrics = tuple(metrics or DEFAULT_METRICS)
    unknown = [metric for metric in metrics if metric not in NUTRIENT_FIELDS]
    if unknown:
        raise ValidationError(f"Unknown metrics: {', '.join(unknown)}",
                              details=[f"Must be one of: {', '.join(NUTRIENT_FIELDS)}"])
    return metrics


def get_range_stats(db: Session, user_id: int, date_from: Any, date_to: Any,
                    group_by: str = "day", metrics: Optional[Sequence[str]] = None) -> Dict[str, Any]:
    """Totals over a range, broken down by day, ISO week (Monday start) or calendar month"""
    if group_by not in GROUP_BY_CHOICES:
        raise ValidationError(f"Invalid group_by. Must be one of: {', '.join(GROUP_BY_CHOICES)}")
    metrics = _validate_metrics(metrics)
    series = daily_series(db, user_id, date_from, date_to)

    buckets: Dict[str, Dict[str, Any]] = {}
    for row in series:
        key = _bucket_key(date.fromisoformat(row["date"]), group_by)
        bucket = buckets.setdefault(key, {"period": key, **{metric: 0.0 for metric in metrics},
                                          "entries": 0, "days": 0})
        for metric in metrics:
            bucket[metric] += row[metric]
        bucket["entries"] += row["entries"]
        bucket["days"] += 1

    breakdown = []
    for bucket in buckets.values():
        for metric in metrics:
            bucket[metric] = round(bucket[metric], 2)
        breakdown.append(bucket)

    totals = {metric: round(sum(row[metric] for row in series), 2) for metric in metrics}
    totals["entries"] = sum(row["entries"] for row in series)

    averages = {}
    if breakdown:
        for metric in metrics:
            averages[metric] = round(sum(bucket[metric] for bucket in breakdown) / len(breakdown), 2)
        averages["entries"] = round(sum(bucket["entries"] for bucket in breakdown) / len(breakdown), 2)

    trends = {}
    if len(breakdown) >= 2:
        first, last = breakdown[0], breakdown[-1]
        trends = {metric: round(last[metric] - first[metric], 2) for metric in metrics}

    return {
        "date_from": series[0]["date"],
        "date_to": series[-1]["date"],
        "group_by": group_by,
        "metrics": list(metrics),
        "totals": totals,
        "breakdown": breakdown,
        "averages": averages,
        "trends": trends,
    }


def period_range(period: str = "today", today: Optional[date] = None, week_offset: int = 0,
                 month_offset: int = 0, date_from: Any = None, date_to: Any = None) -> Tuple[date, date]:
    """Inclusive (first_day, last_day) for a named period; weeks start on Monday"""
    today = today or datetime.utcnow().date()

    if period == "today":
        return today, today
    if period == "week":
        start = today - timedelta(days=today.weekday()) + timedelta(weeks=week_offset)
        return start, start + timedelta(days=6)
    if period == "month":
        month_index = today.month - 1 + month_offset
        year = today.year + month_index // 12
        start = date(year, month_index % 12 + 1, 1)
        next_month = date(start.year + (start.month // 12), start.month % 12 + 1, 1)
        return start, next_month - timedelta(days=1)
    if period == "year":
        return date(today.year, 1, 1), date(today.year, 12, 31)
    if period == "custom":
        if date_from is None or date_to is None:
            raise ValidationError("date_from and date_to are required for a custom period")
        start, end = _as_date(date_from, "date_from"), _as_date(date_to, "date_to")
        _check_range(start, end)
        return start, end

    raise ValidationError(f"Invalid period. Must be one of: {', '.join(PERIODS)}")


# ===== TOP ITEMS / TRENDS =====

def get_top_items(db: Session, user_id: int, period: str = "month", limit: int = 10,
                  item_type: Optional[str] = None, catalog: Optional[CatalogProvider] = None,
                  now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Most consumed items in a trailing window.

    Ranked by consumption count, then total quantity (grams/units for foods,
    servings for recipes), then item id.
    """
    if period not in TOP_ITEM_WINDOWS:
        raise ValidationError(f"Invalid period. Must be one of: {', '.join(TOP_ITEM_WINDOWS)}")
    if limit is None or limit < 1:
        raise ValidationError("limit must be at least 1")
    if item_type is not None:
        try:
            item_type = ItemType(item_type).value
        except ValueError:
            raise ValidationError('item_type must be "food" or "recipe"')

    now = now or datetime.utcnow()
    window = TOP_ITEM_WINDOWS[period]
    since = now - timedelta(days=window) if window else None
    catalog = catalog or SqlCatalogProvider(db)

    groups: Dict[Tuple[str, int], Dict[str, Any]] = {}
    for entry, nutrients in iter_valid(EntryReader(db).entries(user_id, item_type=item_type, since=since)):
        key = (entry.item_type, entry.item_id)
        group = groups.setdefault(key, {
            "item_type": entry.item_type,
            "item_id": entry.item_id,
            "count": 0,
            "total_calories": 0.0,
            "total_quantity": 0.0,
            "last_consumed": entry.consumed_at,
        })
        group["count"] += 1
        group["total_calories"] += nutrients["calories"]
        amount = entry.servings if entry.item_type == ItemType.RECIPE.value else entry.quantity
        group["total_quantity"] += amount or 0
        if entry.consumed_at > group["last_consumed"]:
            group["last_consumed"] = entry.consumed_at

    ranked = sorted(
        groups.values(),
        key=lambda g: (-g["count"], -g["total_quantity"], g["item_id"], g["item_type"])
    )[:limit]

    items = []
    for group in ranked:
        reference = catalog.lookup(group["item_type"], group["item_id"])
        items.append({
            "item_id": group["item_id"],
            "item_type": group["item_type"],
            "name": reference.name if reference else "Unknown",
            "consumption_count": group["count"],
            "total_calories": round(group["total_calories"]),
            "avg_calories": round(group["total_calories"] / group["count"]),
            "total_quantity": round(group["total_quantity"], 2),
            "last_consumed": group["last_consumed"].isoformat(),
        })

    return {
        "items": items,
        "period": period,
        "item_type": item_type,
        "generated_at": now.isoformat(),
    }


def get_trends(db: Session, user_id: int, metric: str = "calories", date_from: Any = None,
               date_to: Any = None, window: int = DEFAULT_TREND_WINDOW) -> Dict[str, Any]:
    """Daily values with a trailing moving average (shorter at the start of the range)"""
    if metric not in NUTRIENT_FIELDS:
        raise ValidationError(f"Invalid metric. Must be one of: {', '.join(NUTRIENT_FIELDS)}")
    if window is None or window < 1:
        raise ValidationError("window must be at least 1")
    if date_to is None:
        date_to = datetime.utcnow().date()
    if date_from is None:
        date_from = _as_date(date_to, "date_to") - timedelta(days=29)

    series = daily_series(db, user_id, date_from, date_to)
    values = [row[metric] for row in series]
    points = []
    for index, row in enumerate(series):
        trailing = values[max(0, index - window + 1): index + 1]
        points.append({
            "date": row["date"],
            "value": row[metric],
            "moving_average": round(sum(trailing) / len(trailing), 2),
        })

    return {
        "metric": metric,
        "window": window,
        "date_from": series[0]["date"],
        "date_to": series[-1]["date"],
        "points": points,
    }


# ===== DASHBOARD =====

def generate_insights(totals: Dict[str, Any], goal: Any) -> List[Dict[str, str]]:
    insights = []

    calorie_target = defined_targets(goal).get("calories")
    if calorie_target:
        progress = (totals.get("calories") or 0) / calorie_target * 100
        if progress < 80:
            insights.append({
                "type": "warning",
                "message": f"You've consumed {round(progress)}% of your daily calorie goal. "
                           f"Consider adding a healthy snack.",
                "priority": "medium",
            })
        elif progress > 120:
            insights.append({
                "type": "info",
                "message": f"You've exceeded your daily calorie goal by {round(progress - 100)}%. "
                           f"Consider lighter meals tomorrow.",
                "priority": "high",
            })

    total_macros = sum(totals.get(macro) or 0 for macro in MACRO_FIELDS)
    if total_macros > 0:
        protein_percent = (totals.get("protein") or 0) / total_macros * 100
        if protein_percent < 15:
            insights.append({
                "type": "suggestion",
                "message": "Your protein intake seems low. Consider adding lean proteins to your meals.",
                "priority": "medium",
            })

    return insights


def get_nutrition_dashboard(db: Session, user_id: int, period: str = "today",
                            goals_provider: Optional[GoalsProvider] = None,
                            catalog: Optional[CatalogProvider] = None, today: Optional[date] = None,
                            week_offset: int = 0, month_offset: int = 0,
                            date_from: Any = None, date_to: Any = None) -> Dict[str, Any]:
    start, end = period_range(period, today, week_offset, month_offset, date_from, date_to)
    reader = EntryReader(db)
    entries = reader.entries(user_id, start, end)
    summary = summarize_entries(entries)
    totals = summary["total_nutrition"]

    by_item_type = {item_type.value: _empty_bucket() for item_type in ItemType}
    for entry, nutrients in iter_valid(entries):
        if entry.item_type in by_item_type:
            _add_to_bucket(by_item_type[entry.item_type], nutrients)

    top_period = {"today": "week", "custom": "month"}.get(period, period)
    top_items = get_top_items(db, user_id, period=top_period, limit=10, catalog=catalog)["items"]

    goal = goals_provider.get_active_goal(user_id) if goals_provider else None
    last_entry = reader.last_entry(user_id)

    return {
        "period": period,
        "date_range": {"from": start.isoformat(), "to": end.isoformat()},
        "totals": totals,
        "entries_count": summary["entries_count"],
        "macro_breakdown": macro_breakdown(totals),
        "breakdown": {
            "by_item_type": {key: _round_bucket(bucket) for key, bucket in by_item_type.items()},
            "by_meal_type": summary["meal_breakdown"],
            "top_items": top_items,
        },
        "goals": goal.targets() if goal else None,
        "progress": calculate_goals_progress(totals, goal) if goal else None,
        "remaining": remaining_targets(totals, goal) if goal else None,
        "insights": generate_insights(totals, goal),
        "last_entry": last_entry.to_dict(include_metadata=False) if last_entry else None,
    }
