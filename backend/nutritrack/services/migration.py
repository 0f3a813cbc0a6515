# backend/nutritrack/services/migration.py
"""
Consumption Schema Migration
Moves legacy consumption rows (food_id + optional recipe_context) into the
unified consumption_entries table, with a verified backup table and rollback.
"""

import enum
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy import func, inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from nutritrack.core.config import settings
from nutritrack.core.errors import AppError, MigrationError, ValidationError
from nutritrack.models.database import (
    ConsumptionEntry, DailySummary, LegacyConsumptionEntry, SessionLocal
)
from nutritrack.models.entry_types import (
    CalculationSource, EntryMethod, ItemType, MealType, Unit
)
from nutritrack.services.entry_normalizer import (
    MAX_NOTES_LENGTH, classify_reference, is_present, normalize_tags, parse_enum, parse_id, parse_positive
)
from nutritrack.services.nutrition_calculator import (
    clamp_nutrients, legacy_confidence, legacy_quality_score
)

logger = logging.getLogger(__name__)

LEGACY_TABLE = LegacyConsumptionEntry.__tablename__
MIGRATION_REASON = "schema_migration_v2"
DATA_LOSS_WARNING_PERCENT = 10
_TABLE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class MigrationState(str, enum.Enum):
    NOT_STARTED = "not_started"
    BACKED_UP = "backed_up"
    MIGRATED = "migrated"


@dataclass
class MigrationStats:
    total_processed: int = 0
    successfully_migrated: int = 0
    errors: int = 0
    skipped: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def reconciles(self) -> bool:
        return self.total_processed == self.successfully_migrated + self.errors + self.skipped

    @property
    def success_rate(self) -> str:
        if self.total_processed == 0:
            return "0%"
        return f"{self.successfully_migrated / self.total_processed * 100:.1f}%"


def assess_complexity(total_entries: int, hybrid_entries: int, invalid_entries: int) -> str:
    if total_entries == 0:
        return "none"
    if total_entries < 1000 and hybrid_entries == 0 and invalid_entries == 0:
        return "simple"
    if total_entries < 10000 and hybrid_entries < total_entries * 0.1:
        return "moderate"
    return "complex"


def _recipe_context(row: LegacyConsumptionEntry) -> Dict[str, Any]:
    context = row.recipe_context or {}
    if not isinstance(context, dict):
        raise ValidationError(f"Legacy entry {row.id} has a malformed recipe_context")
    return context


def classify_legacy(row: LegacyConsumptionEntry) -> str:
    """food_only, recipe_only, hybrid or invalid"""
    has_food = is_present(row.food_id)
    context = row.recipe_context if isinstance(row.recipe_context, dict) else {}
    has_recipe = is_present(context.get("recipe_id"))
    if has_food and has_recipe:
        return "hybrid"
    if has_recipe:
        return "recipe_only"
    if has_food:
        return "food_only"
    return "invalid"


class ConsumptionSchemaMigration:
    """
    Legacy to unified migration workflow.

    State moves NOT_STARTED -> BACKED_UP (verified backup table) -> MIGRATED.
    Rollback is only allowed from MIGRATED, or with an explicit backup name.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal,
                 batch_size: Optional[int] = None, dry_run: Optional[bool] = None,
                 backup_prefix: Optional[str] = None, allow_rerun: bool = False):
        self.session_factory = session_factory
        self.batch_size = batch_size or settings.migration_batch_size
        self.dry_run = settings.migration_dry_run if dry_run is None else dry_run
        self.backup_prefix = backup_prefix or settings.migration_backup_prefix
        self.allow_rerun = allow_rerun

        self.stats = MigrationStats()
        self.state = MigrationState.NOT_STARTED
        self.backup_table_name: Optional[str] = None
        self._touched_users: Set[int] = set()

    # ===== ANALYSIS =====

    def analyze(self) -> Dict[str, Any]:
        logger.info("Analyzing legacy consumption data...")
        db = self.session_factory()
        try:
            breakdown = {"food_only": 0, "recipe_only": 0, "hybrid": 0, "invalid": 0}
            entry_methods: Dict[str, int] = {}
            meal_types: Dict[str, int] = {}
            quality = {
                "entries_with_nutrition": 0,
                "entries_with_valid_quantity": 0,
                "entries_with_notes": 0,
                "entries_with_tags": 0,
                "deleted_entries": 0,
            }
            users = set()
            first_seen = last_seen = None
            total = 0

            for row in db.query(LegacyConsumptionEntry).order_by(LegacyConsumptionEntry.id).yield_per(self.batch_size):
                total += 1
                breakdown[classify_legacy(row)] += 1
                entry_methods[row.entry_method or "unknown"] = entry_methods.get(row.entry_method or "unknown", 0) + 1
                meal_types[row.meal_type or "unknown"] = meal_types.get(row.meal_type or "unknown", 0) + 1

                nutrition = row.nutrition if isinstance(row.nutrition, dict) else {}
                if _positive(nutrition.get("calories")):
                    quality["entries_with_nutrition"] += 1
                if _positive(row.quantity):
                    quality["entries_with_valid_quantity"] += 1
                if row.notes:
                    quality["entries_with_notes"] += 1
                if row.tags:
                    quality["entries_with_tags"] += 1
                if row.is_deleted:
                    quality["deleted_entries"] += 1

                if row.user_id is not None:
                    users.add(row.user_id)
                if row.consumed_at is not None:
                    first_seen = row.consumed_at if first_seen is None else min(first_seen, row.consumed_at)
                    last_seen = row.consumed_at if last_seen is None else max(last_seen, row.consumed_at)
        except SQLAlchemyError as e:
            raise MigrationError(f"Data analysis failed: {str(e)}")
        finally:
            db.close()

        return {
            "total_entries": total,
            "breakdown": breakdown,
            "entry_methods": dict(sorted(entry_methods.items(), key=lambda kv: -kv[1])),
            "meal_types": dict(sorted(meal_types.items(), key=lambda kv: -kv[1])),
            "date_range": {
                "min": first_seen.isoformat(),
                "max": last_seen.isoformat(),
            } if first_seen else {},
            "data_quality": quality,
            "unique_users": len(users),
            "complexity": assess_complexity(total, breakdown["hybrid"], breakdown["invalid"]),
        }

    # ===== BACKUP =====

    def create_backup(self) -> str:
        """Copy the legacy table to <prefix><unix_ms> and verify row counts"""
        db = self.session_factory()
        try:
            timestamp = int(time.time() * 1000)
            while inspect(db.connection()).has_table(f"{self.backup_prefix}{timestamp}"):
                timestamp += 1
            backup_name = f"{self.backup_prefix}{timestamp}"
            quoted = self._quote(db, backup_name)
            logger.info(f"Creating backup table {backup_name}...")

            db.execute(text(f"CREATE TABLE {quoted} AS SELECT * FROM {LEGACY_TABLE}"))
            db.commit()

            backup_count = self._table_count(db, backup_name)
            original_count = self._table_count(db, LEGACY_TABLE)
            if backup_count != original_count:
                raise MigrationError(f"Backup verification failed: {backup_count} != {original_count}")
        except SQLAlchemyError as e:
            db.rollback()
            raise MigrationError(f"Backup creation failed: {str(e)}")
        finally:
            db.close()

        self.backup_table_name = backup_name
        self.state = MigrationState.BACKED_UP
        logger.info(f"Backup created successfully: {backup_name} ({backup_count} rows)")
        return backup_name

    # ===== TRANSFORM =====

    def transform_entry(self, row: LegacyConsumptionEntry) -> Optional[Dict[str, Any]]:
        """
        Column values for the unified entry, or None when the row references
        neither a food nor a recipe. Malformed rows raise ValidationError.
        """
        recipe_context = _recipe_context(row)
        reference = classify_reference({"food_id": row.food_id, "recipe_context": recipe_context})
        if reference is None:
            logger.warning(f"Skipping legacy entry {row.id}: no food_id or recipe_id")
            return None
        if row.user_id is None:
            raise ValidationError(f"Legacy entry {row.id} has no user_id")

        item_type, raw_item_id = reference
        item_id = parse_id(raw_item_id, "item_id")
        quantity = unit = servings = None
        context: Dict[str, Any] = {}

        if item_type == ItemType.RECIPE:
            servings = parse_positive(recipe_context.get("serving_size") or 1, "serving_size")
            total_servings = recipe_context.get("total_servings")
            context["original_recipe"] = {
                "name": recipe_context.get("recipe_name"),
                "total_servings": total_servings,
                "portion_consumed": round(servings / (parse_positive(total_servings, "total_servings")
                                                     if total_servings else 1), 4),
            }
        else:
            quantity = parse_positive(row.quantity or 100, "quantity")
            unit = parse_enum(Unit, row.unit, "unit", Unit.G).value
            context["preparation"] = {"method": "unknown", "notes": row.notes or ""}

        nutrition = row.nutrition or {}
        if not isinstance(nutrition, dict):
            raise ValidationError(f"Legacy entry {row.id} has malformed nutrition")

        now = datetime.utcnow()
        consumed_at = row.consumed_at or now
        notes = (row.notes or "")[:MAX_NOTES_LENGTH]
        tags = normalize_tags(row.tags)

        values = {
            "user_id": row.user_id,
            "item_type": item_type.value,
            "item_id": item_id,
            "quantity": quantity,
            "unit": unit,
            "servings": servings,
            "meal_type": parse_enum(MealType, row.meal_type, "meal type", MealType.OTHER).value,
            "consumed_at": consumed_at,
            "entry_method": parse_enum(EntryMethod, row.entry_method, "entry method", EntryMethod.MANUAL).value,
            "calculated_at": now,
            "calculation_source": CalculationSource.MIGRATION_TRANSFER.value,
            "confidence": legacy_confidence(nutrition, row.quantity, row.notes, row.entry_method),
            "context": context,
            "entry_metadata": {
                "device_info": row.device_info or {},
                "location": row.location or {},
                "user_input": {"notes": notes, "tags": tags, "rating": None, "mood": None},
                "ai_analysis": row.ai_analysis or {},
            },
            "is_deleted": bool(row.is_deleted),
            "deleted_at": row.deleted_at,
            "deleted_by": row.deleted_by,
            "is_duplicate": False,
            "original_entry_id": None,
            "quality_score": legacy_quality_score(
                nutrition, row.quantity, row.notes, row.tags, row.consumed_at,
                row.entry_method, recipe_context.get("recipe_name")
            ),
            "is_verified": False,
            "needs_review": False,
            "versions": [{
                "changed_at": now.isoformat(),
                "changed_by": row.user_id,
                "changes": ["migrated"],
                "reason": MIGRATION_REASON,
                "original_id": row.id,
            }],
            "original_id": row.id,
            "created_at": row.created_at or consumed_at,
            "updated_at": row.updated_at or now,
        }
        values.update(clamp_nutrients(nutrition))
        return values

    # ===== RUN =====

    def run(self) -> Dict[str, Any]:
        """analyze -> backup (skipped on dry runs) -> batched transform/insert -> verify"""
        self.stats = MigrationStats(started_at=datetime.utcnow())
        self._touched_users = set()
        logger.info(f"Starting consumption schema migration (dry_run={self.dry_run}, batch_size={self.batch_size})")

        try:
            analysis = self.analyze()
            logger.info(f"Analysis: {analysis['total_entries']} entries, breakdown={analysis['breakdown']}, "
                        f"complexity={analysis['complexity']}")
            if analysis["total_entries"] == 0:
                logger.info("No legacy consumption entries found. Migration not needed.")
                self.stats.finished_at = datetime.utcnow()
                return self.generate_report()

            if not self.dry_run:
                self._check_rerun()
                self.create_backup()

            self._execute(analysis["total_entries"])
            verification = self.verify(analysis)
            if not self.dry_run:
                self.state = MigrationState.MIGRATED
        except Exception as e:
            self.stats.finished_at = datetime.utcnow()
            logger.error(f"Migration failed: {str(e)}")
            if self.backup_table_name and not self.dry_run:
                logger.info(f"Consider running rollback: migrate_consumption.py rollback {self.backup_table_name}")
            raise

        self.stats.finished_at = datetime.utcnow()
        report = self.generate_report()
        report["verification"] = verification
        logger.info(f"Migration finished: {report['migration']['status']} ({report['statistics']})")
        return report

    def _check_rerun(self) -> None:
        db = self.session_factory()
        try:
            migrated = db.query(func.count(ConsumptionEntry.id)).filter(
                ConsumptionEntry.original_id.isnot(None)
            ).scalar()
        finally:
            db.close()
        if migrated and not self.allow_rerun:
            raise MigrationError(
                f"Target already contains {migrated} migrated entries; rerun with allow_rerun to continue"
            )

    def _execute(self, total_entries: int) -> None:
        db = self.session_factory()
        try:
            last_id = 0
            batch_number = 0
            while True:
                batch = db.query(LegacyConsumptionEntry).filter(
                    LegacyConsumptionEntry.id > last_id
                ).order_by(LegacyConsumptionEntry.id).limit(self.batch_size).all()
                if not batch:
                    break
                last_id = batch[-1].id
                batch_number += 1
                logger.info(f"Processing batch {batch_number}: legacy ids {batch[0].id}..{last_id}")

                transformed: List[Dict[str, Any]] = []
                for row in batch:
                    self.stats.total_processed += 1
                    try:
                        values = self.transform_entry(row)
                    except (AppError, ValueError, TypeError) as e:
                        logger.error(f"Error transforming legacy entry {row.id}: {str(e)}")
                        self.stats.errors += 1
                        continue
                    if values is None:
                        self.stats.skipped += 1
                        continue
                    transformed.append(values)

                transformed = self._without_migrated(db, transformed)
                if self.dry_run:
                    self.stats.successfully_migrated += len(transformed)
                else:
                    self._insert_batch(db, transformed)

                if batch_number % 10 == 0:
                    progress = self.stats.total_processed / total_entries * 100
                    logger.info(f"Progress: {progress:.1f}% ({self.stats.total_processed}/{total_entries}) "
                                f"migrated={self.stats.successfully_migrated} errors={self.stats.errors} "
                                f"skipped={self.stats.skipped}")

            if not self.dry_run:
                self._invalidate_summaries(db, self._touched_users)
        finally:
            db.close()

    def _without_migrated(self, db: Session, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Drop rows whose legacy id is already in the target; they count as skipped"""
        if not rows:
            return rows
        existing = {
            original_id for (original_id,) in db.query(ConsumptionEntry.original_id).filter(
                ConsumptionEntry.original_id.in_([values["original_id"] for values in rows])
            )
        }
        if existing:
            logger.info(f"Skipping {len(existing)} legacy entries that are already migrated")
            self.stats.skipped += len(existing)
        return [values for values in rows if values["original_id"] not in existing]

    def _insert_batch(self, db: Session, rows: List[Dict[str, Any]]) -> None:
        """Insert a batch in one commit; on failure retry row by row"""
        if not rows:
            return
        try:
            db.add_all([ConsumptionEntry(**values) for values in rows])
            db.commit()
            self.stats.successfully_migrated += len(rows)
            self._touched_users.update(values["user_id"] for values in rows)
            return
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Batch insert failed, retrying {len(rows)} rows individually: {str(e)}")

        for values in rows:
            try:
                db.add(ConsumptionEntry(**values))
                db.commit()
                self.stats.successfully_migrated += 1
                self._touched_users.add(values["user_id"])
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Individual insert failed for legacy entry {values['original_id']}: {str(e)}")
                self.stats.errors += 1

    @staticmethod
    def _invalidate_summaries(db: Session, user_ids: Set[int]) -> None:
        """Drop cached summaries so they are rebuilt from the migrated entries on next read"""
        if not user_ids:
            return
        db.query(DailySummary).filter(DailySummary.user_id.in_(user_ids)).delete(synchronize_session=False)
        db.commit()

    def verify(self, analysis: Dict[str, Any]) -> Dict[str, Any]:
        if self.dry_run:
            logger.info("Dry run: skipping database verification")
            return {"skipped": True}

        db = self.session_factory()
        try:
            migrated = db.query(func.count(ConsumptionEntry.id)).filter(
                ConsumptionEntry.original_id.isnot(None)
            ).scalar()
            by_type = dict(
                db.query(ConsumptionEntry.item_type, func.count(ConsumptionEntry.id))
                .filter(ConsumptionEntry.original_id.isnot(None))
                .group_by(ConsumptionEntry.item_type)
                .all()
            )
        finally:
            db.close()

        original = analysis["total_entries"]
        data_loss = (original - migrated) / original * 100 if original else 0.0
        if data_loss > DATA_LOSS_WARNING_PERCENT:
            logger.warning(f"Significant data loss detected: {data_loss:.1f}% of legacy entries not migrated")
        else:
            logger.info("Migration integrity verified successfully")

        return {
            "original_entries": original,
            "migrated_entries": migrated,
            "item_types": by_type,
            "data_loss_percent": round(data_loss, 1),
            "reconciled": self.stats.reconciles(),
        }

    def generate_report(self) -> Dict[str, Any]:
        duration = 0.0
        if self.stats.started_at and self.stats.finished_at:
            duration = (self.stats.finished_at - self.stats.started_at).total_seconds()

        return {
            "migration": {
                "status": "SUCCESS" if self.stats.errors == 0 else "COMPLETED_WITH_ERRORS",
                "state": self.state.value,
                "dry_run": self.dry_run,
                "duration_seconds": round(duration, 2),
                "timestamp": datetime.utcnow().isoformat(),
            },
            "statistics": {
                "total_processed": self.stats.total_processed,
                "successfully_migrated": self.stats.successfully_migrated,
                "errors": self.stats.errors,
                "skipped": self.stats.skipped,
                "success_rate": self.stats.success_rate,
            },
            "backup": {
                "created": self.backup_table_name is not None,
                "table_name": self.backup_table_name,
            },
            "configuration": {
                "batch_size": self.batch_size,
                "backup_prefix": self.backup_prefix,
            },
        }

    # ===== ROLLBACK / CLEANUP =====

    def rollback(self, backup_name: Optional[str] = None) -> Dict[str, Any]:
        """Remove migrated entries and restore the legacy table from a backup"""
        if backup_name is None:
            if self.state != MigrationState.MIGRATED or not self.backup_table_name:
                raise MigrationError(
                    "Rollback requires a completed migration or an explicit backup name"
                )
            backup_name = self.backup_table_name
        if not backup_name.startswith(self.backup_prefix):
            raise MigrationError(f"{backup_name} is not a backup table")

        logger.info(f"Rolling back migration using backup: {backup_name}")
        db = self.session_factory()
        try:
            quoted = self._quote(db, backup_name)
            if not inspect(db.connection()).has_table(backup_name):
                raise MigrationError(f"Backup table {backup_name} not found")
            if self._table_count(db, backup_name) == 0:
                raise MigrationError(f"Backup table {backup_name} is empty")

            user_ids = {
                user_id for (user_id,) in
                db.query(ConsumptionEntry.user_id).filter(ConsumptionEntry.original_id.isnot(None)).distinct()
            }
            removed = db.query(ConsumptionEntry).filter(
                ConsumptionEntry.original_id.isnot(None)
            ).delete(synchronize_session=False)
            db.query(LegacyConsumptionEntry).delete(synchronize_session=False)
            db.execute(text(f"INSERT INTO {LEGACY_TABLE} SELECT * FROM {quoted}"))
            db.commit()

            self._invalidate_summaries(db, user_ids)
            restored = self._table_count(db, LEGACY_TABLE)
        except SQLAlchemyError as e:
            db.rollback()
            raise MigrationError(f"Rollback failed: {str(e)}")
        finally:
            db.close()

        self.backup_table_name = backup_name
        self.state = MigrationState.BACKED_UP
        logger.info(f"Rollback completed successfully: {restored} legacy rows restored, "
                    f"{removed} migrated entries removed")
        return {
            "status": "SUCCESS",
            "restored_entries": restored,
            "removed_entries": removed,
            "backup_used": backup_name,
            "timestamp": datetime.utcnow().isoformat(),
        }

    def list_backups(self) -> List[str]:
        db = self.session_factory()
        try:
            return sorted(
                name for name in inspect(db.connection()).get_table_names()
                if name.startswith(self.backup_prefix)
            )
        finally:
            db.close()

    def cleanup_old_backups(self, older_than_days: int = 30) -> Dict[str, Any]:
        """Drop backup tables whose embedded timestamp is older than the cutoff"""
        logger.info(f"Cleaning up backups older than {older_than_days} days...")
        cutoff_ms = int((time.time() - older_than_days * 24 * 60 * 60) * 1000)
        deleted = []

        db = self.session_factory()
        try:
            for name in inspect(db.connection()).get_table_names():
                suffix = name[len(self.backup_prefix):]
                if not name.startswith(self.backup_prefix) or not suffix.isdigit():
                    continue
                if int(suffix) < cutoff_ms:
                    db.execute(text(f"DROP TABLE {self._quote(db, name)}"))
                    deleted.append(name)
                    logger.info(f"Deleted old backup: {name}")
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise MigrationError(f"Backup cleanup failed: {str(e)}")
        finally:
            db.close()

        logger.info(f"Cleanup completed: {len(deleted)} old backups removed")
        return {"deleted_backups": len(deleted), "tables": deleted}

    # ===== HELPERS =====

    @staticmethod
    def _quote(db: Session, table_name: str) -> str:
        if not _TABLE_NAME_RE.match(table_name):
            raise MigrationError(f"Invalid table name: {table_name}")
        return db.get_bind().dialect.identifier_preparer.quote(table_name)

    def _table_count(self, db: Session, table_name: str) -> int:
        return db.execute(text(f"SELECT COUNT(*) FROM {self._quote(db, table_name)}")).scalar()


def _positive(value: Any) -> bool:
    try:
        return float(value) > 0
    except (TypeError, ValueError):
        return False
