"""
Consumption Schema Migration CLI

Moves legacy consumption rows into the unified consumption_entries table.

Usage:
    # Inspect legacy data without touching anything
    python migrate_consumption.py analyze

    # Simulate, then run for real (creates a verified backup table first)
    python migrate_consumption.py migrate --dry-run
    python migrate_consumption.py migrate

    # Undo using a backup table printed by a previous run
    python migrate_consumption.py rollback consumption_backup_1700000000000

    # Drop backup tables older than 60 days (default 30)
    python migrate_consumption.py cleanup 60
"""

import argparse
import json
import logging
import os
import sys

# Add parent directory to path for imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from nutritrack.core.config import settings
from nutritrack.core.errors import AppError
from nutritrack.services.migration import ConsumptionSchemaMigration

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Consumption schema migration tool")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    migrate_parser = subparsers.add_parser("migrate", help="Run the migration")
    migrate_parser.add_argument("--dry-run", action="store_true", help="Transform without writing anything")
    migrate_parser.add_argument("--batch-size", type=int, default=None,
                                help=f"Rows per batch (default: {settings.migration_batch_size})")
    migrate_parser.add_argument("--allow-rerun", action="store_true",
                                help="Continue even if migrated entries already exist")

    subparsers.add_parser("analyze", help="Analyze legacy data without migrating")

    rollback_parser = subparsers.add_parser("rollback", help="Restore from a backup table")
    rollback_parser.add_argument("backup_name", help="Backup table name, e.g. consumption_backup_1700000000000")

    cleanup_parser = subparsers.add_parser("cleanup", help="Drop old backup tables")
    cleanup_parser.add_argument("days", type=int, nargs="?", default=30,
                                help="Remove backups older than this many days (default: 30)")

    subparsers.add_parser("backups", help="List backup tables")
    return parser


def main(argv=None, session_factory=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    options = {}
    if session_factory is not None:
        options["session_factory"] = session_factory
    if args.command == "migrate":
        options.update(
            batch_size=args.batch_size,
            dry_run=True if args.dry_run else None,
            allow_rerun=args.allow_rerun,
        )
    migration = ConsumptionSchemaMigration(**options)

    try:
        if args.command == "migrate":
            result = migration.run()
        elif args.command == "analyze":
            result = migration.analyze()
        elif args.command == "rollback":
            result = migration.rollback(args.backup_name)
        elif args.command == "cleanup":
            result = migration.cleanup_old_backups(args.days)
        else:
            result = {"backups": migration.list_backups()}
    except AppError as e:
        logger.error(f"{args.command} failed: {e.message}")
        return 1

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=settings.log_level)
    sys.exit(main())
