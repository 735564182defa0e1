#!/usr/bin/env python3
"""
Database migration command line.

Usage: webstarter-migrate <command> [args]
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from webstarter.core.config import Settings, load_settings
from webstarter.core.logging_config import setup_logging
from webstarter.db.session import DatabaseConnectionError, close_db_engine, create_db_engine
from webstarter.migrate.migrator import MigrationError, Migrator

COMMANDS = [
    ("up", "Apply all pending migrations"),
    ("down", "Rollback the last applied migration"),
    ("redo", "Rollback and re-apply the last migration"),
    ("status", "Show migration status"),
    ("create", "Create a new migration (usage: migrate create <name>)"),
    ("delete", "Delete an unapplied migration (usage: migrate delete <name>)"),
    ("lock", "Show migration lock status"),
    ("unlock", "Force unlock migrations (use with caution)"),
]

STATUS_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class CommandError(Exception):
    """A command failed; the message is shown to the user as is"""
    pass


class _ArgumentParser(argparse.ArgumentParser):
    """Usage errors exit with status 1 instead of argparse's 2."""

    def error(self, message: str) -> None:
        self.print_usage(sys.stderr)
        self.exit(1, f"Error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(prog="webstarter-migrate", description="Manage database migrations")
    subparsers = parser.add_subparsers(dest="command", metavar="<command>", parser_class=_ArgumentParser)
    subparsers.required = True

    for name, help_text in COMMANDS:
        sub = subparsers.add_parser(name, help=help_text)
        if name in ("create", "delete"):
            sub.add_argument("name", help="migration name")
    return parser


def cmd_up(migrator: Migrator, args: argparse.Namespace) -> None:
    try:
        group = migrator.migrate()
    except (MigrationError, SQLAlchemyError, OSError) as e:
        raise CommandError(f"Migration failed: {e}") from e
    if group.is_empty():
        print("No new migrations to apply")
        return
    print(f"Applied {len(group.migrations)} migration(s):")
    for name in group.migrations:
        print(f"  ✓ {name}")


def cmd_down(migrator: Migrator, args: argparse.Namespace) -> None:
    try:
        group = migrator.rollback()
    except (MigrationError, SQLAlchemyError, OSError) as e:
        raise CommandError(f"Rollback failed: {e}") from e
    if group.is_empty():
        print("No migrations to rollback")
        return
    print(f"Rolled back {len(group.migrations)} migration(s):")
    for name in group.migrations:
        print(f"  ↩ {name}")


def cmd_redo(migrator: Migrator, args: argparse.Namespace) -> None:
    try:
        group = migrator.rollback()
    except (MigrationError, SQLAlchemyError, OSError) as e:
        raise CommandError(f"Rollback failed: {e}") from e
    if group.is_empty():
        print("No migrations to redo")
        return
    print(f"Rolled back: {', '.join(group.migrations)}")

    try:
        group = migrator.migrate()
    except (MigrationError, SQLAlchemyError, OSError) as e:
        raise CommandError(f"Re-apply failed: {e}") from e
    print(f"Re-applied: {', '.join(group.migrations)}")


def cmd_status(migrator: Migrator, args: argparse.Namespace) -> None:
    statuses = migrator.status()
    if not statuses:
        print("No migrations found")
        return

    applied = 0
    pending = 0
    print("Migrations:")
    for status in statuses:
        if status.is_applied:
            print(f"  ● {status.name} (applied {status.migrated_at.strftime(STATUS_TIME_FORMAT)})")
            applied += 1
        else:
            print(f"  ○ {status.name} (pending)")
            pending += 1
    print(f"\nTotal: {applied} applied, {pending} pending")


def cmd_create(migrator: Migrator, args: argparse.Namespace) -> None:
    try:
        paths = migrator.create(args.name)
    except (MigrationError, OSError) as e:
        raise CommandError(f"Failed to create migration: {e}") from e
    print("Created migration files:")
    for path in paths:
        print(f"  + {path}")


def cmd_delete(migrator: Migrator, args: argparse.Namespace) -> None:
    try:
        removed = migrator.delete(args.name)
    except MigrationError as e:
        raise CommandError(str(e)) from e
    except OSError as e:
        raise CommandError(f"Failed to delete {args.name}: {e}") from e
    for path in removed:
        print(f"Deleted {path}")


def cmd_lock(migrator: Migrator, args: argparse.Namespace) -> None:
    if migrator.is_locked():
        print("Lock status: LOCKED (another process holds the lock)")
        print("If this is stuck, use 'migrate unlock' with caution")
        return
    print("Lock status: AVAILABLE")


def cmd_unlock(migrator: Migrator, args: argparse.Namespace) -> None:
    try:
        migrator.unlock()
    except SQLAlchemyError as e:
        raise CommandError(f"Failed to unlock: {e}") from e
    print("Migration lock released")


HANDLERS = {
    "up": cmd_up,
    "down": cmd_down,
    "redo": cmd_redo,
    "status": cmd_status,
    "create": cmd_create,
    "delete": cmd_delete,
    "lock": cmd_lock,
    "unlock": cmd_unlock,
}


def _fail(message: str) -> int:
    print(f"Error: {message}", file=sys.stderr)
    return 1


def main(argv: Optional[List[str]] = None, settings: Optional[Settings] = None) -> int:
    """Run one migration command; returns the process exit code."""
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else 1

    if settings is None:
        try:
            settings = load_settings()
        except ValidationError as e:
            return _fail(f"Invalid configuration: {e}")

    setup_logging(log_level=settings.LOG_LEVEL, enable_json=settings.is_production)

    try:
        engine = create_db_engine(settings.DATABASE_URL)
    except DatabaseConnectionError as e:
        return _fail(f"Failed to connect to database: {e}")

    try:
        migrator = Migrator(engine, Path(settings.MIGRATIONS_DIR))
        try:
            migrator.init()
        except SQLAlchemyError as e:
            return _fail(f"Failed to initialize migrator: {e}")

        HANDLERS[args.command](migrator, args)
    except CommandError as e:
        return _fail(str(e))
    except MigrationError as e:
        return _fail(str(e))
    except SQLAlchemyError as e:
        return _fail(f"Database error: {e}")
    finally:
        close_db_engine(engine)

    return 0


if __name__ == "__main__":
    sys.exit(main())
