"""SQL migrations on Alembic and the migration command line."""

from webstarter.migrate.migrator import (
    AppliedMigrationError,
    MigrationError,
    MigrationGroup,
    MigrationLockedError,
    MigrationNotFoundError,
    MigrationOrderError,
    MigrationStatus,
    Migrator,
)
from webstarter.migrate.sql import split_sql_statements

__all__ = [
    "AppliedMigrationError",
    "MigrationError",
    "MigrationGroup",
    "MigrationLockedError",
    "MigrationNotFoundError",
    "MigrationOrderError",
    "MigrationStatus",
    "Migrator",
    "split_sql_statements",
]
