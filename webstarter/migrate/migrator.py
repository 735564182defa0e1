"""
SQL file migrations on top of Alembic.

Each migration is an Alembic revision script plus a pair of SQL files:

    20240101120000_create_users.py        revision, chained by down_revision
    20240101120000_create_users.up.sql    applied when migrating up
    20240101120000_create_users.down.sql  applied when rolling back

Alembic owns the revision chain and the ``alembic_version`` table. On top of
it, every ``migrate()`` run that applies anything is recorded as a new group
in ``schema_migrations``, and ``rollback()`` downgrades the most recent group
as a whole. Runs are serialized by a lock row in ``schema_migration_locks``.
"""

import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from alembic.util import CommandError
from sqlalchemy import delete, func, insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from webstarter.db.base import Base
from webstarter.db.models import SchemaMigration, SchemaMigrationLock
from webstarter.migrate.sql import DOWN, UP, sql_path

logger = logging.getLogger(__name__)

SCRIPT_LOCATION = Path(__file__).parent / "alembic_env"
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
DEFAULT_LOCK_NAME = "schema_migrations"

# Revision ids also appear in Alembic revision arguments, which give '-' and
# '+' a meaning of their own
_NAME_RE = re.compile(r"^[A-Za-z0-9_]+$")

UP_TEMPLATE = """-- Migration: {name}
-- Write the schema change here. Statements are separated by semicolons.
--
-- Example:
--   CREATE TABLE users (
--       id BIGSERIAL PRIMARY KEY,
--       email VARCHAR(255) NOT NULL UNIQUE,
--       created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
--   );

SELECT 1;
"""

DOWN_TEMPLATE = """-- Rollback: {name}
-- Undo the changes made by the matching .up.sql file.
--
-- Example:
--   DROP TABLE IF EXISTS users;

SELECT 1;
"""

class MigrationError(Exception):
    """Base class for migration failures"""
    pass


class MigrationLockedError(MigrationError):
    """Another process holds the migration lock"""
    pass


class MigrationNotFoundError(MigrationError):
    """No migration files exist under the given name"""
    pass


class AppliedMigrationError(MigrationError):
    """The operation is not allowed on an applied migration"""
    pass


class MigrationOrderError(MigrationError):
    """The revision chain has branched, so there is no single order to apply"""
    pass


@dataclass(frozen=True)
class MigrationFile:
    name: str
    path: Path
    down_revision: Optional[str] = None

    @property
    def up_path(self) -> Path:
        return sql_path(self.path, UP)

    @property
    def down_path(self) -> Path:
        return sql_path(self.path, DOWN)


@dataclass
class MigrationStatus:
    name: str
    migrated_at: Optional[datetime] = None
    group_id: Optional[int] = None

    @property
    def is_applied(self) -> bool:
        return self.migrated_at is not None


@dataclass
class MigrationGroup:
    """Migrations applied or rolled back together by one run."""

    id: int = 0
    migrations: List[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.migrations


def _escape(value) -> str:
    # Config values go through ConfigParser interpolation
    return str(value).replace("%", "%%")


@contextmanager
def _alembic_errors() -> Iterator[None]:
    try:
        yield
    except CommandError as e:
        raise MigrationError(str(e)) from e


class Migrator:
    """Applies and rolls back SQL migrations against one engine through Alembic."""

    def __init__(self, engine: Engine, directory, lock_name: str = DEFAULT_LOCK_NAME):
        self.engine = engine
        self.directory = Path(directory)
        self.lock_name = lock_name

    def init(self) -> None:
        """Create the bookkeeping tables if they do not exist."""
        Base.metadata.create_all(
            self.engine,
            tables=[SchemaMigration.__table__, SchemaMigrationLock.__table__],
        )

    # Alembic plumbing

    def alembic_config(self, **attributes) -> Config:
        config = Config(attributes=attributes)
        config.set_main_option("script_location", _escape(SCRIPT_LOCATION))
        config.set_main_option("version_locations", _escape(self.directory))
        config.set_main_option("path_separator", "os")
        config.set_main_option("file_template", "%%(rev)s")
        return config

    def _scripts(self) -> ScriptDirectory:
        with _alembic_errors():
            return ScriptDirectory.from_config(self.alembic_config())

    def _run_command(self, fn, target: str, group: MigrationGroup) -> None:
        """Run an Alembic upgrade/downgrade, recording each step in ``group``."""

        def record_step(ctx, step, heads, run_args):
            now = datetime.now(timezone.utc)
            for name in step.up_revision_ids:
                if step.is_upgrade:
                    ctx.connection.execute(
                        insert(SchemaMigration.__table__).values(
                            name=name, group_id=group.id, migrated_at=now
                        )
                    )
                    logger.info("migration applied", extra={"migration": name, "group_id": group.id})
                else:
                    ctx.connection.execute(
                        delete(SchemaMigration.__table__).where(SchemaMigration.__table__.c.name == name)
                    )
                    logger.info("migration rolled back", extra={"migration": name, "group_id": group.id})
                group.migrations.append(name)

        with self.engine.connect() as connection:
            config = self.alembic_config(connection=connection, on_version_apply=record_step)
            with _alembic_errors():
                fn(config, target)
            connection.commit()

    def current_revisions(self) -> Tuple[str, ...]:
        """Revisions stored in ``alembic_version``."""
        with self.engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_heads()

    # Files

    def discover(self) -> List[MigrationFile]:
        """Migrations on disk, oldest first along the revision chain."""
        if not self.directory.is_dir():
            return []
        scripts = self._scripts()
        with _alembic_errors():
            revisions = list(scripts.walk_revisions())
        revisions.reverse()
        return [
            MigrationFile(name=script.revision, path=Path(script.path), down_revision=script.down_revision)
            for script in revisions
        ]

    def _find(self, name: str) -> MigrationFile:
        for migration in self.discover():
            if migration.name == name:
                return migration
        raise MigrationNotFoundError(f"Migration not found: {name}")

    def create(self, name: str, now: Optional[datetime] = None) -> List[Path]:
        """Write a revision named ``<timestamp>_<name>`` with an empty up/down pair."""
        if not _NAME_RE.match(name):
            raise MigrationError(f"invalid migration name {name!r}: use letters, digits and '_'")
        now = now or datetime.now(timezone.utc)
        full_name = f"{now.strftime(TIMESTAMP_FORMAT)}_{name}"

        self.directory.mkdir(parents=True, exist_ok=True)
        migration = MigrationFile(name=full_name, path=self.directory / f"{full_name}.py")
        if any(p.exists() for p in (migration.path, migration.up_path, migration.down_path)):
            raise MigrationError(f"Migration already exists: {full_name}")

        with _alembic_errors():
            command.revision(self.alembic_config(), message=name, rev_id=full_name)
        migration.up_path.write_text(UP_TEMPLATE.format(name=full_name), encoding="utf-8")
        migration.down_path.write_text(DOWN_TEMPLATE.format(name=full_name), encoding="utf-8")
        logger.info("migration created", extra={"migration": full_name})
        return [migration.path, migration.up_path, migration.down_path]

    def delete(self, name: str) -> List[Path]:
        """Remove the files of a migration that has not been applied."""
        migrations = self.discover()
        migration = next((m for m in migrations if m.name == name), None)
        if migration is None:
            raise MigrationNotFoundError(f"Migration not found: {name}")
        if name in self._applied():
            raise AppliedMigrationError(
                f"Cannot delete applied migration: {name}\nRun 'migrate down' first to rollback"
            )
        dependents = [m.name for m in migrations if m.down_revision == name]
        if dependents:
            raise MigrationError(
                f"Cannot delete {name}: {', '.join(dependents)} revises it; delete that first"
            )

        removed = []
        for path in (migration.path, migration.up_path, migration.down_path):
            if path.exists():
                path.unlink()
                removed.append(path)
        logger.info("migration deleted", extra={"migration": name})
        return removed

    # Status

    def _applied(self) -> Dict[str, SchemaMigration]:
        with Session(self.engine) as session:
            return {row.name: row for row in session.scalars(select(SchemaMigration))}

    def status(self) -> List[MigrationStatus]:
        """Every migration on disk in chain order, then applied ones whose files are gone."""
        applied = self._applied()
        names = [m.name for m in self.discover()]
        names += sorted(set(applied) - set(names))

        result = []
        for name in names:
            row = applied.get(name)
            if row is None:
                result.append(MigrationStatus(name=name))
            else:
                result.append(MigrationStatus(name=name, migrated_at=row.migrated_at, group_id=row.group_id))
        return result

    # Locking

    def lock(self) -> None:
        """
        Take the migration lock.

        Raises:
            MigrationLockedError: If another process already holds it
        """
        try:
            with Session(self.engine) as session, session.begin():
                session.add(SchemaMigrationLock(table_name=self.lock_name))
        except IntegrityError as e:
            raise MigrationLockedError("migrations are locked by another process") from e

    def unlock(self) -> None:
        """Release the lock unconditionally."""
        with Session(self.engine) as session, session.begin():
            session.execute(
                delete(SchemaMigrationLock).where(SchemaMigrationLock.table_name == self.lock_name)
            )

    @contextmanager
    def locked(self) -> Iterator[None]:
        self.lock()
        try:
            yield
        finally:
            self.unlock()

    def is_locked(self) -> bool:
        """Check the lock by taking and immediately releasing it."""
        try:
            self.lock()
        except MigrationLockedError:
            return True
        self.unlock()
        return False

    # Running

    def _last_group_id(self) -> Optional[int]:
        with Session(self.engine) as session:
            return session.scalar(select(func.max(SchemaMigration.group_id)))

    def migrate(self) -> MigrationGroup:
        """Upgrade to the head revision, recording the applied migrations as one new group."""
        with self.locked():
            if not self.discover():
                return MigrationGroup()
            heads = self._scripts().get_heads()
            if len(heads) > 1:
                raise MigrationOrderError(
                    "migration history has more than one head: {}".format(", ".join(sorted(heads)))
                )

            group = MigrationGroup(id=(self._last_group_id() or 0) + 1)
            self._run_command(command.upgrade, "head", group)
            return group

    def rollback(self) -> MigrationGroup:
        """Downgrade past the most recently applied group, newest migration first."""
        with self.locked():
            last_group = self._last_group_id()
            if last_group is None:
                return MigrationGroup()
            names = {name for name, row in self._applied().items() if row.group_id == last_group}

            files = {m.name: m for m in self.discover()}
            missing = sorted(names - set(files))
            if missing:
                raise MigrationNotFoundError(
                    f"Migration files not found for applied migration: {', '.join(missing)}"
                )

            # The group is a contiguous stretch of the chain; step below its oldest member
            oldest = next(files[name] for name in names if files[name].down_revision not in names)
            current = self.current_revisions()
            if not set(current) <= names:
                raise MigrationError(
                    "database is at {} but the last group is {}".format(
                        ", ".join(current) or "base", ", ".join(sorted(names))
                    )
                )

            group = MigrationGroup(id=last_group)
            self._run_command(command.downgrade, oldest.down_revision or "base", group)
            return group
