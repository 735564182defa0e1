from datetime import datetime

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from webstarter.db.base import Base


class SchemaMigration(Base):
    """One row per applied SQL migration."""

    __tablename__ = "schema_migrations"

    # Base provides: id
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    group_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    migrated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<SchemaMigration(name={self.name!r}, group_id={self.group_id})>"


class SchemaMigrationLock(Base):
    """Advisory lock row; its unique table_name serializes migration runs."""

    __tablename__ = "schema_migration_locks"

    table_name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<SchemaMigrationLock(table_name={self.table_name!r})>"
