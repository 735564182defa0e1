from webstarter.db.models.migration import SchemaMigration, SchemaMigrationLock

__all__ = ["SchemaMigration", "SchemaMigrationLock"]
