"""
Alembic environment for webstarter migrations.

Migrator hands in the connection and the callback that records applied
revisions through ``config.attributes``; there is no alembic.ini.
"""

from alembic import context

config = context.config

if context.is_offline_mode():
    raise RuntimeError("webstarter migrations run against a live connection only")

context.configure(
    connection=config.attributes["connection"],
    transaction_per_migration=True,
    on_version_apply=config.attributes.get("on_version_apply"),
)

with context.begin_transaction():
    context.run_migrations()
