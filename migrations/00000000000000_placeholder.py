"""placeholder

Revision ID: 00000000000000_placeholder
Revises:
Create Date: 2024-01-01 00:00:00

The schema change lives in the .up.sql / .down.sql files next to this one.
"""

from webstarter.migrate.sql import run_sql_pair

# revision identifiers, used by Alembic.
revision = "00000000000000_placeholder"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    run_sql_pair(__file__, "up")


def downgrade() -> None:
    run_sql_pair(__file__, "down")
