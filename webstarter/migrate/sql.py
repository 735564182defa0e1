"""
Running ``.up.sql`` / ``.down.sql`` files from Alembic revision scripts.

Every revision module in the migrations directory delegates to
``run_sql_pair(__file__, "up")`` and ``run_sql_pair(__file__, "down")``, so the
schema change itself lives in plain SQL next to the revision.
"""

import logging
from pathlib import Path
from typing import List

import sqlparse
from alembic import op

logger = logging.getLogger(__name__)

UP = "up"
DOWN = "down"


def sql_path(revision_file, direction: str) -> Path:
    """``20240101120000_users.py`` -> ``20240101120000_users.<direction>.sql``"""
    revision_file = Path(revision_file)
    return revision_file.with_name(f"{revision_file.stem}.{direction}.sql")


def split_sql_statements(sql: str) -> List[str]:
    """
    Split a SQL script into its statements.

    Quotes, comments and PostgreSQL dollar-quoted bodies are handled by
    sqlparse. Pieces that hold nothing but comments are dropped.
    """
    statements = []
    for statement in sqlparse.split(sql, strip_semicolon=True):
        if sqlparse.format(statement, strip_comments=True).strip(" \t\r\n;"):
            statements.append(statement)
    return statements


def run_sql_pair(revision_file, direction: str) -> None:
    """
    Execute the SQL file for ``direction`` on the migration connection.

    A missing ``.down.sql`` makes the rollback a no-op; a missing ``.up.sql``
    is an error.
    """
    path = sql_path(revision_file, direction)
    if not path.exists():
        if direction == DOWN:
            logger.warning("no rollback file, nothing to undo", extra={"migration": path.name})
            return
        raise FileNotFoundError(f"Migration file not found: {path}")

    bind = op.get_bind()
    for statement in split_sql_statements(path.read_text(encoding="utf-8")):
        # Driver-level execution: colons and percent signs are not bind markers
        bind.exec_driver_sql(statement)
