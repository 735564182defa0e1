"""
Tests for the webstarter-migrate command line
"""

from pathlib import Path

import pytest

from webstarter.migrate.cli import main
from webstarter.migrate.migrator import Migrator

pytestmark = [pytest.mark.unit, pytest.mark.database]


@pytest.fixture
def settings(test_settings):
    return test_settings


@pytest.fixture
def migrations_dir(settings) -> Path:
    path = Path(settings.MIGRATIONS_DIR)
    path.mkdir(parents=True, exist_ok=True)
    return path


@pytest.fixture
def run(settings):
    def _run(*argv):
        return main(list(argv), settings=settings)

    return _run


class TestUsage:

    def test_missing_command(self, run, capsys):
        assert run() == 1
        assert "usage:" in capsys.readouterr().err

    def test_unknown_command(self, run, capsys):
        assert run("sideways") == 1
        assert "Error:" in capsys.readouterr().err

    def test_create_requires_name(self, run, capsys):
        assert run("create") == 1
        assert "Error:" in capsys.readouterr().err


class TestUpDown:

    def test_up_then_down(self, run, migrations_dir, write_migration, capsys):
        write_migration("20240101000000_a")
        write_migration("20240102000000_b")

        assert run("up") == 0
        out = capsys.readouterr().out
        assert "Applied 2 migration(s):" in out
        assert "  ✓ 20240101000000_a" in out
        assert "  ✓ 20240102000000_b" in out

        assert run("down") == 0
        out = capsys.readouterr().out
        assert "Rolled back 2 migration(s):" in out
        assert out.index("↩ 20240102000000_b") < out.index("↩ 20240101000000_a")

    def test_up_with_nothing_pending(self, run, migrations_dir, capsys):
        assert run("up") == 0
        assert "No new migrations to apply" in capsys.readouterr().out

    def test_down_with_nothing_applied(self, run, migrations_dir, capsys):
        assert run("down") == 0
        assert "No migrations to rollback" in capsys.readouterr().out

    def test_failed_migration_exits_1(self, run, migrations_dir, write_migration, capsys):
        write_migration("20240101000000_broken", up="NOT VALID SQL;")

        assert run("up") == 1
        assert "Error: Migration failed:" in capsys.readouterr().err


class TestRedo:

    def test_redo_last_group(self, run, migrations_dir, write_migration, capsys):
        write_migration("20240101000000_a")
        run("up")
        capsys.readouterr()

        assert run("redo") == 0
        out = capsys.readouterr().out
        assert "Rolled back: 20240101000000_a" in out
        assert "Re-applied: 20240101000000_a" in out

    def test_redo_with_nothing_applied(self, run, migrations_dir, capsys):
        assert run("redo") == 0
        assert "No migrations to redo" in capsys.readouterr().out

    def test_redo_reports_failing_half(self, run, migrations_dir, write_migration, capsys):
        write_migration("20240101000000_a", down="NOT VALID SQL;")
        run("up")
        capsys.readouterr()

        assert run("redo") == 1
        assert "Error: Rollback failed:" in capsys.readouterr().err


class TestStatus:

    def test_status_lists_applied_and_pending(self, run, migrations_dir, write_migration, capsys):
        write_migration("20240101000000_a")
        run("up")
        write_migration("20240102000000_b")
        capsys.readouterr()

        assert run("status") == 0
        out = capsys.readouterr().out
        assert "  ● 20240101000000_a (applied " in out
        assert "  ○ 20240102000000_b (pending)" in out
        assert "Total: 1 applied, 1 pending" in out

    def test_status_without_migrations(self, run, migrations_dir, capsys):
        assert run("status") == 0
        assert "No migrations found" in capsys.readouterr().out


class TestCreateDelete:

    def test_create(self, run, migrations_dir, capsys):
        assert run("create", "add_users") == 0

        out = capsys.readouterr().out
        assert "Created migration files:" in out
        assert len(list(migrations_dir.glob("*_add_users.up.sql"))) == 1
        assert len(list(migrations_dir.glob("*_add_users.down.sql"))) == 1
        assert len(list(migrations_dir.glob("*_add_users.py"))) == 1
        assert out.count("  + ") == 3

    def test_create_bad_name(self, run, migrations_dir, capsys):
        assert run("create", "bad name") == 1
        assert "Failed to create migration" in capsys.readouterr().err

    def test_delete_pending(self, run, migrations_dir, write_migration, capsys):
        write_migration("20240101000000_a")

        assert run("delete", "20240101000000_a") == 0
        assert capsys.readouterr().out.count("Deleted ") == 3
        assert not any(p.is_file() for p in migrations_dir.iterdir())

    def test_delete_applied_refused(self, run, migrations_dir, write_migration, capsys):
        write_migration("20240101000000_a")
        run("up")

        assert run("delete", "20240101000000_a") == 1
        assert "Cannot delete applied migration" in capsys.readouterr().err
        assert (migrations_dir / "20240101000000_a.up.sql").exists()
        assert (migrations_dir / "20240101000000_a.py").exists()

    def test_delete_unknown(self, run, migrations_dir, capsys):
        assert run("delete", "20240101000000_nope") == 1
        assert "Migration not found" in capsys.readouterr().err


class TestLockCommands:

    def test_lock_available(self, run, migrations_dir, capsys):
        assert run("lock") == 0
        assert "Lock status: AVAILABLE" in capsys.readouterr().out

    def test_lock_held_then_unlocked(self, run, migrations_dir, engine, capsys):
        held = Migrator(engine, migrations_dir)
        held.init()
        held.lock()

        assert run("lock") == 0
        assert "Lock status: LOCKED" in capsys.readouterr().out

        assert run("up") == 1
        assert "locked" in capsys.readouterr().err

        assert run("unlock") == 0
        assert "Migration lock released" in capsys.readouterr().out
        assert not held.is_locked()


def test_unreachable_database_exits_1(make_settings, tmp_path, capsys):
    settings = make_settings(DATABASE_URL=f"sqlite:///{tmp_path / 'missing' / 'dir' / 'db.sqlite'}")

    assert main(["status"], settings=settings) == 1
    assert "Failed to connect to database" in capsys.readouterr().err
