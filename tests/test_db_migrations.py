import sqlite3

import pytest

from cashflow_tracker import db_migrations
from cashflow_tracker.db import SYSTEM_SCOPE, CompatConnection
from cashflow_tracker.db_migrations import (
    GROUP_SCOPED_TABLES,
    apply_migrations,
    get_db_health,
    migration_001,
    migration_002,
    migration_003,
    migration_004,
    migration_007,
)


class _RecordingPostgresConnection:
    def __init__(self):
        self.backend = "postgres"
        self.statements = []
        self.calls = []

    def execute(self, sql, params=None):
        self.statements.append(" ".join(sql.split()))
        self.calls.append((sql, params))
        return None

    def rollback(self):
        pass


class _ForbiddenConnection:
    backend = "sqlite"

    def execute(self, sql, params=None):
        raise AssertionError(f"Unexpected SQL: {sql}")


def test_apply_migrations_on_empty_db(tmp_path):
    db_path = tmp_path / "empty.sqlite"

    apply_migrations(str(db_path))
    health = get_db_health(str(db_path))

    assert health["ok"] is True
    assert health["schema_version"] == 7
    assert health["missing_tables"] == []
    assert health["missing_indexes"] == []


def test_apply_migrations_is_idempotent(tmp_path):
    db_path = tmp_path / "twice.sqlite"

    apply_migrations(str(db_path))
    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    versions = [row[0] for row in conn.execute("SELECT version FROM schema_version ORDER BY version").fetchall()]
    conn.close()
    assert versions == [1, 2, 3, 4, 5, 6, 7]


def test_health_reports_missing_schema(tmp_path):
    health = get_db_health(str(tmp_path / "blank.sqlite"))

    assert health["ok"] is False
    assert health["schema_version"] == 0
    assert "accounts" in health["missing_tables"]
    assert "idx_accounts_group_id" in health["missing_indexes"]


def test_migration_005_backfills_balance_timestamps(tmp_path):
    db_path = tmp_path / "legacy.sqlite"
    conn = sqlite3.connect(db_path)
    for migration in (migration_001, migration_002, migration_003, migration_004):
        migration(conn)
    conn.executescript(
        """
        CREATE TABLE schema_version (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL);
        INSERT INTO schema_version VALUES (1, '2025-01-01'), (2, '2025-01-01'), (3, '2025-01-01'), (4, '2025-01-01');
        INSERT INTO household_groups (id, name, created_at, updated_at)
        VALUES ('g-1', 'Home', '2025-01-01T00:00:00+00:00', '2025-01-01T00:00:00+00:00');
        INSERT INTO accounts (id, group_id, name, type, balance, created_at, updated_at)
        VALUES ('a-1', 'g-1', 'Checking', 'checking', 1000, '2025-01-01T00:00:00+00:00', '2025-02-01T00:00:00+00:00');
        """
    )
    conn.commit()
    conn.close()

    apply_migrations(str(db_path))
    assert get_db_health(str(db_path))["ok"] is True

    conn = sqlite3.connect(db_path)
    row = conn.execute("SELECT owner_id, balance_updated_at FROM accounts WHERE id = 'a-1'").fetchone()
    conn.close()
    assert row == (None, "2025-02-01T00:00:00+00:00")


def test_migration_007_installs_group_isolation_policies_on_postgres():
    conn = _RecordingPostgresConnection()

    migration_007(conn)

    for table in [*GROUP_SCOPED_TABLES, "household_groups"]:
        assert f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY" in conn.statements
        assert f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY" in conn.statements
        assert f"DROP POLICY IF EXISTS {table}_group_isolation ON {table}" in conn.statements
    policies = [sql for sql in conn.statements if sql.startswith("CREATE POLICY")]
    assert len(policies) == len(GROUP_SCOPED_TABLES) + 1
    assert "current_setting('app.current_group_id', true)" in policies[0]
    assert all("= '*' OR" in sql for sql in policies)
    assert not any("= '' OR" in sql for sql in policies)


def test_group_scope_is_restored_after_system_scope():
    raw = _RecordingPostgresConnection()
    conn = CompatConnection(raw, backend="postgres")

    conn.set_group_scope("g-1")
    with conn.system_scope():
        assert conn.group_scope == SYSTEM_SCOPE
    assert conn.group_scope == "g-1"

    scopes = [params[0] for sql, params in raw.calls if "set_config" in sql]
    assert scopes == ["g-1", "*", "g-1"]

    conn.rollback()
    assert raw.calls[-1][1] == ("g-1",)


def test_migration_007_is_noop_on_sqlite():
    migration_007(_ForbiddenConnection())


def test_failed_migration_is_not_recorded(tmp_path, monkeypatch):
    db_path = tmp_path / "broken.sqlite"

    def broken_migration(conn):
        conn.execute("CREATE TABLE half_done (id TEXT)")
        raise RuntimeError("boom")

    monkeypatch.setattr(db_migrations, "MIGRATIONS", [(1, migration_001), (2, broken_migration)])

    with pytest.raises(RuntimeError):
        apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    versions = [row[0] for row in conn.execute("SELECT version FROM schema_version").fetchall()]
    conn.close()
    assert versions == [1]


def test_apply_migrations_does_not_close_passed_connection(tmp_path):
    db_path = tmp_path / "connection.sqlite"
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row

    apply_migrations(conn)

    row = conn.execute("SELECT 1").fetchone()
    assert row[0] == 1
    conn.close()


def test_required_indexes_exist(tmp_path):
    db_path = tmp_path / "indexes.sqlite"
    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    indexes = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='index'").fetchall()}
    conn.close()
    assert {
        "idx_accounts_group_id",
        "idx_future_statements_card_period",
        "idx_projection_snapshots_group_created",
        "idx_notifications_user_created",
    } <= indexes
