import argparse
import logging
from datetime import datetime, timezone

from .db import SYSTEM_SCOPE, connect_db, describe_database, parse_database_config

logger = logging.getLogger(__name__)


REQUIRED_TABLES = {
    "users": {
        "columns": {"id", "email", "password_hash", "created_at"},
        "indexes": set(),
    },
    "household_groups": {
        "columns": {"id", "name", "created_at", "updated_at"},
        "indexes": set(),
    },
    "profiles": {
        "columns": {"id", "group_id", "user_id", "email", "name", "created_at"},
        "indexes": {"idx_profiles_group_id"},
    },
    "accounts": {
        "columns": {
            "id",
            "group_id",
            "name",
            "type",
            "balance",
            "owner_id",
            "balance_updated_at",
            "created_at",
            "updated_at",
        },
        "indexes": {"idx_accounts_group_id"},
    },
    "projects": {
        "columns": {
            "id",
            "group_id",
            "type",
            "name",
            "amount",
            "frequency",
            "payment_day",
            "payment_schedule",
            "certainty",
            "is_active",
            "date",
        },
        "indexes": {"idx_projects_group_id"},
    },
    "expenses": {
        "columns": {"id", "group_id", "type", "name", "amount", "due_day", "date", "is_active"},
        "indexes": {"idx_expenses_group_id"},
    },
    "credit_cards": {
        "columns": {
            "id",
            "group_id",
            "name",
            "statement_balance",
            "due_day",
            "owner_id",
            "balance_updated_at",
        },
        "indexes": {"idx_credit_cards_group_id"},
    },
    "future_statements": {
        "columns": {"id", "group_id", "credit_card_id", "target_month", "target_year", "amount"},
        "indexes": {"idx_future_statements_card_period"},
    },
    "projection_snapshots": {
        "columns": {"id", "group_id", "name", "schema_version", "data", "created_at"},
        "indexes": {"idx_projection_snapshots_group_created"},
    },
    "notifications": {
        "columns": {
            "id",
            "user_id",
            "type",
            "title",
            "body",
            "primary_action_label",
            "primary_action_href",
            "dedupe_key",
            "read_at",
            "email_sent_at",
            "created_at",
        },
        "indexes": {"idx_notifications_user_created"},
    },
    "onboarding_states": {
        "columns": {
            "id",
            "user_id",
            "group_id",
            "status",
            "current_step",
            "auto_shown_at",
            "dismissed_at",
            "completed_at",
            "metadata",
        },
        "indexes": set(),
    },
    "tour_states": {
        "columns": {"id", "user_id", "tour_key", "status", "version", "completed_at", "dismissed_at"},
        "indexes": set(),
    },
    "group_preferences": {
        "columns": {"id", "group_id", "key", "value"},
        "indexes": set(),
    },
    "user_preferences": {
        "columns": {"id", "user_id", "key", "value"},
        "indexes": set(),
    },
}

# Tables whose rows belong to exactly one group through a group_id column.
GROUP_SCOPED_TABLES = [
    "profiles",
    "accounts",
    "projects",
    "expenses",
    "credit_cards",
    "future_statements",
    "projection_snapshots",
    "onboarding_states",
    "group_preferences",
]


def backend_name(conn):
    return getattr(conn, "backend", "sqlite")


def table_exists(conn, name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM information_schema.tables WHERE table_schema = current_schema() AND table_name = ?",
            (name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='table' AND name = ?", (name,)).fetchone()
    return row is not None


def column_exists(conn, table, column):
    if not table_exists(conn, table):
        return False
    return column in get_table_columns(conn, table)


def index_exists(conn, index_name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM pg_indexes WHERE schemaname = current_schema() AND indexname = ?",
            (index_name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='index' AND name = ?", (index_name,)).fetchone()
    return row is not None


def add_column_if_missing(conn, table, col_def_sql):
    column = col_def_sql.split()[0]
    if backend_name(conn) == "postgres":
        conn.execute(f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {col_def_sql}")
    elif not column_exists(conn, table, column):
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {col_def_sql}")


def create_index_if_missing(conn, index_name, create_sql):
    if not index_exists(conn, index_name):
        conn.execute(create_sql)


def ensure_table(conn, create_sql):
    conn.execute(create_sql)


def get_table_columns(conn, table):
    if backend_name(conn) == "postgres":
        rows = conn.execute(
            "SELECT column_name FROM information_schema.columns WHERE table_schema = current_schema() AND table_name = ? ORDER BY ordinal_position",
            (table,),
        ).fetchall()
        return {row[0] for row in rows}

    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return {row[1] for row in rows}


def migration_001(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            email TEXT UNIQUE NOT NULL,
            password_hash TEXT,
            created_at TEXT NOT NULL
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS household_groups (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL CHECK(length(name) BETWEEN 1 AND 100),
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS profiles (
            id TEXT PRIMARY KEY,
            group_id TEXT NOT NULL,
            user_id TEXT UNIQUE,
            email TEXT UNIQUE NOT NULL,
            name TEXT NOT NULL,
            created_at TEXT NOT NULL,
            FOREIGN KEY (group_id) REFERENCES household_groups (id) ON DELETE CASCADE,
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE SET NULL
        )
        """,
    )


def migration_002(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS accounts (
            id TEXT PRIMARY KEY,
            group_id TEXT NOT NULL,
            name TEXT NOT NULL,
            type TEXT NOT NULL CHECK(type IN ('checking','savings','investment')),
            balance INTEGER NOT NULL DEFAULT 0 CHECK(balance >= 0),
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (group_id) REFERENCES household_groups (id) ON DELETE CASCADE
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS projects (
            id TEXT PRIMARY KEY,
            group_id TEXT NOT NULL,
            type TEXT NOT NULL DEFAULT 'recurring' CHECK(type IN ('recurring','single_shot')),
            name TEXT NOT NULL,
            amount INTEGER NOT NULL CHECK(amount > 0),
            frequency TEXT CHECK(frequency IN ('weekly','biweekly','twice-monthly','monthly')),
            payment_day INTEGER,
            payment_schedule TEXT,
            certainty TEXT NOT NULL CHECK(certainty IN ('guaranteed','probable','uncertain')),
            is_active INTEGER NOT NULL DEFAULT 1,
            date TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (group_id) REFERENCES household_groups (id) ON DELETE CASCADE
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS expenses (
            id TEXT PRIMARY KEY,
            group_id TEXT NOT NULL,
            type TEXT NOT NULL DEFAULT 'fixed' CHECK(type IN ('fixed','single_shot')),
            name TEXT NOT NULL,
            amount INTEGER NOT NULL CHECK(amount > 0),
            due_day INTEGER CHECK(due_day BETWEEN 1 AND 31),
            date TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (group_id) REFERENCES household_groups (id) ON DELETE CASCADE
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS credit_cards (
            id TEXT PRIMARY KEY,
            group_id TEXT NOT NULL,
            name TEXT NOT NULL,
            statement_balance INTEGER NOT NULL DEFAULT 0 CHECK(statement_balance >= 0),
            due_day INTEGER NOT NULL CHECK(due_day BETWEEN 1 AND 31),
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (group_id) REFERENCES household_groups (id) ON DELETE CASCADE
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS future_statements (
            id TEXT PRIMARY KEY,
            group_id TEXT NOT NULL,
            credit_card_id TEXT NOT NULL,
            target_month INTEGER NOT NULL CHECK(target_month BETWEEN 1 AND 12),
            target_year INTEGER NOT NULL CHECK(target_year >= 2020),
            amount INTEGER NOT NULL DEFAULT 0 CHECK(amount >= 0),
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(credit_card_id, target_month, target_year),
            FOREIGN KEY (group_id) REFERENCES household_groups (id) ON DELETE CASCADE,
            FOREIGN KEY (credit_card_id) REFERENCES credit_cards (id) ON DELETE CASCADE
        )
        """,
    )


def migration_003(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS projection_snapshots (
            id TEXT PRIMARY KEY,
            group_id TEXT NOT NULL,
            name TEXT NOT NULL CHECK(length(name) BETWEEN 1 AND 100),
            schema_version INTEGER NOT NULL DEFAULT 1,
            data TEXT NOT NULL,
            created_at TEXT NOT NULL,
            FOREIGN KEY (group_id) REFERENCES household_groups (id) ON DELETE CASCADE
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS notifications (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            type TEXT NOT NULL CHECK(type IN ('welcome')),
            title TEXT NOT NULL CHECK(length(title) BETWEEN 1 AND 120),
            body TEXT NOT NULL CHECK(length(body) BETWEEN 1 AND 2000),
            primary_action_label TEXT,
            primary_action_href TEXT,
            dedupe_key TEXT NOT NULL,
            read_at TEXT,
            email_sent_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(user_id, dedupe_key),
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
        )
        """,
    )


def migration_004(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS onboarding_states (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            group_id TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'in_progress' CHECK(status IN ('in_progress','dismissed','completed')),
            current_step TEXT NOT NULL DEFAULT 'profile',
            auto_shown_at TEXT,
            dismissed_at TEXT,
            completed_at TEXT,
            metadata TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(user_id, group_id),
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE,
            FOREIGN KEY (group_id) REFERENCES household_groups (id) ON DELETE CASCADE
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS tour_states (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            tour_key TEXT NOT NULL CHECK(tour_key IN ('dashboard','manage','history')),
            status TEXT NOT NULL CHECK(status IN ('completed','dismissed')),
            version INTEGER NOT NULL DEFAULT 1,
            completed_at TEXT,
            dismissed_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(user_id, tour_key),
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS group_preferences (
            id TEXT PRIMARY KEY,
            group_id TEXT NOT NULL,
            key TEXT NOT NULL,
            value TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(group_id, key),
            FOREIGN KEY (group_id) REFERENCES household_groups (id) ON DELETE CASCADE
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS user_preferences (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            key TEXT NOT NULL,
            value TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(user_id, key),
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
        )
        """,
    )


def migration_005(conn):
    # Owners and balance freshness were added after the first accounts release.
    for table in ("accounts", "credit_cards"):
        add_column_if_missing(conn, table, "owner_id TEXT REFERENCES profiles (id) ON DELETE SET NULL")
        add_column_if_missing(conn, table, "balance_updated_at TEXT")
        conn.execute(f"UPDATE {table} SET balance_updated_at = updated_at WHERE balance_updated_at IS NULL")


def migration_006(conn):
    for table in GROUP_SCOPED_TABLES:
        if table in ("future_statements", "projection_snapshots"):
            continue
        create_index_if_missing(
            conn,
            f"idx_{table}_group_id",
            f"CREATE INDEX idx_{table}_group_id ON {table}(group_id)",
        )
    create_index_if_missing(
        conn,
        "idx_future_statements_card_period",
        "CREATE INDEX idx_future_statements_card_period ON future_statements(credit_card_id, target_year, target_month)",
    )
    create_index_if_missing(
        conn,
        "idx_projection_snapshots_group_created",
        "CREATE INDEX idx_projection_snapshots_group_created ON projection_snapshots(group_id, created_at)",
    )
    create_index_if_missing(
        conn,
        "idx_notifications_user_created",
        "CREATE INDEX idx_notifications_user_created ON notifications(user_id, created_at)",
    )


def migration_007(conn):
    if backend_name(conn) != "postgres":
        return

    # Unset or empty scope matches nothing. SYSTEM_SCOPE is set explicitly for
    # provisioning, worker resets and migrations.
    scope = "COALESCE(current_setting('app.current_group_id', true), '')"
    targets = [(table, "group_id") for table in GROUP_SCOPED_TABLES] + [("household_groups", "id")]
    for table, column in targets:
        policy = f"{table}_group_isolation"
        condition = f"({scope} = '{SYSTEM_SCOPE}' OR {column} = {scope})"
        conn.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        # The app role owns these tables and owners skip RLS unless forced.
        conn.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")
        conn.execute(f"DROP POLICY IF EXISTS {policy} ON {table}")
        conn.execute(f"CREATE POLICY {policy} ON {table} USING {condition} WITH CHECK {condition}")


MIGRATIONS = [
    (1, migration_001),
    (2, migration_002),
    (3, migration_003),
    (4, migration_004),
    (5, migration_005),
    (6, migration_006),
    (7, migration_007),
]


def _ensure_schema_version_table(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )


def current_schema_version(conn):
    _ensure_schema_version_table(conn)
    row = conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
    return int(row[0] or 0)


def validate_required_schema(conn):
    health = inspect_db_health(conn)
    if health["missing_tables"] or any(health["missing_columns"].values()):
        raise RuntimeError(
            "Schema invariants failed after migrations. "
            f"Missing tables={health['missing_tables']}, missing columns={health['missing_columns']}"
        )


def _run_migrations(conn):
    _ensure_schema_version_table(conn)
    if backend_name(conn) == "postgres":
        conn.execute("SELECT set_config('app.current_group_id', ?, false)", (SYSTEM_SCOPE,))

    applied_versions = {
        row[0] for row in conn.execute("SELECT version FROM schema_version").fetchall()
    }

    for version, migration_fn in MIGRATIONS:
        if version in applied_versions:
            continue
        try:
            migration_fn(conn)
            conn.execute(
                "INSERT INTO schema_version(version, applied_at) VALUES (?, ?)",
                (version, datetime.now(timezone.utc).isoformat(timespec="seconds")),
            )
            conn.commit()
            logger.info("Applied schema migration %s", version)
        except Exception:
            conn.rollback()
            logger.exception("Schema migration %s failed", version)
            raise

    validate_required_schema(conn)


def apply_migrations(db_or_config_or_path):
    if hasattr(db_or_config_or_path, "execute"):
        _run_migrations(db_or_config_or_path)
        return

    config = db_or_config_or_path if isinstance(db_or_config_or_path, dict) else parse_database_config(db_or_config_or_path)
    conn = connect_db(config)
    try:
        _run_migrations(conn)
    finally:
        conn.close()


def inspect_db_health(conn):
    _ensure_schema_version_table(conn)
    missing_tables = []
    missing_columns = {}
    missing_indexes = []

    for table_name, table_spec in REQUIRED_TABLES.items():
        if not table_exists(conn, table_name):
            missing_tables.append(table_name)
            missing_columns[table_name] = sorted(table_spec["columns"])
            missing_indexes.extend(sorted(table_spec["indexes"]))
            continue

        table_cols = get_table_columns(conn, table_name)
        absent_cols = sorted(col for col in table_spec["columns"] if col not in table_cols)
        missing_columns[table_name] = absent_cols

        for idx in sorted(table_spec["indexes"]):
            if not index_exists(conn, idx):
                missing_indexes.append(idx)

    return {
        "ok": not missing_tables and not any(missing_columns.values()) and not missing_indexes,
        "schema_version": current_schema_version(conn),
        "missing_tables": missing_tables,
        "missing_columns": missing_columns,
        "missing_indexes": sorted(set(missing_indexes)),
    }


def get_db_health(db_config_or_path):
    config = db_config_or_path if isinstance(db_config_or_path, dict) else parse_database_config(db_config_or_path)
    conn = connect_db(config)
    try:
        return inspect_db_health(conn)
    finally:
        conn.close()


def main():
    parser = argparse.ArgumentParser(description="Check cashflow tracker DB schema health")
    parser.add_argument("db_path", help="Path to SQLite DB file")
    args = parser.parse_args()
    config = parse_database_config(args.db_path)
    print(describe_database(config), get_db_health(config))


if __name__ == "__main__":
    main()
