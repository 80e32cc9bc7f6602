#!/usr/bin/env python3
"""Copy Cashflow Tracker data from a SQLite file into Postgres.

Standalone so it can run inside a container without importing the app.
The Postgres schema must already exist (start the app or run
``flask --app cashflow_tracker init-db`` against it first).
"""

import os
import sqlite3
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path

import psycopg
from psycopg import sql

# Parents before children so foreign keys resolve.
TABLE_ORDER = [
    "users",
    "household_groups",
    "profiles",
    "accounts",
    "projects",
    "expenses",
    "credit_cards",
    "future_statements",
    "projection_snapshots",
    "notifications",
    "onboarding_states",
    "tour_states",
    "group_preferences",
    "user_preferences",
]

OPTIONAL_TABLES = {
    "projection_snapshots",
    "notifications",
    "onboarding_states",
    "tour_states",
    "group_preferences",
    "user_preferences",
}
VERIFICATION_SAMPLE_SIZE = 10


def resolve_sqlite_path():
    env_path = os.environ.get("SQLITE_PATH", "").strip()
    if env_path:
        return Path(env_path)

    docker_default = Path("/app/instance/cashflow_tracker.sqlite")
    if docker_default.exists():
        return docker_default

    return Path("instance/cashflow_tracker.sqlite")


def sqlite_table_exists(conn, table_name):
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name = ?",
        (table_name,),
    ).fetchone()
    return row is not None


def pg_table_exists(conn, table_name):
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT 1
            FROM information_schema.tables
            WHERE table_schema = current_schema() AND table_name = %s
            """,
            (table_name,),
        )
        return cur.fetchone() is not None


def sqlite_columns(conn, table_name):
    rows = conn.execute(f"PRAGMA table_info({table_name})").fetchall()
    return [row[1] for row in rows]


def pg_column_metadata(conn, table_name):
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT column_name, is_nullable, data_type
            FROM information_schema.columns
            WHERE table_schema = current_schema() AND table_name = %s
            ORDER BY ordinal_position
            """,
            (table_name,),
        )
        return [
            {"column_name": row[0], "is_nullable": row[1], "data_type": row[2]}
            for row in cur.fetchall()
        ]


def _is_empty(value):
    return value is None or (isinstance(value, str) and value.strip() == "")


def default_for(column_name, meta):
    """Fill value for a NOT NULL column the SQLite row left empty."""
    normalized = column_name.lower()
    data_type = (meta.get("data_type") or "").lower()

    if normalized.endswith("_at"):
        return datetime.now(timezone.utc).isoformat(timespec="microseconds")

    if normalized == "is_active":
        return 1

    if normalized in ("version", "schema_version"):
        return 1

    if data_type in {"smallint", "integer", "bigint", "numeric"}:
        return 0

    return None


def count_rows_sqlite(conn, table_name):
    return int(conn.execute(f"SELECT COUNT(*) FROM {table_name}").fetchone()[0])


def count_rows_pg(conn, table_name):
    with conn.cursor() as cur:
        cur.execute(sql.SQL("SELECT COUNT(*) FROM {} ").format(sql.Identifier(table_name)))
        return int(cur.fetchone()[0])


def validate_target_schema(pg_conn):
    missing_required = [
        table_name
        for table_name in TABLE_ORDER
        if table_name not in OPTIONAL_TABLES and not pg_table_exists(pg_conn, table_name)
    ]
    if missing_required:
        missing = ", ".join(missing_required)
        raise SystemExit(
            "Postgres schema is missing required tables: "
            f"{missing}. Start the app once to run migrations, then rerun this script."
        )


def copy_table(sqlite_conn, pg_conn, table_name):
    for exists, side in (
        (sqlite_table_exists(sqlite_conn, table_name), "SQLite"),
        (pg_table_exists(pg_conn, table_name), "Postgres"),
    ):
        if exists:
            continue
        if table_name in OPTIONAL_TABLES:
            return {"source_rows": 0, "copied_rows": 0, "status": f"skipped (missing in {side}; optional)"}
        raise RuntimeError(f"Required table is missing in {side}: {table_name}")

    src_cols = sqlite_columns(sqlite_conn, table_name)
    dst_meta = {col["column_name"]: col for col in pg_column_metadata(pg_conn, table_name)}
    common_cols = [col for col in src_cols if col in dst_meta]
    if not common_cols:
        raise RuntimeError(f"No common columns found for table '{table_name}'")

    not_null_cols = [col for col, meta in dst_meta.items() if meta["is_nullable"] == "NO"]
    insert_cols = common_cols + [col for col in not_null_cols if col not in common_cols]

    source_rows = sqlite_conn.execute(f"SELECT {', '.join(common_cols)} FROM {table_name}").fetchall()
    rows = []
    filled_counts = Counter()
    for source_row in source_rows:
        row_map = dict(source_row)
        row_values = []
        for col in insert_cols:
            val = row_map.get(col)
            if col in not_null_cols and _is_empty(val):
                val = default_for(col, dst_meta[col])
                if _is_empty(val):
                    raise RuntimeError(
                        f"Cannot determine a value for NOT NULL column '{col}' in table '{table_name}'."
                    )
                filled_counts[col] += 1
            row_values.append(val)
        rows.append(tuple(row_values))

    if not rows:
        return {"source_rows": 0, "copied_rows": 0, "status": "copied"}

    insert_sql = sql.SQL(
        "INSERT INTO {table} ({columns}) VALUES ({values}) ON CONFLICT DO NOTHING"
    ).format(
        table=sql.Identifier(table_name),
        columns=sql.SQL(", ").join(sql.Identifier(col) for col in insert_cols),
        values=sql.SQL(", ").join(sql.Placeholder() for _ in insert_cols),
    )
    with pg_conn.cursor() as cur:
        cur.executemany(insert_sql, rows)

    if filled_counts:
        columns = ", ".join(sorted(filled_counts))
        print(f"{table_name}: filled {sum(filled_counts.values())} missing values in columns: {columns}")

    return {"source_rows": len(rows), "copied_rows": len(rows), "status": "copied"}


def verify_counts(sqlite_conn, pg_conn, table_names):
    mismatches = []
    for table_name in table_names:
        if not sqlite_table_exists(sqlite_conn, table_name) or not pg_table_exists(pg_conn, table_name):
            continue
        src_count = count_rows_sqlite(sqlite_conn, table_name)
        dst_count = count_rows_pg(pg_conn, table_name)
        if src_count != dst_count:
            mismatches.append((table_name, src_count, dst_count))
    return mismatches


def print_sample_emails(pg_conn):
    with pg_conn.cursor() as cur:
        cur.execute("SELECT email FROM users ORDER BY created_at LIMIT %s", (VERIFICATION_SAMPLE_SIZE,))
        rows = cur.fetchall()
    print(f"Sample user emails: {[row[0] for row in rows]}")


def main():
    sqlite_path = resolve_sqlite_path()
    if not sqlite_path.exists():
        raise SystemExit(
            f"SQLite database not found at {sqlite_path}. Set SQLITE_PATH to the correct source file."
        )

    database_url = os.environ.get("DATABASE_URL", "").strip()
    if not database_url:
        raise SystemExit("DATABASE_URL is required and must point to Postgres")
    if not database_url.startswith(("postgres://", "postgresql://")):
        raise SystemExit("DATABASE_URL must start with postgres:// or postgresql://")

    print(f"Using SQLite source: {sqlite_path}")
    print("Validating Postgres schema...")

    sqlite_conn = sqlite3.connect(str(sqlite_path))
    sqlite_conn.row_factory = sqlite3.Row

    with psycopg.connect(database_url) as pg_conn:
        validate_target_schema(pg_conn)
        # "*" is the all-groups scope the row-level security policies accept.
        pg_conn.execute("SELECT set_config('app.current_group_id', '*', false)")

        summary = {table_name: copy_table(sqlite_conn, pg_conn, table_name) for table_name in TABLE_ORDER}
        mismatches = verify_counts(sqlite_conn, pg_conn, TABLE_ORDER)

        print("\nMigration summary:")
        for table_name, row in summary.items():
            print(f"- {table_name}: source={row['source_rows']} copied={row['copied_rows']} status={row['status']}")

        if mismatches:
            print("\nCount verification found differences (often expected when Postgres already has data):")
            for table_name, src_count, dst_count in mismatches:
                print(f"- {table_name}: sqlite={src_count}, postgres={dst_count}")
        else:
            print("\nCount verification passed for migrated tables.")

        print_sample_emails(pg_conn)

    sqlite_conn.close()


if __name__ == "__main__":
    main()
