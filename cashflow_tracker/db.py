"""Database plumbing shared by the app, the migrations and the scripts.

Wraps SQLite and Postgres connections behind one sqlite-flavoured interface
that also carries the Postgres row-level security scope. The UUID text ids
and ISO timestamps every table uses are generated here too.
"""

import os
import re
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import urlparse

import psycopg
from psycopg.rows import tuple_row


INTEGRITY_ERRORS = (sqlite3.IntegrityError, psycopg.IntegrityError)
DATABASE_ERRORS = (sqlite3.Error, psycopg.Error)

# Scope value the row-level security policies treat as "every group".
SYSTEM_SCOPE = "*"


class CompatRow:
    def __init__(self, columns, values):
        self._columns = tuple(columns)
        self._values = tuple(values)
        self._lookup = {name: idx for idx, name in enumerate(self._columns)}

    def __getitem__(self, key):
        if isinstance(key, str):
            return self._values[self._lookup[key]]
        return self._values[key]

    def __iter__(self):
        return iter(self._values)

    def __len__(self):
        return len(self._values)

    def keys(self):
        return list(self._columns)


class CompatCursor:
    def __init__(self, cursor):
        self._cursor = cursor

    @property
    def rowcount(self):
        return getattr(self._cursor, "rowcount", -1)

    @property
    def description(self):
        return self._cursor.description

    def fetchone(self):
        row = self._cursor.fetchone()
        return self._adapt_row(row)

    def fetchall(self):
        return [self._adapt_row(row) for row in self._cursor.fetchall()]

    def _adapt_row(self, row):
        if row is None:
            return None
        if isinstance(row, sqlite3.Row):
            return row
        columns = [col.name if hasattr(col, "name") else col[0] for col in (self.description or [])]
        return CompatRow(columns, row)


class CompatConnection:
    """Connection wrapper that lets the app write sqlite-flavoured SQL for both backends."""

    def __init__(self, conn, backend):
        self._conn = conn
        self.backend = backend
        self.group_scope = None

    def execute(self, sql, params=None):
        rewritten_sql, rewritten_params = rewrite_sql(self.backend, sql, params)
        cur = self._conn.execute(rewritten_sql, rewritten_params or ())
        return CompatCursor(cur)

    def set_group_scope(self, group_id):
        # Read by the row-level security policies installed on Postgres.
        self.group_scope = group_id
        self._apply_group_scope()

    def _apply_group_scope(self):
        if self.backend == "postgres":
            self._conn.execute(
                "SELECT set_config('app.current_group_id', %s, false)",
                (self.group_scope or "",),
            )

    @contextmanager
    def system_scope(self):
        """Lift the group scope for lookups that must cross groups."""
        previous = self.group_scope
        self.set_group_scope(SYSTEM_SCOPE)
        try:
            yield self
        finally:
            self.set_group_scope(previous)

    def close(self):
        self._conn.close()

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()
        # set_config is transactional, so a rollback can undo the scope.
        if self.group_scope is not None:
            self._apply_group_scope()

    def __enter__(self):
        self._conn.__enter__()
        return self

    def __exit__(self, exc_type, exc, tb):
        return self._conn.__exit__(exc_type, exc, tb)


def new_id():
    return str(uuid.uuid4())


def utc_now_text():
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def row_to_dict(row):
    if row is None:
        return None
    return {key: row[key] for key in row.keys()}


def is_postgres_url(value):
    return bool(value) and (value.startswith("postgresql://") or value.startswith("postgres://"))


def _convert_qmark_placeholders(sql):
    pieces = sql.split("?")
    if len(pieces) == 1:
        return sql
    return "%s".join(pieces)


def rewrite_sql(backend, sql, params):
    rewritten_sql = sql
    rewritten_params = params

    if backend == "postgres":
        pragma_match = re.match(r"\s*PRAGMA\s+table_info\(([^)]+)\)", rewritten_sql, re.IGNORECASE)
        if pragma_match:
            table_name = pragma_match.group(1).strip().strip("'\"")
            rewritten_sql = (
                "SELECT column_name AS name "
                "FROM information_schema.columns "
                "WHERE table_schema = current_schema() AND table_name = %s "
                "ORDER BY ordinal_position"
            )
            rewritten_params = (table_name,)
        elif "?" in rewritten_sql:
            rewritten_sql = _convert_qmark_placeholders(rewritten_sql)

        if rewritten_params is None:
            rewritten_params = ()
        elif not isinstance(rewritten_params, (tuple, list, dict)):
            rewritten_params = (rewritten_params,)

    return rewritten_sql, rewritten_params


def parse_database_config(database_path=None, database_url=None):
    db_url = (database_url or os.environ.get("DATABASE_URL", "")).strip()
    if is_postgres_url(db_url):
        parsed = urlparse(db_url)
        db_name = parsed.path.lstrip("/") or "postgres"
        return {
            "backend": "postgres",
            "database_url": db_url,
            "database_name": db_name,
            "database_path": database_path,
        }

    return {
        "backend": "sqlite",
        "database_url": None,
        "database_name": Path(database_path).name if database_path else "sqlite",
        "database_path": database_path,
    }


def describe_database(config):
    """Human readable location of a database, without credentials."""
    if config["backend"] == "postgres":
        parsed = urlparse(config["database_url"])
        return f"postgres://{parsed.hostname or 'localhost'}/{config['database_name']}"
    return config["database_path"] or "sqlite"


def connect_db(config):
    backend = config["backend"]
    if backend == "postgres":
        conn = psycopg.connect(config["database_url"], row_factory=tuple_row)
        return CompatConnection(conn, backend="postgres")

    db_path = config["database_path"]
    if db_path:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 5000")
    return CompatConnection(conn, backend="sqlite")
