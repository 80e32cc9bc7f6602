import sqlite3

import pytest

from cashflow_tracker.db import connect_db, parse_database_config
from cashflow_tracker.db_migrations import apply_migrations
from cashflow_tracker.groups import (
    MAX_PROVISION_ATTEMPTS,
    ProvisioningError,
    display_name_from_email,
    get_group,
    provision_user,
)


NOW = "2026-03-10T15:00:00.000000+00:00"


class _ConflictingProfileInserts:
    """Wraps a connection so profile inserts fail with a uniqueness conflict."""

    def __init__(self, conn, failures=None):
        self._conn = conn
        self.failures = failures
        self.attempts = 0

    def execute(self, sql, params=None):
        if sql.lstrip().startswith("INSERT INTO profiles"):
            self.attempts += 1
            if self.failures is None or self.attempts <= self.failures:
                raise sqlite3.IntegrityError("UNIQUE constraint failed: profiles.user_id")
        return self._conn.execute(sql, params)

    def __getattr__(self, name):
        return getattr(self._conn, name)


@pytest.fixture()
def db(tmp_path):
    config = parse_database_config(str(tmp_path / "groups.sqlite"), None)
    apply_migrations(config)
    conn = connect_db(config)
    yield conn
    conn.close()


def add_user(db, user_id="user-1", email="ana.souza@example.com"):
    db.execute(
        "INSERT INTO users (id, email, password_hash, created_at) VALUES (?, ?, ?, ?)",
        (user_id, email, "hash", NOW),
    )
    db.commit()
    return {"id": user_id, "email": email}


def count(db, table):
    return db.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


def test_display_name_from_email():
    assert display_name_from_email("ana.souza@example.com") == "Ana Souza"
    assert display_name_from_email("joao_da-silva@example.com") == "Joao Da Silva"
    assert display_name_from_email("...@example.com") == "User"


def test_provision_creates_group_once(db):
    user = add_user(db)

    assert provision_user(db, user, now=NOW) == ("user-1", True)
    assert provision_user(db, user, now=NOW) == ("user-1", False)

    group = get_group(db, "user-1")
    assert group["created_at"] == NOW
    assert [member["name"] for member in group["members"]] == ["Ana Souza"]
    assert count(db, "notifications") == 1


def test_provision_reuses_orphaned_group(db):
    user = add_user(db)
    db.execute(
        "INSERT INTO household_groups (id, name, created_at, updated_at) VALUES (?, ?, ?, ?)",
        ("user-1", "Left behind", NOW, NOW),
    )
    db.commit()

    group_id, created = provision_user(db, user, now=NOW)

    assert (group_id, created) == ("user-1", True)
    assert count(db, "household_groups") == 1
    assert get_group(db, group_id)["name"] == "Left behind"
    assert len(get_group(db, group_id)["members"]) == 1


def test_provision_retries_after_a_conflict(db):
    user = add_user(db)
    conflicting = _ConflictingProfileInserts(db, failures=1)

    assert provision_user(conflicting, user, now=NOW) == ("user-1", True)
    assert conflicting.attempts == 2
    assert count(db, "household_groups") == 1


def test_provision_gives_up_after_max_attempts(db):
    user = add_user(db)
    conflicting = _ConflictingProfileInserts(db)

    with pytest.raises(ProvisioningError):
        provision_user(conflicting, user, now=NOW)

    assert conflicting.attempts == MAX_PROVISION_ATTEMPTS
    assert count(db, "household_groups") == 0
    assert count(db, "profiles") == 0
