"""Test data seeding with per-worker isolation.

Parallel test workers share one database. Each worker prefixes the names of
the rows it creates with ``[W<n>] `` so it can reset its own data without
touching rows that belong to the other workers.
"""

import json
import logging
import re

from werkzeug.security import generate_password_hash

from .db import new_id, utc_now_text
from .groups import normalize_email, provision_user

logger = logging.getLogger(__name__)

MAX_WORKERS = 8
ALL_WORKERS_PATTERN = "[W%]%"
WORKER_PREFIX_RE = re.compile(r"^\[W\d+\] ")
DEFAULT_TEST_PASSWORD = "test-password-123"

# Children before parents so foreign keys never block a delete.
RESET_TABLES = ["credit_cards", "expenses", "projects", "accounts"]


def normalize_worker_index(worker_index):
    return worker_index % MAX_WORKERS


def worker_prefix(worker_index):
    return f"[W{normalize_worker_index(worker_index)}] "


def add_worker_prefix(name, worker_index):
    return f"{worker_prefix(worker_index)}{name}"


def strip_worker_prefix(name):
    return WORKER_PREFIX_RE.sub("", name)


def worker_prefix_pattern(worker_index):
    return f"[W{normalize_worker_index(worker_index)}]%"


def _project_slug(project_name):
    slug = re.sub(r"[^a-z0-9]+", "-", (project_name or "default").lower()).strip("-")
    return slug or "default"


def worker_context(worker_index, project_name=None):
    index = normalize_worker_index(worker_index)
    project = _project_slug(project_name)
    return {
        "worker_index": index,
        "email": f"e2e-test-{project}-worker-{index}@example.com",
        "data_prefix": worker_prefix(index),
        "group_name": f"Test {project} Worker {index}",
    }


def _prefixed(name, worker_index):
    return add_worker_prefix(name, worker_index) if worker_index is not None else name


def ensure_test_user(db, email, password=DEFAULT_TEST_PASSWORD, group_name=None):
    """Create the login for a test worker if needed and return ``(user_id, group_id)``."""
    email = normalize_email(email)
    user = db.execute("SELECT id, email FROM users WHERE email = ?", (email,)).fetchone()
    if user is None:
        user_id = new_id()
        db.execute(
            "INSERT INTO users (id, email, password_hash, created_at) VALUES (?, ?, ?, ?)",
            (user_id, email, generate_password_hash(password), utc_now_text()),
        )
        db.commit()
        user = {"id": user_id, "email": email}

    group_id, created = provision_user(db, user)
    if created and group_name:
        with db.system_scope():
            db.execute(
                "UPDATE household_groups SET name = ?, updated_at = ? WHERE id = ?",
                (group_name, utc_now_text(), group_id),
            )
            db.commit()
    return user["id"], group_id


def seed_accounts(db, group_id, accounts, worker_index=None):
    seeded = []
    for account in accounts:
        now = utc_now_text()
        record = {
            "id": new_id(),
            "name": _prefixed(account["name"], worker_index),
            "type": account.get("type", "checking"),
            "balance": account.get("balance", 0),
            "owner_id": account.get("owner_id"),
            "balance_updated_at": account.get("balance_updated_at", now),
        }
        db.execute(
            """
            INSERT INTO accounts (id, group_id, name, type, balance, owner_id, balance_updated_at, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record["id"],
                group_id,
                record["name"],
                record["type"],
                record["balance"],
                record["owner_id"],
                record["balance_updated_at"],
                now,
                now,
            ),
        )
        seeded.append(record)
    return seeded


def seed_expenses(db, group_id, expenses, worker_index=None):
    seeded = []
    for expense in expenses:
        now = utc_now_text()
        single_shot = "date" in expense
        record = {
            "id": new_id(),
            "type": "single_shot" if single_shot else "fixed",
            "name": _prefixed(expense["name"], worker_index),
            "amount": expense["amount"],
            "due_day": None if single_shot else expense.get("due_day", 1),
            "date": expense.get("date"),
            "is_active": expense.get("is_active", True),
        }
        db.execute(
            """
            INSERT INTO expenses (id, group_id, type, name, amount, due_day, date, is_active, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record["id"],
                group_id,
                record["type"],
                record["name"],
                record["amount"],
                record["due_day"],
                record["date"],
                int(record["is_active"]),
                now,
                now,
            ),
        )
        seeded.append(record)
    return seeded


def seed_projects(db, group_id, projects, worker_index=None):
    seeded = []
    for project in projects:
        now = utc_now_text()
        single_shot = "date" in project
        schedule = project.get("payment_schedule")
        if not single_shot and schedule is None and project.get("payment_day") is None:
            schedule = {"type": "dayOfMonth", "dayOfMonth": 1}
        record = {
            "id": new_id(),
            "type": "single_shot" if single_shot else "recurring",
            "name": _prefixed(project["name"], worker_index),
            "amount": project["amount"],
            "frequency": None if single_shot else project.get("frequency", "monthly"),
            "payment_day": project.get("payment_day"),
            "payment_schedule": None if single_shot else schedule,
            "certainty": project.get("certainty", "guaranteed"),
            "is_active": project.get("is_active", True),
            "date": project.get("date"),
        }
        db.execute(
            """
            INSERT INTO projects (
                id, group_id, type, name, amount, frequency, payment_day, payment_schedule,
                certainty, is_active, date, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record["id"],
                group_id,
                record["type"],
                record["name"],
                record["amount"],
                record["frequency"],
                record["payment_day"],
                json.dumps(record["payment_schedule"]) if record["payment_schedule"] else None,
                record["certainty"],
                int(record["is_active"]),
                record["date"],
                now,
                now,
            ),
        )
        seeded.append(record)
    return seeded


def seed_credit_cards(db, group_id, cards, worker_index=None):
    seeded = []
    for card in cards:
        now = utc_now_text()
        record = {
            "id": new_id(),
            "name": _prefixed(card["name"], worker_index),
            "statement_balance": card.get("statement_balance", 0),
            "due_day": card.get("due_day", 10),
            "owner_id": card.get("owner_id"),
            "balance_updated_at": card.get("balance_updated_at", now),
        }
        db.execute(
            """
            INSERT INTO credit_cards (id, group_id, name, statement_balance, due_day, owner_id, balance_updated_at, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record["id"],
                group_id,
                record["name"],
                record["statement_balance"],
                record["due_day"],
                record["owner_id"],
                record["balance_updated_at"],
                now,
                now,
            ),
        )
        seeded.append(record)
    return seeded


def seed_full_scenario(db, group_id, data, worker_index=None):
    with db.system_scope():
        seeded = {
            "accounts": seed_accounts(db, group_id, data.get("accounts", []), worker_index),
            "expenses": seed_expenses(db, group_id, data.get("expenses", []), worker_index),
            "projects": seed_projects(db, group_id, data.get("projects", []), worker_index),
            "credit_cards": seed_credit_cards(db, group_id, data.get("credit_cards", []), worker_index),
        }
        db.commit()
    return seeded


def reset_worker_data(db, worker_index=None):
    """Delete seeded rows for one worker, or for every worker when no index is given."""
    pattern = worker_prefix_pattern(worker_index) if worker_index is not None else ALL_WORKERS_PATTERN
    deleted = {}
    with db.system_scope():
        for table in RESET_TABLES:
            deleted[table] = db.execute(f"DELETE FROM {table} WHERE name LIKE ?", (pattern,)).rowcount
        deleted["profiles"] = db.execute(
            "DELETE FROM profiles WHERE name LIKE ? AND user_id IS NULL", (pattern,)
        ).rowcount
        db.commit()
    logger.info("Reset seeded data matching %s: %s", pattern, deleted)
    return deleted


def entity_exists(db, table, name):
    if table not in RESET_TABLES:
        raise ValueError(f"Unsupported table: {table}")
    with db.system_scope():
        return db.execute(f"SELECT 1 FROM {table} WHERE name = ?", (name,)).fetchone() is not None
