import json
import logging

from .cashflow import to_date, to_jsonable
from .db import new_id, row_to_dict, utc_now_text

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 1
LAST_PROGRESSION_CHECK_KEY = "last_progression_check"
PROJECTION_DAYS_KEY = "projection_days"


def is_schema_version_compatible(version):
    return 1 <= version <= CURRENT_SCHEMA_VERSION


def serialize_account(row):
    account = row_to_dict(row)
    return {
        "id": account["id"],
        "name": account["name"],
        "type": account["type"],
        "balance": account["balance"],
        "owner_id": account["owner_id"],
        "balance_updated_at": account["balance_updated_at"],
        "created_at": account["created_at"],
        "updated_at": account["updated_at"],
    }


def serialize_project(row):
    project = row_to_dict(row)
    project["is_active"] = bool(project["is_active"])
    project["payment_schedule"] = json.loads(project["payment_schedule"]) if project["payment_schedule"] else None
    project.pop("group_id", None)
    if project["type"] == "single_shot":
        for key in ("frequency", "payment_day", "payment_schedule", "is_active"):
            project.pop(key, None)
    else:
        project.pop("date", None)
    return project


def serialize_expense(row):
    expense = row_to_dict(row)
    expense.pop("group_id", None)
    if expense["type"] == "single_shot":
        expense.pop("due_day", None)
        expense.pop("is_active", None)
    else:
        expense.pop("date", None)
        expense["is_active"] = bool(expense["is_active"])
    return expense


def serialize_credit_card(row):
    card = row_to_dict(row)
    card.pop("group_id", None)
    return card


def serialize_future_statement(row):
    statement = row_to_dict(row)
    statement.pop("group_id", None)
    return statement


def load_finance_inputs(db, group_id):
    """Everything the projection engine needs for one group."""
    accounts = db.execute(
        "SELECT * FROM accounts WHERE group_id = ? ORDER BY created_at ASC", (group_id,)
    ).fetchall()
    projects = db.execute(
        "SELECT * FROM projects WHERE group_id = ? ORDER BY created_at ASC", (group_id,)
    ).fetchall()
    expenses = db.execute(
        "SELECT * FROM expenses WHERE group_id = ? ORDER BY created_at ASC", (group_id,)
    ).fetchall()
    cards = db.execute(
        "SELECT * FROM credit_cards WHERE group_id = ? ORDER BY created_at ASC", (group_id,)
    ).fetchall()
    statements = db.execute(
        "SELECT * FROM future_statements WHERE group_id = ? ORDER BY target_year ASC, target_month ASC",
        (group_id,),
    ).fetchall()

    serialized_projects = [serialize_project(row) for row in projects]
    serialized_expenses = [serialize_expense(row) for row in expenses]
    return {
        "accounts": [serialize_account(row) for row in accounts],
        "projects": [p for p in serialized_projects if p["type"] == "recurring"],
        "single_shot_income": [p for p in serialized_projects if p["type"] == "single_shot"],
        "fixed_expenses": [e for e in serialized_expenses if e["type"] == "fixed"],
        "single_shot_expenses": [e for e in serialized_expenses if e["type"] == "single_shot"],
        "credit_cards": [serialize_credit_card(row) for row in cards],
        "future_statements": [serialize_future_statement(row) for row in statements],
    }


def has_finance_data(inputs):
    return any(
        inputs[key]
        for key in ("accounts", "projects", "single_shot_income", "fixed_expenses", "single_shot_expenses", "credit_cards")
    )


def get_group_preference(db, group_id, key, default=None):
    row = db.execute(
        "SELECT value FROM group_preferences WHERE group_id = ? AND key = ?", (group_id, key)
    ).fetchone()
    return row["value"] if row is not None else default


def set_group_preference(db, group_id, key, value, now=None):
    now = now or utc_now_text()
    db.execute(
        """
        INSERT INTO group_preferences (id, group_id, key, value, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT (group_id, key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (new_id(), group_id, key, value, now, now),
    )


def perform_month_progression(db, group_id, today, now=None):
    now = now or utc_now_text()
    progressed_cards = 0
    cards = db.execute("SELECT id FROM credit_cards WHERE group_id = ?", (group_id,)).fetchall()
    for card in cards:
        statement = db.execute(
            """
            SELECT id, amount FROM future_statements
            WHERE group_id = ? AND credit_card_id = ? AND target_month = ? AND target_year = ?
            """,
            (group_id, card["id"], today.month, today.year),
        ).fetchone()
        if statement is None:
            continue
        db.execute(
            "UPDATE credit_cards SET statement_balance = ?, updated_at = ? WHERE id = ? AND group_id = ?",
            (statement["amount"], now, card["id"], group_id),
        )
        db.execute("DELETE FROM future_statements WHERE id = ?", (statement["id"],))
        progressed_cards += 1

    cleaned = db.execute(
        """
        DELETE FROM future_statements
        WHERE group_id = ? AND (target_year < ? OR (target_year = ? AND target_month < ?))
        """,
        (group_id, today.year, today.year, today.month),
    ).rowcount
    return {"progressed_cards": progressed_cards, "cleaned_statements": max(cleaned, 0)}


def check_and_progress_month(db, group_id, today, now=None):
    """Roll credit card statements into the new month, at most once per calendar month."""
    last_check = get_group_preference(db, group_id, LAST_PROGRESSION_CHECK_KEY)
    if last_check:
        checked = to_date(last_check)
        if (checked.year, checked.month) == (today.year, today.month):
            return {"progressed_cards": 0, "cleaned_statements": 0, "skipped": True}

    result = perform_month_progression(db, group_id, today, now)
    set_group_preference(db, group_id, LAST_PROGRESSION_CHECK_KEY, today.isoformat(), now)
    db.commit()
    if result["progressed_cards"] or result["cleaned_statements"]:
        logger.info(
            "Month progression for group %s: %s cards progressed, %s statements cleaned",
            group_id,
            result["progressed_cards"],
            result["cleaned_statements"],
        )
    return {**result, "skipped": False}


def build_snapshot_data(inputs, projection, projection_days):
    return {
        "inputs": to_jsonable({**inputs, "projection_days": projection_days}),
        "projection": to_jsonable(projection),
        "summary_metrics": {
            "starting_balance": projection["starting_balance"],
            "end_balance_optimistic": projection["optimistic"]["end_balance"],
            "danger_day_count": projection["optimistic"]["danger_day_count"],
        },
    }


def create_snapshot(db, group_id, name, data, now=None):
    snapshot_id = new_id()
    created_at = now or utc_now_text()
    db.execute(
        """
        INSERT INTO projection_snapshots (id, group_id, name, schema_version, data, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (snapshot_id, group_id, name, CURRENT_SCHEMA_VERSION, json.dumps(data, sort_keys=True), created_at),
    )
    return {
        "id": snapshot_id,
        "name": name,
        "schema_version": CURRENT_SCHEMA_VERSION,
        "created_at": created_at,
        "summary_metrics": data["summary_metrics"],
    }


def list_snapshots(db, group_id):
    rows = db.execute(
        "SELECT id, name, schema_version, data, created_at FROM projection_snapshots WHERE group_id = ? ORDER BY created_at DESC",
        (group_id,),
    ).fetchall()
    return [
        {
            "id": row["id"],
            "name": row["name"],
            "schema_version": row["schema_version"],
            "created_at": row["created_at"],
            "summary_metrics": json.loads(row["data"]).get("summary_metrics"),
        }
        for row in rows
    ]
