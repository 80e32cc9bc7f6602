import pytest

from cashflow_tracker.db import connect_db, parse_database_config
from cashflow_tracker.db_migrations import apply_migrations
from cashflow_tracker.finance import load_finance_inputs
from cashflow_tracker.seed import (
    add_worker_prefix,
    ensure_test_user,
    entity_exists,
    reset_worker_data,
    seed_full_scenario,
    strip_worker_prefix,
    worker_context,
    worker_prefix,
)


SCENARIO = {
    "accounts": [{"name": "Checking", "balance": 250000}],
    "expenses": [{"name": "Rent", "amount": 150000, "due_day": 5}, {"name": "Trip", "amount": 40000, "date": "2026-04-02"}],
    "projects": [{"name": "Salary", "amount": 500000, "frequency": "monthly", "payment_schedule": {"type": "dayOfMonth", "dayOfMonth": 5}}],
    "credit_cards": [{"name": "Visa", "statement_balance": 80000, "due_day": 12}],
}


@pytest.fixture()
def db(tmp_path):
    config = parse_database_config(str(tmp_path / "seed.sqlite"), None)
    apply_migrations(config)
    conn = connect_db(config)
    yield conn
    conn.close()


def test_worker_prefixes():
    assert worker_prefix(3) == "[W3] "
    assert worker_prefix(11) == "[W3] "
    assert add_worker_prefix("Rent", 0) == "[W0] Rent"
    assert strip_worker_prefix("[W5] Rent") == "Rent"
    assert strip_worker_prefix("Rent") == "Rent"

    context = worker_context(2, "Mobile Chrome")
    assert context["email"] == "e2e-test-mobile-chrome-worker-2@example.com"
    assert context["data_prefix"] == "[W2] "
    assert context["group_name"] == "Test mobile-chrome Worker 2"


def test_ensure_test_user_is_idempotent(db):
    user_id, group_id = ensure_test_user(db, "Worker@Example.com", group_name="Test Worker 0")
    again = ensure_test_user(db, "worker@example.com")

    assert again == (user_id, group_id)
    group = db.execute("SELECT name FROM household_groups WHERE id = ?", (group_id,)).fetchone()
    assert group["name"] == "Test Worker 0"


def test_seed_full_scenario_feeds_projection_inputs(db):
    _, group_id = ensure_test_user(db, "worker@example.com")

    seeded = seed_full_scenario(db, group_id, SCENARIO, worker_index=1)

    assert seeded["accounts"][0]["name"] == "[W1] Checking"
    inputs = load_finance_inputs(db, group_id)
    assert [account["balance"] for account in inputs["accounts"]] == [250000]
    assert [expense["name"] for expense in inputs["fixed_expenses"]] == ["[W1] Rent"]
    assert [expense["name"] for expense in inputs["single_shot_expenses"]] == ["[W1] Trip"]
    assert inputs["projects"][0]["payment_schedule"] == {"type": "dayOfMonth", "dayOfMonth": 5}
    assert inputs["projects"][0]["is_active"] is True
    assert inputs["credit_cards"][0]["due_day"] == 12


def test_reset_worker_data_only_touches_that_worker(db):
    _, group_id = ensure_test_user(db, "worker@example.com")
    seed_full_scenario(db, group_id, SCENARIO, worker_index=0)
    seed_full_scenario(db, group_id, SCENARIO, worker_index=1)
    seed_full_scenario(db, group_id, {"accounts": [{"name": "Personal", "balance": 1}]})

    deleted = reset_worker_data(db, 0)

    assert deleted["accounts"] == 1
    assert deleted["expenses"] == 2
    assert not entity_exists(db, "accounts", "[W0] Checking")
    assert entity_exists(db, "accounts", "[W1] Checking")

    reset_worker_data(db)
    assert not entity_exists(db, "accounts", "[W1] Checking")
    assert entity_exists(db, "accounts", "Personal")


def test_entity_exists_rejects_unknown_tables(db):
    with pytest.raises(ValueError):
        entity_exists(db, "users", "anything")
