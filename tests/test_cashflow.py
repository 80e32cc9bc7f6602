from datetime import date, datetime, timezone

import pytest

from cashflow_tracker.cashflow import (
    INVALID_AMOUNT,
    INVALID_INPUT,
    CashflowCalculationError,
    balance_freshness,
    calculate_cashflow,
    calculate_estimated_today_balance,
    get_checking_balance_update_base,
    get_credit_card_amount_for_date,
    get_danger_ranges,
    get_effective_day,
    health_indicator,
    is_monthly_payment_due,
    is_stale,
    rebase_projection_from_estimated_today,
    summary_stats,
    to_date_in_timezone,
    to_jsonable,
    validate_frequency_schedule_match,
    validate_payment_schedule,
)


TODAY = date(2026, 3, 10)
TZ = "America/Sao_Paulo"


def make_inputs(**overrides):
    inputs = {
        "accounts": [],
        "projects": [],
        "fixed_expenses": [],
        "single_shot_expenses": [],
        "single_shot_income": [],
        "credit_cards": [],
        "future_statements": [],
    }
    inputs.update(overrides)
    return inputs


def checking(balance=100000, updated_at="2026-03-10T12:00:00+00:00", account_id="acc-1", type="checking"):
    return {"id": account_id, "name": "Checking", "type": type, "balance": balance, "balance_updated_at": updated_at}


def project(schedule, frequency, amount=100000, certainty="guaranteed", project_id="p-1", is_active=True):
    return {
        "id": project_id,
        "name": "Salary",
        "amount": amount,
        "frequency": frequency,
        "payment_schedule": schedule,
        "payment_day": None,
        "certainty": certainty,
        "is_active": is_active,
    }


def income_dates(projection):
    return [day["date"] for day in projection["days"] if day["income_events"]]


def test_effective_day_clamps_to_month_end():
    assert get_effective_day(31, date(2026, 2, 10)) == 28
    assert get_effective_day(31, date(2028, 2, 10)) == 29
    assert is_monthly_payment_due(date(2026, 2, 28), 31)
    assert not is_monthly_payment_due(date(2026, 3, 28), 31)


def test_weekly_and_biweekly_day_of_week_schedules():
    weekly = calculate_cashflow(
        make_inputs(projects=[project({"type": "dayOfWeek", "dayOfWeek": 5}, "weekly")]),
        30,
        start_date=TODAY,
        today=TODAY,
    )
    assert income_dates(weekly) == [date(2026, 3, 13), date(2026, 3, 20), date(2026, 3, 27), date(2026, 4, 3)]

    biweekly = calculate_cashflow(
        make_inputs(projects=[project({"type": "dayOfWeek", "dayOfWeek": 5}, "biweekly")]),
        30,
        start_date=TODAY,
        today=TODAY,
    )
    assert income_dates(biweekly) == [date(2026, 3, 13), date(2026, 3, 27)]


def test_legacy_payment_day_biweekly_counts_from_first_occurrence():
    legacy = project(None, "biweekly")
    legacy["payment_day"] = 12
    projection = calculate_cashflow(make_inputs(projects=[legacy]), 30, start_date=TODAY, today=TODAY)

    assert income_dates(projection) == [date(2026, 3, 12), date(2026, 3, 26)]


def test_twice_monthly_variable_amounts():
    schedule = {"type": "twiceMonthly", "firstDay": 5, "secondDay": 20, "firstAmount": 300000, "secondAmount": 200000}
    projection = calculate_cashflow(
        make_inputs(projects=[project(schedule, "twice-monthly")]),
        30,
        start_date=date(2026, 3, 1),
        today=date(2026, 3, 1),
    )

    events = [(day["date"], day["income_events"][0]["amount"]) for day in projection["days"] if day["income_events"]]
    assert events == [(date(2026, 3, 5), 300000), (date(2026, 3, 20), 200000)]
    assert projection["optimistic"]["total_income"] == 500000


def test_pessimistic_scenario_only_counts_guaranteed_income():
    inputs = make_inputs(
        accounts=[checking(balance=0)],
        projects=[
            project({"type": "dayOfMonth", "dayOfMonth": 11}, "monthly", amount=50000, project_id="salary"),
            project({"type": "dayOfMonth", "dayOfMonth": 12}, "monthly", amount=20000, certainty="probable", project_id="freelance"),
            project({"type": "dayOfMonth", "dayOfMonth": 12}, "monthly", amount=99999, project_id="paused", is_active=False),
        ],
        fixed_expenses=[{"id": "rent", "name": "Rent", "amount": 60000, "due_day": 13, "is_active": True}],
        single_shot_income=[{"id": "gift", "name": "Gift", "amount": 5000, "date": "2026-03-14", "certainty": "uncertain"}],
    )

    projection = calculate_cashflow(inputs, 7, start_date=TODAY, today=TODAY)

    assert projection["optimistic"]["total_income"] == 75000
    assert projection["pessimistic"]["total_income"] == 50000
    assert projection["optimistic"]["end_balance"] == 15000
    assert projection["pessimistic"]["end_balance"] == -10000
    assert projection["optimistic"]["danger_day_count"] == 0
    assert projection["pessimistic"]["danger_day_count"] == 4
    assert projection["end_date"] == date(2026, 3, 16)


def test_starting_balance_uses_checking_accounts_only():
    inputs = make_inputs(accounts=[checking(balance=1000), checking(balance=5000, account_id="s", type="savings")])

    projection = calculate_cashflow(inputs, 7, start_date=TODAY, today=TODAY)

    assert projection["starting_balance"] == 1000


def test_credit_card_amount_switches_to_future_statements_after_next_month():
    card = {"id": "card-1", "name": "Visa", "statement_balance": 80000, "due_day": 10}
    statements = [{"credit_card_id": "card-1", "target_month": 5, "target_year": 2026, "amount": 30000}]

    assert get_credit_card_amount_for_date(card, statements, date(2026, 3, 10), TODAY) == 80000
    assert get_credit_card_amount_for_date(card, statements, date(2026, 4, 10), TODAY) == 80000
    assert get_credit_card_amount_for_date(card, statements, date(2026, 5, 10), TODAY) == 30000
    assert get_credit_card_amount_for_date(card, statements, date(2026, 6, 10), TODAY) == 0


@pytest.mark.parametrize(
    ("inputs", "code"),
    [
        (make_inputs(accounts=[checking(balance=-1)]), INVALID_AMOUNT),
        (make_inputs(projects=[project({"type": "dayOfMonth", "dayOfMonth": 1}, "monthly", amount=0)]), INVALID_INPUT),
        (make_inputs(fixed_expenses=[{"id": "e", "name": "Rent", "amount": 10, "due_day": 0, "is_active": True}]), INVALID_INPUT),
        (make_inputs(credit_cards=[{"id": "c", "name": "Visa", "statement_balance": -5, "due_day": 10}]), INVALID_INPUT),
    ],
)
def test_invalid_inputs_raise_with_code(inputs, code):
    with pytest.raises(CashflowCalculationError) as excinfo:
        calculate_cashflow(inputs, 7, today=TODAY)

    assert excinfo.value.code == code


def test_projection_days_must_be_positive():
    with pytest.raises(CashflowCalculationError):
        calculate_cashflow(make_inputs(), 0, today=TODAY)


def test_payment_schedule_validation():
    assert validate_frequency_schedule_match("weekly", {"type": "dayOfWeek", "dayOfWeek": 1})
    assert not validate_frequency_schedule_match("monthly", {"type": "dayOfWeek", "dayOfWeek": 1})

    with pytest.raises(CashflowCalculationError):
        validate_payment_schedule({"type": "dayOfWeek", "dayOfWeek": 8})
    with pytest.raises(CashflowCalculationError):
        validate_payment_schedule({"type": "twiceMonthly", "firstDay": 1, "secondDay": 15, "firstAmount": 10})
    with pytest.raises(CashflowCalculationError) as excinfo:
        validate_payment_schedule(
            {"type": "twiceMonthly", "firstDay": 1, "secondDay": 15, "firstAmount": 10, "secondAmount": -1}
        )
    assert excinfo.value.code == INVALID_AMOUNT
    with pytest.raises(CashflowCalculationError) as excinfo:
        validate_payment_schedule(
            {"type": "twiceMonthly", "firstDay": 1, "secondDay": 15, "firstAmount": 100.5, "secondAmount": 200}
        )
    assert excinfo.value.code == INVALID_AMOUNT


def test_balance_update_base_uses_local_date():
    assert to_date_in_timezone("2026-03-10T02:00:00+00:00", TZ) == date(2026, 3, 9)

    base = get_checking_balance_update_base(
        [checking(updated_at="2026-03-10T02:00:00+00:00"), checking(updated_at="2026-03-08T15:00:00Z", account_id="b")],
        TZ,
    )
    assert base["success"] is True
    assert base["base"] == {"kind": "range", "from": date(2026, 3, 8), "to": date(2026, 3, 9)}
    assert base["base_for_computation"] == date(2026, 3, 8)

    assert get_checking_balance_update_base([], TZ)["reason"] == "no_checking_accounts"
    assert get_checking_balance_update_base([checking(updated_at=None)], TZ)["reason"] == "missing_timestamps"


def test_estimated_today_balance_replays_movements_since_update():
    inputs = make_inputs(
        accounts=[checking(balance=10000, updated_at="2026-03-08T12:00:00+00:00")],
        projects=[project({"type": "dayOfMonth", "dayOfMonth": 10}, "monthly", amount=5000, certainty="probable")],
        fixed_expenses=[{"id": "e", "name": "Gym", "amount": 1000, "due_day": 9, "is_active": True}],
    )

    estimate = calculate_estimated_today_balance(inputs, TZ, TODAY)

    assert estimate["has_base"] is True
    assert estimate["base"] == {"kind": "single", "date": date(2026, 3, 8)}
    assert estimate["optimistic"] == 14000
    assert estimate["pessimistic"] == 9000
    assert estimate["is_estimated"] == {"optimistic": True, "pessimistic": True, "any": True}


def test_estimated_today_balance_without_base():
    inputs = make_inputs(accounts=[checking(balance=10000, updated_at=None)])

    estimate = calculate_estimated_today_balance(inputs, TZ, TODAY)

    assert estimate["has_base"] is False
    assert estimate["base_failure_reason"] == "missing_timestamps"
    assert estimate["optimistic"] == 10000
    assert estimate["is_estimated"]["any"] is False


def test_rebase_starts_from_estimated_today():
    inputs = make_inputs(
        accounts=[checking(balance=10000, updated_at="2026-03-08T12:00:00+00:00")],
        projects=[project({"type": "dayOfMonth", "dayOfMonth": 10}, "monthly", amount=5000, certainty="probable")],
        fixed_expenses=[{"id": "e", "name": "Gym", "amount": 1000, "due_day": 12, "is_active": True}],
    )
    estimate = {
        "today": TODAY,
        "optimistic": 14000,
        "pessimistic": 9000,
    }

    projection = rebase_projection_from_estimated_today(inputs, estimate, 5)

    assert projection["starting_balance"] == 9000
    assert [day["optimistic_balance"] for day in projection["days"]] == [14000, 14000, 13000, 13000, 13000]
    assert [day["pessimistic_balance"] for day in projection["days"]] == [9000, 9000, 8000, 8000, 8000]
    assert projection["days"][0]["income_events"] == []
    assert projection["end_date"] == date(2026, 3, 14)


def test_danger_ranges_group_consecutive_days_by_scenario():
    flags = [(False, False), (False, True), (False, True), (True, True), (False, False), (True, True)]
    days = [
        {"date": date(2026, 3, 10 + offset), "is_optimistic_danger": optimistic, "is_pessimistic_danger": pessimistic}
        for offset, (optimistic, pessimistic) in enumerate(flags)
    ]

    assert get_danger_ranges(days) == [
        {"start": date(2026, 3, 11), "end": date(2026, 3, 12), "scenario": "pessimistic"},
        {"start": date(2026, 3, 13), "end": date(2026, 3, 13), "scenario": "both"},
        {"start": date(2026, 3, 15), "end": date(2026, 3, 15), "scenario": "both"},
    ]


def test_health_indicator_messages():
    inputs = make_inputs(
        accounts=[checking(balance=1000)],
        projects=[project({"type": "dayOfMonth", "dayOfMonth": 11}, "monthly", amount=5000, certainty="probable")],
        fixed_expenses=[{"id": "e", "name": "Rent", "amount": 2000, "due_day": 11, "is_active": True}],
    )
    now = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)
    stats = summary_stats(calculate_cashflow(inputs, 2, start_date=TODAY, today=TODAY))

    health = health_indicator(stats, inputs["accounts"], [], now)

    assert health["status"] == "warning"
    assert health["message"] == "1 danger day in worst-case scenario"
    assert health["is_stale"] is False
    assert stats["optimistic"]["surplus"] == 3000


def test_staleness_and_freshness():
    now = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)

    assert balance_freshness("2026-03-10T01:00:00+00:00", now) == "fresh"
    assert balance_freshness("2026-03-05T15:00:00+00:00", now) == "warning"
    assert balance_freshness("2026-02-20T15:00:00+00:00", now) == "stale"
    assert balance_freshness(None, now) == "stale"
    assert is_stale("2026-02-01T15:00:00+00:00", now) is True
    assert is_stale("2026-02-20T15:00:00+00:00", now) is False

    stale = health_indicator(None, [checking(updated_at="2026-01-01T00:00:00+00:00")], [], now)
    assert stale["is_stale"] is True
    assert stale["stale_entities"] == [{"id": "acc-1", "name": "Checking", "type": "account"}]


def test_to_jsonable_converts_dates():
    assert to_jsonable({"days": [{"date": date(2026, 3, 10)}]}) == {"days": [{"date": "2026-03-10"}]}
