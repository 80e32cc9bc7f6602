"""Cashflow projection engine.

Pure functions over plain dicts (the same shape the API reads from the
database). Money is always integer cents and dates are ``datetime.date``.
"""

import calendar
import json
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


INVALID_INPUT = "INVALID_INPUT"
INVALID_AMOUNT = "INVALID_AMOUNT"

DEFAULT_PROJECTION_DAYS = 30
PROJECTION_DAY_OPTIONS = (7, 14, 30, 60, 90)
STALE_THRESHOLD_DAYS = 30

ACCOUNT_TYPES = ("checking", "savings", "investment")
FREQUENCIES = ("weekly", "biweekly", "twice-monthly", "monthly")
CERTAINTIES = ("guaranteed", "probable", "uncertain")
SCHEDULE_TYPE_BY_FREQUENCY = {
    "weekly": "dayOfWeek",
    "biweekly": "dayOfWeek",
    "twice-monthly": "twiceMonthly",
    "monthly": "dayOfMonth",
}


class CashflowCalculationError(ValueError):
    """Raised when projection input fails validation."""

    def __init__(self, message, code=INVALID_INPUT, details=None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}


def _is_int(value):
    return isinstance(value, int) and not isinstance(value, bool)


def to_date(value):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def parse_timestamp(value):
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace(" ", "T"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def resolve_timezone(name):
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown time zone: {name}") from exc


def to_date_in_timezone(value, tz_name):
    return parse_timestamp(value).astimezone(resolve_timezone(tz_name)).date()


def today_in_timezone(tz_name, now=None):
    now = now or datetime.now(timezone.utc)
    return parse_timestamp(now).astimezone(resolve_timezone(tz_name)).date()


def days_in_month(day):
    return calendar.monthrange(day.year, day.month)[1]


def add_months(year, month, delta):
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


# -- payment frequencies -----------------------------------------------------


def get_effective_day(payment_day, day):
    """Clamp a payment day to the last day of ``day``'s month (31 -> 28 in February)."""
    return min(payment_day, days_in_month(day))


def is_monthly_payment_due(day, payment_day):
    return day.day == get_effective_day(payment_day, day)


def _is_interval_payment_due(day, day_offset, payment_day, source_id, first_occurrences, interval):
    if source_id not in first_occurrences:
        if day.day == get_effective_day(payment_day, day):
            first_occurrences[source_id] = day_offset
            return True
        return False

    days_since_first = day_offset - first_occurrences[source_id]
    return days_since_first > 0 and days_since_first % interval == 0


def is_biweekly_payment_due(day, day_offset, payment_day, source_id, first_occurrences):
    return _is_interval_payment_due(day, day_offset, payment_day, source_id, first_occurrences, 14)


def is_weekly_payment_due(day, day_offset, payment_day, source_id, first_occurrences):
    return _is_interval_payment_due(day, day_offset, payment_day, source_id, first_occurrences, 7)


def is_day_of_week_payment_due(day, day_of_week):
    # 1 = Monday ... 7 = Sunday
    return day.isoweekday() == day_of_week


def is_twice_monthly_payment_due(day, first_day, second_day):
    return day.day in (get_effective_day(first_day, day), get_effective_day(second_day, day))


def twice_monthly_amount(project, schedule, day):
    first_amount = schedule.get("firstAmount")
    second_amount = schedule.get("secondAmount")
    if first_amount is not None and second_amount is not None:
        if day.day == get_effective_day(schedule["firstDay"], day):
            return first_amount
        if day.day == get_effective_day(schedule["secondDay"], day):
            return second_amount
    return project["amount"]


# -- validation --------------------------------------------------------------


def validate_frequency_schedule_match(frequency, schedule):
    return SCHEDULE_TYPE_BY_FREQUENCY.get(frequency) == (schedule or {}).get("type")


def validate_payment_schedule(schedule):
    if not isinstance(schedule, dict):
        raise CashflowCalculationError("Payment schedule must be an object")

    kind = schedule.get("type")
    if kind == "dayOfWeek":
        value = schedule.get("dayOfWeek")
        if not _is_int(value) or not 1 <= value <= 7:
            raise CashflowCalculationError("dayOfWeek must be between 1 and 7")
    elif kind == "dayOfMonth":
        value = schedule.get("dayOfMonth")
        if not _is_int(value) or not 1 <= value <= 31:
            raise CashflowCalculationError("dayOfMonth must be between 1 and 31")
    elif kind == "twiceMonthly":
        first_day = schedule.get("firstDay")
        second_day = schedule.get("secondDay")
        for label, value in (("firstDay", first_day), ("secondDay", second_day)):
            if not _is_int(value) or not 1 <= value <= 31:
                raise CashflowCalculationError(f"{label} must be between 1 and 31")
        if first_day == second_day:
            raise CashflowCalculationError("firstDay and secondDay must be different")
        first_amount = schedule.get("firstAmount")
        second_amount = schedule.get("secondAmount")
        if (first_amount is None) != (second_amount is None):
            raise CashflowCalculationError("firstAmount and secondAmount must be provided together")
        for value in (first_amount, second_amount):
            if value is not None and (not _is_int(value) or value <= 0):
                raise CashflowCalculationError("Variable amounts must be positive integer cents", INVALID_AMOUNT)
    else:
        raise CashflowCalculationError(f"Unknown payment schedule type: {kind}")
    return schedule


def validate_projection_days(projection_days):
    if not _is_int(projection_days) or projection_days <= 0:
        raise CashflowCalculationError(
            "Invalid options: projection days must be a positive integer",
            details={"projection_days": projection_days},
        )
    return projection_days


def _require(condition, message, code, entity):
    if not condition:
        raise CashflowCalculationError(
            f'Invalid {entity["kind"]} "{entity["name"]}": {message}',
            code,
            {"id": entity.get("id")},
        )


def validate_and_filter_input(inputs, projection_days=DEFAULT_PROJECTION_DAYS):
    """Validate every entity and split out the ones that take part in a projection.

    Bank accounts fail with ``INVALID_AMOUNT``; every other entity fails
    with ``INVALID_INPUT``. Inactive projects and fixed expenses are
    validated but left out of the result.
    """
    validate_projection_days(projection_days)

    accounts = list(inputs.get("accounts") or [])
    for account in accounts:
        entity = {"kind": "bank account", "name": account.get("name"), "id": account.get("id")}
        _require(account.get("type") in ACCOUNT_TYPES, "unknown account type", INVALID_AMOUNT, entity)
        balance = account.get("balance")
        _require(_is_int(balance) and balance >= 0, "Balance cannot be negative", INVALID_AMOUNT, entity)

    active_projects = []
    guaranteed_projects = []
    for project in inputs.get("projects") or []:
        entity = {"kind": "project", "name": project.get("name"), "id": project.get("id")}
        amount = project.get("amount")
        _require(_is_int(amount) and amount > 0, "Amount must be positive", INVALID_INPUT, entity)
        _require(project.get("frequency") in FREQUENCIES, "unknown frequency", INVALID_INPUT, entity)
        _require(project.get("certainty") in CERTAINTIES, "unknown certainty", INVALID_INPUT, entity)
        if project.get("payment_schedule") is not None:
            try:
                validate_payment_schedule(project["payment_schedule"])
            except CashflowCalculationError as exc:
                _require(False, exc.message, INVALID_INPUT, entity)
        if project.get("is_active"):
            active_projects.append(project)
            if project["certainty"] == "guaranteed":
                guaranteed_projects.append(project)

    active_expenses = []
    for expense in inputs.get("fixed_expenses") or []:
        entity = {"kind": "expense", "name": expense.get("name"), "id": expense.get("id")}
        amount = expense.get("amount")
        due_day = expense.get("due_day")
        _require(_is_int(amount) and amount > 0, "Amount must be positive", INVALID_INPUT, entity)
        _require(_is_int(due_day) and 1 <= due_day <= 31, "Due day must be 1-31", INVALID_INPUT, entity)
        if expense.get("is_active"):
            active_expenses.append(expense)

    credit_cards = list(inputs.get("credit_cards") or [])
    for card in credit_cards:
        entity = {"kind": "credit card", "name": card.get("name"), "id": card.get("id")}
        balance = card.get("statement_balance")
        due_day = card.get("due_day")
        _require(_is_int(balance) and balance >= 0, "Balance cannot be negative", INVALID_INPUT, entity)
        _require(_is_int(due_day) and 1 <= due_day <= 31, "Due day must be 1-31", INVALID_INPUT, entity)

    return {
        "accounts": accounts,
        "active_projects": active_projects,
        "guaranteed_projects": guaranteed_projects,
        "active_expenses": active_expenses,
        "single_shot_expenses": list(inputs.get("single_shot_expenses") or []),
        "single_shot_income": list(inputs.get("single_shot_income") or []),
        "credit_cards": credit_cards,
        "future_statements": list(inputs.get("future_statements") or []),
        "projection_days": projection_days,
    }


# -- projection --------------------------------------------------------------


def calculate_starting_balance(accounts):
    return sum(account["balance"] for account in accounts if account["type"] == "checking")


def get_credit_card_amount_for_date(card, future_statements, day, today=None):
    """Bill due on ``day``: the statement balance up to next month, future statements beyond."""
    today = today or date.today()
    next_year, next_month = add_months(today.year, today.month, 1)
    is_distant_future = (day.year, day.month) > (next_year, next_month)
    if not is_distant_future:
        return card["statement_balance"]

    for statement in future_statements:
        if (
            statement["credit_card_id"] == card["id"]
            and statement["target_month"] == day.month
            and statement["target_year"] == day.year
        ):
            return statement["amount"]
    return 0


def _income_events(day, day_offset, projects, first_occurrences):
    events = []
    for project in projects:
        is_due = False
        amount = project["amount"]
        schedule = project.get("payment_schedule")
        frequency = project["frequency"]

        if schedule:
            kind = schedule.get("type")
            if frequency == "monthly" and kind == "dayOfMonth":
                is_due = is_monthly_payment_due(day, schedule["dayOfMonth"])
            elif frequency == "twice-monthly" and kind == "twiceMonthly":
                is_due = is_twice_monthly_payment_due(day, schedule["firstDay"], schedule["secondDay"])
                if is_due:
                    amount = twice_monthly_amount(project, schedule, day)
            elif frequency == "biweekly" and kind == "dayOfWeek":
                if is_day_of_week_payment_due(day, schedule["dayOfWeek"]):
                    if project["id"] not in first_occurrences:
                        first_occurrences[project["id"]] = day_offset
                        is_due = True
                    else:
                        days_since_first = day_offset - first_occurrences[project["id"]]
                        is_due = days_since_first > 0 and days_since_first % 14 == 0
            elif frequency == "weekly" and kind == "dayOfWeek":
                is_due = is_day_of_week_payment_due(day, schedule["dayOfWeek"])
        elif project.get("payment_day") is not None:
            payment_day = project["payment_day"]
            if frequency == "monthly":
                is_due = is_monthly_payment_due(day, payment_day)
            elif frequency == "biweekly":
                is_due = is_biweekly_payment_due(day, day_offset, payment_day, project["id"], first_occurrences)
            elif frequency == "weekly":
                is_due = is_weekly_payment_due(day, day_offset, payment_day, project["id"], first_occurrences)

        if is_due:
            events.append({
                "source_id": project["id"],
                "source_name": project["name"],
                "amount": amount,
                "certainty": project["certainty"],
            })
    return events


def _single_shot_income_events(day, income):
    return [
        {
            "source_id": item["id"],
            "source_name": item["name"],
            "amount": item["amount"],
            "certainty": item["certainty"],
        }
        for item in income
        if to_date(item["date"]) == day
    ]


def _expense_events(day, validated, today):
    events = []
    for expense in validated["active_expenses"]:
        if is_monthly_payment_due(day, expense["due_day"]):
            events.append({
                "source_id": expense["id"],
                "source_name": expense["name"],
                "source_type": "expense",
                "amount": expense["amount"],
            })
    for expense in validated["single_shot_expenses"]:
        if to_date(expense["date"]) == day:
            events.append({
                "source_id": expense["id"],
                "source_name": expense["name"],
                "source_type": "expense",
                "amount": expense["amount"],
            })
    for card in validated["credit_cards"]:
        if is_monthly_payment_due(day, card["due_day"]):
            events.append({
                "source_id": card["id"],
                "source_name": card["name"],
                "source_type": "credit_card",
                "amount": get_credit_card_amount_for_date(card, validated["future_statements"], day, today),
            })
    return events


def _optimistic_income(events):
    return sum(event["amount"] for event in events)


def _pessimistic_income(events):
    return sum(event["amount"] for event in events if event["certainty"] == "guaranteed")


def generate_scenario_summary(days, optimistic):
    total_income = 0
    total_expenses = 0
    danger_days = []
    balance_key = "optimistic_balance" if optimistic else "pessimistic_balance"
    danger_key = "is_optimistic_danger" if optimistic else "is_pessimistic_danger"

    for day in days:
        if optimistic:
            total_income += _optimistic_income(day["income_events"])
        else:
            total_income += _pessimistic_income(day["income_events"])
        total_expenses += sum(event["amount"] for event in day["expense_events"])
        if day[danger_key]:
            danger_days.append({
                "date": day["date"],
                "day_offset": day["day_offset"],
                "balance": day[balance_key],
            })

    return {
        "total_income": total_income,
        "total_expenses": total_expenses,
        "end_balance": days[-1][balance_key] if days else 0,
        "danger_days": danger_days,
        "danger_day_count": len(danger_days),
    }


def calculate_cashflow(inputs, projection_days=DEFAULT_PROJECTION_DAYS, start_date=None, today=None):
    """Project optimistic and pessimistic daily balances.

    ``inputs`` holds ``accounts``, ``projects``, ``fixed_expenses``,
    ``single_shot_expenses``, ``single_shot_income``, ``credit_cards`` and
    ``future_statements``. The optimistic scenario counts every active
    income, the pessimistic one only guaranteed income; expenses are the
    same for both. A day is a danger day when its balance drops below zero.
    """
    validated = validate_and_filter_input(inputs, projection_days)
    today = today or date.today()
    start_date = to_date(start_date) if start_date is not None else today
    starting_balance = calculate_starting_balance(validated["accounts"])

    first_occurrences = {}
    optimistic_balance = starting_balance
    pessimistic_balance = starting_balance
    days = []

    for day_offset in range(projection_days):
        day = start_date + timedelta(days=day_offset)
        income_events = _income_events(day, day_offset, validated["active_projects"], first_occurrences)
        income_events += _single_shot_income_events(day, validated["single_shot_income"])
        expense_events = _expense_events(day, validated, today)
        total_expenses = sum(event["amount"] for event in expense_events)

        optimistic_balance += _optimistic_income(income_events) - total_expenses
        pessimistic_balance += _pessimistic_income(income_events) - total_expenses

        days.append({
            "date": day,
            "day_offset": day_offset,
            "optimistic_balance": optimistic_balance,
            "pessimistic_balance": pessimistic_balance,
            "income_events": income_events,
            "expense_events": expense_events,
            "is_optimistic_danger": optimistic_balance < 0,
            "is_pessimistic_danger": pessimistic_balance < 0,
        })

    return {
        "start_date": start_date,
        "end_date": start_date + timedelta(days=projection_days - 1),
        "starting_balance": starting_balance,
        "days": days,
        "optimistic": generate_scenario_summary(days, True),
        "pessimistic": generate_scenario_summary(days, False),
    }


# -- estimated balance for today ----------------------------------------------


def get_checking_balance_update_base(accounts, tz_name):
    checking = [account for account in accounts if account["type"] == "checking"]
    if not checking:
        return {"success": False, "reason": "no_checking_accounts"}

    bases = []
    for account in checking:
        if not account.get("balance_updated_at"):
            return {"success": False, "reason": "missing_timestamps"}
        bases.append(to_date_in_timezone(account["balance_updated_at"], tz_name))

    earliest = min(bases)
    latest = max(bases)
    if earliest == latest:
        base = {"kind": "single", "date": earliest}
    else:
        base = {"kind": "range", "from": earliest, "to": latest}
    return {"success": True, "base": base, "base_for_computation": earliest}


def calculate_estimated_today_balance(inputs, tz_name, today=None):
    """Estimate today's balance by replaying movements since the last balance update.

    Only checking accounts form the base; the earliest update date is used
    when they differ. Movements on the base day itself are assumed to be
    already reflected in the balance.
    """
    today = today or today_in_timezone(tz_name)
    accounts = inputs.get("accounts") or []
    starting_balance = calculate_starting_balance(accounts)
    unestimated = {"optimistic": False, "pessimistic": False, "any": False}

    base_result = get_checking_balance_update_base(accounts, tz_name)
    if not base_result["success"]:
        return {
            "today": today,
            "has_base": False,
            "base": None,
            "base_failure_reason": base_result["reason"],
            "optimistic": starting_balance,
            "pessimistic": starting_balance,
            "is_estimated": unestimated,
        }

    interval_start = base_result["base_for_computation"] + timedelta(days=1)
    if interval_start > today:
        return {
            "today": today,
            "has_base": True,
            "base": base_result["base"],
            "base_failure_reason": None,
            "optimistic": starting_balance,
            "pessimistic": starting_balance,
            "is_estimated": unestimated,
        }

    interval = calculate_cashflow(
        inputs,
        projection_days=(today - interval_start).days + 1,
        start_date=interval_start,
        today=today,
    )
    last_day = interval["days"][-1]
    has_expense = any(day["expense_events"] for day in interval["days"])
    has_income = any(day["income_events"] for day in interval["days"])
    has_guaranteed_income = any(
        event["certainty"] == "guaranteed"
        for day in interval["days"]
        for event in day["income_events"]
    )
    optimistic_estimated = has_expense or has_income
    pessimistic_estimated = has_expense or has_guaranteed_income

    return {
        "today": today,
        "has_base": True,
        "base": base_result["base"],
        "base_failure_reason": None,
        "optimistic": last_day["optimistic_balance"],
        "pessimistic": last_day["pessimistic_balance"],
        "is_estimated": {
            "optimistic": optimistic_estimated,
            "pessimistic": pessimistic_estimated,
            "any": optimistic_estimated or pessimistic_estimated,
        },
    }


def rebase_projection_from_estimated_today(inputs, estimated_today, projection_days=DEFAULT_PROJECTION_DAYS):
    validate_projection_days(projection_days)
    today = estimated_today["today"]
    base_offset = estimated_today["pessimistic"] - calculate_starting_balance(inputs.get("accounts") or [])
    optimistic_offset = estimated_today["optimistic"] - estimated_today["pessimistic"]

    days = [{
        "date": today,
        "day_offset": 0,
        "optimistic_balance": estimated_today["optimistic"],
        "pessimistic_balance": estimated_today["pessimistic"],
        "income_events": [],
        "expense_events": [],
        "is_optimistic_danger": estimated_today["optimistic"] < 0,
        "is_pessimistic_danger": estimated_today["pessimistic"] < 0,
    }]

    forward_days = max(0, projection_days - 1)
    if forward_days:
        forward = calculate_cashflow(
            inputs,
            projection_days=forward_days,
            start_date=today + timedelta(days=1),
            today=today,
        )
        for forward_day in forward["days"]:
            pessimistic_balance = forward_day["pessimistic_balance"] + base_offset
            optimistic_balance = forward_day["optimistic_balance"] + base_offset + optimistic_offset
            days.append({
                **forward_day,
                "day_offset": len(days),
                "optimistic_balance": optimistic_balance,
                "pessimistic_balance": pessimistic_balance,
                "is_optimistic_danger": optimistic_balance < 0,
                "is_pessimistic_danger": pessimistic_balance < 0,
            })

    return {
        "start_date": today,
        "end_date": days[-1]["date"],
        "starting_balance": estimated_today["pessimistic"],
        "days": days,
        "optimistic": generate_scenario_summary(days, True),
        "pessimistic": generate_scenario_summary(days, False),
    }


# -- dashboard helpers --------------------------------------------------------


def get_danger_ranges(days):
    ranges = []
    current = None
    for day in days:
        optimistic = day["is_optimistic_danger"]
        pessimistic = day["is_pessimistic_danger"]
        if not optimistic and not pessimistic:
            if current:
                ranges.append(current)
                current = None
            continue

        if optimistic and pessimistic:
            scenario = "both"
        elif optimistic:
            scenario = "optimistic"
        else:
            scenario = "pessimistic"

        if current and current["scenario"] == scenario:
            current["end"] = day["date"]
        else:
            if current:
                ranges.append(current)
            current = {"start": day["date"], "end": day["date"], "scenario": scenario}

    if current:
        ranges.append(current)
    return ranges


def summary_stats(projection):
    stats = {"starting_balance": projection["starting_balance"]}
    for scenario in ("optimistic", "pessimistic"):
        summary = projection[scenario]
        stats[scenario] = {
            "total_income": summary["total_income"],
            "total_expenses": summary["total_expenses"],
            "end_balance": summary["end_balance"],
            "danger_day_count": summary["danger_day_count"],
            "surplus": summary["end_balance"] - projection["starting_balance"],
        }
    return stats


def days_since_update(updated_at, now=None):
    updated = parse_timestamp(updated_at)
    if updated is None:
        return None
    now = parse_timestamp(now) if now is not None else datetime.now(timezone.utc)
    return (now - updated) // timedelta(days=1)


def is_stale(updated_at, now=None, threshold_days=STALE_THRESHOLD_DAYS):
    elapsed = days_since_update(updated_at, now)
    if elapsed is None:
        return True
    now = parse_timestamp(now) if now is not None else datetime.now(timezone.utc)
    return parse_timestamp(updated_at) < now - timedelta(days=threshold_days)


def balance_freshness(updated_at, now=None):
    elapsed = days_since_update(updated_at, now)
    if elapsed is None:
        return "stale"
    if elapsed <= 1:
        return "fresh"
    if elapsed <= 7:
        return "warning"
    return "stale"


def _plural(count):
    return "" if count == 1 else "s"


def health_indicator(stats, accounts=(), credit_cards=(), now=None):
    stale_entities = [
        {"id": account["id"], "name": account["name"], "type": "account"}
        for account in accounts
        if is_stale(account.get("balance_updated_at"), now)
    ] + [
        {"id": card["id"], "name": card["name"], "type": "card"}
        for card in credit_cards
        if is_stale(card.get("balance_updated_at"), now)
    ]

    if stats is None:
        return {
            "status": "good",
            "message": "No data available",
            "is_stale": bool(stale_entities),
            "stale_entities": stale_entities,
            "danger_days": {"optimistic": 0, "pessimistic": 0},
        }

    optimistic = stats["optimistic"]["danger_day_count"]
    pessimistic = stats["pessimistic"]["danger_day_count"]
    if optimistic > 0:
        status = "danger"
        message = f"{optimistic} danger day{_plural(optimistic)} even in best-case scenario"
    elif pessimistic > 0:
        status = "warning"
        message = f"{pessimistic} danger day{_plural(pessimistic)} in worst-case scenario"
    else:
        status = "good"
        message = "No issues detected"

    return {
        "status": status,
        "message": message,
        "is_stale": bool(stale_entities),
        "stale_entities": stale_entities,
        "danger_days": {"optimistic": optimistic, "pessimistic": pessimistic},
    }


def to_jsonable(value):
    """Dates become ISO strings so projections survive ``json.dumps``."""
    if isinstance(value, dict):
        return {key: to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def dumps_projection(projection):
    return json.dumps(to_jsonable(projection), sort_keys=True)
