import hmac
import json
import os
import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from functools import wraps

from flask import Flask, g, jsonify, request, session
from werkzeug.security import check_password_hash, generate_password_hash

from .cashflow import (
    ACCOUNT_TYPES,
    CERTAINTIES,
    DEFAULT_PROJECTION_DAYS,
    FREQUENCIES,
    PROJECTION_DAY_OPTIONS,
    CashflowCalculationError,
    balance_freshness,
    calculate_cashflow,
    calculate_estimated_today_balance,
    days_since_update,
    get_danger_ranges,
    health_indicator,
    rebase_projection_from_estimated_today,
    resolve_timezone,
    summary_stats,
    to_jsonable,
    today_in_timezone,
    validate_frequency_schedule_match,
    validate_payment_schedule,
)
from .db import (
    DATABASE_ERRORS,
    INTEGRITY_ERRORS,
    connect_db,
    describe_database,
    new_id,
    parse_database_config,
    row_to_dict,
)
from .db_migrations import apply_migrations, get_db_health
from .finance import (
    PROJECTION_DAYS_KEY,
    build_snapshot_data,
    check_and_progress_month,
    create_snapshot,
    get_group_preference,
    has_finance_data,
    is_schema_version_compatible,
    list_snapshots,
    load_finance_inputs,
    serialize_account,
    serialize_credit_card,
    serialize_expense,
    serialize_future_statement,
    serialize_project,
    set_group_preference,
)
from .groups import (
    ProvisioningError,
    get_group,
    get_user_profile,
    normalize_email,
    provision_user,
)
from .guidance import (
    ONBOARDING_STEPS,
    STEP_ORDER,
    TOURS,
    TourRunner,
    calculate_progress,
    can_auto_show,
    determine_initial_step,
    get_next_step,
    get_previous_step,
    get_tour_definition,
    is_minimum_setup_complete,
    resolve_theme,
    should_auto_show_tour,
    validate_preference,
)
from .seed import reset_worker_data


class DatabaseInitError(RuntimeError):
    """Raised when the database cannot be opened or migrated."""


class ApiError(Exception):
    status = 400

    def __init__(self, message, status=None, details=None):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status
        self.details = details


class NotFoundError(ApiError):
    status = 404


class ForbiddenError(ApiError):
    status = 403


EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8


def parse_money(value):
    """Cents from an integer, or from a currency string such as "$1,234.56"."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    cleaned = text.replace(",", "").replace("R$", "").replace("$", "").strip()
    if cleaned.startswith("(") and cleaned.endswith(")"):
        cleaned = f"-{cleaned[1:-1]}"
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    cents = amount * 100
    if cents != cents.to_integral_value():
        return None
    return int(cents)


def clean_name(value, field, max_length=100):
    text = value.strip() if isinstance(value, str) else ""
    if not text:
        raise ApiError(f"{field} is required.", details={"field": field})
    if len(text) > max_length:
        raise ApiError(f"{field} must be at most {max_length} characters.", details={"field": field})
    return text


def clean_balance(value, field):
    cents = parse_money(value)
    if cents is None:
        raise ApiError(f"{field} must be an amount in cents.", details={"field": field})
    if cents < 0:
        raise ApiError(f"{field} cannot be negative.", details={"field": field})
    return cents


def clean_amount(value, field):
    cents = clean_balance(value, field)
    if cents == 0:
        raise ApiError(f"{field} must be positive.", details={"field": field})
    return cents


def clean_day(value, field):
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 31:
        raise ApiError(f"{field} must be a day between 1 and 31.", details={"field": field})
    return value


def clean_month(value, field):
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 12:
        raise ApiError(f"{field} must be a month between 1 and 12.", details={"field": field})
    return value


def clean_year(value, field):
    if isinstance(value, bool) or not isinstance(value, int) or value < 2020:
        raise ApiError(f"{field} must be 2020 or later.", details={"field": field})
    return value


def clean_date(value, field):
    try:
        return datetime.strptime(str(value), "%Y-%m-%d").date().isoformat()
    except ValueError:
        raise ApiError(f"{field} must be a date in YYYY-MM-DD format.", details={"field": field}) from None


def clean_bool(value, field):
    if not isinstance(value, bool):
        raise ApiError(f"{field} must be true or false.", details={"field": field})
    return value


def clean_optional_id(value, field):
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ApiError(f"{field} must be an id.", details={"field": field})
    return value


def clean_schedule(value, field):
    if value is None:
        return None
    schedule = validate_payment_schedule(value)
    keys = {
        "dayOfWeek": ("type", "dayOfWeek"),
        "dayOfMonth": ("type", "dayOfMonth"),
        "twiceMonthly": ("type", "firstDay", "secondDay", "firstAmount", "secondAmount"),
    }[schedule["type"]]
    return {key: schedule[key] for key in keys if schedule.get(key) is not None}


def choice(options):
    def cleaner(value, field):
        if value not in options:
            raise ApiError(f"{field} must be one of: {', '.join(options)}.", details={"field": field})
        return value

    return cleaner


def collect_fields(payload, spec, partial=False):
    """Validate ``payload`` against ``(field, cleaner, required)`` triples."""
    if not isinstance(payload, dict):
        raise ApiError("Request body must be a JSON object.")
    cleaned = {}
    for field, cleaner, required in spec:
        if field in payload:
            cleaned[field] = cleaner(payload[field], field)
        elif required and not partial:
            raise ApiError(f"{field} is required.", details={"field": field})
    if partial and not cleaned:
        raise ApiError("No fields to update.")
    return cleaned


ACCOUNT_FIELDS = [
    ("name", clean_name, True),
    ("type", choice(ACCOUNT_TYPES), True),
    ("balance", clean_balance, True),
    ("owner_id", clean_optional_id, False),
]
PROJECT_FIELDS = [
    ("name", clean_name, True),
    ("amount", clean_amount, True),
    ("frequency", choice(FREQUENCIES), True),
    ("payment_schedule", clean_schedule, False),
    ("payment_day", clean_day, False),
    ("certainty", choice(CERTAINTIES), True),
    ("is_active", clean_bool, False),
]
SINGLE_SHOT_INCOME_FIELDS = [
    ("name", clean_name, True),
    ("amount", clean_amount, True),
    ("date", clean_date, True),
    ("certainty", choice(CERTAINTIES), True),
]
FIXED_EXPENSE_FIELDS = [
    ("name", clean_name, True),
    ("amount", clean_amount, True),
    ("due_day", clean_day, True),
    ("is_active", clean_bool, False),
]
SINGLE_SHOT_EXPENSE_FIELDS = [
    ("name", clean_name, True),
    ("amount", clean_amount, True),
    ("date", clean_date, True),
]
CREDIT_CARD_FIELDS = [
    ("name", clean_name, True),
    ("statement_balance", clean_balance, True),
    ("due_day", clean_day, True),
    ("owner_id", clean_optional_id, False),
]
FUTURE_STATEMENT_FIELDS = [
    ("target_month", clean_month, True),
    ("target_year", clean_year, True),
    ("amount", clean_balance, True),
]


def check_project_schedule(project):
    schedule = project.get("payment_schedule")
    if schedule is None:
        if project.get("payment_day") is None:
            raise ApiError("payment_schedule is required.", details={"field": "payment_schedule"})
        if project["frequency"] == "twice-monthly":
            raise ApiError("Twice-monthly income needs a twiceMonthly payment_schedule.", details={"field": "payment_schedule"})
        return
    if not validate_frequency_schedule_match(project["frequency"], schedule):
        raise ApiError(
            f"Payment schedule type {schedule['type']} does not match frequency {project['frequency']}.",
            details={"field": "payment_schedule"},
        )


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY=os.environ.get("SECRET_KEY", "dev"),
        DATABASE=os.environ.get("DATABASE_PATH") or os.path.join(app.instance_path, "cashflow_tracker.sqlite"),
        DATABASE_URL=os.environ.get("DATABASE_URL") or None,
        TIMEZONE=os.environ.get("CASHFLOW_TIMEZONE", "America/Sao_Paulo"),
        DEFAULT_PROJECTION_DAYS=DEFAULT_PROJECTION_DAYS,
        DEFAULT_GROUP_NAME="My Group",
        DEV_AUTH_BYPASS_TOKEN=os.environ.get("DEV_AUTH_BYPASS_TOKEN") or None,
        ENABLE_DEV_DB_RESET=os.environ.get("ENABLE_DEV_DB_RESET") == "1",
        CLOCK=None,
    )

    if test_config is not None:
        app.config.update(test_config)

    resolve_timezone(app.config["TIMEZONE"])
    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)

    def database_config():
        return parse_database_config(app.config["DATABASE"], app.config.get("DATABASE_URL"))

    def now_utc():
        clock = app.config.get("CLOCK")
        return clock() if clock else datetime.now(timezone.utc)

    def current_date():
        return today_in_timezone(app.config["TIMEZONE"], now_utc())

    def now_text():
        return now_utc().isoformat(timespec="microseconds")

    @app.teardown_appcontext
    def close_db(_=None):
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def get_db():
        if "db" not in g:
            config = database_config()
            try:
                g.db = connect_db(config)
            except (*DATABASE_ERRORS, OSError) as exc:
                message = f"Unable to open database at {describe_database(config)}: {exc}"
                app.logger.error(message)
                app.config["DB_INIT_ERROR"] = message
                raise DatabaseInitError(message) from exc
        return g.db

    def init_db():
        config = database_config()
        try:
            apply_migrations(config)
            app.config["DB_INIT_ERROR"] = None
        except (*DATABASE_ERRORS, OSError, RuntimeError) as exc:
            message = f"Failed to initialize database at {describe_database(config)}: {exc}"
            app.logger.error(message)
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        print("Initialized the database.")

    @app.get("/health/db")
    def db_health():
        try:
            return jsonify(get_db_health(database_config()))
        except DATABASE_ERRORS as exc:
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "error": str(exc),
            }), 500

    @app.errorhandler(ApiError)
    def handle_api_error(exc):
        body = {"error": exc.message}
        if exc.details:
            body["details"] = exc.details
        return jsonify(body), exc.status

    @app.errorhandler(CashflowCalculationError)
    def handle_calculation_error(exc):
        return jsonify({"error": exc.message, "code": exc.code, "details": to_jsonable(exc.details)}), 400

    @app.errorhandler(ProvisioningError)
    def handle_provisioning_error(exc):
        app.logger.error("Provisioning failed: %s", exc)
        return jsonify({"error": "Could not set up your group. Please try again.", "recoverable": True}), 503

    def login_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            if g.user is None:
                raise ApiError("Authentication required.", 401)
            return view(**kwargs)

        return wrapped_view

    def dev_tools_enabled():
        return app.debug or app.config.get("ENABLE_DEV_DB_RESET")

    def json_body():
        payload = request.get_json(silent=True)
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            raise ApiError("Request body must be a JSON object.")
        return payload

    def ensure_user_group(user, db=None):
        db = db or get_db()
        with db.system_scope():
            profile = get_user_profile(db, user["id"])
        if profile is not None:
            return profile["group_id"]
        group_id, created = provision_user(db, user, app.config["DEFAULT_GROUP_NAME"], now_text())
        if created:
            app.logger.info("Created group %s for user %s", group_id, user["id"])
        return group_id

    @app.before_request
    def load_logged_in_user():
        if app.config.get("DB_INIT_ERROR"):
            return jsonify({"error": app.config["DB_INIT_ERROR"]}), 500

        user_id = session.get("user_id")
        g.group_id = None
        if user_id is None:
            g.user = None
            return None

        db = get_db()
        g.user = db.execute("SELECT id, email, created_at FROM users WHERE id = ?", (user_id,)).fetchone()
        if g.user is not None:
            g.group_id = ensure_user_group(g.user, db)
            db.set_group_scope(g.group_id)
        return None

    def start_session(user):
        session.clear()
        session["user_id"] = user["id"]
        db = get_db()
        group_id = ensure_user_group(user, db)
        db.set_group_scope(group_id)
        progression = check_and_progress_month(db, group_id, current_date(), now_text())
        return {
            "user": {"id": user["id"], "email": user["email"]},
            "group_id": group_id,
            "month_progression": progression,
        }

    # -- auth ----------------------------------------------------------------

    @app.post("/api/auth/register")
    def register():
        payload = json_body()
        email = normalize_email(payload.get("email"))
        password = payload.get("password") or ""
        if not EMAIL_RE.match(email):
            raise ApiError("A valid email is required.", details={"field": "email"})
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ApiError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters.", details={"field": "password"}
            )

        db = get_db()
        user_id = new_id()
        try:
            db.execute(
                "INSERT INTO users (id, email, password_hash, created_at) VALUES (?, ?, ?, ?)",
                (user_id, email, generate_password_hash(password), now_text()),
            )
            db.commit()
        except INTEGRITY_ERRORS:
            db.rollback()
            raise ApiError("User already exists.", 409) from None

        user = {"id": user_id, "email": email}
        return jsonify(start_session(user)), 201

    @app.post("/api/auth/login")
    def login():
        payload = json_body()
        email = normalize_email(payload.get("email"))
        password = payload.get("password") or ""
        user = get_db().execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
        if user is None or not user["password_hash"] or not check_password_hash(user["password_hash"], password):
            raise ApiError("Incorrect email or password.", 401)
        return jsonify(start_session(user))

    @app.post("/api/auth/logout")
    def logout():
        session.clear()
        return jsonify({"ok": True})

    @app.post("/api/auth/dev-bypass")
    def dev_auth_bypass():
        expected = app.config.get("DEV_AUTH_BYPASS_TOKEN")
        if not expected:
            raise NotFoundError("Not found.")
        payload = json_body()
        token = payload.get("token") or ""
        if not hmac.compare_digest(str(token).encode(), str(expected).encode()):
            raise ForbiddenError("Invalid bypass token.")

        email = normalize_email(payload.get("email"))
        if not EMAIL_RE.match(email):
            raise ApiError("A valid email is required.", details={"field": "email"})
        db = get_db()
        user = db.execute("SELECT id, email FROM users WHERE email = ?", (email,)).fetchone()
        if user is None:
            user = {"id": new_id(), "email": email}
            db.execute(
                "INSERT INTO users (id, email, password_hash, created_at) VALUES (?, ?, NULL, ?)",
                (user["id"], email, now_text()),
            )
            db.commit()
        app.logger.warning("Dev auth bypass used for %s", email)
        return jsonify(start_session(user))

    @app.get("/api/auth/me")
    @login_required
    def me():
        profile = get_user_profile(get_db(), g.user["id"])
        return jsonify({
            "user": {"id": g.user["id"], "email": g.user["email"]},
            "profile": {"id": profile["id"], "name": profile["name"], "email": profile["email"]},
            "group_id": g.group_id,
        })

    # -- group ---------------------------------------------------------------

    @app.get("/api/group")
    @login_required
    def group_detail():
        return jsonify(get_group(get_db(), g.group_id))

    @app.patch("/api/group")
    @login_required
    def rename_group():
        changes = collect_fields(json_body(), [("name", clean_name, True)])
        db = get_db()
        db.execute(
            "UPDATE household_groups SET name = ?, updated_at = ? WHERE id = ?",
            (changes["name"], now_text(), g.group_id),
        )
        db.commit()
        return jsonify(get_group(db, g.group_id))

    @app.post("/api/group/members")
    @login_required
    def invite_member():
        payload = json_body()
        email = normalize_email(payload.get("email"))
        if not EMAIL_RE.match(email):
            raise ApiError("A valid email is required.", details={"field": "email"})
        name = clean_name(payload.get("name") or email.split("@", 1)[0], "name")
        db = get_db()
        try:
            db.execute(
                "INSERT INTO profiles (id, group_id, user_id, email, name, created_at) VALUES (?, ?, NULL, ?, ?, ?)",
                (new_id(), g.group_id, email, name, now_text()),
            )
            db.commit()
        except INTEGRITY_ERRORS:
            db.rollback()
            raise ApiError("This email already belongs to a group.", 409) from None
        return jsonify(get_group(db, g.group_id)), 201

    @app.delete("/api/group/members/<profile_id>")
    @login_required
    def remove_invite(profile_id):
        db = get_db()
        member = db.execute(
            "SELECT id, user_id FROM profiles WHERE id = ? AND group_id = ?", (profile_id, g.group_id)
        ).fetchone()
        if member is None:
            raise NotFoundError("Member not found.")
        if member["user_id"] is not None:
            raise ApiError("Only pending invites can be removed.")
        db.execute("DELETE FROM profiles WHERE id = ?", (profile_id,))
        db.commit()
        return jsonify(get_group(db, g.group_id))

    @app.patch("/api/profile")
    @login_required
    def update_profile():
        changes = collect_fields(json_body(), [("name", clean_name, True)])
        db = get_db()
        db.execute("UPDATE profiles SET name = ? WHERE user_id = ?", (changes["name"], g.user["id"]))
        db.commit()
        profile = get_user_profile(db, g.user["id"])
        return jsonify({"id": profile["id"], "name": profile["name"], "email": profile["email"]})

    # -- shared entity helpers -------------------------------------------------

    def fetch_owned(table, entity_id, label, extra_where=""):
        row = get_db().execute(
            f"SELECT * FROM {table} WHERE id = ? AND group_id = ? {extra_where}",
            (entity_id, g.group_id),
        ).fetchone()
        if row is None:
            raise NotFoundError(f"{label} not found.")
        return row

    def check_owner(owner_id):
        if owner_id is None:
            return
        owner = get_db().execute(
            "SELECT 1 FROM profiles WHERE id = ? AND group_id = ?", (owner_id, g.group_id)
        ).fetchone()
        if owner is None:
            raise ApiError("owner_id must be a member of your group.", details={"field": "owner_id"})

    def insert_row(table, values):
        now = now_text()
        record = {"id": new_id(), "group_id": g.group_id, **values, "created_at": now, "updated_at": now}
        columns = ", ".join(record)
        placeholders = ", ".join("?" for _ in record)
        db = get_db()
        db.execute(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", tuple(record.values()))
        db.commit()
        return record["id"]

    def update_row(table, entity_id, changes):
        changes = {**changes, "updated_at": now_text()}
        assignments = ", ".join(f"{column} = ?" for column in changes)
        db = get_db()
        db.execute(
            f"UPDATE {table} SET {assignments} WHERE id = ? AND group_id = ?",
            (*changes.values(), entity_id, g.group_id),
        )
        db.commit()

    def delete_row(table, entity_id, label, extra_where=""):
        fetch_owned(table, entity_id, label, extra_where)
        db = get_db()
        db.execute(f"DELETE FROM {table} WHERE id = ? AND group_id = ?", (entity_id, g.group_id))
        db.commit()
        return jsonify({"deleted": entity_id})

    def list_rows(table, serializer, extra_where=""):
        rows = get_db().execute(
            f"SELECT * FROM {table} WHERE group_id = ? {extra_where} ORDER BY created_at ASC",
            (g.group_id,),
        ).fetchall()
        return jsonify([serializer(row) for row in rows])

    # -- accounts ------------------------------------------------------------

    @app.route("/api/accounts", methods=("GET", "POST"))
    @login_required
    def accounts():
        if request.method == "GET":
            return list_rows("accounts", serialize_account)
        values = collect_fields(json_body(), ACCOUNT_FIELDS)
        check_owner(values.get("owner_id"))
        values["balance_updated_at"] = now_text()
        account_id = insert_row("accounts", values)
        return jsonify(serialize_account(fetch_owned("accounts", account_id, "Account"))), 201

    @app.route("/api/accounts/<account_id>", methods=("PATCH", "DELETE"))
    @login_required
    def account_detail(account_id):
        if request.method == "DELETE":
            return delete_row("accounts", account_id, "Account")
        fetch_owned("accounts", account_id, "Account")
        changes = collect_fields(json_body(), ACCOUNT_FIELDS, partial=True)
        check_owner(changes.get("owner_id"))
        if "balance" in changes:
            changes["balance_updated_at"] = now_text()
        update_row("accounts", account_id, changes)
        return jsonify(serialize_account(fetch_owned("accounts", account_id, "Account")))

    # -- income --------------------------------------------------------------

    def store_project_values(values):
        stored = dict(values)
        if "payment_schedule" in stored:
            schedule = stored["payment_schedule"]
            stored["payment_schedule"] = json.dumps(schedule, sort_keys=True) if schedule else None
        if "is_active" in stored:
            stored["is_active"] = int(stored["is_active"])
        return stored

    @app.route("/api/projects", methods=("GET", "POST"))
    @login_required
    def projects():
        if request.method == "GET":
            return list_rows("projects", serialize_project, "AND type = 'recurring'")
        values = collect_fields(json_body(), PROJECT_FIELDS)
        values.setdefault("is_active", True)
        check_project_schedule(values)
        project_id = insert_row("projects", {"type": "recurring", **store_project_values(values)})
        return jsonify(serialize_project(fetch_owned("projects", project_id, "Project"))), 201

    @app.route("/api/projects/<project_id>", methods=("PATCH", "DELETE"))
    @login_required
    def project_detail(project_id):
        recurring = "AND type = 'recurring'"
        if request.method == "DELETE":
            return delete_row("projects", project_id, "Project", recurring)
        existing = serialize_project(fetch_owned("projects", project_id, "Project", recurring))
        changes = collect_fields(json_body(), PROJECT_FIELDS, partial=True)
        check_project_schedule({**existing, **changes})
        update_row("projects", project_id, store_project_values(changes))
        return jsonify(serialize_project(fetch_owned("projects", project_id, "Project")))

    @app.post("/api/projects/<project_id>/toggle")
    @login_required
    def toggle_project(project_id):
        project = fetch_owned("projects", project_id, "Project", "AND type = 'recurring'")
        update_row("projects", project_id, {"is_active": 0 if project["is_active"] else 1})
        return jsonify(serialize_project(fetch_owned("projects", project_id, "Project")))

    @app.route("/api/income/single-shot", methods=("GET", "POST"))
    @login_required
    def single_shot_income():
        if request.method == "GET":
            return list_rows("projects", serialize_project, "AND type = 'single_shot'")
        values = collect_fields(json_body(), SINGLE_SHOT_INCOME_FIELDS)
        income_id = insert_row("projects", {"type": "single_shot", **values})
        return jsonify(serialize_project(fetch_owned("projects", income_id, "Income"))), 201

    @app.route("/api/income/single-shot/<income_id>", methods=("PATCH", "DELETE"))
    @login_required
    def single_shot_income_detail(income_id):
        single_shot = "AND type = 'single_shot'"
        if request.method == "DELETE":
            return delete_row("projects", income_id, "Income", single_shot)
        fetch_owned("projects", income_id, "Income", single_shot)
        update_row("projects", income_id, collect_fields(json_body(), SINGLE_SHOT_INCOME_FIELDS, partial=True))
        return jsonify(serialize_project(fetch_owned("projects", income_id, "Income")))

    # -- expenses ------------------------------------------------------------

    @app.route("/api/expenses/fixed", methods=("GET", "POST"))
    @login_required
    def fixed_expenses():
        if request.method == "GET":
            return list_rows("expenses", serialize_expense, "AND type = 'fixed'")
        values = collect_fields(json_body(), FIXED_EXPENSE_FIELDS)
        values["is_active"] = int(values.get("is_active", True))
        expense_id = insert_row("expenses", {"type": "fixed", **values})
        return jsonify(serialize_expense(fetch_owned("expenses", expense_id, "Expense"))), 201

    @app.route("/api/expenses/fixed/<expense_id>", methods=("PATCH", "DELETE"))
    @login_required
    def fixed_expense_detail(expense_id):
        fixed = "AND type = 'fixed'"
        if request.method == "DELETE":
            return delete_row("expenses", expense_id, "Expense", fixed)
        fetch_owned("expenses", expense_id, "Expense", fixed)
        changes = collect_fields(json_body(), FIXED_EXPENSE_FIELDS, partial=True)
        if "is_active" in changes:
            changes["is_active"] = int(changes["is_active"])
        update_row("expenses", expense_id, changes)
        return jsonify(serialize_expense(fetch_owned("expenses", expense_id, "Expense")))

    @app.post("/api/expenses/fixed/<expense_id>/toggle")
    @login_required
    def toggle_fixed_expense(expense_id):
        expense = fetch_owned("expenses", expense_id, "Expense", "AND type = 'fixed'")
        update_row("expenses", expense_id, {"is_active": 0 if expense["is_active"] else 1})
        return jsonify(serialize_expense(fetch_owned("expenses", expense_id, "Expense")))

    @app.route("/api/expenses/single-shot", methods=("GET", "POST"))
    @login_required
    def single_shot_expenses():
        if request.method == "GET":
            return list_rows("expenses", serialize_expense, "AND type = 'single_shot'")
        values = collect_fields(json_body(), SINGLE_SHOT_EXPENSE_FIELDS)
        expense_id = insert_row("expenses", {"type": "single_shot", **values})
        return jsonify(serialize_expense(fetch_owned("expenses", expense_id, "Expense"))), 201

    @app.route("/api/expenses/single-shot/<expense_id>", methods=("PATCH", "DELETE"))
    @login_required
    def single_shot_expense_detail(expense_id):
        single_shot = "AND type = 'single_shot'"
        if request.method == "DELETE":
            return delete_row("expenses", expense_id, "Expense", single_shot)
        fetch_owned("expenses", expense_id, "Expense", single_shot)
        update_row("expenses", expense_id, collect_fields(json_body(), SINGLE_SHOT_EXPENSE_FIELDS, partial=True))
        return jsonify(serialize_expense(fetch_owned("expenses", expense_id, "Expense")))

    # -- credit cards ----------------------------------------------------------

    @app.route("/api/credit-cards", methods=("GET", "POST"))
    @login_required
    def credit_cards():
        if request.method == "GET":
            return list_rows("credit_cards", serialize_credit_card)
        values = collect_fields(json_body(), CREDIT_CARD_FIELDS)
        check_owner(values.get("owner_id"))
        values["balance_updated_at"] = now_text()
        card_id = insert_row("credit_cards", values)
        return jsonify(serialize_credit_card(fetch_owned("credit_cards", card_id, "Credit card"))), 201

    @app.route("/api/credit-cards/<card_id>", methods=("PATCH", "DELETE"))
    @login_required
    def credit_card_detail(card_id):
        if request.method == "DELETE":
            return delete_row("credit_cards", card_id, "Credit card")
        fetch_owned("credit_cards", card_id, "Credit card")
        changes = collect_fields(json_body(), CREDIT_CARD_FIELDS, partial=True)
        check_owner(changes.get("owner_id"))
        if "statement_balance" in changes:
            changes["balance_updated_at"] = now_text()
        update_row("credit_cards", card_id, changes)
        return jsonify(serialize_credit_card(fetch_owned("credit_cards", card_id, "Credit card")))

    @app.route("/api/credit-cards/<card_id>/future-statements", methods=("GET", "POST"))
    @login_required
    def future_statements(card_id):
        fetch_owned("credit_cards", card_id, "Credit card")
        if request.method == "GET":
            rows = get_db().execute(
                """
                SELECT * FROM future_statements
                WHERE credit_card_id = ? AND group_id = ?
                ORDER BY target_year ASC, target_month ASC
                """,
                (card_id, g.group_id),
            ).fetchall()
            return jsonify([serialize_future_statement(row) for row in rows])

        values = collect_fields(json_body(), FUTURE_STATEMENT_FIELDS)
        try:
            statement_id = insert_row("future_statements", {"credit_card_id": card_id, **values})
        except INTEGRITY_ERRORS:
            get_db().rollback()
            raise ApiError("A statement for this card and month already exists.", 409) from None
        return jsonify(serialize_future_statement(fetch_owned("future_statements", statement_id, "Statement"))), 201

    @app.route("/api/future-statements/<statement_id>", methods=("PATCH", "DELETE"))
    @login_required
    def future_statement_detail(statement_id):
        if request.method == "DELETE":
            return delete_row("future_statements", statement_id, "Statement")
        fetch_owned("future_statements", statement_id, "Statement")
        changes = collect_fields(json_body(), FUTURE_STATEMENT_FIELDS, partial=True)
        try:
            update_row("future_statements", statement_id, changes)
        except INTEGRITY_ERRORS:
            get_db().rollback()
            raise ApiError("A statement for this card and month already exists.", 409) from None
        return jsonify(serialize_future_statement(fetch_owned("future_statements", statement_id, "Statement")))

    # -- quick balance update ----------------------------------------------------

    def balance_meta(row, now):
        return {
            "id": row["id"],
            "name": row["name"],
            "owner_id": row["owner_id"],
            "balance_updated_at": row["balance_updated_at"],
            "days_since_update": days_since_update(row["balance_updated_at"], now),
            "freshness": balance_freshness(row["balance_updated_at"], now),
        }

    @app.get("/api/balances")
    @login_required
    def balances():
        db = get_db()
        now = now_utc()
        items = []
        for row in db.execute(
            "SELECT * FROM accounts WHERE group_id = ? ORDER BY created_at ASC", (g.group_id,)
        ).fetchall():
            items.append({"kind": "account", "account_type": row["type"], "balance": row["balance"], **balance_meta(row, now)})
        for row in db.execute(
            "SELECT * FROM credit_cards WHERE group_id = ? ORDER BY created_at ASC", (g.group_id,)
        ).fetchall():
            items.append({"kind": "card", "account_type": None, "balance": row["statement_balance"], **balance_meta(row, now)})
        return jsonify(items)

    @app.put("/api/accounts/<account_id>/balance")
    @login_required
    def update_account_balance(account_id):
        fetch_owned("accounts", account_id, "Account")
        changes = collect_fields(json_body(), [("balance", clean_balance, True)])
        update_row("accounts", account_id, {**changes, "balance_updated_at": now_text()})
        return jsonify(serialize_account(fetch_owned("accounts", account_id, "Account")))

    @app.put("/api/credit-cards/<card_id>/balance")
    @login_required
    def update_credit_card_balance(card_id):
        fetch_owned("credit_cards", card_id, "Credit card")
        changes = collect_fields(json_body(), [("statement_balance", clean_balance, True)])
        update_row("credit_cards", card_id, {**changes, "balance_updated_at": now_text()})
        return jsonify(serialize_credit_card(fetch_owned("credit_cards", card_id, "Credit card")))

    @app.post("/api/balances/mark-updated")
    @login_required
    def mark_all_balances_updated():
        now = now_text()
        db = get_db()
        accounts_updated = db.execute(
            "UPDATE accounts SET balance_updated_at = ?, updated_at = ? WHERE group_id = ?",
            (now, now, g.group_id),
        ).rowcount
        cards_updated = db.execute(
            "UPDATE credit_cards SET balance_updated_at = ?, updated_at = ? WHERE group_id = ?",
            (now, now, g.group_id),
        ).rowcount
        db.commit()
        return jsonify({"accounts": accounts_updated, "credit_cards": cards_updated, "balance_updated_at": now})

    # -- projection ------------------------------------------------------------

    def group_projection_days():
        stored = get_group_preference(get_db(), g.group_id, PROJECTION_DAYS_KEY)
        if stored and stored.isdigit() and int(stored) in PROJECTION_DAY_OPTIONS:
            return int(stored)
        return app.config["DEFAULT_PROJECTION_DAYS"]

    def resolve_projection_days(raw):
        if raw in (None, ""):
            return group_projection_days()
        if not str(raw).isdigit() or int(raw) not in PROJECTION_DAY_OPTIONS:
            raise ApiError(
                f"days must be one of: {', '.join(str(option) for option in PROJECTION_DAY_OPTIONS)}.",
                details={"field": "days"},
            )
        return int(raw)

    def build_projection(inputs, projection_days):
        today = current_date()
        estimated = calculate_estimated_today_balance(inputs, app.config["TIMEZONE"], today)
        if estimated["has_base"]:
            projection = rebase_projection_from_estimated_today(inputs, estimated, projection_days)
        else:
            projection = calculate_cashflow(inputs, projection_days, start_date=today, today=today)
        return projection, estimated

    @app.get("/api/dashboard")
    @login_required
    def dashboard():
        projection_days = resolve_projection_days(request.args.get("days"))
        inputs = load_finance_inputs(get_db(), g.group_id)
        projection, estimated = build_projection(inputs, projection_days)
        has_data = has_finance_data(inputs)
        stats = summary_stats(projection) if has_data else None
        return jsonify(to_jsonable({
            "projection_days": projection_days,
            "has_data": has_data,
            "projection": projection,
            "estimated_today": estimated,
            "danger_ranges": get_danger_ranges(projection["days"]),
            "summary": stats,
            "health": health_indicator(stats, inputs["accounts"], inputs["credit_cards"], now_utc()),
        }))

    @app.post("/api/month-progression")
    @login_required
    def month_progression():
        return jsonify(check_and_progress_month(get_db(), g.group_id, current_date(), now_text()))

    # -- snapshots -------------------------------------------------------------

    @app.route("/api/snapshots", methods=("GET", "POST"))
    @login_required
    def snapshots():
        db = get_db()
        if request.method == "GET":
            return jsonify(list_snapshots(db, g.group_id))

        payload = json_body()
        name = clean_name(payload.get("name"), "name")
        projection_days = resolve_projection_days(payload.get("days"))
        inputs = load_finance_inputs(db, g.group_id)
        projection, _ = build_projection(inputs, projection_days)
        data = build_snapshot_data(inputs, projection, projection_days)
        snapshot = create_snapshot(db, g.group_id, name, data, now_text())
        db.commit()
        return jsonify(snapshot), 201

    @app.route("/api/snapshots/<snapshot_id>", methods=("GET", "DELETE"))
    @login_required
    def snapshot_detail(snapshot_id):
        db = get_db()
        if request.method == "DELETE":
            deleted = db.execute(
                "DELETE FROM projection_snapshots WHERE id = ? AND group_id = ?", (snapshot_id, g.group_id)
            ).rowcount
            db.commit()
            if not deleted:
                raise NotFoundError("Snapshot not found.")
            return jsonify({"deleted": snapshot_id})

        row = db.execute(
            "SELECT * FROM projection_snapshots WHERE id = ? AND group_id = ?", (snapshot_id, g.group_id)
        ).fetchone()
        if row is None:
            raise NotFoundError("Snapshot not found.")
        if not is_schema_version_compatible(row["schema_version"]):
            raise ApiError(
                "This snapshot was saved by a newer version and cannot be displayed.",
                409,
                details={"schema_version": row["schema_version"]},
            )
        return jsonify({
            "id": row["id"],
            "name": row["name"],
            "schema_version": row["schema_version"],
            "created_at": row["created_at"],
            "data": json.loads(row["data"]),
        })

    # -- notifications -----------------------------------------------------------

    @app.get("/api/notifications")
    @login_required
    def notifications():
        rows = get_db().execute(
            "SELECT * FROM notifications WHERE user_id = ? ORDER BY created_at DESC", (g.user["id"],)
        ).fetchall()
        items = [row_to_dict(row) for row in rows]
        return jsonify({
            "notifications": items,
            "unread_count": sum(1 for item in items if item["read_at"] is None),
        })

    def stamp_notification(notification_id, column):
        db = get_db()
        notification = db.execute(
            "SELECT id FROM notifications WHERE id = ? AND user_id = ?", (notification_id, g.user["id"])
        ).fetchone()
        if notification is None:
            raise NotFoundError("Notification not found.")
        now = now_text()
        db.execute(
            f"UPDATE notifications SET {column} = ?, updated_at = ? WHERE id = ? AND {column} IS NULL",
            (now, now, notification_id),
        )
        db.commit()
        return jsonify(row_to_dict(db.execute("SELECT * FROM notifications WHERE id = ?", (notification_id,)).fetchone()))

    @app.post("/api/notifications/<notification_id>/read")
    @login_required
    def mark_notification_read(notification_id):
        return stamp_notification(notification_id, "read_at")

    @app.post("/api/notifications/<notification_id>/email-sent")
    @login_required
    def mark_notification_email_sent(notification_id):
        return stamp_notification(notification_id, "email_sent_at")

    # -- onboarding ----------------------------------------------------------------

    def setup_counts(db):
        counts = {}
        for key, table in (("accounts", "accounts"), ("income", "projects"), ("expenses", "expenses")):
            counts[key] = db.execute(
                f"SELECT COUNT(*) FROM {table} WHERE group_id = ?", (g.group_id,)
            ).fetchone()[0]
        return counts

    def onboarding_payload(db):
        state = db.execute(
            "SELECT * FROM onboarding_states WHERE user_id = ? AND group_id = ?", (g.user["id"], g.group_id)
        ).fetchone()
        counts = setup_counts(db)
        minimum_complete = is_minimum_setup_complete(counts["accounts"], counts["income"], counts["expenses"])
        profile = get_user_profile(db, g.user["id"])
        initial_step = determine_initial_step(
            bool(profile and profile["name"]),
            True,
            counts["accounts"] > 0,
            counts["income"] > 0,
            counts["expenses"] > 0,
        )
        status = state["status"] if state else None
        current_step = state["current_step"] if state else initial_step
        return {
            "status": status,
            "current_step": current_step,
            "progress": calculate_progress(current_step),
            "auto_shown_at": state["auto_shown_at"] if state else None,
            "can_auto_show": can_auto_show(status, state["auto_shown_at"] if state else None, minimum_complete),
            "is_minimum_setup_complete": minimum_complete,
            "counts": counts,
            "steps": ONBOARDING_STEPS,
        }

    def save_onboarding(db, **fields):
        now = now_text()
        existing = db.execute(
            "SELECT id FROM onboarding_states WHERE user_id = ? AND group_id = ?", (g.user["id"], g.group_id)
        ).fetchone()
        if existing is None:
            record = {
                "id": new_id(),
                "user_id": g.user["id"],
                "group_id": g.group_id,
                "status": "in_progress",
                "current_step": STEP_ORDER[0],
                **fields,
                "created_at": now,
                "updated_at": now,
            }
            columns = ", ".join(record)
            placeholders = ", ".join("?" for _ in record)
            db.execute(f"INSERT INTO onboarding_states ({columns}) VALUES ({placeholders})", tuple(record.values()))
        else:
            changes = {**fields, "updated_at": now}
            assignments = ", ".join(f"{column} = ?" for column in changes)
            db.execute(f"UPDATE onboarding_states SET {assignments} WHERE id = ?", (*changes.values(), existing["id"]))
        db.commit()

    @app.get("/api/onboarding")
    @login_required
    def onboarding():
        return jsonify(onboarding_payload(get_db()))

    @app.post("/api/onboarding/<action>")
    @login_required
    def onboarding_action(action):
        db = get_db()
        state = onboarding_payload(db)
        payload = json_body()
        now = now_text()

        if action == "start":
            if payload.get("auto"):
                if not state["can_auto_show"]:
                    return jsonify({**state, "started": False})
                save_onboarding(db, status="in_progress", current_step=state["current_step"], auto_shown_at=now)
            else:
                save_onboarding(db, status="in_progress", current_step=state["current_step"])
        elif action == "step":
            step = payload.get("step")
            if step not in STEP_ORDER:
                raise ApiError(f"Unknown step: {step}", details={"field": "step"})
            save_onboarding(db, status="in_progress", current_step=step)
        elif action == "next":
            next_step = get_next_step(state["current_step"])
            if next_step is None or next_step == "done":
                save_onboarding(db, status="completed", current_step="done", completed_at=now)
            else:
                save_onboarding(db, current_step=next_step)
        elif action == "back":
            previous_step = get_previous_step(state["current_step"])
            if previous_step is not None:
                save_onboarding(db, current_step=previous_step)
        elif action == "dismiss":
            save_onboarding(db, status="dismissed", dismissed_at=now)
        elif action == "complete":
            save_onboarding(db, status="completed", current_step="done", completed_at=now)
        else:
            raise NotFoundError(f"Unknown onboarding action: {action}")

        return jsonify({**onboarding_payload(db), "started": action == "start"})

    # -- tours -------------------------------------------------------------------

    def tour_state(db, tour_key):
        return row_to_dict(db.execute(
            "SELECT tour_key, status, version, completed_at, dismissed_at FROM tour_states WHERE user_id = ? AND tour_key = ?",
            (g.user["id"], tour_key),
        ).fetchone())

    def tour_payload(db, tour_key):
        if tour_key not in TOURS:
            raise NotFoundError(f"Unknown tour: {tour_key}")
        state = tour_state(db, tour_key)
        onboarding_active = request.args.get("onboarding_active") == "1"
        return {
            "definition": get_tour_definition(tour_key),
            "state": state,
            "should_auto_show": should_auto_show_tour(tour_key, state, onboarding_active),
        }

    def save_tour_state(db, tour_key, status):
        now = now_text()
        version = get_tour_definition(tour_key)["version"]
        db.execute(
            """
            INSERT INTO tour_states (id, user_id, tour_key, status, version, completed_at, dismissed_at, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (user_id, tour_key) DO UPDATE SET
                status = excluded.status,
                version = excluded.version,
                completed_at = COALESCE(excluded.completed_at, tour_states.completed_at),
                dismissed_at = COALESCE(excluded.dismissed_at, tour_states.dismissed_at),
                updated_at = excluded.updated_at
            """,
            (
                new_id(),
                g.user["id"],
                tour_key,
                status,
                version,
                now if status == "completed" else None,
                now if status == "dismissed" else None,
                now,
                now,
            ),
        )
        db.commit()

    @app.get("/api/tours")
    @login_required
    def tours():
        db = get_db()
        return jsonify({tour_key: tour_payload(db, tour_key) for tour_key in TOURS})

    @app.get("/api/tours/<tour_key>")
    @login_required
    def tour_detail(tour_key):
        return jsonify(tour_payload(get_db(), tour_key))

    @app.post("/api/tours/<tour_key>/<action>")
    @login_required
    def tour_action(tour_key, action):
        db = get_db()
        tour_payload(db, tour_key)
        if action in ("complete", "dismiss"):
            save_tour_state(db, tour_key, "completed" if action == "complete" else "dismissed")
            return jsonify(tour_payload(db, tour_key))
        if action not in ("next", "previous", "skip"):
            raise NotFoundError(f"Unknown tour action: {action}")

        step_index = json_body().get("step_index", 0)
        if isinstance(step_index, bool) or not isinstance(step_index, int):
            raise ApiError("step_index must be an integer.", details={"field": "step_index"})
        try:
            runner = TourRunner(get_tour_definition(tour_key), step_index)
        except ValueError as exc:
            raise ApiError(str(exc), details={"field": "step_index"}) from None
        status = {"next": runner.next, "previous": runner.previous, "skip": runner.skip}[action]()
        if status != "active":
            save_tour_state(db, tour_key, status)
        return jsonify({
            "status": status,
            "step_index": runner.step_index,
            "step": runner.current_step,
            "total_steps": runner.total_steps,
        })

    # -- preferences -------------------------------------------------------------

    def user_preferences(db):
        rows = db.execute(
            "SELECT key, value FROM user_preferences WHERE user_id = ? ORDER BY key ASC", (g.user["id"],)
        ).fetchall()
        return {row["key"]: row["value"] for row in rows}

    @app.get("/api/preferences")
    @login_required
    def preferences():
        db = get_db()
        prefs = user_preferences(db)
        theme = prefs.get("theme", "system")
        return jsonify({
            "user": prefs,
            "theme": theme,
            "resolved_theme": resolve_theme(theme, request.args.get("system_theme") == "dark"),
            "group": {"projection_days": group_projection_days()},
        })

    @app.route("/api/preferences/<key>", methods=("PUT", "DELETE"))
    @login_required
    def preference_detail(key):
        db = get_db()
        if request.method == "DELETE":
            deleted = db.execute(
                "DELETE FROM user_preferences WHERE user_id = ? AND key = ?", (g.user["id"], key)
            ).rowcount
            db.commit()
            if not deleted:
                raise NotFoundError("Preference not found.")
            return jsonify(user_preferences(db))

        try:
            key, value = validate_preference(key, json_body().get("value"))
        except ValueError as exc:
            raise ApiError(str(exc)) from None
        now = now_text()
        db.execute(
            """
            INSERT INTO user_preferences (id, user_id, key, value, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (user_id, key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            (new_id(), g.user["id"], key, value, now, now),
        )
        db.commit()
        return jsonify(user_preferences(db))

    @app.put("/api/group/preferences/projection-days")
    @login_required
    def set_projection_days():
        value = json_body().get("value")
        if isinstance(value, bool) or value not in PROJECTION_DAY_OPTIONS:
            raise ApiError(
                f"value must be one of: {', '.join(str(option) for option in PROJECTION_DAY_OPTIONS)}.",
                details={"field": "value"},
            )
        db = get_db()
        set_group_preference(db, g.group_id, PROJECTION_DAYS_KEY, str(value), now_text())
        db.commit()
        return jsonify({"projection_days": value})

    # -- dev only ----------------------------------------------------------------

    @app.post("/dev/reset-db")
    def dev_reset_db():
        if not dev_tools_enabled():
            raise NotFoundError("DEV ONLY: database reset is disabled.")
        config = database_config()
        if config["backend"] != "sqlite":
            raise ApiError("DEV ONLY: database reset is only supported for SQLite.")

        db = g.pop("db", None)
        if db is not None:
            db.close()
        db_path = app.config["DATABASE"]
        if os.path.exists(db_path):
            os.remove(db_path)

        init_db()
        session.clear()
        app.logger.warning("DEV ONLY: database reset complete.")
        return jsonify({"ok": True})

    @app.post("/dev/reset-worker/<int:worker_index>")
    def dev_reset_worker(worker_index):
        if not dev_tools_enabled():
            raise NotFoundError("DEV ONLY: worker reset is disabled.")
        return jsonify(reset_worker_data(get_db(), worker_index))

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError:
            pass

    app.get_db = get_db
    app.init_db = init_db
    return app
