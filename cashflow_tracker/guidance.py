"""Onboarding wizard steps, page tours and user preferences."""

import re


ONBOARDING_STEPS = [
    {"id": "profile", "title": "Your profile", "description": "Set your display name", "optional": False},
    {"id": "group", "title": "Your group", "description": "Name your finance group", "optional": False},
    {"id": "bank_account", "title": "Bank account", "description": "Add your first bank account", "optional": False},
    {"id": "income", "title": "Income", "description": "Add your first income source (optional)", "optional": True},
    {"id": "expense", "title": "Expense", "description": "Add your first fixed expense (optional)", "optional": True},
    {"id": "credit_card", "title": "Credit card", "description": "Add a credit card (optional)", "optional": True},
    {"id": "done", "title": "All set!", "description": "Minimum setup complete", "optional": False},
]
STEP_ORDER = [step["id"] for step in ONBOARDING_STEPS]
ONBOARDING_STATUSES = ("in_progress", "dismissed", "completed")


def get_step_config(step):
    for config in ONBOARDING_STEPS:
        if config["id"] == step:
            return config
    raise ValueError(f"Unknown step: {step}")


def get_next_step(step):
    if step not in STEP_ORDER:
        return None
    index = STEP_ORDER.index(step)
    if index >= len(STEP_ORDER) - 1:
        return None
    return STEP_ORDER[index + 1]


def get_previous_step(step):
    if step not in STEP_ORDER:
        return None
    index = STEP_ORDER.index(step)
    if index <= 0:
        return None
    return STEP_ORDER[index - 1]


def get_total_steps():
    # "done" is internal and never shown as a step of its own.
    return len(STEP_ORDER) - 1


def calculate_progress(step):
    if step not in STEP_ORDER:
        return 0
    total_steps = get_total_steps()
    if total_steps <= 1:
        return 0
    last_visible_index = total_steps - 1
    index = min(STEP_ORDER.index(step), last_visible_index)
    return round(index / max(1, last_visible_index) * 100)


def is_minimum_setup_complete(account_count, income_count, expense_count):
    return account_count >= 1 and income_count >= 1 and expense_count >= 1


def can_auto_show(status, auto_shown_at, minimum_setup_complete):
    if status in ("completed", "dismissed"):
        return False
    if auto_shown_at is not None:
        return False
    return not minimum_setup_complete


def determine_initial_step(has_profile, has_group, has_account, has_income, has_expense):
    """First step the wizard should open on, skipping everything already set up."""
    for done, step in (
        (has_profile, "profile"),
        (has_group, "group"),
        (has_account, "bank_account"),
        (has_income, "income"),
        (has_expense, "expense"),
    ):
        if not done:
            return step
    return "credit_card"


# -- tours -------------------------------------------------------------------

TOURS = {
    "dashboard": {
        "key": "dashboard",
        "version": 1,
        "title": "Meet the dashboard",
        "steps": [
            {
                "target": '[data-tour="projection-selector"]',
                "title": "Projection period",
                "content": "Pick how many days of cashflow projection you want to see.",
                "placement": "bottom",
            },
            {
                "target": '[data-tour="cashflow-chart"]',
                "title": "Cashflow chart",
                "content": "Your projected balance over time. Red areas mark days when the balance may go negative.",
                "placement": "top",
            },
            {
                "target": '[data-tour="summary-panel"]',
                "title": "Summary",
                "content": "Income, expenses and projected balance for the selected period.",
                "placement": "top",
            },
            {
                "target": '[data-tour="quick-update"]',
                "title": "Update balances",
                "content": "Keep balances current for accurate projections. Weekly updates work well.",
                "placement": "left",
            },
            {
                "target": '[data-tour="save-snapshot"]',
                "title": "Save projection",
                "content": "Save a snapshot of the current projection to compare against later ones.",
                "placement": "left",
            },
        ],
    },
    "manage": {
        "key": "manage",
        "version": 1,
        "title": "Meet the management page",
        "steps": [
            {
                "target": '[data-tour="manage-tabs"]',
                "title": "Management tabs",
                "content": "Switch between accounts, income, expenses, cards and group.",
                "placement": "bottom",
            },
            {
                "target": '[data-tour="accounts-tab"]',
                "title": "Bank accounts",
                "content": "Add your bank accounts and keep their balances current.",
                "placement": "bottom",
            },
            {
                "target": '[data-tour="projects-tab"]',
                "title": "Income sources",
                "content": "Register recurring income such as salary and one-off income such as bonuses.",
                "placement": "bottom",
            },
            {
                "target": '[data-tour="expenses-tab"]',
                "title": "Expenses",
                "content": "Record fixed expenses like rent and one-off expenses like trips.",
                "placement": "bottom",
            },
            {
                "target": '[data-tour="cards-tab"]',
                "title": "Credit cards",
                "content": "Add your cards and register future statements to include them in the projection.",
                "placement": "bottom",
            },
        ],
    },
    "history": {
        "key": "history",
        "version": 1,
        "title": "Meet the history page",
        "steps": [
            {
                "target": '[data-tour="snapshot-list"]',
                "title": "Saved projections",
                "content": "Every projection you saved. Open one to see its details and compare with today.",
                "placement": "top",
            },
        ],
    },
}
TOUR_STATUSES = ("completed", "dismissed")


def get_tour_definition(tour_key):
    if tour_key not in TOURS:
        raise KeyError(tour_key)
    return TOURS[tour_key]


def is_tour_updated(tour_key, seen_version):
    return get_tour_definition(tour_key)["version"] > seen_version


def should_auto_show_tour(tour_key, state, onboarding_active=False):
    if onboarding_active:
        return False
    if state is None:
        return True
    return state["status"] == "completed" and is_tour_updated(tour_key, state["version"])


class TourRunner:
    """Step sequencing for one tour: next, previous, skip and finish."""

    def __init__(self, definition, step_index=0):
        self.definition = definition
        self.total_steps = len(definition["steps"])
        if not 0 <= step_index < self.total_steps:
            raise ValueError(f"Step index out of range: {step_index}")
        self.step_index = step_index
        self.status = "active"

    @property
    def current_step(self):
        if self.status != "active":
            return None
        return self.definition["steps"][self.step_index]

    @property
    def is_first_step(self):
        return self.step_index == 0

    @property
    def is_last_step(self):
        return self.step_index == self.total_steps - 1

    def next(self):
        if self.status != "active":
            return self.status
        if self.is_last_step:
            self.status = "completed"
        else:
            self.step_index += 1
        return self.status

    def previous(self):
        if self.status == "active" and not self.is_first_step:
            self.step_index -= 1
        return self.status

    def skip(self):
        if self.status == "active":
            self.status = "dismissed"
        return self.status


# -- preferences -------------------------------------------------------------

THEME_VALUES = ("light", "dark", "system")
PREFERENCE_KEY_RE = re.compile(r"^[a-zA-Z0-9_]+$")


def validate_preference(key, value):
    if not isinstance(key, str) or not 1 <= len(key) <= 50:
        raise ValueError("Preference key must be 1-50 characters")
    if not PREFERENCE_KEY_RE.match(key):
        raise ValueError("Preference key must contain only letters, numbers, and underscores")
    if not isinstance(value, str) or not 1 <= len(value) <= 500:
        raise ValueError("Preference value must be 1-500 characters")
    if key == "theme" and value not in THEME_VALUES:
        raise ValueError(f"Theme must be one of: {', '.join(THEME_VALUES)}")
    return key, value


def resolve_theme(theme, system_prefers_dark=False):
    if theme == "system":
        return "dark" if system_prefers_dark else "light"
    return theme
