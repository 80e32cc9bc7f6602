import pytest

from cashflow_tracker.guidance import (
    STEP_ORDER,
    TourRunner,
    calculate_progress,
    can_auto_show,
    determine_initial_step,
    get_next_step,
    get_previous_step,
    get_step_config,
    get_total_steps,
    get_tour_definition,
    is_minimum_setup_complete,
    resolve_theme,
    should_auto_show_tour,
    validate_preference,
)


def test_step_navigation():
    assert STEP_ORDER[0] == "profile"
    assert get_next_step("profile") == "group"
    assert get_next_step("done") is None
    assert get_previous_step("profile") is None
    assert get_previous_step("income") == "bank_account"
    assert get_next_step("unknown") is None
    assert get_total_steps() == 6
    assert get_step_config("income")["optional"] is True
    with pytest.raises(ValueError):
        get_step_config("unknown")


def test_progress_is_capped_at_last_visible_step():
    assert calculate_progress("profile") == 0
    assert calculate_progress("bank_account") == 40
    assert calculate_progress("credit_card") == 100
    assert calculate_progress("done") == 100
    assert calculate_progress("unknown") == 0


def test_auto_show_rules():
    assert can_auto_show(None, None, False) is True
    assert can_auto_show("in_progress", "2026-03-10T00:00:00+00:00", False) is False
    assert can_auto_show("dismissed", None, False) is False
    assert can_auto_show("completed", None, False) is False
    assert can_auto_show(None, None, True) is False
    assert is_minimum_setup_complete(1, 1, 1) is True
    assert is_minimum_setup_complete(1, 0, 1) is False


def test_initial_step_skips_finished_setup():
    assert determine_initial_step(False, False, False, False, False) == "profile"
    assert determine_initial_step(True, True, False, False, False) == "bank_account"
    assert determine_initial_step(True, True, True, True, False) == "expense"
    assert determine_initial_step(True, True, True, True, True) == "credit_card"


def test_tour_auto_show():
    assert should_auto_show_tour("dashboard", None) is True
    assert should_auto_show_tour("dashboard", None, onboarding_active=True) is False
    assert should_auto_show_tour("dashboard", {"status": "completed", "version": 1}) is False
    assert should_auto_show_tour("dashboard", {"status": "completed", "version": 0}) is True
    assert should_auto_show_tour("dashboard", {"status": "dismissed", "version": 0}) is False
    with pytest.raises(KeyError):
        get_tour_definition("settings")


def test_tour_runner_walks_and_finishes():
    runner = TourRunner(get_tour_definition("dashboard"))
    assert runner.is_first_step
    assert runner.previous() == "active"
    assert runner.step_index == 0

    for _ in range(4):
        assert runner.next() == "active"
    assert runner.is_last_step
    assert runner.current_step["title"] == "Save projection"

    assert runner.next() == "completed"
    assert runner.current_step is None
    assert runner.skip() == "completed"


def test_tour_runner_skip_and_bounds():
    runner = TourRunner(get_tour_definition("history"))
    assert runner.is_first_step and runner.is_last_step
    assert runner.skip() == "dismissed"
    assert runner.next() == "dismissed"

    with pytest.raises(ValueError):
        TourRunner(get_tour_definition("history"), step_index=1)


def test_preference_validation():
    assert validate_preference("theme", "dark") == ("theme", "dark")
    assert validate_preference("chart_style", "area") == ("chart_style", "area")
    with pytest.raises(ValueError):
        validate_preference("theme", "sepia")
    with pytest.raises(ValueError):
        validate_preference("bad-key", "x")
    with pytest.raises(ValueError):
        validate_preference("k" * 51, "x")
    with pytest.raises(ValueError):
        validate_preference("note", "")


def test_resolve_theme():
    assert resolve_theme("system", system_prefers_dark=True) == "dark"
    assert resolve_theme("system") == "light"
    assert resolve_theme("dark") == "dark"
