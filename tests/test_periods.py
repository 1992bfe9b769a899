from datetime import date

import pytest

from periods import (
    Period,
    add_months,
    month_end,
    previous_period,
    resolve_period,
    shift_months,
)


TODAY = date(2026, 10, 18)  # a Sunday


def test_week_starts_on_monday() -> None:
    period = resolve_period("week", today=TODAY)

    assert period.start == date(2026, 10, 12)
    assert period.end == date(2026, 10, 18)
    assert period.days == 7


def test_default_period_is_current_month() -> None:
    period = resolve_period(None, today=TODAY)

    assert period == Period("month", date(2026, 10, 1), date(2026, 10, 31))
    assert resolve_period("month", today=TODAY) == period


def test_year_and_last_month() -> None:
    assert resolve_period("year", today=TODAY) == Period(
        "year", date(2026, 1, 1), date(2026, 12, 31)
    )
    assert resolve_period("last_month", today=TODAY) == Period(
        "last_month", date(2026, 9, 1), date(2026, 9, 30)
    )


def test_custom_period_validates_bounds() -> None:
    period = resolve_period("custom", "2026-01-10", "2026-01-20", today=TODAY)
    assert period.days == 11

    with pytest.raises(ValueError):
        resolve_period("custom", "2026-01-20", "2026-01-10", today=TODAY)
    with pytest.raises(ValueError):
        resolve_period("custom", "2026-01-20", None, today=TODAY)


def test_unknown_period_is_rejected() -> None:
    with pytest.raises(ValueError):
        resolve_period("decade", today=TODAY)


def test_previous_period_matches_calendar_shape() -> None:
    month = resolve_period("month", today=TODAY)
    assert previous_period(month) == Period("month", date(2026, 9, 1), date(2026, 9, 30))

    january = Period("month", date(2026, 1, 1), date(2026, 1, 31))
    assert previous_period(january) == Period(
        "month", date(2025, 12, 1), date(2025, 12, 31)
    )

    week = resolve_period("week", today=TODAY)
    assert previous_period(week) == Period("week", date(2026, 10, 5), date(2026, 10, 11))

    year = resolve_period("year", today=TODAY)
    assert previous_period(year) == Period("year", date(2025, 1, 1), date(2025, 12, 31))


def test_previous_period_for_custom_window_has_equal_length() -> None:
    custom = Period("custom", date(2026, 3, 11), date(2026, 3, 20))

    previous = previous_period(custom)

    assert previous.end == date(2026, 3, 10)
    assert previous.days == custom.days


def test_month_arithmetic_clamps_to_month_end() -> None:
    assert add_months(date(2026, 1, 15), -1) == date(2025, 12, 1)
    assert add_months(date(2026, 11, 30), 2) == date(2027, 1, 1)
    assert shift_months(date(2026, 3, 31), -1) == date(2026, 2, 28)
    assert shift_months(date(2026, 10, 18), -2) == date(2026, 8, 18)
    assert month_end(date(2028, 2, 3)) == date(2028, 2, 29)
