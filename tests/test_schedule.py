from datetime import date

import pytest

from errors import ValidationError
from models import Frequency
from recurrence import add_months, days_in_month, next_occurrence, sunday_weekday


def test_monthly_clamps_to_leap_february():
    assert next_occurrence(date(2024, 1, 31), Frequency.monthly) == date(2024, 2, 29)


def test_monthly_clamps_to_short_february():
    assert next_occurrence(date(2023, 1, 31), Frequency.monthly) == date(2023, 2, 28)


def test_monthly_day_31_clamps_to_february_end():
    assert next_occurrence(
        date(2024, 1, 31), Frequency.monthly, day_of_month=31
    ) == date(2024, 2, 29)
    assert next_occurrence(
        date(2023, 1, 31), Frequency.monthly, day_of_month=31
    ) == date(2023, 2, 28)


def test_monthly_day_of_month_restores_after_short_month():
    assert next_occurrence(
        date(2024, 2, 29), Frequency.monthly, day_of_month=31
    ) == date(2024, 3, 31)


def test_weekly_rolls_forward_to_day_of_week():
    # 2024-03-01 is a Friday; day_of_week=1 is Monday.
    assert next_occurrence(
        date(2024, 3, 1), Frequency.weekly, day_of_week=1
    ) == date(2024, 3, 11)


def test_weekly_on_matching_day_does_not_roll():
    # 2024-03-04 is a Monday.
    assert next_occurrence(
        date(2024, 3, 4), Frequency.weekly, day_of_week=1
    ) == date(2024, 3, 11)


def test_daily_and_biweekly_steps():
    assert next_occurrence(date(2024, 12, 31), Frequency.daily) == date(2025, 1, 1)
    assert next_occurrence(date(2024, 3, 1), "biweekly") == date(2024, 3, 15)


def test_quarterly_crosses_year_and_clamps():
    assert next_occurrence(date(2024, 11, 30), Frequency.quarterly) == date(
        2025, 2, 28
    )


def test_yearly_from_leap_day():
    assert next_occurrence(date(2024, 2, 29), Frequency.yearly) == date(2025, 2, 28)
    assert next_occurrence(date(2023, 6, 15), Frequency.yearly) == date(2024, 6, 15)


def test_unknown_frequency_rejected():
    with pytest.raises(ValidationError):
        next_occurrence(date(2024, 1, 1), "hourly")


def test_calendar_helpers():
    assert days_in_month(2024, 2) == 29
    assert days_in_month(2100, 2) == 28
    assert days_in_month(2024, 12) == 31
    assert add_months(date(2024, 1, 15), -1) == date(2023, 12, 15)
    assert sunday_weekday(date(2024, 3, 3)) == 0
    assert sunday_weekday(date(2024, 3, 9)) == 6
