from datetime import date

import pytest

from apartment_ledger.dates import (
    days_in_month, get_first_day_of_month, month_range,
    parse_month, remaining_days_in_month, same_month,
)
from apartment_ledger.exceptions import ValidationError


def test_month_boundaries():
    assert get_first_day_of_month(2026, 4) == date(2026, 4, 1)
    assert days_in_month(2024, 2) == 29
    assert days_in_month(2026, 2) == 28


def test_remaining_days_include_the_day_itself():
    assert remaining_days_in_month(date(2026, 4, 16)) == 15
    assert remaining_days_in_month(date(2026, 4, 1)) == 30
    assert remaining_days_in_month(date(2026, 4, 30)) == 1


def test_month_label_parsing():
    assert parse_month('2026-03') == (2026, 3)
    assert same_month(date(2026, 3, 1), date(2026, 3, 31))
    assert not same_month(date(2026, 3, 1), date(2025, 3, 1))


@pytest.mark.parametrize('label', ['2026-3', '2026-13', '26-03', '', None, '2026-00'])
def test_parse_month_rejects_bad_labels(label):
    with pytest.raises(ValidationError):
        parse_month(label)


def test_month_range_crosses_year_end():
    assert month_range(date(2025, 11, 20), date(2026, 2, 1)) == ['2025-11', '2025-12', '2026-01', '2026-02']


def test_month_range_is_empty_when_end_precedes_start():
    assert month_range(date(2026, 5, 1), date(2026, 4, 30)) == []
