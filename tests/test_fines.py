from datetime import datetime, timedelta, timezone
from decimal import Decimal

from circulation.fines import compute_fine, days_overdue

DUE = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)
RATE = Decimal("0.50")


def test_no_fine_before_due_date():
    assert compute_fine(DUE, DUE - timedelta(days=2), daily_rate=RATE) == Decimal("0.00")
    assert compute_fine(DUE, DUE, daily_rate=RATE) == Decimal("0.00")


def test_partial_days_are_not_charged():
    assert days_overdue(DUE, DUE + timedelta(hours=23)) == 0
    assert compute_fine(DUE, DUE + timedelta(days=2, hours=20), daily_rate=RATE) == Decimal("1.00")


def test_three_days_late():
    assert compute_fine(DUE, DUE + timedelta(days=3), daily_rate=RATE) == Decimal("1.50")


def test_return_time_caps_the_fine():
    returned = DUE + timedelta(days=1)
    later = DUE + timedelta(days=30)
    assert compute_fine(DUE, later, returned_at=returned, daily_rate=RATE) == Decimal("0.50")


def test_fine_is_non_decreasing_over_time():
    fines = [compute_fine(DUE, DUE + timedelta(hours=h), daily_rate=RATE) for h in range(0, 24 * 10, 7)]
    assert fines == sorted(fines)
