from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from circulation.config import settings

CENTS = Decimal("0.01")


def days_overdue(due_at: datetime, as_of: datetime) -> int:
    """Whole days elapsed past ``due_at``; partial days do not count."""
    delta = as_of - due_at
    if delta.total_seconds() <= 0:
        return 0
    return delta.days


def compute_fine(
    due_at: datetime,
    now: datetime,
    returned_at: Optional[datetime] = None,
    daily_rate: Optional[Decimal] = None,
) -> Decimal:
    """Fine for a loan, measured up to the return time or ``now``, whichever is earlier."""
    rate = settings.daily_fine_rate if daily_rate is None else Decimal(daily_rate)
    as_of = min(now, returned_at) if returned_at is not None else now
    return (Decimal(days_overdue(due_at, as_of)) * rate).quantize(CENTS, rounding=ROUND_HALF_UP)
