"""
End-date arithmetic for new membership periods.

Two policies:
- fixed_days: start + duration_days, exactly (2025-01-01 + 30 -> 2025-01-31)
- monthly_anchor: start + N calendar months, N = max(1, round(duration / 30)),
  with the day clamped to the end of the target month
  (2025-01-31 + 1 month -> 2025-02-28)
"""

from datetime import datetime, timedelta

from dateutil.relativedelta import relativedelta

from gymaccess.config.access_control import EndDatePolicy


def compute_end_date(
    start: datetime,
    duration_days: int,
    policy: EndDatePolicy = EndDatePolicy.FIXED_DAYS,
) -> datetime:
    """
    Deterministic end date for a membership starting at `start`.

    Raises:
        ValueError: If duration_days is not positive
    """
    if duration_days < 1:
        raise ValueError("duration_days must be at least 1")

    if EndDatePolicy(policy) == EndDatePolicy.MONTHLY_ANCHOR:
        months = max(1, round(duration_days / 30))
        return start + relativedelta(months=months)

    return start + timedelta(days=duration_days)
