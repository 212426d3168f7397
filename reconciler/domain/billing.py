"""Billing-period arithmetic."""

import calendar
from datetime import UTC, datetime

from reconciler.domain.events import BillingCycle


def add_months(moment: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length (Jan 31 + 1 = Feb 28/29)."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def next_period_end(start: datetime, cycle: BillingCycle | str) -> datetime:
    """End of the billing period that begins at ``start``."""
    months = 12 if BillingCycle(cycle) is BillingCycle.ANNUAL else 1
    return add_months(start, months)


def from_timestamp(value: int | float | str | None) -> datetime | None:
    """Parse an epoch timestamp or ISO-8601 string into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=UTC)
    text = str(value).strip()
    if text.isdigit():
        return datetime.fromtimestamp(int(text), tz=UTC)
    parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
