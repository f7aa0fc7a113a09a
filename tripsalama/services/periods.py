from datetime import datetime, timedelta

from tripsalama.database import utcnow


def calendar_start(period: str | None, now: datetime | None = None) -> datetime | None:
    """
    Start of the calendar period containing ``now``:
    today -> midnight, week -> Monday midnight, month -> the 1st.
    Anything else means all time (None).
    """
    now = now or utcnow()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period in ("today", "day"):
        return midnight
    if period == "week":
        return midnight - timedelta(days=midnight.weekday())
    if period == "month":
        return midnight.replace(day=1)
    return None


def rolling_start(period: str | None, now: datetime | None = None) -> datetime | None:
    """Trailing window used by ledger reports: day, 7, 30 or 365 days."""
    now = now or utcnow()
    if period in ("today", "day"):
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    windows = {"week": 7, "month": 30, "year": 365}
    if period in windows:
        return now - timedelta(days=windows[period])
    return None
