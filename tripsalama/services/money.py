from decimal import Decimal, ROUND_HALF_UP

from tripsalama.config import get_settings
from tripsalama.errors import InvalidInputError

settings = get_settings()

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Coerce a float/int/str/Decimal into a two-decimal amount."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def positive_amount(value) -> Decimal:
    amount = to_money(value)
    if amount <= 0:
        raise InvalidInputError("Amount must be positive")
    return amount


def commission_split(amount: Decimal, rate: float | None = None) -> tuple[Decimal, Decimal]:
    """
    Returns (commission, driver_earnings) for a ride fare.
    The commission is rounded to the cent and the driver keeps the rest,
    so the two always add back up to ``amount``.
    """
    rate = settings.commission_rate if rate is None else rate
    commission = to_money(amount * Decimal(str(rate)))
    return commission, to_money(amount) - commission
