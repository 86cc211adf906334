"""Shared utility functions for the billing service."""

import calendar
import logging
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal

logger = logging.getLogger(__name__)

_CENTS = Decimal("0.01")


def now_utc() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite hands them back without tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def from_timestamp(ts: int | float | None) -> datetime | None:
    """Convert a processor epoch-seconds timestamp into an aware datetime."""
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=UTC)


def add_months(value: datetime, months: int) -> datetime:
    """
    Shift a datetime by whole calendar months, clamping the day.

    Jan 31 + 1 month lands on the last day of February.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def to_money(value) -> Decimal:
    """
    Round a numeric value to 2 decimal places using half-up rounding.

    Args:
        value: int, float, str or Decimal.

    Returns:
        Quantized Decimal.
    """
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(_CENTS, rounding=ROUND_HALF_UP)


def from_minor_units(amount: int | None) -> Decimal:
    """Convert a processor amount in minor units (cents) to a Decimal amount."""
    return to_money(Decimal(amount or 0) / 100)


def setup_logging(verbose: bool = False) -> None:
    """
    Configure logging for the application.

    Args:
        verbose: If True, set DEBUG level; otherwise INFO.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
