"""
Pure cash ledger rules: movement types, amount validation, reason cleanup and
date-range normalization. Nothing in here touches the database.
"""
from __future__ import annotations

import math
import re
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Optional

from backend.app.services import cash_errors

MAX_MOVEMENT_AMOUNT = 10_000_000
MAX_REASON_LENGTH = 200

_CENTS = Decimal("0.01")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_TRUTHY = {"1", "true", "yes", "on"}


class MovementType(str, Enum):
    IN = "IN"
    OUT = "OUT"
    SALE = "SALE"
    RETURN = "RETURN"
    ADJUSTMENT = "ADJUSTMENT"


POSITIVE_ONLY_TYPES = frozenset({MovementType.IN, MovementType.OUT, MovementType.SALE})


class SessionStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


def parse_movement_type(raw: Any) -> MovementType:
    if isinstance(raw, MovementType):
        return raw
    if not isinstance(raw, str):
        raise cash_errors.InvalidMovementType()
    try:
        return MovementType(raw)
    except ValueError as exc:
        raise cash_errors.InvalidMovementType() from exc


def round_amount(amount: float) -> float:
    """Round half-up to cents, working from the decimal repr of the input."""
    return float(Decimal(str(amount)).quantize(_CENTS, rounding=ROUND_HALF_UP))


def validate_movement_amount(movement_type: MovementType, amount: Any) -> float:
    """
    Returns the amount to persist (rounded to cents, sign untouched) or raises
    the matching validation error.

    Finiteness and magnitude are checked on the submitted value; the zero and
    sign rules are checked on the rounded value so the stored row always
    satisfies them.
    """
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise cash_errors.InvalidAmount()
    if not math.isfinite(amount):
        raise cash_errors.InvalidAmount()
    if abs(amount) > MAX_MOVEMENT_AMOUNT:
        raise cash_errors.AmountTooLarge()

    rounded = round_amount(amount)

    if rounded == 0:
        # Zero-value sales are a deliberate exception (e.g. fully discounted tickets).
        if movement_type is MovementType.SALE:
            return 0.0
        raise cash_errors.ZeroAmountNotAllowed()
    if movement_type is MovementType.RETURN and rounded >= 0:
        raise cash_errors.ReturnMustBeNegative()
    if movement_type in POSITIVE_ONLY_TYPES and rounded <= 0:
        raise cash_errors.AmountMustBePositive()
    return rounded


def sanitize_reason(reason: Any) -> Optional[str]:
    if not isinstance(reason, str):
        return None
    return _CONTROL_CHARS.sub("", reason[:MAX_REASON_LENGTH])


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_range_bound(raw: Optional[str], end_of_range: bool) -> Optional[str]:
    """
    Expands a date-only value to the first or last second of that day.
    Full timestamps (anything containing "T") pass through untouched.
    """
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    if "T" in value:
        return value
    try:
        date.fromisoformat(value)
    except ValueError as exc:
        raise cash_errors.InvalidDate(f"Invalid date: {value!r}") from exc
    return f"{value}{'T23:59:59' if end_of_range else 'T00:00:00'}"


def parse_range_bound(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise cash_errors.InvalidDate(f"Invalid date: {value!r}") from exc
    return as_utc(parsed)


def resolve_range(raw_from: Optional[str], raw_to: Optional[str]) -> tuple[Optional[datetime], Optional[datetime]]:
    return (
        parse_range_bound(normalize_range_bound(raw_from, end_of_range=False)),
        parse_range_bound(normalize_range_bound(raw_to, end_of_range=True)),
    )


def clamp_to_closed_at(upper: Optional[datetime], closed_at: Optional[datetime]) -> Optional[datetime]:
    """A closed session's report never extends past its closing time."""
    if upper is None or closed_at is None:
        return upper
    closed_at = as_utc(closed_at)
    return closed_at if closed_at < upper else upper


def parse_optional_number(raw: Optional[str]) -> Optional[float]:
    if raw is None or not raw.strip():
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def is_truthy(raw: Optional[str]) -> bool:
    return bool(raw) and raw.strip().lower() in _TRUTHY
