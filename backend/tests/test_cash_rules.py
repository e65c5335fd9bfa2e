import math
from datetime import datetime, timezone

import pytest

from backend.app.services import cash_errors
from backend.app.services.cash_rules import (
    MAX_MOVEMENT_AMOUNT,
    MovementType,
    clamp_to_closed_at,
    is_truthy,
    normalize_range_bound,
    parse_movement_type,
    parse_optional_number,
    parse_range_bound,
    round_amount,
    sanitize_reason,
    validate_movement_amount,
)


@pytest.mark.parametrize(
    "movement_type, amount",
    [
        (MovementType.IN, 10.0),
        (MovementType.OUT, 0.01),
        (MovementType.SALE, 99.99),
        (MovementType.SALE, 0),
        (MovementType.RETURN, -15.5),
        (MovementType.ADJUSTMENT, 25),
        (MovementType.ADJUSTMENT, -25),
    ],
)
def test_accepted_amounts_respect_sign_conventions(movement_type, amount):
    stored = validate_movement_amount(movement_type, amount)

    if movement_type is MovementType.RETURN:
        assert stored < 0
    elif movement_type is MovementType.SALE and amount == 0:
        assert stored == 0
    elif movement_type in (MovementType.IN, MovementType.OUT, MovementType.SALE):
        assert stored > 0


@pytest.mark.parametrize(
    "movement_type, amount, error",
    [
        (MovementType.RETURN, 15.5, cash_errors.ReturnMustBeNegative),
        (MovementType.IN, -1, cash_errors.AmountMustBePositive),
        (MovementType.OUT, -0.5, cash_errors.AmountMustBePositive),
        (MovementType.SALE, -3, cash_errors.AmountMustBePositive),
        (MovementType.IN, 0, cash_errors.ZeroAmountNotAllowed),
        (MovementType.RETURN, 0, cash_errors.ZeroAmountNotAllowed),
        (MovementType.ADJUSTMENT, 0, cash_errors.ZeroAmountNotAllowed),
        (MovementType.IN, 0.001, cash_errors.ZeroAmountNotAllowed),
        (MovementType.IN, math.inf, cash_errors.InvalidAmount),
        (MovementType.IN, math.nan, cash_errors.InvalidAmount),
        (MovementType.IN, "12", cash_errors.InvalidAmount),
        (MovementType.IN, None, cash_errors.InvalidAmount),
        (MovementType.IN, True, cash_errors.InvalidAmount),
        (MovementType.ADJUSTMENT, -(MAX_MOVEMENT_AMOUNT + 1), cash_errors.AmountTooLarge),
        (MovementType.IN, MAX_MOVEMENT_AMOUNT + 0.01, cash_errors.AmountTooLarge),
    ],
)
def test_rejected_amounts_raise_specific_kind(movement_type, amount, error):
    with pytest.raises(error) as excinfo:
        validate_movement_amount(movement_type, amount)
    assert excinfo.value.status_code == 400
    assert excinfo.value.detail["kind"] == error.kind


def test_magnitude_bound_is_inclusive():
    assert validate_movement_amount(MovementType.IN, MAX_MOVEMENT_AMOUNT) == MAX_MOVEMENT_AMOUNT
    assert validate_movement_amount(MovementType.ADJUSTMENT, -MAX_MOVEMENT_AMOUNT) == -MAX_MOVEMENT_AMOUNT


def test_rounding_is_half_up_and_keeps_sign():
    assert validate_movement_amount(MovementType.IN, 19.995) == 20.00
    assert validate_movement_amount(MovementType.RETURN, -15.5) == -15.50
    assert validate_movement_amount(MovementType.RETURN, -15.505) == -15.51
    assert round_amount(2.675) == 2.68
    assert round_amount(10) == 10.0


def test_parse_movement_type():
    assert parse_movement_type("RETURN") is MovementType.RETURN
    with pytest.raises(cash_errors.InvalidMovementType):
        parse_movement_type("return")
    with pytest.raises(cash_errors.InvalidMovementType):
        parse_movement_type(3)


def test_sanitize_reason_truncates_and_strips_control_chars():
    assert sanitize_reason("drawer\x00 refill\x1f\x7f") == "drawer refill"
    assert len(sanitize_reason("x" * 500)) == 200
    assert sanitize_reason(42) is None
    assert sanitize_reason(None) is None


def test_normalize_range_bound_expands_date_only_values():
    assert normalize_range_bound("2024-01-01", end_of_range=False) == "2024-01-01T00:00:00"
    assert normalize_range_bound("2024-01-01", end_of_range=True) == "2024-01-01T23:59:59"
    assert normalize_range_bound("2024-01-01T08:30:00Z", end_of_range=True) == "2024-01-01T08:30:00Z"
    assert normalize_range_bound(None, end_of_range=True) is None
    assert normalize_range_bound("  ", end_of_range=False) is None


def test_invalid_dates_raise_invalid_date():
    with pytest.raises(cash_errors.InvalidDate):
        normalize_range_bound("01/02/2024", end_of_range=False)
    with pytest.raises(cash_errors.InvalidDate):
        parse_range_bound("2024-01-01Tnoon")


def test_parse_range_bound_treats_naive_as_utc():
    assert parse_range_bound("2024-01-01T10:00:00") == datetime(2024, 1, 1, 10, tzinfo=timezone.utc)
    assert parse_range_bound("2024-01-01T12:00:00+02:00") == datetime(2024, 1, 1, 10, tzinfo=timezone.utc)
    assert parse_range_bound("2024-01-01T10:00:00Z") == datetime(2024, 1, 1, 10, tzinfo=timezone.utc)


def test_clamp_to_closed_at():
    end_of_day = datetime(2024, 1, 1, 23, 59, 59, tzinfo=timezone.utc)
    closed = datetime(2024, 1, 1, 10, 0, 0)

    assert clamp_to_closed_at(end_of_day, closed) == datetime(2024, 1, 1, 10, tzinfo=timezone.utc)
    early = datetime(2024, 1, 1, 8, tzinfo=timezone.utc)
    assert clamp_to_closed_at(early, closed) == early
    assert clamp_to_closed_at(end_of_day, None) == end_of_day
    assert clamp_to_closed_at(None, closed) is None


def test_parse_optional_number_ignores_garbage():
    assert parse_optional_number("12.5") == 12.5
    assert parse_optional_number("-3") == -3.0
    assert parse_optional_number("abc") is None
    assert parse_optional_number("nan") is None
    assert parse_optional_number("") is None
    assert parse_optional_number(None) is None


def test_is_truthy():
    assert is_truthy("1")
    assert is_truthy("TRUE")
    assert not is_truthy("false")
    assert not is_truthy(None)
