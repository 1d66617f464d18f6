"""Fixed-point helpers shared by every layer that touches amounts."""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

DEFAULT_ROUNDING = ROUND_HALF_UP

# Shillings are quoted to the cent on every Authority document.
AMOUNT_PLACES = 2

ZERO = Decimal("0")
CENT = Decimal("0.01")


def round_money(
    value: Decimal,
    decimal_places: int = AMOUNT_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to the given number of decimal places.

    This is the only sanctioned rounding function for amounts; engines and
    services delegate here so every document rounds the same way.
    """
    quantum = Decimal(1).scaleb(-decimal_places)
    return value.quantize(quantum, rounding=rounding)


def to_decimal(value: object, field_name: str = "value") -> Decimal:
    """
    Coerce int, str or Decimal to Decimal.

    Floats are rejected: a float price has already lost precision by the time
    it reaches the engine.

    Raises:
        TypeError: for float, bool or unsupported types.
        ValueError: for strings that are not numbers, or NaN/Infinity.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError(f"{field_name} must be Decimal, int or str, not {type(value).__name__}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value)
        except InvalidOperation as exc:
            raise ValueError(f"{field_name} is not a number: {value!r}") from exc
    else:
        raise TypeError(f"{field_name} must be Decimal, int or str, not {type(value).__name__}")
    if not result.is_finite():
        raise ValueError(f"{field_name} must be finite: {value!r}")
    return result
