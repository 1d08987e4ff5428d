from decimal import Decimal

from ..services.errors import ValidationError


def ensure_positive_int(value, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    # whole-valued floats and Decimals are accepted, fractions are not
    if isinstance(value, float) and not value.is_integer():
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, Decimal) and (not value.is_finite() or value != value.to_integral_value()):
        raise ValidationError(f"{field} must be an integer")
    try:
        v = int(value)
    except (TypeError, ValueError, OverflowError):
        raise ValidationError(f"{field} must be an integer")
    if v < 1:
        raise ValidationError(f"{field} must be >= 1")
    return v
