from apps.utils.exceptions import ValidationError


def validate_positive_id(value, field="id"):
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field} must be a positive integer.")
    return value


def validate_quantity(value, field="quantity", allow_zero=False):
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer.")
    if value < 0 or (value == 0 and not allow_zero):
        bound = ">= 0" if allow_zero else "> 0"
        raise ValidationError(f"{field} must be {bound}.")
    return value


def validate_not_blank(value, field):
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required.")
    return str(value).strip()
