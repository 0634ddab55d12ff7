from decimal import Decimal, ROUND_HALF_UP

from django.utils import timezone

TWO_PLACES = Decimal("0.01")


def now():
    return timezone.now()


def money(value) -> Decimal:
    """
    Coerce to a 2-place Decimal. Floats go through str() so 19.99 stays 19.99.
    """
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def order_reference(order_id):
    return f"ORDER-{order_id}"
