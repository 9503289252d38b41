from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from greenpay.errors import ValidationFailed

# --- MONEY IS STORED IN MINOR UNITS (CENTS) ---
MONEY_QUANT = Decimal("0.01")
MINOR_PER_UNIT = 100
MAX_AMOUNT = Decimal("1000000.00")

USD = "USD"
KES = "KES"
SUPPORTED_CURRENCIES = (USD, KES)


def parse_amount(value, field="amount"):
    """Parse a client supplied amount into a positive Decimal with 2 places.

    Floats go through ``str`` first so ``0.1`` stays ``0.1`` and not its
    binary expansion.
    """
    if value is None or isinstance(value, bool):
        raise ValidationFailed(f"Invalid {field}")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationFailed(f"Invalid {field}")
    if not amount.is_finite():
        raise ValidationFailed(f"Invalid {field}")
    if amount <= 0:
        raise ValidationFailed(f"{field.capitalize()} must be greater than 0")
    if amount > MAX_AMOUNT:
        raise ValidationFailed(f"{field.capitalize()} exceeds maximum allowed ({MAX_AMOUNT})")
    if amount != amount.quantize(MONEY_QUANT):
        raise ValidationFailed(f"{field.capitalize()} cannot have more than 2 decimal places")
    return amount.quantize(MONEY_QUANT)


def parse_fee(value):
    """Fees may be zero, everything else follows ``parse_amount``."""
    if value is None or str(value).strip() in ("", "0", "0.0", "0.00"):
        return Decimal("0.00")
    return parse_amount(value, field="fee")


def normalize_currency(value):
    currency = str(value or "").strip().upper()
    if currency not in SUPPORTED_CURRENCIES:
        raise ValidationFailed(f"Currency must be one of: {', '.join(SUPPORTED_CURRENCIES)}")
    return currency


def to_minor(amount):
    return int((Decimal(amount) * MINOR_PER_UNIT).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor(minor):
    return (Decimal(minor) / MINOR_PER_UNIT).quantize(MONEY_QUANT)


def format_minor(minor):
    return f"{from_minor(minor or 0):.2f}"


def percentage_fee(amount_minor, rate):
    """round(amount * rate, 2) half-up, in minor units."""
    fee = (from_minor(amount_minor) * Decimal(rate)).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)
    return to_minor(fee)


def convert(amount_minor, rate):
    """Convert an amount at ``rate`` and round half-up to cents."""
    converted = (from_minor(amount_minor) * Decimal(rate)).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)
    return to_minor(converted)
