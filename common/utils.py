import datetime
from decimal import Decimal, ROUND_HALF_UP

from django.conf import settings
from django.utils import timezone

MONEY_QUANT = Decimal("0.01")


def to_money(value):
    return Decimal(str(value or 0)).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def format_currency(value, symbol=None):
    """Render an amount the way receipts and page payloads show it, e.g. ``Rp 18.900``."""
    symbol = settings.CURRENCY_SYMBOL if symbol is None else symbol
    amount = Decimal(str(value or 0)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    sign = "-" if amount < 0 else ""
    grouped = f"{abs(int(amount)):,}".replace(",", ".")
    return f"{sign}{symbol} {grouped}".strip()


def format_number(value):
    amount = Decimal(str(value or 0)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return f"{int(amount):,}".replace(",", ".")


def highest_daily_serial(model, field, stem):
    existing = model.objects.filter(**{f"{field}__startswith": stem}).values_list(field, flat=True)
    serials = [int(code[len(stem):]) for code in existing if code[len(stem):].isdigit()]
    return max(serials + [0])


def next_daily_code(model, field, prefix, *, width=3, separator="", day=None):
    """Return ``<prefix><YYYYMMDD><separator><serial>`` using the highest serial already stored for that day."""
    day = day or timezone.localdate()
    stem = f"{prefix}{day:%Y%m%d}{separator}"
    return f"{stem}{highest_daily_serial(model, field, stem) + 1:0{width}d}"


def local_day_bounds(day, tz=None):
    tz = tz or timezone.get_current_timezone()
    start = datetime.datetime.combine(day, datetime.time.min).replace(tzinfo=tz)
    end = datetime.datetime.combine(day, datetime.time.max).replace(tzinfo=tz)
    return start, end
