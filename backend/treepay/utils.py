import secrets
import time
from datetime import datetime
from decimal import Decimal

from zoneinfo import ZoneInfo

VN_TZ = ZoneInfo("Asia/Ho_Chi_Minh")


def now_vn() -> datetime:
    return datetime.now(VN_TZ)


def new_correlation_id(prefix: str = "wh") -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(5)[:9]}"


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def format_amount(value) -> str:
    """Render an amount without trailing zeros: 260000.00 -> 260000, 9.60 -> 9.6."""
    amount = to_decimal(value)
    if amount == amount.to_integral_value():
        return str(amount.quantize(Decimal(1)))
    return format(amount.normalize(), "f")
