# treepay/banking.py
import re
import secrets
import string
from decimal import Decimal
from urllib.parse import quote

from .signing import verify_signature
from .utils import now_vn, to_decimal

ORDER_CODE_PREFIX = "DGX"
ORDER_CODE_PATTERN = re.compile(rf"{ORDER_CODE_PREFIX}-\d{{8}}-[A-Z0-9]{{5}}", re.IGNORECASE)

PRICE_PER_TREE = 260000
SEEDS_PER_TREE = 40000
CARE_PER_TREE = 194000
AFFILIATE_PER_TREE = 26000

VIETQR_BASE_URL = "https://img.vietqr.io/image"

BANK_ACCOUNTS = {
    "VCB": {"name": "Vietcombank", "number": "1234567890", "holder": "CONG TY CP DAI NGAN XANH"},
    "TCB": {"name": "Techcombank", "number": "0987654321", "holder": "CONG TY CP DAI NGAN XANH"},
}

_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_code() -> str:
    """DGX-YYYYMMDD-XXXXX, the code buyers put in the transfer memo."""
    date_str = now_vn().strftime("%Y%m%d")
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(5))
    return f"{ORDER_CODE_PREFIX}-{date_str}-{suffix}"


def transfer_content(order_code: str) -> str:
    return f"Thanh toan {order_code}"


def _vietqr_url(account_number: str, bank_code: str, amount, content: str) -> str:
    return (
        f"{VIETQR_BASE_URL}/{bank_code}-{account_number}-compact2.png"
        f"?amount={amount}&addInfo={quote(content)}"
    )


def generate_transfer_info(amount, order_code: str, bank_code: str = "VCB") -> dict:
    if bank_code not in BANK_ACCOUNTS:
        bank_code = "VCB"
    bank = BANK_ACCOUNTS[bank_code]
    content = transfer_content(order_code)
    return {
        "bankName": bank["name"],
        "accountNumber": bank["number"],
        "accountHolder": bank["holder"],
        "amount": int(to_decimal(amount)),
        "content": content,
        "qrCodeUrl": _vietqr_url(bank["number"], bank_code, int(to_decimal(amount)), content),
    }


def verify_webhook_signature(payload: bytes, signature: str, secret_key: str) -> bool:
    return verify_signature(payload, signature, secret_key)


def extract_order_code_from_content(content: str) -> str | None:
    match = ORDER_CODE_PATTERN.search(content or "")
    return match.group(0).upper() if match else None


def validate_payment_amount(paid_amount, expected_amount, tolerance_percent=1) -> bool:
    paid = to_decimal(paid_amount)
    expected = to_decimal(expected_amount)
    tolerance = to_decimal(tolerance_percent) / Decimal(100)
    min_amount = expected * (1 - tolerance)
    max_amount = expected * (1 + tolerance)
    return min_amount <= paid <= max_amount


def calculate_order_amount(tree_count: int) -> int:
    return tree_count * PRICE_PER_TREE


def get_price_breakdown(tree_count: int) -> dict:
    return {
        "seedsCost": SEEDS_PER_TREE * tree_count,
        "careCost": CARE_PER_TREE * tree_count,
        "affiliateFund": AFFILIATE_PER_TREE * tree_count,
        "total": PRICE_PER_TREE * tree_count,
    }
