"""
Order Number Utilities
======================
Human-readable order references (VG = VirtualGifts).

Random parts come from `secrets`; uniqueness is still enforced by the
order_number unique constraint with retry-on-conflict in OrderService.
"""

import re
import secrets
import string
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

ALPHABET = string.ascii_uppercase + string.digits
ORDER_NUMBER_PATTERN = re.compile(r"^VG-\d{4}-[A-Z0-9]{6,}$")
_YEAR_PATTERN = re.compile(r"^VG-(\d{4})-")


def _random_part(length: int, alphabet: str = ALPHABET) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


def _to_base36(value: int) -> str:
    digits = string.digits + string.ascii_lowercase
    if value == 0:
        return "0"
    out = []
    while value:
        value, rem = divmod(value, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


def generate_order_number() -> str:
    """VG-YYYY-XXXXXX"""
    year = datetime.now(timezone.utc).year
    return f"VG-{year}-{_random_part(6)}"


def generate_sequential_order_number(sequence_number: int) -> str:
    """VG-YYYY-NNNNNN from a database counter"""
    year = datetime.now(timezone.utc).year
    return f"VG-{year}-{sequence_number:06d}"


def generate_timestamp_order_number() -> str:
    """VG-YYYYMMDD-HHMMSS-XXX"""
    now = datetime.now(timezone.utc)
    return f"VG-{now:%Y%m%d}-{now:%H%M%S}-{_random_part(3)}"


def generate_uuid_order_number() -> str:
    return f"VG-{uuid.uuid4().hex[:12].upper()}"


def validate_order_number(order_number: str) -> bool:
    return bool(ORDER_NUMBER_PATTERN.match(order_number or ""))


def extract_year_from_order_number(order_number: str) -> Optional[int]:
    match = _YEAR_PATTERN.match(order_number or "")
    return int(match.group(1)) if match else None


def generate_transaction_id() -> str:
    """TXN-<base36 ms>-<8 random>, upper-case"""
    timestamp = _to_base36(int(time.time() * 1000))
    random = _random_part(8, string.ascii_lowercase + string.digits)
    return f"TXN-{timestamp}-{random}".upper()
