import time
import re
import secrets
from datetime import datetime, timezone
import hmac
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def new_order_no(ts: float | None = None) -> str:
    # ORD + UTC timestamp + 6 random hex chars, e.g. ORD20260101120000A1B2C3
    ts = now_ts() if ts is None else ts
    stamp = datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"ORD{stamp}{secrets.token_hex(3).upper()}"


def format_money(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    cents = abs(int(cents))
    return f"{sign}{cents // 100}.{cents % 100:02d}"
