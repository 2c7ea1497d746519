import base64
import hmac
import re
import secrets
import time
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

import bcrypt


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def parse_ts(value: Optional[str]) -> Optional[float]:
    """
    ISO-8601 string -> epoch seconds. Naive values are taken as UTC.
    Raises ValueError for strings that are not dates.
    """
    if value is None or not str(value).strip():
        return None
    s = str(value).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def to_cents(amount) -> int:
    d = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return int(d * 100)


def from_cents(cents: int) -> float:
    return round(int(cents) / 100, 2)


# ----------------------------
# Webhook credentials
# ----------------------------
BCRYPT_ROUNDS = 12


def random_password(nbytes: int = 24) -> str:
    # base64url without padding
    raw = secrets.token_bytes(nbytes)
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _bcrypt_secret(password: str) -> bytes:
    # bcrypt only reads the first 72 bytes
    return password.encode("utf-8")[:72]


def new_salt() -> str:
    return bcrypt.gensalt(rounds=BCRYPT_ROUNDS).decode("utf-8")


def hash_password(password: str, salt: Optional[str] = None) -> str:
    """bcrypt hash as a UTF-8 string; the salt is embedded in it."""
    salt_bytes = (salt or new_salt()).encode("utf-8")
    return bcrypt.hashpw(_bcrypt_secret(password), salt_bytes).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(_bcrypt_secret(password),
                              password_hash.encode("utf-8"))
    except ValueError:
        # not a bcrypt hash
        return False
