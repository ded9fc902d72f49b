import re
from typing import Dict

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
COUPON_CODE_RE = re.compile(r"^[A-Z0-9]+$")


def require_positive_number(v: float, name: str = "value") -> None:
    if v <= 0:
        raise ValueError(f"{name} must be > 0")


def require_non_negative(v: float, name: str = "value") -> None:
    if v < 0:
        raise ValueError(f"{name} must be >= 0")


def require_email(email: str) -> str:
    e = (email or "").strip().lower()
    if not EMAIL_RE.match(e):
        raise ValueError("invalid email")
    return e


def require_password(password: str) -> None:
    if not password or len(password) < 6:
        raise ValueError("password must be at least 6 characters")


def require_pincode(pincode: str) -> str:
    p = str(pincode).strip()
    if not re.fullmatch(r"\d{6}", p):
        raise ValueError("pincode must be 6 digits")
    return p


def require_phone(phone: str) -> str:
    p = re.sub(r"[\s\-]", "", str(phone))
    if not re.fullmatch(r"\d{10}", p):
        raise ValueError("phone must be 10 digits")
    return p


def parse_size_stock(text: str) -> Dict[str, int]:
    """
    "S:10 M:5 L:0" -> {"S": 10, "M": 5, "L": 0}
    Commas work as separators too.
    """
    out: Dict[str, int] = {}
    for part in re.split(r"[\s,;]+", (text or "").strip()):
        if not part:
            continue
        m = re.fullmatch(r"([A-Za-z0-9]+)[:=](\d+)", part)
        if not m:
            raise ValueError(f"bad size entry: {part!r} (expected SIZE:QTY)")
        out[m.group(1).upper()] = int(m.group(2))
    if not out:
        raise ValueError("at least one SIZE:QTY entry is required")
    return out
