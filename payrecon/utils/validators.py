import re

# Simple, pragmatic patterns
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PRICE_RE = re.compile(r"^price_[A-Za-z0-9]+$")
_CURRENCY_RE = re.compile(r"^[a-z]{3}$")
_PROVIDER_ID_RE = re.compile(r"^[A-Za-z0-9_]{3,255}$")


def clean_str(val: str | None, max_len: int = 255) -> str | None:
    """
    Collapse whitespace, trim, enforce max length. Returns None if empty after cleaning.
    """
    if val is None:
        return None
    s = re.sub(r"\s+", " ", str(val)).strip()
    if not s:
        return None
    return s[:max_len]


def is_valid_email(val: str | None) -> bool:
    if not val:
        return False
    return bool(_EMAIL_RE.match(val))


def is_valid_price_id(val: str | None) -> bool:
    if not val:
        return False
    return bool(_PRICE_RE.match(val))


def is_provider_id(val: str | None, prefix: str) -> bool:
    """``cus_…``, ``pi_…``, ``sub_…`` style identifiers."""
    if not val or not val.startswith(prefix):
        return False
    return bool(_PROVIDER_ID_RE.match(val))


def normalize_currency(val: str | None) -> str | None:
    if not val:
        return None
    s = str(val).strip().lower()
    return s if _CURRENCY_RE.match(s) else None


def parse_amount(val) -> int | None:
    """
    Whole minor units only. Accepts ints and digit strings; anything else is None.
    """
    if val is None or isinstance(val, bool):
        return None
    if isinstance(val, int):
        return val
    s = str(val).strip()
    if not s.isdigit():
        return None
    return int(s)
