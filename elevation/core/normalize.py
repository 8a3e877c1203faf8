from __future__ import annotations

import re
from typing import Optional

from .errors import FormatError
from .settings import S

E164_RE = re.compile(r"^\+[1-9]\d{6,14}$")
CODE_LENGTH = 6


def client_ip_from_request(req) -> str:
    xff = req.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip()
    return req.client.host if req.client else "0.0.0.0"


def normalize_email(s: str) -> str:
    s = (s or "").strip().lower()
    if "@" not in s or len(s) > 254:
        raise FormatError("Invalid email", raw=s)
    return s


def normalize_phone(s: str, country_code: Optional[str] = None) -> str:
    """Best-effort conversion of common local formats to E.164.

    ``0049 151 ...`` becomes ``+49151...`` and a national ``0151 ...`` gets the
    default country code. Anything that still does not look like E.164 is rejected.
    """
    cc = (country_code or S.default_country_code).lstrip("+")
    s2 = re.sub(r"[\s\-\(\)\./]", "", (s or "").strip())
    if s2.startswith("00"):
        s2 = "+" + s2[2:]
    elif s2.startswith("0"):
        s2 = "+" + cc + s2[1:]
    if not E164_RE.match(s2):
        raise FormatError("Invalid phone format; use international format like +491701234567", raw=s)
    return s2


def sanitize_code(raw: Optional[str]) -> str:
    """Strip non-digits and truncate to the code length."""
    return re.sub(r"\D", "", raw or "")[:CODE_LENGTH]


def require_code(raw: Optional[str]) -> str:
    code = sanitize_code(raw)
    if len(code) != CODE_LENGTH:
        raise FormatError(f"Please enter a {CODE_LENGTH}-digit verification code")
    return code


def mask_phone(p: str) -> str:
    if len(p) <= 4:
        return p
    return p[:3] + "*" * (len(p) - 5) + p[-2:]
