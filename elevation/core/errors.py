from __future__ import annotations

import re
from typing import Any, Dict, Optional

import requests

INVALID_CODE = "invalid-code"
EXPIRED_CHALLENGE = "expired-challenge"
RATE_LIMITED = "rate-limited"
PROVIDER_MISCONFIGURED = "provider-misconfigured"
NOT_FOUND = "not-found"
NO_VERIFIED_FACTORS = "no-verified-factors"
FORMAT_ERROR = "format-error"
TRANSIENT = "transient"
INVALID_CREDENTIALS = "invalid-credentials"
ALREADY_ENROLLED = "already-enrolled"
ATTEMPTS_EXHAUSTED = "attempts-exhausted"
VERIFICATION_UNCONFIRMED = "verification-unconfirmed"
NO_ACTIVE_CHALLENGE = "no-active-challenge"
CANCELLED = "cancelled"
FORBIDDEN = "forbidden"

MESSAGES: Dict[str, str] = {
    INVALID_CODE: "Invalid verification code. Please check the code and try again.",
    EXPIRED_CHALLENGE: "Verification code has expired. Please request a new one.",
    RATE_LIMITED: "Too many requests. Please wait before requesting a new code.",
    PROVIDER_MISCONFIGURED: "Verification is not available right now. Please contact your administrator.",
    NOT_FOUND: "This verification method no longer exists. Please start again.",
    NO_VERIFIED_FACTORS: "No verified verification method found. Please set up two-factor authentication first.",
    FORMAT_ERROR: "Please enter a valid value.",
    TRANSIENT: "An unexpected error occurred. Please try again.",
    INVALID_CREDENTIALS: "Invalid email or password.",
    ALREADY_ENROLLED: "An authenticator app is already enrolled.",
    ATTEMPTS_EXHAUSTED: "Too many failed attempts. Please start the verification again.",
    VERIFICATION_UNCONFIRMED: "Verification could not be confirmed. Please try again.",
    NO_ACTIVE_CHALLENGE: "No active verification. Please request a new code.",
    CANCELLED: "Verification cancelled.",
    FORBIDDEN: "Additional verification is required for this action.",
}

HTTP_STATUS: Dict[str, int] = {
    FORMAT_ERROR: 400,
    INVALID_CODE: 401,
    INVALID_CREDENTIALS: 401,
    FORBIDDEN: 403,
    NOT_FOUND: 404,
    ALREADY_ENROLLED: 409,
    NO_ACTIVE_CHALLENGE: 409,
    CANCELLED: 409,
    EXPIRED_CHALLENGE: 410,
    NO_VERIFIED_FACTORS: 412,
    RATE_LIMITED: 429,
    ATTEMPTS_EXHAUSTED: 429,
    VERIFICATION_UNCONFIRMED: 502,
    PROVIDER_MISCONFIGURED: 502,
    TRANSIENT: 502,
}

_WAIT_RE = re.compile(r"(\d+)\s*seconds?")


def user_message(category: str) -> str:
    return MESSAGES.get(category, MESSAGES[TRANSIENT])


class ElevationError(Exception):
    category = TRANSIENT

    def __init__(self, message: Optional[str] = None, raw: Optional[str] = None):
        self.message = message or user_message(self.category)
        self.raw = raw
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.category, "message": self.message}


class InvalidCode(ElevationError):
    category = INVALID_CODE


class ExpiredChallenge(ElevationError):
    category = EXPIRED_CHALLENGE


class RateLimited(ElevationError):
    category = RATE_LIMITED

    def __init__(self, wait_seconds: int, message: Optional[str] = None, raw: Optional[str] = None):
        self.wait_seconds = max(0, int(wait_seconds))
        super().__init__(message, raw=raw)

    def to_dict(self) -> Dict[str, Any]:
        return {**super().to_dict(), "wait_seconds": self.wait_seconds}


class ProviderMisconfigured(ElevationError):
    category = PROVIDER_MISCONFIGURED


class NotFound(ElevationError):
    category = NOT_FOUND


class NoVerifiedFactors(ElevationError):
    category = NO_VERIFIED_FACTORS


class FormatError(ElevationError):
    category = FORMAT_ERROR


class Transient(ElevationError):
    category = TRANSIENT


class InvalidCredentials(ElevationError):
    category = INVALID_CREDENTIALS


class AlreadyEnrolled(ElevationError):
    category = ALREADY_ENROLLED


class AttemptsExhausted(ElevationError):
    category = ATTEMPTS_EXHAUSTED


class VerificationUnconfirmed(ElevationError):
    category = VERIFICATION_UNCONFIRMED


class NoActiveChallenge(ElevationError):
    category = NO_ACTIVE_CHALLENGE


class Cancelled(ElevationError):
    category = CANCELLED


class Forbidden(ElevationError):
    category = FORBIDDEN


class ProviderError(Exception):
    """Error reported by the identity provider, before classification."""

    def __init__(self, status: int, code: str = "", message: str = ""):
        self.status = int(status or 0)
        self.code = code or ""
        self.message = message or ""
        super().__init__(f"{self.status} {self.code}: {self.message}".strip())


# Structured provider codes. Anything not listed falls through to status and text.
_CODE_MAP = {
    "mfa_verification_failed": INVALID_CODE,
    "invalid_code": INVALID_CODE,
    "otp_expired": EXPIRED_CHALLENGE,
    "mfa_challenge_expired": EXPIRED_CHALLENGE,
    "mfa_factor_not_found": NOT_FOUND,
    "mfa_challenge_not_found": NOT_FOUND,
    "user_not_found": NOT_FOUND,
    "over_sms_send_rate_limit": RATE_LIMITED,
    "over_request_rate_limit": RATE_LIMITED,
    "too_many_enrolled_mfa_factors": RATE_LIMITED,
    "mfa_phone_enroll_not_enabled": PROVIDER_MISCONFIGURED,
    "mfa_phone_verify_not_enabled": PROVIDER_MISCONFIGURED,
    "mfa_totp_enroll_not_enabled": PROVIDER_MISCONFIGURED,
    "mfa_totp_verify_not_enabled": PROVIDER_MISCONFIGURED,
    "sms_send_failed": PROVIDER_MISCONFIGURED,
    "invalid_credentials": INVALID_CREDENTIALS,
    "mfa_factor_name_conflict": ALREADY_ENROLLED,
    "validation_failed": FORMAT_ERROR,
}

# Codes that mean the access token itself is no longer usable.
_SESSION_CODES = {"bad_jwt", "session_not_found", "session_expired", "no_authorization"}

SESSION_EXPIRED_MESSAGE = "Your session has expired. Please sign in again."

_CLASSES = {
    cls.category: cls
    for cls in (
        InvalidCode, ExpiredChallenge, ProviderMisconfigured, NotFound, NoVerifiedFactors, FormatError,
        Transient, InvalidCredentials, AlreadyEnrolled, AttemptsExhausted, VerificationUnconfirmed,
        NoActiveChallenge, Cancelled, Forbidden,
    )
}


def parse_wait_seconds(text: str) -> Optional[int]:
    m = _WAIT_RE.search(text or "")
    return int(m.group(1)) if m else None


def _category_from_text(text: str) -> Optional[str]:
    t = (text or "").lower()
    if "only request this after" in t or "please wait" in t or "seconds before requesting" in t or "rate limit" in t:
        return RATE_LIMITED
    if "expired" in t:
        return EXPIRED_CHALLENGE
    if "not found" in t or "does not exist" in t:
        return NOT_FOUND
    if "invalid" in t and "code" in t:
        return INVALID_CODE
    if "invalid login credentials" in t:
        return INVALID_CREDENTIALS
    if "not enabled" in t or "sms provider" in t or "not configured" in t:
        return PROVIDER_MISCONFIGURED
    return None


def _category_from_status(status: int) -> Optional[str]:
    if status == 403:
        return INVALID_CREDENTIALS
    if status == 429:
        return RATE_LIMITED
    if status == 404:
        return NOT_FOUND
    if status == 422:
        return INVALID_CODE
    return None


def classify_error(exc: BaseException, default_wait: int = 60) -> ElevationError:
    """Map any exception raised while talking to the provider to an ElevationError."""
    if isinstance(exc, ElevationError):
        return exc
    if isinstance(exc, ProviderError):
        raw = exc.message or exc.code
        if exc.code in _SESSION_CODES or (exc.status == 401 and exc.code not in _CODE_MAP):
            return InvalidCredentials(SESSION_EXPIRED_MESSAGE, raw=raw)
        category = (
            _CODE_MAP.get(exc.code)
            or _category_from_text(exc.message)
            or _category_from_status(exc.status)
            or TRANSIENT
        )
        if category == RATE_LIMITED:
            wait = parse_wait_seconds(exc.message)
            return RateLimited(wait if wait is not None else default_wait, raw=raw)
        return _CLASSES[category](raw=raw)
    if isinstance(exc, requests.RequestException):
        return Transient(raw=str(exc))
    return Transient(raw=f"{type(exc).__name__}: {exc}")


def http_status(err: ElevationError) -> int:
    return HTTP_STATUS.get(err.category, 400)
