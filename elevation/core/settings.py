from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Tuple


def _csv(raw: str) -> Tuple[str, ...]:
    return tuple(p.strip() for p in (raw or "").split(",") if p.strip())


def _role_days(raw: str) -> Dict[str, int]:
    out: Dict[str, int] = {}
    for part in _csv(raw):
        role, _, days = part.partition("=")
        if role.strip() and days.strip().isdigit():
            out[role.strip()] = int(days.strip())
    return out


@dataclass(frozen=True)
class Settings:
    # AWS
    aws_region: str = os.environ.get("AWS_REGION", "us-east-1")

    # Identity provider
    auth_provider: str = os.environ.get("AUTH_PROVIDER", "gotrue").lower()
    auth_base_url: str = os.environ.get("AUTH_BASE_URL", "").rstrip("/")
    auth_api_key: str = os.environ.get("AUTH_API_KEY", "")
    auth_jwt_secret: str = os.environ.get("AUTH_JWT_SECRET", "")
    auth_jwt_audience: str = os.environ.get("AUTH_JWT_AUDIENCE", "authenticated")
    auth_request_timeout_seconds: float = float(os.environ.get("AUTH_REQUEST_TIMEOUT_SECONDS", "30"))

    # Challenge timing
    challenge_warn_seconds: int = int(os.environ.get("CHALLENGE_WARN_SECONDS", "240"))
    challenge_stale_seconds: int = int(os.environ.get("CHALLENGE_STALE_SECONDS", "300"))
    rate_limit_default_wait_seconds: int = int(os.environ.get("RATE_LIMIT_DEFAULT_WAIT_SECONDS", "60"))

    # Wrong codes allowed per elevation attempt
    max_verify_attempts: int = int(os.environ.get("MAX_VERIFY_ATTEMPTS", "5"))

    # Post-verify session confirmation
    elevation_confirm_attempts: int = int(os.environ.get("ELEVATION_CONFIRM_ATTEMPTS", "5"))
    elevation_confirm_backoff_seconds: float = float(os.environ.get("ELEVATION_CONFIRM_BACKOFF_SECONDS", "0.25"))

    # Phone normalization
    default_country_code: str = os.environ.get("DEFAULT_COUNTRY_CODE", "49").lstrip("+")

    # Policy
    mfa_required_roles: Tuple[str, ...] = _csv(os.environ.get("MFA_REQUIRED_ROLES", "Admin,Super Admin"))
    mfa_allowed_factor_kinds: Tuple[str, ...] = _csv(os.environ.get("MFA_ALLOWED_FACTOR_KINDS", "phone,totp"))
    device_trust_days: Dict[str, int] = field(
        default_factory=lambda: _role_days(os.environ.get("DEVICE_TRUST_DAYS", "Parent=30,Teacher=14,Admin=1"))
    )
    device_trust_default_days: int = int(os.environ.get("DEVICE_TRUST_DEFAULT_DAYS", "7"))
    remember_device_enabled: bool = os.environ.get("REMEMBER_DEVICE_ENABLED", "1") not in ("0", "false", "False")

    # DynamoDB tables
    ddb_trusted_devices_table: str = os.environ.get("DDB_TRUSTED_DEVICES_TABLE", "trusted_devices")
    trusted_devices_user_index: str = os.environ.get("TRUSTED_DEVICES_USER_INDEX", "user_sub-index")
    ddb_ttl_attr: str = os.environ.get("DDB_TTL_ATTR", "ttl_epoch")

    audit_log_enabled: bool = os.environ.get("AUDIT_LOG_ENABLED", "1") not in ("0", "false", "False")
    metrics_enabled: bool = os.environ.get("METRICS_ENABLED", "1") not in ("0", "false", "False")


S = Settings()
