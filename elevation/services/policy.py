from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

from elevation.core.entities import FACTOR_KINDS, PHONE, TOTP, FactorList, Session
from elevation.core.settings import S

_KIND_ALIASES = {"phone": PHONE, "sms": PHONE, "phone-otp": PHONE, "totp": TOTP, "app": TOTP}


def factor_kinds(names: Iterable[str]) -> Tuple[str, ...]:
    """Map configured kind names to factor kinds, keeping order and dropping unknowns."""
    out = []
    for n in names:
        kind = _KIND_ALIASES.get(n.strip().lower())
        if kind and kind not in out:
            out.append(kind)
    return tuple(out) or FACTOR_KINDS


@dataclass(frozen=True)
class ElevationPolicy:
    require_mfa: bool = True
    allowed_factor_kinds: Tuple[str, ...] = (PHONE, TOTP)
    remember_device: bool = False
    trust_days: int = 0


def trust_days_for_role(role: Optional[str], settings=S) -> int:
    return settings.device_trust_days.get(role or "", settings.device_trust_default_days)


def policy_for_role(role: Optional[str], settings=S, exempt: bool = False) -> ElevationPolicy:
    """Elevation policy for a subject role.

    ``exempt`` comes from the caller (for example a service account) and wins over
    the role list.
    """
    required = not exempt and (role or "") in settings.mfa_required_roles
    return ElevationPolicy(
        require_mfa=required,
        allowed_factor_kinds=factor_kinds(settings.mfa_allowed_factor_kinds),
        remember_device=settings.remember_device_enabled,
        trust_days=trust_days_for_role(role, settings),
    )


@dataclass(frozen=True)
class Requirement:
    required: bool
    elevated: bool
    has_verified_factors: bool
    needs_setup: bool

    def to_dict(self) -> Dict[str, bool]:
        return {
            "required": self.required,
            "elevated": self.elevated,
            "has_verified_factors": self.has_verified_factors,
            "needs_setup": self.needs_setup,
        }


def check_requirement(policy: ElevationPolicy, session: Session, factors: FactorList) -> Requirement:
    """Elevation is enforced only once the subject has a verified factor.

    A policy that requires MFA for a subject without any verified factor reports
    ``needs_setup`` instead.
    """
    allowed = [f for f in factors.verified() if f.kind in policy.allowed_factor_kinds]
    has_verified = bool(allowed)
    return Requirement(
        required=policy.require_mfa and has_verified and not session.elevated,
        elevated=session.elevated,
        has_verified_factors=has_verified,
        needs_setup=policy.require_mfa and not has_verified,
    )
