from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

BASE = "base"
ELEVATED = "elevated"

TOTP = "totp"
PHONE = "phone-otp"
FACTOR_KINDS = (TOTP, PHONE)

PENDING = "pending"
VERIFIED = "verified"

SENT = "sent"
FAILED = "failed"
RATE_LIMITED = "rate-limited"


@dataclass(frozen=True)
class Session:
    subject: str
    assurance: str = BASE
    methods: Tuple[str, ...] = ()
    created_at: int = 0
    access_token: str = ""
    session_id: str = ""
    email: str = ""
    phone: str = ""
    role: str = ""

    @property
    def elevated(self) -> bool:
        return self.assurance == ELEVATED

    def public(self) -> Dict[str, Any]:
        return {
            "subject": self.subject,
            "assurance": self.assurance,
            "methods": list(self.methods),
            "created_at": self.created_at,
            "session_id": self.session_id,
        }


@dataclass(frozen=True)
class Factor:
    id: str
    kind: str
    status: str = PENDING
    label: str = ""
    phone: str = ""
    created_at: int = 0

    @property
    def verified(self) -> bool:
        return self.status == VERIFIED

    def public(self) -> Dict[str, Any]:
        out = {"id": self.id, "kind": self.kind, "status": self.status, "label": self.label, "created_at": self.created_at}
        if self.kind == PHONE:
            out["phone"] = self.phone
        return out


@dataclass(frozen=True)
class FactorList:
    totp: List[Factor] = field(default_factory=list)
    phone: List[Factor] = field(default_factory=list)

    @property
    def all(self) -> List[Factor]:
        return [*self.totp, *self.phone]

    def verified(self) -> List[Factor]:
        return [f for f in self.all if f.verified]

    def get(self, factor_id: str) -> Optional[Factor]:
        for f in self.all:
            if f.id == factor_id:
                return f
        return None

    @classmethod
    def of(cls, factors: List[Factor]) -> "FactorList":
        return cls(totp=[f for f in factors if f.kind == TOTP], phone=[f for f in factors if f.kind == PHONE])


@dataclass(frozen=True)
class Enrollment:
    factor_id: str
    kind: str
    secret: str = ""
    enrollment_image: str = ""
    uri: str = ""
    phone: str = ""


@dataclass
class Challenge:
    factor_id: str
    challenge_id: str
    created_at: int
    generation: int
    kind: str = TOTP
    outcome: str = SENT
    attempts: int = 0


@dataclass(frozen=True)
class AuthResult:
    user: Dict[str, Any]
    session: Session


@dataclass(frozen=True)
class TrustedDevice:
    record_id: str
    user_sub: str
    device_label: str = ""
    created_at: int = 0
    last_used_at: int = 0
    trusted_until: int = 0
    active: bool = True

    def is_live(self, now: int) -> bool:
        return bool(self.active) and now < self.trusted_until
