from __future__ import annotations

import secrets
import threading
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

import pyotp

from elevation.core.entities import (
    BASE, ELEVATED, PENDING, PHONE, TOTP, VERIFIED, AuthResult, Enrollment, Factor, FactorList, Session,
)
from elevation.core.errors import ProviderError
from elevation.core.settings import S
from elevation.core.time import now_ts
from elevation.providers.base import IdentityProvider


def gen_numeric_code(n_digits: int = 6) -> str:
    return str(secrets.randbelow(10**n_digits)).zfill(n_digits)


@dataclass
class _User:
    id: str
    email: str
    password: str
    phone: str = ""
    role: str = ""
    factors: Dict[str, Tuple[Factor, str]] = field(default_factory=dict)


@dataclass
class _Challenge:
    factor_id: str
    created_at: int
    code: str = ""


class MemoryProvider(IdentityProvider):
    """In-process identity provider for development and tests.

    TOTP factors are checked with pyotp against the enrolled secret. Phone codes are
    not sent anywhere; they are appended to ``outbox`` as ``(phone, code)``.
    """

    def __init__(self, sms_min_interval_seconds: int = 60, sms_enabled: bool = True,
                 challenge_ttl_seconds: Optional[int] = None):
        self.sms_min_interval_seconds = sms_min_interval_seconds
        self.sms_enabled = sms_enabled
        self.challenge_ttl_seconds = challenge_ttl_seconds or S.challenge_stale_seconds
        self.outbox: List[Tuple[str, str]] = []
        self.calls: List[str] = []
        self._users: Dict[str, _User] = {}
        self._sessions: Dict[str, Session] = {}
        self._challenges: Dict[str, _Challenge] = {}
        self._last_sms: Dict[str, int] = {}
        self._lock = threading.Lock()

    # --- seeding helpers -------------------------------------------------

    def add_user(self, email: str, password: str, phone: str = "", role: str = "") -> str:
        user_id = str(uuid.uuid4())
        with self._lock:
            self._users[email.lower()] = _User(id=user_id, email=email.lower(), password=password, phone=phone, role=role)
        return user_id

    def add_factor(self, user_id: str, kind: str, status: str = VERIFIED, phone: str = "", label: str = "") -> Tuple[str, str]:
        """Registers a factor directly; returns ``(factor_id, totp_secret)``."""
        secret = pyotp.random_base32() if kind == TOTP else ""
        factor = Factor(id=str(uuid.uuid4()), kind=kind, status=status, label=label, phone=phone, created_at=now_ts())
        with self._lock:
            self._by_id(user_id).factors[factor.id] = (factor, secret)
        return factor.id, secret

    def last_code(self, phone: str) -> Optional[str]:
        for p, code in reversed(self.outbox):
            if p == phone:
                return code
        return None

    # --- internals ------------------------------------------------------------

    def _by_id(self, user_id: str) -> _User:
        for u in self._users.values():
            if u.id == user_id:
                return u
        raise ProviderError(404, "user_not_found", "User not found")

    def _user_for(self, token: str) -> Tuple[_User, Session]:
        session = self._sessions.get(token)
        if session is None:
            raise ProviderError(401, "bad_jwt", "Invalid or expired session")
        return self._by_id(session.subject), session

    def _issue(self, user: _User, assurance: str, methods: Tuple[str, ...], session_id: str = "") -> Session:
        token = secrets.token_urlsafe(24)
        session = Session(
            subject=user.id,
            assurance=assurance,
            methods=methods,
            created_at=now_ts(),
            access_token=token,
            session_id=session_id or str(uuid.uuid4()),
            email=user.email,
            phone=user.phone,
            role=user.role,
        )
        self._sessions[token] = session
        return session

    def _elevate(self, user: _User, session: Session, method: str) -> Session:
        methods = session.methods if method in session.methods else (*session.methods, method)
        return self._issue(user, ELEVATED, methods, session_id=session.session_id)

    # --- contract -------------------------------------------------------------

    def authenticate(self, email: str, password: str) -> AuthResult:
        self.calls.append("authenticate")
        with self._lock:
            user = self._users.get((email or "").lower())
            if user is None or not secrets.compare_digest(user.password, password or ""):
                raise ProviderError(400, "invalid_credentials", "Invalid login credentials")
            session = self._issue(user, BASE, ("password",))
        return AuthResult(user={"id": user.id, "email": user.email, "phone": user.phone}, session=session)

    def get_session(self, token: str) -> Optional[Session]:
        self.calls.append("get_session")
        with self._lock:
            session = self._sessions.get(token)
            if session is None:
                return None
            user = self._by_id(session.subject)
            return replace(session, email=user.email, phone=user.phone)

    def list_factors(self, token: str) -> FactorList:
        self.calls.append("list_factors")
        with self._lock:
            user, _ = self._user_for(token)
            return FactorList.of([f for f, _ in user.factors.values()])

    def enroll_factor(self, token: str, kind: str, params: Dict[str, Any]) -> Enrollment:
        self.calls.append("enroll_factor")
        with self._lock:
            user, _ = self._user_for(token)
            label = params.get("label") or ("Authenticator App" if kind == TOTP else "SMS")
            if any(f.label == label and f.kind == kind for f, _ in user.factors.values()):
                raise ProviderError(422, "mfa_factor_name_conflict", "A factor with this friendly name already exists")
            secret = pyotp.random_base32() if kind == TOTP else ""
            factor = Factor(
                id=str(uuid.uuid4()), kind=kind, status=PENDING, label=label,
                phone=params.get("phone", "") if kind == PHONE else "", created_at=now_ts(),
            )
            user.factors[factor.id] = (factor, secret)
        if kind == TOTP:
            uri = pyotp.TOTP(secret).provisioning_uri(name=user.email, issuer_name="School")
            return Enrollment(factor_id=factor.id, kind=kind, secret=secret, uri=uri, enrollment_image=uri)
        return Enrollment(factor_id=factor.id, kind=kind, phone=factor.phone)

    def create_challenge(self, token: str, factor_id: str) -> str:
        self.calls.append("create_challenge")
        ts = now_ts()
        with self._lock:
            user, _ = self._user_for(token)
            if factor_id not in user.factors:
                raise ProviderError(404, "mfa_factor_not_found", "Factor not found")
            factor, _ = user.factors[factor_id]
            code = ""
            if factor.kind == PHONE:
                if not self.sms_enabled:
                    raise ProviderError(500, "sms_send_failed", "Error sending SMS: SMS provider not configured")
                last = self._last_sms.get(factor_id)
                if last is not None and ts - last < self.sms_min_interval_seconds:
                    wait = self.sms_min_interval_seconds - (ts - last)
                    raise ProviderError(
                        429, "over_sms_send_rate_limit",
                        f"For security purposes, you can only request this after {wait} seconds.",
                    )
                self._last_sms[factor_id] = ts
                code = gen_numeric_code(6)
                self.outbox.append((factor.phone, code))
            challenge_id = str(uuid.uuid4())
            self._challenges[challenge_id] = _Challenge(factor_id=factor_id, created_at=ts, code=code)
        return challenge_id

    def verify_challenge(self, token: str, factor_id: str, challenge_id: str, code: str) -> Session:
        self.calls.append("verify_challenge")
        with self._lock:
            user, session = self._user_for(token)
            if factor_id not in user.factors:
                raise ProviderError(404, "mfa_factor_not_found", "Factor not found")
            chal = self._challenges.get(challenge_id)
            if chal is None or chal.factor_id != factor_id:
                raise ProviderError(404, "mfa_challenge_not_found", "Challenge not found")
            if now_ts() - chal.created_at > self.challenge_ttl_seconds:
                raise ProviderError(422, "mfa_challenge_expired", "MFA challenge has expired, verify against another challenge")
            factor, secret = user.factors[factor_id]
            if factor.kind == TOTP:
                ok = pyotp.TOTP(secret).verify(code, valid_window=1)
            else:
                ok = secrets.compare_digest(chal.code, code)
            if not ok:
                label = "TOTP" if factor.kind == TOTP else "Phone"
                raise ProviderError(422, "mfa_verification_failed", f"Invalid MFA {label} code entered")
            del self._challenges[challenge_id]
            if factor.status != VERIFIED:
                user.factors[factor_id] = (replace(factor, status=VERIFIED), secret)
            return self._elevate(user, session, "totp" if factor.kind == TOTP else "phone")

    def verify_phone_otp(self, token: str, phone: str, code: str) -> Session:
        self.calls.append("verify_phone_otp")
        with self._lock:
            user, session = self._user_for(token)
            if not phone or phone != user.phone:
                raise ProviderError(404, "user_not_found", "Phone not found")
            for challenge_id, chal in list(self._challenges.items()):
                factor = user.factors.get(chal.factor_id)
                if factor and factor[0].phone == phone and chal.code and secrets.compare_digest(chal.code, code):
                    if now_ts() - chal.created_at > self.challenge_ttl_seconds:
                        raise ProviderError(403, "otp_expired", "Token has expired or is invalid")
                    del self._challenges[challenge_id]
                    return self._elevate(user, session, "otp")
        raise ProviderError(403, "otp_expired", "Token has expired or is invalid")

    def unenroll_factor(self, token: str, factor_id: str) -> None:
        self.calls.append("unenroll_factor")
        with self._lock:
            user, _ = self._user_for(token)
            if user.factors.pop(factor_id, None) is None:
                raise ProviderError(404, "mfa_factor_not_found", "Factor not found")

    def update_subject_contact(self, token: str, field: str, value: str) -> None:
        self.calls.append("update_subject_contact")
        with self._lock:
            user, _ = self._user_for(token)
            if field == "phone":
                user.phone = value
            elif field == "email":
                user.email = value
            else:
                raise ProviderError(422, "validation_failed", f"Unsupported contact field {field}")

    def sign_out(self, token: str) -> None:
        self.calls.append("sign_out")
        with self._lock:
            session = self._sessions.pop(token, None)
            if session is None:
                return
            for t, s in list(self._sessions.items()):
                if s.session_id == session.session_id:
                    del self._sessions[t]
