from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from elevation.core.entities import PHONE, TOTP, Challenge, Factor, FactorList, Session
from elevation.core.errors import ElevationError, InvalidCredentials, NoVerifiedFactors
from elevation.core.normalize import require_code
from elevation.metrics import record_sensitive_action
from elevation.providers.base import IdentityProvider
from elevation.services import device_trust
from elevation.services.audit import audit_event
from elevation.services.calls import call_provider, off_thread
from elevation.services.challenges import STALE, ChallengeCoordinator
from elevation.services.policy import ElevationPolicy

EXECUTED = "executed"
CANCELLED = "cancelled"
FAILED = "failed"


@dataclass(frozen=True)
class PromptInfo:
    action: str
    kinds: Tuple[str, ...]
    sent_to: str = ""


# Returns the code the user typed, or None when they cancelled.
Prompt = Callable[[PromptInfo], Awaitable[Optional[str]]]


@dataclass(frozen=True)
class GateResult:
    outcome: str
    value: Any = None
    error: Optional[ElevationError] = None
    method: str = ""

    @property
    def message(self) -> str:
        return self.error.message if self.error else ""


@dataclass
class _Path:
    kind: str
    factor: Optional[Factor] = None
    phone: str = ""
    challenge: Optional[Challenge] = None


class SensitiveActionGate:
    """Runs a unit of work only once the session is, or becomes, elevated.

    The verification prompt is bound to the action. Factor kinds are tried in the
    order given by the policy; the work never starts before a code was accepted.
    """

    def __init__(self, provider: IdentityProvider, token: str, policy: ElevationPolicy,
                 device: str = "", coordinator: Optional[ChallengeCoordinator] = None):
        self.provider = provider
        self.token = token
        self.policy = policy
        self.device = device
        self.coordinator = coordinator or ChallengeCoordinator(provider, token)
        self.session: Optional[Session] = None

    async def _run(self, work: Callable[[], Any]) -> Any:
        value = work()
        if inspect.isawaitable(value):
            value = await value
        return value

    async def _execute(self, action: str, work: Callable[[], Any], method: str) -> GateResult:
        value = await self._run(work)
        record_sensitive_action(EXECUTED)
        audit_event("sensitive_action", self.session.subject if self.session else "", outcome=EXECUTED,
                    action=action, method=method)
        return GateResult(outcome=EXECUTED, value=value, method=method)

    def _denied(self, action: str, err: ElevationError, outcome: str = FAILED) -> GateResult:
        record_sensitive_action(outcome)
        audit_event("sensitive_action", self.session.subject if self.session else "", outcome=outcome,
                    action=action, category=err.category, raw=err.raw)
        return GateResult(outcome=outcome, error=err)

    def _paths(self, factors: FactorList, session: Session) -> List[_Path]:
        paths: List[_Path] = []
        for kind in self.policy.allowed_factor_kinds:
            if kind == PHONE:
                phone_factor = next((f for f in factors.phone if f.verified), None)
                if phone_factor is not None:
                    paths.append(_Path(kind=PHONE, factor=phone_factor, phone=phone_factor.phone))
                elif session.phone:
                    paths.append(_Path(kind=PHONE, phone=session.phone))
            elif kind == TOTP:
                totp_factor = next((f for f in factors.totp if f.verified), None)
                if totp_factor is not None:
                    paths.append(_Path(kind=TOTP, factor=totp_factor))
        return paths

    async def _try(self, path: _Path, code: str) -> Session:
        if path.kind == TOTP:
            challenge = await self.coordinator.issue(path.factor)
            return await self.coordinator.verify(path.factor, challenge, code)
        if path.challenge is not None:
            return await self.coordinator.verify(path.factor, path.challenge, code)
        return await call_provider(self.provider.verify_phone_otp, self.token, path.phone, code)

    async def guard(self, action: str, work: Callable[[], Any], prompt: Prompt) -> GateResult:
        if not self.policy.require_mfa:
            return await self._execute(action, work, method="exempt")

        try:
            session = await call_provider(self.provider.get_session, self.token)
        except ElevationError as err:
            return self._denied(action, err)
        if session is None:
            return self._denied(action, InvalidCredentials("Session expired. Please sign in again."))
        self.session = session
        self.coordinator.user_sub = session.subject

        if session.elevated:
            return await self._execute(action, work, method="session")

        if self.policy.remember_device and self.device:
            try:
                trusted = await off_thread(device_trust.is_trusted, session.subject, self.device)
            except Exception as exc:
                audit_event("device_trust", session.subject, outcome="failure", raw=str(exc))
                trusted = False
            if trusted:
                return await self._execute(action, work, method="trusted-device")

        try:
            factors = await call_provider(self.provider.list_factors, self.token)
        except ElevationError as err:
            return self._denied(action, err)
        paths = self._paths(factors, session)
        if not paths:
            return self._denied(action, NoVerifiedFactors())

        # An SMS has to be on its way before the user can type it in.
        sent_to = ""
        last_err: Optional[ElevationError] = None
        for p in paths:
            if p.kind == PHONE and p.factor is not None:
                try:
                    current = self.coordinator.current(p.factor.id)
                    if current is not None and self.coordinator.freshness(current) != STALE:
                        p.challenge = current
                    else:
                        p.challenge = await self.coordinator.issue(p.factor)
                    sent_to = p.phone
                except ElevationError as err:
                    last_err = err
                break
        usable = [p for p in paths if not (p.kind == PHONE and p.factor is not None and p.challenge is None)]
        if not usable:
            return self._denied(action, last_err or NoVerifiedFactors())

        raw_code = await prompt(PromptInfo(action=action, kinds=tuple(p.kind for p in usable), sent_to=sent_to))
        if raw_code is None:
            record_sensitive_action(CANCELLED)
            audit_event("sensitive_action", session.subject, outcome=CANCELLED, action=action)
            return GateResult(outcome=CANCELLED)

        try:
            code = require_code(raw_code)
        except ElevationError as err:
            return self._denied(action, err)

        for p in usable:
            try:
                upgraded = await self._try(p, code)
            except ElevationError as err:
                last_err = err
                continue
            self.token = upgraded.access_token or self.token
            self.coordinator.token = self.token
            return await self._execute(action, work, method=p.kind)

        return self._denied(action, last_err or NoVerifiedFactors())

