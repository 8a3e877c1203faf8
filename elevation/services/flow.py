from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import anyio

from elevation.core.entities import FACTOR_KINDS, TOTP, Challenge, Factor, Session
from elevation.core.errors import (
    CANCELLED, EXPIRED_CHALLENGE, INVALID_CREDENTIALS, NOT_FOUND, PROVIDER_MISCONFIGURED,
    AttemptsExhausted, Cancelled, ElevationError, ExpiredChallenge, FormatError, InvalidCredentials,
    NoActiveChallenge, NoVerifiedFactors, NotFound, RateLimited, VerificationUnconfirmed,
)
from elevation.core.normalize import CODE_LENGTH, sanitize_code
from elevation.core.settings import S
from elevation.core.time import now_ts
from elevation.metrics import record_elevation
from elevation.providers.base import IdentityProvider
from elevation.services import device_trust
from elevation.services.audit import audit_event
from elevation.services.calls import call_provider, off_thread
from elevation.services.challenges import STALE, SUPERSEDED, ChallengeCoordinator
from elevation.services.factors import FactorRegistry

LOADING = "loading"
SELECT_FACTOR = "select-factor"
AWAITING_CHALLENGE = "awaiting-challenge"
VERIFY = "verify"
COMPLETE = "complete"
FAILED = "failed"

TERMINAL = (COMPLETE, FAILED)

# Failures that end the attempt instead of allowing a retry.
_TERMINAL_CATEGORIES = (PROVIDER_MISCONFIGURED, NOT_FOUND, INVALID_CREDENTIALS)


@dataclass(frozen=True)
class FlowConfig:
    require_mfa: bool = True
    force: bool = False
    allowed_factor_kinds: Tuple[str, ...] = FACTOR_KINDS
    remember_device: bool = False
    device: str = ""
    trust_days: int = 0


@dataclass(frozen=True)
class ElevationResult:
    outcome: str
    session: Optional[Session] = None
    error: Optional[ElevationError] = None
    trusted_device: bool = False


@dataclass(frozen=True)
class FlowEvent:
    flow_id: str
    seq: int
    previous: str
    state: str
    at: int
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"flow_id": self.flow_id, "seq": self.seq, "previous": self.previous,
                "state": self.state, "at": self.at, **self.detail}


class ElevationFlow:
    """Drives one session from base to elevated assurance.

    loading -> select-factor (only with two or more verified factors)
            -> awaiting-challenge -> verify -> complete
    Any state can end in ``failed``. Every suspended call is tagged with the attempt
    number current when it started; if ``cancel`` ran meanwhile the result is dropped.
    """

    def __init__(self, provider: IdentityProvider, token: str, config: Optional[FlowConfig] = None,
                 flow_id: Optional[str] = None):
        self.provider = provider
        self.token = token
        self.config = config or FlowConfig()
        self.flow_id = flow_id or uuid.uuid4().hex
        self.user_sub = ""
        self.coordinator = ChallengeCoordinator(provider, token)
        self.registry = FactorRegistry(provider, token)

        self.state = LOADING
        self.factors: List[Factor] = []
        self.selected: Optional[Factor] = None
        self.challenge: Optional[Challenge] = None
        self.attempts = 0
        self.error: Optional[ElevationError] = None
        self.result: Optional[ElevationResult] = None
        self.events: List[FlowEvent] = []
        self.created_at = now_ts()

        self._attempt = 0
        self._seq = 0
        self._listeners: List[Callable[[FlowEvent], None]] = []
        self._queues: Set[asyncio.Queue] = set()

    # --- events ---

    def add_listener(self, fn: Callable[[FlowEvent], None]) -> None:
        self._listeners.append(fn)

    def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=100)
        self._queues.add(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._queues.discard(q)

    def _emit(self, previous: str, **detail: Any) -> None:
        self._seq += 1
        ev = FlowEvent(self.flow_id, self._seq, previous, self.state, now_ts(), detail)
        self.events.append(ev)
        for fn in list(self._listeners):
            try:
                fn(ev)
            except Exception:
                pass
        for q in list(self._queues):
            try:
                q.put_nowait(ev)
            except asyncio.QueueFull:
                self._queues.discard(q)

    def _to(self, state: str, **detail: Any) -> None:
        previous = self.state
        self.state = state
        self._emit(previous, **detail)

    # --- helpers ---

    @property
    def done(self) -> bool:
        return self.state in TERMINAL

    def _stale(self, attempt: int) -> bool:
        return attempt != self._attempt or self.done

    def update_token(self, token: str) -> None:
        self.token = token
        self.coordinator.token = token
        self.registry.token = token

    def _fail(self, err: ElevationError, outcome: str = "failed") -> None:
        self.error = err
        self.challenge = None
        self.result = ElevationResult(outcome=outcome, error=err)
        self._to(FAILED, reason=err.category)
        record_elevation(outcome)
        audit_event("elevation", self.user_sub, outcome=outcome, flow_id=self.flow_id,
                    category=err.category, raw=err.raw)

    async def _complete(self, session: Session, trusted_device: bool = False) -> None:
        self.error = None
        self.challenge = None
        self.update_token(session.access_token or self.token)
        self.result = ElevationResult(outcome="complete", session=session, trusted_device=trusted_device)
        self._to(COMPLETE, trusted_device=trusted_device)
        record_elevation("complete")
        audit_event("elevation", self.user_sub, outcome="complete", flow_id=self.flow_id,
                    trusted_device=trusted_device, methods=list(session.methods))

    def _guard_state(self, *allowed: str) -> None:
        if self.state not in allowed:
            raise NoActiveChallenge(raw=f"operation not allowed in state {self.state}")

    # --- operations ---

    async def start(self) -> None:
        attempt = self._attempt
        try:
            session = await call_provider(self.provider.get_session, self.token)
        except ElevationError as err:
            if not self._stale(attempt):
                self._fail(err)
            return
        if self._stale(attempt):
            return
        if session is None:
            self._fail(InvalidCredentials("Session expired. Please sign in again."))
            return
        self.user_sub = session.subject
        self.coordinator.user_sub = session.subject
        self.registry.user_sub = session.subject

        if not self.config.require_mfa or (session.elevated and not self.config.force):
            await self._complete(session)
            return

        if self.config.remember_device and self.config.device and not self.config.force:
            try:
                trusted = await off_thread(device_trust.is_trusted, session.subject, self.config.device)
            except Exception as exc:
                audit_event("device_trust", session.subject, outcome="failure", raw=str(exc))
                trusted = False
            if self._stale(attempt):
                return
            if trusted:
                await self._complete(session, trusted_device=True)
                return

        try:
            factors = await self.registry.list()
        except ElevationError as err:
            if not self._stale(attempt):
                self._fail(err)
            return
        if self._stale(attempt):
            return

        self.factors = [f for f in factors.verified() if f.kind in self.config.allowed_factor_kinds]
        if not self.factors:
            self._fail(NoVerifiedFactors())
            return
        if len(self.factors) == 1:
            # No challenge yet: phone factors would send an SMS the user did not ask for.
            self.selected = self.factors[0]
            self._to(AWAITING_CHALLENGE, factor_id=self.selected.id, kind=self.selected.kind)
        else:
            self._to(SELECT_FACTOR, factors=[f.id for f in self.factors])

    async def select_factor(self, factor_id: str) -> None:
        self._guard_state(SELECT_FACTOR, AWAITING_CHALLENGE, VERIFY)
        factor = next((f for f in self.factors if f.id == factor_id), None)
        if factor is None:
            self.error = NotFound(raw=f"factor {factor_id} is not selectable")
            return
        if self.selected and self.selected.id != factor.id:
            self.coordinator.discard(self.selected.id)
        self.selected = factor
        self.challenge = None
        self.error = None
        self._to(AWAITING_CHALLENGE, factor_id=factor.id, kind=factor.kind)
        await self.request_challenge()

    async def request_challenge(self) -> None:
        self._guard_state(AWAITING_CHALLENGE, VERIFY)
        if self.selected is None:
            self.error = NoActiveChallenge()
            return
        attempt = self._attempt
        factor = self.selected
        self.challenge = None
        try:
            challenge = await self.coordinator.issue(factor)
        except ElevationError as err:
            if self._stale(attempt):
                return
            if err.category in _TERMINAL_CATEGORIES:
                self._fail(err)
                return
            self.error = err
            if self.state != AWAITING_CHALLENGE:
                self._to(AWAITING_CHALLENGE, factor_id=factor.id, reason=err.category)
            return
        if self._stale(attempt) or self.selected is not factor:
            return
        self.challenge = challenge
        self.error = None
        self._to(VERIFY, factor_id=factor.id, generation=challenge.generation)

    async def _refresh(self, attempt: int) -> bool:
        """Re-read the factor list and make sure the selected factor still exists."""
        try:
            factors = await self.registry.list()
        except ElevationError as err:
            if self._stale(attempt):
                return False
            if err.category in _TERMINAL_CATEGORIES:
                self._fail(err)
            else:
                self.error = err
            return False
        if self._stale(attempt):
            return False
        current = factors.get(self.selected.id) if self.selected else None
        if current is None or not current.verified:
            self._fail(NotFound("The selected verification method no longer exists.",
                                raw=f"factor {self.selected.id if self.selected else ''}"))
            return False
        return True

    async def submit_code(self, raw_code: str, generation: Optional[int] = None) -> None:
        self._guard_state(AWAITING_CHALLENGE, VERIFY)
        code = sanitize_code(raw_code)
        if len(code) != CODE_LENGTH:
            self.error = FormatError(f"Please enter a {CODE_LENGTH}-digit verification code")
            return
        if generation is not None and (self.challenge is None or generation != self.challenge.generation):
            self.error = ExpiredChallenge("This code request was replaced by a newer one. Please use the latest code.",
                                          raw=SUPERSEDED)
            return
        if self.challenge is None:
            if self.selected is not None and self.selected.kind == TOTP and self.coordinator.can_request(self.selected.id):
                # Authenticator codes need no delivery, so issue the challenge on demand.
                await self.request_challenge()
                if self.challenge is None:
                    return
            else:
                self.error = NoActiveChallenge()
                return

        challenge = self.challenge
        if self.coordinator.freshness(challenge) == STALE:
            self.coordinator.discard(challenge.factor_id)
            self.challenge = None
            self.error = ExpiredChallenge(raw=f"challenge age {self.coordinator.age(challenge)}s")
            self._to(AWAITING_CHALLENGE, reason=EXPIRED_CHALLENGE)
            return

        attempt = self._attempt
        if not await self._refresh(attempt):
            return
        # A newer challenge was issued while the factor list was loading.
        if self.challenge is not challenge:
            return

        try:
            session = await self.coordinator.verify(self.selected, challenge, code)
        except ElevationError as err:
            if self._stale(attempt) or self.challenge is not challenge:
                return
            self._on_verify_error(err, challenge)
            return
        if self._stale(attempt):
            return

        try:
            confirmed = await self._confirm(session, attempt)
        except ElevationError as err:
            if not self._stale(attempt):
                self._fail(err)
            return
        if confirmed is None:
            return

        if self.config.remember_device and self.config.device and self.config.trust_days > 0:
            try:
                await off_thread(device_trust.record_trust, confirmed.subject, self.config.device, self.config.trust_days)
            except Exception as exc:
                audit_event("device_trust", confirmed.subject, outcome="failure", raw=str(exc))
            if self._stale(attempt):
                return
        await self._complete(confirmed)

    def _on_verify_error(self, err: ElevationError, challenge: Challenge) -> None:
        if err.category in _TERMINAL_CATEGORIES:
            self._fail(err)
            return
        if err.raw == SUPERSEDED:
            # Rejected locally, the provider never saw the code.
            self.error = err
            self.challenge = None
            self._to(AWAITING_CHALLENGE, reason=err.category, attempts=self.attempts)
            return
        self.attempts += 1
        if self.attempts >= S.max_verify_attempts:
            self._fail(AttemptsExhausted(raw=err.raw))
            return
        self.error = err
        if err.category == EXPIRED_CHALLENGE or not self.coordinator.is_current(challenge):
            self.challenge = None
            self._to(AWAITING_CHALLENGE, reason=err.category, attempts=self.attempts)
        else:
            self._to(VERIFY, reason=err.category, attempts=self.attempts)

    async def _confirm(self, session: Session, attempt: int) -> Optional[Session]:
        """Poll the provider until the upgraded session is visible as elevated."""
        token = session.access_token or self.token
        delay = S.elevation_confirm_backoff_seconds
        for i in range(max(1, S.elevation_confirm_attempts)):
            fetched = await call_provider(self.provider.get_session, token)
            if self._stale(attempt):
                return None
            if fetched is not None and fetched.subject == self.user_sub and fetched.elevated:
                return fetched
            if i + 1 < S.elevation_confirm_attempts:
                await anyio.sleep(delay)
                delay *= 2
                if self._stale(attempt):
                    return None
        raise VerificationUnconfirmed(raw=f"session not elevated after {S.elevation_confirm_attempts} checks")

    def cancel(self) -> None:
        self._attempt += 1
        if self.done:
            return
        if self.selected is not None:
            self.coordinator.discard(self.selected.id)
        self._fail(Cancelled(), outcome=CANCELLED)

    # --- views ---

    def challenge_status(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"active": False, "age_seconds": 0, "expiring_soon": False, "stale": False,
                               "generation": None, "countdown": 0}
        if self.selected is not None:
            out["countdown"] = self.coordinator.countdown(self.selected.id)
        if self.challenge is not None:
            fresh = self.coordinator.freshness(self.challenge)
            out.update(
                active=True,
                age_seconds=self.coordinator.age(self.challenge),
                expiring_soon=fresh != "fresh",
                stale=fresh == STALE,
                generation=self.challenge.generation,
            )
        return out

    def current_error(self) -> Optional[ElevationError]:
        # Rate-limit errors clear themselves once the countdown is over.
        if isinstance(self.error, RateLimited) and self.selected is not None:
            pending = self.coordinator.rate_limit_error(self.selected.id)
            if pending is None:
                self.error = None
            else:
                self.error = pending
        return self.error

    def snapshot(self) -> Dict[str, Any]:
        err = self.current_error()
        out: Dict[str, Any] = {
            "flow_id": self.flow_id,
            "state": self.state,
            "factors": [f.public() for f in self.factors],
            "selected": self.selected.public() if self.selected else None,
            "attempts": self.attempts,
            "max_attempts": S.max_verify_attempts,
            "challenge": self.challenge_status(),
            "error": err.to_dict() if err else None,
        }
        if self.result is not None:
            out["result"] = {
                "outcome": self.result.outcome,
                "session": self.result.session.public() if self.result.session else None,
                "trusted_device": self.result.trusted_device,
            }
        return out
