from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from elevation.core.entities import RATE_LIMITED, SENT, Challenge, Factor, Session
from elevation.core.errors import (
    EXPIRED_CHALLENGE, NOT_FOUND, ElevationError, ExpiredChallenge, FormatError, RateLimited,
)
from elevation.core.normalize import require_code
from elevation.core.settings import S
from elevation.core.time import now_ts
from elevation.metrics import record_challenge
from elevation.providers.base import IdentityProvider
from elevation.services.audit import audit_event
from elevation.services.calls import call_provider

FRESH = "fresh"
EXPIRING = "expiring"
STALE = "stale"

SUPERSEDED = "superseded"


@dataclass
class _Block:
    until: int
    error: RateLimited


class ChallengeCoordinator:
    """Issues and verifies challenges for one session.

    Holds at most one outstanding challenge per factor; issuing a new one supersedes
    the old. A rate-limited issue blocks further issues for that factor until the
    provider's wait time has elapsed, without calling the provider again.
    """

    def __init__(self, provider: IdentityProvider, token: str, user_sub: str = ""):
        self.provider = provider
        self.token = token
        self.user_sub = user_sub
        self._current: Dict[str, Challenge] = {}
        self._blocks: Dict[str, _Block] = {}
        self._generation = 0

    # --- rate limit countdown ---

    def countdown(self, factor_id: str) -> int:
        b = self._blocks.get(factor_id)
        if b is None:
            return 0
        left = b.until - now_ts()
        if left <= 0:
            del self._blocks[factor_id]
            return 0
        return left

    def can_request(self, factor_id: str) -> bool:
        return self.countdown(factor_id) == 0

    def blocked(self) -> bool:
        return any(self.countdown(fid) for fid in list(self._blocks))

    def rate_limit_error(self, factor_id: str) -> Optional[RateLimited]:
        """The pending rate-limit error, or None once the countdown has run out."""
        left = self.countdown(factor_id)
        if not left:
            return None
        err = self._blocks[factor_id].error
        return RateLimited(left, message=err.message, raw=err.raw)

    # --- freshness ---

    def current(self, factor_id: str) -> Optional[Challenge]:
        return self._current.get(factor_id)

    def is_current(self, challenge: Challenge) -> bool:
        cur = self._current.get(challenge.factor_id)
        return cur is not None and cur.challenge_id == challenge.challenge_id and cur.generation == challenge.generation

    @staticmethod
    def age(challenge: Challenge) -> int:
        return max(0, now_ts() - challenge.created_at)

    def freshness(self, challenge: Challenge) -> str:
        age = self.age(challenge)
        if age > S.challenge_stale_seconds:
            return STALE
        if age > S.challenge_warn_seconds:
            return EXPIRING
        return FRESH

    def discard(self, factor_id: str) -> None:
        self._current.pop(factor_id, None)

    # --- operations ---

    async def issue(self, factor: Factor) -> Challenge:
        if not factor.verified:
            raise FormatError("Factor is not verified", raw=f"factor {factor.id} is {factor.status}")
        left = self.countdown(factor.id)
        if left:
            raise self.rate_limit_error(factor.id)

        self.discard(factor.id)
        try:
            challenge_id = await call_provider(self.provider.create_challenge, self.token, factor.id)
        except RateLimited as err:
            self._blocks[factor.id] = _Block(until=now_ts() + err.wait_seconds, error=err)
            record_challenge(factor.kind, RATE_LIMITED)
            audit_event("mfa_challenge", self.user_sub, outcome="rate_limited", factor_id=factor.id,
                        wait_seconds=err.wait_seconds, raw=err.raw)
            raise
        except ElevationError as err:
            record_challenge(factor.kind, "failed")
            audit_event("mfa_challenge", self.user_sub, outcome="failure", factor_id=factor.id,
                        category=err.category, raw=err.raw)
            raise

        self._generation += 1
        chal = Challenge(
            factor_id=factor.id,
            challenge_id=challenge_id,
            created_at=now_ts(),
            generation=self._generation,
            kind=factor.kind,
            outcome=SENT,
        )
        self._current[factor.id] = chal
        record_challenge(factor.kind, SENT)
        audit_event("mfa_challenge", self.user_sub, outcome="success", factor_id=factor.id, kind=factor.kind)
        return chal

    async def verify(self, factor: Factor, challenge: Challenge, code: str) -> Session:
        code = require_code(code)
        if not self.is_current(challenge):
            raise ExpiredChallenge("This code request was replaced by a newer one. Please use the latest code.",
                                   raw=SUPERSEDED)
        if self.freshness(challenge) == STALE:
            self.discard(factor.id)
            raise ExpiredChallenge(raw=f"challenge age {self.age(challenge)}s")

        challenge.attempts += 1
        try:
            session = await call_provider(
                self.provider.verify_challenge, self.token, factor.id, challenge.challenge_id, code
            )
        except ElevationError as err:
            if err.category in (EXPIRED_CHALLENGE, NOT_FOUND):
                self.discard(factor.id)
            audit_event("mfa_verify", self.user_sub, outcome="failure", factor_id=factor.id,
                        category=err.category, raw=err.raw, attempts=challenge.attempts)
            raise

        self.discard(factor.id)
        audit_event("mfa_verify", self.user_sub, outcome="success", factor_id=factor.id, kind=factor.kind)
        return session
