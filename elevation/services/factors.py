from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from elevation.core.entities import FACTOR_KINDS, PHONE, TOTP, Enrollment, Factor, FactorList, Session
from elevation.core.errors import AlreadyEnrolled, ElevationError, FormatError, NotFound
from elevation.core.normalize import normalize_phone, require_code
from elevation.providers.base import IdentityProvider
from elevation.services.audit import audit_event
from elevation.services.calls import call_provider
from elevation.services.locks import CONTACT_LOCKS, SubjectLocks


class FactorRegistry:
    """CRUD over the caller's enrolled factors.

    The provider is the source of truth; every method re-reads it. There is no
    "last factor" protection here, callers decide whether removing one is allowed.
    """

    def __init__(self, provider: IdentityProvider, token: str, user_sub: str = "",
                 locks: Optional[SubjectLocks] = None):
        self.provider = provider
        self.token = token
        self.user_sub = user_sub
        self.locks = locks or CONTACT_LOCKS

    async def list(self) -> FactorList:
        return await call_provider(self.provider.list_factors, self.token)

    async def get(self, factor_id: str) -> Factor:
        f = (await self.list()).get(factor_id)
        if f is None:
            raise NotFound(raw=f"factor {factor_id}")
        return f

    async def enroll(self, kind: str, params: Optional[Dict[str, Any]] = None) -> Enrollment:
        params = dict(params or {})
        if kind not in FACTOR_KINDS:
            raise FormatError(f"Unknown factor kind {kind!r}")
        if kind == TOTP:
            existing = (await self.list()).totp
            if existing:
                raise AlreadyEnrolled(raw=f"totp factor {existing[0].id} is {existing[0].status}")
        else:
            params["phone"] = normalize_phone(params.get("phone", ""))
        try:
            out = await call_provider(self.provider.enroll_factor, self.token, kind, params)
        except ElevationError as err:
            audit_event("factor_enroll", self.user_sub, outcome="failure", kind=kind, category=err.category, raw=err.raw)
            raise
        audit_event("factor_enroll", self.user_sub, outcome="success", kind=kind, factor_id=out.factor_id)
        return out

    async def begin_confirmation(self, factor_id: str) -> str:
        """Issue the enrollment challenge; for phone factors this sends the SMS."""
        f = await self.get(factor_id)
        if f.verified:
            raise AlreadyEnrolled(raw=f"factor {factor_id} already verified")
        return await call_provider(self.provider.create_challenge, self.token, factor_id)

    async def confirm_enrollment(self, factor_id: str, code: str,
                                 challenge_id: Optional[str] = None) -> Tuple[Factor, Session]:
        code = require_code(code)
        f = await self.get(factor_id)
        if f.verified:
            raise AlreadyEnrolled(raw=f"factor {factor_id} already verified")
        if not challenge_id:
            challenge_id = await call_provider(self.provider.create_challenge, self.token, factor_id)
        try:
            session = await call_provider(self.provider.verify_challenge, self.token, factor_id, challenge_id, code)
        except ElevationError as err:
            audit_event("factor_confirm", self.user_sub, outcome="failure", factor_id=factor_id, category=err.category)
            raise
        self.token = session.access_token or self.token
        confirmed = await self.get(factor_id)
        if confirmed.kind == PHONE and confirmed.phone:
            await self.sync_contact("phone", confirmed.phone, session)
        audit_event("factor_confirm", self.user_sub, outcome="success", factor_id=factor_id, kind=confirmed.kind)
        return confirmed, session

    async def sync_contact(self, field: str, value: str, session: Optional[Session] = None) -> bool:
        """Keep the subject's contact field equal to ``value``.

        Serialized per subject so two tabs confirming at once issue one update.
        """
        subject = self.user_sub or (session.subject if session else "")
        async with self.locks.hold(subject, f"contact:{field}"):
            current = await call_provider(self.provider.get_session, self.token)
            if current is not None and getattr(current, field, None) == value:
                return False
            await call_provider(self.provider.update_subject_contact, self.token, field, value)
        audit_event("contact_sync", subject, outcome="success", field=field)
        return True

    async def unenroll(self, factor_id: str) -> bool:
        """Remove a factor in any state. Returns False when it was already gone."""
        try:
            await call_provider(self.provider.unenroll_factor, self.token, factor_id)
        except NotFound:
            return False
        audit_event("factor_unenroll", self.user_sub, outcome="success", factor_id=factor_id)
        return True
