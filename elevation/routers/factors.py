from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from elevation.auth.deps import get_current_session, guard_request
from elevation.core.entities import PHONE, TOTP, Session
from elevation.models import FactorConfirmReq, PhoneEnrollReq, TotpEnrollReq
from elevation.providers.registry import get_provider
from elevation.services.factors import FactorRegistry

router = APIRouter(prefix="/ui/mfa/factors", tags=["ui-mfa"])


def _registry(session: Session) -> FactorRegistry:
    return FactorRegistry(get_provider(), session.access_token, session.subject)


@router.get("")
async def list_factors(session: Session = Depends(get_current_session)):
    factors = await _registry(session).list()
    return {
        "factors": [f.public() for f in factors.all],
        "has_verified": bool(factors.verified()),
        "totp_enabled": any(f.verified for f in factors.totp),
        "phone_enabled": any(f.verified for f in factors.phone),
    }


@router.post("/totp")
async def enroll_totp(body: TotpEnrollReq, session: Session = Depends(get_current_session)):
    out = await _registry(session).enroll(TOTP, {"label": body.label})
    return {
        "factor_id": out.factor_id,
        "kind": out.kind,
        "status": "pending",
        "secret": out.secret,
        "enrollment_image": out.enrollment_image,
        "otpauth_uri": out.uri,
    }


@router.post("/phone")
async def enroll_phone(body: PhoneEnrollReq, session: Session = Depends(get_current_session)):
    reg = _registry(session)
    out = await reg.enroll(PHONE, {"phone": body.phone, "label": body.label})
    # The enrollment code goes out right away; confirm with the returned challenge id.
    challenge_id = await reg.begin_confirmation(out.factor_id)
    return {"factor_id": out.factor_id, "kind": out.kind, "status": "pending", "phone": out.phone,
            "challenge_id": challenge_id}


@router.post("/{factor_id}/confirm")
async def confirm_factor(factor_id: str, body: FactorConfirmReq, session: Session = Depends(get_current_session)):
    factor, upgraded = await _registry(session).confirm_enrollment(factor_id, body.code, body.challenge_id)
    return {"factor": factor.public(), "access_token": upgraded.access_token, "session": upgraded.public()}


@router.post("/{factor_id}/remove")
async def remove_factor(factor_id: str, req: Request, session: Session = Depends(get_current_session)):
    removed, token = await guard_request(
        req, session, f"remove factor {factor_id}",
        lambda token: FactorRegistry(get_provider(), token, session.subject).unenroll(factor_id),
    )
    return {"ok": True, "removed": removed, "access_token": token}
