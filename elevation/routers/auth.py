from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from elevation.auth.deps import get_current_session
from elevation.core.entities import Session
from elevation.core.errors import ElevationError
from elevation.core.normalize import normalize_email
from elevation.models import LoginReq, LoginResp
from elevation.providers.registry import get_provider
from elevation.services.audit import audit_event
from elevation.services.calls import call_provider
from elevation.services.flow_store import forget_subject
from elevation.services.policy import check_requirement, policy_for_role

router = APIRouter(prefix="/ui/auth", tags=["ui-auth"])


@router.post("/login", response_model=LoginResp)
async def ui_login(req: Request, body: LoginReq):
    provider = get_provider()
    email = normalize_email(body.email)
    try:
        result = await call_provider(provider.authenticate, email, body.password)
    except ElevationError as err:
        audit_event("login", "", req, outcome="failure", category=err.category)
        raise
    session = result.session
    factors = await call_provider(provider.list_factors, session.access_token)
    requirement = check_requirement(policy_for_role(session.role), session, factors)
    audit_event("login", session.subject, req, outcome="success", elevation_required=requirement.required)
    return LoginResp(
        access_token=session.access_token,
        session=session.public(),
        elevation_required=requirement.required,
        needs_setup=requirement.needs_setup,
    )


@router.get("/requirement")
async def ui_requirement(session: Session = Depends(get_current_session)):
    factors = await call_provider(get_provider().list_factors, session.access_token)
    return check_requirement(policy_for_role(session.role), session, factors).to_dict()


@router.post("/logout")
async def ui_logout(req: Request, session: Session = Depends(get_current_session)):
    await call_provider(get_provider().sign_out, session.access_token)
    forget_subject(session.subject)
    audit_event("logout", session.subject, req, outcome="success")
    return {"ok": True}
