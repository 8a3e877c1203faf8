from __future__ import annotations

import json

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from elevation.auth.deps import device_id_from_request, get_current_session
from elevation.core.entities import Session
from elevation.models import ElevationSelectReq, ElevationStartReq, ElevationVerifyReq
from elevation.providers.registry import get_provider
from elevation.services.audit import audit_event
from elevation.services.calls import call_provider
from elevation.services.flow import ElevationFlow, FlowConfig
from elevation.services.flow_store import forget_subject, get_flow, put_flow
from elevation.services.policy import policy_for_role

router = APIRouter(prefix="/ui/elevation", tags=["ui-elevation"])


def _flow_for(session: Session, flow_id: str) -> ElevationFlow:
    flow = get_flow(session.subject, flow_id)
    # Requests may arrive with a token that was upgraded since the flow started.
    if session.access_token and session.access_token != flow.token and not flow.done:
        flow.update_token(session.access_token)
    return flow


@router.post("/start")
async def start_elevation(req: Request, body: ElevationStartReq, session: Session = Depends(get_current_session)):
    policy = policy_for_role(session.role)
    device = device_id_from_request(req)
    config = FlowConfig(
        require_mfa=True,
        force=body.force,
        allowed_factor_kinds=policy.allowed_factor_kinds,
        remember_device=policy.remember_device,
        device=device,
        trust_days=policy.trust_days if body.remember_device else 0,
    )
    flow = put_flow(session.subject, ElevationFlow(get_provider(), session.access_token, config))
    audit_event("elevation_start", session.subject, req, outcome="success", flow_id=flow.flow_id, force=body.force)
    await flow.start()
    return flow.snapshot()


@router.get("/{flow_id}")
async def get_elevation(flow_id: str, session: Session = Depends(get_current_session)):
    return _flow_for(session, flow_id).snapshot()


@router.post("/{flow_id}/select")
async def select_factor(flow_id: str, body: ElevationSelectReq, session: Session = Depends(get_current_session)):
    flow = _flow_for(session, flow_id)
    await flow.select_factor(body.factor_id)
    return flow.snapshot()


@router.post("/{flow_id}/challenge")
async def request_challenge(flow_id: str, session: Session = Depends(get_current_session)):
    flow = _flow_for(session, flow_id)
    await flow.request_challenge()
    return flow.snapshot()


@router.post("/{flow_id}/verify")
async def verify_code(flow_id: str, body: ElevationVerifyReq, session: Session = Depends(get_current_session)):
    flow = _flow_for(session, flow_id)
    await flow.submit_code(body.code, body.generation)
    out = flow.snapshot()
    if flow.result is not None and flow.result.session is not None:
        out["access_token"] = flow.result.session.access_token
    return out


@router.post("/{flow_id}/cancel")
async def cancel_elevation(req: Request, flow_id: str, sign_out: bool = False,
                           session: Session = Depends(get_current_session)):
    flow = _flow_for(session, flow_id)
    flow.cancel()
    out = flow.snapshot()
    if sign_out:
        # Cancelling the login-time prompt ends the base session as well.
        await call_provider(get_provider().sign_out, session.access_token)
        forget_subject(session.subject)
        audit_event("logout", session.subject, req, outcome="success", reason="elevation_cancelled")
        out["signed_out"] = True
    return out


@router.get("/{flow_id}/events")
async def elevation_events(flow_id: str, session: Session = Depends(get_current_session)):
    flow = _flow_for(session, flow_id)
    q = flow.subscribe()
    history = list(flow.events)

    async def gen():
        try:
            yield "event: hello\ndata: " + json.dumps({"flow_id": flow.flow_id}, separators=(",", ":")) + "\n\n"
            seen = 0
            for ev in history:
                seen = ev.seq
                yield "event: state\ndata: " + json.dumps(ev.to_dict(), separators=(",", ":"), default=str) + "\n\n"
            while not flow.done or not q.empty():
                ev = await q.get()
                if ev.seq <= seen:
                    continue
                yield "event: state\ndata: " + json.dumps(ev.to_dict(), separators=(",", ":"), default=str) + "\n\n"
                if ev.state in ("complete", "failed"):
                    break
        finally:
            flow.unsubscribe(q)

    return StreamingResponse(gen(), media_type="text/event-stream")
