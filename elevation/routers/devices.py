from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from elevation.auth.deps import device_id_from_request, get_current_session, guard_request
from elevation.core.entities import Session
from elevation.core.errors import NotFound
from elevation.core.time import now_ts
from elevation.models import TrustedDeviceListResp, TrustedDeviceOut
from elevation.services import device_trust
from elevation.services.audit import audit_event
from elevation.services.calls import off_thread

router = APIRouter(prefix="/ui/devices", tags=["trusted-devices"])


@router.get("", response_model=TrustedDeviceListResp)
async def list_trusted_devices(session: Session = Depends(get_current_session)):
    devices = await off_thread(device_trust.list_devices, session.subject)
    ts = now_ts()
    return TrustedDeviceListResp(
        devices=[
            TrustedDeviceOut(
                record_id=d.record_id,
                device_label=d.device_label,
                created_at=d.created_at,
                last_used_at=d.last_used_at,
                trusted_until=d.trusted_until,
                active=d.is_live(ts),
            )
            for d in devices
        ],
        stats=device_trust.summarize(devices, ts),
    )


@router.get("/stats")
async def trusted_device_stats(session: Session = Depends(get_current_session)):
    return await off_thread(device_trust.usage_stats, session.subject)


@router.get("/current")
async def current_device(req: Request, session: Session = Depends(get_current_session)):
    device = device_id_from_request(req)
    if not device:
        return {"trusted": False}
    return {"trusted": await off_thread(device_trust.is_trusted, session.subject, device)}


@router.post("/{record_id}/revoke")
async def revoke_trusted_device(record_id: str, req: Request, session: Session = Depends(get_current_session)):
    if not await off_thread(device_trust.owns, session.subject, record_id):
        raise NotFound("Trusted device not found.", raw=record_id)
    revoked = await off_thread(device_trust.revoke, record_id)
    audit_event("trusted_device_revoke", session.subject, req, outcome="success" if revoked else "noop",
                record_id=record_id)
    return {"ok": True, "revoked": revoked}


@router.post("/revoke-all")
async def revoke_all_trusted_devices(req: Request, session: Session = Depends(get_current_session)):
    n, token = await guard_request(
        req, session, "revoke all trusted devices",
        lambda token: off_thread(device_trust.revoke_all, session.subject),
    )
    audit_event("trusted_device_revoke_all", session.subject, req, outcome="success", revoked=n)
    return {"ok": True, "revoked": n, "access_token": token}
