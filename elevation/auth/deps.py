from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Optional, Tuple

from fastapi import HTTPException, Request

from elevation.core.entities import Session
from elevation.core.errors import ElevationError, Forbidden, http_status
from elevation.core.normalize import mask_phone
from elevation.providers.registry import get_provider
from elevation.services.calls import call_provider
from elevation.services.flow_store import coordinator_for
from elevation.services.gate import EXECUTED, PromptInfo, SensitiveActionGate
from elevation.services.policy import policy_for_role


def extract_bearer_token(auth_header: Optional[str]) -> str:
    if not auth_header:
        raise HTTPException(401, "Missing Authorization header")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(401, "Invalid Authorization header")
    return token.strip()


async def get_access_token(request: Request) -> str:
    return extract_bearer_token(request.headers.get("authorization", ""))


async def get_current_session(request: Request) -> Session:
    """Resolve the caller's session against the provider on every request.

    Assurance is never cached between requests; the provider upgrades sessions on
    its own schedule.
    """
    token = await get_access_token(request)
    try:
        session = await call_provider(get_provider().get_session, token)
    except ElevationError as err:
        raise HTTPException(http_status(err), err.to_dict()) from err
    if session is None:
        raise HTTPException(401, "Session expired or revoked")
    if not session.access_token:
        session = replace(session, access_token=token)
    request.state.user_sub = session.subject
    return session


def device_id_from_request(request: Request) -> str:
    return (request.headers.get("x-device-id") or "").strip()[:128]


async def guard_request(request: Request, session: Session, action: str,
                        work: Callable[[str], Any]) -> Tuple[Any, str]:
    """Run ``work(token)`` behind the sensitive-action gate.

    Returns the work result and the access token it ran with, which is the
    upgraded one when a code was verified on the way.

    The code travels in the ``X-MFA-Code`` header. Without one the first call
    answers 403 with the accepted factor kinds (and sends the SMS when a phone
    factor is first in line); the client retries the same request with the code.
    """
    provider = get_provider()
    coordinator = coordinator_for(provider, session.access_token, session.subject, session.session_id)
    gate = SensitiveActionGate(
        provider,
        session.access_token,
        policy_for_role(session.role),
        device=device_id_from_request(request),
        coordinator=coordinator,
    )
    code = (request.headers.get("x-mfa-code") or "").strip() or None
    asked: Dict[str, PromptInfo] = {}

    async def prompt(info: PromptInfo) -> Optional[str]:
        asked["info"] = info
        return code

    result = await gate.guard(action, lambda: work(gate.token), prompt)
    if result.outcome == EXECUTED:
        return result.value, gate.token
    if result.error is not None:
        raise result.error
    info = asked.get("info")
    raise HTTPException(403, {
        **Forbidden().to_dict(),
        "action": action,
        "kinds": list(info.kinds) if info else [],
        "sent_to": mask_phone(info.sent_to) if info and info.sent_to else "",
    })
