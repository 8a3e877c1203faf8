from __future__ import annotations

from typing import Dict, Optional, Tuple

from elevation.core.errors import NotFound
from elevation.core.settings import S
from elevation.core.time import now_ts
from elevation.metrics import set_active_flows
from elevation.providers.base import IdentityProvider
from elevation.services.challenges import ChallengeCoordinator
from elevation.services.flow import ElevationFlow

# Flows and gate coordinators live in process memory, keyed per subject.
_FLOWS: Dict[str, Tuple[str, ElevationFlow]] = {}
# Coordinators are stored with the time they were last handed out.
_COORDINATORS: Dict[Tuple[str, str], Tuple[ChallengeCoordinator, int]] = {}


def _expired(flow: ElevationFlow, now: int) -> bool:
    return flow.done and now - flow.created_at > 2 * S.challenge_stale_seconds


def _idle(coord: ChallengeCoordinator, last_used: int, now: int) -> bool:
    return now - last_used > 2 * S.challenge_stale_seconds and not coord.blocked()


def _sweep() -> None:
    now = now_ts()
    for fid in [fid for fid, (_, f) in _FLOWS.items() if _expired(f, now)]:
        _FLOWS.pop(fid, None)
    for key in [k for k, (c, seen) in _COORDINATORS.items() if _idle(c, seen, now)]:
        _COORDINATORS.pop(key, None)
    set_active_flows(sum(1 for _, f in _FLOWS.values() if not f.done))


def put_flow(user_sub: str, flow: ElevationFlow) -> ElevationFlow:
    """Register ``flow`` and cancel any other live flow of the same subject."""
    for fid, (owner, other) in list(_FLOWS.items()):
        if owner == user_sub and fid != flow.flow_id and not other.done:
            other.cancel()
    _FLOWS[flow.flow_id] = (user_sub, flow)
    _sweep()
    return flow


def get_flow(user_sub: str, flow_id: str) -> ElevationFlow:
    entry = _FLOWS.get(flow_id)
    if entry is None or entry[0] != user_sub:
        raise NotFound("Verification attempt not found.", raw=f"flow {flow_id}")
    return entry[1]


def coordinator_for(provider: IdentityProvider, token: str, user_sub: str,
                    session_id: str = "") -> ChallengeCoordinator:
    _sweep()
    key = (user_sub, session_id)
    entry = _COORDINATORS.get(key)
    coord = entry[0] if entry else ChallengeCoordinator(provider, token, user_sub)
    coord.token = token
    _COORDINATORS[key] = (coord, now_ts())
    return coord


def forget_subject(user_sub: str) -> None:
    for key in [k for k in _COORDINATORS if k[0] == user_sub]:
        _COORDINATORS.pop(key, None)
    for fid, (owner, flow) in list(_FLOWS.items()):
        if owner == user_sub:
            flow.cancel()
            _FLOWS.pop(fid, None)
    _sweep()


def active_flows() -> int:
    return sum(1 for _, f in _FLOWS.values() if not f.done)


def reset() -> None:
    _FLOWS.clear()
    _COORDINATORS.clear()
