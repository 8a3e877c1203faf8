from __future__ import annotations

import json
from typing import Any, Dict

from elevation.core.normalize import client_ip_from_request
from elevation.core.settings import S
from elevation.core.time import now_ts
from elevation.metrics import record_mfa_failure, record_mfa_success


def audit_event(event: str, user_sub: str, request=None, **fields: Any) -> None:
    payload: Dict[str, Any] = {"event": event, "user_sub": user_sub, "ts": now_ts(), **fields}
    if request is not None:
        try:
            payload["ip"] = client_ip_from_request(request)
            payload["user_agent"] = (request.headers.get("user-agent", "")[:256])
        except Exception:
            pass

    if event.startswith("mfa_verify"):
        outcome = str(fields.get("outcome", ""))
        if outcome == "success":
            record_mfa_success()
        elif outcome == "failure":
            record_mfa_failure(str(fields.get("category", "unknown")))

    # stdout audit log
    if not S.audit_log_enabled:
        return
    try:
        print(json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str))
    except Exception:
        pass
