from __future__ import annotations

from typing import Any, Dict

from elevation.core.errors import ElevationError
from elevation.core.tables import T
from elevation.core.time import now_ts
from elevation.providers.base import IdentityProvider
from elevation.services.calls import call_provider, off_thread


async def check_health(provider: IdentityProvider) -> Dict[str, Any]:
    health: Dict[str, Any] = {"timestamp": now_ts(), "status": "healthy", "issues": [], "components": {}}

    try:
        await call_provider(provider.ping)
        health["components"]["mfa_service"] = {"status": "healthy"}
    except ElevationError as err:
        health["components"]["mfa_service"] = {"status": "error", "error": err.category}
        health["issues"].append("MFA service unavailable")
        health["status"] = "degraded"

    try:
        await off_thread(T.trusted_devices.load)
        health["components"]["device_trust_store"] = {"status": "healthy"}
    except Exception as exc:
        health["components"]["device_trust_store"] = {"status": "error", "error": type(exc).__name__}
        health["issues"].append("Trusted device store unavailable")
        health["status"] = "degraded"

    return health
