from __future__ import annotations

from functools import lru_cache

from elevation.core.settings import S
from elevation.providers.base import IdentityProvider


@lru_cache(maxsize=1)
def get_provider() -> IdentityProvider:
    if S.auth_provider == "memory":
        from elevation.providers.memory import MemoryProvider

        return MemoryProvider()
    from elevation.providers.gotrue import GoTrueProvider

    return GoTrueProvider()
