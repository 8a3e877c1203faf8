from __future__ import annotations

from typing import Any, Dict, Tuple

import jwt

from elevation.core.entities import BASE, ELEVATED, Session
from elevation.core.errors import InvalidCredentials
from elevation.core.settings import S


def decode_access_token(token: str) -> Dict[str, Any]:
    """Decode a provider access token.

    The signature is verified when ``AUTH_JWT_SECRET`` is set; otherwise the claims
    are read unverified and the provider's ``/user`` endpoint is the authority.
    """
    try:
        if S.auth_jwt_secret:
            return jwt.decode(
                token,
                S.auth_jwt_secret,
                algorithms=["HS256"],
                audience=S.auth_jwt_audience or None,
            )
        return jwt.decode(token, options={"verify_signature": False, "verify_aud": False})
    except jwt.ExpiredSignatureError as exc:
        raise InvalidCredentials("Token expired", raw=str(exc)) from exc
    except jwt.PyJWTError as exc:
        raise InvalidCredentials("Invalid token", raw=str(exc)) from exc


def _methods(amr: Any) -> Tuple[str, ...]:
    entries = []
    for i, m in enumerate(amr or []):
        if isinstance(m, dict):
            entries.append((int(m.get("timestamp", 0) or 0), i, str(m.get("method", ""))))
        else:
            entries.append((0, i, str(m)))
    entries.sort()
    seen: Dict[str, None] = {}
    for _, _, method in entries:
        if method:
            seen.setdefault(method, None)
    return tuple(seen)


def session_from_claims(token: str, claims: Dict[str, Any]) -> Session:
    sub = claims.get("sub")
    if not isinstance(sub, str) or not sub.strip():
        raise InvalidCredentials("Token missing subject")
    user_meta = claims.get("user_metadata") or {}
    app_meta = claims.get("app_metadata") or {}
    return Session(
        subject=sub,
        assurance=ELEVATED if claims.get("aal") == "aal2" else BASE,
        methods=_methods(claims.get("amr")),
        created_at=int(claims.get("iat", 0) or 0),
        access_token=token,
        session_id=str(claims.get("session_id", "") or ""),
        email=str(claims.get("email", "") or ""),
        phone=str(claims.get("phone", "") or ""),
        role=str(user_meta.get("role") or app_meta.get("role") or ""),
    )


def session_from_token(token: str) -> Session:
    return session_from_claims(token, decode_access_token(token))
