from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from elevation.auth.tokens import session_from_token
from elevation.core.entities import PENDING, PHONE, TOTP, VERIFIED, AuthResult, Enrollment, Factor, FactorList, Session
from elevation.core.errors import ProviderError
from elevation.core.settings import S
from elevation.providers.base import IdentityProvider

_KIND_TO_WIRE = {TOTP: "totp", PHONE: "phone"}
_WIRE_TO_KIND = {v: k for k, v in _KIND_TO_WIRE.items()}


def _iso_to_ts(s: Optional[str]) -> int:
    if not s:
        return 0
    try:
        return int(datetime.fromisoformat(s.replace("Z", "+00:00")).timestamp())
    except ValueError:
        return 0


def _factor_from_wire(d: Dict[str, Any]) -> Optional[Factor]:
    kind = _WIRE_TO_KIND.get(d.get("factor_type", ""))
    if not kind:
        return None
    return Factor(
        id=str(d["id"]),
        kind=kind,
        status=VERIFIED if d.get("status") == "verified" else PENDING,
        label=d.get("friendly_name") or "",
        phone=d.get("phone") or "",
        created_at=_iso_to_ts(d.get("created_at")),
    )


def _error_from_response(r: requests.Response) -> ProviderError:
    try:
        body = r.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    code = body.get("error_code") or body.get("code") or ""
    if not isinstance(code, str):
        code = ""
    message = body.get("msg") or body.get("message") or body.get("error_description") or body.get("error") or r.text
    return ProviderError(r.status_code, code, str(message or "")[:500])


class GoTrueProvider(IdentityProvider):
    """Client for a hosted Auth REST API (``/auth/v1``)."""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 timeout: Optional[float] = None, http: Optional[requests.Session] = None):
        self.base_url = (base_url if base_url is not None else S.auth_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else S.auth_api_key
        self.timeout = timeout or S.auth_request_timeout_seconds
        self.http = http or requests.Session()

    def _headers(self, token: Optional[str]) -> Dict[str, str]:
        h = {"apikey": self.api_key, "Content-Type": "application/json"}
        if token:
            h["Authorization"] = f"Bearer {token}"
        return h

    def _request(self, method: str, path: str, token: Optional[str] = None,
                 json: Optional[Dict[str, Any]] = None, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        if not self.base_url:
            raise ProviderError(500, "", "Auth provider not configured (AUTH_BASE_URL)")
        r = self.http.request(
            method,
            f"{self.base_url}/auth/v1{path}",
            headers=self._headers(token),
            json=json,
            params=params,
            timeout=self.timeout,
        )
        if r.status_code >= 400:
            raise _error_from_response(r)
        if not r.content:
            return {}
        return r.json()

    def _session(self, body: Dict[str, Any]) -> Session:
        token = body.get("access_token")
        if not token:
            raise ProviderError(502, "", "Provider response missing access_token")
        session = session_from_token(token)
        user = body.get("user") or {}
        return replace(session, email=user.get("email") or session.email, phone=user.get("phone") or session.phone)

    def authenticate(self, email: str, password: str) -> AuthResult:
        body = self._request("POST", "/token", params={"grant_type": "password"}, json={"email": email, "password": password})
        return AuthResult(user=body.get("user") or {}, session=self._session(body))

    def _user(self, token: str) -> Dict[str, Any]:
        return self._request("GET", "/user", token=token)

    def get_session(self, token: str) -> Optional[Session]:
        try:
            user = self._user(token)
        except ProviderError as exc:
            if exc.status in (401, 403):
                return None
            raise
        session = session_from_token(token)
        if user.get("id") and user["id"] != session.subject:
            return None
        return replace(session, email=user.get("email") or session.email, phone=user.get("phone") or session.phone)

    def list_factors(self, token: str) -> FactorList:
        user = self._user(token)
        factors: List[Factor] = []
        for d in user.get("factors") or []:
            f = _factor_from_wire(d)
            if f:
                factors.append(f)
        return FactorList.of(factors)

    def enroll_factor(self, token: str, kind: str, params: Dict[str, Any]) -> Enrollment:
        payload: Dict[str, Any] = {"factor_type": _KIND_TO_WIRE[kind]}
        if params.get("label"):
            payload["friendly_name"] = params["label"]
        if kind == PHONE:
            payload["phone"] = params["phone"]
        body = self._request("POST", "/factors", token=token, json=payload)
        totp = body.get("totp") or {}
        return Enrollment(
            factor_id=str(body["id"]),
            kind=kind,
            secret=totp.get("secret", ""),
            enrollment_image=totp.get("qr_code", ""),
            uri=totp.get("uri", ""),
            phone=body.get("phone") or params.get("phone", ""),
        )

    def create_challenge(self, token: str, factor_id: str) -> str:
        body = self._request("POST", f"/factors/{factor_id}/challenge", token=token, json={})
        return str(body["id"])

    def verify_challenge(self, token: str, factor_id: str, challenge_id: str, code: str) -> Session:
        body = self._request(
            "POST", f"/factors/{factor_id}/verify", token=token,
            json={"challenge_id": challenge_id, "code": code},
        )
        return self._session(body)

    def verify_phone_otp(self, token: str, phone: str, code: str) -> Session:
        body = self._request("POST", "/verify", token=token, json={"type": "sms", "phone": phone, "token": code})
        return self._session(body)

    def unenroll_factor(self, token: str, factor_id: str) -> None:
        self._request("DELETE", f"/factors/{factor_id}", token=token)

    def update_subject_contact(self, token: str, field: str, value: str) -> None:
        self._request("PUT", "/user", token=token, json={field: value})

    def sign_out(self, token: str) -> None:
        self._request("POST", "/logout", token=token)

    def ping(self) -> bool:
        self._request("GET", "/health")
        return True
