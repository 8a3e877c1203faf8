from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from elevation.core.entities import AuthResult, Enrollment, FactorList, Session


class IdentityProvider(ABC):
    """Contract of the hosted identity/session provider.

    Every call except ``authenticate`` is bound to the caller's access token. The
    provider owns credentials, sessions and factor storage; nothing here caches them.
    Errors are raised as ``ProviderError`` and classified by the caller.
    """

    @abstractmethod
    def authenticate(self, email: str, password: str) -> AuthResult: ...

    @abstractmethod
    def get_session(self, token: str) -> Optional[Session]: ...

    @abstractmethod
    def list_factors(self, token: str) -> FactorList: ...

    @abstractmethod
    def enroll_factor(self, token: str, kind: str, params: Dict[str, Any]) -> Enrollment: ...

    @abstractmethod
    def create_challenge(self, token: str, factor_id: str) -> str:
        """Returns the challenge id. Phone factors dispatch an SMS as a side effect."""

    @abstractmethod
    def verify_challenge(self, token: str, factor_id: str, challenge_id: str, code: str) -> Session: ...

    @abstractmethod
    def verify_phone_otp(self, token: str, phone: str, code: str) -> Session: ...

    @abstractmethod
    def unenroll_factor(self, token: str, factor_id: str) -> None: ...

    @abstractmethod
    def update_subject_contact(self, token: str, field: str, value: str) -> None: ...

    @abstractmethod
    def sign_out(self, token: str) -> None: ...

    def ping(self) -> bool:
        return True
