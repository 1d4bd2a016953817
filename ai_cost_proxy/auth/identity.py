"""
Caller identity.

Session issuance lives outside this service; the proxy only asks an
IdentityProvider to turn request headers into a verified Identity.
"""

from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Protocol

SESSION_COOKIE = "session"


@dataclass(frozen=True)
class Identity:
    """Verified caller. Read-only to the proxy."""
    id: str
    email: str
    display_name: Optional[str] = None

    def to_dict(self) -> dict:
        return {"id": self.id, "email": self.email, "name": self.display_name}


class IdentityProvider(Protocol):
    async def authenticate(self, headers: Mapping[str, str]) -> Optional[Identity]: ...


def extract_session_token(headers: Mapping[str, str]) -> Optional[str]:
    """Bearer token from Authorization, else the session cookie."""
    authorization = headers.get("authorization") or ""
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()

    cookie_header = headers.get("cookie") or ""
    for chunk in cookie_header.split(";"):
        name, _, value = chunk.strip().partition("=")
        if name == SESSION_COOKIE and value:
            return value
    return None


class StaticSessionIdentityProvider:
    """Resolves session tokens against a fixed table from configuration."""

    def __init__(self, sessions: Optional[Dict[str, Identity]] = None):
        self._sessions = dict(sessions or {})

    async def authenticate(self, headers: Mapping[str, str]) -> Optional[Identity]:
        token = extract_session_token(headers)
        if token is None:
            return None
        return self._sessions.get(token)
