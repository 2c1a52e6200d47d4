"""
OAuth 2.1 data models for the authorization engine.

Clients are provisioned once and kept in-process as immutable dataclasses.
Everything that lives in the storage collaborator (authorization codes,
access tokens, refresh-token mappings) is a pydantic model so it can be
round-tripped through a key-value store as JSON.
"""

import hashlib
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class GrantType(str, Enum):
    """Grant types accepted by the token endpoint."""
    AUTHORIZATION_CODE = "authorization_code"
    REFRESH_TOKEN = "refresh_token"


class ResponseType(str, Enum):
    CODE = "code"


class CodeChallengeMethod(str, Enum):
    S256 = "S256"


class TokenTypeHint(str, Enum):
    """Revocation hints as defined in RFC 7009."""
    ACCESS_TOKEN = "access_token"
    REFRESH_TOKEN = "refresh_token"


def parse_scope(scope: Optional[str]) -> list[str]:
    """Split a space-delimited scope string, dropping duplicates but keeping order."""
    if not scope:
        return []
    seen: list[str] = []
    for item in scope.split():
        if item not in seen:
            seen.append(item)
    return seen


def format_scope(scopes: list[str]) -> str:
    return " ".join(scopes)


def fingerprint(value: str) -> str:
    """Stable, non-reversible identifier for a secret artifact."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:32]


@dataclass(frozen=True)
class ClientRecord:
    """Provisioned OAuth client. Immutable after provisioning."""
    client_id: str
    secret_hash: str
    redirect_uris: frozenset[str] = field(default_factory=frozenset)
    scopes: frozenset[str] = field(default_factory=frozenset)
    name: str = ""
    grant_types: frozenset[str] = field(default_factory=lambda: frozenset(g.value for g in GrantType))

    def supports_redirect_uri(self, redirect_uri: str) -> bool:
        """Exact string match, no wildcards or prefix matching."""
        return redirect_uri in self.redirect_uris

    def supports_scopes(self, scopes: list[str]) -> bool:
        return all(scope in self.scopes for scope in scopes)

    def supports_grant_type(self, grant_type: str) -> bool:
        return grant_type in self.grant_types


class AuthorizationCode(BaseModel):
    """Single-use authorization code bound to a PKCE challenge."""
    code: str
    client_id: str
    scopes: list[str] = Field(default_factory=list)
    redirect_uri: str
    code_challenge: str
    code_challenge_method: CodeChallengeMethod = CodeChallengeMethod.S256
    created_at: float = Field(default_factory=time.time)
    expires_at: float
    used: bool = False

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) > self.expires_at


class AccessToken(BaseModel):
    """Opaque bearer token record."""
    token: str
    client_id: str
    scopes: list[str] = Field(default_factory=list)
    issued_at: float = Field(default_factory=time.time)
    expires_at: float
    refresh_token: Optional[str] = None
    origin_code_id: Optional[str] = None

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) > self.expires_at


class RefreshTokenRecord(BaseModel):
    """
    Refresh token -> access token mapping.

    Stored under its own key so it can be resolved and invalidated even after
    the paired access token has expired. The lineage fields mirror the access
    token they were minted with.
    """
    refresh_token: str
    access_token: str
    client_id: str
    scopes: list[str] = Field(default_factory=list)
    origin_code_id: Optional[str] = None
    issued_at: float = Field(default_factory=time.time)
    expires_at: float

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) > self.expires_at


class VerifiedAccess(BaseModel):
    """Identity/scope bundle handed to protected-resource collaborators."""
    token: str
    client_id: str
    scopes: list[str]
    expires_at: int  # unix seconds

    def has_scopes(self, required: list[str]) -> bool:
        return all(scope in self.scopes for scope in required)


class TokenResponse(BaseModel):
    """Successful token endpoint response (RFC 6749 section 5.1)."""
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: str
    scope: str = ""


__all__ = [
    "GrantType",
    "ResponseType",
    "CodeChallengeMethod",
    "TokenTypeHint",
    "ClientRecord",
    "AuthorizationCode",
    "AccessToken",
    "RefreshTokenRecord",
    "VerifiedAccess",
    "TokenResponse",
    "parse_scope",
    "format_scope",
    "fingerprint",
]
