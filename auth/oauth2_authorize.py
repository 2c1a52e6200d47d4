"""
Authorization endpoint engine.

Validates an authorization request and mints a single-use authorization
code bound to the request's PKCE challenge:

    REQUESTED -> VALIDATED -> ISSUED -> {REDEEMED | EXPIRED | DENIED}

Failures found before the redirect URI is proven to belong to the client are
raised to the caller (never redirected). Once the redirect URI is trusted,
failures travel back to the client as ``error``/``error_description``/``state``
query parameters.
"""

import logging
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from .oauth2_audit import AuditResult, AuditSink, OAuth2AuditEvent, emit, safe_token_id
from .oauth2_clients import ClientRegistry
from .oauth2_errors import (
    InvalidClientError,
    InvalidRequestError,
    InvalidScopeError,
    OAuth2Error,
    TemporarilyUnavailableError,
    UnsupportedResponseTypeError,
)
from .oauth2_models import AuthorizationCode, CodeChallengeMethod, ResponseType
from .oauth2_storage import OAuth2StorageError, OAuth2Store

logger = logging.getLogger(__name__)

DEFAULT_CODE_LIFETIME = 600  # 10 minutes


class AuthorizationState(str, Enum):
    REQUESTED = "requested"
    VALIDATED = "validated"
    ISSUED = "issued"
    REDEEMED = "redeemed"
    EXPIRED = "expired"
    DENIED = "denied"


@dataclass
class AuthorizationRequest:
    """Parameters of a ``GET /authorize`` call."""
    client_id: Optional[str]
    redirect_uri: Optional[str]
    scopes: list[str] = field(default_factory=list)
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = CodeChallengeMethod.S256.value
    state: Optional[str] = None
    response_type: Optional[str] = ResponseType.CODE.value


@dataclass
class AuthorizationResult:
    """Outcome of an authorization request that reached a trusted redirect URI."""
    redirect_url: str
    state: AuthorizationState
    code: Optional[str] = None
    error: Optional[OAuth2Error] = None


def build_redirect_url(redirect_uri: str, params: dict[str, Optional[str]]) -> str:
    """Append query parameters to a redirect URI, keeping any it already has."""
    parsed = urlparse(redirect_uri)
    query = parse_qsl(parsed.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunparse(parsed._replace(query=urlencode(query)))


class AuthorizationEngine:
    """Issues authorization codes. The only creator of code entries."""

    def __init__(
        self,
        registry: ClientRegistry,
        store: OAuth2Store,
        audit: AuditSink,
        code_lifetime: int = DEFAULT_CODE_LIFETIME,
    ):
        self.registry = registry
        self.store = store
        self.audit = audit
        self.code_lifetime = code_lifetime

    async def authorize(self, request: AuthorizationRequest) -> AuthorizationResult:
        """
        Validate ``request`` and issue a code.

        Raises:
            InvalidClientError: unknown client
            InvalidRequestError: missing or unregistered redirect URI

        Every other failure is returned as a DENIED result whose redirect URL
        carries the error.
        """
        emit(
            self.audit,
            OAuth2AuditEvent.AUTHORIZATION_REQUESTED,
            AuditResult.SUCCESS,
            clientId=request.client_id,
            scopes=request.scopes,
            redirectUri=request.redirect_uri,
        )

        # Redirect URI not yet trusted: raise, never redirect
        if not request.client_id:
            raise self._deny_direct(request, InvalidRequestError("Missing client_id"))
        if self.registry.get(request.client_id) is None:
            raise self._deny_direct(request, InvalidClientError("Unknown client"))
        if not request.redirect_uri:
            raise self._deny_direct(request, InvalidRequestError("Missing redirect_uri"))
        if not self.registry.is_redirect_allowed(request.client_id, request.redirect_uri):
            raise self._deny_direct(request, InvalidRequestError("Invalid redirect_uri"))

        # Redirect URI trusted from here on
        if request.response_type != ResponseType.CODE.value:
            return self._deny_redirect(
                request, UnsupportedResponseTypeError("Only 'code' response type supported")
            )
        if not request.code_challenge:
            return self._deny_redirect(
                request, InvalidRequestError("PKCE code_challenge required")
            )
        if not request.code_challenge_method:
            return self._deny_redirect(
                request, InvalidRequestError("code_challenge_method required")
            )
        if request.code_challenge_method != CodeChallengeMethod.S256.value:
            return self._deny_redirect(
                request, InvalidRequestError("Only S256 code_challenge_method is supported")
            )
        if not self.registry.are_scopes_allowed(request.client_id, request.scopes):
            return self._deny_redirect(
                request, InvalidScopeError("One or more requested scopes are not allowed")
            )

        now = time.time()
        auth_code = AuthorizationCode(
            code=secrets.token_urlsafe(32),
            client_id=request.client_id,
            scopes=list(request.scopes),
            redirect_uri=request.redirect_uri,
            code_challenge=request.code_challenge,
            created_at=now,
            expires_at=now + self.code_lifetime,
        )
        try:
            await self.store.set_authorization_code(auth_code, self.code_lifetime)
        except OAuth2StorageError as e:
            logger.error(f"Failed to persist authorization code for {request.client_id}: {e}")
            return self._deny_redirect(
                request, TemporarilyUnavailableError("Authorization server storage unavailable")
            )

        emit(
            self.audit,
            OAuth2AuditEvent.AUTHORIZATION_GRANTED,
            AuditResult.SUCCESS,
            clientId=request.client_id,
            scopes=auth_code.scopes,
            codeId=safe_token_id(auth_code.code),
            expiresIn=self.code_lifetime,
        )
        logger.info(f"Authorization code issued for client {request.client_id}")

        return AuthorizationResult(
            redirect_url=build_redirect_url(
                request.redirect_uri, {"code": auth_code.code, "state": request.state}
            ),
            state=AuthorizationState.ISSUED,
            code=auth_code.code,
        )

    def _deny_direct(self, request: AuthorizationRequest, error: OAuth2Error) -> OAuth2Error:
        emit(
            self.audit,
            OAuth2AuditEvent.AUTHORIZATION_DENIED,
            AuditResult.FAILURE,
            clientId=request.client_id,
            scopes=request.scopes,
            error=error.description,
        )
        return error

    def _deny_redirect(self, request: AuthorizationRequest, error: OAuth2Error) -> AuthorizationResult:
        emit(
            self.audit,
            OAuth2AuditEvent.AUTHORIZATION_DENIED,
            AuditResult.FAILURE,
            clientId=request.client_id,
            scopes=request.scopes,
            error=error.description,
        )
        params = {
            "error": error.error.value,
            "error_description": error.description,
            "state": request.state,
        }
        return AuthorizationResult(
            redirect_url=build_redirect_url(request.redirect_uri, params),
            state=AuthorizationState.DENIED,
            error=error,
        )


__all__ = [
    "AuthorizationEngine",
    "AuthorizationRequest",
    "AuthorizationResult",
    "AuthorizationState",
    "build_redirect_url",
]
