"""
Token endpoint engine: authorization-code exchange and refresh rotation.

Tokens are opaque random strings (256 bits). Access tokens carry their
paired refresh token and refresh tokens map back to their access token under
their own key. A refresh is honoured only while both halves of the pair exist
and still point at each other.

Refresh rotation is create-then-retire: the new pair is persisted before the
old mapping is deleted, so a crash mid-rotation leaves the old refresh token
usable. Whichever concurrent caller deletes the old mapping wins; the others
roll back the pair they minted and get ``invalid_grant``.
"""

import logging
import secrets
import time
from typing import Optional

from .oauth2_audit import (
    AuditResult,
    AuditSink,
    OAuth2AuditEvent,
    emit,
    emit_storage_failure,
    safe_token_id,
)
from .oauth2_errors import InvalidGrantError, InvalidRequestError, InvalidScopeError, OAuth2Error
from .oauth2_models import AccessToken, RefreshTokenRecord, TokenResponse, fingerprint, format_scope
from .oauth2_pkce import validate_pkce
from .oauth2_storage import OAuth2StorageError, OAuth2Store

logger = logging.getLogger(__name__)

DEFAULT_ACCESS_TOKEN_LIFETIME = 3600  # 1 hour
DEFAULT_REFRESH_TOKEN_LIFETIME = 86400  # 24 hours


def generate_token() -> str:
    return secrets.token_urlsafe(32)


class TokenEngine:
    """Mints, persists and rotates access/refresh token pairs."""

    def __init__(
        self,
        store: OAuth2Store,
        audit: AuditSink,
        access_token_lifetime: int = DEFAULT_ACCESS_TOKEN_LIFETIME,
        refresh_token_lifetime: int = DEFAULT_REFRESH_TOKEN_LIFETIME,
    ):
        self.store = store
        self.audit = audit
        self.access_token_lifetime = access_token_lifetime
        self.refresh_token_lifetime = refresh_token_lifetime

    def _fail(self, event: str, error: OAuth2Error, **details) -> OAuth2Error:
        emit(self.audit, event, AuditResult.FAILURE, error=error.description, **details)
        logger.warning(f"{event} rejected: {error}")
        return error

    async def _issue_pair(
        self,
        client_id: str,
        scopes: list[str],
        origin_code_id: Optional[str],
    ) -> tuple[AccessToken, RefreshTokenRecord]:
        """Persist a fresh access/refresh pair. Nothing is left behind on failure."""
        now = time.time()
        access = AccessToken(
            token=generate_token(),
            client_id=client_id,
            scopes=list(scopes),
            issued_at=now,
            expires_at=now + self.access_token_lifetime,
            refresh_token=generate_token(),
            origin_code_id=origin_code_id,
        )
        refresh = RefreshTokenRecord(
            refresh_token=access.refresh_token,
            access_token=access.token,
            client_id=client_id,
            scopes=list(scopes),
            origin_code_id=origin_code_id,
            issued_at=now,
            expires_at=now + self.refresh_token_lifetime,
        )

        await self.store.set_access_token(access, self.access_token_lifetime)
        try:
            await self.store.set_refresh_token(refresh, self.refresh_token_lifetime)
        except OAuth2StorageError:
            await self._discard_pair(access.token, None)
            raise
        return access, refresh

    async def _discard_pair(self, access_token: str, refresh_token: Optional[str]) -> None:
        try:
            await self.store.delete_access_token(access_token)
            if refresh_token:
                await self.store.delete_refresh_token(refresh_token)
        except OAuth2StorageError as e:
            logger.error(f"Failed to roll back token pair {safe_token_id(access_token)}: {e}")

    def _response(self, access: AccessToken) -> TokenResponse:
        return TokenResponse(
            access_token=access.token,
            expires_in=self.access_token_lifetime,
            refresh_token=access.refresh_token,
            scope=format_scope(access.scopes),
        )

    async def exchange_authorization_code(
        self,
        client_id: str,
        code: str,
        code_verifier: Optional[str],
        redirect_uri: Optional[str],
    ) -> TokenResponse:
        """
        Redeem an authorization code for a token pair.

        ``client_id`` must already be authenticated. The code is consumed
        through the storage compare-and-set, so at most one concurrent
        exchange of the same code succeeds.
        """
        try:
            return await self._exchange_code(client_id, code, code_verifier, redirect_uri)
        except OAuth2StorageError as e:
            emit_storage_failure(self.audit, OAuth2AuditEvent.TOKEN_ISSUED, e,
                                 clientId=client_id, codeId=safe_token_id(code))
            raise

    async def _exchange_code(
        self,
        client_id: str,
        code: str,
        code_verifier: Optional[str],
        redirect_uri: Optional[str],
    ) -> TokenResponse:
        event = OAuth2AuditEvent.TOKEN_ISSUED
        code_id = safe_token_id(code)

        auth_code = await self.store.get_authorization_code(code)
        if auth_code is None:
            raise self._fail(event, InvalidGrantError("Invalid authorization code"),
                             clientId=client_id, codeId=code_id)

        if auth_code.client_id != client_id:
            raise self._fail(event, InvalidGrantError("Authorization code was not issued to this client"),
                             clientId=client_id, codeId=code_id)

        if auth_code.is_expired():
            await self.store.delete_authorization_code(code)
            raise self._fail(event, InvalidGrantError("Authorization code expired"),
                             clientId=client_id, codeId=code_id)

        if auth_code.used:
            raise self._fail(event, InvalidGrantError("Authorization code already used"),
                             clientId=client_id, codeId=code_id)

        if not code_verifier:
            raise self._fail(event, InvalidRequestError("Missing code_verifier"),
                             clientId=client_id, codeId=code_id)
        if not validate_pkce(code_verifier, auth_code.code_challenge):
            raise self._fail(event, InvalidGrantError("Invalid code_verifier"),
                             clientId=client_id, codeId=code_id)

        # Single-use barrier
        if not await self.store.mark_authorization_code_used(code):
            raise self._fail(event, InvalidGrantError("Authorization code already used"),
                             clientId=client_id, codeId=code_id)

        if redirect_uri != auth_code.redirect_uri:
            await self.store.delete_authorization_code(code)
            raise self._fail(event, InvalidGrantError("redirect_uri does not match authorization request"),
                             clientId=client_id, codeId=code_id)

        access, _ = await self._issue_pair(client_id, auth_code.scopes, fingerprint(code))
        await self.store.delete_authorization_code(code)

        emit(
            self.audit,
            event,
            AuditResult.SUCCESS,
            clientId=client_id,
            codeId=code_id,
            tokenId=safe_token_id(access.token),
            scopes=access.scopes,
            expiresIn=self.access_token_lifetime,
        )
        logger.info(f"Issued access token for client {client_id}")
        return self._response(access)

    async def exchange_refresh_token(
        self,
        client_id: str,
        refresh_token: str,
        scopes: Optional[list[str]] = None,
    ) -> TokenResponse:
        """
        Rotate a refresh token.

        ``scopes`` may narrow the grant but never widen it; ``None`` or an
        empty list keeps the current scopes. A narrowed set carries over to
        later refreshes.
        """
        try:
            return await self._rotate(client_id, refresh_token, scopes)
        except OAuth2StorageError as e:
            emit_storage_failure(self.audit, OAuth2AuditEvent.TOKEN_REFRESHED, e,
                                 clientId=client_id, refreshTokenId=safe_token_id(refresh_token))
            raise

    async def _rotate(
        self,
        client_id: str,
        refresh_token: str,
        scopes: Optional[list[str]],
    ) -> TokenResponse:
        event = OAuth2AuditEvent.TOKEN_REFRESHED
        refresh_id = safe_token_id(refresh_token)

        record = await self.store.get_refresh_token(refresh_token)
        if record is None:
            raise self._fail(event, InvalidGrantError("Invalid refresh token"),
                             clientId=client_id, refreshTokenId=refresh_id)

        # The paired access token carries the grant metadata
        access = await self.store.get_access_token(record.access_token)
        if access is None or access.refresh_token != refresh_token:
            raise self._fail(event, InvalidGrantError("Refresh token is no longer linked to a grant"),
                             clientId=client_id, refreshTokenId=refresh_id)

        if access.client_id != client_id:
            raise self._fail(event, InvalidGrantError("Refresh token was not issued to this client"),
                             clientId=client_id, refreshTokenId=refresh_id)

        if record.is_expired():
            await self.store.delete_refresh_token(refresh_token)
            raise self._fail(event, InvalidGrantError("Refresh token expired"),
                             clientId=client_id, refreshTokenId=refresh_id)

        if scopes:
            if not all(scope in access.scopes for scope in scopes):
                raise self._fail(event, InvalidScopeError("Requested scope exceeds original grant"),
                                 clientId=client_id, refreshTokenId=refresh_id, scopes=scopes)
            granted = list(scopes)
        else:
            granted = list(access.scopes)

        new_access, _ = await self._issue_pair(client_id, granted, access.origin_code_id)

        # Retire the old mapping; losing this delete means another caller rotated first
        if not await self.store.delete_refresh_token(refresh_token):
            await self._discard_pair(new_access.token, new_access.refresh_token)
            raise self._fail(event, InvalidGrantError("Refresh token already used"),
                             clientId=client_id, refreshTokenId=refresh_id)
        await self.store.delete_access_token(record.access_token)

        emit(
            self.audit,
            event,
            AuditResult.SUCCESS,
            clientId=client_id,
            refreshTokenId=refresh_id,
            tokenId=safe_token_id(new_access.token),
            scopes=granted,
        )
        logger.info(f"Rotated refresh token for client {client_id}")
        return self._response(new_access)


__all__ = [
    "TokenEngine",
    "generate_token",
    "DEFAULT_ACCESS_TOKEN_LIFETIME",
    "DEFAULT_REFRESH_TOKEN_LIFETIME",
]
