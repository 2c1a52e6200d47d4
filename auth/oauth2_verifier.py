"""
Access token verification for protected resources, plus RFC 7662 introspection.
"""

import logging
import math
from typing import Any, Optional

from .oauth2_audit import (
    AuditResult,
    AuditSink,
    OAuth2AuditEvent,
    emit,
    emit_storage_failure,
    safe_token_id,
)
from .oauth2_errors import InvalidGrantError
from .oauth2_models import VerifiedAccess, format_scope
from .oauth2_storage import OAuth2StorageError, OAuth2Store

logger = logging.getLogger(__name__)


class AccessVerifier:
    """Resolves bearer tokens into ``VerifiedAccess``. Never mutates live tokens."""

    def __init__(self, store: OAuth2Store, audit: AuditSink, issuer: Optional[str] = None):
        self.store = store
        self.audit = audit
        self.issuer = issuer

    async def verify(self, token: Optional[str]) -> VerifiedAccess:
        """
        Verify an access token.

        Raises:
            InvalidGrantError: unknown, revoked or expired token. Expired
                records are deleted on sight.
        """
        try:
            return await self._verify(token)
        except OAuth2StorageError as e:
            emit_storage_failure(self.audit, OAuth2AuditEvent.TOKEN_VALIDATION_FAILED, e,
                                 tokenId=safe_token_id(token))
            raise

    async def _verify(self, token: Optional[str]) -> VerifiedAccess:
        token_id = safe_token_id(token)
        if not token:
            raise self._reject(token_id, "Missing access token")

        access = await self.store.get_access_token(token)
        if access is None:
            raise self._reject(token_id, "Invalid access token")

        if access.is_expired():
            await self.store.delete_access_token(token)
            raise self._reject(token_id, "Access token expired", clientId=access.client_id)

        emit(
            self.audit,
            OAuth2AuditEvent.TOKEN_VALIDATION_SUCCESS,
            AuditResult.SUCCESS,
            clientId=access.client_id,
            tokenId=token_id,
            scopes=access.scopes,
        )
        return VerifiedAccess(
            token=access.token,
            client_id=access.client_id,
            scopes=list(access.scopes),
            expires_at=math.floor(access.expires_at),
        )

    def _reject(self, token_id: str, reason: str, **details) -> InvalidGrantError:
        emit(
            self.audit,
            OAuth2AuditEvent.TOKEN_VALIDATION_FAILED,
            AuditResult.FAILURE,
            tokenId=token_id,
            error=reason,
            **details,
        )
        logger.debug(f"Token validation failed for {token_id}: {reason}")
        return InvalidGrantError(reason)

    async def introspect(self, client_id: str, token: Optional[str]) -> dict[str, Any]:
        """Introspection response for ``token`` as seen by an authenticated client."""
        token_id = safe_token_id(token)
        try:
            access = await self.store.get_access_token(token) if token else None
        except OAuth2StorageError as e:
            emit_storage_failure(self.audit, OAuth2AuditEvent.TOKEN_INTROSPECTED, e,
                                 clientId=client_id, tokenId=token_id)
            raise

        if access is None or access.is_expired() or access.client_id != client_id:
            emit(
                self.audit,
                OAuth2AuditEvent.TOKEN_INTROSPECTED,
                AuditResult.SUCCESS,
                clientId=client_id,
                tokenId=token_id,
                active=False,
            )
            return {"active": False}

        emit(
            self.audit,
            OAuth2AuditEvent.TOKEN_INTROSPECTED,
            AuditResult.SUCCESS,
            clientId=client_id,
            tokenId=token_id,
            active=True,
        )
        response: dict[str, Any] = {
            "active": True,
            "client_id": access.client_id,
            "scope": format_scope(access.scopes),
            "token_type": "Bearer",
            "exp": math.floor(access.expires_at),
            "iat": math.floor(access.issued_at),
        }
        if self.issuer:
            response["iss"] = self.issuer
        return response


__all__ = ["AccessVerifier"]
