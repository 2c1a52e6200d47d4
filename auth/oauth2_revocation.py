"""
Token revocation (RFC 7009).

Revocation never reports whether a token existed or who owned it: unknown,
expired and foreign tokens all end in the same silent success. Only the
audit trail records what actually happened.
"""

import logging
from typing import Optional

from .oauth2_audit import (
    AuditResult,
    AuditSink,
    OAuth2AuditEvent,
    emit,
    emit_storage_failure,
    safe_token_id,
)
from .oauth2_models import TokenTypeHint
from .oauth2_storage import OAuth2StorageError, OAuth2Store

logger = logging.getLogger(__name__)


class RevocationEngine:
    def __init__(self, store: OAuth2Store, audit: AuditSink):
        self.store = store
        self.audit = audit

    async def revoke(self, client_id: str, token: str, token_type_hint: Optional[str] = None) -> bool:
        """
        Revoke ``token`` for an authenticated client.

        The hint only decides which kind of token is looked up first; an
        unrecognised hint is ignored. Returns True when something was deleted.
        """
        try:
            return await self._revoke(client_id, token, token_type_hint)
        except OAuth2StorageError as e:
            emit_storage_failure(self.audit, OAuth2AuditEvent.TOKEN_REVOKED, e,
                                 clientId=client_id, tokenId=safe_token_id(token))
            raise

    async def _revoke(self, client_id: str, token: str, token_type_hint: Optional[str]) -> bool:
        try:
            hint = TokenTypeHint(token_type_hint) if token_type_hint else None
        except ValueError:
            hint = None

        if hint == TokenTypeHint.REFRESH_TOKEN:
            lookups = (self._revoke_refresh_token, self._revoke_access_token)
        else:
            lookups = (self._revoke_access_token, self._revoke_refresh_token)

        for lookup in lookups:
            if await lookup(client_id, token):
                return True

        emit(
            self.audit,
            OAuth2AuditEvent.TOKEN_REVOKED,
            AuditResult.SUCCESS,
            clientId=client_id,
            tokenId=safe_token_id(token),
            tokenTypeHint=token_type_hint,
            note="token not found or not owned by client",
        )
        return False

    async def _revoke_access_token(self, client_id: str, token: str) -> bool:
        access = await self.store.get_access_token(token)
        if access is None or access.client_id != client_id:
            return False

        await self.store.delete_access_token(token)
        if access.refresh_token:
            await self.store.delete_refresh_token(access.refresh_token)

        emit(
            self.audit,
            OAuth2AuditEvent.TOKEN_REVOKED,
            AuditResult.SUCCESS,
            clientId=client_id,
            tokenId=safe_token_id(token),
            tokenType=TokenTypeHint.ACCESS_TOKEN.value,
        )
        logger.info(f"Revoked access token {safe_token_id(token)} for client {client_id}")
        return True

    async def _revoke_refresh_token(self, client_id: str, token: str) -> bool:
        record = await self.store.get_refresh_token(token)
        if record is None or record.client_id != client_id:
            return False

        linked = await self.store.find_tokens_by_refresh_token(token)
        await self.store.delete_refresh_token(token)
        for access in linked:
            await self.store.delete_access_token(access.token)

        emit(
            self.audit,
            OAuth2AuditEvent.TOKEN_REVOKED,
            AuditResult.SUCCESS,
            clientId=client_id,
            tokenId=safe_token_id(token),
            tokenType=TokenTypeHint.REFRESH_TOKEN.value,
            cascaded=len(linked),
        )
        logger.info(f"Revoked refresh token {safe_token_id(token)} for client {client_id}")
        return True

    async def revoke_client(self, client_id: str) -> int:
        """Delete every code, access token and refresh mapping held by a client."""
        try:
            return await self._revoke_client(client_id)
        except OAuth2StorageError as e:
            emit_storage_failure(self.audit, OAuth2AuditEvent.CLIENT_REVOKED, e, clientId=client_id)
            raise

    async def _revoke_client(self, client_id: str) -> int:
        removed = 0
        for code in await self.store.list_authorization_codes():
            if code.client_id == client_id and await self.store.delete_authorization_code(code.code):
                removed += 1
        for access in await self.store.list_access_tokens():
            if access.client_id == client_id and await self.store.delete_access_token(access.token):
                removed += 1
        for record in await self.store.list_refresh_tokens():
            if record.client_id == client_id and await self.store.delete_refresh_token(record.refresh_token):
                removed += 1

        emit(
            self.audit,
            OAuth2AuditEvent.CLIENT_REVOKED,
            AuditResult.SUCCESS,
            clientId=client_id,
            removed=removed,
        )
        logger.info(f"Revoked {removed} artifacts for client {client_id}")
        return removed


__all__ = ["RevocationEngine"]
