"""
OAuth 2.1 Authorization Server

Composes the client registry, storage and the four engines behind one
object. Nothing here is global: every collaborator is passed in, and
``create_oauth2_server()`` is the only place defaults are chosen.

Features:
- Authorization Code flow with mandatory PKCE (S256)
- Opaque access tokens with refresh-token rotation
- Token revocation (RFC 7009) and introspection (RFC 7662)
- Authorization server metadata (RFC 8414)
- Pluggable storage (in-memory or Redis) and audit sinks
"""

import asyncio
import logging
from typing import Any, Iterable, Optional, Union

from utils.config_manager import ClientConfig, OAuth2Config

from .oauth2_audit import AuditResult, AuditSink, LoggingAuditSink, OAuth2AuditEvent, emit
from .oauth2_authorize import AuthorizationEngine, AuthorizationRequest, AuthorizationResult
from .oauth2_clients import ClientRegistry, hash_client_secret
from .oauth2_errors import (
    InvalidClientError,
    InvalidRequestError,
    OAuth2Error,
    UnauthorizedClientError,
    UnsupportedGrantTypeError,
)
from .oauth2_models import ClientRecord, GrantType, TokenResponse, VerifiedAccess, parse_scope
from .oauth2_revocation import RevocationEngine
from .oauth2_storage import (
    HealthCheckResult,
    InMemoryOAuth2Storage,
    OAuth2StorageProvider,
    OAuth2Store,
    TimeoutStorage,
)
from .oauth2_tokens import TokenEngine
from .oauth2_verifier import AccessVerifier

logger = logging.getLogger(__name__)

SUPPORTED_GRANT_TYPES = frozenset(g.value for g in GrantType)


class OAuth2Server:
    """
    OAuth 2.1 Authorization Server.

    Owns no protocol logic of its own beyond client authentication and grant
    dispatch; everything else is delegated to the engines.
    """

    def __init__(
        self,
        config: OAuth2Config,
        registry: ClientRegistry,
        storage: OAuth2StorageProvider,
        audit: Optional[AuditSink] = None,
    ):
        self.config = config
        self.registry = registry
        self.storage = storage
        self.audit = audit or LoggingAuditSink()
        self.store = OAuth2Store(storage)

        self.authorization = AuthorizationEngine(
            registry, self.store, self.audit, code_lifetime=config.code_lifetime
        )
        self.tokens = TokenEngine(
            self.store,
            self.audit,
            access_token_lifetime=config.access_token_lifetime,
            refresh_token_lifetime=config.refresh_token_lifetime,
        )
        self.revocation = RevocationEngine(self.store, self.audit)
        self.verifier = AccessVerifier(self.store, self.audit, issuer=config.issuer)
        self._initialized = False

    @property
    def issuer(self) -> str:
        return self.config.issuer

    async def initialize(self) -> None:
        """Connect storage. Safe to call more than once."""
        if self._initialized:
            return
        await self.storage.connect()
        self._initialized = True
        logger.info(f"OAuth 2.1 server ready (issuer={self.issuer}, storage={self.storage.name}, clients={len(self.registry)})")

    async def shutdown(self) -> None:
        if not self._initialized:
            return
        await self.storage.disconnect()
        self._initialized = False
        logger.info("OAuth 2.1 server stopped")

    async def authenticate_client(self, client_id: Optional[str], client_secret: Optional[str]) -> ClientRecord:
        """
        Authenticate a confidential client.

        Raises:
            InvalidClientError: unknown client or wrong secret (indistinguishable)
        """
        # PBKDF2 is CPU bound; keep it off the event loop
        ok = await asyncio.to_thread(self.registry.authenticate, client_id, client_secret)
        if not ok:
            emit(
                self.audit,
                OAuth2AuditEvent.CLIENT_AUTHENTICATION_FAILED,
                AuditResult.FAILURE,
                clientId=client_id,
            )
            raise InvalidClientError("Client authentication failed")
        return self.registry.get(client_id)

    async def authorize(self, request: AuthorizationRequest) -> AuthorizationResult:
        return await self.authorization.authorize(request)

    def _reject(self, event: str, client_id: Optional[str], error: OAuth2Error, **details) -> OAuth2Error:
        emit(self.audit, event, AuditResult.FAILURE, clientId=client_id, error=error.description, **details)
        logger.warning(f"{event} rejected for client {client_id}: {error}")
        return error

    async def token(
        self,
        grant_type: Optional[str],
        client_id: Optional[str],
        client_secret: Optional[str],
        code: Optional[str] = None,
        code_verifier: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        refresh_token: Optional[str] = None,
        scope: Optional[str] = None,
    ) -> TokenResponse:
        """Token endpoint: authenticate the client, then dispatch on grant type."""
        if grant_type == GrantType.REFRESH_TOKEN.value:
            event = OAuth2AuditEvent.TOKEN_REFRESHED
        else:
            event = OAuth2AuditEvent.TOKEN_ISSUED

        if not grant_type:
            raise self._reject(event, client_id, InvalidRequestError("Missing grant_type"))

        client = await self.authenticate_client(client_id, client_secret)

        if grant_type not in SUPPORTED_GRANT_TYPES:
            raise self._reject(event, client.client_id,
                               UnsupportedGrantTypeError(f"Unsupported grant type: {grant_type}"),
                               grantType=grant_type)
        if not client.supports_grant_type(grant_type):
            raise self._reject(event, client.client_id,
                               UnauthorizedClientError(f"Client may not use grant type: {grant_type}"),
                               grantType=grant_type)

        if grant_type == GrantType.AUTHORIZATION_CODE.value:
            if not code:
                raise self._reject(event, client.client_id, InvalidRequestError("Missing code"))
            if not redirect_uri:
                raise self._reject(event, client.client_id, InvalidRequestError("Missing redirect_uri"))
            return await self.tokens.exchange_authorization_code(
                client.client_id, code, code_verifier, redirect_uri
            )

        if not refresh_token:
            raise self._reject(event, client.client_id, InvalidRequestError("Missing refresh_token"))
        return await self.tokens.exchange_refresh_token(
            client.client_id, refresh_token, parse_scope(scope)
        )

    async def revoke(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        token: Optional[str],
        token_type_hint: Optional[str] = None,
    ) -> None:
        client = await self.authenticate_client(client_id, client_secret)
        if not token:
            raise self._reject(OAuth2AuditEvent.TOKEN_REVOKED, client.client_id,
                               InvalidRequestError("Missing token"))
        await self.revocation.revoke(client.client_id, token, token_type_hint)

    async def revoke_client(self, client_id: str) -> int:
        return await self.revocation.revoke_client(client_id)

    async def introspect(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        token: Optional[str],
    ) -> dict[str, Any]:
        client = await self.authenticate_client(client_id, client_secret)
        if not token:
            raise self._reject(OAuth2AuditEvent.TOKEN_INTROSPECTED, client.client_id,
                               InvalidRequestError("Missing token"))
        return await self.verifier.introspect(client.client_id, token)

    async def verify_access_token(self, token: Optional[str]) -> VerifiedAccess:
        return await self.verifier.verify(token)

    async def health_check(self) -> HealthCheckResult:
        return await self.storage.health_check()

    async def get_stats(self) -> dict[str, int]:
        stats = await self.store.get_stats(client_count=len(self.registry))
        return stats.to_dict()

    def metadata(self) -> dict[str, Any]:
        """Authorization server metadata (RFC 8414)."""
        return {
            "issuer": self.issuer,
            "authorization_endpoint": f"{self.issuer}/authorize",
            "token_endpoint": f"{self.issuer}/token",
            "revocation_endpoint": f"{self.issuer}/revoke",
            "introspection_endpoint": f"{self.issuer}/introspect",
            "scopes_supported": self.registry.all_scopes(),
            "response_types_supported": ["code"],
            "grant_types_supported": [g.value for g in GrantType],
            "code_challenge_methods_supported": ["S256"],
            "token_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post"],
            "revocation_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post"],
            "introspection_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post"],
        }


def build_client_record(client: ClientConfig) -> ClientRecord:
    """Turn a configured client into a registry record, hashing a plaintext secret."""
    return ClientRecord(
        client_id=client.client_id,
        secret_hash=client.secret_hash or hash_client_secret(client.client_secret),
        redirect_uris=frozenset(client.redirect_uris),
        scopes=frozenset(client.scopes),
        name=client.name,
        grant_types=frozenset(client.grant_types),
    )


async def create_oauth2_server(
    config: OAuth2Config,
    clients: Union[ClientRegistry, Iterable[ClientConfig]] = (),
    storage: Optional[OAuth2StorageProvider] = None,
    audit: Optional[AuditSink] = None,
) -> OAuth2Server:
    """
    Build and initialize an OAuth2Server.

    Args:
        config: protocol settings
        clients: a ready registry, or client configs whose plaintext secrets
            are hashed here
        storage: storage provider; in-memory when omitted. Always wrapped in
            a ``TimeoutStorage`` bounded by ``config.storage_timeout``.
        audit: audit sink; logs to ``oauth2.audit`` when omitted

    Returns:
        Connected OAuth2Server
    """
    if isinstance(clients, ClientRegistry):
        registry = clients
    else:
        registry = await asyncio.to_thread(
            lambda: ClientRegistry([build_client_record(c) for c in clients])
        )

    provider = storage or InMemoryOAuth2Storage()
    if not isinstance(provider, TimeoutStorage):
        provider = TimeoutStorage(provider, config.storage_timeout)

    server = OAuth2Server(config, registry, provider, audit)
    await server.initialize()
    return server


__all__ = [
    "OAuth2Server",
    "build_client_record",
    "create_oauth2_server",
]
