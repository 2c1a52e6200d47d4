"""
OAuth 2.1 authorization engine

Components:
- oauth2_clients: provisioned client registry and secret hashing
- oauth2_pkce: PKCE (S256) challenge derivation and verification
- oauth2_authorize: authorization endpoint engine
- oauth2_tokens: code exchange and refresh-token rotation
- oauth2_revocation: token and client-wide revocation
- oauth2_verifier: bearer token verification and introspection
- oauth2_storage: storage providers (in-memory, Redis) with atomic code consumption
- oauth2_audit: audit sinks
- oauth2_server: server facade and async factory
- oauth2_endpoints: FastAPI router and bearer dependency
"""

from .oauth2_audit import AuditResult, AuditSink, LoggingAuditSink, OAuth2AuditEvent
from .oauth2_authorize import AuthorizationEngine, AuthorizationRequest, AuthorizationResult, AuthorizationState
from .oauth2_clients import ClientRegistry, hash_client_secret, verify_client_secret
from .oauth2_errors import (
    ErrorCode,
    InvalidClientError,
    InvalidGrantError,
    InvalidRequestError,
    InvalidScopeError,
    OAuth2Error,
    TemporarilyUnavailableError,
    UnsupportedGrantTypeError,
    UnsupportedResponseTypeError,
)
from .oauth2_models import (
    AccessToken,
    AuthorizationCode,
    ClientRecord,
    GrantType,
    RefreshTokenRecord,
    TokenResponse,
    VerifiedAccess,
)
from .oauth2_pkce import challenge_from, generate_pkce_pair, validate_pkce
from .oauth2_revocation import RevocationEngine
from .oauth2_server import OAuth2Server, create_oauth2_server
from .oauth2_storage import (
    InMemoryOAuth2Storage,
    OAuth2StorageError,
    OAuth2StorageProvider,
    OAuth2Store,
    RedisOAuth2Storage,
    StorageTimeoutError,
    TimeoutStorage,
    create_storage_provider,
)
from .oauth2_tokens import TokenEngine
from .oauth2_verifier import AccessVerifier

__all__ = [
    "AccessToken",
    "AccessVerifier",
    "AuditResult",
    "AuditSink",
    "AuthorizationCode",
    "AuthorizationEngine",
    "AuthorizationRequest",
    "AuthorizationResult",
    "AuthorizationState",
    "ClientRecord",
    "ClientRegistry",
    "ErrorCode",
    "GrantType",
    "InMemoryOAuth2Storage",
    "InvalidClientError",
    "InvalidGrantError",
    "InvalidRequestError",
    "InvalidScopeError",
    "LoggingAuditSink",
    "OAuth2AuditEvent",
    "OAuth2Error",
    "OAuth2Server",
    "OAuth2StorageError",
    "OAuth2StorageProvider",
    "OAuth2Store",
    "RedisOAuth2Storage",
    "RefreshTokenRecord",
    "RevocationEngine",
    "StorageTimeoutError",
    "TemporarilyUnavailableError",
    "TimeoutStorage",
    "TokenEngine",
    "TokenResponse",
    "UnsupportedGrantTypeError",
    "UnsupportedResponseTypeError",
    "VerifiedAccess",
    "challenge_from",
    "create_oauth2_server",
    "create_storage_provider",
    "generate_pkce_pair",
    "hash_client_secret",
    "validate_pkce",
    "verify_client_secret",
]
