"""
OAuth 2.1 error taxonomy.

Every protocol failure raised by the engines is an ``OAuth2Error`` subclass
carrying the RFC 6749 error code, a human readable description and the HTTP
status the token/introspection endpoints should answer with.
"""

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """OAuth 2.0 error codes as defined in RFC 6749 / RFC 7009."""
    INVALID_REQUEST = "invalid_request"
    INVALID_CLIENT = "invalid_client"
    INVALID_GRANT = "invalid_grant"
    UNAUTHORIZED_CLIENT = "unauthorized_client"
    UNSUPPORTED_GRANT_TYPE = "unsupported_grant_type"
    INVALID_SCOPE = "invalid_scope"
    ACCESS_DENIED = "access_denied"
    UNSUPPORTED_RESPONSE_TYPE = "unsupported_response_type"
    SERVER_ERROR = "server_error"
    TEMPORARILY_UNAVAILABLE = "temporarily_unavailable"


class OAuth2Error(Exception):
    """OAuth 2.0 error with proper error codes and descriptions."""

    error: ErrorCode = ErrorCode.SERVER_ERROR
    status_code: int = 500

    def __init__(self, description: str = "", uri: str = ""):
        self.description = description
        self.uri = uri
        super().__init__(f"{self.error.value}: {description}")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the RFC 6749 error body."""
        body = {"error": self.error.value}
        if self.description:
            body["error_description"] = self.description
        if self.uri:
            body["error_uri"] = self.uri
        return body


class InvalidRequestError(OAuth2Error):
    error = ErrorCode.INVALID_REQUEST
    status_code = 400


class InvalidClientError(OAuth2Error):
    error = ErrorCode.INVALID_CLIENT
    status_code = 401


class InvalidGrantError(OAuth2Error):
    error = ErrorCode.INVALID_GRANT
    status_code = 400


class InvalidScopeError(OAuth2Error):
    error = ErrorCode.INVALID_SCOPE
    status_code = 400


class UnauthorizedClientError(OAuth2Error):
    """Authenticated client used a grant type it is not provisioned for."""
    error = ErrorCode.UNAUTHORIZED_CLIENT
    status_code = 400


class UnsupportedGrantTypeError(OAuth2Error):
    error = ErrorCode.UNSUPPORTED_GRANT_TYPE
    status_code = 400


class UnsupportedResponseTypeError(OAuth2Error):
    error = ErrorCode.UNSUPPORTED_RESPONSE_TYPE
    status_code = 400


class ServerError(OAuth2Error):
    """Not raised by the engines; present so every RFC 6749 error code maps to a class."""
    error = ErrorCode.SERVER_ERROR
    status_code = 500


class TemporarilyUnavailableError(OAuth2Error):
    error = ErrorCode.TEMPORARILY_UNAVAILABLE
    status_code = 503


__all__ = [
    "ErrorCode",
    "OAuth2Error",
    "InvalidRequestError",
    "InvalidClientError",
    "InvalidGrantError",
    "InvalidScopeError",
    "UnauthorizedClientError",
    "UnsupportedGrantTypeError",
    "UnsupportedResponseTypeError",
    "ServerError",
    "TemporarilyUnavailableError",
]
