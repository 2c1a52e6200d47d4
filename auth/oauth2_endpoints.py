"""
OAuth 2.1 HTTP Endpoints

FastAPI router exposing the authorization server.

Endpoints:
- GET  /authorize - authorization request, answered with a 302 redirect
- POST /token - authorization_code and refresh_token grants
- POST /introspect - token introspection (RFC 7662)
- POST /revoke - token revocation (RFC 7009)
- GET  /.well-known/oauth-authorization-server - server metadata (RFC 8414)
- GET  /health - storage health

Client authentication on the POST endpoints accepts either HTTP Basic
(``client_secret_basic``) or form fields (``client_secret_post``), never both.

Usage:
    from auth.oauth2_endpoints import create_oauth_router

    app = FastAPI()
    app.include_router(create_oauth_router(server))
"""

import base64
import binascii
import logging
from typing import Optional
from urllib.parse import unquote

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, RedirectResponse, Response

from .oauth2_audit import AuditResult, OAuth2AuditEvent, emit
from .oauth2_authorize import AuthorizationRequest
from .oauth2_errors import (
    InvalidClientError,
    InvalidRequestError,
    OAuth2Error,
    TemporarilyUnavailableError,
)
from .oauth2_models import VerifiedAccess, format_scope, parse_scope
from .oauth2_server import OAuth2Server
from .oauth2_storage import OAuth2StorageError

logger = logging.getLogger(__name__)

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def oauth_error_response(error: OAuth2Error, headers: Optional[dict[str, str]] = None) -> JSONResponse:
    """Render an OAuth2Error as an RFC 6749 JSON error body."""
    response_headers = dict(headers or {})
    if isinstance(error, InvalidClientError):
        response_headers["WWW-Authenticate"] = "Basic"
    return JSONResponse(status_code=error.status_code, content=error.to_dict(), headers=response_headers)


def storage_unavailable(error: OAuth2StorageError) -> TemporarilyUnavailableError:
    logger.error(f"Storage failure while serving OAuth request: {error}")
    return TemporarilyUnavailableError("Authorization server storage unavailable")


def parse_basic_auth(header: Optional[str]) -> Optional[tuple[str, str]]:
    """
    Decode ``Authorization: Basic`` client credentials.

    Returns None when the header is absent or uses another scheme.

    Raises:
        InvalidClientError: malformed Basic credentials
    """
    if not header:
        return None
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() != "basic":
        return None
    try:
        decoded = base64.b64decode(credentials.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise InvalidClientError("Malformed Basic credentials") from e
    client_id, sep, client_secret = decoded.partition(":")
    if not sep:
        raise InvalidClientError("Malformed Basic credentials")
    # RFC 6749 section 2.3.1: credentials are form-urlencoded before encoding
    return unquote(client_id), unquote(client_secret)


def extract_client_credentials(request: Request, form) -> tuple[Optional[str], Optional[str]]:
    basic = parse_basic_auth(request.headers.get("authorization"))
    if basic is not None:
        if form.get("client_secret"):
            raise InvalidRequestError("Multiple client authentication methods used")
        if form.get("client_id") and form.get("client_id") != basic[0]:
            raise InvalidRequestError("client_id does not match Basic credentials")
        return basic
    return form.get("client_id"), form.get("client_secret")


def create_oauth_router(server: OAuth2Server) -> APIRouter:
    """Create FastAPI router with the OAuth 2.1 endpoints bound to ``server``."""

    router = APIRouter()

    def get_server() -> OAuth2Server:
        return server

    def client_credentials(request: Request, form) -> tuple[Optional[str], Optional[str]]:
        try:
            return extract_client_credentials(request, form)
        except OAuth2Error as e:
            emit(server.audit, OAuth2AuditEvent.CLIENT_AUTHENTICATION_FAILED, AuditResult.FAILURE,
                 clientId=form.get("client_id"), error=e.description)
            raise

    @router.get("/authorize",
                summary="Authorization Endpoint",
                description="Authorization code request with mandatory PKCE (S256)")
    async def authorize(request: Request, oauth: OAuth2Server = Depends(get_server)):
        params = request.query_params
        auth_request = AuthorizationRequest(
            client_id=params.get("client_id"),
            redirect_uri=params.get("redirect_uri"),
            scopes=parse_scope(params.get("scope")),
            code_challenge=params.get("code_challenge"),
            code_challenge_method=params.get("code_challenge_method"),
            state=params.get("state"),
            response_type=params.get("response_type"),
        )
        try:
            result = await oauth.authorize(auth_request)
        except OAuth2Error as e:
            logger.warning(f"Authorization request rejected before redirect: {e}")
            return oauth_error_response(e)
        return RedirectResponse(result.redirect_url, status_code=status.HTTP_302_FOUND)

    @router.post("/token",
                 summary="Token Endpoint",
                 description="Exchange an authorization code or rotate a refresh token")
    async def token(request: Request, oauth: OAuth2Server = Depends(get_server)):
        form = await request.form()
        try:
            client_id, client_secret = client_credentials(request, form)
            response = await oauth.token(
                grant_type=form.get("grant_type"),
                client_id=client_id,
                client_secret=client_secret,
                code=form.get("code"),
                code_verifier=form.get("code_verifier"),
                redirect_uri=form.get("redirect_uri"),
                refresh_token=form.get("refresh_token"),
                scope=form.get("scope"),
            )
        except OAuth2Error as e:
            return oauth_error_response(e, NO_STORE_HEADERS)
        except OAuth2StorageError as e:
            return oauth_error_response(storage_unavailable(e), NO_STORE_HEADERS)
        return JSONResponse(content=response.model_dump(), headers=NO_STORE_HEADERS)

    @router.post("/introspect",
                 summary="Token Introspection",
                 description="Report whether an access token is active (RFC 7662)")
    async def introspect(request: Request, oauth: OAuth2Server = Depends(get_server)):
        form = await request.form()
        try:
            client_id, client_secret = client_credentials(request, form)
            body = await oauth.introspect(client_id, client_secret, form.get("token"))
        except OAuth2Error as e:
            return oauth_error_response(e, NO_STORE_HEADERS)
        except OAuth2StorageError as e:
            return oauth_error_response(storage_unavailable(e), NO_STORE_HEADERS)
        return JSONResponse(content=body, headers=NO_STORE_HEADERS)

    @router.post("/revoke",
                 summary="Token Revocation",
                 description="Revoke an access or refresh token (RFC 7009)")
    async def revoke(request: Request, oauth: OAuth2Server = Depends(get_server)):
        form = await request.form()
        try:
            client_id, client_secret = client_credentials(request, form)
            await oauth.revoke(client_id, client_secret, form.get("token"), form.get("token_type_hint"))
        except OAuth2Error as e:
            return oauth_error_response(e)
        except OAuth2StorageError as e:
            return oauth_error_response(storage_unavailable(e))
        return Response(status_code=status.HTTP_200_OK)

    @router.get("/.well-known/oauth-authorization-server",
                summary="OAuth 2.0 Server Metadata",
                description="OAuth 2.0 Authorization Server Metadata endpoint (RFC 8414)")
    async def metadata(oauth: OAuth2Server = Depends(get_server)):
        return oauth.metadata()

    @router.get("/health", summary="Health Check")
    async def health(oauth: OAuth2Server = Depends(get_server)):
        result = await oauth.health_check()
        body = {"status": "healthy" if result.healthy else "unhealthy", "storage": result.to_dict()}
        code = status.HTTP_200_OK if result.healthy else status.HTTP_503_SERVICE_UNAVAILABLE
        return JSONResponse(status_code=code, content=body)

    return router


class OAuth2Bearer:
    """
    FastAPI dependency guarding a protected resource.

    Usage:
        require_read = OAuth2Bearer(server, required_scopes=["mcp:read"])

        @app.get("/data")
        async def data(access: VerifiedAccess = Depends(require_read)):
            ...
    """

    def __init__(self, server: OAuth2Server, required_scopes: Optional[list[str]] = None):
        self.server = server
        self.required_scopes = list(required_scopes or [])

    async def __call__(self, request: Request) -> VerifiedAccess:
        header = request.headers.get("authorization")
        scheme, _, token = (header or "").partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing bearer token",
                headers={"WWW-Authenticate": "Bearer"},
            )

        try:
            access = await self.server.verify_access_token(token.strip())
        except OAuth2Error as e:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=e.description,
                headers={"WWW-Authenticate": 'Bearer error="invalid_token"'},
            ) from e
        except OAuth2StorageError as e:
            logger.error(f"Storage failure while verifying bearer token: {e}")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Authorization server storage unavailable",
            ) from e

        if not access.has_scopes(self.required_scopes):
            scope = format_scope(self.required_scopes)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient scope",
                headers={"WWW-Authenticate": f'Bearer error="insufficient_scope", scope="{scope}"'},
            )
        return access


__all__ = [
    "NO_STORE_HEADERS",
    "OAuth2Bearer",
    "create_oauth_router",
    "extract_client_credentials",
    "oauth_error_response",
    "parse_basic_auth",
]
