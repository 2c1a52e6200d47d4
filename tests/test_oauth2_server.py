#!/usr/bin/env python3
"""
Tests for the OAuth 2.1 Authorization Server

Covers the authorization request, code exchange with PKCE, refresh rotation,
revocation, verification and introspection, plus the audit trail.
"""

import asyncio
import time

import pytest
from conftest import (
    CLIENT_ID,
    CLIENT_SECRET,
    OTHER_CLIENT_ID,
    OTHER_CLIENT_SECRET,
    OTHER_REDIRECT_URI,
    REDIRECT_URI,
    SCOPES,
    TEST_ITERATIONS,
    RecordingAuditSink,
    make_registry,
    query_of,
)

from auth.oauth2_audit import AuditResult, AuditSink, OAuth2AuditEvent
from auth.oauth2_authorize import AuthorizationRequest, AuthorizationState, build_redirect_url
from auth.oauth2_clients import ClientRegistry, hash_client_secret
from auth.oauth2_errors import (
    InvalidClientError,
    InvalidGrantError,
    InvalidRequestError,
    InvalidScopeError,
    UnauthorizedClientError,
    UnsupportedGrantTypeError,
)
from auth.oauth2_models import AccessToken, AuthorizationCode, ClientRecord, RefreshTokenRecord
from auth.oauth2_pkce import generate_pkce_pair
from auth.oauth2_server import OAuth2Server, create_oauth2_server
from auth.oauth2_storage import InMemoryOAuth2Storage, OAuth2StorageError, TimeoutStorage
from utils.config_manager import ClientConfig, OAuth2Config


async def exchange(server, code, verifier, client_id=CLIENT_ID, secret=CLIENT_SECRET, redirect_uri=REDIRECT_URI):
    return await server.token(
        grant_type="authorization_code",
        client_id=client_id,
        client_secret=secret,
        code=code,
        code_verifier=verifier,
        redirect_uri=redirect_uri,
    )


async def refresh(server, refresh_token, scope=None, client_id=CLIENT_ID, secret=CLIENT_SECRET):
    return await server.token(
        grant_type="refresh_token",
        client_id=client_id,
        client_secret=secret,
        refresh_token=refresh_token,
        scope=scope,
    )


def auth_request(**overrides) -> AuthorizationRequest:
    _, challenge = generate_pkce_pair()
    params = {
        "client_id": CLIENT_ID,
        "redirect_uri": REDIRECT_URI,
        "scopes": list(SCOPES),
        "code_challenge": challenge,
        "state": "state-123",
        "response_type": "code",
    }
    params.update(overrides)
    return AuthorizationRequest(**params)


class TestAuthorization:
    """Test the authorization request."""

    @pytest.mark.asyncio
    async def test_successful_authorization(self, server, audit):
        request = auth_request()
        result = await server.authorize(request)

        assert result.state == AuthorizationState.ISSUED
        assert result.redirect_url.startswith(REDIRECT_URI + "?")
        query = query_of(result.redirect_url)
        assert query["code"] == result.code
        assert query["state"] == "state-123"

        stored = await server.store.get_authorization_code(result.code)
        assert stored.client_id == CLIENT_ID
        assert stored.code_challenge == request.code_challenge
        assert stored.scopes == SCOPES
        assert stored.used is False
        assert stored.expires_at - stored.created_at == pytest.approx(600)

        assert len(audit.of_type(OAuth2AuditEvent.AUTHORIZATION_REQUESTED)) == 1
        assert len(audit.of_type(OAuth2AuditEvent.AUTHORIZATION_GRANTED)) == 1

    @pytest.mark.asyncio
    async def test_codes_are_unique(self, server):
        first = await server.authorize(auth_request())
        second = await server.authorize(auth_request())
        assert first.code != second.code

    @pytest.mark.asyncio
    async def test_unknown_client_is_raised(self, server, audit):
        with pytest.raises(InvalidClientError):
            await server.authorize(auth_request(client_id="nobody"))
        assert audit.of_type(OAuth2AuditEvent.AUTHORIZATION_DENIED)[0]["result"] == AuditResult.FAILURE

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "redirect_uri",
        [None, "https://evil.example.com/callback", REDIRECT_URI + "/", OTHER_REDIRECT_URI],
    )
    async def test_bad_redirect_uri_is_never_redirected(self, server, redirect_uri):
        with pytest.raises(InvalidRequestError):
            await server.authorize(auth_request(redirect_uri=redirect_uri))

    @pytest.mark.asyncio
    async def test_invalid_scope_redirects_with_error(self, server):
        result = await server.authorize(auth_request(scopes=["mcp:admin"]))
        assert result.state == AuthorizationState.DENIED
        assert result.code is None
        query = query_of(result.redirect_url)
        assert query["error"] == "invalid_scope"
        assert query["state"] == "state-123"
        assert "code" not in query

    @pytest.mark.asyncio
    async def test_missing_code_challenge_redirects_with_error(self, server):
        result = await server.authorize(auth_request(code_challenge=None))
        assert query_of(result.redirect_url)["error"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_plain_challenge_method_rejected(self, server):
        result = await server.authorize(auth_request(code_challenge_method="plain"))
        assert result.state == AuthorizationState.DENIED
        assert query_of(result.redirect_url)["error"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_missing_challenge_method_rejected(self, server):
        result = await server.authorize(auth_request(code_challenge_method=None))
        assert result.state == AuthorizationState.DENIED
        query = query_of(result.redirect_url)
        assert query["error"] == "invalid_request"
        assert query["state"] == "state-123"
        assert "code" not in query

    @pytest.mark.asyncio
    async def test_unsupported_response_type(self, server):
        result = await server.authorize(auth_request(response_type="token"))
        assert query_of(result.redirect_url)["error"] == "unsupported_response_type"

    @pytest.mark.asyncio
    async def test_empty_scope_issues_scopeless_code(self, server):
        result = await server.authorize(auth_request(scopes=[]))
        stored = await server.store.get_authorization_code(result.code)
        assert stored.scopes == []

    @pytest.mark.asyncio
    async def test_storage_failure_redirects_temporarily_unavailable(self, server, monkeypatch):
        async def broken(*args, **kwargs):
            raise OAuth2StorageError("down")

        monkeypatch.setattr(server.store, "set_authorization_code", broken)
        result = await server.authorize(auth_request())
        assert query_of(result.redirect_url)["error"] == "temporarily_unavailable"

    def test_redirect_keeps_existing_query(self):
        url = build_redirect_url("https://app.example.com/cb?tenant=a", {"code": "c", "state": None})
        assert query_of(url) == {"tenant": "a", "code": "c"}


class TestCodeExchange:
    """Test the authorization_code grant."""

    @pytest.mark.asyncio
    async def test_successful_exchange(self, server, issue_code, audit):
        code, verifier = await issue_code()
        response = await exchange(server, code, verifier)

        assert response.token_type == "Bearer"
        assert response.expires_in == 3600
        assert response.scope == "mcp:read mcp:write"
        assert response.access_token != response.refresh_token
        assert await server.store.get_authorization_code(code) is None

        access = await server.verify_access_token(response.access_token)
        assert access.client_id == CLIENT_ID
        assert access.scopes == SCOPES
        assert audit.of_type(OAuth2AuditEvent.TOKEN_ISSUED)[-1]["result"] == AuditResult.SUCCESS

    @pytest.mark.asyncio
    async def test_code_replay_rejected(self, server, issue_code):
        code, verifier = await issue_code()
        await exchange(server, code, verifier)
        with pytest.raises(InvalidGrantError):
            await exchange(server, code, verifier)

    @pytest.mark.asyncio
    async def test_unknown_code_rejected(self, server):
        verifier, _ = generate_pkce_pair()
        with pytest.raises(InvalidGrantError):
            await exchange(server, "not-a-code", verifier)

    @pytest.mark.asyncio
    async def test_wrong_verifier_rejected(self, server, issue_code):
        code, _ = await issue_code()
        wrong_verifier, _ = generate_pkce_pair()
        with pytest.raises(InvalidGrantError):
            await exchange(server, code, wrong_verifier)

    @pytest.mark.asyncio
    async def test_missing_verifier_is_invalid_request(self, server, issue_code):
        code, _ = await issue_code()
        with pytest.raises(InvalidRequestError):
            await exchange(server, code, None)

    @pytest.mark.asyncio
    async def test_code_bound_to_client(self, server, issue_code):
        code, verifier = await issue_code()
        with pytest.raises(InvalidGrantError):
            await exchange(server, code, verifier, client_id=OTHER_CLIENT_ID, secret=OTHER_CLIENT_SECRET)

    @pytest.mark.asyncio
    async def test_redirect_mismatch_burns_code(self, server, issue_code):
        code, verifier = await issue_code()
        with pytest.raises(InvalidGrantError):
            await exchange(server, code, verifier, redirect_uri="https://app.example.com/other")
        with pytest.raises(InvalidGrantError):
            await exchange(server, code, verifier)

    @pytest.mark.asyncio
    async def test_missing_redirect_uri_is_invalid_request(self, server, issue_code):
        code, verifier = await issue_code()
        with pytest.raises(InvalidRequestError):
            await exchange(server, code, verifier, redirect_uri=None)

    @pytest.mark.asyncio
    async def test_expired_code_rejected_and_deleted(self, server):
        verifier, challenge = generate_pkce_pair()
        now = time.time()
        await server.store.set_authorization_code(
            AuthorizationCode(
                code="expired-code",
                client_id=CLIENT_ID,
                scopes=SCOPES,
                redirect_uri=REDIRECT_URI,
                code_challenge=challenge,
                created_at=now - 700,
                expires_at=now - 100,
            ),
            600,
        )
        with pytest.raises(InvalidGrantError):
            await exchange(server, "expired-code", verifier)
        assert await server.store.get_authorization_code("expired-code") is None

    @pytest.mark.asyncio
    async def test_bad_client_secret(self, server, issue_code, audit):
        code, verifier = await issue_code()
        with pytest.raises(InvalidClientError):
            await exchange(server, code, verifier, secret="wrong")
        assert audit.of_type(OAuth2AuditEvent.CLIENT_AUTHENTICATION_FAILED)
        # A failed authentication does not consume the code
        assert (await exchange(server, code, verifier)).access_token

    @pytest.mark.asyncio
    async def test_unknown_client(self, server, issue_code):
        code, verifier = await issue_code()
        with pytest.raises(InvalidClientError):
            await exchange(server, code, verifier, client_id="nobody")

    @pytest.mark.asyncio
    async def test_grant_type_validation(self, server):
        with pytest.raises(InvalidRequestError):
            await server.token(grant_type=None, client_id=CLIENT_ID, client_secret=CLIENT_SECRET)
        with pytest.raises(UnsupportedGrantTypeError):
            await server.token(grant_type="password", client_id=CLIENT_ID, client_secret=CLIENT_SECRET)
        with pytest.raises(InvalidRequestError):
            await server.token(grant_type="authorization_code", client_id=CLIENT_ID, client_secret=CLIENT_SECRET)

    @pytest.mark.asyncio
    async def test_concurrent_exchange_single_winner(self, server, issue_code):
        code, verifier = await issue_code()
        results = await asyncio.gather(
            *[exchange(server, code, verifier) for _ in range(5)],
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert all(isinstance(e, InvalidGrantError) for e in losers)
        assert len(await server.store.list_access_tokens()) == 1


class TestRefreshRotation:
    """Test the refresh_token grant."""

    @pytest.mark.asyncio
    async def test_rotation_retires_old_pair(self, server, issue_tokens):
        first = await issue_tokens()
        second = await refresh(server, first.refresh_token)

        assert second.access_token != first.access_token
        assert second.refresh_token != first.refresh_token
        assert second.scope == first.scope

        with pytest.raises(InvalidGrantError):
            await server.verify_access_token(first.access_token)
        with pytest.raises(InvalidGrantError):
            await refresh(server, first.refresh_token)
        assert (await server.verify_access_token(second.access_token)).client_id == CLIENT_ID

    @pytest.mark.asyncio
    async def test_narrowing_is_sticky(self, server, issue_tokens):
        first = await issue_tokens()
        narrowed = await refresh(server, first.refresh_token, scope="mcp:read")
        assert narrowed.scope == "mcp:read"
        with pytest.raises(InvalidScopeError):
            await refresh(server, narrowed.refresh_token, scope="mcp:write")

    @pytest.mark.asyncio
    async def test_widening_rejected(self, server, issue_tokens):
        first = await issue_tokens(scopes=["mcp:read"])
        with pytest.raises(InvalidScopeError):
            await refresh(server, first.refresh_token, scope="mcp:read mcp:write")
        # Rejected request leaves the refresh token usable
        assert (await refresh(server, first.refresh_token)).scope == "mcp:read"

    @pytest.mark.asyncio
    async def test_refresh_bound_to_client(self, server, issue_tokens):
        first = await issue_tokens()
        with pytest.raises(InvalidGrantError):
            await refresh(server, first.refresh_token, client_id=OTHER_CLIENT_ID, secret=OTHER_CLIENT_SECRET)

    @pytest.mark.asyncio
    async def test_unknown_refresh_token(self, server):
        with pytest.raises(InvalidGrantError):
            await refresh(server, "not-a-refresh-token")

    @pytest.mark.asyncio
    async def test_refresh_needs_paired_access_token(self, server, issue_tokens):
        first = await issue_tokens()
        await server.store.delete_access_token(first.access_token)
        with pytest.raises(InvalidGrantError):
            await refresh(server, first.refresh_token)

    @pytest.mark.asyncio
    async def test_client_without_refresh_grant(self, oauth2_config, audit):
        registry = ClientRegistry(
            [
                ClientRecord(
                    client_id="code-only",
                    secret_hash=hash_client_secret("code-only-secret", iterations=TEST_ITERATIONS),
                    redirect_uris=frozenset({REDIRECT_URI}),
                    scopes=frozenset(SCOPES),
                    grant_types=frozenset({"authorization_code"}),
                )
            ]
        )
        oauth = await create_oauth2_server(oauth2_config, registry, audit=audit)
        try:
            verifier, challenge = generate_pkce_pair()
            result = await oauth.authorize(auth_request(client_id="code-only", code_challenge=challenge))
            tokens = await exchange(oauth, result.code, verifier, client_id="code-only", secret="code-only-secret")
            with pytest.raises(UnauthorizedClientError):
                await refresh(oauth, tokens.refresh_token, client_id="code-only", secret="code-only-secret")
        finally:
            await oauth.shutdown()
        assert [e["event"] for e in failures_of(audit)] == [OAuth2AuditEvent.TOKEN_REFRESHED]

    @pytest.mark.asyncio
    async def test_expired_refresh_token(self, server):
        now = time.time()
        await server.store.set_access_token(
            AccessToken(token="at-x", client_id=CLIENT_ID, scopes=SCOPES, issued_at=now,
                        expires_at=now + 3600, refresh_token="rt-x"),
            3600,
        )
        await server.store.set_refresh_token(
            RefreshTokenRecord(refresh_token="rt-x", access_token="at-x", client_id=CLIENT_ID,
                               scopes=SCOPES, issued_at=now - 100, expires_at=now - 1),
            3600,
        )
        with pytest.raises(InvalidGrantError):
            await refresh(server, "rt-x")
        assert await server.store.get_refresh_token("rt-x") is None

    @pytest.mark.asyncio
    async def test_concurrent_refresh_single_winner(self, server, issue_tokens):
        first = await issue_tokens()
        results = await asyncio.gather(
            *[refresh(server, first.refresh_token) for _ in range(4)],
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        assert len(winners) == 1
        assert all(isinstance(r, InvalidGrantError) for r in results if isinstance(r, Exception))

        # Losers leave nothing behind
        assert [t.token for t in await server.store.list_access_tokens()] == [winners[0].access_token]
        assert [r.refresh_token for r in await server.store.list_refresh_tokens()] == [winners[0].refresh_token]


class TestRevocation:
    """Test RFC 7009 revocation."""

    @pytest.mark.asyncio
    async def test_revoke_access_token_cascades(self, server, issue_tokens):
        tokens = await issue_tokens()
        await server.revoke(CLIENT_ID, CLIENT_SECRET, tokens.access_token)
        with pytest.raises(InvalidGrantError):
            await server.verify_access_token(tokens.access_token)
        with pytest.raises(InvalidGrantError):
            await refresh(server, tokens.refresh_token)

    @pytest.mark.asyncio
    async def test_revoke_refresh_token_cascades(self, server, issue_tokens):
        tokens = await issue_tokens()
        await server.revoke(CLIENT_ID, CLIENT_SECRET, tokens.refresh_token, "refresh_token")
        with pytest.raises(InvalidGrantError):
            await server.verify_access_token(tokens.access_token)
        with pytest.raises(InvalidGrantError):
            await refresh(server, tokens.refresh_token)

    @pytest.mark.asyncio
    async def test_wrong_hint_still_revokes(self, server, issue_tokens):
        tokens = await issue_tokens()
        assert await server.revocation.revoke(CLIENT_ID, tokens.access_token, "refresh_token")
        with pytest.raises(InvalidGrantError):
            await server.verify_access_token(tokens.access_token)

    @pytest.mark.asyncio
    async def test_unknown_token_is_silent(self, server, audit):
        await server.revoke(CLIENT_ID, CLIENT_SECRET, "never-issued")
        event = audit.of_type(OAuth2AuditEvent.TOKEN_REVOKED)[-1]
        assert event["result"] == AuditResult.SUCCESS
        assert "note" in event["details"]

    @pytest.mark.asyncio
    async def test_foreign_token_untouched(self, server, issue_tokens):
        tokens = await issue_tokens()
        await server.revoke(OTHER_CLIENT_ID, OTHER_CLIENT_SECRET, tokens.access_token)
        await server.revoke(OTHER_CLIENT_ID, OTHER_CLIENT_SECRET, tokens.refresh_token)
        assert (await server.verify_access_token(tokens.access_token)).client_id == CLIENT_ID
        assert (await refresh(server, tokens.refresh_token)).access_token

    @pytest.mark.asyncio
    async def test_revocation_requires_client_authentication(self, server, issue_tokens):
        tokens = await issue_tokens()
        with pytest.raises(InvalidClientError):
            await server.revoke(CLIENT_ID, "wrong", tokens.access_token)
        assert await server.verify_access_token(tokens.access_token)

    @pytest.mark.asyncio
    async def test_revoke_client(self, server, issue_code, issue_tokens, audit):
        await issue_tokens()
        await issue_tokens()
        await issue_code()
        removed = await server.revoke_client(CLIENT_ID)
        assert removed == 5
        stats = await server.get_stats()
        assert stats["tokens"] == 0
        assert stats["refresh_tokens"] == 0
        assert stats["authorization_codes"] == 0
        assert audit.of_type(OAuth2AuditEvent.CLIENT_REVOKED)[0]["details"]["removed"] == 5


class TestVerification:
    """Test access token verification and introspection."""

    @pytest.mark.asyncio
    async def test_verify(self, server, issue_tokens):
        tokens = await issue_tokens()
        access = await server.verify_access_token(tokens.access_token)
        assert access.token == tokens.access_token
        assert isinstance(access.expires_at, int)
        assert access.expires_at > time.time()
        assert access.has_scopes(["mcp:read"])
        assert not access.has_scopes(["mcp:admin"])

    @pytest.mark.asyncio
    @pytest.mark.parametrize("token", [None, "", "unknown-token"])
    async def test_invalid_tokens(self, server, token, audit):
        with pytest.raises(InvalidGrantError):
            await server.verify_access_token(token)
        assert audit.of_type(OAuth2AuditEvent.TOKEN_VALIDATION_FAILED)

    @pytest.mark.asyncio
    async def test_expired_token_deleted(self, server):
        now = time.time()
        await server.store.set_access_token(
            AccessToken(token="old", client_id=CLIENT_ID, scopes=SCOPES, issued_at=now - 10, expires_at=now - 1),
            3600,
        )
        with pytest.raises(InvalidGrantError):
            await server.verify_access_token("old")
        assert await server.store.get_access_token("old") is None

    @pytest.mark.asyncio
    async def test_introspection(self, server, issue_tokens):
        tokens = await issue_tokens()
        body = await server.introspect(CLIENT_ID, CLIENT_SECRET, tokens.access_token)
        assert body["active"] is True
        assert body["client_id"] == CLIENT_ID
        assert body["scope"] == "mcp:read mcp:write"
        assert body["token_type"] == "Bearer"
        assert body["iss"] == "https://auth.example.com"

        assert await server.introspect(OTHER_CLIENT_ID, OTHER_CLIENT_SECRET, tokens.access_token) == {"active": False}
        assert await server.introspect(CLIENT_ID, CLIENT_SECRET, "unknown") == {"active": False}

    @pytest.mark.asyncio
    async def test_introspection_requires_token(self, server):
        with pytest.raises(InvalidRequestError):
            await server.introspect(CLIENT_ID, CLIENT_SECRET, None)


class ExplodingAuditSink(AuditSink):
    def log(self, event_type, result, context=None, details=None) -> None:
        raise RuntimeError("audit backend down")


def failures_of(audit):
    return [e for e in audit.events if e["result"] == AuditResult.FAILURE]


async def storage_down(*args, **kwargs):
    raise OAuth2StorageError("storage offline")


class TestAuditTrail:
    """Test audit events and their contents."""

    @pytest.mark.asyncio
    async def test_no_secrets_in_audit_events(self, server, issue_code, audit):
        code, verifier = await issue_code()
        tokens = await exchange(server, code, verifier)
        rotated = await refresh(server, tokens.refresh_token)
        await server.introspect(CLIENT_ID, CLIENT_SECRET, rotated.access_token)
        await server.revoke(CLIENT_ID, CLIENT_SECRET, rotated.refresh_token)

        dump = audit.dump()
        for secret in (
            code,
            verifier,
            CLIENT_SECRET,
            tokens.access_token,
            tokens.refresh_token,
            rotated.access_token,
            rotated.refresh_token,
        ):
            assert secret not in dump

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "grant_type,params,error,event",
        [
            (None, {}, InvalidRequestError, OAuth2AuditEvent.TOKEN_ISSUED),
            ("authorization_code", {"redirect_uri": REDIRECT_URI}, InvalidRequestError, OAuth2AuditEvent.TOKEN_ISSUED),
            ("authorization_code", {"code": "some-code"}, InvalidRequestError, OAuth2AuditEvent.TOKEN_ISSUED),
            ("password", {}, UnsupportedGrantTypeError, OAuth2AuditEvent.TOKEN_ISSUED),
            ("refresh_token", {}, InvalidRequestError, OAuth2AuditEvent.TOKEN_REFRESHED),
        ],
    )
    async def test_rejected_token_requests_are_audited(self, server, audit, grant_type, params, error, event):
        with pytest.raises(error):
            await server.token(grant_type=grant_type, client_id=CLIENT_ID, client_secret=CLIENT_SECRET, **params)
        failures = failures_of(audit)
        assert [e["event"] for e in failures] == [event]
        assert failures[0]["details"]["clientId"] == CLIENT_ID

    @pytest.mark.asyncio
    async def test_missing_token_is_audited(self, server, audit):
        with pytest.raises(InvalidRequestError):
            await server.revoke(CLIENT_ID, CLIENT_SECRET, None)
        with pytest.raises(InvalidRequestError):
            await server.introspect(CLIENT_ID, CLIENT_SECRET, "")
        assert [e["event"] for e in failures_of(audit)] == [
            OAuth2AuditEvent.TOKEN_REVOKED,
            OAuth2AuditEvent.TOKEN_INTROSPECTED,
        ]

    @pytest.mark.asyncio
    async def test_storage_failure_during_exchange_is_audited(self, server, issue_code, audit, monkeypatch):
        code, verifier = await issue_code()
        monkeypatch.setattr(server.store, "set_access_token", storage_down)
        with pytest.raises(OAuth2StorageError):
            await exchange(server, code, verifier)
        failures = failures_of(audit)
        assert [e["event"] for e in failures] == [OAuth2AuditEvent.TOKEN_ISSUED]
        assert failures[0]["details"]["error"].startswith("storage failure")
        assert code not in audit.dump()

    @pytest.mark.asyncio
    async def test_storage_failure_during_refresh_is_audited(self, server, issue_tokens, audit, monkeypatch):
        tokens = await issue_tokens()
        monkeypatch.setattr(server.store, "get_refresh_token", storage_down)
        with pytest.raises(OAuth2StorageError):
            await refresh(server, tokens.refresh_token)
        assert [e["event"] for e in failures_of(audit)] == [OAuth2AuditEvent.TOKEN_REFRESHED]

    @pytest.mark.asyncio
    async def test_storage_failure_on_lookup_is_audited(self, server, issue_tokens, audit, monkeypatch):
        tokens = await issue_tokens()
        monkeypatch.setattr(server.store, "get_access_token", storage_down)
        with pytest.raises(OAuth2StorageError):
            await server.verify_access_token(tokens.access_token)
        with pytest.raises(OAuth2StorageError):
            await server.introspect(CLIENT_ID, CLIENT_SECRET, tokens.access_token)
        with pytest.raises(OAuth2StorageError):
            await server.revoke(CLIENT_ID, CLIENT_SECRET, tokens.access_token)
        assert [e["event"] for e in failures_of(audit)] == [
            OAuth2AuditEvent.TOKEN_VALIDATION_FAILED,
            OAuth2AuditEvent.TOKEN_INTROSPECTED,
            OAuth2AuditEvent.TOKEN_REVOKED,
        ]

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_change_outcome(self, oauth2_config):
        oauth = await create_oauth2_server(oauth2_config, make_registry(), audit=ExplodingAuditSink())
        try:
            verifier, challenge = generate_pkce_pair()
            result = await oauth.authorize(auth_request(code_challenge=challenge))
            tokens = await exchange(oauth, result.code, verifier)
            assert (await oauth.verify_access_token(tokens.access_token)).client_id == CLIENT_ID
        finally:
            await oauth.shutdown()


class TestServerLifecycle:
    """Test construction, health and stats."""

    @pytest.mark.asyncio
    async def test_factory_hashes_configured_secrets(self):
        config = OAuth2Config(issuer="https://auth.example.com", storage_timeout=2.0)
        clients = [
            ClientConfig(client_id="cfg-client", client_secret="cfg-secret",
                         redirect_uris=[REDIRECT_URI], scopes=["mcp:read"])
        ]
        oauth = await create_oauth2_server(config, clients, audit=RecordingAuditSink())
        try:
            record = oauth.registry.get("cfg-client")
            assert record.secret_hash.startswith("pbkdf2_sha256$")
            assert "cfg-secret" not in record.secret_hash
            assert record.grant_types == frozenset({"authorization_code", "refresh_token"})
            assert await oauth.authenticate_client("cfg-client", "cfg-secret")
            assert isinstance(oauth.storage, TimeoutStorage)
            assert oauth.storage.timeout == 2.0
        finally:
            await oauth.shutdown()

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, server):
        await server.initialize()
        assert (await server.health_check()).healthy

    @pytest.mark.asyncio
    async def test_operations_fail_before_initialize(self, oauth2_config, registry, audit):
        oauth = OAuth2Server(oauth2_config, registry, InMemoryOAuth2Storage(), audit)
        with pytest.raises(OAuth2StorageError):
            await oauth.authorization.store.get_access_token("x")
        assert not (await oauth.health_check()).healthy

    @pytest.mark.asyncio
    async def test_stats(self, server, issue_tokens, issue_code):
        await issue_tokens()
        await issue_code()
        assert await server.get_stats() == {
            "clients": 2,
            "tokens": 1,
            "refresh_tokens": 1,
            "authorization_codes": 1,
        }

    @pytest.mark.asyncio
    async def test_metadata(self, server):
        metadata = server.metadata()
        assert metadata["issuer"] == "https://auth.example.com"
        assert metadata["token_endpoint"] == "https://auth.example.com/token"
        assert metadata["code_challenge_methods_supported"] == ["S256"]
        assert metadata["response_types_supported"] == ["code"]
        assert metadata["grant_types_supported"] == ["authorization_code", "refresh_token"]
        assert metadata["scopes_supported"] == ["mcp:read", "mcp:write"]
