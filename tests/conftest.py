"""
Shared fixtures for the OAuth 2.1 authorization server tests.
"""

import asyncio
import json
from typing import Any, Optional
from urllib.parse import parse_qs, urlparse

import pytest
import pytest_asyncio

from auth.oauth2_audit import AuditResult, AuditSink
from auth.oauth2_authorize import AuthorizationRequest
from auth.oauth2_clients import ClientRegistry, hash_client_secret
from auth.oauth2_models import ClientRecord
from auth.oauth2_pkce import generate_pkce_pair
from auth.oauth2_server import create_oauth2_server
from auth.oauth2_storage import InMemoryOAuth2Storage, OAuth2Store
from utils.config_manager import OAuth2Config

# Low iteration count keeps hashing fast in tests
TEST_ITERATIONS = 1_000

CLIENT_ID = "test-client"
CLIENT_SECRET = "test-secret-value"
REDIRECT_URI = "https://app.example.com/callback"
SCOPES = ["mcp:read", "mcp:write"]

OTHER_CLIENT_ID = "other-client"
OTHER_CLIENT_SECRET = "other-secret-value"
OTHER_REDIRECT_URI = "https://other.example.com/cb"


class RecordingAuditSink(AuditSink):
    """Audit sink that keeps every event in memory."""

    def __init__(self):
        self.events: list[dict[str, Any]] = []

    def log(self, event_type, result, context=None, details=None) -> None:
        self.events.append(
            {
                "event": event_type,
                "result": AuditResult(result),
                "context": context or {},
                "details": details or {},
            }
        )

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [e for e in self.events if e["event"] == event_type]

    def dump(self) -> str:
        return json.dumps(self.events, default=str)


class YieldingStorage(InMemoryOAuth2Storage):
    """In-memory storage that yields to the event loop before every call."""

    async def get(self, key):
        await asyncio.sleep(0)
        return await super().get(key)

    async def set(self, key, value, ttl_seconds):
        await asyncio.sleep(0)
        await super().set(key, value, ttl_seconds)

    async def delete(self, key):
        await asyncio.sleep(0)
        return await super().delete(key)

    async def compare_and_set_used(self, key):
        await asyncio.sleep(0)
        return await super().compare_and_set_used(key)


def make_registry() -> ClientRegistry:
    return ClientRegistry(
        [
            ClientRecord(
                client_id=CLIENT_ID,
                secret_hash=hash_client_secret(CLIENT_SECRET, iterations=TEST_ITERATIONS),
                redirect_uris=frozenset({REDIRECT_URI}),
                scopes=frozenset(SCOPES),
                name="Test Client",
            ),
            ClientRecord(
                client_id=OTHER_CLIENT_ID,
                secret_hash=hash_client_secret(OTHER_CLIENT_SECRET, iterations=TEST_ITERATIONS),
                redirect_uris=frozenset({OTHER_REDIRECT_URI}),
                scopes=frozenset({"mcp:read"}),
                name="Other Client",
            ),
        ]
    )


def query_of(url: str) -> dict[str, str]:
    """Single-valued query parameters of a redirect URL."""
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


@pytest.fixture
def audit():
    return RecordingAuditSink()


@pytest.fixture
def registry():
    return make_registry()


@pytest.fixture
def oauth2_config():
    return OAuth2Config(issuer="https://auth.example.com")


@pytest_asyncio.fixture
async def storage():
    provider = YieldingStorage()
    await provider.connect()
    yield provider
    await provider.disconnect()


@pytest.fixture
def store(storage):
    return OAuth2Store(storage)


@pytest_asyncio.fixture
async def server(oauth2_config, registry, storage, audit):
    oauth = await create_oauth2_server(oauth2_config, registry, storage=storage, audit=audit)
    yield oauth
    await oauth.shutdown()


@pytest.fixture
def issue_code(server):
    """Run a successful authorization request; returns (code, verifier)."""

    async def _issue(
        client_id: str = CLIENT_ID,
        redirect_uri: str = REDIRECT_URI,
        scopes: Optional[list[str]] = None,
        state: Optional[str] = "xyz",
    ) -> tuple[str, str]:
        verifier, challenge = generate_pkce_pair()
        result = await server.authorize(
            AuthorizationRequest(
                client_id=client_id,
                redirect_uri=redirect_uri,
                scopes=list(SCOPES if scopes is None else scopes),
                code_challenge=challenge,
                state=state,
                response_type="code",
            )
        )
        assert result.code is not None, result.redirect_url
        return result.code, verifier

    return _issue


@pytest.fixture
def issue_tokens(server, issue_code):
    """Run authorize + code exchange; returns the TokenResponse."""

    async def _issue(scopes: Optional[list[str]] = None):
        code, verifier = await issue_code(scopes=scopes)
        return await server.token(
            grant_type="authorization_code",
            client_id=CLIENT_ID,
            client_secret=CLIENT_SECRET,
            code=code,
            code_verifier=verifier,
            redirect_uri=REDIRECT_URI,
        )

    return _issue
