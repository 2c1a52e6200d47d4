"""
Tests for the HTTP entry point: app assembly and logging helpers.
"""

import json
import logging

import pytest

from auth.oauth2_storage import InMemoryOAuth2Storage, RedisOAuth2Storage, TimeoutStorage
from server_oauth_http import CidLogFilter, JSONLogFormatter, _cid_ctx, build_server
from utils.config_manager import ConfigManager


@pytest.fixture
def env(monkeypatch):
    for name in ("OAUTH_CLIENTS_FILE", "OAUTH_CLIENTS", "OAUTH_STORAGE", "OAUTH_STORAGE_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("OAUTH_CLIENT_ID", "env-client")
    monkeypatch.setenv("OAUTH_CLIENT_SECRET", "env-secret")
    monkeypatch.setenv("OAUTH_REDIRECT_URIS", "https://app.example.com/callback")
    monkeypatch.setenv("OAUTH_SCOPES", "mcp:read")
    return monkeypatch


class TestBuildServer:
    def test_memory_backend(self, env):
        server = build_server(ConfigManager())
        assert "env-client" in server.registry
        assert isinstance(server.storage, TimeoutStorage)
        assert isinstance(server.storage.inner, InMemoryOAuth2Storage)

    def test_redis_backend(self, env):
        env.setenv("OAUTH_STORAGE", "redis")
        env.setenv("REDIS_KEY_PREFIX", "test:")
        server = build_server(ConfigManager())
        assert isinstance(server.storage.inner, RedisOAuth2Storage)
        assert server.storage.inner.key_prefix == "test:"


class TestLogging:
    def make_record(self) -> logging.LogRecord:
        return logging.LogRecord("oauth2.audit", logging.INFO, __file__, 1, "hello %s", ("world",), None)

    def test_cid_filter_injects_context(self):
        record = self.make_record()
        token = _cid_ctx.set("req-7")
        try:
            assert CidLogFilter().filter(record)
        finally:
            _cid_ctx.reset(token)
        assert record.cid == "req-7"

    def test_cid_defaults_to_dash(self):
        record = self.make_record()
        CidLogFilter().filter(record)
        assert record.cid == "-"

    def test_json_formatter(self):
        record = self.make_record()
        CidLogFilter().filter(record)
        payload = json.loads(JSONLogFormatter().format(record))
        assert payload["msg"] == "hello world"
        assert payload["logger"] == "oauth2.audit"
        assert payload["level"] == "INFO"
        assert payload["cid"] == "-"
