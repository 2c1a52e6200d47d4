"""
Configuration Manager for the OAuth 2.1 authorization server

Loads every setting from environment variables (and, for clients, an optional
JSON file) into typed dataclasses. Invalid values fail fast with ``ConfigError``
so a misconfigured server never starts.

Client sources, first match wins:
- ``OAUTH_CLIENTS_FILE``: path to a JSON array of client entries
- ``OAUTH_CLIENTS``: the same JSON array inline
- ``OAUTH_CLIENT_ID`` / ``OAUTH_CLIENT_SECRET`` / ``OAUTH_REDIRECT_URIS`` /
  ``OAUTH_SCOPES``: a single client
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""


GRANT_TYPES = ("authorization_code", "refresh_token")


@dataclass
class OAuth2Config:
    """Protocol settings for the authorization engine."""

    issuer: str = "http://localhost:8080"
    code_lifetime: int = 600
    access_token_lifetime: int = 3600
    refresh_token_lifetime: int = 86400
    storage_timeout: float = 5.0


@dataclass
class StorageConfig:
    """Storage backend selection."""

    backend: str = "memory"
    redis_url: Optional[str] = None
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None
    key_prefix: str = "oauth:"

    def redis_options(self) -> dict[str, Any]:
        return {
            "url": self.redis_url,
            "host": self.redis_host,
            "port": self.redis_port,
            "db": self.redis_db,
            "password": self.redis_password,
            "key_prefix": self.key_prefix,
        }


@dataclass
class ClientConfig:
    """One provisioned client. Exactly one of client_secret / secret_hash is set."""

    client_id: str
    client_secret: Optional[str] = None
    secret_hash: Optional[str] = None
    redirect_uris: list[str] = field(default_factory=list)
    scopes: list[str] = field(default_factory=list)
    name: str = ""
    grant_types: list[str] = field(default_factory=lambda: list(GRANT_TYPES))


@dataclass
class ServerConfig:
    """HTTP server settings."""

    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"
    log_format: str = "text"


def _split_list(value: Any) -> list[str]:
    """Accept a JSON list or a space/comma separated string."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [v for v in re.split(r"[\s,]+", str(value)) if v]


def _positive_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def _non_negative_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e
    if value < 0:
        raise ConfigError(f"{name} must not be negative, got {value}")
    return value


def _positive_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default))
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def parse_client_entries(entries: Any) -> list[ClientConfig]:
    """Validate a decoded JSON array of client entries."""
    if not isinstance(entries, list):
        raise ConfigError("Client configuration must be a JSON array")

    clients: list[ClientConfig] = []
    seen: set[str] = set()
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ConfigError(f"Client entry {index} must be an object")
        client_id = entry.get("client_id")
        if not client_id:
            raise ConfigError(f"Client entry {index} is missing client_id")
        if client_id in seen:
            raise ConfigError(f"Duplicate client_id: {client_id}")
        secret = entry.get("client_secret")
        secret_hash = entry.get("secret_hash")
        if bool(secret) == bool(secret_hash):
            raise ConfigError(f"Client {client_id} needs exactly one of client_secret or secret_hash")
        redirect_uris = _split_list(entry.get("redirect_uris"))
        if not redirect_uris:
            raise ConfigError(f"Client {client_id} has no redirect_uris")
        grant_types = _split_list(entry.get("grant_types")) or list(GRANT_TYPES)
        unknown = [g for g in grant_types if g not in GRANT_TYPES]
        if unknown:
            raise ConfigError(f"Client {client_id} has unsupported grant_types: {unknown}")

        seen.add(client_id)
        clients.append(
            ClientConfig(
                client_id=client_id,
                client_secret=secret,
                secret_hash=secret_hash,
                redirect_uris=redirect_uris,
                scopes=_split_list(entry.get("scopes")),
                name=entry.get("name", ""),
                grant_types=grant_types,
            )
        )
    return clients


class ConfigManager:
    """
    Configuration for the authorization server.

    Reads the environment once at construction; call ``reload()`` to pick up
    changes.
    """

    def __init__(self):
        self._oauth2_config: Optional[OAuth2Config] = None
        self._storage_config: Optional[StorageConfig] = None
        self._server_config: Optional[ServerConfig] = None
        self._clients: list[ClientConfig] = []
        self._load_configuration()

    def _load_configuration(self):
        """Load all configuration from environment variables and defaults."""
        try:
            self._oauth2_config = self._load_oauth2_config()
            self._storage_config = self._load_storage_config()
            self._server_config = self._load_server_config()
            self._clients = self._load_clients()
            logger.info(f"Configuration loaded successfully ({len(self._clients)} clients)")
        except Exception as e:
            logger.error(f"Failed to load configuration: {e}")
            raise

    def _load_oauth2_config(self) -> OAuth2Config:
        return OAuth2Config(
            issuer=os.getenv("OAUTH_ISSUER", "http://localhost:8080").rstrip("/"),
            code_lifetime=_positive_int("OAUTH_CODE_LIFETIME", 600),
            access_token_lifetime=_positive_int("OAUTH_ACCESS_TOKEN_LIFETIME", 3600),
            refresh_token_lifetime=_positive_int("OAUTH_REFRESH_TOKEN_LIFETIME", 86400),
            storage_timeout=_positive_float("OAUTH_STORAGE_TIMEOUT", 5.0),
        )

    def _load_storage_config(self) -> StorageConfig:
        backend = os.getenv("OAUTH_STORAGE", "memory").lower()
        if backend not in ("memory", "redis"):
            raise ConfigError(f"OAUTH_STORAGE must be 'memory' or 'redis', got {backend!r}")
        return StorageConfig(
            backend=backend,
            redis_url=os.getenv("REDIS_URL") or None,
            redis_host=os.getenv("REDIS_HOST", "localhost"),
            redis_port=_positive_int("REDIS_PORT", 6379),
            redis_db=_non_negative_int("REDIS_DB", 0),
            redis_password=os.getenv("REDIS_PASSWORD") or None,
            key_prefix=os.getenv("REDIS_KEY_PREFIX", "oauth:"),
        )

    def _load_server_config(self) -> ServerConfig:
        log_format = os.getenv("LOG_FORMAT", "text").lower()
        if log_format not in ("text", "json"):
            raise ConfigError(f"LOG_FORMAT must be 'text' or 'json', got {log_format!r}")
        return ServerConfig(
            host=os.getenv("HOST", "0.0.0.0"),
            port=_positive_int("PORT", 8080),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_format=log_format,
        )

    def _load_clients(self) -> list[ClientConfig]:
        """Load provisioned clients from file, inline JSON or single-client variables."""
        clients_file = os.getenv("OAUTH_CLIENTS_FILE")
        if clients_file:
            path = Path(clients_file)
            try:
                entries = json.loads(path.read_text(encoding="utf-8"))
            except OSError as e:
                raise ConfigError(f"Cannot read OAUTH_CLIENTS_FILE {path}: {e}") from e
            except json.JSONDecodeError as e:
                raise ConfigError(f"OAUTH_CLIENTS_FILE {path} is not valid JSON: {e}") from e
            return parse_client_entries(entries)

        inline = os.getenv("OAUTH_CLIENTS")
        if inline:
            try:
                entries = json.loads(inline)
            except json.JSONDecodeError as e:
                raise ConfigError(f"OAUTH_CLIENTS is not valid JSON: {e}") from e
            return parse_client_entries(entries)

        client_id = os.getenv("OAUTH_CLIENT_ID")
        if client_id:
            return parse_client_entries(
                [
                    {
                        "client_id": client_id,
                        "client_secret": os.getenv("OAUTH_CLIENT_SECRET"),
                        "redirect_uris": os.getenv("OAUTH_REDIRECT_URIS", ""),
                        "scopes": os.getenv("OAUTH_SCOPES", ""),
                    }
                ]
            )

        logger.warning("No OAuth clients configured")
        return []

    @property
    def oauth2(self) -> OAuth2Config:
        if self._oauth2_config is None:
            raise RuntimeError("Configuration not loaded")
        return self._oauth2_config

    @property
    def storage(self) -> StorageConfig:
        if self._storage_config is None:
            raise RuntimeError("Configuration not loaded")
        return self._storage_config

    @property
    def server(self) -> ServerConfig:
        if self._server_config is None:
            raise RuntimeError("Configuration not loaded")
        return self._server_config

    @property
    def clients(self) -> list[ClientConfig]:
        return list(self._clients)

    def validate_configuration(self) -> list[str]:
        """Return non-fatal configuration issues."""
        issues = []
        if not self._clients:
            issues.append("No OAuth clients configured; every token request will fail")
        if self.oauth2.refresh_token_lifetime < self.oauth2.access_token_lifetime:
            issues.append("Refresh token lifetime is shorter than access token lifetime")
        if self.storage.backend == "memory":
            issues.append("In-memory storage does not survive restarts or span processes")
        if not self.oauth2.issuer.startswith("https://"):
            issues.append(f"Issuer {self.oauth2.issuer} is not served over HTTPS")
        return issues

    def reload(self):
        """Reload configuration from environment variables."""
        self._load_configuration()


__all__ = [
    "ConfigError",
    "OAuth2Config",
    "StorageConfig",
    "ClientConfig",
    "ServerConfig",
    "ConfigManager",
    "parse_client_entries",
]
