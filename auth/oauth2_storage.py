"""
Storage layer for the OAuth 2.1 authorization engine.

The engine depends on a small key-value contract (``OAuth2StorageProvider``):

- ``connect()`` / ``disconnect()`` (idempotent)
- ``get(key)`` / ``set(key, value, ttl_seconds)`` / ``delete(key)``
- ``compare_and_set_used(key)``: the one atomic primitive, flipping a stored
  authorization code's ``used`` flag from false to true. Returns True only for
  the caller that performed the flip; a missing key returns False.
- ``scan_keys(prefix)`` and ``health_check()`` for maintenance and monitoring

Backends:
- ``InMemoryOAuth2Storage``: single-process, lock protected, periodic sweep
- ``RedisOAuth2Storage``: redis.asyncio with a Lua script for the atomic flip

``TimeoutStorage`` bounds every call of any backend so a slow or partitioned
store fails fast. ``OAuth2Store`` is the typed adapter the engines use: it owns
key namespacing and pydantic (de)serialization.
"""

import asyncio
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional, TypeVar

from pydantic import BaseModel, ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from .oauth2_audit import safe_token_id
from .oauth2_models import AccessToken, AuthorizationCode, RefreshTokenRecord

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class OAuth2StorageError(Exception):
    """OAuth 2.0 storage operation error."""
    pass


class StorageTimeoutError(OAuth2StorageError):
    """A storage call exceeded its time bound."""
    pass


class KeyNamespace:
    """Key naming conventions for OAuth data."""
    AUTHORIZATION_CODE = "code"
    ACCESS_TOKEN = "token"
    REFRESH_TOKEN = "refresh"


@dataclass
class StorageStats:
    """Counts of live OAuth entities."""
    client_count: int = 0
    token_count: int = 0
    refresh_token_count: int = 0
    authorization_code_count: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "clients": self.client_count,
            "tokens": self.token_count,
            "refresh_tokens": self.refresh_token_count,
            "authorization_codes": self.authorization_code_count,
        }


@dataclass
class HealthCheckResult:
    healthy: bool
    message: str
    response_time_ms: float = 0.0
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "message": self.message,
            "response_time_ms": round(self.response_time_ms, 2),
            "details": self.details,
        }


class OAuth2StorageProvider(ABC):
    """Key-value contract required of any storage backend."""

    name: str = "storage"

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def disconnect(self) -> None: ...

    @abstractmethod
    async def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a key; True if it existed."""

    @abstractmethod
    async def compare_and_set_used(self, key: str) -> bool:
        """Atomically flip ``used`` false -> true on the JSON record at ``key``."""

    @abstractmethod
    async def scan_keys(self, prefix: str) -> list[str]:
        """All live keys starting with ``prefix``."""

    @abstractmethod
    async def health_check(self) -> HealthCheckResult: ...


class InMemoryOAuth2Storage(OAuth2StorageProvider):
    """
    Thread-safe in-memory storage.

    Confined to a single process: use ``RedisOAuth2Storage`` when more than one
    worker serves the endpoints.
    """

    name = "memory"

    def __init__(self, cleanup_interval: float = 60.0):
        self._store: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._cleanup_interval = cleanup_interval
        self._cleanup_task: Optional[asyncio.Task] = None
        self._connected = False

    async def connect(self) -> None:
        if self._connected:
            return
        self._connected = True
        self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_worker())
        logger.info(f"In-memory OAuth storage connected, sweeping every {self._cleanup_interval}s")

    async def disconnect(self) -> None:
        if not self._connected:
            return
        self._connected = False
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        logger.info("In-memory OAuth storage disconnected")

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise OAuth2StorageError("Storage not connected. Call connect() first.")

    def _live_value(self, key: str, now: float) -> Optional[str]:
        # Caller holds the lock
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if now >= expires_at:
            del self._store[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        self._ensure_connected()
        with self._lock:
            return self._live_value(key, time.time())

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._ensure_connected()
        if ttl_seconds <= 0:
            raise OAuth2StorageError(f"Invalid TTL: {ttl_seconds} (must be > 0)")
        with self._lock:
            self._store[key] = (value, time.time() + ttl_seconds)

    async def delete(self, key: str) -> bool:
        self._ensure_connected()
        with self._lock:
            existed = self._live_value(key, time.time()) is not None
            self._store.pop(key, None)
            return existed

    async def compare_and_set_used(self, key: str) -> bool:
        self._ensure_connected()
        with self._lock:
            value = self._live_value(key, time.time())
            if value is None:
                return False
            record = json.loads(value)
            if record.get("used"):
                return False
            record["used"] = True
            _, expires_at = self._store[key]
            self._store[key] = (json.dumps(record), expires_at)
            return True

    async def scan_keys(self, prefix: str) -> list[str]:
        self._ensure_connected()
        now = time.time()
        with self._lock:
            return [k for k, (_, exp) in self._store.items() if k.startswith(prefix) and exp > now]

    async def health_check(self) -> HealthCheckResult:
        start = time.perf_counter()
        with self._lock:
            entries = len(self._store)
        return HealthCheckResult(
            healthy=self._connected,
            message="In-memory storage connected" if self._connected else "In-memory storage not connected",
            response_time_ms=(time.perf_counter() - start) * 1000,
            details={"entries": entries},
        )

    async def _cleanup_worker(self) -> None:
        """Periodically drop expired entries."""
        while True:
            await asyncio.sleep(self._cleanup_interval)
            self.cleanup_expired()

    def cleanup_expired(self) -> int:
        with self._lock:
            now = time.time()
            expired = [k for k, (_, exp) in self._store.items() if exp <= now]
            for key in expired:
                del self._store[key]
        if expired:
            logger.debug(f"Cleaned up {len(expired)} expired OAuth entries")
        return len(expired)


# Returns -1 when the key is missing, 0 when already used, 1 when this call flipped it.
# Rewrites the JSON text in place so the remaining TTL and every other field are untouched.
MARK_USED_SCRIPT = """
local data = redis.call('GET', KEYS[1])
if not data then
  return -1
end
local updated, n = string.gsub(data, '"used":false', '"used":true', 1)
if n == 0 then
  return 0
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl > 0 then
  redis.call('SET', KEYS[1], updated, 'PX', ttl)
else
  redis.call('SET', KEYS[1], updated)
end
return 1
"""


class RedisOAuth2Storage(OAuth2StorageProvider):
    """Redis-backed storage for multi-process deployments."""

    name = "redis"

    def __init__(
        self,
        url: Optional[str] = None,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        key_prefix: str = "oauth:",
        socket_timeout: float = 5.0,
        client: Optional[Redis] = None,
    ):
        self.url = url
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.key_prefix = key_prefix
        self.socket_timeout = socket_timeout
        self._client = client
        self._mark_used = None
        self._connected = False

    def _create_client(self) -> Redis:
        if self.url:
            return Redis.from_url(
                self.url,
                decode_responses=True,
                socket_timeout=self.socket_timeout,
                socket_connect_timeout=self.socket_timeout,
            )
        return Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )

    async def connect(self) -> None:
        if self._connected:
            return
        if self._client is None:
            self._client = self._create_client()
        try:
            await self._client.ping()
        except RedisError as e:
            raise OAuth2StorageError(f"Failed to connect to Redis: {e}") from e
        self._mark_used = self._client.register_script(MARK_USED_SCRIPT)
        self._connected = True
        logger.info(f"Connected to Redis OAuth storage (prefix={self.key_prefix!r})")

    async def disconnect(self) -> None:
        if not self._connected:
            return
        self._connected = False
        if self._client is not None:
            await self._client.aclose()
        logger.info("Redis OAuth storage disconnected")

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def _ensure_connected(self) -> Redis:
        if not self._connected or self._client is None:
            raise OAuth2StorageError("Redis client not connected. Call connect() first.")
        return self._client

    async def get(self, key: str) -> Optional[str]:
        client = self._ensure_connected()
        try:
            return await client.get(self._key(key))
        except RedisError as e:
            raise OAuth2StorageError(f"Redis GET failed: {e}") from e

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        client = self._ensure_connected()
        if ttl_seconds <= 0:
            raise OAuth2StorageError(f"Invalid TTL: {ttl_seconds} (must be > 0)")
        try:
            await client.set(self._key(key), value, ex=ttl_seconds)
        except RedisError as e:
            raise OAuth2StorageError(f"Redis SET failed: {e}") from e

    async def delete(self, key: str) -> bool:
        client = self._ensure_connected()
        try:
            return await client.delete(self._key(key)) > 0
        except RedisError as e:
            raise OAuth2StorageError(f"Redis DEL failed: {e}") from e

    async def compare_and_set_used(self, key: str) -> bool:
        self._ensure_connected()
        try:
            result = await self._mark_used(keys=[self._key(key)])
        except RedisError as e:
            raise OAuth2StorageError(f"Redis mark-used script failed: {e}") from e
        return int(result) == 1

    async def scan_keys(self, prefix: str) -> list[str]:
        client = self._ensure_connected()
        full_prefix = self._key(prefix)
        keys = []
        try:
            async for key in client.scan_iter(match=f"{full_prefix}*"):
                keys.append(key[len(self.key_prefix):])
        except RedisError as e:
            raise OAuth2StorageError(f"Redis SCAN failed: {e}") from e
        return keys

    async def health_check(self) -> HealthCheckResult:
        start = time.perf_counter()
        if not self._connected or self._client is None:
            return HealthCheckResult(healthy=False, message="Redis not connected")
        try:
            await self._client.ping()
        except RedisError as e:
            return HealthCheckResult(
                healthy=False,
                message=f"Redis ping failed: {e}",
                response_time_ms=(time.perf_counter() - start) * 1000,
            )
        return HealthCheckResult(
            healthy=True,
            message="Redis reachable",
            response_time_ms=(time.perf_counter() - start) * 1000,
            details={"key_prefix": self.key_prefix},
        )


class TimeoutStorage(OAuth2StorageProvider):
    """Bounds every call on a wrapped provider."""

    def __init__(self, inner: OAuth2StorageProvider, timeout: float):
        self.inner = inner
        self.timeout = timeout
        self.name = inner.name

    async def _bounded(self, operation: str, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"Storage {operation} exceeded {self.timeout}s on {self.name}")
            raise StorageTimeoutError(f"Storage {operation} timed out after {self.timeout}s") from e

    async def connect(self) -> None:
        await self._bounded("connect", self.inner.connect())

    async def disconnect(self) -> None:
        await self._bounded("disconnect", self.inner.disconnect())

    async def get(self, key: str) -> Optional[str]:
        return await self._bounded("get", self.inner.get(key))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._bounded("set", self.inner.set(key, value, ttl_seconds))

    async def delete(self, key: str) -> bool:
        return await self._bounded("delete", self.inner.delete(key))

    async def compare_and_set_used(self, key: str) -> bool:
        return await self._bounded("compare_and_set_used", self.inner.compare_and_set_used(key))

    async def scan_keys(self, prefix: str) -> list[str]:
        return await self._bounded("scan_keys", self.inner.scan_keys(prefix))

    async def health_check(self) -> HealthCheckResult:
        try:
            return await self._bounded("health_check", self.inner.health_check())
        except StorageTimeoutError as e:
            return HealthCheckResult(healthy=False, message=str(e))


class OAuth2Store:
    """Typed access to codes, access tokens and refresh-token mappings."""

    def __init__(self, provider: OAuth2StorageProvider):
        self.provider = provider

    @staticmethod
    def _key(namespace: str, identifier: str) -> str:
        return f"{namespace}:{identifier}"

    async def _load(self, key: str, model: type[ModelT]) -> Optional[ModelT]:
        raw = await self.provider.get(key)
        if raw is None:
            return None
        try:
            return model.model_validate_json(raw)
        except ValidationError as e:
            raise OAuth2StorageError(f"Corrupt {model.__name__} record") from e

    # Authorization codes

    async def set_authorization_code(self, code: AuthorizationCode, ttl: int) -> None:
        key = self._key(KeyNamespace.AUTHORIZATION_CODE, code.code)
        if await self.provider.get(key) is not None:
            raise OAuth2StorageError(f"Authorization code already exists: {safe_token_id(code.code)}")
        await self.provider.set(key, code.model_dump_json(), ttl)

    async def get_authorization_code(self, code: str) -> Optional[AuthorizationCode]:
        return await self._load(self._key(KeyNamespace.AUTHORIZATION_CODE, code), AuthorizationCode)

    async def delete_authorization_code(self, code: str) -> bool:
        return await self.provider.delete(self._key(KeyNamespace.AUTHORIZATION_CODE, code))

    async def mark_authorization_code_used(self, code: str) -> bool:
        return await self.provider.compare_and_set_used(self._key(KeyNamespace.AUTHORIZATION_CODE, code))

    # Access tokens

    async def set_access_token(self, token: AccessToken, ttl: int) -> None:
        await self.provider.set(self._key(KeyNamespace.ACCESS_TOKEN, token.token), token.model_dump_json(), ttl)

    async def get_access_token(self, token: str) -> Optional[AccessToken]:
        return await self._load(self._key(KeyNamespace.ACCESS_TOKEN, token), AccessToken)

    async def delete_access_token(self, token: str) -> bool:
        return await self.provider.delete(self._key(KeyNamespace.ACCESS_TOKEN, token))

    # Refresh tokens

    async def set_refresh_token(self, record: RefreshTokenRecord, ttl: int) -> None:
        key = self._key(KeyNamespace.REFRESH_TOKEN, record.refresh_token)
        await self.provider.set(key, record.model_dump_json(), ttl)

    async def get_refresh_token(self, refresh_token: str) -> Optional[RefreshTokenRecord]:
        return await self._load(self._key(KeyNamespace.REFRESH_TOKEN, refresh_token), RefreshTokenRecord)

    async def delete_refresh_token(self, refresh_token: str) -> bool:
        return await self.provider.delete(self._key(KeyNamespace.REFRESH_TOKEN, refresh_token))

    async def find_tokens_by_refresh_token(self, refresh_token: str) -> list[AccessToken]:
        """Access tokens currently reachable from a refresh-token mapping."""
        record = await self.get_refresh_token(refresh_token)
        if record is None:
            return []
        token = await self.get_access_token(record.access_token)
        if token is None or token.refresh_token != refresh_token:
            return []
        return [token]

    # Maintenance

    async def _ids(self, namespace: str) -> list[str]:
        prefix = f"{namespace}:"
        return [key[len(prefix):] for key in await self.provider.scan_keys(prefix)]

    async def list_authorization_codes(self) -> list[AuthorizationCode]:
        return [c for c in [await self.get_authorization_code(i) for i in await self._ids(KeyNamespace.AUTHORIZATION_CODE)] if c]

    async def list_access_tokens(self) -> list[AccessToken]:
        return [t for t in [await self.get_access_token(i) for i in await self._ids(KeyNamespace.ACCESS_TOKEN)] if t]

    async def list_refresh_tokens(self) -> list[RefreshTokenRecord]:
        return [r for r in [await self.get_refresh_token(i) for i in await self._ids(KeyNamespace.REFRESH_TOKEN)] if r]

    async def get_stats(self, client_count: int = 0) -> StorageStats:
        return StorageStats(
            client_count=client_count,
            token_count=len(await self._ids(KeyNamespace.ACCESS_TOKEN)),
            refresh_token_count=len(await self._ids(KeyNamespace.REFRESH_TOKEN)),
            authorization_code_count=len(await self._ids(KeyNamespace.AUTHORIZATION_CODE)),
        )


def create_storage_provider(
    backend: str = "memory",
    timeout: Optional[float] = None,
    **redis_options: Any,
) -> OAuth2StorageProvider:
    """Build a storage provider, bounded by ``timeout`` when given."""
    backend = backend.lower()
    if backend == "memory":
        provider: OAuth2StorageProvider = InMemoryOAuth2Storage()
    elif backend == "redis":
        provider = RedisOAuth2Storage(**redis_options)
    else:
        raise OAuth2StorageError(f"Unknown storage backend: {backend}")
    if timeout:
        provider = TimeoutStorage(provider, timeout)
    return provider


__all__ = [
    "OAuth2StorageError",
    "StorageTimeoutError",
    "OAuth2StorageProvider",
    "InMemoryOAuth2Storage",
    "RedisOAuth2Storage",
    "TimeoutStorage",
    "OAuth2Store",
    "StorageStats",
    "HealthCheckResult",
    "KeyNamespace",
    "MARK_USED_SCRIPT",
    "create_storage_provider",
]
