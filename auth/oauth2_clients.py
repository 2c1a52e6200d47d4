"""
Client registry for the authorization engine.

Clients are provisioned from configuration at startup and never change
afterwards. Secrets are stored only as salted PBKDF2-SHA256 hashes and are
checked with a constant-time verifier; an unknown client id costs the same
amount of work as a wrong secret so the response shape and timing do not
reveal which client ids exist.
"""

import base64
import logging
import secrets
from collections.abc import Iterable
from typing import Optional

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .oauth2_errors import InvalidClientError
from .oauth2_models import ClientRecord

logger = logging.getLogger(__name__)

HASH_SCHEME = "pbkdf2_sha256"
DEFAULT_ITERATIONS = 100_000
SALT_BYTES = 16


def _kdf(salt: bytes, iterations: int) -> PBKDF2HMAC:
    return PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _unb64(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def hash_client_secret(secret: str, iterations: int = DEFAULT_ITERATIONS) -> str:
    """Hash a client secret as ``pbkdf2_sha256$<iterations>$<salt>$<digest>``."""
    salt = secrets.token_bytes(SALT_BYTES)
    digest = _kdf(salt, iterations).derive(secret.encode("utf-8"))
    return f"{HASH_SCHEME}${iterations}${_b64(salt)}${_b64(digest)}"


def verify_client_secret(secret: str, secret_hash: str) -> bool:
    """Constant-time check of ``secret`` against a stored hash. Never raises."""
    try:
        scheme, iterations, salt, digest = secret_hash.split("$")
        if scheme != HASH_SCHEME:
            return False
        _kdf(_unb64(salt), int(iterations)).verify(secret.encode("utf-8"), _unb64(digest))
        return True
    except InvalidKey:
        return False
    except (ValueError, TypeError):
        logger.warning("Malformed client secret hash encountered")
        return False


class ClientRegistry:
    """
    Read-mostly registry of provisioned clients.

    Loaded once at startup; the engines only ever read from it.
    """

    def __init__(self, clients: Iterable[ClientRecord] = ()):
        self._clients: dict[str, ClientRecord] = {}
        # Burned on unknown ids so authenticate() does equal work either way
        self._dummy_hash = hash_client_secret(secrets.token_urlsafe(16), iterations=DEFAULT_ITERATIONS)
        for client in clients:
            self.register(client)

    def register(self, client: ClientRecord) -> str:
        """Provision a client. Client ids are unique and immutable."""
        if client.client_id in self._clients:
            raise InvalidClientError("Client already exists")
        self._clients[client.client_id] = client
        logger.info(f"Provisioned OAuth client {client.client_id} with scopes {sorted(client.scopes)}")
        return client.client_id

    def get(self, client_id: Optional[str]) -> Optional[ClientRecord]:
        if not client_id:
            return None
        return self._clients.get(client_id)

    def authenticate(self, client_id: Optional[str], secret: Optional[str]) -> bool:
        """True only for a known client presenting its secret. Never raises."""
        client = self.get(client_id)
        if client is None or secret is None:
            verify_client_secret(secret or "", self._dummy_hash)
            return False
        return verify_client_secret(secret, client.secret_hash)

    def is_redirect_allowed(self, client_id: Optional[str], redirect_uri: Optional[str]) -> bool:
        client = self.get(client_id)
        if client is None or not redirect_uri:
            return False
        return client.supports_redirect_uri(redirect_uri)

    def are_scopes_allowed(self, client_id: Optional[str], scopes: list[str]) -> bool:
        client = self.get(client_id)
        if client is None:
            return False
        return client.supports_scopes(scopes)

    def all_scopes(self) -> list[str]:
        """Union of every client's scopes, for discovery metadata."""
        scopes: set[str] = set()
        for client in self._clients.values():
            scopes.update(client.scopes)
        return sorted(scopes)

    def __contains__(self, client_id: str) -> bool:
        return client_id in self._clients

    def __len__(self) -> int:
        return len(self._clients)


__all__ = [
    "ClientRegistry",
    "hash_client_secret",
    "verify_client_secret",
]
