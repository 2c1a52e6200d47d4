"""
PKCE (Proof Key for Code Exchange, RFC 7636) for the authorization engine.

Only the S256 method is accepted. The challenge is captured at authorization
time and never changes; the verifier is presented once, at redemption.
"""

import base64
import hashlib
import hmac
import secrets
from typing import Optional


def challenge_from(code_verifier: str) -> str:
    """BASE64URL(SHA256(code_verifier)) without padding."""
    digest = hashlib.sha256(code_verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def validate_pkce(code_verifier: Optional[str], code_challenge: Optional[str]) -> bool:
    """Check a submitted verifier against the stored challenge."""
    if not code_verifier or not code_challenge:
        return False
    expected = challenge_from(code_verifier)
    return hmac.compare_digest(expected.encode("ascii"), code_challenge.encode("utf-8"))


def generate_code_verifier(nbytes: int = 32) -> str:
    """Random verifier from the unreserved alphabet (43 chars for 32 bytes)."""
    return secrets.token_urlsafe(nbytes)


def generate_pkce_pair() -> tuple[str, str]:
    verifier = generate_code_verifier()
    return verifier, challenge_from(verifier)


__all__ = ["challenge_from", "validate_pkce", "generate_code_verifier", "generate_pkce_pair"]
