"""
Token utilities for the authentication routes.

Session tokens are JWTs encrypted with a key derived from the auth secret
(JWE, ``dir`` + ``A256GCM``), so their claims are neither readable nor
forgeable by the browser. The same secret signs CSRF tokens and hashes
magic-link verification tokens before they are stored.
"""

import base64
import hashlib
import hmac
import json
import secrets
import time
from typing import Any, Dict, Optional, Tuple
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from jwcrypto import jwk, jwt
from jwcrypto.common import JWException, base64url_encode

ENCRYPTION_KEY_INFO = b"st.shipfa.starter session token encryption key"


def derive_encryption_key(secret: str) -> jwk.JWK:
    """Derive the 256-bit symmetric session key from the auth secret with HKDF-SHA256."""
    key_material = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"",
        info=ENCRYPTION_KEY_INFO,
    ).derive(secret.encode("utf-8"))
    return jwk.JWK(kty="oct", k=base64url_encode(key_material))


def encode_session_token(
    secret: str,
    claims: Dict[str, Any],
    max_age: int,
    now: Optional[int] = None,
) -> str:
    """
    Encrypt session claims into a compact JWE.

    ``iat``, ``exp`` and ``jti`` are always set here; any value supplied in
    ``claims`` for those keys is replaced.

    Args:
        secret: Auth secret
        claims: Token claims (``sub``, ``email``, callback additions, ...)
        max_age: Seconds until the token expires
        now: Issue time, defaults to the current time

    Returns:
        str: Compact serialized JWE
    """
    if now is None:
        now = int(time.time())

    payload = dict(claims)
    payload["iat"] = now
    payload["exp"] = now + max_age
    payload["jti"] = secrets.token_urlsafe(16)

    token = jwt.JWT(header={"alg": "dir", "enc": "A256GCM"}, claims=payload)
    token.make_encrypted_token(derive_encryption_key(secret))
    return token.serialize()


def decode_session_token(secret: str, raw: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Decrypt a session token.

    Returns None when the token is missing, malformed, encrypted with another
    key, or expired.
    """
    if not raw:
        return None

    try:
        token = jwt.JWT(
            jwt=raw,
            key=derive_encryption_key(secret),
            expected_type="JWE",
        )
        claims: Dict[str, Any] = json.loads(token.claims)
    except (JWException, ValueError, TypeError):
        return None

    return claims


def create_csrf_token(secret: str) -> Tuple[str, str]:
    """
    Create a CSRF token for the double-submit cookie pattern.

    Returns:
        Tuple[str, str]: (token, cookie_value) where cookie_value is
        ``token|sha256(token + secret)``
    """
    token = secrets.token_hex(32)
    return token, f"{token}|{_csrf_hash(secret, token)}"


def verify_csrf_token(
    secret: str, cookie_value: Optional[str], submitted: Optional[str]
) -> bool:
    """Check a submitted CSRF token against the signed CSRF cookie."""
    if not cookie_value or not submitted or "|" not in cookie_value:
        return False

    token, token_hash = cookie_value.split("|", 1)
    if not hmac.compare_digest(_csrf_hash(secret, token), token_hash):
        return False

    return hmac.compare_digest(token.encode("utf-8"), submitted.encode("utf-8"))


def csrf_token_from_cookie(secret: str, cookie_value: Optional[str]) -> Optional[str]:
    """Return the token part of a valid CSRF cookie, or None."""
    if not cookie_value or "|" not in cookie_value:
        return None
    token, token_hash = cookie_value.split("|", 1)
    if not hmac.compare_digest(_csrf_hash(secret, token), token_hash):
        return None
    return token


def _csrf_hash(secret: str, token: str) -> str:
    return hashlib.sha256(f"{token}{secret}".encode("utf-8")).hexdigest()


def hash_verification_token(secret: str, token: str) -> str:
    """Hash a magic-link token before it is stored or looked up."""
    return hashlib.sha256(f"{token}{secret}".encode("utf-8")).hexdigest()


def generate_pkce_verifier() -> Tuple[str, str]:
    """
    Generate PKCE (Proof Key for Code Exchange) verifier and challenge.

    Returns:
        Tuple[str, str]: (pkce_verifier, pkce_challenge) using the S256 method
    """
    pkce_token = secrets.token_urlsafe(64)

    hashed = hashlib.sha256(pkce_token.encode("ascii")).digest()
    encoded = base64.urlsafe_b64encode(hashed)
    pkce_challenge = encoded.decode("ascii").rstrip("=")
    return (pkce_token, pkce_challenge)
