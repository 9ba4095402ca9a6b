"""Verification of signed deliveries from the queue service."""

import base64
import hashlib
import hmac
import logging

import jwt

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "upstash-signature"
ISSUER = "Upstash"


class AuthError(Exception):
    """Raised when a delivery's signature is missing or invalid."""

    pass


def body_hash(body: bytes) -> str:
    """Base64url SHA-256 of a request body, without padding."""
    digest = hashlib.sha256(body).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


class SignatureVerifier:
    """Checks delivery signatures against the current and next signing keys.

    A signature is an HS256 JWT whose ``body`` claim is the hash of the raw
    request body and whose ``sub`` claim is the destination URL.
    """

    def __init__(
        self,
        current_signing_key: str,
        next_signing_key: str = "",
        clock_tolerance: int = 0,
    ):
        if not current_signing_key:
            raise ValueError("current_signing_key is required")
        if clock_tolerance < 0:
            raise ValueError("clock_tolerance must be non-negative")

        self._keys = [k for k in (current_signing_key, next_signing_key) if k]
        self._leeway = clock_tolerance

    def verify(self, signature: str, body: bytes | str, url: str | None = None) -> bool:
        """Return True if any configured key validates the signature."""
        if not signature:
            return False
        if isinstance(body, str):
            body = body.encode("utf-8")

        return any(self._verify_with_key(key, signature, body, url) for key in self._keys)

    def require(self, signature: str | None, body: bytes | str, url: str | None = None) -> None:
        """Raise AuthError unless the signature is valid."""
        if not signature:
            raise AuthError("Missing signature")
        if not self.verify(signature, body, url):
            raise AuthError("Invalid signature")

    def _verify_with_key(self, key: str, signature: str, body: bytes, url: str | None) -> bool:
        try:
            claims = jwt.decode(
                signature,
                key,
                algorithms=["HS256"],
                issuer=ISSUER,
                leeway=self._leeway,
                options={"require": ["iss", "body"]},
            )
        except jwt.InvalidTokenError as e:
            logger.debug(f"Signature rejected: {e}")
            return False

        if url is not None and claims.get("sub") != url:
            logger.debug(f"Signature subject mismatch: {claims.get('sub')!r} != {url!r}")
            return False

        claimed = str(claims["body"]).rstrip("=")
        return hmac.compare_digest(claimed, body_hash(body))
