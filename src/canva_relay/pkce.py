"""PKCE material and opaque identifiers (RFC 7636)."""

import base64
import hashlib
import secrets


SESSION_PREFIX = "sess_"
CODE_PREFIX = "code_"

# 64 random bytes -> 86 character verifier, inside the 43..128 range
_VERIFIER_BYTES = 64
# 24 random bytes = 192 bits
_ID_BYTES = 24


def _base64url_no_pad(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


def generate_code_verifier() -> str:
    return _base64url_no_pad(secrets.token_bytes(_VERIFIER_BYTES))


def code_challenge_s256(verifier: str) -> str:
    return _base64url_no_pad(hashlib.sha256(verifier.encode("ascii")).digest())


def random_id(prefix: str = "") -> str:
    """
    Opaque identifier: `prefix` followed by 192 random bits, URL-safe.

    Session ids and redemption codes use different prefixes so the two
    key spaces never overlap in the store.
    """
    return prefix + _base64url_no_pad(secrets.token_bytes(_ID_BYTES))
