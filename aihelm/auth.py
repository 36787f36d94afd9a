"""Token authentication for AI Helm.

Two kinds of credential are checked here: user session tokens, which move a
WebSocket connection off the rate-limited demo path, and admin keys, which
guard the configuration endpoints. Both are compared by SHA-256 hash; only
hashes appear in the configuration.
"""

import hashlib
import hmac
from typing import Dict, Optional


class AuthenticationError(Exception):
    """Raised when token validation fails."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(detail)


def hash_token(raw_token: str) -> str:
    """Compute the SHA-256 hash of a raw token.

    Use this to generate the hash value for config files::

        python -c "from aihelm.auth import hash_token; print(hash_token('your-token'))"

    Args:
        raw_token: The plaintext token.

    Returns:
        Hex-encoded SHA-256 digest.
    """
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def authenticate_token(
    token: Optional[str],
    known_hashes: Dict[str, str],
    kind: str = "token",
) -> str:
    """Validate a token and return the identity it belongs to.

    Args:
        token: The presented token (may be None).
        known_hashes: Mapping of identity -> sha256 hash from config.
        kind: What the token is called in error messages.

    Returns:
        The identity (user id or admin key name) for the token.

    Raises:
        AuthenticationError: If the token is missing or unknown.
    """
    if not token:
        raise AuthenticationError("Missing {}.".format(kind))

    incoming = hash_token(token)
    for identity, expected in known_hashes.items():
        if hmac.compare_digest(incoming, expected):
            return identity

    raise AuthenticationError("Invalid {}.".format(kind))
