"""Tests for token authentication.

Covers:
- hash_token determinism and output format
- authenticate_token with valid, missing, and invalid tokens
- The credential kind appears in error messages
"""

import pytest

from aihelm.auth import AuthenticationError, authenticate_token, hash_token


class TestHashToken:
    """Tests for the hash_token helper."""

    def test_deterministic(self) -> None:
        assert hash_token("test") == hash_token("test")

    def test_returns_hex_sha256(self) -> None:
        result = hash_token("anything")
        assert len(result) == 64
        int(result, 16)  # Should not raise

    def test_different_inputs_different_hashes(self) -> None:
        assert hash_token("token-a") != hash_token("token-b")


class TestAuthenticateToken:
    """Tests for the authenticate_token function."""

    def test_valid_token_returns_identity(self) -> None:
        token_hash = hash_token("my-secret")
        assert authenticate_token("my-secret", {"user-1": token_hash}) == "user-1"

    def test_missing_token_raises(self) -> None:
        with pytest.raises(AuthenticationError, match="Missing token"):
            authenticate_token(None, {"user-1": "abc"})

    def test_empty_token_raises(self) -> None:
        with pytest.raises(AuthenticationError, match="Missing"):
            authenticate_token("", {"user-1": "abc"})

    def test_invalid_token_raises(self) -> None:
        token_hash = hash_token("correct-token")
        with pytest.raises(AuthenticationError, match="Invalid token"):
            authenticate_token("wrong-token", {"user-1": token_hash})

    def test_kind_in_message(self) -> None:
        with pytest.raises(AuthenticationError) as exc_info:
            authenticate_token("nope", {}, kind="API key")
        assert exc_info.value.detail == "Invalid API key."

    def test_multiple_identities_finds_match(self) -> None:
        hashes = {
            "admin-a": hash_token("secret-a"),
            "admin-b": hash_token("secret-b"),
        }
        assert authenticate_token("secret-b", hashes) == "admin-b"
