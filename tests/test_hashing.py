"""Unit tests for the argon2id credential hasher."""

import pytest

from authkeep.service.hashing import CredentialHasher


class TestCredentialHasher:
    """Tests for hashing and verifying passwords."""

    def test_hash_is_argon2id_and_not_plaintext(self, fast_hasher):
        """Digests use the argon2id encoding and never contain the password."""
        digest = fast_hasher.hash("Correct-Horse1!")

        assert digest.startswith("$argon2id$")
        assert "Correct-Horse1!" not in digest
        assert CredentialHasher.algorithm == "argon2id"

    def test_same_password_produces_different_hashes(self, fast_hasher):
        """Salting makes every digest unique."""
        assert fast_hasher.hash("Correct-Horse1!") != fast_hasher.hash("Correct-Horse1!")

    def test_verify_accepts_matching_password(self, fast_hasher):
        digest = fast_hasher.hash("Correct-Horse1!")
        assert fast_hasher.verify("Correct-Horse1!", digest) is True

    def test_verify_rejects_wrong_password(self, fast_hasher):
        digest = fast_hasher.hash("Correct-Horse1!")
        assert fast_hasher.verify("Wrong-Horse1!", digest) is False

    @pytest.mark.parametrize("digest", [None, "", "not-a-hash", "$argon2id$v=19$broken"])
    def test_verify_unusable_digest_returns_false(self, fast_hasher, digest):
        """Missing or malformed digests never raise."""
        assert fast_hasher.verify("Correct-Horse1!", digest) is False
