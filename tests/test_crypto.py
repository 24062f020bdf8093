"""Evidence digests, canonical encoding and Ed25519 keys."""

import pytest

from agritrust.core.canonical import canonical_hash, canonical_size, canonicalize
from agritrust.core.crypto import (
    EVIDENCE_DIGEST_ALGORITHM,
    Ed25519KeyManager,
    evidence_digest,
)
from agritrust.core.exceptions import ConfigurationError, SignatureError
from agritrust.core.identity import Identity, Role

from helpers.settlement_doubles import EVIDENCE


class TestEvidenceDigest:

    def test_deterministic(self):
        assert evidence_digest(EVIDENCE) == evidence_digest(bytes(EVIDENCE))

    def test_is_lowercase_sha256_hex(self):
        digest = evidence_digest(EVIDENCE)
        assert EVIDENCE_DIGEST_ALGORITHM == "sha256"
        assert len(digest) == 64
        assert digest == digest.lower()

    def test_single_bit_flip_changes_digest(self):
        flipped = bytearray(EVIDENCE)
        flipped[len(flipped) // 2] ^= 0x01
        assert evidence_digest(bytes(flipped)) != evidence_digest(EVIDENCE)

    def test_empty_input_has_digest(self):
        assert evidence_digest(b"") == (
            "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
        )

    def test_text_refused(self):
        with pytest.raises(TypeError):
            evidence_digest("not bytes")


class TestCanonical:

    def test_key_order_irrelevant(self):
        assert canonicalize({"b": 1, "a": "x"}) == canonicalize({"a": "x", "b": 1})

    def test_hash_and_size(self):
        obj = {"projectId": "proj-1", "amount": "58500"}
        assert len(canonical_hash(obj)) == 64
        assert canonical_size(obj) == len(canonicalize(obj))


class TestKeys:

    def test_sign_and_verify(self):
        key = Ed25519KeyManager.generate()
        sig = key.sign(b"payload")
        assert len(sig) == 86
        assert key.verify(b"payload", sig)
        assert not key.verify(b"payload!", sig)

    def test_verify_detached_never_raises(self):
        assert not Ed25519KeyManager.verify_detached(b"x", "!!!", "00" * 32)
        assert not Ed25519KeyManager.verify_detached(b"x", "", "00" * 32)
        assert not Ed25519KeyManager.verify_detached(b"x", "abc", "short")

    def test_save_and_reload(self, tmp_path):
        key  = Ed25519KeyManager.generate()
        path = tmp_path / "keys" / "operator.pem"
        key.save(path)
        assert Ed25519KeyManager.from_file(path).public_key_hex == key.public_key_hex

    def test_load_or_generate_is_stable(self, tmp_path):
        path  = tmp_path / "verifier.pem"
        first = Ed25519KeyManager.load_or_generate(path)
        again = Ed25519KeyManager.load_or_generate(path)
        assert first.public_key_hex == again.public_key_hex

    def test_missing_key_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Ed25519KeyManager.from_file(tmp_path / "absent.pem")

    def test_garbage_key_file(self, tmp_path):
        path = tmp_path / "bad.pem"
        path.write_text("not a key")
        with pytest.raises(ValueError):
            Ed25519KeyManager.from_file(path)


class TestIdentity:

    def test_generated_identity_address_is_public_key(self):
        ident = Identity.generate(Role.VERIFIER, name="notary")
        assert ident.address == ident.key.public_key_hex
        assert ident.can_sign
        assert ident.label == "notary"

    def test_payee_without_key_cannot_sign(self):
        payee = Identity(role=Role.CONTRIBUTOR, address="rInvestorA")
        assert not payee.can_sign
        with pytest.raises(SignatureError):
            payee.signing_key()

    def test_identity_needs_address_or_key(self):
        with pytest.raises(ConfigurationError):
            Identity(role=Role.OPERATOR)

    def test_role_coerced_from_string(self):
        assert Identity(role="treasury", address="rTreasury").role is Role.TREASURY
