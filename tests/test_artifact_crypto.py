"""
Integrity & encryption layer tests.

Covers ``app/utils/crypto.py`` (hashing, AES-256-GCM sealing, key checks),
``app/services/artifact_storage.py`` and the signed access handles in
``app/services/jwt_service.py``.
"""

import time
from types import SimpleNamespace

import jwt
import pytest

from app.core.exceptions import IntegrityMismatchError
from app.services.artifact_storage import LocalArtifactStore, StorageError, build_storage_path
from app.services.jwt_service import decode_artifact_token, generate_artifact_token
from app.utils.crypto import (
    ArtifactCipher,
    EncryptionUnavailableError,
    load_artifact_cipher,
    recompute_artifact_hash,
    sha256_hex,
    validate_kek_strength,
    verify_artifact,
)

KEY = "Kq7!vR2#pX9$mT4&wZ6*bN1@cF8^hJ3%"
OTHER_KEY = "Zr4#nB8!qW2$eT6&yU1*iO5@pA9^sD3%"
DOCUMENT = b"%PDF-1.4 monthly report body"


def _cipher(key=KEY) -> ArtifactCipher:
    return ArtifactCipher(key.encode("utf-8"))


class TestHashing:
    def test_sha256_is_lowercase_hex(self):
        digest = sha256_hex(b"abc")
        assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"

    def test_plaintext_verification(self):
        assert verify_artifact(DOCUMENT, sha256_hex(DOCUMENT), encrypted=False)
        assert not verify_artifact(DOCUMENT + b" ", sha256_hex(DOCUMENT), encrypted=False)

    def test_expected_hash_case_insensitive(self):
        assert verify_artifact(DOCUMENT, sha256_hex(DOCUMENT).upper(), encrypted=False)


class TestSealing:
    def test_round_trip(self):
        cipher = _cipher()
        sealed = cipher.seal(DOCUMENT)
        assert sealed != DOCUMENT
        assert cipher.unseal(sealed) == DOCUMENT

    def test_nonce_is_fresh_per_seal(self):
        cipher = _cipher()
        assert cipher.seal(DOCUMENT) != cipher.seal(DOCUMENT)

    def test_sealed_layout_adds_nonce_and_tag(self):
        assert len(_cipher().seal(DOCUMENT)) == len(DOCUMENT) + 12 + 16

    def test_flipped_bit_fails_authentication(self):
        cipher = _cipher()
        sealed = bytearray(cipher.seal(DOCUMENT))
        sealed[20] ^= 0x01
        with pytest.raises(IntegrityMismatchError):
            cipher.unseal(bytes(sealed))

    def test_wrong_key_fails_authentication(self):
        sealed = _cipher().seal(DOCUMENT)
        with pytest.raises(IntegrityMismatchError):
            _cipher(OTHER_KEY).unseal(sealed)

    def test_truncated_blob(self):
        with pytest.raises(IntegrityMismatchError):
            _cipher().unseal(b"short")

    def test_verify_sealed_artifact(self):
        cipher = _cipher()
        sealed = cipher.seal(DOCUMENT)
        assert verify_artifact(sealed, sha256_hex(DOCUMENT), encrypted=True, cipher=cipher)

        tampered = sealed[:-1] + bytes([sealed[-1] ^ 0xFF])
        assert not verify_artifact(tampered, sha256_hex(DOCUMENT), encrypted=True, cipher=cipher)
        assert recompute_artifact_hash(tampered, encrypted=True, cipher=cipher) is None

    def test_sealed_artifact_without_cipher(self):
        sealed = _cipher().seal(DOCUMENT)
        with pytest.raises(EncryptionUnavailableError):
            recompute_artifact_hash(sealed, encrypted=True, cipher=None)


class TestKeyHandling:
    def test_load_valid_key(self):
        assert isinstance(load_artifact_cipher(KEY), ArtifactCipher)

    @pytest.mark.parametrize("raw", [None, "", "too-short", KEY + "x"])
    def test_load_invalid_key_is_degraded(self, raw):
        assert load_artifact_cipher(raw) is None

    def test_cipher_rejects_wrong_length(self):
        with pytest.raises(ValueError):
            ArtifactCipher(b"0" * 16)

    def test_strong_key_passes(self):
        assert validate_kek_strength(KEY) == []

    def test_missing_key(self):
        assert validate_kek_strength(None) == ["Key is not set"]

    def test_weak_key_problems_listed(self):
        problems = validate_kek_strength("password" * 4)
        assert any("uppercase" in p for p in problems)
        assert any("numbers" in p for p in problems)
        assert any("repeated" in p for p in problems)
        assert any("password" in p for p in problems)


class TestArtifactStore:
    def _report(self, org="org-1"):
        return SimpleNamespace(
            organization_id=org, project_id="proj-1", beneficiary_user_id="scholar-1",
            period_key="2026-03",
        )

    def test_storage_path_layout(self):
        path = build_storage_path(self._report(), "0123abcd-4567-89ef-0000-000000000000", encrypted=True)
        assert path == "monthly-reports/org-1/proj-1/scholar-1/2026-03/relatorio_oficial_v0123abcd4567.pdf.enc"

    def test_storage_path_without_org(self):
        path = build_storage_path(self._report(org=None), "abc", encrypted=False)
        assert path.startswith("monthly-reports/no-org/")
        assert path.endswith(".pdf")

    def test_write_read_delete(self, tmp_path):
        store = LocalArtifactStore(tmp_path)
        store.write("a/b/doc.pdf", DOCUMENT)
        assert store.exists("a/b/doc.pdf")
        assert store.read("a/b/doc.pdf") == DOCUMENT
        assert store.delete("a/b/doc.pdf") is True
        assert store.delete("a/b/doc.pdf") is False

    def test_never_overwrites(self, tmp_path):
        store = LocalArtifactStore(tmp_path)
        store.write("doc.pdf", DOCUMENT)
        with pytest.raises(StorageError):
            store.write("doc.pdf", b"other")
        assert store.read("doc.pdf") == DOCUMENT

    def test_rejects_path_traversal(self, tmp_path):
        store = LocalArtifactStore(tmp_path / "root")
        with pytest.raises(StorageError):
            store.write("../escape.pdf", DOCUMENT)

    def test_missing_object(self, tmp_path):
        with pytest.raises(StorageError):
            LocalArtifactStore(tmp_path).read("nope.pdf")


class TestAccessTokens:
    def test_round_trip_claims(self):
        token = generate_artifact_token("doc-1", "rep-1", "download", "manager-1")
        claims = decode_artifact_token(token)
        assert claims["sub"] == "doc-1"
        assert claims["rid"] == "rep-1"
        assert claims["act"] == "download"
        assert claims["uid"] == "manager-1"
        assert claims["exp"] - claims["iat"] == 900

    def test_expired_token(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "ARTIFACT_URL_EXPIRES", -1)
        token = generate_artifact_token("doc-1", "rep-1")
        with pytest.raises(jwt.ExpiredSignatureError):
            decode_artifact_token(token)

    def test_foreign_signature_rejected(self):
        forged = jwt.encode(
            {"sub": "doc-1", "rid": "rep-1", "type": "artifact", "exp": int(time.time()) + 60},
            "some-other-secret", algorithm="HS256",
        )
        with pytest.raises(jwt.InvalidTokenError):
            decode_artifact_token(forged)

    def test_wrong_token_type_rejected(self, app):
        other = jwt.encode(
            {"sub": "1", "type": "access", "exp": int(time.time()) + 60},
            app.config["ARTIFACT_URL_SECRET"], algorithm="HS256",
        )
        with pytest.raises(jwt.InvalidTokenError):
            decode_artifact_token(other)
