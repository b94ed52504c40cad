"""
Crypto utilities — artifact hashing & AES-256-GCM sealing.

Content hash:
  `sha256_hex` is always computed over the *plaintext* PDF, before any
  encryption, and stored on the report and document rows. It is the
  tamper-evidence anchor, independent of whether the artifact is sealed.

Sealing:
  `ArtifactCipher.seal` uses AES-256-GCM (cryptography's AESGCM) with a
  fresh random 96-bit nonce per call and a 128-bit tag. Stored layout:

      nonce (12 bytes) || ciphertext || tag (16 bytes)

  The key-encrypting-key comes from the CRYPTO_KEK environment variable
  (config REPORT_ENCRYPTION_KEY). It must be exactly 32 bytes once UTF-8
  encoded. It is loaded once in create_app() and never derived from content.

  WARNING: generate the key with a CSPRNG and keep it in the secret store;
  `validate_kek_strength` rejects obviously weak values.
"""

import hashlib
import hmac
import logging
import os
import re

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.core.exceptions import IntegrityMismatchError

logger = logging.getLogger(__name__)

KEK_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16

_ALLOWED_KEK_CHARS = re.compile(r"^[A-Za-z0-9!@#$%^&*()_+\-=\[\]{};':\"|,.<>/?`~]+$")
_WEAK_PATTERNS = ("password", "12345678", "abcdefgh", "qwerty", "00000000")


class EncryptionUnavailableError(RuntimeError):
    """A sealed artifact was met but no encryption key is configured."""


def sha256_hex(data: bytes) -> str:
    """Return the lowercase hex SHA-256 digest of *data*."""
    return hashlib.sha256(data).hexdigest()


class ArtifactCipher:
    """AES-256-GCM sealing of stored artifacts."""

    def __init__(self, key: bytes) -> None:
        if len(key) != KEK_LENGTH:
            raise ValueError(f"Key must be {KEK_LENGTH} bytes, got {len(key)}")
        self._aead = AESGCM(key)

    def seal(self, plaintext: bytes) -> bytes:
        """Encrypt *plaintext* and return ``nonce || ciphertext || tag``."""
        nonce = os.urandom(NONCE_LENGTH)
        return nonce + self._aead.encrypt(nonce, plaintext, None)

    def unseal(self, blob: bytes) -> bytes:
        """Reverse of `seal`.

        Raises:
            IntegrityMismatchError: blob too short, or the tag does not
                authenticate (tampered ciphertext or wrong key).
        """
        if len(blob) < NONCE_LENGTH + TAG_LENGTH:
            raise IntegrityMismatchError("Sealed artifact is truncated")
        nonce, body = blob[:NONCE_LENGTH], blob[NONCE_LENGTH:]
        try:
            return self._aead.decrypt(nonce, body, None)
        except InvalidTag as exc:
            raise IntegrityMismatchError("Sealed artifact failed authentication") from exc


def load_artifact_cipher(raw_key) -> ArtifactCipher | None:
    """Build the process-wide cipher from the configured key.

    Returns None when the key is absent or not exactly 32 bytes; the caller
    decides whether that degraded (plaintext) mode is allowed.
    """
    if not raw_key:
        return None
    key = raw_key.encode("utf-8") if isinstance(raw_key, str) else bytes(raw_key)
    if len(key) != KEK_LENGTH:
        logger.warning("Encryption key has length %d, expected %d; ignoring it",
                       len(key), KEK_LENGTH)
        return None
    return ArtifactCipher(key)


def recompute_artifact_hash(
    stored: bytes,
    *,
    encrypted: bool,
    cipher: ArtifactCipher | None = None,
) -> str | None:
    """Plaintext SHA-256 of a stored artifact, or None if it cannot be unsealed.

    Raises:
        EncryptionUnavailableError: the artifact is sealed but no cipher is
            configured. Verification is then impossible, which is not tampering.
    """
    if not encrypted:
        return sha256_hex(stored)
    if cipher is None:
        raise EncryptionUnavailableError("Artifact is encrypted but no encryption key is configured")
    try:
        return sha256_hex(cipher.unseal(stored))
    except IntegrityMismatchError:
        return None


def verify_artifact(
    stored: bytes,
    expected_hash: str,
    *,
    encrypted: bool,
    cipher: ArtifactCipher | None = None,
) -> bool:
    """True when the stored artifact still hashes to *expected_hash*.

    Sealed artifacts are unsealed first; a failed authentication tag counts
    as a mismatch.
    """
    computed = recompute_artifact_hash(stored, encrypted=encrypted, cipher=cipher)
    if computed is None:
        return False
    return hmac.compare_digest(computed, (expected_hash or "").lower())


def validate_kek_strength(raw_key: str | None) -> list[str]:
    """Return a list of problems with *raw_key* (empty list = acceptable)."""
    if not raw_key:
        return ["Key is not set"]

    errors = []
    if len(raw_key) != KEK_LENGTH:
        errors.append(f"Length is {len(raw_key)}, expected {KEK_LENGTH}")
    if not re.search(r"[A-Z]", raw_key):
        errors.append("Missing uppercase letters")
    if not re.search(r"[a-z]", raw_key):
        errors.append("Missing lowercase letters")
    if not re.search(r"[0-9]", raw_key):
        errors.append("Missing numbers")
    if not _ALLOWED_KEK_CHARS.match(raw_key):
        errors.append("Contains invalid characters")

    unique_chars = len(set(raw_key))
    if unique_chars < 10:
        errors.append(f"Only {unique_chars} unique characters (minimum 10)")

    half = len(raw_key) // 2
    if half and raw_key[:half] == raw_key[half:]:
        errors.append("Key is a repeated pattern")

    lower = raw_key.lower()
    for pattern in _WEAK_PATTERNS:
        if pattern in lower:
            errors.append(f'Contains weak pattern: "{pattern}"')

    return errors
