"""
AES-256-GCM encryption for secrets stored at rest.

Each call to ``encrypt`` uses a fresh random nonce which is prepended to the
ciphertext, and the whole payload is base64 encoded so it can live in a TEXT
column. Decryption authenticates the payload: tampered data or the wrong key
raises ``DecryptionFailed`` and never yields an empty or altered plaintext.
"""

import base64
import binascii
import logging
import os
from pathlib import Path
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from tokenkeeper.auth.errors import (
    CiphertextTooShort,
    DecryptionFailed,
    InvalidKeySize,
)

logger = logging.getLogger(__name__)

KEY_SIZE = 32
NONCE_SIZE = 12

ENV_ENCRYPTION_KEY = "TOKEN_ENCRYPTION_KEY"
DEFAULT_KEY_FILE_NAME = ".tokenkeeper-key"


class Encryptor:
    """Encrypt and decrypt individual UTF-8 secrets with AES-256-GCM."""

    def __init__(self, key: bytes):
        if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
            raise InvalidKeySize(len(key) if key is not None else None)
        # Copy to avoid external mutation
        self._key = bytes(key)
        self._aead = AESGCM(self._key)

    @classmethod
    def from_base64(cls, encoded_key: str) -> "Encryptor":
        """Create an Encryptor from a standard base64-encoded key."""
        try:
            key = base64.b64decode(encoded_key.strip(), validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidKeySize() from e
        return cls(key)

    def encrypt(self, plaintext: str) -> str:
        if plaintext == "":
            return ""

        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        if ciphertext == "":
            return ""

        try:
            payload = base64.b64decode(ciphertext, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionFailed("decryption failed: malformed ciphertext") from e

        if len(payload) < NONCE_SIZE:
            raise CiphertextTooShort()

        nonce, sealed = payload[:NONCE_SIZE], payload[NONCE_SIZE:]
        try:
            plaintext = self._aead.decrypt(nonce, sealed, None)
        except InvalidTag as e:
            raise DecryptionFailed() from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionFailed("decryption failed: plaintext is not UTF-8") from e


def generate_key() -> str:
    """
    Generate a new random 32-byte key.

    Returns:
        Base64-encoded key suitable for the TOKEN_ENCRYPTION_KEY env var
    """
    return base64.b64encode(os.urandom(KEY_SIZE)).decode("ascii")


def default_key_file() -> Path:
    return Path.home() / DEFAULT_KEY_FILE_NAME


def _decode_key(value: Union[str, bytes], source: str) -> bytes:
    if isinstance(value, (bytes, bytearray)) and len(value) == KEY_SIZE:
        return bytes(value)

    if isinstance(value, (bytes, bytearray)):
        value = value.decode("ascii", errors="replace")

    try:
        key = base64.b64decode(value.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidKeySize() from e

    if len(key) != KEY_SIZE:
        logger.error(f"Encryption key from {source} has invalid size {len(key)}")
        raise InvalidKeySize(len(key))
    return key


def resolve_encryption_key(
    explicit: Optional[Union[str, bytes]] = None,
    key_file: Optional[Union[str, Path]] = None,
) -> bytes:
    """
    Resolve the credential encryption key.

    Priority order:
    1. Explicitly provided key (base64 string or 32 raw bytes)
    2. TOKEN_ENCRYPTION_KEY environment variable
    3. Key file (default ~/.tokenkeeper-key), generated with owner-only
       permissions if it does not exist yet

    Returns:
        32 raw key bytes

    Raises:
        InvalidKeySize: If the resolved key is not 32 bytes
        OSError: If the key file cannot be read or created
    """
    if explicit:
        return _decode_key(explicit, "explicit configuration")

    env_key = os.getenv(ENV_ENCRYPTION_KEY)
    if env_key:
        return _decode_key(env_key, ENV_ENCRYPTION_KEY)

    path = Path(key_file) if key_file else default_key_file()
    if path.exists():
        return _decode_key(path.read_text(), str(path))

    new_key = generate_key()
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(new_key)

    logger.info(f"Generated new encryption key and saved to {path}")
    return _decode_key(new_key, str(path))
