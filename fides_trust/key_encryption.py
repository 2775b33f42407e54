"""AES-256-GCM encryption of Ed25519 seeds at rest."""

import base64
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .constants import AES_GCM_IV_LENGTH, AES_GCM_TAG_LENGTH, ED25519_KEY_LENGTH
from .errors import ConfigurationMissingError, InvalidKeyFormatError
from .schemas import EncryptedPrivateKey

logger = logging.getLogger(__name__)


class KeyEncryptor:
    """Encrypts and decrypts 32-byte seeds under a 32-byte master key."""

    def __init__(self, master_key: bytes):
        if not isinstance(master_key, (bytes, bytearray)) or len(master_key) != 32:
            raise ConfigurationMissingError("Master key must be exactly 32 bytes.")
        self._aead = AESGCM(bytes(master_key))

    def encrypt(self, seed: bytes) -> EncryptedPrivateKey:
        if len(seed) != ED25519_KEY_LENGTH:
            raise InvalidKeyFormatError(f"Invalid seed length: expected {ED25519_KEY_LENGTH} bytes, got {len(seed)}")

        iv = os.urandom(AES_GCM_IV_LENGTH)
        # AESGCM appends the tag to the ciphertext
        sealed = self._aead.encrypt(iv, bytes(seed), None)
        ciphertext, tag = sealed[:-AES_GCM_TAG_LENGTH], sealed[-AES_GCM_TAG_LENGTH:]
        return EncryptedPrivateKey(
            ivB64=base64.b64encode(iv).decode('ascii'),
            ctB64=base64.b64encode(ciphertext).decode('ascii'),
            tagB64=base64.b64encode(tag).decode('ascii'),
        )

    def decrypt(self, encrypted: EncryptedPrivateKey) -> bytes:
        """
        Decrypts an encrypted seed.

        Raises:
            InvalidKeyFormatError: On bad IV/tag/seed length, undecodable base64,
                                   or a failed authentication tag check.
        """
        try:
            iv = base64.b64decode(encrypted.ivB64)
            ciphertext = base64.b64decode(encrypted.ctB64)
            tag = base64.b64decode(encrypted.tagB64)
        except ValueError as e:
            raise InvalidKeyFormatError(f"Encrypted private key is not valid base64: {e}")

        if len(iv) != AES_GCM_IV_LENGTH:
            raise InvalidKeyFormatError(f"Invalid IV length: expected {AES_GCM_IV_LENGTH} bytes, got {len(iv)}")
        if len(tag) != AES_GCM_TAG_LENGTH:
            raise InvalidKeyFormatError(
                f"Invalid authentication tag length: expected {AES_GCM_TAG_LENGTH} bytes, got {len(tag)}"
            )

        try:
            seed = self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag:
            logger.error("Private key decryption failed: authentication tag mismatch")
            raise InvalidKeyFormatError("Private key decryption failed: authentication tag mismatch.")

        if len(seed) != ED25519_KEY_LENGTH:
            raise InvalidKeyFormatError(
                f"Invalid decrypted seed length: expected {ED25519_KEY_LENGTH} bytes, got {len(seed)}"
            )
        return seed
