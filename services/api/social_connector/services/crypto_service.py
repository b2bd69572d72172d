"""Per-tenant credential encryption using AES-256-GCM (cryptography)."""

import base64
import binascii
import logging
import os
import threading

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from social_connector.config import Settings
from social_connector.errors import ConfigurationError, DecryptionError

logger = logging.getLogger(__name__)

KEY_SIZE = 32  # AES-256
NONCE_SIZE = 12  # 96-bit GCM nonce
TAG_SIZE = 16


class CryptoService:
    """Authenticated encryption of small secret strings.

    Each tenant gets its own key, derived with PBKDF2-HMAC-SHA256 from
    ``tenant_id + master_secret`` and a fixed application salt. Blobs are
    ``base64(nonce || ciphertext || tag)`` with a fresh random nonce per call.
    """

    def __init__(self, settings: Settings) -> None:
        master_secret = settings.encryption_master_secret.get_secret_value()
        if not master_secret:
            raise ConfigurationError("ENCRYPTION_MASTER_SECRET is not set; credential encryption is unavailable")
        self._master_secret = master_secret
        self._salt = settings.encryption_salt.encode("utf-8")
        self._iterations = settings.encryption_kdf_iterations
        self._keys: dict[str, bytes] = {}
        self._keys_lock = threading.Lock()

    def derive_key(self, tenant_id: str) -> bytes:
        """Return the 256-bit key for ``tenant_id`` (derived once, then cached)."""
        with self._keys_lock:
            key = self._keys.get(tenant_id)
        if key is not None:
            return key

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=self._salt,
            iterations=self._iterations,
        )
        key = kdf.derive((tenant_id + self._master_secret).encode("utf-8"))
        with self._keys_lock:
            self._keys[tenant_id] = key
        return key

    def encrypt(self, tenant_id: str, plaintext: str) -> str:
        """Encrypt a string and return a base64 blob (nonce prepended)."""
        nonce = os.urandom(NONCE_SIZE)
        sealed = AESGCM(self.derive_key(tenant_id)).encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, tenant_id: str, blob: str) -> str:
        """Decrypt a blob produced by :meth:`encrypt`.

        Raises DecryptionError on malformed input, a failed tag check, or a
        wrong key. Never returns partial plaintext.
        """
        try:
            raw = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError, TypeError) as e:
            raise DecryptionError("Encrypted value is not valid base64") from e

        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionError("Encrypted value is truncated")

        nonce, sealed = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
        try:
            plaintext = AESGCM(self.derive_key(tenant_id)).decrypt(nonce, sealed, None)
            return plaintext.decode("utf-8")
        except (InvalidTag, UnicodeDecodeError) as e:
            logger.error("Decryption failed for tenant=%s: authentication tag mismatch", tenant_id)
            raise DecryptionError() from e


_crypto_service: CryptoService | None = None


def get_crypto_service(settings: Settings) -> CryptoService:
    global _crypto_service
    if _crypto_service is None:
        _crypto_service = CryptoService(settings)
    return _crypto_service
