import base64
import binascii
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from token_gateway.errors import TokenDecryptionError

_PREFIX = "v1."
_NONCE_LEN = 12


def base64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def base64url_decode(data: str) -> bytes:
    pad = -len(data) % 4
    if pad:
        data += "=" * pad
    return base64.urlsafe_b64decode(data.encode("utf-8"))


class TokenCipher:
    """AES-256-GCM encryption for tokens at rest.

    Ciphertext format: ``v1.`` + base64url(nonce || ciphertext+tag). A fresh
    random nonce is drawn for every call to :meth:`encrypt`.
    """

    def __init__(self, key_b64: str):
        try:
            raw = base64.b64decode(key_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError("ENCRYPTION_KEY must be base64 encoded") from e
        if len(raw) < 32:
            raise ValueError("ENCRYPTION_KEY must decode to at least 32 bytes")
        self._aesgcm = AESGCM(raw if len(raw) == 32 else hashlib.sha256(raw).digest())

    def encrypt(self, plain: str) -> str:
        nonce = os.urandom(_NONCE_LEN)
        ct = self._aesgcm.encrypt(nonce, plain.encode("utf-8"), None)
        return _PREFIX + base64url_encode(nonce + ct)

    def decrypt(self, blob: str) -> str:
        """Raises TokenDecryptionError on a wrong key or tampered data."""
        if not blob or not blob.startswith(_PREFIX):
            raise TokenDecryptionError("Token decryption failed: unknown format")
        try:
            raw = base64url_decode(blob[len(_PREFIX):])
            nonce, ct = raw[:_NONCE_LEN], raw[_NONCE_LEN:]
            return self._aesgcm.decrypt(nonce, ct, None).decode("utf-8")
        except (InvalidTag, binascii.Error, ValueError) as e:
            raise TokenDecryptionError("Token decryption failed") from e


def generate_key() -> str:
    """A fresh base64 key suitable for ENCRYPTION_KEY."""
    return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")
