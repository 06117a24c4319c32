"""
Credential vault for per-tenant Shopify secrets.

Two ciphertext formats are understood:

- authenticated: ``salt:nonce:tag:ciphertext`` (lowercase hex), AES-256-GCM with
  a scrypt key derived from the configured secret and a fresh salt per call.
- legacy: ``iv:ciphertext`` (lowercase hex), AES-256-CBC with a scrypt key over a
  fixed salt. Decrypt-only, no integrity check. Rows written before the switch
  to GCM still use it.

New values are always written in the authenticated format.
"""

import enum
import logging
import os
import re
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from flask import current_app

from config import VaultConfig
from errors import DecryptionError

logger = logging.getLogger(__name__)

SALT_BYTES = 16
NONCE_BYTES = 12
TAG_BYTES = 16
KEY_BYTES = 32
LEGACY_SALT = b"salt"

_HEX = re.compile(r'^(?:[0-9a-f]{2})*$')


class CipherFormat(enum.Enum):
    LEGACY = 'legacy'
    AUTHENTICATED = 'authenticated'


@dataclass(frozen=True)
class LegacyCiphertext:
    iv: bytes
    data: bytes
    format = CipherFormat.LEGACY


@dataclass(frozen=True)
class AuthenticatedCiphertext:
    salt: bytes
    nonce: bytes
    tag: bytes
    data: bytes
    format = CipherFormat.AUTHENTICATED

    def serialize(self) -> str:
        return ':'.join(part.hex() for part in (self.salt, self.nonce, self.tag, self.data))


def _unhex(part: str) -> bytes:
    if not _HEX.fullmatch(part):
        raise DecryptionError("Malformed ciphertext: expected lowercase hex")
    return bytes.fromhex(part)


def parse_ciphertext(value: str):
    """Split a stored value into its typed representation."""
    if not isinstance(value, str) or not value:
        raise DecryptionError("Malformed ciphertext: empty value")
    parts = value.split(':')
    if len(parts) == 2:
        iv, data = (_unhex(p) for p in parts)
        if len(iv) != 16 or len(data) % 16:
            raise DecryptionError("Malformed legacy ciphertext")
        return LegacyCiphertext(iv=iv, data=data)
    if len(parts) == 4:
        salt, nonce, tag, data = (_unhex(p) for p in parts)
        if len(salt) != SALT_BYTES or len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
            raise DecryptionError("Malformed ciphertext: bad salt, nonce or tag length")
        return AuthenticatedCiphertext(salt=salt, nonce=nonce, tag=tag, data=data)
    raise DecryptionError(f"Malformed ciphertext: {len(parts)} segments")


class Vault:
    def __init__(self, config: VaultConfig):
        self._secret = config.secret.encode('utf-8')

    def _derive_key(self, salt: bytes) -> bytes:
        return Scrypt(salt=salt, length=KEY_BYTES, n=2 ** 14, r=8, p=1).derive(self._secret)

    def encrypt(self, plaintext: str) -> str:
        salt = os.urandom(SALT_BYTES)
        nonce = os.urandom(NONCE_BYTES)
        sealed = AESGCM(self._derive_key(salt)).encrypt(nonce, plaintext.encode('utf-8'), None)
        # AESGCM appends the tag to the ciphertext
        return AuthenticatedCiphertext(
            salt=salt, nonce=nonce, tag=sealed[-TAG_BYTES:], data=sealed[:-TAG_BYTES]
        ).serialize()

    def decrypt(self, ciphertext: str) -> str:
        parsed = parse_ciphertext(ciphertext)
        if parsed.format is CipherFormat.AUTHENTICATED:
            return self._decrypt_authenticated(parsed)
        return self._decrypt_legacy(parsed)

    def _decrypt_authenticated(self, parsed: AuthenticatedCiphertext) -> str:
        try:
            plain = AESGCM(self._derive_key(parsed.salt)).decrypt(parsed.nonce, parsed.data + parsed.tag, None)
        except InvalidTag:
            raise DecryptionError("Authentication tag check failed")
        return self._to_text(plain)

    def _decrypt_legacy(self, parsed: LegacyCiphertext) -> str:
        logger.debug("Decrypting legacy CBC credential")
        decryptor = Cipher(algorithms.AES(self._derive_key(LEGACY_SALT)), modes.CBC(parsed.iv)).decryptor()
        padded = decryptor.update(parsed.data) + decryptor.finalize()
        unpadder = padding.PKCS7(128).unpadder()
        try:
            plain = unpadder.update(padded) + unpadder.finalize()
        except ValueError:
            raise DecryptionError("Legacy ciphertext has invalid padding")
        return self._to_text(plain)

    @staticmethod
    def _to_text(plain: bytes) -> str:
        try:
            return plain.decode('utf-8')
        except UnicodeDecodeError:
            raise DecryptionError("Decrypted value is not valid UTF-8")


def get_vault() -> Vault:
    """Vault bound to the running app (built once by create_app)."""
    return current_app.extensions['credential_vault']


def encrypt(plaintext: str) -> str:
    return get_vault().encrypt(plaintext)


def decrypt(ciphertext: str) -> str:
    return get_vault().decrypt(ciphertext)
