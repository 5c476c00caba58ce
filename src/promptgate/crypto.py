"""AES-256-GCM credential decryption.

Ciphertexts use the ``iv:authTag:encrypted`` layout (each part hex encoded)
written by the provider settings service, so stored provider keys can be read
without re-encryption.
"""

import os
from typing import Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .errors import CredentialError

_IV_BYTES = 16


class CredentialDecryptor(Protocol):
    def decrypt(self, ciphertext: str) -> str: ...


def _load_key(key_hex: str) -> bytes:
    try:
        key = bytes.fromhex(key_hex.strip())
    except ValueError as exc:
        raise ValueError("encryption key must be hex encoded") from exc
    if len(key) != 32:
        raise ValueError("encryption key must be 64 hex characters (32 bytes)")
    return key


class AesGcmDecryptor:
    def __init__(self, key_hex: str) -> None:
        self._key = _load_key(key_hex)

    def __repr__(self) -> str:
        return "AesGcmDecryptor(key=***)"

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(_IV_BYTES)
        encryptor = Cipher(algorithms.AES(self._key), modes.GCM(iv)).encryptor()
        encrypted = encryptor.update(plaintext.encode("utf-8")) + encryptor.finalize()
        return f"{iv.hex()}:{encryptor.tag.hex()}:{encrypted.hex()}"

    def decrypt(self, ciphertext: str) -> str:
        parts = ciphertext.split(":")
        if len(parts) != 3 or not all(parts):
            raise CredentialError("Invalid ciphertext format")
        try:
            iv, auth_tag, encrypted = (bytes.fromhex(part) for part in parts)
            decryptor = Cipher(
                algorithms.AES(self._key), modes.GCM(iv, auth_tag)
            ).decryptor()
            decrypted = decryptor.update(encrypted) + decryptor.finalize()
            return decrypted.decode("utf-8")
        except (ValueError, InvalidTag, UnicodeDecodeError) as exc:
            raise CredentialError("Failed to decrypt provider credential") from exc
