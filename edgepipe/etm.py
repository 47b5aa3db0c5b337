"""Encrypt-then-MAC authenticated encryption.

Implements AEAD_AES_256_CBC_HMAC_SHA_512: AES-256 in CBC mode with PKCS#7
padding, authenticated by HMAC-SHA-512 truncated to 256 bits. The sealed
message is ``nonce || ciphertext || tag``.
"""

from __future__ import annotations

import hashlib
import hmac
import struct
from typing import Callable, Optional

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

_AES_BLOCK_SIZE = 16
_DATA_LEN_SIZE = 8


class AuthenticationError(ValueError):
    """Raised when a sealed message fails authentication."""


def _pkcs7_pad(data: bytes, block_size: int) -> bytes:
    pad_len = block_size - (len(data) % block_size)
    return data + bytes([pad_len]) * pad_len


def _pkcs7_unpad(data: bytes) -> bytes:
    if not data:
        return data
    return data[: len(data) - data[-1]]


class EtmAead:
    """An AES-CBC cipher combined with a truncated HMAC over the ciphertext."""

    def __init__(
        self,
        key: bytes,
        *,
        enc_key_size: int,
        mac_key_size: int,
        tag_size: int,
        mac_alg: Callable[[], "hashlib._Hash"],
    ) -> None:
        expected = enc_key_size + mac_key_size
        if key is None or len(key) != expected:
            raise ValueError(f"etm: key must be {expected} bytes long")
        key = bytes(key)
        self._enc_key = key[:enc_key_size]
        self._mac_key = key[len(key) - mac_key_size :]
        self._tag_size = tag_size
        self._mac_alg = mac_alg
        self._block_size = _AES_BLOCK_SIZE
        self._pad_size = _AES_BLOCK_SIZE
        self._nonce_size = _AES_BLOCK_SIZE

    @property
    def nonce_size(self) -> int:
        """Size in bytes of the nonce (the CBC initialisation vector)."""
        return self._nonce_size

    @property
    def overhead(self) -> int:
        """Largest number of bytes sealing adds to a plaintext."""
        return self._pad_size + self._tag_size + _DATA_LEN_SIZE + self._nonce_size

    def _tag(self, data: bytes, sealed: bytes) -> bytes:
        mac = hmac.new(self._mac_key, digestmod=self._mac_alg)
        mac.update(data)
        mac.update(sealed)
        mac.update(struct.pack(">Q", len(data) * 8))
        return mac.digest()[: self._tag_size]

    def seal(self, nonce: bytes, plaintext: bytes, data: Optional[bytes] = None) -> bytes:
        """Encrypt and authenticate ``plaintext`` with associated ``data``."""
        data = bytes(data or b"")
        nonce = bytes(nonce)
        encryptor = Cipher(algorithms.AES(self._enc_key), modes.CBC(nonce)).encryptor()
        padded = _pkcs7_pad(bytes(plaintext), self._block_size)
        sealed = nonce + encryptor.update(padded) + encryptor.finalize()
        return sealed + self._tag(data, sealed)

    def open(
        self, nonce: Optional[bytes], ciphertext: bytes, data: Optional[bytes] = None
    ) -> bytes:
        """Verify and decrypt a sealed message.

        When ``nonce`` is None it is taken from the front of the message.
        Raises AuthenticationError if the message was altered.
        """
        data = bytes(data or b"")
        ciphertext = bytes(ciphertext)
        if len(ciphertext) < self._tag_size + self._nonce_size:
            raise AuthenticationError("message authentication failed")
        sealed = ciphertext[: len(ciphertext) - self._tag_size]
        received_tag = ciphertext[len(ciphertext) - self._tag_size :]
        expected_tag = self._tag(data, sealed)
        if nonce is None:
            nonce = sealed[: self._nonce_size]
        nonce = bytes(nonce)

        if not hmac.compare_digest(received_tag, expected_tag):
            raise AuthenticationError("message authentication failed")

        body = sealed[len(nonce) :]
        if len(body) % self._block_size:
            raise AuthenticationError("message authentication failed")
        decryptor = Cipher(algorithms.AES(self._enc_key), modes.CBC(nonce)).decryptor()
        padded = decryptor.update(body) + decryptor.finalize()
        return _pkcs7_unpad(padded)


def new_aes256_sha512(key: bytes) -> EtmAead:
    """Return an AEAD_AES_256_CBC_HMAC_SHA_512 instance for a 64-byte key."""
    return EtmAead(
        key,
        enc_key_size=32,
        mac_key_size=32,
        tag_size=32,
        mac_alg=hashlib.sha512,
    )