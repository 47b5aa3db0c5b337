import os

import pytest

from edgepipe.etm import AuthenticationError, EtmAead, new_aes256_sha512

# Test vector for AEAD_AES_256_CBC_HMAC_SHA_512 from the CBC-HMAC AEAD draft.
KEY = bytes(range(0x20, 0x40)) + bytes(range(0x20))

PLAINTEXT = (
    b"A cipher system must not be required to be secret, and it must be able "
    b"to fall into the hands of the enemy without inconvenience"
)

ASSOCIATED = b"The second principle of Auguste Kerckhoffs"

IV = bytes.fromhex("1af38c2dc2b96ffdd86694092341bc04")

CIPHERTEXT = bytes.fromhex(
    "4affaaadb78c31c5da4b1b590d10ffbd3dd8d5d302423526912da037ecbcc7bd"
    "822c301dd67c373bccb584ad3e9279c2e6d12a1374b77f077553df829410446b"
    "36ebd97066296ae6427ea75c2e0846a11a09ccf5370dc80bfecbad28c73f09b3"
    "a3b75e662a2594410ae496b2e2e6609e31e6e02cc837f053d21f37ff4f51950b"
    "be2638d09dd7a4930930806d0703b1f6"
)

TAG = bytes.fromhex(
    "4dd3b4c088a7f45c216839645b2012bf2e6269a8c56a816dbc1b267761955bc5"
)

EXPECTED = IV + CIPHERTEXT + TAG


def test_overhead():
    aead = new_aes256_sha512(bytes(64))
    assert aead.overhead == 72


def test_nonce_size():
    aead = new_aes256_sha512(bytes(64))
    assert aead.nonce_size == 16


def test_sealed_length_for_block_multiple():
    aead = new_aes256_sha512(bytes(64))
    assert isinstance(aead, EtmAead)
    sealed = aead.seal(bytes(16), bytes(100), None)
    # nonce + 100 bytes padded to 112 + 32-byte tag
    assert len(sealed) == 16 + 112 + 32


@pytest.mark.parametrize("key", [None, b"", bytes(32), bytes(65)])
def test_bad_key_sizes(key):
    with pytest.raises(ValueError, match="etm: key must be 64 bytes long"):
        new_aes256_sha512(key)


def test_bad_message():
    aead = new_aes256_sha512(bytes(64))
    output = bytearray(aead.seal(bytes(aead.nonce_size), bytes(100), None))
    output[91] ^= 3
    with pytest.raises(AuthenticationError):
        aead.open(bytes(aead.nonce_size), bytes(output), None)


def test_wrong_associated_data_fails():
    aead = new_aes256_sha512(KEY)
    sealed = aead.seal(IV, PLAINTEXT, ASSOCIATED)
    with pytest.raises(AuthenticationError, match="message authentication failed"):
        aead.open(IV, sealed, b"other data")


def test_known_vector():
    aead = new_aes256_sha512(KEY)
    sealed = aead.seal(IV, PLAINTEXT, ASSOCIATED)
    assert sealed == EXPECTED

    opened = aead.open(IV, sealed, ASSOCIATED)
    assert opened == PLAINTEXT


def test_sealed_length_within_overhead():
    aead = new_aes256_sha512(KEY)
    sealed = aead.seal(IV, PLAINTEXT, ASSOCIATED)
    assert len(sealed) - len(PLAINTEXT) <= aead.overhead


def test_round_trip_with_nonce_from_message():
    key = bytes(range(64, 128))
    plaintext = b"hidden message body"
    data = b"visible header"

    aead = new_aes256_sha512(key)
    nonce = os.urandom(aead.nonce_size)
    ciphertext = aead.seal(nonce, plaintext, data)

    assert aead.open(None, ciphertext, data) == b"hidden message body"


def test_round_trip_empty_plaintext():
    aead = new_aes256_sha512(bytes(range(64)))
    sealed = aead.seal(bytes(16), b"", b"")
    assert len(sealed) == 16 + 16 + 32
    assert aead.open(None, sealed, b"") == b""


def test_truncated_message_fails():
    aead = new_aes256_sha512(bytes(64))
    with pytest.raises(AuthenticationError):
        aead.open(None, bytes(10), None)