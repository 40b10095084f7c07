"""Unit tests for per-chunk authenticated encryption."""

import pytest

from shardfarm.crypto import (
    NONCE_SIZE, TAG_SIZE, generate_key, encode_key, decode_key,
    encrypt_chunk, decrypt_chunk, encrypted_size
)
from shardfarm.exceptions import (
    AuthenticationFailedError, ConfigurationError, InvalidKeyError
)


class TestEncryptDecrypt:
    """Test the seal/open round trip."""

    @pytest.mark.parametrize("plaintext", [b'', b'x', b'chunk data' * 1000])
    def test_round_trip(self, plaintext):
        key = generate_key()

        buffer = encrypt_chunk(plaintext, key)

        assert len(buffer) == encrypted_size(len(plaintext))
        assert decrypt_chunk(buffer, key) == plaintext

    def test_aes_round_trip(self):
        key = generate_key()

        buffer = encrypt_chunk(b'secret', key, 'AES-256')

        assert decrypt_chunk(buffer, key, 'AES-256') == b'secret'

    def test_fresh_nonce_per_call(self):
        key = generate_key()

        first = encrypt_chunk(b'same plaintext', key)
        second = encrypt_chunk(b'same plaintext', key)

        assert first != second
        assert first[:NONCE_SIZE] != second[:NONCE_SIZE]

    def test_wrong_key_fails(self):
        buffer = encrypt_chunk(b'secret', generate_key())

        with pytest.raises(AuthenticationFailedError):
            decrypt_chunk(buffer, generate_key())

    def test_tampered_ciphertext_fails(self):
        key = generate_key()
        buffer = bytearray(encrypt_chunk(b'secret data', key))
        buffer[NONCE_SIZE + 2] ^= 0x01

        with pytest.raises(AuthenticationFailedError):
            decrypt_chunk(bytes(buffer), key)

    def test_tampered_tag_fails(self):
        key = generate_key()
        buffer = bytearray(encrypt_chunk(b'secret data', key))
        buffer[-1] ^= 0x80

        with pytest.raises(AuthenticationFailedError):
            decrypt_chunk(bytes(buffer), key)

    def test_short_buffer_fails(self):
        with pytest.raises(AuthenticationFailedError):
            decrypt_chunk(b'short', generate_key())

    def test_nonce_only_buffer_fails(self):
        with pytest.raises(AuthenticationFailedError):
            decrypt_chunk(b'\x00' * (NONCE_SIZE + TAG_SIZE - 1), generate_key())


class TestKeys:
    """Test key generation and validation."""

    def test_generated_keys_are_distinct(self):
        assert len(generate_key()) == 32
        assert generate_key() != generate_key()

    @pytest.mark.parametrize("length", [0, 16, 31, 33])
    def test_bad_key_length_on_encrypt(self, length):
        with pytest.raises(InvalidKeyError) as exc_info:
            encrypt_chunk(b'data', b'k' * length)

        assert exc_info.value.actual == length
        assert exc_info.value.kind == 'config_error'

    def test_bad_key_length_on_decrypt(self):
        with pytest.raises(InvalidKeyError):
            decrypt_chunk(b'\x00' * 64, b'k' * 16)

    def test_hex_round_trip(self):
        key = generate_key()

        assert decode_key(encode_key(key)) == key

    @pytest.mark.parametrize("value", ["", "zz", "abcd"])
    def test_decode_rejects_bad_keys(self, value):
        with pytest.raises(InvalidKeyError):
            decode_key(value)

    def test_unknown_algorithm(self):
        with pytest.raises(ConfigurationError):
            encrypt_chunk(b'data', generate_key(), 'DES')
