"""
Chiffrement authentifié des chunks.

Chaque chunk est scellé indépendamment avec un nonce aléatoire frais.
Format d'un chunk chiffré: nonce (12 bytes) + ciphertext + tag (16 bytes).
"""

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from .config import KEY_SIZE, SUPPORTED_CIPHERS
from .exceptions import (
    ConfigurationError, InvalidKeyError, AuthenticationFailedError
)

NONCE_SIZE = 12
TAG_SIZE = 16


def generate_key() -> bytes:
    """Génère une clé symétrique aléatoire de 32 bytes, une par publication."""
    return os.urandom(KEY_SIZE)


def encode_key(key: bytes) -> str:
    """Encode une clé en hexadécimal pour le manifeste."""
    return key.hex()


def decode_key(key_hex: str) -> bytes:
    """
    Décode une clé hexadécimale.

    Raises:
        InvalidKeyError: Si la clé est absente, mal encodée ou de mauvaise longueur
    """
    if not key_hex:
        raise InvalidKeyError('Missing encryption key')
    try:
        key = bytes.fromhex(key_hex)
    except ValueError as e:
        raise InvalidKeyError('Invalid encryption key (must be hex)') from e
    _ensure_key_bytes(key)
    return key


def _ensure_key_bytes(key: bytes) -> None:
    if len(key) != KEY_SIZE:
        raise InvalidKeyError(
            f'Wrong key length ({len(key)} bytes), expected {KEY_SIZE} bytes',
            expected=KEY_SIZE,
            actual=len(key)
        )


def _cipher(key: bytes, algorithm: str):
    if algorithm == 'AES-256':
        return AESGCM(key)
    if algorithm == 'ChaCha20':
        return ChaCha20Poly1305(key)
    raise ConfigurationError('Unsupported algorithm', {
        'algorithm': algorithm, 'supported': '/'.join(SUPPORTED_CIPHERS)
    })


def encrypt_chunk(plaintext: bytes, key: bytes, algorithm: str = 'ChaCha20') -> bytes:
    """
    Chiffre un chunk.

    Deux appels avec le même texte clair et la même clé produisent des
    sorties différentes (nonce aléatoire).

    Args:
        plaintext: Données en clair (peut être vide)
        key: Clé de 32 bytes
        algorithm: 'ChaCha20' ou 'AES-256'

    Returns:
        nonce + ciphertext + tag

    Raises:
        InvalidKeyError: Si la clé n'a pas la bonne longueur
    """
    _ensure_key_bytes(key)
    cipher = _cipher(key, algorithm)
    nonce = os.urandom(NONCE_SIZE)
    return nonce + cipher.encrypt(nonce, plaintext, None)


def decrypt_chunk(buffer: bytes, key: bytes, algorithm: str = 'ChaCha20') -> bytes:
    """
    Déchiffre un chunk produit par encrypt_chunk.

    Aucun texte clair partiel n'est retourné: soit le tag est valide et le
    chunk complet est rendu, soit une erreur est levée.

    Raises:
        InvalidKeyError: Si la clé n'a pas la bonne longueur
        AuthenticationFailedError: Si le buffer est trop court, altéré,
            ou si la clé est mauvaise
    """
    _ensure_key_bytes(key)
    if len(buffer) < NONCE_SIZE:
        raise AuthenticationFailedError('Encrypted chunk too short', {
            'size': len(buffer), 'min_size': NONCE_SIZE
        })
    cipher = _cipher(key, algorithm)
    nonce = buffer[:NONCE_SIZE]
    ct = buffer[NONCE_SIZE:]
    try:
        return cipher.decrypt(nonce, ct, None)
    except InvalidTag as e:
        raise AuthenticationFailedError('Chunk authentication failed') from e


def encrypted_size(plaintext_size: int) -> int:
    """
    Taille d'un chunk chiffré.

    Example:
        >>> encrypted_size(100)
        128
    """
    return plaintext_size + NONCE_SIZE + TAG_SIZE
