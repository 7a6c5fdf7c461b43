"""
Cryptographic Primitives for End-to-End Encryption

This module provides the foundational cryptographic operations used by the
identity, session and message layers. Everything goes through a
CryptoProvider instance so that tests can substitute deterministic
randomness.
"""

import base64
import binascii
import os

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

RSA_KEY_SIZE = 2048
RSA_PUBLIC_EXPONENT = 65537
SESSION_KEY_SIZE = 32  # AES-256
NONCE_SIZE = 12  # 96-bit GCM nonce
TAG_SIZE = 16


def oaep_padding() -> padding.OAEP:
    """RSA-OAEP with SHA-256 for both the hash and MGF1"""
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None
    )


class CryptoProvider:
    """
    Source of randomness and raw cryptographic operations.

    Passed into every component constructor instead of being reached for
    globally. Subclasses may override random_bytes() to make nonce and key
    generation reproducible.
    """

    def random_bytes(self, length: int) -> bytes:
        """
        Return cryptographically secure random bytes.

        Args:
            length: Number of bytes

        Returns:
            Random bytes from the OS CSPRNG
        """
        return os.urandom(length)

    def generate_rsa_private_key(self) -> rsa.RSAPrivateKey:
        """
        Generate an RSA keypair for wrapping session keys.

        Returns:
            2048-bit RSA private key (public half via .public_key())
        """
        return rsa.generate_private_key(
            public_exponent=RSA_PUBLIC_EXPONENT,
            key_size=RSA_KEY_SIZE
        )

    def rsa_oaep_encrypt(self, public_key: rsa.RSAPublicKey, data: bytes) -> bytes:
        """Encrypt a short payload (a session key) with RSA-OAEP"""
        return public_key.encrypt(data, oaep_padding())

    def rsa_oaep_decrypt(self, private_key: rsa.RSAPrivateKey, data: bytes) -> bytes:
        """
        Decrypt an RSA-OAEP payload.

        Raises:
            ValueError: If the payload was not produced for this key
        """
        return private_key.decrypt(data, oaep_padding())

    def aead_encrypt(self, key: bytes, nonce: bytes, plaintext: bytes, associated_data: bytes = b"") -> bytes:
        """
        Encrypt with AES-256-GCM.

        Args:
            key: 32-byte encryption key
            nonce: 12-byte nonce, never reused with the same key
            plaintext: Data to encrypt
            associated_data: Additional authenticated data

        Returns:
            ciphertext + tag (16 bytes)
        """
        return AESGCM(key).encrypt(nonce, plaintext, associated_data)

    def aead_decrypt(self, key: bytes, nonce: bytes, ciphertext: bytes, associated_data: bytes = b"") -> bytes:
        """
        Decrypt and authenticate with AES-256-GCM.

        Raises:
            cryptography.exceptions.InvalidTag: If authentication fails
        """
        return AESGCM(key).decrypt(nonce, ciphertext, associated_data)


def b64encode(data: bytes) -> str:
    """Standard base64 with padding, as ASCII text"""
    return base64.b64encode(data).decode("ascii")


def b64decode(data: str) -> bytes:
    """
    Strict base64 decoding.

    Raises:
        ValueError: On non-alphabet characters or bad padding
    """
    if not isinstance(data, (str, bytes)):
        raise ValueError("base64 value must be a string")
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"Invalid base64: {e}") from e
