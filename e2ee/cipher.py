"""
Authenticated message encryption under a conversation session key.
"""

import asyncio
from typing import Optional

from cryptography.exceptions import InvalidTag

from .errors import DecryptionError, KeyFormatError
from .models import EncryptedPayload, SessionKey
from .primitives import CryptoProvider, NONCE_SIZE, SESSION_KEY_SIZE, TAG_SIZE, b64decode, b64encode


class MessageCipher:
    """
    AES-256-GCM encryption of message text.

    Every call to encrypt() draws a fresh random 96-bit nonce from the
    provider. decrypt() fails closed.
    """

    def __init__(self, provider: Optional[CryptoProvider] = None):
        self.provider = provider or CryptoProvider()

    async def encrypt(
        self,
        plaintext: str,
        session_key: SessionKey,
        associated_data: bytes = b""
    ) -> EncryptedPayload:
        """
        Encrypt a message.

        Args:
            plaintext: Message text
            session_key: Conversation session key
            associated_data: Additional authenticated data

        Returns:
            EncryptedPayload with base64 ciphertext (tag appended) and nonce

        Raises:
            KeyFormatError: If the session key is not 256 bits
        """
        if len(session_key.key_material) != SESSION_KEY_SIZE:
            raise KeyFormatError(
                f"Session key must be {SESSION_KEY_SIZE} bytes, got {len(session_key.key_material)}"
            )
        nonce = self.provider.random_bytes(NONCE_SIZE)
        ciphertext = await asyncio.to_thread(
            self.provider.aead_encrypt,
            session_key.key_material,
            nonce,
            plaintext.encode("utf-8"),
            associated_data
        )
        return EncryptedPayload(ciphertext=b64encode(ciphertext), nonce=b64encode(nonce))

    async def decrypt(
        self,
        payload: EncryptedPayload,
        session_key: SessionKey,
        associated_data: bytes = b""
    ) -> str:
        """
        Decrypt and authenticate a message.

        Args:
            payload: Output of encrypt()
            session_key: Conversation session key
            associated_data: Must match what was passed to encrypt()

        Returns:
            Message text

        Raises:
            DecryptionError: On any authentication or encoding failure
        """
        try:
            nonce = b64decode(payload.nonce)
            ciphertext = b64decode(payload.ciphertext)
        except ValueError as e:
            raise DecryptionError(f"Malformed payload: {e}") from e

        if len(nonce) != NONCE_SIZE:
            raise DecryptionError(f"Nonce must be {NONCE_SIZE} bytes, got {len(nonce)}")
        if len(ciphertext) < TAG_SIZE:
            raise DecryptionError("Ciphertext too short")

        try:
            plaintext = await asyncio.to_thread(
                self.provider.aead_decrypt,
                session_key.key_material,
                nonce,
                ciphertext,
                associated_data
            )
        except InvalidTag as e:
            raise DecryptionError("Message authentication failed") from e
        except ValueError as e:
            raise DecryptionError(f"Decryption failed: {e}") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted message is not valid UTF-8") from e
