"""
Per-conversation symmetric session keys.

A session key is generated once per conversation and distributed by wrapping
it under each participant's RSA public key.
"""

import asyncio
from typing import Optional

from cryptography.hazmat.primitives.asymmetric import rsa

from .errors import KeyExchangeError
from .models import SessionKey
from .primitives import CryptoProvider, SESSION_KEY_SIZE, b64decode, b64encode


class SymmetricSession:
    """
    Generates, wraps and unwraps AES-256-GCM session keys.
    """

    def __init__(self, provider: Optional[CryptoProvider] = None):
        self.provider = provider or CryptoProvider()

    async def generate_session_key(self, conversation_id: Optional[int] = None) -> SessionKey:
        """
        Generate a fresh 256-bit session key.

        Args:
            conversation_id: Conversation to bind the key to, if known

        Returns:
            SessionKey
        """
        key_material = self.provider.random_bytes(SESSION_KEY_SIZE)
        return SessionKey(key_material=key_material, conversation_id=conversation_id)

    async def wrap_session_key(self, session_key: SessionKey, recipient_public_key: rsa.RSAPublicKey) -> str:
        """
        Encrypt the raw session key under a recipient's public key.

        Args:
            session_key: Key to distribute
            recipient_public_key: Recipient's identity public key

        Returns:
            Base64 wrapped key blob
        """
        if len(session_key.key_material) != SESSION_KEY_SIZE:
            raise KeyExchangeError("Session key has the wrong length")
        try:
            wrapped = await asyncio.to_thread(
                self.provider.rsa_oaep_encrypt, recipient_public_key, session_key.key_material
            )
        except (ValueError, TypeError, AttributeError) as e:
            raise KeyExchangeError(f"Failed to wrap session key: {e}") from e
        return b64encode(wrapped)

    async def unwrap_session_key(
        self,
        wrapped_key: str,
        own_private_key: rsa.RSAPrivateKey,
        conversation_id: Optional[int] = None
    ) -> SessionKey:
        """
        Recover a session key wrapped for us.

        Args:
            wrapped_key: Base64 blob from wrap_session_key()
            own_private_key: Our identity private key
            conversation_id: Conversation to bind the key to, if known

        Returns:
            SessionKey

        Raises:
            KeyExchangeError: If the blob is corrupt or was wrapped for another identity
        """
        try:
            blob = b64decode(wrapped_key)
        except ValueError as e:
            raise KeyExchangeError(f"Wrapped key is not valid base64: {e}") from e

        try:
            key_material = await asyncio.to_thread(self.provider.rsa_oaep_decrypt, own_private_key, blob)
        except (ValueError, TypeError, AttributeError) as e:
            raise KeyExchangeError("Failed to unwrap session key") from e

        if len(key_material) != SESSION_KEY_SIZE:
            raise KeyExchangeError(f"Unwrapped key has length {len(key_material)}, expected {SESSION_KEY_SIZE}")

        return SessionKey(key_material=key_material, conversation_id=conversation_id)
