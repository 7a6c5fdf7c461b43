"""
Exception taxonomy for the end-to-end encryption core.

None of these are retried by the core; retry policy belongs to the caller.
"""

from typing import Optional


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class KeyFormatError(CryptoError):
    """A serialized key could not be parsed or has the wrong shape"""
    pass


class KeyExchangeError(CryptoError):
    """A session key could not be wrapped, published or unwrapped"""
    pass


class ParticipantKeyMissingError(KeyExchangeError):
    """
    The user directory has no public key for a conversation participant.

    Retryable once the participant completes registration.
    """

    def __init__(self, user_id, message: Optional[str] = None):
        self.user_id = user_id
        super().__init__(message or f"No public key on file for user {user_id}")


class DecryptionError(CryptoError):
    """Authenticated decryption of a message failed"""
    pass


class KeyStoreError(CryptoError):
    """The local key store is locked or scoped to a different identity"""
    pass
