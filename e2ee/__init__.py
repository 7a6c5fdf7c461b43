"""
End-to-end encryption core for SecureChat.

Implements a hybrid scheme:
- RSA-OAEP (SHA-256) identity keys that wrap per-conversation session keys
- AES-256-GCM session keys for authenticated message encryption
"""

from .cipher import MessageCipher
from .errors import (
    CryptoError,
    DecryptionError,
    KeyExchangeError,
    KeyFormatError,
    KeyStoreError,
    ParticipantKeyMissingError,
)
from .exchange import KeyExchangeProtocol
from .identity import AsymmetricIdentity, IdentityKeyPair
from .keystore import KeyStore
from .models import (
    EncryptedMessage,
    EncryptedPayload,
    MessageStatus,
    PublicKeyEntry,
    SessionKey,
    WrappedKey,
)
from .primitives import CryptoProvider
from .session import SymmetricSession
from .transport import InMemoryRelay, KeyTransport, UserDirectory

__all__ = [
    'AsymmetricIdentity',
    'CryptoError',
    'CryptoProvider',
    'DecryptionError',
    'EncryptedMessage',
    'EncryptedPayload',
    'IdentityKeyPair',
    'InMemoryRelay',
    'KeyExchangeError',
    'KeyExchangeProtocol',
    'KeyFormatError',
    'KeyStore',
    'KeyStoreError',
    'KeyTransport',
    'MessageCipher',
    'MessageStatus',
    'ParticipantKeyMissingError',
    'PublicKeyEntry',
    'SessionKey',
    'SymmetricSession',
    'UserDirectory',
    'WrappedKey',
]
