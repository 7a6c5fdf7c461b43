"""
Chat client for SecureChat: relay API access, conversation handling and the CLI.
"""

from .client import ChatClient, DecryptedMessage, UNDECRYPTABLE_PLACEHOLDER
from .relay import Conversation, Participant, RelayClient, RelayError

__all__ = [
    'ChatClient',
    'Conversation',
    'DecryptedMessage',
    'Participant',
    'RelayClient',
    'RelayError',
    'UNDECRYPTABLE_PLACEHOLDER',
]
