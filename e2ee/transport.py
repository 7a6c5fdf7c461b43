"""
Collaborator interfaces consumed by the key exchange, and an in-memory relay.

The relay server (chat_server) and the HTTP client (chat_client.relay)
implement the same contracts over the network.
"""

import asyncio
from itertools import count
from typing import Dict, Iterable, List, Optional, Protocol, Set

from .models import (
    EncryptedMessage,
    EncryptedPayload,
    MessageStatus,
    PublicKeyEntry,
    WrappedKey,
    utcnow,
)


class UserDirectory(Protocol):
    """Lookup of participants' published public keys"""

    async def get_public_key(self, user_id: int) -> Optional[PublicKeyEntry]:
        ...


class KeyTransport(Protocol):
    """Storage and retrieval of wrapped session keys"""

    async def publish_wrapped_keys(self, conversation_id: int, records: List[WrappedKey]) -> bool:
        """Return False if the conversation already has a key exchange"""
        ...

    async def fetch_wrapped_key(self, conversation_id: int, recipient_user_id: int) -> Optional[WrappedKey]:
        ...


class InMemoryRelay:
    """
    Process-local stand-in for the relay server.

    Holds public keys, key-exchange records and encrypted messages with the
    same first-write-wins rule the server enforces.
    """

    def __init__(self):
        self.public_keys: Dict[int, Dict] = {}
        self.participants: Dict[int, Set[int]] = {}
        self.wrapped_keys: Dict[int, Dict[int, WrappedKey]] = {}
        self.messages: Dict[int, List[EncryptedMessage]] = {}
        self.publish_attempts = 0
        self._ids = count(1)
        self._lock = asyncio.Lock()

    def register(self, user_id: int, public_key: Dict):
        """Publish a user's public JWK"""
        self.public_keys[user_id] = public_key

    def create_conversation(self, conversation_id: int, participant_ids: Iterable[int]):
        self.participants[conversation_id] = set(participant_ids)

    async def get_public_key(self, user_id: int) -> Optional[PublicKeyEntry]:
        jwk = self.public_keys.get(user_id)
        if jwk is None:
            return None
        return PublicKeyEntry(user_id=user_id, public_key=jwk)

    async def publish_wrapped_keys(self, conversation_id: int, records: List[WrappedKey]) -> bool:
        async with self._lock:
            self.publish_attempts += 1
            if conversation_id in self.wrapped_keys:
                return False
            self.wrapped_keys[conversation_id] = {r.recipient_user_id: r for r in records}
            return True

    async def fetch_wrapped_key(self, conversation_id: int, recipient_user_id: int) -> Optional[WrappedKey]:
        return self.wrapped_keys.get(conversation_id, {}).get(recipient_user_id)

    async def send_message(
        self,
        conversation_id: int,
        sender_id: int,
        payload: EncryptedPayload,
        content_type: str = "text"
    ) -> EncryptedMessage:
        message = EncryptedMessage(
            id=next(self._ids),
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=payload.ciphertext,
            iv=payload.nonce,
            content_type=content_type,
            created_at=utcnow()
        )
        self.messages.setdefault(conversation_id, []).append(message)
        return message

    async def fetch_messages(self, conversation_id: int) -> List[EncryptedMessage]:
        return sorted(self.messages.get(conversation_id, []), key=lambda m: m.order_key)

    async def update_status(self, conversation_id: int, message_id: int, status: MessageStatus) -> EncryptedMessage:
        stored = self.messages.get(conversation_id, [])
        for index, message in enumerate(stored):
            if message.id == message_id:
                stored[index] = message.with_status(status)
                return stored[index]
        raise KeyError(message_id)
