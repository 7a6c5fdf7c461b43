"""
Data model shared by the client, the relay and the encryption core.

Wire dictionaries use camelCase keys; attributes use snake_case.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


def parse_timestamp(value) -> datetime:
    """Parse an ISO-8601 timestamp, treating naive values as UTC"""
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime) -> str:
    """Render a timestamp as ISO-8601 UTC with a trailing Z"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(tzinfo=None).isoformat() + "Z"


class MessageStatus(str, Enum):
    """Delivery status; only ever moves forward"""
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    def can_advance_to(self, other: "MessageStatus") -> bool:
        return other.rank >= self.rank


_STATUS_ORDER = [MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.READ]


@dataclass
class SessionKey:
    """
    Symmetric key for one conversation.

    Attributes:
        key_material: 32 raw AES-256-GCM key bytes
        conversation_id: Conversation the key belongs to (None until bound)
        created_at: When the key was generated or unwrapped
    """
    key_material: bytes = field(repr=False)
    conversation_id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)

    def bind(self, conversation_id: int) -> "SessionKey":
        """Return a copy of this key tagged with a conversation"""
        return replace(self, conversation_id=conversation_id)


@dataclass(frozen=True)
class PublicKeyEntry:
    """User directory record for a participant's public key"""
    user_id: int
    public_key: Dict

    def to_dict(self) -> Dict:
        return {'userId': self.user_id, 'publicKey': self.public_key}

    @classmethod
    def from_dict(cls, data: Dict) -> 'PublicKeyEntry':
        return cls(user_id=data['userId'], public_key=data['publicKey'])


@dataclass(frozen=True)
class WrappedKey:
    """
    A session key encrypted under one recipient's public key.

    Attributes:
        conversation_id: Conversation the session key belongs to
        recipient_user_id: User whose public key wrapped it
        wrapped_key: Base64 RSA-OAEP ciphertext of the raw session key
    """
    conversation_id: int
    recipient_user_id: int
    wrapped_key: str

    def to_dict(self) -> Dict:
        return {
            'conversationId': self.conversation_id,
            'recipientUserId': self.recipient_user_id,
            'wrappedKey': self.wrapped_key
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'WrappedKey':
        return cls(
            conversation_id=data['conversationId'],
            recipient_user_id=data['recipientUserId'],
            wrapped_key=data['wrappedKey']
        )


@dataclass(frozen=True)
class EncryptedPayload:
    """Output of MessageCipher.encrypt: base64 ciphertext (with tag) and nonce"""
    ciphertext: str
    nonce: str


@dataclass(frozen=True)
class EncryptedMessage:
    """
    A message as stored by the relay. Plaintext is never part of it.

    Attributes:
        id: Relay-assigned identifier
        conversation_id: Owning conversation
        sender_id: Sending user
        content: Base64 ciphertext including the GCM tag
        iv: Base64 96-bit nonce
        content_type: Application content type, e.g. "text"
        status: Delivery status
        created_at: Relay-assigned creation time (ordering key)
    """
    id: int
    conversation_id: int
    sender_id: int
    content: str
    iv: str
    content_type: str = "text"
    status: MessageStatus = MessageStatus.SENT
    created_at: datetime = field(default_factory=utcnow)

    @property
    def payload(self) -> EncryptedPayload:
        return EncryptedPayload(ciphertext=self.content, nonce=self.iv)

    @property
    def order_key(self):
        return (self.created_at, self.id)

    def with_status(self, status: MessageStatus) -> 'EncryptedMessage':
        """
        Return a copy with an advanced status.

        Raises:
            ValueError: If the transition would move backwards
        """
        status = MessageStatus(status)
        if not self.status.can_advance_to(status):
            raise ValueError(f"Cannot move message {self.id} from {self.status.value} to {status.value}")
        return replace(self, status=status)

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'conversationId': self.conversation_id,
            'senderId': self.sender_id,
            'content': self.content,
            'iv': self.iv,
            'contentType': self.content_type,
            'status': self.status.value,
            'createdAt': format_timestamp(self.created_at)
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'EncryptedMessage':
        return cls(
            id=data['id'],
            conversation_id=data['conversationId'],
            sender_id=data['senderId'],
            content=data['content'],
            iv=data['iv'],
            content_type=data.get('contentType', 'text'),
            status=MessageStatus(data.get('status', 'sent')),
            created_at=parse_timestamp(data['createdAt'])
        )
