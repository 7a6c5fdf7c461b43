"""
Database models and operations for the relay server.

Uses SQLAlchemy with SQLite for accounts, public keys, conversation
membership, key-exchange records and encrypted messages. The server only
ever holds ciphertext and wrapped keys.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    or_,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .auth import hash_password, verify_password

logger = logging.getLogger(__name__)

Base = declarative_base()


def _utcnow() -> datetime:
    """Naive UTC timestamp, as SQLite stores it"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    """User account with its published public key"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)  # stored lowercase
    display_name = Column(String(100), nullable=False)
    hashed_password = Column(String(255), nullable=False)
    public_key = Column(Text, nullable=False)  # JWK JSON, public members only
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)
    last_seen = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True)

    @property
    def public_key_jwk(self) -> Dict:
        return json.loads(self.public_key)


class Contact(Base):
    """One-directional contact list entry"""
    __tablename__ = "contacts"
    __table_args__ = (UniqueConstraint("user_id", "contact_id"),)

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    contact_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    nickname = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=_utcnow)


class RevokedToken(Base):
    """Access tokens invalidated by logout before their expiry"""
    __tablename__ = "revoked_tokens"

    jti = Column(String(64), primary_key=True)
    expires_at = Column(DateTime, nullable=False)


def pair_key(user_id: int, other_user_id: int) -> str:
    """Order-independent identifier of a one-to-one conversation"""
    low, high = sorted((user_id, other_user_id))
    return f"{low}:{high}"


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, index=True)
    pair_key = Column(String(50), unique=True, nullable=False)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class ConversationParticipant(Base):
    __tablename__ = "conversation_participants"
    __table_args__ = (UniqueConstraint("conversation_id", "user_id"),)

    id = Column(Integer, primary_key=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    last_read_at = Column(DateTime, nullable=True)


class KeyExchange(Base):
    """One per conversation; the unique constraint makes the first write win"""
    __tablename__ = "key_exchanges"

    id = Column(Integer, primary_key=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), unique=True, nullable=False)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=_utcnow)


class WrappedKeyRecord(Base):
    """A session key wrapped for one recipient"""
    __tablename__ = "wrapped_keys"
    __table_args__ = (UniqueConstraint("conversation_id", "recipient_id"),)

    id = Column(Integer, primary_key=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), index=True, nullable=False)
    recipient_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    wrapped_key = Column(Text, nullable=False)  # base64 RSA-OAEP ciphertext


class Message(Base):
    """Encrypted message; content is ciphertext only"""
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), index=True, nullable=False)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    content = Column(Text, nullable=False)  # base64 ciphertext + tag
    iv = Column(String(32), nullable=False)  # base64 nonce
    content_type = Column(String(20), nullable=False, default="text")
    status = Column(String(20), nullable=False, default="sent")
    created_at = Column(DateTime, default=_utcnow, index=True)


class Database:
    """Database manager for async operations"""

    def __init__(self, database_url: str = "sqlite+aiosqlite:///./securechat.db"):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy database URL
        """
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        """Create all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()

    async def create_user(self, username: str, display_name: str, password: str, public_key: Dict) -> Optional[User]:
        """
        Create a new user account.

        Args:
            username: Unique username (case-insensitive)
            display_name: Name shown to contacts
            password: Plain text password (will be hashed)
            public_key: Public JWK

        Returns:
            Created User object or None if username exists
        """
        async with self.async_session() as session:
            user = User(
                username=username.lower(),
                display_name=display_name,
                hashed_password=hash_password(password),
                public_key=json.dumps(public_key)
            )
            session.add(user)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return None
            await session.refresh(user)
            return user

    async def get_user(self, username: str) -> Optional[User]:
        """
        Get user by username.

        Args:
            username: Username to look up (any case)

        Returns:
            User object or None if not found
        """
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username.lower()))
            return result.scalar_one_or_none()

    async def get_user_by_id(self, user_id: int) -> Optional[User]:
        async with self.async_session() as session:
            return await session.get(User, user_id)

    async def get_users(self, user_ids: Sequence[int]) -> List[User]:
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.id.in_(list(user_ids))).order_by(User.id))
            return list(result.scalars().all())

    async def authenticate_user(self, username: str, password: str) -> Optional[User]:
        """
        Authenticate a user.

        Returns:
            User object if authenticated, None otherwise
        """
        user = await self.get_user(username)
        if not user or not user.is_active or not verify_password(password, user.hashed_password):
            return None
        return await self.touch_last_seen(user.id)

    async def touch_last_seen(self, user_id: int) -> Optional[User]:
        async with self.async_session() as session:
            user = await session.get(User, user_id)
            if user is None:
                return None
            user.last_seen = _utcnow()
            await session.commit()
            await session.refresh(user)
            return user

    async def search_users(self, query: str, exclude_user_id: int, limit: int = 20) -> List[User]:
        """
        Find users whose username or display name contains the query.

        Args:
            query: Substring to look for (case-insensitive)
            exclude_user_id: The searching user, never part of the result
            limit: Maximum number of users
        """
        pattern = f"%{query.lower()}%"
        async with self.async_session() as session:
            result = await session.execute(
                select(User)
                .where(
                    or_(User.username.like(pattern), func.lower(User.display_name).like(pattern)),
                    User.id != exclude_user_id,
                    User.is_active.is_(True)
                )
                .order_by(User.username)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def update_profile(self, user_id: int, display_name: str) -> Optional[User]:
        async with self.async_session() as session:
            user = await session.get(User, user_id)
            if user is None:
                return None
            user.display_name = display_name
            await session.commit()
            await session.refresh(user)
            return user

    async def revoke_token(self, jti: str, expires_at: datetime):
        """Invalidate an access token; revoking twice is a no-op"""
        async with self.async_session() as session:
            session.add(RevokedToken(jti=jti, expires_at=expires_at))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()

    async def is_token_revoked(self, jti: str) -> bool:
        async with self.async_session() as session:
            return await session.get(RevokedToken, jti) is not None

    async def add_contact(self, user_id: int, contact_id: int, nickname: Optional[str] = None) -> Optional[Contact]:
        """
        Add a user to someone's contact list.

        Returns:
            Created Contact, or None if it already existed
        """
        async with self.async_session() as session:
            contact = Contact(user_id=user_id, contact_id=contact_id, nickname=nickname)
            session.add(contact)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return None
            await session.refresh(contact)
            return contact

    async def list_contacts(self, user_id: int) -> List[Tuple[Contact, User]]:
        """Contacts of a user with their accounts, by display name"""
        async with self.async_session() as session:
            result = await session.execute(
                select(Contact, User)
                .join(User, User.id == Contact.contact_id)
                .where(Contact.user_id == user_id)
                .order_by(func.coalesce(Contact.nickname, User.display_name), User.username)
            )
            return [(contact, user) for contact, user in result.all()]

    async def remove_contact(self, user_id: int, contact_id: int) -> bool:
        async with self.async_session() as session:
            result = await session.execute(
                select(Contact).where(Contact.user_id == user_id, Contact.contact_id == contact_id)
            )
            contact = result.scalar_one_or_none()
            if contact is None:
                return False
            await session.delete(contact)
            await session.commit()
            return True

    async def get_or_create_conversation(self, user_id: int, other_user_id: int) -> int:
        """
        Find the one-to-one conversation between two users, creating it if needed.

        Returns:
            Conversation id
        """
        key = pair_key(user_id, other_user_id)
        existing = await self._conversation_by_pair(key)
        if existing is not None:
            return existing

        async with self.async_session() as session:
            conversation = Conversation(pair_key=key)
            session.add(conversation)
            try:
                await session.flush()
                session.add_all([
                    ConversationParticipant(conversation_id=conversation.id, user_id=user_id),
                    ConversationParticipant(conversation_id=conversation.id, user_id=other_user_id),
                ])
                await session.commit()
            except IntegrityError:
                # The other participant created it concurrently
                await session.rollback()
                return await self._conversation_by_pair(key)
            logger.info("Created conversation %s", conversation.id)
            return conversation.id

    async def _conversation_by_pair(self, key: str) -> Optional[int]:
        async with self.async_session() as session:
            result = await session.execute(select(Conversation.id).where(Conversation.pair_key == key))
            return result.scalar_one_or_none()

    async def get_participant_ids(self, conversation_id: int) -> List[int]:
        async with self.async_session() as session:
            result = await session.execute(
                select(ConversationParticipant.user_id)
                .where(ConversationParticipant.conversation_id == conversation_id)
                .order_by(ConversationParticipant.user_id)
            )
            return list(result.scalars().all())

    async def list_conversation_ids(self, user_id: int) -> List[int]:
        async with self.async_session() as session:
            result = await session.execute(
                select(ConversationParticipant.conversation_id)
                .join(Conversation, Conversation.id == ConversationParticipant.conversation_id)
                .where(ConversationParticipant.user_id == user_id)
                .order_by(Conversation.updated_at.desc(), Conversation.id.desc())
            )
            return list(result.scalars().all())

    async def store_key_exchange(self, conversation_id: int, created_by: int, records: List[Tuple[int, str]]) -> bool:
        """
        Store the wrapped keys of a conversation's key exchange.

        Args:
            conversation_id: Conversation
            created_by: User performing the exchange
            records: (recipient_id, wrapped_key) pairs

        Returns:
            True if stored, False if the conversation already had an exchange
        """
        async with self.async_session() as session:
            session.add(KeyExchange(conversation_id=conversation_id, created_by=created_by))
            session.add_all([
                WrappedKeyRecord(conversation_id=conversation_id, recipient_id=recipient_id, wrapped_key=wrapped)
                for recipient_id, wrapped in records
            ])
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("Rejected second key exchange for conversation %s", conversation_id)
                return False
            return True

    async def get_wrapped_key(self, conversation_id: int, recipient_id: int) -> Optional[str]:
        async with self.async_session() as session:
            result = await session.execute(
                select(WrappedKeyRecord.wrapped_key).where(
                    WrappedKeyRecord.conversation_id == conversation_id,
                    WrappedKeyRecord.recipient_id == recipient_id
                )
            )
            return result.scalar_one_or_none()

    async def create_message(
        self,
        conversation_id: int,
        sender_id: int,
        content: str,
        iv: str,
        content_type: str
    ) -> Message:
        async with self.async_session() as session:
            message = Message(
                conversation_id=conversation_id,
                sender_id=sender_id,
                content=content,
                iv=iv,
                content_type=content_type,
                status="sent",
                created_at=_utcnow()
            )
            session.add(message)
            conversation = await session.get(Conversation, conversation_id)
            if conversation is not None:
                conversation.updated_at = _utcnow()
            await session.commit()
            await session.refresh(message)
            return message

    async def list_messages(
        self,
        conversation_id: int,
        limit: int = 100,
        before: Optional[int] = None
    ) -> List[Message]:
        """
        The newest messages of a conversation, returned oldest first.

        Args:
            conversation_id: Conversation
            limit: Maximum number of messages
            before: Only messages with a smaller id (for paging back)
        """
        query = select(Message).where(Message.conversation_id == conversation_id)
        if before is not None:
            query = query.where(Message.id < before)
        query = query.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit)

        async with self.async_session() as session:
            result = await session.execute(query)
            return list(reversed(result.scalars().all()))

    async def get_last_message(self, conversation_id: int) -> Optional[Message]:
        async with self.async_session() as session:
            result = await session.execute(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.created_at.desc(), Message.id.desc())
                .limit(1)
            )
            return result.scalars().first()

    async def count_unread(self, conversation_id: int, user_id: int) -> int:
        """Messages from other participants the user has not read yet"""
        async with self.async_session() as session:
            result = await session.execute(
                select(func.count(Message.id)).where(
                    Message.conversation_id == conversation_id,
                    Message.sender_id != user_id,
                    Message.status != "read"
                )
            )
            return result.scalar_one()

    async def get_message(self, message_id: int) -> Optional[Message]:
        async with self.async_session() as session:
            return await session.get(Message, message_id)

    async def set_message_status(self, message_id: int, status: str) -> Optional[Message]:
        async with self.async_session() as session:
            message = await session.get(Message, message_id)
            if message is None:
                return None
            message.status = status
            await session.commit()
            await session.refresh(message)
            return message

    async def mark_conversation_read(self, conversation_id: int, user_id: int) -> int:
        """
        Mark every message the user received in a conversation as read.

        Returns:
            Number of messages whose status changed
        """
        async with self.async_session() as session:
            result = await session.execute(
                select(Message).where(
                    Message.conversation_id == conversation_id,
                    Message.sender_id != user_id,
                    Message.status != "read"
                )
            )
            messages = list(result.scalars().all())
            for message in messages:
                message.status = "read"

            result = await session.execute(
                select(ConversationParticipant).where(
                    ConversationParticipant.conversation_id == conversation_id,
                    ConversationParticipant.user_id == user_id
                )
            )
            participant = result.scalar_one_or_none()
            if participant is not None:
                participant.last_read_at = _utcnow()
            await session.commit()
            return len(messages)
