"""
FastAPI relay server for the end-to-end encrypted chat application.

This server:
- Handles user registration and authentication
- Publishes users' public keys (the user directory)
- Stores each conversation's key exchange, first write wins
- Stores and relays encrypted messages (never plaintext)
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field, field_validator

from e2ee.errors import KeyFormatError
from e2ee.identity import AsymmetricIdentity
from e2ee.models import EncryptedMessage, MessageStatus, format_timestamp, parse_timestamp
from e2ee.primitives import NONCE_SIZE, TAG_SIZE, b64decode

from .auth import create_access_token, decode_token
from .config import ServerSettings
from .database import Contact, Database, Message, User

logger = logging.getLogger(__name__)

_identity = AsymmetricIdentity()


# Pydantic models for API
class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class UserRegister(CamelModel):
    username: str = Field(min_length=3, max_length=50, pattern=r"^[A-Za-z0-9_.-]+$")
    display_name: str = Field(alias="displayName", min_length=1, max_length=100)
    password: str = Field(min_length=6)
    public_key: Dict[str, Any] = Field(alias="publicKey")

    @field_validator("public_key")
    @classmethod
    def public_key_only(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        # import_public_key rejects JWKs carrying private members
        try:
            _identity.import_public_key(value)
        except KeyFormatError as e:
            raise ValueError(str(e)) from e
        return value


class UserLogin(CamelModel):
    username: str
    password: str


class ConversationCreate(CamelModel):
    participant_username: str = Field(alias="participantUsername")


class WrappedKeyIn(CamelModel):
    conversation_id: Optional[int] = Field(default=None, alias="conversationId")
    recipient_user_id: int = Field(alias="recipientUserId")
    wrapped_key: str = Field(alias="wrappedKey", min_length=1)

    @field_validator("wrapped_key")
    @classmethod
    def base64_blob(cls, value: str) -> str:
        b64decode(value)
        return value


class KeyExchangeIn(CamelModel):
    keys: List[WrappedKeyIn] = Field(min_length=1)


class MessageCreate(CamelModel):
    content: str
    iv: str
    content_type: str = Field(default="text", alias="contentType", max_length=20)

    @field_validator("iv")
    @classmethod
    def nonce_size(cls, value: str) -> str:
        if len(b64decode(value)) != NONCE_SIZE:
            raise ValueError(f"iv must encode {NONCE_SIZE} bytes")
        return value

    @field_validator("content")
    @classmethod
    def ciphertext_only(cls, value: str) -> str:
        if len(b64decode(value)) < TAG_SIZE:
            raise ValueError("content must be base64 ciphertext including the authentication tag")
        return value


class StatusUpdate(CamelModel):
    status: MessageStatus


class ProfileUpdate(CamelModel):
    display_name: str = Field(alias="displayName", min_length=1, max_length=100)


class ContactCreate(CamelModel):
    username: str = Field(min_length=1)
    nickname: Optional[str] = Field(default=None, max_length=100)


def _optional_timestamp(value) -> Optional[str]:
    return format_timestamp(value) if value else None


def profile_to_dict(user: User) -> Dict:
    """Public profile, as shown in search results"""
    return {
        'id': user.id,
        'username': user.username,
        'displayName': user.display_name,
        'lastSeen': _optional_timestamp(user.last_seen)
    }


def user_to_dict(user: User) -> Dict:
    data = profile_to_dict(user)
    data.update({
        'publicKey': user.public_key_jwk,
        'createdAt': format_timestamp(user.created_at)
    })
    return data


def contact_to_dict(contact: Contact, user: User) -> Dict:
    data = user_to_dict(user)
    data.update({
        'displayName': contact.nickname or user.display_name,
        'addedAt': format_timestamp(contact.created_at)
    })
    return data


def message_to_dict(message: Message) -> Dict:
    return EncryptedMessage(
        id=message.id,
        conversation_id=message.conversation_id,
        sender_id=message.sender_id,
        content=message.content,
        iv=message.iv,
        content_type=message.content_type,
        status=MessageStatus(message.status),
        created_at=parse_timestamp(message.created_at)
    ).to_dict()


bearer_scheme = HTTPBearer(auto_error=False)


def create_app(settings: Optional[ServerSettings] = None, database: Optional[Database] = None) -> FastAPI:
    """
    Build the relay application.

    Args:
        settings: Server settings; read from the environment if omitted
        database: Database manager; built from settings.database_url if omitted
    """
    settings = settings or ServerSettings()
    db = database or Database(settings.database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        await db.create_tables()
        logger.info("Database initialized")
        yield
        logger.info("Server shutting down")
        await db.dispose()

    app = FastAPI(
        title="SecureChat Relay",
        description="Key directory and ciphertext relay for end-to-end encrypted chat",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.db = db

    def issue_token(user: User) -> Dict:
        token = create_access_token(data={"sub": user.username}, settings=settings)
        return {"token": token, "tokenType": "bearer", "user": user_to_dict(user)}

    async def token_claims(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> Dict:
        if credentials is None:
            raise HTTPException(status_code=401, detail="Access token required")
        claims = decode_token(credentials.credentials, settings)
        if claims is None or await db.is_token_revoked(claims["jti"]):
            raise HTTPException(status_code=401, detail="Invalid or expired token")
        return claims

    async def current_user(claims: Dict = Depends(token_claims)) -> User:
        user = await db.get_user(claims["sub"])
        if user is None or not user.is_active:
            raise HTTPException(status_code=401, detail="Invalid or expired token")
        return user

    async def participants_of(conversation_id: int, user: User) -> List[int]:
        participant_ids = await db.get_participant_ids(conversation_id)
        if not participant_ids:
            raise HTTPException(status_code=404, detail="Conversation not found")
        if user.id not in participant_ids:
            raise HTTPException(status_code=403, detail="Not a participant")
        return participant_ids

    async def conversation_to_dict(conversation_id: int, user: User) -> Dict:
        """Conversation with participants, newest message and the viewer's unread count"""
        participant_ids = await db.get_participant_ids(conversation_id)
        users = await db.get_users(participant_ids)
        last_message = await db.get_last_message(conversation_id)
        return {
            'id': conversation_id,
            'participants': [
                {'id': u.id, 'username': u.username, 'displayName': u.display_name} for u in users
            ],
            'lastMessage': message_to_dict(last_message) if last_message else None,
            'unreadCount': await db.count_unread(conversation_id, user.id)
        }

    @app.post("/api/auth/register", status_code=201)
    async def register(user_data: UserRegister):
        """
        Register a new user account.

        The client generates its identity keypair and sends only the public JWK.
        """
        user = await db.create_user(
            username=user_data.username,
            display_name=user_data.display_name,
            password=user_data.password,
            public_key=user_data.public_key
        )
        if not user:
            raise HTTPException(status_code=409, detail="Username already exists")
        logger.info("Registered user %s", user.username)
        return issue_token(user)

    @app.post("/api/auth/login")
    async def login(user_data: UserLogin):
        """Authenticate a user and return a JWT"""
        user = await db.authenticate_user(user_data.username, user_data.password)
        if not user:
            raise HTTPException(status_code=401, detail="Invalid credentials")
        return issue_token(user)

    @app.post("/api/auth/logout")
    async def logout(claims: Dict = Depends(token_claims), user: User = Depends(current_user)):
        """Revoke the presented token and record when the user was last seen"""
        expires_at = datetime.fromtimestamp(claims["exp"], tz=timezone.utc).replace(tzinfo=None)
        await db.revoke_token(claims["jti"], expires_at)
        await db.touch_last_seen(user.id)
        logger.info("User %s logged out", user.username)
        return {"success": True}

    @app.get("/api/auth/me")
    async def me(user: User = Depends(current_user)):
        return user_to_dict(user)

    @app.get("/api/users/search")
    async def search_users(q: str = Query(default="", max_length=50), user: User = Depends(current_user)):
        """Users whose username or display name contains q (at least 2 characters)"""
        query = q.strip()
        if len(query) < 2:
            return []
        return [profile_to_dict(u) for u in await db.search_users(query, exclude_user_id=user.id)]

    @app.put("/api/users/profile")
    async def update_profile(body: ProfileUpdate, user: User = Depends(current_user)):
        updated = await db.update_profile(user.id, body.display_name.strip() or user.display_name)
        return user_to_dict(updated)

    @app.get("/api/contacts")
    async def list_contacts(user: User = Depends(current_user)):
        return [contact_to_dict(contact, found) for contact, found in await db.list_contacts(user.id)]

    @app.post("/api/contacts", status_code=201)
    async def add_contact(body: ContactCreate, user: User = Depends(current_user)):
        other = await db.get_user(body.username)
        if not other:
            raise HTTPException(status_code=404, detail="User not found")
        if other.id == user.id:
            raise HTTPException(status_code=400, detail="Cannot add yourself as contact")
        contact = await db.add_contact(user.id, other.id, body.nickname)
        if contact is None:
            raise HTTPException(status_code=409, detail="Contact already exists")
        return contact_to_dict(contact, other)

    @app.delete("/api/contacts/{username}")
    async def remove_contact(username: str, user: User = Depends(current_user)):
        other = await db.get_user(username)
        if not other:
            raise HTTPException(status_code=404, detail="User not found")
        removed = await db.remove_contact(user.id, other.id)
        return {"success": True, "removed": removed}

    @app.get("/api/users/by-username/{username}")
    async def get_user_by_username(username: str, user: User = Depends(current_user)):
        found = await db.get_user(username)
        if not found:
            raise HTTPException(status_code=404, detail="User not found")
        return user_to_dict(found)

    @app.get("/api/users/{user_id}/public-key")
    async def get_public_key(user_id: int, user: User = Depends(current_user)):
        """Directory entry: {userId, publicKey}"""
        found = await db.get_user_by_id(user_id)
        if not found:
            raise HTTPException(status_code=404, detail="User not found")
        return {"userId": found.id, "publicKey": found.public_key_jwk}

    @app.post("/api/conversations")
    async def open_conversation(body: ConversationCreate, user: User = Depends(current_user)):
        """Get or create the one-to-one conversation with another user"""
        other = await db.get_user(body.participant_username)
        if not other:
            raise HTTPException(status_code=404, detail="User not found")
        if other.id == user.id:
            raise HTTPException(status_code=400, detail="Cannot open a conversation with yourself")
        conversation_id = await db.get_or_create_conversation(user.id, other.id)
        return await conversation_to_dict(conversation_id, user)

    @app.get("/api/conversations")
    async def list_conversations(user: User = Depends(current_user)):
        return [await conversation_to_dict(cid, user) for cid in await db.list_conversation_ids(user.id)]

    @app.get("/api/conversations/{conversation_id}")
    async def get_conversation(conversation_id: int, user: User = Depends(current_user)):
        await participants_of(conversation_id, user)
        return await conversation_to_dict(conversation_id, user)

    @app.post("/api/conversations/{conversation_id}/keys", status_code=201)
    async def publish_keys(conversation_id: int, body: KeyExchangeIn, user: User = Depends(current_user)):
        """
        Store a conversation's key exchange.

        Only the first exchange per conversation is accepted; later ones get 409.
        """
        participant_ids = await participants_of(conversation_id, user)
        recipients = [k.recipient_user_id for k in body.keys]
        if len(set(recipients)) != len(recipients):
            raise HTTPException(status_code=400, detail="Duplicate recipient in key exchange")
        if any(k.conversation_id not in (None, conversation_id) for k in body.keys):
            raise HTTPException(status_code=400, detail="Key record belongs to another conversation")
        if not set(recipients) <= set(participant_ids):
            raise HTTPException(status_code=400, detail="Recipient is not a participant")

        stored = await db.store_key_exchange(
            conversation_id,
            created_by=user.id,
            records=[(k.recipient_user_id, k.wrapped_key) for k in body.keys]
        )
        if not stored:
            raise HTTPException(status_code=409, detail="Conversation already has a key exchange")
        return {"conversationId": conversation_id, "recipients": sorted(recipients)}

    @app.get("/api/conversations/{conversation_id}/keys/{recipient_id}")
    async def fetch_key(conversation_id: int, recipient_id: int, user: User = Depends(current_user)):
        """Return the caller's own wrapped session key"""
        await participants_of(conversation_id, user)
        if recipient_id != user.id:
            raise HTTPException(status_code=403, detail="Wrapped keys are only served to their recipient")
        wrapped = await db.get_wrapped_key(conversation_id, recipient_id)
        if wrapped is None:
            raise HTTPException(status_code=404, detail="No wrapped key for this recipient")
        return {"conversationId": conversation_id, "recipientUserId": recipient_id, "wrappedKey": wrapped}

    @app.post("/api/conversations/{conversation_id}/messages", status_code=201)
    async def send_message(conversation_id: int, body: MessageCreate, user: User = Depends(current_user)):
        await participants_of(conversation_id, user)
        message = await db.create_message(
            conversation_id=conversation_id,
            sender_id=user.id,
            content=body.content,
            iv=body.iv,
            content_type=body.content_type
        )
        return message_to_dict(message)

    @app.get("/api/conversations/{conversation_id}/messages")
    async def list_messages(
        conversation_id: int,
        limit: int = Query(default=100, ge=1, le=500),
        before: Optional[int] = Query(default=None, ge=1),
        user: User = Depends(current_user)
    ):
        await participants_of(conversation_id, user)
        return [message_to_dict(m) for m in await db.list_messages(conversation_id, limit, before)]

    @app.post("/api/conversations/{conversation_id}/read")
    async def mark_read(conversation_id: int, user: User = Depends(current_user)):
        await participants_of(conversation_id, user)
        updated = await db.mark_conversation_read(conversation_id, user.id)
        return {"success": True, "updated": updated}

    @app.post("/api/messages/{message_id}/status")
    async def update_status(message_id: int, body: StatusUpdate, user: User = Depends(current_user)):
        """Advance a received message's status (sent -> delivered -> read)"""
        message = await db.get_message(message_id)
        if not message:
            raise HTTPException(status_code=404, detail="Message not found")
        await participants_of(message.conversation_id, user)
        if message.sender_id == user.id:
            raise HTTPException(status_code=403, detail="Only recipients can update message status")
        if not MessageStatus(message.status).can_advance_to(body.status):
            raise HTTPException(status_code=409, detail=f"Status cannot move from {message.status} to {body.status.value}")
        if message.status != body.status.value:
            message = await db.set_message_status(message_id, body.status.value)
        return message_to_dict(message)

    return app


app = create_app()


def run():
    """Console entry point"""
    import uvicorn

    settings = ServerSettings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
