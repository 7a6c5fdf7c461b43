"""
HTTP client for the relay server.

Implements the UserDirectory and KeyTransport contracts used by the key
exchange, plus the account, conversation and message calls the chat client
needs.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

import httpx

from e2ee.models import (
    EncryptedMessage,
    EncryptedPayload,
    MessageStatus,
    PublicKeyEntry,
    WrappedKey,
    parse_timestamp,
)

logger = logging.getLogger(__name__)


class RelayError(Exception):
    """The relay answered with an unexpected status code"""

    def __init__(self, status_code: int, detail: str):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Relay error {status_code}: {detail}")


@dataclass(frozen=True)
class Participant:
    id: int
    username: str
    display_name: str


@dataclass(frozen=True)
class Conversation:
    """
    A conversation as listed by the relay.

    Attributes:
        id: Conversation id
        participants: Every member, including the viewer
        last_message: Newest encrypted message, if any
        unread_count: Messages from others the viewer has not read
    """
    id: int
    participants: List[Participant]
    last_message: Optional[EncryptedMessage] = None
    unread_count: int = 0

    @property
    def participant_ids(self) -> List[int]:
        return [p.id for p in self.participants]

    def other_participants(self, own_user_id: int) -> List[Participant]:
        return [p for p in self.participants if p.id != own_user_id]

    @classmethod
    def from_dict(cls, data: Dict) -> 'Conversation':
        last_message = data.get('lastMessage')
        return cls(
            id=data['id'],
            participants=[
                Participant(id=p['id'], username=p['username'], display_name=p['displayName'])
                for p in data['participants']
            ],
            last_message=EncryptedMessage.from_dict(last_message) if last_message else None,
            unread_count=data.get('unreadCount', 0)
        )


@dataclass(frozen=True)
class Contact:
    id: int
    username: str
    display_name: str
    public_key: Dict
    added_at: datetime

    @classmethod
    def from_dict(cls, data: Dict) -> 'Contact':
        return cls(
            id=data['id'],
            username=data['username'],
            display_name=data['displayName'],
            public_key=data['publicKey'],
            added_at=parse_timestamp(data['addedAt'])
        )


class RelayClient:
    """
    Thin async wrapper around the relay's REST API.
    """

    def __init__(
        self,
        server_url: str = "http://localhost:8000",
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0
    ):
        """
        Args:
            server_url: Base URL of the relay
            http_client: Pre-configured client (e.g. bound to an ASGI app in tests)
            timeout: Request timeout in seconds
        """
        self.server_url = server_url.rstrip("/")
        self.http_client = http_client or httpx.AsyncClient(base_url=self.server_url, timeout=timeout)
        self.token: Optional[str] = None

    @property
    def _headers(self) -> Dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        return await self.http_client.request(method, path, headers=self._headers, **kwargs)

    @staticmethod
    def _raise_for(response: httpx.Response):
        try:
            detail = response.json().get("detail", response.text)
        except ValueError:
            detail = response.text
        raise RelayError(response.status_code, str(detail))

    async def _json(self, method: str, path: str, expected=(200, 201), **kwargs):
        response = await self._request(method, path, **kwargs)
        if response.status_code not in expected:
            self._raise_for(response)
        return response.json()

    # Accounts

    async def register(self, username: str, display_name: str, password: str, public_key: Dict) -> Dict:
        """
        Create an account and remember the returned token.

        Returns:
            User record
        """
        data = await self._json("POST", "/api/auth/register", json={
            "username": username,
            "displayName": display_name,
            "password": password,
            "publicKey": public_key
        })
        self.token = data["token"]
        return data["user"]

    async def login(self, username: str, password: str) -> Dict:
        data = await self._json("POST", "/api/auth/login", json={
            "username": username,
            "password": password
        })
        self.token = data["token"]
        return data["user"]

    async def logout(self):
        """
        Revoke the token on the relay and forget it.

        The token is dropped locally even if the relay cannot be reached.
        """
        if not self.token:
            return
        try:
            response = await self._request("POST", "/api/auth/logout")
            if response.status_code not in (200, 401):
                logger.warning("Relay refused logout: %s", response.status_code)
        except httpx.HTTPError as e:
            logger.warning("Could not reach relay to log out: %s", e)
        finally:
            self.token = None

    async def get_user(self, username: str) -> Optional[Dict]:
        response = await self._request("GET", f"/api/users/by-username/{username}")
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            self._raise_for(response)
        return response.json()

    async def search_users(self, query: str) -> List[Dict]:
        """Public profiles matching a username or display name fragment"""
        return await self._json("GET", "/api/users/search", params={"q": query})

    async def update_profile(self, display_name: str) -> Dict:
        return await self._json("PUT", "/api/users/profile", json={"displayName": display_name})

    # Contacts

    async def list_contacts(self) -> List[Contact]:
        data = await self._json("GET", "/api/contacts")
        return [Contact.from_dict(c) for c in data]

    async def add_contact(self, username: str, nickname: Optional[str] = None) -> Contact:
        body = {"username": username}
        if nickname:
            body["nickname"] = nickname
        return Contact.from_dict(await self._json("POST", "/api/contacts", json=body))

    async def remove_contact(self, username: str) -> bool:
        """
        Returns:
            True if the user was in the contact list
        """
        data = await self._json("DELETE", f"/api/contacts/{username}")
        return data["removed"]

    # UserDirectory

    async def get_public_key(self, user_id: int) -> Optional[PublicKeyEntry]:
        response = await self._request("GET", f"/api/users/{user_id}/public-key")
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            self._raise_for(response)
        return PublicKeyEntry.from_dict(response.json())

    # Conversations

    async def open_conversation(self, username: str) -> Conversation:
        data = await self._json("POST", "/api/conversations", json={"participantUsername": username})
        return Conversation.from_dict(data)

    async def list_conversations(self) -> List[Conversation]:
        data = await self._json("GET", "/api/conversations")
        return [Conversation.from_dict(c) for c in data]

    # KeyTransport

    async def publish_wrapped_keys(self, conversation_id: int, records: List[WrappedKey]) -> bool:
        response = await self._request(
            "POST",
            f"/api/conversations/{conversation_id}/keys",
            json={"keys": [r.to_dict() for r in records]}
        )
        if response.status_code == 409:
            return False
        if response.status_code != 201:
            self._raise_for(response)
        return True

    async def fetch_wrapped_key(self, conversation_id: int, recipient_user_id: int) -> Optional[WrappedKey]:
        response = await self._request("GET", f"/api/conversations/{conversation_id}/keys/{recipient_user_id}")
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            self._raise_for(response)
        return WrappedKey.from_dict(response.json())

    # Messages

    async def send_message(
        self,
        conversation_id: int,
        payload: EncryptedPayload,
        content_type: str = "text"
    ) -> EncryptedMessage:
        data = await self._json("POST", f"/api/conversations/{conversation_id}/messages", json={
            "content": payload.ciphertext,
            "iv": payload.nonce,
            "contentType": content_type
        })
        return EncryptedMessage.from_dict(data)

    async def fetch_messages(
        self,
        conversation_id: int,
        limit: int = 100,
        before: Optional[int] = None
    ) -> List[EncryptedMessage]:
        """
        Fetch the newest messages of a conversation, oldest first.

        Args:
            conversation_id: Conversation
            limit: Maximum number of messages
            before: Only messages older than this message id
        """
        params = {"limit": limit}
        if before is not None:
            params["before"] = before
        data = await self._json("GET", f"/api/conversations/{conversation_id}/messages", params=params)
        return [EncryptedMessage.from_dict(m) for m in data]

    async def update_status(self, message_id: int, status: MessageStatus) -> EncryptedMessage:
        data = await self._json("POST", f"/api/messages/{message_id}/status", json={"status": status.value})
        return EncryptedMessage.from_dict(data)

    async def mark_read(self, conversation_id: int) -> int:
        data = await self._json("POST", f"/api/conversations/{conversation_id}/read")
        return data["updated"]

    async def aclose(self):
        await self.http_client.aclose()
