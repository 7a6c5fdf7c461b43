"""
End-to-end encrypted chat client.

Ties the encryption core to the relay: identity keys are generated at
registration, session keys are negotiated per conversation, and only
ciphertext ever leaves the client.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from cryptography.hazmat.primitives.asymmetric import rsa

from e2ee.cipher import MessageCipher
from e2ee.errors import DecryptionError, KeyExchangeError, KeyStoreError
from e2ee.exchange import KeyExchangeProtocol
from e2ee.identity import AsymmetricIdentity
from e2ee.keystore import KeyStore
from e2ee.models import EncryptedMessage, MessageStatus, SessionKey
from e2ee.primitives import CryptoProvider
from e2ee.session import SymmetricSession

from .relay import Contact, Conversation, RelayClient, RelayError

logger = logging.getLogger(__name__)

UNDECRYPTABLE_PLACEHOLDER = "Unable to decrypt this message"


@dataclass(frozen=True)
class DecryptedMessage:
    """
    Client-side view of a message.

    Attributes:
        message: The encrypted record as stored by the relay
        plaintext: Decrypted text, or None if decryption failed
        error: Why decryption failed, if it did
    """
    message: EncryptedMessage
    plaintext: Optional[str] = None
    error: Optional[str] = None

    @property
    def text(self) -> str:
        return self.plaintext if self.plaintext is not None else UNDECRYPTABLE_PLACEHOLDER

    @property
    def ok(self) -> bool:
        return self.plaintext is not None


class ChatClient:
    """
    End-to-end encrypted chat client.
    """

    def __init__(self, relay: RelayClient, keystore: KeyStore, provider: Optional[CryptoProvider] = None):
        """
        Initialize chat client.

        Args:
            relay: Relay API client (also the user directory and key transport)
            keystore: Local key storage
            provider: Crypto capability shared by all components
        """
        self.relay = relay
        self.keystore = keystore
        self.provider = provider or keystore.provider
        self.identity = AsymmetricIdentity(self.provider)
        self.sessions = SymmetricSession(self.provider)
        self.cipher = MessageCipher(self.provider)
        self.exchange = KeyExchangeProtocol(
            directory=relay,
            transport=relay,
            keystore=keystore,
            sessions=self.sessions,
            identity=self.identity
        )
        self.user: Optional[Dict] = None
        self.private_key: Optional[rsa.RSAPrivateKey] = None

    @property
    def user_id(self) -> int:
        if self.user is None:
            raise RuntimeError("Not logged in")
        return self.user["id"]

    @property
    def username(self) -> Optional[str]:
        return self.user["username"] if self.user else None

    async def register(self, username: str, display_name: str, password: str) -> Dict:
        """
        Register a new account.

        Generates the identity keypair, uploads the public half and stores
        the private half in the local key store.

        Returns:
            User record
        """
        keypair = await self.identity.generate_identity_key_pair()
        public_jwk = self.identity.export_public_key(keypair.public_key)

        user = await self.relay.register(username, display_name, password, public_jwk)

        if not await self.keystore.unlock_async(user["username"], password):
            await self.relay.logout()
            raise KeyStoreError(f"Local key store for {user['username']} rejected the password")
        self.keystore.put_private_key(user["username"], keypair.private_key)

        self.user = user
        self.private_key = keypair.private_key
        logger.info("Registered %s (user %s)", user["username"], user["id"])
        return user

    async def login(self, username: str, password: str) -> Dict:
        """
        Log in with an existing account.

        A device that never stored this user's private key can log in but
        cannot decrypt any history.

        Returns:
            User record
        """
        user = await self.relay.login(username, password)

        if not await self.keystore.unlock_async(user["username"], password):
            await self.relay.logout()
            raise KeyStoreError(f"Local key store for {user['username']} rejected the password")

        self.user = user
        self.private_key = self.keystore.get_private_key(user["username"])
        if self.private_key is None:
            logger.warning("No local private key for %s; existing messages cannot be decrypted",
                           user["username"])
        return user

    async def logout(self):
        """Revoke the session token and forget every key held in memory"""
        await self.relay.logout()
        self.keystore.lock()
        self.user = None
        self.private_key = None

    async def open_conversation(self, username: str) -> Conversation:
        return await self.relay.open_conversation(username)

    async def list_conversations(self) -> List[Conversation]:
        return await self.relay.list_conversations()

    async def _session_for_send(self, conversation: Conversation) -> SessionKey:
        return await self.exchange.establish_session(
            conversation.id,
            conversation.participant_ids,
            self.user_id,
            self.private_key
        )

    async def send_message(self, conversation: Conversation, text: str, content_type: str = "text") -> EncryptedMessage:
        """
        Encrypt and send a message.

        Args:
            conversation: Target conversation
            text: Message text
            content_type: Application content type

        Returns:
            The stored encrypted message
        """
        session_key = await self._session_for_send(conversation)
        payload = await self.cipher.encrypt(text, session_key)
        return await self.relay.send_message(conversation.id, payload, content_type)

    async def _decrypt_one(self, message: EncryptedMessage, session_key: Optional[SessionKey]) -> DecryptedMessage:
        if session_key is None:
            return DecryptedMessage(message=message, error="no session key")
        try:
            plaintext = await self.cipher.decrypt(message.payload, session_key)
        except DecryptionError as e:
            logger.warning("Could not decrypt message %s in conversation %s: %s",
                           message.id, message.conversation_id, e)
            return DecryptedMessage(message=message, error=str(e))
        return DecryptedMessage(message=message, plaintext=plaintext)

    async def _receive_key(self, conversation_id: int) -> Optional[SessionKey]:
        try:
            return await self.exchange.session_for_receive(conversation_id, self.user_id, self.private_key)
        except KeyExchangeError as e:
            logger.warning("No usable session key for conversation %s: %s", conversation_id, e)
            return None

    async def _mark_delivered(self, item: DecryptedMessage) -> DecryptedMessage:
        try:
            updated = await self.relay.update_status(item.message.id, MessageStatus.DELIVERED)
        except RelayError as e:
            if e.status_code != 409:
                raise
            # Already read, e.g. from another poll
            logger.debug("Message %s already past delivered: %s", item.message.id, e.detail)
            return item
        return DecryptedMessage(message=updated, plaintext=item.plaintext)

    async def fetch_messages(
        self,
        conversation: Conversation,
        limit: int = 100,
        before: Optional[int] = None
    ) -> List[DecryptedMessage]:
        """
        Fetch and decrypt a conversation's newest messages.

        Messages are decrypted concurrently and returned in the relay's
        creation order. Undecryptable messages are returned with a
        placeholder text instead of failing the whole conversation. Received
        messages still marked "sent" are advanced to "delivered".

        Args:
            conversation: Conversation to read
            limit: Maximum number of messages
            before: Page back to messages older than this message id

        Returns:
            Messages, oldest first
        """
        records = await self.relay.fetch_messages(conversation.id, limit, before)
        if not records:
            return []

        session_key = await self._receive_key(conversation.id)
        results = await asyncio.gather(*(self._decrypt_one(m, session_key) for m in records))
        results = sorted(results, key=lambda d: d.message.order_key)

        delivered = []
        for item in results:
            if item.ok and item.message.sender_id != self.user_id and item.message.status == MessageStatus.SENT:
                item = await self._mark_delivered(item)
            delivered.append(item)
        return delivered

    async def preview(self, conversation: Conversation) -> Optional[DecryptedMessage]:
        """Decrypted newest message of a listed conversation, without changing its status"""
        if conversation.last_message is None:
            return None
        session_key = await self._receive_key(conversation.id)
        return await self._decrypt_one(conversation.last_message, session_key)

    async def mark_read(self, conversation: Conversation) -> int:
        """Mark every received message in the conversation as read"""
        return await self.relay.mark_read(conversation.id)

    async def search_users(self, query: str) -> List[Dict]:
        return await self.relay.search_users(query)

    async def update_profile(self, display_name: str) -> Dict:
        self.user = await self.relay.update_profile(display_name)
        return self.user

    async def list_contacts(self) -> List[Contact]:
        return await self.relay.list_contacts()

    async def add_contact(self, username: str, nickname: Optional[str] = None) -> Contact:
        return await self.relay.add_contact(username, nickname)

    async def remove_contact(self, username: str) -> bool:
        return await self.relay.remove_contact(username)

    async def close(self):
        await self.logout()
        await self.relay.aclose()
