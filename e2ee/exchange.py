"""
Session establishment for conversations.

The first sender in a conversation generates a session key, wraps it under
every participant's public key (its own included) and publishes the wrapped
keys as a single key-exchange write. The relay accepts only the first such
write per conversation; a client that loses the race adopts the winner's
key. Receivers unwrap their own copy on demand and cache it.
"""

import asyncio
import logging
from typing import Dict, Iterable, Optional

from cryptography.hazmat.primitives.asymmetric import rsa

from .errors import KeyExchangeError, ParticipantKeyMissingError
from .identity import AsymmetricIdentity
from .keystore import KeyStore
from .models import SessionKey, WrappedKey
from .session import SymmetricSession
from .transport import KeyTransport, UserDirectory

logger = logging.getLogger(__name__)


class KeyExchangeProtocol:
    """
    Orchestrates creation, distribution and retrieval of session keys.
    """

    def __init__(
        self,
        directory: UserDirectory,
        transport: KeyTransport,
        keystore: KeyStore,
        sessions: Optional[SymmetricSession] = None,
        identity: Optional[AsymmetricIdentity] = None
    ):
        """
        Args:
            directory: Public key lookup
            transport: Wrapped key storage
            keystore: Local cache for unwrapped session keys
            sessions: Session key operations
            identity: JWK import for directory entries
        """
        self.directory = directory
        self.transport = transport
        self.keystore = keystore
        self.sessions = sessions or SymmetricSession(keystore.provider)
        self.identity = identity or AsymmetricIdentity(keystore.provider)
        self._locks: Dict[int, asyncio.Lock] = {}

    def _lock_for(self, conversation_id: int) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        return lock

    async def establish_session(
        self,
        conversation_id: int,
        participant_ids: Iterable[int],
        own_user_id: int,
        own_private_key: Optional[rsa.RSAPrivateKey]
    ) -> SessionKey:
        """
        Get the session key for sending, creating and distributing it if needed.

        Args:
            conversation_id: Conversation to send in
            participant_ids: Current participants (self is added if absent)
            own_user_id: Our user id
            own_private_key: Our identity private key

        Returns:
            SessionKey shared by all participants

        Raises:
            ParticipantKeyMissingError: A participant has no public key on file
            KeyExchangeError: The exchange could not be completed
        """
        async with self._lock_for(conversation_id):
            cached = self.keystore.get_session_key(conversation_id)
            if cached is not None:
                return cached

            epoch = self.keystore.epoch

            existing = await self.transport.fetch_wrapped_key(conversation_id, own_user_id)
            if existing is not None:
                return await self._adopt(existing, own_private_key, epoch)

            recipients = sorted(set(participant_ids) | {own_user_id})
            public_keys = {}
            for user_id in recipients:
                public_keys[user_id] = await self._public_key_for(user_id)

            session_key = await self.sessions.generate_session_key(conversation_id)
            records = []
            for user_id in recipients:
                wrapped = await self.sessions.wrap_session_key(session_key, public_keys[user_id])
                records.append(WrappedKey(
                    conversation_id=conversation_id,
                    recipient_user_id=user_id,
                    wrapped_key=wrapped
                ))

            accepted = await self.transport.publish_wrapped_keys(conversation_id, records)
            if not accepted:
                logger.info("Conversation %s already has a key exchange, adopting it", conversation_id)
                winner = await self.transport.fetch_wrapped_key(conversation_id, own_user_id)
                if winner is None:
                    raise KeyExchangeError(
                        f"Conversation {conversation_id} has a key exchange without a key for user {own_user_id}"
                    )
                return await self._adopt(winner, own_private_key, epoch)

            logger.info("Published session key for conversation %s to %d participants",
                        conversation_id, len(records))
            self.keystore.cache_session_key(conversation_id, session_key, epoch=epoch)
            return session_key

    async def session_for_receive(
        self,
        conversation_id: int,
        own_user_id: int,
        own_private_key: Optional[rsa.RSAPrivateKey]
    ) -> SessionKey:
        """
        Get the session key for decrypting, unwrapping our copy if not cached.

        Raises:
            KeyExchangeError: No wrapped key for us, or it does not unwrap
        """
        async with self._lock_for(conversation_id):
            cached = self.keystore.get_session_key(conversation_id)
            if cached is not None:
                return cached

            epoch = self.keystore.epoch
            wrapped = await self.transport.fetch_wrapped_key(conversation_id, own_user_id)
            if wrapped is None:
                raise KeyExchangeError(f"No session key has been shared with user {own_user_id} "
                                       f"in conversation {conversation_id}")
            return await self._adopt(wrapped, own_private_key, epoch)

    async def _adopt(self, wrapped: WrappedKey, own_private_key, epoch: int) -> SessionKey:
        if own_private_key is None:
            raise KeyExchangeError("No local private key; this device cannot unwrap session keys")
        session_key = await self.sessions.unwrap_session_key(
            wrapped.wrapped_key, own_private_key, wrapped.conversation_id
        )
        self.keystore.cache_session_key(wrapped.conversation_id, session_key, epoch=epoch)
        return session_key

    async def _public_key_for(self, user_id: int) -> rsa.RSAPublicKey:
        entry = await self.directory.get_public_key(user_id)
        if entry is None or not entry.public_key:
            raise ParticipantKeyMissingError(user_id)
        return self.identity.import_public_key(entry.public_key)
