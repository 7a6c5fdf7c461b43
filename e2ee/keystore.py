"""
Encrypted local key storage for the chat client.

Stores identity private keys and cached session keys on disk, encrypted
with a key derived from the user's password. Every entry is scoped to the
local identity that wrote it.
"""

import asyncio
import json
import logging
import sqlite3
from pathlib import Path
from typing import Dict, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import KeyStoreError
from .identity import AsymmetricIdentity
from .models import SessionKey, format_timestamp, parse_timestamp
from .primitives import CryptoProvider, NONCE_SIZE, SESSION_KEY_SIZE

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "securechat"
DEFAULT_KDF_ITERATIONS = 100000
_VERIFIER = b"securechat-keystore-v1"


class KeyStore:
    """
    Identity-scoped durable storage for key material.

    unlock() selects the active identity; all reads and writes apply to that
    identity only. lock() forgets the identity and the in-memory cache.
    Writes never await, so on a single event loop a concurrent reader sees
    either the old entry or the new one.
    """

    def __init__(
        self,
        storage_dir: str = "client_data",
        namespace: str = DEFAULT_NAMESPACE,
        kdf_iterations: int = DEFAULT_KDF_ITERATIONS,
        provider: Optional[CryptoProvider] = None
    ):
        """
        Initialize key storage.

        Args:
            storage_dir: Directory holding the key database
            namespace: Prefix for persisted key names
            kdf_iterations: PBKDF2 iteration count
            provider: Crypto capability
        """
        self.namespace = namespace
        self.kdf_iterations = kdf_iterations
        self.provider = provider or CryptoProvider()
        self.identity = AsymmetricIdentity(self.provider)

        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self.db_path = self.storage_dir / f"{namespace}_keys.db"

        self.username: Optional[str] = None
        self.epoch = 0
        self._encryption_key: Optional[bytes] = None
        self._session_cache: Dict[int, SessionKey] = {}
        self.db = sqlite3.connect(str(self.db_path))
        self._init_database()

    def _init_database(self):
        """Initialize SQLite tables"""
        cursor = self.db.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS identities (
                username TEXT PRIMARY KEY,
                salt BLOB NOT NULL,
                verifier BLOB NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS private_keys (
                key_name TEXT PRIMARY KEY,
                encrypted_data BLOB NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS session_keys (
                owner TEXT NOT NULL,
                conversation_id INTEGER NOT NULL,
                encrypted_key BLOB NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (owner, conversation_id)
            )
        """)

        self.db.commit()

    def derive_key(self, password: str, salt: bytes) -> bytes:
        """
        Derive the storage key from a password using PBKDF2.

        Args:
            password: User's password
            salt: Per-identity salt

        Returns:
            32-byte encryption key
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self.kdf_iterations,
        )
        return kdf.derive(password.encode())

    def private_key_name(self, username: str) -> str:
        """Persistence key for a user's private key"""
        return f"{self.namespace}_private_{username.lower()}"

    @property
    def is_unlocked(self) -> bool:
        return self._encryption_key is not None

    def unlock(self, username: str, password: str) -> bool:
        """
        Activate an identity scope.

        The first unlock for a username creates its salt; later unlocks must
        use the same password.

        Args:
            username: Local identity
            password: User's password

        Returns:
            True if unlocked, False on a wrong password
        """
        username, salt, verifier = self._begin_unlock(username)
        key = self.derive_key(password, salt)
        return self._finish_unlock(username, salt, verifier, key)

    async def unlock_async(self, username: str, password: str) -> bool:
        """
        unlock() with the key derivation run in a worker thread, so the
        event loop keeps serving other tasks.
        """
        username, salt, verifier = self._begin_unlock(username)
        epoch = self.epoch
        key = await asyncio.to_thread(self.derive_key, password, salt)
        if epoch != self.epoch:
            raise KeyStoreError("Key store was locked or switched while unlocking")
        return self._finish_unlock(username, salt, verifier, key)

    def _begin_unlock(self, username: str) -> Tuple[str, bytes, Optional[bytes]]:
        self.lock()
        username = username.lower()

        cursor = self.db.cursor()
        cursor.execute("SELECT salt, verifier FROM identities WHERE username = ?", (username,))
        row = cursor.fetchone()
        if row is None:
            return username, self.provider.random_bytes(16), None
        return username, row[0], row[1]

    def _finish_unlock(self, username: str, salt: bytes, verifier: Optional[bytes], key: bytes) -> bool:
        if verifier is None:
            verifier = self._encrypt(key, _VERIFIER, username.encode())
            cursor = self.db.cursor()
            cursor.execute(
                "INSERT INTO identities (username, salt, verifier) VALUES (?, ?, ?)",
                (username, salt, verifier)
            )
            self.db.commit()
            logger.info("Created key store scope for %s", username)
        else:
            try:
                self._decrypt(key, verifier, username.encode())
            except KeyStoreError:
                logger.warning("Wrong password for key store scope %s", username)
                return False

        self._encryption_key = key
        self.username = username
        self.epoch += 1
        return True

    def lock(self):
        """Forget the active identity and every cached key"""
        if self.username is not None:
            logger.debug("Locking key store scope %s", self.username)
        self._encryption_key = None
        self.username = None
        self._session_cache.clear()
        self.epoch += 1

    def _require_scope(self, username: Optional[str] = None) -> str:
        if self._encryption_key is None or self.username is None:
            raise KeyStoreError("Key store is locked")
        if username is not None and username.lower() != self.username:
            raise KeyStoreError(f"Key store is scoped to {self.username}, not {username.lower()}")
        return self.username

    def _encrypt(self, key: bytes, data: bytes, associated_data: bytes) -> bytes:
        nonce = self.provider.random_bytes(NONCE_SIZE)
        return nonce + self.provider.aead_encrypt(key, nonce, data, associated_data)

    def _decrypt(self, key: bytes, blob: bytes, associated_data: bytes) -> bytes:
        try:
            return self.provider.aead_decrypt(key, blob[:NONCE_SIZE], blob[NONCE_SIZE:], associated_data)
        except (InvalidTag, ValueError) as e:
            raise KeyStoreError("Stored entry failed authentication") from e

    def put_private_key(self, username: str, private_key: rsa.RSAPrivateKey):
        """
        Persist the active identity's private key.

        Args:
            username: Must be the active identity
            private_key: RSA private key
        """
        self._require_scope(username)
        key_name = self.private_key_name(username)
        data = json.dumps(self.identity.export_private_key(private_key)).encode()
        encrypted = self._encrypt(self._encryption_key, data, key_name.encode())

        cursor = self.db.cursor()
        cursor.execute(
            "INSERT OR REPLACE INTO private_keys (key_name, encrypted_data) VALUES (?, ?)",
            (key_name, encrypted)
        )
        self.db.commit()

    def get_private_key(self, username: str) -> Optional[rsa.RSAPrivateKey]:
        """
        Load the active identity's private key.

        Args:
            username: Must be the active identity

        Returns:
            RSA private key, or None if this device never stored one
        """
        self._require_scope(username)
        key_name = self.private_key_name(username)

        cursor = self.db.cursor()
        cursor.execute("SELECT encrypted_data FROM private_keys WHERE key_name = ?", (key_name,))
        result = cursor.fetchone()
        if not result:
            return None

        decrypted = self._decrypt(self._encryption_key, result[0], key_name.encode())
        return self.identity.import_private_key(json.loads(decrypted.decode()))

    def cache_session_key(self, conversation_id: int, session_key: SessionKey, epoch: Optional[int] = None):
        """
        Cache a session key for the active identity. Last write wins.

        Args:
            conversation_id: Conversation the key belongs to
            session_key: Validated session key
            epoch: Epoch observed when the key was obtained; if the store
                has been locked or switched since, the key is discarded

        Raises:
            KeyStoreError: If locked, or if the epoch no longer matches
        """
        owner = self._require_scope()
        if epoch is not None and epoch != self.epoch:
            raise KeyStoreError("Identity changed while the session key was being obtained")
        if len(session_key.key_material) != SESSION_KEY_SIZE:
            raise KeyStoreError("Refusing to cache a session key of the wrong length")

        session_key = session_key.bind(conversation_id)
        encrypted = self._encrypt(
            self._encryption_key, session_key.key_material, self._session_aad(owner, conversation_id)
        )

        cursor = self.db.cursor()
        cursor.execute(
            "INSERT OR REPLACE INTO session_keys (owner, conversation_id, encrypted_key, created_at) "
            "VALUES (?, ?, ?, ?)",
            (owner, conversation_id, encrypted, format_timestamp(session_key.created_at))
        )
        self.db.commit()
        self._session_cache[conversation_id] = session_key

    def get_session_key(self, conversation_id: int) -> Optional[SessionKey]:
        """
        Return the cached session key for a conversation, or None.
        """
        owner = self._require_scope()
        cached = self._session_cache.get(conversation_id)
        if cached is not None:
            return cached

        cursor = self.db.cursor()
        cursor.execute(
            "SELECT encrypted_key, created_at FROM session_keys WHERE owner = ? AND conversation_id = ?",
            (owner, conversation_id)
        )
        result = cursor.fetchone()
        if not result:
            return None

        key_material = self._decrypt(self._encryption_key, result[0], self._session_aad(owner, conversation_id))
        session_key = SessionKey(
            key_material=key_material,
            conversation_id=conversation_id,
            created_at=parse_timestamp(result[1])
        )
        self._session_cache[conversation_id] = session_key
        return session_key

    @staticmethod
    def _session_aad(owner: str, conversation_id: int) -> bytes:
        return f"{owner}:{conversation_id}".encode()

    def close(self):
        """Lock and close the database connection"""
        self.lock()
        if self.db:
            self.db.close()
            self.db = None
