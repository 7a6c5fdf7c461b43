"""
Tests for the identity-scoped local key store.
"""

import sqlite3

import pytest

from e2ee.errors import KeyStoreError
from e2ee.keystore import KeyStore
from e2ee.models import SessionKey

from conftest import FAST_KDF_ITERATIONS


def make_session_key(fill: int) -> SessionKey:
    return SessionKey(key_material=bytes([fill]) * 32)


def test_private_key_persists_across_lock_and_unlock(make_keystore, alice_keys):
    store = make_keystore()
    assert store.unlock("Alice", "pw-alice")
    store.put_private_key("alice", alice_keys.private_key)

    store.lock()
    assert not store.is_unlocked
    assert store.unlock("alice", "pw-alice")

    loaded = store.get_private_key("ALICE")
    assert loaded.private_numbers() == alice_keys.private_key.private_numbers()


def test_private_key_survives_reopening_the_database(tmp_path, alice_keys):
    store = KeyStore(storage_dir=str(tmp_path), kdf_iterations=FAST_KDF_ITERATIONS)
    store.unlock("alice", "pw")
    store.put_private_key("alice", alice_keys.private_key)
    store.close()

    reopened = KeyStore(storage_dir=str(tmp_path), kdf_iterations=FAST_KDF_ITERATIONS)
    try:
        assert reopened.unlock("alice", "pw")
        assert reopened.get_private_key("alice").private_numbers() == alice_keys.private_key.private_numbers()
    finally:
        reopened.close()


def test_private_key_is_stored_under_namespaced_name_and_encrypted(make_keystore, alice_keys):
    store = make_keystore()
    store.unlock("Alice", "pw")
    store.put_private_key("Alice", alice_keys.private_key)

    assert store.private_key_name("Alice") == "securechat_private_alice"
    conn = sqlite3.connect(str(store.db_path))
    try:
        rows = conn.execute("SELECT key_name, encrypted_data FROM private_keys").fetchall()
    finally:
        conn.close()
    assert [r[0] for r in rows] == ["securechat_private_alice"]
    assert b'"d"' not in rows[0][1]


def test_wrong_password_is_rejected(make_keystore):
    store = make_keystore()
    assert store.unlock("alice", "right")
    store.lock()

    assert store.unlock("alice", "wrong") is False
    assert not store.is_unlocked
    with pytest.raises(KeyStoreError):
        store.get_private_key("alice")


def test_missing_private_key_returns_none(make_keystore):
    """A device that never stored the key reports None rather than failing"""
    store = make_keystore()
    store.unlock("alice", "pw")
    assert store.get_private_key("alice") is None


def test_locked_store_refuses_access(make_keystore, alice_keys):
    store = make_keystore()
    with pytest.raises(KeyStoreError):
        store.put_private_key("alice", alice_keys.private_key)
    with pytest.raises(KeyStoreError):
        store.get_session_key(1)
    with pytest.raises(KeyStoreError):
        store.cache_session_key(1, make_session_key(1))


def test_identities_do_not_share_key_material(make_keystore, alice_keys, bob_keys):
    store = make_keystore()
    store.unlock("alice", "pw-a")
    store.put_private_key("alice", alice_keys.private_key)
    store.cache_session_key(10, make_session_key(0xAA))

    store.unlock("bob", "pw-b")
    with pytest.raises(KeyStoreError):
        store.get_private_key("alice")
    with pytest.raises(KeyStoreError):
        store.put_private_key("alice", bob_keys.private_key)
    assert store.get_session_key(10) is None

    store.cache_session_key(10, make_session_key(0xBB))

    store.unlock("alice", "pw-a")
    assert store.get_session_key(10).key_material == bytes([0xAA]) * 32


def test_session_key_cache_last_write_wins(make_keystore):
    store = make_keystore()
    store.unlock("alice", "pw")
    store.cache_session_key(5, make_session_key(1))
    store.cache_session_key(5, make_session_key(2))

    assert store.get_session_key(5).key_material == bytes([2]) * 32
    assert store.get_session_key(5).conversation_id == 5

    store.lock()
    store.unlock("alice", "pw")
    assert store.get_session_key(5).key_material == bytes([2]) * 32


def test_stale_epoch_discards_session_key(make_keystore):
    """A key obtained before a logout/login is never cached afterwards"""
    store = make_keystore()
    store.unlock("alice", "pw")
    epoch = store.epoch

    store.unlock("bob", "pw")
    with pytest.raises(KeyStoreError):
        store.cache_session_key(3, make_session_key(7), epoch=epoch)
    assert store.get_session_key(3) is None


def test_rejects_session_key_of_wrong_length(make_keystore):
    store = make_keystore()
    store.unlock("alice", "pw")
    with pytest.raises(KeyStoreError):
        store.cache_session_key(1, SessionKey(key_material=b"short"))


def test_tampered_session_row_fails_authentication(make_keystore):
    store = make_keystore()
    store.unlock("alice", "pw")
    store.cache_session_key(1, make_session_key(9))

    # Move Alice's row to another conversation; associated data no longer matches
    store.db.execute("UPDATE session_keys SET conversation_id = 2 WHERE conversation_id = 1")
    store.db.commit()
    store.lock()
    store.unlock("alice", "pw")

    with pytest.raises(KeyStoreError):
        store.get_session_key(2)


@pytest.mark.asyncio
async def test_unlock_async_matches_unlock(make_keystore, alice_keys):
    store = make_keystore()
    assert await store.unlock_async("Alice", "pw")
    store.put_private_key("alice", alice_keys.private_key)
    store.lock()

    assert not await store.unlock_async("alice", "wrong")
    assert not store.is_unlocked
    assert store.unlock("alice", "pw")
    assert store.get_private_key("alice").private_numbers() == alice_keys.private_key.private_numbers()


@pytest.mark.asyncio
async def test_unlock_async_aborts_if_locked_meanwhile(make_keystore, monkeypatch):
    store = make_keystore()
    derive = store.derive_key

    def derive_then_lock(password, salt):
        key = derive(password, salt)
        store.lock()
        return key

    monkeypatch.setattr(store, "derive_key", derive_then_lock)
    with pytest.raises(KeyStoreError):
        await store.unlock_async("alice", "pw")
    assert not store.is_unlocked
