"""
Tests for the cryptographic building blocks: identity keys, session keys
and message encryption.
"""

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from conftest import DeterministicProvider
from e2ee.cipher import MessageCipher
from e2ee.errors import DecryptionError, KeyExchangeError, KeyFormatError
from e2ee.identity import AsymmetricIdentity
from e2ee.models import EncryptedPayload, SessionKey
from e2ee.primitives import NONCE_SIZE, SESSION_KEY_SIZE, CryptoProvider, b64decode, b64encode
from e2ee.session import SymmetricSession

PLAINTEXTS = [
    "hello",
    "",
    "Grüße, 你好, 🔐",
    "x" * 10000,
    "line one\nline two\ttabbed",
]


def flip(data: bytes, index: int) -> bytes:
    return data[:index] + bytes([data[index] ^ 0x01]) + data[index + 1:]


# Identity keys

@pytest.mark.asyncio
async def test_generate_identity_key_pair():
    """Identity keys are 2048-bit RSA with exponent 65537"""
    keypair = await AsymmetricIdentity().generate_identity_key_pair()

    assert isinstance(keypair.private_key, rsa.RSAPrivateKey)
    assert keypair.private_key.key_size == 2048
    assert keypair.public_key.public_numbers() == keypair.private_key.public_key().public_numbers()
    assert keypair.public_key.public_numbers().e == 65537
    assert "private_key" not in repr(keypair)


def test_public_key_jwk_round_trip(identity, alice_keys):
    """Importing an exported public key yields the same key"""
    jwk = identity.export_public_key(alice_keys.public_key)

    assert jwk["kty"] == "RSA"
    assert jwk["alg"] == "RSA-OAEP-256"
    assert jwk["key_ops"] == ["encrypt"]
    assert "d" not in jwk

    imported = identity.import_public_key(jwk)
    assert imported.public_numbers() == alice_keys.public_key.public_numbers()
    assert identity.export_public_key(imported) == jwk


def test_private_key_jwk_round_trip(identity, alice_keys):
    jwk = identity.export_private_key(alice_keys.private_key)

    for member in ("n", "e", "d", "p", "q", "dp", "dq", "qi"):
        assert member in jwk

    imported = identity.import_private_key(jwk)
    assert imported.private_numbers() == alice_keys.private_key.private_numbers()


@pytest.mark.asyncio
async def test_imported_public_key_wraps_for_original_private_key(identity, alice_keys):
    sessions = SymmetricSession()
    session_key = await sessions.generate_session_key()
    imported = identity.import_public_key(identity.export_public_key(alice_keys.public_key))

    wrapped = await sessions.wrap_session_key(session_key, imported)
    unwrapped = await sessions.unwrap_session_key(wrapped, alice_keys.private_key)

    assert unwrapped.key_material == session_key.key_material


@pytest.mark.parametrize("jwk", [
    "not a dict",
    {},
    {"kty": "EC", "crv": "P-256", "x": "AA", "y": "AA"},
    {"kty": "RSA", "e": "AQAB"},
    {"kty": "RSA", "n": "!!!not-base64!!!", "e": "AQAB"},
    {"kty": "RSA", "n": 12345, "e": "AQAB"},
    {"kty": "RSA", "n": "AQAB", "e": "AQAB", "alg": "RS256"},
])
def test_import_public_key_rejects_malformed(identity, jwk):
    with pytest.raises(KeyFormatError):
        identity.import_public_key(jwk)


def test_import_public_key_rejects_small_key(identity):
    weak = rsa.generate_private_key(public_exponent=65537, key_size=1024)
    jwk = identity.export_public_key(weak.public_key())

    with pytest.raises(KeyFormatError, match="too small"):
        identity.import_public_key(jwk)


def test_import_public_key_rejects_private_jwk(identity, alice_keys):
    """A JWK with private members is never accepted as a public key"""
    with pytest.raises(KeyFormatError):
        identity.import_public_key(identity.export_private_key(alice_keys.private_key))


def test_import_private_key_rejects_public_jwk(identity, alice_keys):
    with pytest.raises(KeyFormatError):
        identity.import_private_key(identity.export_public_key(alice_keys.public_key))


def test_export_rejects_wrong_key_type(identity, alice_keys):
    with pytest.raises(KeyFormatError):
        identity.export_public_key(alice_keys.private_key)
    with pytest.raises(KeyFormatError):
        identity.export_private_key(alice_keys.public_key)


# Session keys

@pytest.mark.asyncio
async def test_generate_session_key():
    sessions = SymmetricSession()
    first = await sessions.generate_session_key(7)
    second = await sessions.generate_session_key(7)

    assert len(first.key_material) == SESSION_KEY_SIZE
    assert first.conversation_id == 7
    assert first.key_material != second.key_material
    assert first.key_material.hex() not in repr(first)


@pytest.mark.asyncio
async def test_wrap_round_trip_is_functionally_equal(alice_keys):
    """Ciphertext made with the original key decrypts with the unwrapped key and vice versa"""
    sessions = SymmetricSession()
    cipher = MessageCipher()
    original = await sessions.generate_session_key()

    wrapped = await sessions.wrap_session_key(original, alice_keys.public_key)
    unwrapped = await sessions.unwrap_session_key(wrapped, alice_keys.private_key, conversation_id=3)

    assert unwrapped.conversation_id == 3
    assert await cipher.decrypt(await cipher.encrypt("ping", original), unwrapped) == "ping"
    assert await cipher.decrypt(await cipher.encrypt("pong", unwrapped), original) == "pong"


@pytest.mark.asyncio
async def test_wrapping_is_randomized(alice_keys):
    sessions = SymmetricSession()
    session_key = await sessions.generate_session_key()

    first = await sessions.wrap_session_key(session_key, alice_keys.public_key)
    second = await sessions.wrap_session_key(session_key, alice_keys.public_key)

    assert first != second


@pytest.mark.asyncio
async def test_unwrap_with_other_identity_fails(alice_keys, bob_keys):
    """A key wrapped for Alice never unwraps under Bob's private key"""
    sessions = SymmetricSession()
    session_key = await sessions.generate_session_key()
    wrapped = await sessions.wrap_session_key(session_key, alice_keys.public_key)

    with pytest.raises(KeyExchangeError):
        await sessions.unwrap_session_key(wrapped, bob_keys.private_key)


@pytest.mark.asyncio
async def test_unwrap_corrupted_blob_fails(alice_keys):
    sessions = SymmetricSession()
    session_key = await sessions.generate_session_key()
    blob = b64decode(await sessions.wrap_session_key(session_key, alice_keys.public_key))

    for corrupted in (b64encode(flip(blob, 0)), b64encode(flip(blob, len(blob) - 1)), b64encode(blob[:-1])):
        with pytest.raises(KeyExchangeError):
            await sessions.unwrap_session_key(corrupted, alice_keys.private_key)

    with pytest.raises(KeyExchangeError):
        await sessions.unwrap_session_key("***", alice_keys.private_key)


@pytest.mark.asyncio
async def test_unwrap_rejects_wrong_key_length(alice_keys):
    provider = CryptoProvider()
    short = b64encode(provider.rsa_oaep_encrypt(alice_keys.public_key, b"\x00" * 16))

    with pytest.raises(KeyExchangeError, match="length"):
        await SymmetricSession(provider).unwrap_session_key(short, alice_keys.private_key)


@pytest.mark.asyncio
async def test_unwrap_without_private_key_fails(alice_keys):
    sessions = SymmetricSession()
    session_key = await sessions.generate_session_key()
    wrapped = await sessions.wrap_session_key(session_key, alice_keys.public_key)

    with pytest.raises(KeyExchangeError):
        await sessions.unwrap_session_key(wrapped, None)


# Message encryption

@pytest.mark.asyncio
@pytest.mark.parametrize("plaintext", PLAINTEXTS)
async def test_encrypt_decrypt_round_trip(plaintext):
    cipher = MessageCipher()
    key = await SymmetricSession().generate_session_key()

    payload = await cipher.encrypt(plaintext, key)

    assert plaintext == "" or plaintext not in payload.ciphertext
    assert await cipher.decrypt(payload, key) == plaintext


@pytest.mark.asyncio
async def test_payload_base64_is_exact():
    """Nonce and ciphertext survive base64 byte-for-byte"""
    cipher = MessageCipher()
    key = await SymmetricSession().generate_session_key()

    payload = await cipher.encrypt("hello", key)
    nonce = b64decode(payload.nonce)
    ciphertext = b64decode(payload.ciphertext)

    assert len(nonce) == NONCE_SIZE
    assert len(ciphertext) == len("hello") + 16
    assert b64encode(nonce) == payload.nonce
    assert b64encode(ciphertext) == payload.ciphertext


@pytest.mark.asyncio
async def test_any_flipped_byte_is_detected():
    """Flipping any byte of ciphertext or nonce raises DecryptionError"""
    cipher = MessageCipher()
    key = await SymmetricSession().generate_session_key()
    payload = await cipher.encrypt("attack at dawn", key)
    nonce = b64decode(payload.nonce)
    ciphertext = b64decode(payload.ciphertext)

    for index in range(len(ciphertext)):
        tampered = EncryptedPayload(ciphertext=b64encode(flip(ciphertext, index)), nonce=payload.nonce)
        with pytest.raises(DecryptionError):
            await cipher.decrypt(tampered, key)

    for index in range(len(nonce)):
        tampered = EncryptedPayload(ciphertext=payload.ciphertext, nonce=b64encode(flip(nonce, index)))
        with pytest.raises(DecryptionError):
            await cipher.decrypt(tampered, key)


@pytest.mark.asyncio
async def test_decrypt_with_wrong_key_fails():
    sessions = SymmetricSession()
    cipher = MessageCipher()
    payload = await cipher.encrypt("secret", await sessions.generate_session_key())

    with pytest.raises(DecryptionError):
        await cipher.decrypt(payload, await sessions.generate_session_key())


@pytest.mark.asyncio
async def test_decrypt_rejects_malformed_payloads():
    cipher = MessageCipher()
    key = await SymmetricSession().generate_session_key()
    good = await cipher.encrypt("hello", key)

    malformed = [
        EncryptedPayload(ciphertext="not base64!", nonce=good.nonce),
        EncryptedPayload(ciphertext=good.ciphertext, nonce="%%%"),
        EncryptedPayload(ciphertext=good.ciphertext, nonce=b64encode(b"\x00" * 16)),
        EncryptedPayload(ciphertext=b64encode(b"short"), nonce=good.nonce),
        EncryptedPayload(ciphertext="hello", nonce=good.nonce),
    ]
    for payload in malformed:
        with pytest.raises(DecryptionError):
            await cipher.decrypt(payload, key)


@pytest.mark.asyncio
async def test_associated_data_must_match():
    cipher = MessageCipher()
    key = await SymmetricSession().generate_session_key()
    payload = await cipher.encrypt("bound", key, associated_data=b"conversation:1")

    assert await cipher.decrypt(payload, key, associated_data=b"conversation:1") == "bound"
    with pytest.raises(DecryptionError):
        await cipher.decrypt(payload, key, associated_data=b"conversation:2")


@pytest.mark.asyncio
async def test_nonces_never_repeat():
    """Same plaintext, same key, 10,000 encryptions: no repeated nonce or ciphertext"""
    cipher = MessageCipher()
    key = await SymmetricSession().generate_session_key()
    nonces = set()
    ciphertexts = set()

    for _ in range(10000):
        payload = await cipher.encrypt("same message", key)
        nonces.add(payload.nonce)
        ciphertexts.add(payload.ciphertext)

    assert len(nonces) == 10000
    assert len(ciphertexts) == 10000


@pytest.mark.asyncio
async def test_deterministic_provider_drives_keys_and_nonces():
    """Injected providers make output reproducible"""
    outputs = []
    for _ in range(2):
        provider = DeterministicProvider(b"fixed")
        key = await SymmetricSession(provider).generate_session_key()
        payload = await MessageCipher(provider).encrypt("repeatable", key)
        outputs.append((key.key_material, payload))
        assert provider.requests == [SESSION_KEY_SIZE, NONCE_SIZE]

    assert outputs[0] == outputs[1]


@pytest.mark.asyncio
async def test_encrypt_rejects_wrong_key_length():
    cipher = MessageCipher()
    for size in (0, 16, SESSION_KEY_SIZE + 1):
        with pytest.raises(KeyFormatError):
            await cipher.encrypt("hello", SessionKey(key_material=b"\x01" * size))
