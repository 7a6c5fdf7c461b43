import hashlib
from itertools import count

import pytest

from e2ee.identity import AsymmetricIdentity, IdentityKeyPair
from e2ee.keystore import KeyStore
from e2ee.primitives import CryptoProvider

FAST_KDF_ITERATIONS = 1000


class DeterministicProvider(CryptoProvider):
    """Provider whose random bytes come from a seeded SHA-256 counter stream"""

    def __init__(self, seed: bytes = b"seed"):
        self.seed = seed
        self._counter = count()
        self.requests = []

    def random_bytes(self, length: int) -> bytes:
        self.requests.append(length)
        out = b""
        while len(out) < length:
            out += hashlib.sha256(self.seed + next(self._counter).to_bytes(8, "big")).digest()
        return out[:length]


def _keypair() -> IdentityKeyPair:
    private_key = CryptoProvider().generate_rsa_private_key()
    return IdentityKeyPair(public_key=private_key.public_key(), private_key=private_key)


@pytest.fixture(scope="session")
def alice_keys() -> IdentityKeyPair:
    return _keypair()


@pytest.fixture(scope="session")
def bob_keys() -> IdentityKeyPair:
    return _keypair()


@pytest.fixture(scope="session")
def carol_keys() -> IdentityKeyPair:
    return _keypair()


@pytest.fixture
def identity() -> AsymmetricIdentity:
    return AsymmetricIdentity()


@pytest.fixture
def make_keystore(tmp_path):
    """Factory for key stores in separate directories (one per simulated device)"""
    stores = []

    def factory(device: str = "device") -> KeyStore:
        store = KeyStore(storage_dir=str(tmp_path / device), kdf_iterations=FAST_KDF_ITERATIONS)
        stores.append(store)
        return store

    yield factory
    for store in stores:
        store.close()
