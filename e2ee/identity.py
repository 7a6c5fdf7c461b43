"""
Long-lived user identity keys.

Each user owns one RSA-OAEP keypair. The public half is published to the
user directory as a JWK; the private half never leaves the client and is
only used to unwrap session keys.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose.backends.cryptography_backend import CryptographyRSAKey
from jose.constants import ALGORITHMS
from jose.exceptions import JWKError

from .errors import KeyFormatError
from .primitives import CryptoProvider, RSA_KEY_SIZE

logger = logging.getLogger(__name__)

JWK_ALGORITHM = ALGORITHMS.RSA_OAEP_256
PUBLIC_MEMBERS = ("n", "e")
PRIVATE_MEMBERS = ("d", "p", "q", "dp", "dq", "qi")


@dataclass
class IdentityKeyPair:
    """
    A user's asymmetric keypair.

    Attributes:
        public_key: RSA public key used by others to wrap session keys
        private_key: RSA private key, held only by the owning client
    """
    public_key: rsa.RSAPublicKey
    private_key: rsa.RSAPrivateKey = field(repr=False)


class AsymmetricIdentity:
    """
    Generates identity keypairs and converts them to and from JWK.
    """

    def __init__(self, provider: Optional[CryptoProvider] = None):
        """
        Args:
            provider: Crypto capability; defaults to the OS-backed provider
        """
        self.provider = provider or CryptoProvider()

    async def generate_identity_key_pair(self) -> IdentityKeyPair:
        """
        Generate a 2048-bit RSA keypair for session-key wrapping.

        Generation runs off the event loop. Platform or entropy failures
        propagate unchanged.

        Returns:
            IdentityKeyPair
        """
        private_key = await asyncio.to_thread(self.provider.generate_rsa_private_key)
        logger.debug("Generated %d-bit identity keypair", private_key.key_size)
        return IdentityKeyPair(public_key=private_key.public_key(), private_key=private_key)

    def export_public_key(self, public_key: rsa.RSAPublicKey) -> Dict:
        """
        Serialize a public key as a JWK dictionary.

        Args:
            public_key: RSA public key

        Returns:
            JWK with kty, alg, n, e, ext and key_ops
        """
        if not isinstance(public_key, rsa.RSAPublicKey):
            raise KeyFormatError("Expected an RSA public key")
        pem = public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo
        )
        jwk = CryptographyRSAKey(pem, JWK_ALGORITHM).to_dict()
        jwk.update({"ext": True, "key_ops": ["encrypt"]})
        return jwk

    def import_public_key(self, jwk: Dict) -> rsa.RSAPublicKey:
        """
        Parse a JWK produced by export_public_key().

        Args:
            jwk: JWK dictionary

        Returns:
            RSA public key usable for wrapping

        Raises:
            KeyFormatError: On a malformed or unsuitable key
        """
        key = _load_jwk(jwk, PUBLIC_MEMBERS)
        if not isinstance(key, rsa.RSAPublicKey):
            raise KeyFormatError("JWK contains private key material where a public key was expected")
        return key

    def export_private_key(self, private_key: rsa.RSAPrivateKey) -> Dict:
        """Serialize a private key as a JWK dictionary (local storage only)"""
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise KeyFormatError("Expected an RSA private key")
        pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption()
        )
        jwk = CryptographyRSAKey(pem, JWK_ALGORITHM).to_dict()
        jwk.update({"ext": True, "key_ops": ["decrypt"]})
        return jwk

    def import_private_key(self, jwk: Dict) -> rsa.RSAPrivateKey:
        """
        Parse a private JWK produced by export_private_key().

        Raises:
            KeyFormatError: On a malformed key or a public-only JWK
        """
        key = _load_jwk(jwk, PUBLIC_MEMBERS + PRIVATE_MEMBERS)
        if not isinstance(key, rsa.RSAPrivateKey):
            raise KeyFormatError("JWK has no private key material")
        return key


def _load_jwk(jwk: Dict, required: tuple):
    if not isinstance(jwk, dict):
        raise KeyFormatError(f"JWK must be an object, got {type(jwk).__name__}")
    if jwk.get("kty") != "RSA":
        raise KeyFormatError(f"Unsupported key type: {jwk.get('kty')!r}")
    alg = jwk.get("alg", JWK_ALGORITHM)
    if alg != JWK_ALGORITHM:
        raise KeyFormatError(f"Unsupported key algorithm: {alg!r}")
    missing = [name for name in required if not isinstance(jwk.get(name), str)]
    if missing:
        raise KeyFormatError(f"JWK is missing members: {', '.join(missing)}")

    try:
        key = CryptographyRSAKey(jwk, JWK_ALGORITHM).prepared_key
    except (JWKError, ValueError, TypeError) as e:
        raise KeyFormatError(f"Malformed JWK: {e}") from e

    if key.key_size < RSA_KEY_SIZE:
        raise KeyFormatError(f"RSA key too small: {key.key_size} bits")
    return key
