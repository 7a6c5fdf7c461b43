"""
Authentication module for JWT token management.

Tokens carry the username as the subject claim and a unique id (jti) so
that logout can revoke them before they expire.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from .config import ServerSettings

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    """Hash a password"""
    return pwd_context.hash(password)


def verify_password(password: str, hashed_password: str) -> bool:
    """Verify password against hash"""
    return pwd_context.verify(password, hashed_password)


def create_access_token(data: dict, settings: ServerSettings, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token.

    Args:
        data: Data to encode in the token
        settings: Server settings holding the secret and algorithm
        expires_delta: Token expiration time

    Returns:
        Encoded JWT token
    """
    to_encode = data.copy()
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.access_token_expire_minutes)
    to_encode.update({
        "exp": datetime.now(timezone.utc) + expires_delta,
        "jti": uuid.uuid4().hex
    })
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: ServerSettings) -> Optional[Dict]:
    """
    Verify a JWT token and return its claims.

    Returns:
        Claims with a string subject and jti, or None if the token is invalid
    """
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    if not isinstance(payload.get("sub"), str) or not isinstance(payload.get("jti"), str):
        return None
    return payload
