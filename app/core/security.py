# app/core/security.py
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Any, Union
from passlib.context import CryptContext
from jose import jwt, JWTError
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.backends import default_backend

from app.core.config import settings
from app.models.user_models import TokenPayload

logger = logging.getLogger(__name__)

# Device tokens are random and long, so a pure-python KDF is enough here
device_token_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

DEVICE_TOKEN_BYTES = 32


# --- 设备令牌 (device token) ---
def generate_device_token() -> str:
    return secrets.token_urlsafe(DEVICE_TOKEN_BYTES)


def hash_device_token(token: str) -> str:
    return device_token_context.hash(token)


def verify_device_token(plain_token: str, token_hash: Optional[str]) -> bool:
    if not plain_token or not token_hash:
        return False
    return device_token_context.verify(plain_token, token_hash)


# --- JWT 令牌处理 ---

def get_public_key_from_private(private_key_pem: str) -> Optional[str]:
    try:
        private_key = serialization.load_pem_private_key(
            private_key_pem.encode(),
            password=None,
            backend=default_backend()
        )
        if isinstance(private_key, rsa.RSAPrivateKey):
            public_key = private_key.public_key()
            pem_public_key = public_key.public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo
            )
            return pem_public_key.decode()
        return None
    except (ValueError, TypeError) as e:
        logger.error("Error deriving public key from private key: %s", e)
        return None


JWT_PRIVATE_KEY = settings.RSA_PRIVATE_KEY
JWT_PUBLIC_KEY = settings.RSA_PUBLIC_KEY

if settings.ALGORITHM.startswith("RS") and JWT_PRIVATE_KEY and not JWT_PUBLIC_KEY:
    logger.info("Attempting to derive public key from private key for JWT verification...")
    JWT_PUBLIC_KEY = get_public_key_from_private(JWT_PRIVATE_KEY)
    if not JWT_PUBLIC_KEY:
        logger.critical("Failed to derive public key. JWT verification will fail if public key is not explicitly provided.")


def _signing_key() -> str:
    if settings.ALGORITHM.startswith("RS"):
        if not JWT_PRIVATE_KEY:
            raise ValueError("RSA_PRIVATE_KEY is not configured for creating tokens with RS algorithm.")
        return JWT_PRIVATE_KEY
    if settings.ALGORITHM.startswith("HS"):
        return settings.JWT_SECRET_KEY
    raise ValueError(f"Unsupported JWT algorithm for creation: {settings.ALGORITHM}")


def _verification_key() -> str:
    if settings.ALGORITHM.startswith("RS"):
        if not JWT_PUBLIC_KEY:
            raise ValueError("RSA_PUBLIC_KEY is not configured for decoding token with RS algorithm.")
        return JWT_PUBLIC_KEY
    if settings.ALGORITHM.startswith("HS"):
        return settings.JWT_SECRET_KEY
    raise ValueError(f"Unsupported JWT algorithm for decoding: {settings.ALGORITHM}")


def create_access_token(subject: Union[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """Mint a parent access token. Used by tooling and tests; production tokens come from the account service."""
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode = {"exp": expire, "sub": str(subject), "type": "access"}
    return jwt.encode(to_encode, _signing_key(), algorithm=settings.ALGORITHM)


def decode_token(token: str) -> Optional[TokenPayload]:
    try:
        payload_dict = jwt.decode(token, _verification_key(), algorithms=[settings.ALGORITHM])
        if "sub" not in payload_dict:
            raise JWTError("Token missing 'sub' claim.")
        return TokenPayload(**payload_dict)
    except JWTError as e:
        logger.info("JWT Error: %s", e)
        return None
    except ValueError as e:
        logger.warning("Token Configuration or Validation Error: %s", e)
        return None
