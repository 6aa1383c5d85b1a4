"""
Security utilities for webhook authentication and credential encryption.

Provides Fernet encryption for stored PMS and calendar credentials,
a SQLAlchemy column type that applies it transparently, constant-time
secret comparison and phone number masking for logs.
"""

import base64
import secrets
from typing import Mapping, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from sqlalchemy.types import Text, TypeDecorator

from .config import settings
from .exceptions import UnauthorizedError


# =============================================================================
# Credential Encryption
# =============================================================================

def _get_fernet_key() -> bytes:
    """
    Derive a Fernet-compatible key from the encryption key.

    Fernet requires a 32-byte base64-urlsafe encoded key.
    We use PBKDF2 to derive a consistent key from the configured encryption key.

    Returns:
        Fernet-compatible encryption key
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"frontdesk_credential_salt",  # Static salt for consistent derivation
        iterations=100000,
    )
    return base64.urlsafe_b64encode(
        kdf.derive(settings.encryption_key.encode())
    )


_fernet = Fernet(_get_fernet_key())


def encrypt_secret(plaintext: str) -> str:
    """
    Encrypt a credential for storage.

    Args:
        plaintext: Token, key or secret to encrypt

    Returns:
        Fernet token as text
    """
    if not plaintext:
        return ""
    return _fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")


def decrypt_secret(ciphertext: str) -> str:
    """
    Decrypt a stored credential.

    Raises:
        ValueError: If decryption fails (invalid or corrupted data)
    """
    if not ciphertext:
        return ""
    try:
        return _fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
    except InvalidToken as e:
        raise ValueError("Failed to decrypt stored credential") from e


class EncryptedString(TypeDecorator):
    """
    Text column encrypted at rest.

    Values are plain strings on the Python side and Fernet tokens in the
    database. ``None`` is stored as NULL.
    """

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Optional[str], dialect) -> Optional[str]:
        if value is None:
            return None
        return encrypt_secret(value)

    def process_result_value(self, value: Optional[str], dialect) -> Optional[str]:
        if value is None:
            return None
        return decrypt_secret(value)


# =============================================================================
# Secret Comparison
# =============================================================================

def secrets_match(provided: Optional[str], expected: Optional[str]) -> bool:
    """
    Constant-time comparison of a provided secret against the configured one.

    An unconfigured (empty) expected secret never matches.
    """
    if not provided or not expected:
        return False
    return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Return the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def authenticate_webhook(headers: Mapping[str, str]) -> None:
    """
    Verify a webhook came from the voice platform or a trusted backend.

    Accepts the platform shared secret in ``x-vapi-secret`` or
    ``x-vapi-signature``, or ``Authorization: Bearer <backend api key>``.

    Raises:
        UnauthorizedError: No credential matched
    """
    lowered = {key.lower(): value for key, value in headers.items()}
    secret = lowered.get("x-vapi-secret") or lowered.get("x-vapi-signature")
    if secrets_match(secret, settings.vapi_webhook_secret):
        return
    if secrets_match(extract_bearer_token(lowered.get("authorization")), settings.backend_api_key):
        return
    raise UnauthorizedError("Invalid or missing webhook credentials")


# =============================================================================
# Log Redaction
# =============================================================================

def mask_phone(number: Optional[str]) -> str:
    """
    Mask a phone number for logging, keeping the last four digits.

    Example:
        mask_phone("+14165550123") -> "***-***-0123"
    """
    if not number:
        return "unknown"
    digits = "".join(ch for ch in number if ch.isdigit())
    if len(digits) < 4:
        return "***"
    return f"***-***-{digits[-4:]}"
