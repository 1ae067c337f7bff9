"""
Sicherheits- und Authentifizierungsmodule
"""

import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from jose import JWTError, jwt
from fastapi import HTTPException, status, Request
from fastapi.security.utils import get_authorization_scheme_param
from cryptography.fernet import Fernet
from consult_scribe.config import settings
from consult_scribe.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PractitionerContext:
    """The authenticated practitioner a request acts for."""

    user_id: uuid.UUID
    email: Optional[str] = None
    full_name: Optional[str] = None

    @property
    def display_name(self) -> Optional[str]:
        return self.full_name or self.email


class SecurityManager:
    """Zentrale Sicherheitsverwaltung"""

    def __init__(self, secret_key: str = None, algorithm: str = None, audience: str = None):
        self.secret_key = secret_key or settings.api_secret_key
        self.algorithm = algorithm or settings.token_algorithm
        self.audience = audience if audience is not None else settings.jwt_audience

    def create_access_token(self, data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        """Erstellt einen JWT Access Token"""
        to_encode = data.copy()

        if expires_delta:
            expire = datetime.now(timezone.utc) + expires_delta
        else:
            expire = datetime.now(timezone.utc) + timedelta(minutes=settings.access_token_expire_minutes)

        to_encode.update({"exp": expire})
        if self.audience and "aud" not in to_encode:
            to_encode["aud"] = self.audience
        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: str) -> Optional[Dict[str, Any]]:
        """Verifiziert einen JWT Token"""
        options = {"verify_aud": bool(self.audience)}
        try:
            return jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                audience=self.audience,
                options=options,
            )
        except JWTError as e:
            logger.warning(f"Token verification failed: {e}")
            return None

    def generate_request_id(self) -> str:
        """Generiert eine eindeutige Request-ID"""
        return secrets.token_urlsafe(16)


# Global security manager instance
security_manager = SecurityManager()


def practitioner_from_claims(claims: Dict[str, Any]) -> PractitionerContext:
    """Builds the practitioner context from verified token claims."""
    subject = claims.get("sub")
    try:
        user_id = uuid.UUID(str(subject))
    except (TypeError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token subject is not a valid user id",
            headers={"WWW-Authenticate": "Bearer"},
        )

    metadata = claims.get("user_metadata") or {}
    return PractitionerContext(
        user_id=user_id,
        email=claims.get("email"),
        full_name=claims.get("full_name") or metadata.get("full_name"),
    )


async def get_current_user(request: Request) -> PractitionerContext:
    """
    Dependency für authentifizierte Anfragen.
    Erwartet einen JWT-Bearer-Token des Auth-Providers.
    """
    auth_header = request.headers.get("Authorization")
    if auth_header:
        scheme, credentials = get_authorization_scheme_param(auth_header)
        if scheme.lower() == "bearer":
            token_payload = security_manager.verify_token(credentials)
            if token_payload:
                practitioner = practitioner_from_claims(token_payload)
                request.state.user_id = str(practitioner.user_id)
                return practitioner

    logger.warning("Authentication failed: No valid Bearer token provided.")
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing authentication credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


class DataEncryption:
    """Encryption-at-Rest for recorded audio using Fernet."""

    def __init__(self, key: str):
        self.fernet = Fernet(key.encode())

    def encrypt_data(self, data: bytes) -> bytes:
        """Encrypts data."""
        return self.fernet.encrypt(data)

    def decrypt_data(self, encrypted_data: bytes) -> bytes:
        """Decrypts data."""
        return self.fernet.decrypt(encrypted_data)


# Global instance for data encryption
data_encryption = DataEncryption(settings.data_encryption_key)
