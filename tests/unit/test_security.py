"""Unit tests for token handling and encryption at rest."""

import uuid
from datetime import timedelta

import pytest
from cryptography.fernet import Fernet
from fastapi import HTTPException

from consult_scribe.core.security import (
    DataEncryption,
    SecurityManager,
    practitioner_from_claims,
)

pytestmark = pytest.mark.unit


class TestTokens:
    def test_round_trip(self) -> None:
        manager = SecurityManager(secret_key="k", algorithm="HS256", audience="")
        user_id = uuid.uuid4()
        claims = manager.verify_token(manager.create_access_token({"sub": str(user_id)}))
        assert claims["sub"] == str(user_id)

    def test_expired_token_is_rejected(self) -> None:
        manager = SecurityManager(secret_key="k", algorithm="HS256", audience="")
        token = manager.create_access_token({"sub": "x"}, expires_delta=timedelta(seconds=-5))
        assert manager.verify_token(token) is None

    def test_wrong_secret_is_rejected(self) -> None:
        token = SecurityManager(secret_key="a", audience="").create_access_token({"sub": "x"})
        assert SecurityManager(secret_key="b", audience="").verify_token(token) is None

    def test_audience_is_checked_when_configured(self) -> None:
        issuer = SecurityManager(secret_key="k", audience="authenticated")
        token = issuer.create_access_token({"sub": "x"})
        assert issuer.verify_token(token)["aud"] == "authenticated"
        assert SecurityManager(secret_key="k", audience="other").verify_token(token) is None


class TestClaims:
    def test_full_name_from_user_metadata(self) -> None:
        user_id = uuid.uuid4()
        practitioner = practitioner_from_claims({
            "sub": str(user_id),
            "email": "dr@example.org",
            "user_metadata": {"full_name": "Dr. Roe"},
        })
        assert practitioner.user_id == user_id
        assert practitioner.display_name == "Dr. Roe"

    def test_subject_must_be_a_user_id(self) -> None:
        with pytest.raises(HTTPException) as exc_info:
            practitioner_from_claims({"sub": "not-a-uuid"})
        assert exc_info.value.status_code == 401


def test_encryption_round_trip() -> None:
    encryption = DataEncryption(Fernet.generate_key().decode())
    encrypted = encryption.encrypt_data(b"audio bytes")
    assert encrypted != b"audio bytes"
    assert encryption.decrypt_data(encrypted) == b"audio bytes"
