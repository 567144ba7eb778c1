from jose import jwt
import pytest

from config import settings
from services.errors import ValidationError
from services.session_token import SESSION_TOKEN_TYPE, create_session_token, decode_session_token


def test_token_round_trips_user_and_device():
    issued = create_session_token("user-token-1", device_id="device-token-1")
    claims = decode_session_token(issued.token)

    assert claims.user_id == "user-token-1"
    assert claims.device_id == "device-token-1"
    assert issued.expires_at > 0


def test_token_without_device_is_user_scoped():
    claims = decode_session_token(create_session_token("user-token-2").token)
    assert claims.device_id is None


def test_tokens_of_another_type_or_signature_are_rejected():
    foreign = jwt.encode({"sub": "user-token-3", "type": "other"}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    with pytest.raises(ValueError):
        decode_session_token(foreign)

    forged = jwt.encode({"sub": "user-token-3", "type": SESSION_TOKEN_TYPE}, "not-the-secret", algorithm="HS256")
    with pytest.raises(ValueError):
        decode_session_token(forged)


def test_malformed_device_id_is_not_signed():
    with pytest.raises(ValidationError):
        create_session_token("user-token-4", device_id="bad device id!")
