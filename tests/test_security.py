from uuid import uuid4

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from jose import jwt

from deps.auth import get_current_user
from security import create_access_token, decode_token
from settings import settings


def _creds(token: str, scheme: str = "Bearer") -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme=scheme, credentials=token)


def test_token_round_trip_keeps_role():
    user_id = uuid4()
    user = get_current_user(_creds(create_access_token(str(user_id), role="admin")))
    assert user.user_id == user_id
    assert user.is_admin
    assert not user.is_student


def test_expired_token_decodes_to_empty():
    assert decode_token(create_access_token(str(uuid4()), minutes=-1)) == {}


def test_unknown_role_is_rejected():
    token = jwt.encode({"sub": str(uuid4()), "role": "bursar"}, settings.JWT_SECRET, algorithm=settings.JWT_ALG)
    with pytest.raises(HTTPException) as exc:
        get_current_user(_creds(token))
    assert exc.value.status_code == 401


def test_non_uuid_subject_is_rejected():
    with pytest.raises(HTTPException) as exc:
        get_current_user(_creds(create_access_token("not-a-uuid")))
    assert exc.value.detail == "UNAUTHORIZED"
