# deps/auth.py
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from uuid import UUID

from security import ROLES, decode_token

bearer = HTTPBearer(auto_error=False)


class CurrentUser:
    def __init__(self, user_id: UUID, role: str = "student"):
        self.user_id = user_id
        self.role = role

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_student(self) -> bool:
        return self.role == "student"


def get_current_user(
    creds: HTTPAuthorizationCredentials = Depends(bearer),
) -> CurrentUser:
    if not creds:
        raise HTTPException(status_code=401, detail="UNAUTHORIZED")

    # must be "Bearer"
    if (creds.scheme or "").lower() != "bearer":
        raise HTTPException(status_code=401, detail="UNAUTHORIZED")

    payload = decode_token(creds.credentials)
    sub = payload.get("sub")
    role = (payload.get("role") or "student").strip().lower()
    if not sub or role not in ROLES:
        raise HTTPException(status_code=401, detail="UNAUTHORIZED")

    try:
        return CurrentUser(user_id=UUID(sub), role=role)
    except ValueError:
        raise HTTPException(status_code=401, detail="UNAUTHORIZED")
