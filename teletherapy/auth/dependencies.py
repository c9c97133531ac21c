from dataclasses import dataclass

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from teletherapy.auth import jwt_handler

security = HTTPBearer()


@dataclass(frozen=True)
class AuthContext:
    """The caller as asserted by the identity provider's token."""

    uid: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def can_manage(self, therapist_id: str) -> bool:
        return self.is_admin or (self.role == "therapist" and self.uid == therapist_id)


def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> AuthContext:
    token = credentials.credentials
    try:
        payload = jwt_handler.decode_access_token(token)
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=401, detail="Invalid token subject")

    role = payload.get("role")
    if role not in jwt_handler.ROLES:
        raise HTTPException(status_code=401, detail="Invalid token role")

    return AuthContext(uid=subject, role=role)


def require_roles(*roles: str):
    def dependency(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if auth.role not in roles:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return auth

    return dependency


def ensure_can_manage(auth: AuthContext, therapist_id: str) -> None:
    if not auth.can_manage(therapist_id):
        raise HTTPException(status_code=403, detail="You can only manage your own schedule.")
