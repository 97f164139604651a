from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from feeledger.errors import AuthenticationError, PermissionDeniedError

ADMIN_ROLES = ("SCHOOL_ADMIN", "SUPER_ADMIN")
STAFF_ROLES = ADMIN_ROLES + ("STAFF",)

bearer = HTTPBearer(auto_error=False)


@dataclass
class Principal:
    user_id: str
    school_id: str
    role: str
    name: Optional[str] = None
    student_id: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.user_id


def decode_token(token: str, secret: str, algorithm: str = "HS256") -> Principal:
    try:
        claims = jwt.decode(token, secret, algorithms=[algorithm])
    except JWTError:
        raise AuthenticationError("Invalid token")
    if not claims.get("sub") or not claims.get("school_id"):
        raise AuthenticationError("Invalid token")
    return Principal(
        user_id=str(claims["sub"]),
        school_id=str(claims["school_id"]),
        role=str(claims.get("role", "")).upper(),
        name=claims.get("name"),
        student_id=claims.get("student_id"),
    )


def get_principal(request: Request, credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> Principal:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthenticationError("Unauthorized")
    settings = request.app.state.settings
    return decode_token(credentials.credentials, settings.jwt_secret, settings.jwt_algorithm)


def require_roles(*roles: str):
    def dependency(principal: Principal = Depends(get_principal)) -> Principal:
        if principal.role not in roles:
            raise PermissionDeniedError("Insufficient permissions")
        return principal

    return dependency


require_admin = require_roles(*ADMIN_ROLES)
require_staff = require_roles(*STAFF_ROLES)
