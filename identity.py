"""
Identity context: bearer token in, {userId, role, name} out.

Nothing downstream looks at the token itself; routes depend on
verify_token / optional_identity / require_admin and hand the resolved
Identity to the workflow.
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Header
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel

from errors import Forbidden, Unauthenticated
from schemas import ADMIN_ROLES, Role

logger = logging.getLogger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change")
JWT_ALG = "HS256"
JWT_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", str(60 * 24 * 14)))  # 14 days

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


class Identity(BaseModel):
    userId: str
    role: Role
    name: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def check_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


def create_token(user_id: str, role: str, name: Optional[str] = None, expires_minutes: Optional[int] = None):
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "role": role,
        "name": name,
        "exp": now + timedelta(minutes=expires_minutes if expires_minutes is not None else JWT_EXPIRE_MINUTES),
        "iat": now,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def decode_token(token: str) -> Identity:
    try:
        data = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
        return Identity(userId=data["sub"], role=data["role"], name=data.get("name"))
    except (JWTError, KeyError, ValueError) as e:
        logger.debug("rejected token: %s", e)
        raise Unauthenticated()


def _bearer(authorization: str) -> str:
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthenticated("Invalid auth scheme")
    return token.strip()


def verify_token(authorization: Optional[str] = Header(None)) -> Identity:
    if not authorization:
        raise Unauthenticated("Missing Authorization header")
    return decode_token(_bearer(authorization))


def optional_identity(authorization: Optional[str] = Header(None)) -> Optional[Identity]:
    if not authorization:
        return None
    return decode_token(_bearer(authorization))


def require_admin(identity: Identity = Depends(verify_token)) -> Identity:
    if not identity.is_admin:
        raise Forbidden("Access denied. Admin privileges required.")
    return identity


def require_superadmin(identity: Identity = Depends(verify_token)) -> Identity:
    """User management is reserved to the plain `admin` role."""
    if identity.role != "admin":
        raise Forbidden("Access denied. Admin privileges required.")
    return identity
