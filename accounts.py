"""
User registration, login and admin-side user management.
"""

import logging
import os
from typing import Optional

from database import utcnow
from errors import Forbidden, Unauthenticated, ValidationError
from identity import Identity, check_password, hash_password
from schemas import User
from store import EntityStore

logger = logging.getLogger(__name__)

ADMIN_REGISTRATION_KEY = os.getenv("ADMIN_REGISTRATION_KEY")
ROLES = ("citizen", "admin", "police", "advocate")
STATUSES = ("active", "inactive", "suspended")


class Accounts:
    def __init__(self, store: EntityStore, clock=utcnow, admin_key: Optional[str] = ADMIN_REGISTRATION_KEY):
        self.store = store
        self.clock = clock
        self.admin_key = admin_key

    def get(self, user_id: str) -> User:
        return User.model_validate(self.store.get("user", user_id))

    def by_email(self, email: str) -> Optional[User]:
        doc = self.store.find_one("user", {"email": email})
        return User.model_validate(doc) if doc else None

    def register(self, name: str, email: str, password: str, role: str = "citizen") -> User:
        name = (name or "").strip()
        if not name:
            raise ValidationError("name is required")
        if not password or len(password) < 6:
            raise ValidationError("Password must be at least 6 characters")
        if self.by_email(email) is not None:
            raise ValidationError("Email already registered")
        now = self.clock()
        user = User(
            name=name,
            email=email,
            passwordHash=hash_password(password),
            role=role,
            createdAt=now,
            updatedAt=now,
        )
        user = User.model_validate(self.store.put("user", user.model_dump()))
        logger.info("registered %s account %s", role, user.id)
        return user

    def register_admin(self, name: str, email: str, password: str, secret_key: str) -> User:
        if not self.admin_key or secret_key != self.admin_key:
            logger.warning("admin registration refused for %s", email)
            raise Forbidden("Invalid secret key. Admin registration denied.")
        return self.register(name, email, password, role="admin")

    def login(self, email: str, password: str, admin_only: bool = False) -> User:
        user = self.by_email(email)
        if user is None or not check_password(password, user.passwordHash):
            raise Unauthenticated("Invalid credentials")
        if user.status != "active":
            raise Forbidden("Account disabled")
        if admin_only and user.role != "admin":
            raise Forbidden("Access denied. Admin privileges required.")
        return user

    def all_users(self):
        return [User.model_validate(doc) for doc in self.store.query("user")]

    def update(
        self,
        identity: Identity,
        user_id: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
        role: Optional[str] = None,
        status: Optional[str] = None,
    ) -> User:
        if identity.role != "admin":
            raise Forbidden("Access denied. Admin privileges required.")
        if role is not None and role not in ROLES:
            raise ValidationError("Invalid role")
        if status is not None and status not in STATUSES:
            raise ValidationError("Invalid status")
        user = self.get(user_id)
        if email is not None and email != user.email and self.by_email(email) is not None:
            raise ValidationError("Email already registered")
        if name is not None:
            user.name = name.strip() or user.name
        if email is not None:
            user.email = email
        if role is not None:
            user.role = role
        if status is not None:
            user.status = status
        user.updatedAt = self.clock()
        user = User.model_validate(self.store.put("user", user.model_dump()))
        logger.info("user %s updated by %s (role=%s status=%s)", user_id, identity.userId, user.role, user.status)
        return user

    def delete(self, identity: Identity, user_id: str) -> None:
        if identity.role != "admin":
            raise Forbidden("Access denied. Admin privileges required.")
        self.store.delete("user", user_id)
        logger.info("user %s deleted by %s", user_id, identity.userId)


def public_user(user: User) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role,
        "status": user.status,
        "createdAt": user.createdAt,
    }

