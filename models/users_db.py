# models/users_db.py
from __future__ import annotations
import re
from datetime import datetime, timezone
from typing import Optional

from werkzeug.security import generate_password_hash, check_password_hash
from models.base import session_scope
from models.schema import User

USERNAME_RX = re.compile(r"^[a-z0-9._-]{3,40}$")


def get_user(username: str) -> Optional[dict]:
    if not username:
        return None
    with session_scope() as s:
        u = s.get(User, username)
        if not u:
            return None
        return {
            "username": u.username,
            "role": u.role,
            "created_at": u.created_at,
        }


def create_user(username: str, password: str, role: str = "user") -> bool:
    if not username or not password or role not in {"user", "admin"}:
        return False
    if not USERNAME_RX.match(username.strip().lower()):
        return False
    with session_scope() as s:
        if s.get(User, username):
            return False
        s.add(User(
            username=username.strip(),
            password_hash=generate_password_hash(password),
            role=role,
            created_at=datetime.now(timezone.utc),
        ))
    return True


def verify_password(username: str, password: str) -> bool:
    if not username:
        return False
    with session_scope() as s:
        u = s.get(User, username)
        return bool(u and check_password_hash(u.password_hash, password))
