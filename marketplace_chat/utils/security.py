from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from marketplace_chat.core.config import get_settings
from marketplace_chat.core.errors import AuthenticationError
from marketplace_chat.models.identity import ROLES, Identity


def create_access_token(user_id: str, role: str, expires_minutes: int = 60) -> str:
    settings = get_settings()
    payload = {
        "sub": user_id,
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> Dict[str, Any]:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.PyJWTError as exc:
        raise AuthenticationError("Invalid or expired token") from exc


def identity_from_token(token: Optional[str]) -> Identity:
    if not token:
        raise AuthenticationError("Missing token")
    payload = decode_access_token(token)
    user_id = payload.get("sub")
    role = payload.get("role")
    if not user_id or role not in ROLES:
        raise AuthenticationError("Token does not carry a user and role")
    return Identity(user_id=user_id, role=role)
