# collision/auth.py
"""
Bearer-token context for requests.

Tokens are issued elsewhere (mini-program login); this side only verifies
them: HS256 with SECRET_KEY, `sub` is the user id, `role` may be "admin".
"""
from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, Header
from sqlalchemy.orm import Session

from collision import crud, models
from collision.core.config import settings
from collision.database import get_db
from collision.errors import Forbidden, Unauthorized

logger = logging.getLogger(__name__)

ROLE_ADMIN = "admin"


@dataclass(frozen=True)
class Identity:
    user_id: int
    role: str = "user"
    nickname: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def create_token(user_id: int, *, role: str = "user", expires_in: timedelta = timedelta(days=7), **claims: Any) -> str:
    """Mint a token the way the login service does (used by tests and tooling)."""
    now = datetime.now(timezone.utc)
    payload: Dict[str, Any] = {
        "sub": str(user_id),
        "role": role,
        "iat": now,
        "exp": now + expires_in,
        **claims,
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> Identity:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise Unauthorized()
    except jwt.InvalidTokenError as e:
        logger.warning("Invalid token: %s", e)
        raise Unauthorized()

    try:
        user_id = int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise Unauthorized()
    return Identity(user_id=user_id, role=str(payload.get("role") or "user"), nickname=payload.get("nickname"))


def extract_bearer_token(auth_header: Optional[str]) -> Optional[str]:
    if not auth_header:
        return None
    parts = auth_header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


# -------- FastAPI dependencies --------

def get_identity(authorization: Optional[str] = Header(default=None)) -> Identity:
    token = extract_bearer_token(authorization)
    if not token:
        raise Unauthorized()
    return decode_token(token)


def get_current_user(
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
) -> models.User:
    return crud.get_or_create_user(db, identity.user_id, identity.nickname)


def require_admin(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.is_admin:
        raise Forbidden("ERR_ADMIN_ONLY")
    return identity


def verify_callback_secret(x_callback_secret: Optional[str] = Header(default=None)) -> None:
    expected = settings.PAYMENT_CALLBACK_SECRET
    if not expected or not x_callback_secret or not hmac.compare_digest(expected, x_callback_secret):
        logger.warning("Payment callback with bad secret")
        raise Forbidden("ERR_CALLBACK_SECRET")
