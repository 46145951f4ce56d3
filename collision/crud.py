# collision/crud.py
from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from collision import models
from collision.errors import NotFound, ValidationError
from collision.i18n import t

logger = logging.getLogger(__name__)

GENDERS = (0, 1, 2)  # unknown / male / female
AGE_MIN, AGE_MAX = 1, 120

EMAIL_CODE_LENGTH = 6
EMAIL_CODE_TTL = timedelta(minutes=10)

LOCATION_FIELDS = ("country", "province", "city", "district")
FLAG_FIELDS = ("location_visible", "allow_force_add", "allow_haidilao", "email_visible")
CONTACT_FIELDS = ("wechat_no", "phone", "email")
PROFILE_FIELDS = ("nickname", "avatar", "gender", "age") + LOCATION_FIELDS + FLAG_FIELDS + CONTACT_FIELDS


def _clean_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def validate_gender(value: Any, *, allow_none: bool = False) -> Optional[int]:
    if value is None and allow_none:
        return None
    try:
        value = int(value)
    except (TypeError, ValueError):
        raise ValidationError("ERR_GENDER")
    if value not in GENDERS:
        raise ValidationError("ERR_GENDER")
    return value


def validate_age(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        value = int(value)
    except (TypeError, ValueError):
        raise ValidationError("ERR_VALIDATION")
    if not AGE_MIN <= value <= AGE_MAX:
        raise ValidationError("ERR_VALIDATION")
    return value


# -------- Users --------

def get_user(db: Session, user_id: int) -> models.User:
    user = db.get(models.User, user_id)
    if user is None:
        raise NotFound("ERR_NOT_FOUND")
    return user


def get_or_create_user(db: Session, user_id: int, nickname: str | None = None) -> models.User:
    user = db.get(models.User, user_id)
    if user:
        if nickname is not None and not user.nickname:
            user.nickname = nickname
            db.add(user)
            db.commit()
            db.refresh(user)
        return user

    user = models.User(id=user_id, nickname=nickname, coins=0, gender=0)
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        # another request created it first
        db.rollback()
        return get_user(db, user_id)
    db.refresh(user)
    logger.info("User created id=%s", user_id)
    return user


def update_profile(db: Session, user: models.User, changes: Dict[str, Any]) -> models.User:
    """
    Apply a partial profile update. Only keys present in `changes` are touched;
    everything is validated before anything is assigned.
    """
    clean: Dict[str, Any] = {}
    for key, value in changes.items():
        if key not in PROFILE_FIELDS:
            continue
        if key == "gender":
            clean[key] = validate_gender(value)
        elif key == "age":
            clean[key] = validate_age(value)
        elif key in FLAG_FIELDS:
            if value is None:
                raise ValidationError("ERR_VALIDATION")
            clean[key] = bool(value)
        else:
            clean[key] = _clean_str(value)

    if "email" in clean and clean["email"] != user.email:
        # a new address has to be verified again
        user.email_verified = False
    if "phone" in clean and clean["phone"] != user.phone:
        user.phone_verified = False

    for key, value in clean.items():
        setattr(user, key, value)

    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("Profile updated id=%s fields=%s", user.id, sorted(clean))
    return user


def user_profile(user: models.User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "nickname": user.nickname,
        "avatar": user.avatar,
        "coins": user.coins or 0,
        "gender": user.gender,
        "age": user.age,
        "country": user.country,
        "province": user.province,
        "city": user.city,
        "district": user.district,
        "location_visible": bool(user.location_visible),
        "allow_force_add": bool(user.allow_force_add),
        "allow_haidilao": bool(user.allow_haidilao),
        "wechat_no": user.wechat_no,
        "phone": user.phone,
        "phone_verified": bool(user.phone_verified),
        "email": user.email,
        "email_verified": bool(user.email_verified),
        "pending_email": user.pending_email,
        "email_visible": bool(user.email_visible),
    }


# -------- Email verification --------

def _hash_code(plain: str) -> str:
    return hashlib.sha256(plain.encode()).hexdigest()


def bind_email(
    db: Session,
    user: models.User,
    email: str,
    *,
    lang: Optional[str] = None,
    now: Optional[datetime] = None,
) -> models.EmailLog:
    """
    Start verifying `email`: store a hashed six-digit code and queue it as a
    pending EmailLog for the caller to dispatch. The profile address only
    changes once verify_email succeeds.
    """
    now = now or datetime.now(timezone.utc)
    email = _clean_str(email)
    if not email or "@" not in email:
        raise ValidationError("ERR_EMAIL_INVALID")

    plain = "".join(secrets.choice(string.digits) for _ in range(EMAIL_CODE_LENGTH))
    minutes = int(EMAIL_CODE_TTL.total_seconds() // 60)
    user.pending_email = email
    user.email_verify_code = _hash_code(plain)
    user.email_verify_expires_at = now + EMAIL_CODE_TTL
    log = models.EmailLog(
        user_id=user.id,
        to_email=email,
        subject=t(lang, "EMAIL_VERIFY_SUBJECT"),
        content=t(lang, "EMAIL_VERIFY_BODY", code=plain, minutes=minutes),
        status="pending",
        attempts=0,
        created_at=now,
    )
    db.add(user)
    db.add(log)
    db.commit()
    logger.info("Email verification queued user=%s log=%s", user.id, log.id)
    return log


def verify_email(
    db: Session,
    user: models.User,
    email: str,
    code: str,
    *,
    now: Optional[datetime] = None,
) -> models.User:
    now = now or datetime.now(timezone.utc)
    email = _clean_str(email)
    code = _clean_str(code) or ""

    if not user.email_verify_code or email != user.pending_email:
        raise ValidationError("ERR_EMAIL_CODE")
    if user.email_verify_expires_at is None or now >= user.email_verify_expires_at:
        raise ValidationError("ERR_EMAIL_CODE_EXPIRED")
    if not hmac.compare_digest(_hash_code(code), user.email_verify_code):
        logger.warning("Wrong email code user=%s", user.id)
        raise ValidationError("ERR_EMAIL_CODE")

    user.email = email
    user.email_verified = True
    user.email_visible = True
    user.pending_email = None
    user.email_verify_code = None
    user.email_verify_expires_at = None
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("Email verified user=%s", user.id)
    return user
