# collision/lifecycle.py
"""
Match lifecycle.

    matched --add_friend (before deadline)--> friend_added
    matched --force_add  (after deadline, paid)--> friend_added
    matched --skip--> missed

A match past its deadline stays `matched`; the deadline only decides which
of add_friend / force_add is allowed. haidilao creates a match that is
already friend_added.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from collision import hot_tags, ledger, locks, matcher, models
from collision.codes import clean_tag, mask_wechat
from collision.core.config import settings
from collision.database import atomic
from collision.errors import (
    Conflict,
    DeadlinePassed,
    Forbidden,
    NoCandidates,
    NotFound,
    TooEarly,
    ValidationError,
)
from collision.i18n import t
from collision.location import LocationSnapshot, match_tier

logger = logging.getLogger(__name__)

EMAIL_CONTENT_MAX = 500
REMARK_MAX = 10

TIME_ACTIVE = "active"
TIME_EXPIRED = "expired"
TIME_ALREADY_FRIENDS = "already_friends"
TIME_MISSED = "missed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _find(db: Session, match_id: int, actor_id: int) -> models.Match:
    match = db.get(models.Match, match_id)
    if match is None:
        raise NotFound("ERR_MATCH_NOT_FOUND")
    if not match.involves(actor_id):
        raise Forbidden("ERR_NOT_PARTY")
    return match


def _reload(db: Session, match_id: int) -> models.Match:
    return (
        db.query(models.Match)
        .filter(models.Match.id == match_id)
        .populate_existing()
        .one()
    )


def _replayed_match(db: Session, meta: Dict[str, Any], actor_id: int, match_id: Optional[int] = None) -> models.Match:
    recorded = meta.get("match_id")
    if recorded is None or (match_id is not None and recorded != match_id):
        raise Conflict("ERR_IDEMPOTENCY_REUSED")
    match = db.get(models.Match, recorded)
    if match is None or not match.involves(actor_id):
        raise Conflict("ERR_IDEMPOTENCY_REUSED")
    return match


# -------- Views --------

def time_status(match: models.Match, now: datetime) -> str:
    if match.status == models.MATCH_FRIEND_ADDED:
        return TIME_ALREADY_FRIENDS
    if match.status == models.MATCH_MISSED:
        return TIME_MISSED
    if now < match.add_friend_deadline:
        return TIME_ACTIVE
    return TIME_EXPIRED


def _partner_view(match: models.Match, partner: models.User) -> Dict[str, Any]:
    revealed = match.status == models.MATCH_FRIEND_ADDED
    view: Dict[str, Any] = {
        "id": partner.id,
        "nickname": partner.nickname,
        "avatar": partner.avatar,
        "gender": partner.gender,
        "age": partner.age,
        "wechat_no": partner.wechat_no if revealed else mask_wechat(partner.wechat_no),
        "has_email": bool(partner.email and partner.email_verified),
        "email": None,
    }
    if partner.email_visible and partner.email_verified:
        view["email"] = partner.email
    if revealed:
        view["phone"] = partner.phone if partner.phone_verified else None
    if partner.location_visible:
        view.update(LocationSnapshot.of(partner).as_dict())
    return view


def serialize(match: models.Match, viewer_id: int, now: datetime) -> Dict[str, Any]:
    partner = match.partner_of(viewer_id)
    mine, theirs = (match.code_a, match.code_b) if viewer_id == match.user_id_a else (match.code_b, match.code_a)
    side = match.side(viewer_id)
    open_ = match.status == models.MATCH_MATCHED
    left = int((match.add_friend_deadline - now).total_seconds()) if open_ else 0
    return {
        "id": match.id,
        "tag": mine.tag if mine is not None else match.normalized_tag,
        "normalized_tag": match.normalized_tag,
        "match_tier": match.match_tier,
        "source": match.source,
        "status": match.status,
        "time_status": time_status(match, now),
        "time_left_seconds": max(left, 0),
        "can_add_friend": open_ and now < match.add_friend_deadline,
        "can_force_add": open_ and now >= match.add_friend_deadline and bool(partner.allow_force_add),
        "my_code_id": mine.id if mine is not None else None,
        "partner_code_id": theirs.id if theirs is not None else None,
        "matched_at": match.matched_at,
        "add_friend_deadline": match.add_friend_deadline,
        "contact_revealed_at": match.contact_revealed_at,
        "email_sent": bool(match.email_sent),
        "remark": getattr(match, f"remark_{side}"),
        "is_known": bool(getattr(match, f"known_{side}")),
        "partner": _partner_view(match, partner),
    }


def list_matches(db: Session, *, user_id: int, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    now = now or _utcnow()
    rows = (
        db.query(models.Match)
        .filter((models.Match.user_id_a == user_id) | (models.Match.user_id_b == user_id))
        .order_by(models.Match.matched_at.desc(), models.Match.id.desc())
        .all()
    )
    return [serialize(m, user_id, now) for m in rows]


def get_match(db: Session, *, match_id: int, viewer_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or _utcnow()
    return serialize(_find(db, match_id, viewer_id), viewer_id, now)


def common_keywords(db: Session, *, user_id: int, other_id: int) -> List[str]:
    """Tags the two users have been matched on, in either direction."""
    lo, hi = sorted((int(user_id), int(other_id)))
    rows = (
        db.query(models.Match.normalized_tag)
        .filter(models.Match.user_lo == lo, models.Match.user_hi == hi)
        .distinct()
        .order_by(models.Match.normalized_tag)
        .all()
    )
    return [tag for (tag,) in rows]


# -------- Notes --------

def set_remark(db: Session, *, match_id: int, actor_id: int, remark: Optional[str]) -> models.Match:
    """The actor's private note on this match; blank clears it."""
    remark = (remark or "").strip()
    if len(remark) > REMARK_MAX:
        raise ValidationError("ERR_REMARK_TOO_LONG", limit=REMARK_MAX)
    match = _find(db, match_id, actor_id)
    with atomic(db):
        setattr(match, f"remark_{match.side(actor_id)}", remark or None)
        db.add(match)
    return match


def mark_known(db: Session, *, match_id: int, actor_id: int) -> models.Match:
    match = _find(db, match_id, actor_id)
    with atomic(db):
        setattr(match, f"known_{match.side(actor_id)}", True)
        db.add(match)
    logger.info("Match marked known match=%s actor=%s", match_id, actor_id)
    return match


# -------- Transitions --------

def add_friend(db: Session, *, match_id: int, actor_id: int, now: Optional[datetime] = None) -> models.Match:
    now = now or _utcnow()
    match = _find(db, match_id, actor_id)

    with locks.tag_lock(match.normalized_tag), atomic(db):
        match = _reload(db, match_id)
        if match.status != models.MATCH_MATCHED:
            raise Conflict("ERR_MATCH_NOT_OPEN")
        if now >= match.add_friend_deadline:
            raise DeadlinePassed()
        match.status = models.MATCH_FRIEND_ADDED
        match.contact_revealed_at = now
        db.add(match)

    logger.info("Friend added match=%s actor=%s", match_id, actor_id)
    return match


def force_add(
    db: Session,
    *,
    match_id: int,
    actor_id: int,
    cost_coins: Optional[int] = None,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> models.Match:
    """
    Paid add after the window. The partner's opt-in is checked before the
    balance, so a disabled partner is Forbidden whatever the actor holds.
    """
    now = now or _utcnow()
    cost = settings.FORCE_ADD_COST if cost_coins is None else int(cost_coins)
    match = _find(db, match_id, actor_id)

    with locks.tag_lock(match.normalized_tag), locks.user_lock(actor_id), atomic(db):
        replay = ledger.replayed_meta(
            db, user_id=actor_id, idempotency_key=idempotency_key, reason=ledger.REASON_FORCE_ADD,
        )
        if replay is not None:
            return _replayed_match(db, replay, actor_id, match_id)

        match = _reload(db, match_id)
        if match.status != models.MATCH_MATCHED:
            raise Conflict("ERR_MATCH_NOT_OPEN")
        if now < match.add_friend_deadline:
            raise TooEarly()
        partner = match.partner_of(actor_id)
        if not partner.allow_force_add:
            logger.warning("Force add refused match=%s actor=%s: partner opted out", match_id, actor_id)
            raise Forbidden("ERR_FORCE_ADD_DISABLED")

        if cost > 0:
            ledger.debit(
                db,
                user_id=actor_id,
                amount=cost,
                reason=ledger.REASON_FORCE_ADD,
                idempotency_key=idempotency_key,
                meta={"match_id": match.id},
                now=now,
            )
        match.status = models.MATCH_FRIEND_ADDED
        match.contact_revealed_at = now
        db.add(match)

    logger.info("Force added match=%s actor=%s cost=%s", match_id, actor_id, cost)
    return match


def skip(db: Session, *, match_id: int, actor_id: int, now: Optional[datetime] = None) -> models.Match:
    match = _find(db, match_id, actor_id)

    with locks.tag_lock(match.normalized_tag), atomic(db):
        match = _reload(db, match_id)
        if match.status != models.MATCH_MATCHED:
            raise Conflict("ERR_MATCH_NOT_OPEN")
        match.status = models.MATCH_MISSED
        db.add(match)

    logger.info("Match skipped match=%s actor=%s", match_id, actor_id)
    return match


def haidilao(
    db: Session,
    *,
    user_id: int,
    tag: str,
    cost_coins: Optional[int] = None,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> models.Match:
    """
    Paid pull of one more candidate on a tag the user already posted.

    The pool is searched before anything is charged: an empty pool raises
    NoCandidates and leaves the ledger untouched. Candidates must have opted
    in with allow_haidilao; tier and demographic filters are not applied.
    """
    now = now or _utcnow()
    cost = settings.HAIDILAO_COST if cost_coins is None else int(cost_coins)
    _, normalized = clean_tag(tag)

    try:
        match = _haidilao_locked(db, user_id, normalized, cost, idempotency_key, now)
    except IntegrityError as exc:
        # another worker paired these two users on this tag first
        logger.warning("Haidilao lost a race user=%s tag=%s", user_id, normalized)
        raise Conflict("ERR_CONFLICT") from exc

    logger.info("Haidilao user=%s tag=%s match=%s cost=%s", user_id, normalized, match.id, cost)
    return match


def _haidilao_locked(
    db: Session,
    user_id: int,
    normalized: str,
    cost: int,
    idempotency_key: Optional[str],
    now: datetime,
) -> models.Match:
    with locks.tag_lock(normalized), locks.user_lock(user_id), atomic(db):
        hot_tags.lock_row(db, normalized)
        replay = ledger.replayed_meta(
            db, user_id=user_id, idempotency_key=idempotency_key, reason=ledger.REASON_HAIDILAO,
        )
        if replay is not None:
            return _replayed_match(db, replay, user_id)

        own = (
            db.query(models.CollisionCode)
            .filter(
                models.CollisionCode.owner_id == user_id,
                models.CollisionCode.normalized_tag == normalized,
                models.CollisionCode.deleted_at.is_(None),
                models.CollisionCode.status.in_(matcher.MATCHABLE),
            )
            .order_by(models.CollisionCode.created_at, models.CollisionCode.id)
            .first()
        )
        if own is None:
            raise NotFound("ERR_NO_CODE_FOR_TAG")

        taken = matcher.matched_partner_ids(db, user_id, normalized)
        pool = (
            db.query(models.CollisionCode)
            .join(models.User, models.CollisionCode.owner_id == models.User.id)
            .filter(
                models.CollisionCode.normalized_tag == normalized,
                models.CollisionCode.owner_id != user_id,
                models.CollisionCode.deleted_at.is_(None),
                models.CollisionCode.status.in_(matcher.MATCHABLE),
                models.User.allow_haidilao.is_(True),
            )
            .order_by(models.CollisionCode.created_at, models.CollisionCode.id)
            .all()
        )
        pool = [c for c in pool if c.owner_id not in taken]
        if not pool:
            logger.warning("Haidilao found no candidates user=%s tag=%s", user_id, normalized)
            raise NoCandidates()

        if cost > 0:
            ledger.ensure_funds(db, user_id=user_id, amount=cost)

        candidate = pool[0]
        tier = match_tier(LocationSnapshot.of(own), LocationSnapshot.of(candidate))
        match = matcher.create_match(
            db, own, candidate, tier=tier, now=now, source=matcher.SOURCE_HAIDILAO, friend_added=True,
        )
        if cost > 0:
            ledger.debit(
                db,
                user_id=user_id,
                amount=cost,
                reason=ledger.REASON_HAIDILAO,
                idempotency_key=idempotency_key,
                meta={"match_id": match.id, "tag": normalized},
                now=now,
            )
    return match


# -------- Email --------

def send_email(
    db: Session,
    *,
    match_id: int,
    actor_id: int,
    content: str,
    idempotency_key: Optional[str] = None,
    lang: Optional[str] = None,
    now: Optional[datetime] = None,
) -> models.EmailLog:
    """
    Charge send_email and queue a pending EmailLog for the partner. Delivery
    happens after commit through collision.notifications.
    """
    now = now or _utcnow()
    content = (content or "").strip()
    if not content or len(content) > EMAIL_CONTENT_MAX:
        raise ValidationError("ERR_EMAIL_CONTENT", limit=EMAIL_CONTENT_MAX)
    cost = settings.SEND_EMAIL_COST
    match = _find(db, match_id, actor_id)

    with locks.user_lock(actor_id), atomic(db):
        replay = ledger.replayed_meta(
            db, user_id=actor_id, idempotency_key=idempotency_key, reason=ledger.REASON_SEND_EMAIL,
        )
        if replay is not None:
            if replay.get("match_id") != match_id:
                raise Conflict("ERR_IDEMPOTENCY_REUSED")
            log = db.get(models.EmailLog, replay.get("email_log_id"))
            if log is None:
                raise Conflict("ERR_IDEMPOTENCY_REUSED")
            return log

        match = _reload(db, match_id)
        if match.status == models.MATCH_MISSED:
            raise Conflict("ERR_MATCH_NOT_OPEN")
        partner = match.partner_of(actor_id)
        if not (partner.email and partner.email_verified):
            raise Forbidden("ERR_PARTNER_NO_EMAIL")

        log = models.EmailLog(
            user_id=actor_id,
            match_id=match.id,
            to_email=partner.email,
            subject=t(lang, "EMAIL_MATCH_SUBJECT"),
            content=t(lang, "EMAIL_MATCH_INTRO", tag=match.normalized_tag) + "\n\n" + content,
            status="pending",
            attempts=0,
            created_at=now,
        )
        db.add(log)
        db.flush()

        if cost > 0:
            ledger.debit(
                db,
                user_id=actor_id,
                amount=cost,
                reason=ledger.REASON_SEND_EMAIL,
                idempotency_key=idempotency_key,
                meta={"email_log_id": log.id, "match_id": match.id},
                now=now,
            )
        match.email_sent = True
        match.email_sent_at = now
        db.add(match)

    logger.info("Email queued log=%s match=%s actor=%s", log.id, match_id, actor_id)
    return log
