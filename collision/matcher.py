# collision/matcher.py
"""
Pairs collision codes that share a normalized tag.

A pass for one subject code runs under the tag lock (and, across workers, a
row lock on the tag's hot_tags row) inside one transaction: candidate
selection and Match creation either both land or neither does, so two
concurrent submits cannot both claim a candidate. The unique user pair on
matches backs this up; a pass that loses that race matches nothing.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Set

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from collision import hot_tags, locks, models
from collision.core.config import settings
from collision.database import atomic
from collision.location import LocationSnapshot, match_tier

logger = logging.getLogger(__name__)

MATCHABLE = (models.CODE_ACTIVE, models.CODE_MATCHED)

SOURCE_MATCHER = "matcher"
SOURCE_HAIDILAO = "haidilao"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def filters_pass(code: models.CollisionCode, other: models.User) -> bool:
    """Does `other`'s profile satisfy the demographic filter stored on `code`?"""
    if code.gender is not None and other.gender != code.gender:
        return False
    if code.age_min is not None and (other.age is None or other.age < code.age_min):
        return False
    if code.age_max is not None and (other.age is None or other.age > code.age_max):
        return False
    return True


def eligible_tier(subject: models.CollisionCode, candidate: models.CollisionCode) -> Optional[str]:
    """Tier the pair would match at, or None when the pair is not eligible."""
    if not (subject.owner.location_visible and candidate.owner.location_visible):
        return None
    tier = match_tier(LocationSnapshot.of(subject), LocationSnapshot.of(candidate))
    if tier is None:
        return None
    if not filters_pass(subject, candidate.owner) or not filters_pass(candidate, subject.owner):
        return None
    return tier


def matched_partner_ids(db: Session, user_id: int, normalized_tag: str) -> Set[int]:
    """Owners already paired with `user_id` on this tag, whatever the match status."""
    rows = (
        db.query(models.Match.user_id_a, models.Match.user_id_b)
        .filter(
            models.Match.normalized_tag == normalized_tag,
            or_(models.Match.user_id_a == user_id, models.Match.user_id_b == user_id),
        )
        .all()
    )
    return {b if a == user_id else a for a, b in rows}


def candidates(db: Session, subject: models.CollisionCode) -> List[models.CollisionCode]:
    q = (
        db.query(models.CollisionCode)
        .filter(
            models.CollisionCode.normalized_tag == subject.normalized_tag,
            models.CollisionCode.owner_id != subject.owner_id,
            models.CollisionCode.id != subject.id,
            models.CollisionCode.deleted_at.is_(None),
        )
        .order_by(models.CollisionCode.created_at, models.CollisionCode.id)
        .populate_existing()
    )
    if settings.ALLOW_MULTI_MATCH:
        q = q.filter(models.CollisionCode.status.in_(MATCHABLE))
    else:
        q = q.filter(models.CollisionCode.status == models.CODE_ACTIVE)

    taken = matched_partner_ids(db, subject.owner_id, subject.normalized_tag)
    return [c for c in q.all() if c.owner_id not in taken]


def create_match(
    db: Session,
    subject: models.CollisionCode,
    candidate: models.CollisionCode,
    *,
    tier: Optional[str],
    now: datetime,
    source: str = SOURCE_MATCHER,
    friend_added: bool = False,
) -> models.Match:
    """
    Insert the Match and flip both codes to matched, inside the caller's
    transaction. A pair already matched on this tag by another worker fails
    the flush with IntegrityError.
    """
    match = models.Match(
        code_id_a=subject.id,
        code_id_b=candidate.id,
        user_id_a=subject.owner_id,
        user_id_b=candidate.owner_id,
        user_lo=min(subject.owner_id, candidate.owner_id),
        user_hi=max(subject.owner_id, candidate.owner_id),
        normalized_tag=subject.normalized_tag,
        match_tier=tier,
        source=source,
        matched_at=now,
        add_friend_deadline=now + timedelta(hours=settings.ADD_FRIEND_WINDOW_HOURS),
        status=models.MATCH_FRIEND_ADDED if friend_added else models.MATCH_MATCHED,
        contact_revealed_at=now if friend_added else None,
        email_sent=False,
    )
    db.add(match)

    for code in (subject, candidate):
        if code.status in MATCHABLE:
            code.status = models.CODE_MATCHED
        code.match_count = (code.match_count or 0) + 1
        db.add(code)

    hot_tags.record_match(db, subject.normalized_tag, now=now)
    db.flush()

    logger.info(
        "Match created id=%s tag=%s codes=%s/%s users=%s/%s tier=%s source=%s",
        match.id, match.normalized_tag, subject.id, candidate.id,
        subject.owner_id, candidate.owner_id, tier, source,
    )
    return match


def _reload(db: Session, code_id: int) -> Optional[models.CollisionCode]:
    return (
        db.query(models.CollisionCode)
        .filter(models.CollisionCode.id == code_id)
        .populate_existing()
        .first()
    )


def match_for_code(db: Session, code_id: int, *, now: Optional[datetime] = None) -> Optional[models.Match]:
    """
    One matcher pass for a subject code. Creates at most one Match, with the
    earliest-created eligible candidate (ties by id). Returns it, or None.
    """
    now = now or _utcnow()

    code = db.get(models.CollisionCode, code_id)
    if code is None:
        return None
    tag = code.normalized_tag

    try:
        with locks.tag_lock(tag), atomic(db):
            hot_tags.lock_row(db, tag)
            # re-read under the lock; a concurrent pass may have moved it
            code = _reload(db, code_id)
            if code is None or code.deleted_at is not None or code.status not in MATCHABLE:
                return None
            if code.normalized_tag != tag:
                return None
            if not settings.ALLOW_MULTI_MATCH and code.status == models.CODE_MATCHED:
                return None

            for candidate in candidates(db, code):
                tier = eligible_tier(code, candidate)
                if tier is None:
                    continue
                return create_match(db, code, candidate, tier=tier, now=now)
    except IntegrityError:
        logger.warning("Match for code=%s lost a race on tag=%s", code_id, tag)
        return None

    logger.debug("No match for code=%s tag=%s", code_id, tag)
    return None
