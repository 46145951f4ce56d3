# collision/codes.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from collision import hot_tags, ledger, locks, matcher, models
from collision.core.config import settings
from collision.crud import validate_gender
from collision.database import atomic
from collision.errors import Conflict, Forbidden, NotFound, ValidationError
from collision.location import LocationSnapshot

logger = logging.getLogger(__name__)

TAG_MAX_LENGTH = 50
SEARCH_LIMIT = 50


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -------- Tags --------

def normalize_tag(tag: str) -> str:
    """Casefold and collapse internal whitespace: ' Hiking  Club ' -> 'hiking club'."""
    return " ".join(str(tag or "").split()).casefold()


def clean_tag(tag: Optional[str]) -> tuple[str, str]:
    """Validate a user-entered tag. Returns (display tag, normalized tag)."""
    display = (tag or "").strip()
    if not display:
        raise ValidationError("ERR_TAG_EMPTY")
    if len(display) > TAG_MAX_LENGTH:
        raise ValidationError("ERR_TAG_TOO_LONG", limit=TAG_MAX_LENGTH)

    normalized = normalize_tag(display)
    for word in settings.forbidden_keywords():
        if word in normalized:
            logger.warning("Forbidden keyword in tag=%r", display)
            raise ValidationError("ERR_TAG_FORBIDDEN")
    return display, normalized


def mask_wechat(wechat_no: Optional[str]) -> Optional[str]:
    if not wechat_no:
        return None
    if len(wechat_no) > 4:
        return wechat_no[:2] + "***" + wechat_no[-2:]
    return "***"


# -------- Drafts --------

@dataclass(frozen=True)
class CodeFilters:
    gender: Optional[int] = None   # None / 0 = any
    age_min: Optional[int] = None
    age_max: Optional[int] = None


@dataclass(frozen=True)
class CodeDraft:
    """What a client asks for when submitting a code."""

    tag: str
    location: LocationSnapshot = field(default_factory=LocationSnapshot)
    filters: CodeFilters = field(default_factory=CodeFilters)
    validity_days: Optional[int] = None


@dataclass(frozen=True)
class _Prepared:
    tag: str
    normalized_tag: str
    location: LocationSnapshot
    gender: Optional[int]
    age_min: Optional[int]
    age_max: Optional[int]
    validity_days: int


def _validity_days(days: Optional[int]) -> int:
    if days is None:
        return settings.DEFAULT_VALIDITY_DAYS
    limit = settings.MAX_VALIDITY_DAYS
    try:
        days = int(days)
    except (TypeError, ValueError):
        raise ValidationError("ERR_VALIDITY_DAYS", limit=limit)
    if not 1 <= days <= limit:
        raise ValidationError("ERR_VALIDITY_DAYS", limit=limit)
    return days


def _prepare(draft: CodeDraft) -> _Prepared:
    tag, normalized = clean_tag(draft.tag)

    filters = draft.filters or CodeFilters()
    gender = validate_gender(filters.gender, allow_none=True)
    if gender == 0:
        gender = None
    age_min = filters.age_min or None
    age_max = filters.age_max or None
    for age in (age_min, age_max):
        if age is not None and age < 0:
            raise ValidationError("ERR_VALIDATION")
    if age_min is not None and age_max is not None and age_min > age_max:
        raise ValidationError("ERR_AGE_RANGE")

    return _Prepared(
        tag=tag,
        normalized_tag=normalized,
        location=draft.location or LocationSnapshot(),
        gender=gender,
        age_min=age_min,
        age_max=age_max,
        validity_days=_validity_days(draft.validity_days),
    )


def _initial_status() -> str:
    return models.CODE_PENDING_REVIEW if settings.ENABLE_COLLISION_AUDIT else models.CODE_ACTIVE


def _insert(db: Session, owner_id: int, p: _Prepared, *, cost: int, now: datetime) -> models.CollisionCode:
    code = models.CollisionCode(
        owner_id=owner_id,
        tag=p.tag,
        normalized_tag=p.normalized_tag,
        country=p.location.country,
        province=p.location.province,
        city=p.location.city,
        district=p.location.district,
        gender=p.gender,
        age_min=p.age_min,
        age_max=p.age_max,
        cost_coins=cost,
        status=_initial_status(),
        match_count=0,
        created_at=now,
        expires_at=now + timedelta(days=p.validity_days),
    )
    db.add(code)
    db.flush()
    return code


def _charge(
    db: Session,
    *,
    owner_id: int,
    amount: int,
    reason: str,
    code: models.CollisionCode,
    idempotency_key: Optional[str],
    now: datetime,
) -> None:
    if amount <= 0:
        return
    ledger.debit(
        db,
        user_id=owner_id,
        amount=amount,
        reason=reason,
        idempotency_key=idempotency_key,
        meta={"code_id": code.id, "tag": code.normalized_tag},
        now=now,
    )


def _replayed_code(db: Session, meta: Dict[str, Any], owner_id: int, code_id: Optional[int] = None) -> models.CollisionCode:
    recorded = meta.get("code_id")
    if recorded is None or (code_id is not None and recorded != code_id):
        raise Conflict("ERR_IDEMPOTENCY_REUSED")
    code = db.get(models.CollisionCode, recorded)
    if code is None or code.owner_id != owner_id:
        raise Conflict("ERR_IDEMPOTENCY_REUSED")
    return code


def _run_matcher(db: Session, codes: Iterable[models.CollisionCode], now: datetime) -> None:
    for code in codes:
        matcher.match_for_code(db, code.id, now=now)


def _owned(db: Session, code_id: int, owner_id: int) -> models.CollisionCode:
    code = db.get(models.CollisionCode, code_id)
    if code is None:
        raise NotFound("ERR_CODE_NOT_FOUND")
    if code.owner_id != owner_id:
        raise Forbidden("ERR_NOT_OWNER")
    if code.deleted_at is not None:
        raise Conflict("ERR_CODE_DELETED")
    return code


# -------- Create --------

def create(
    db: Session,
    *,
    owner_id: int,
    draft: CodeDraft,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> models.CollisionCode:
    """
    Debit collision_submit and insert the code in one transaction, then run
    one matcher pass for it. Validation failures happen before anything is
    written; a short balance leaves no code behind.
    """
    now = now or _utcnow()
    prepared = _prepare(draft)
    cost = settings.SUBMIT_COST
    hot_tags.ensure_row(db, prepared.normalized_tag, now=now)

    with locks.user_lock(owner_id), atomic(db):
        replay = ledger.replayed_meta(
            db, user_id=owner_id, idempotency_key=idempotency_key, reason=ledger.REASON_COLLISION_SUBMIT,
        )
        if replay is not None:
            logger.info("Submit replay user=%s key=%s", owner_id, idempotency_key)
            return _replayed_code(db, replay, owner_id)

        code = _insert(db, owner_id, prepared, cost=cost, now=now)
        _charge(
            db, owner_id=owner_id, amount=cost, reason=ledger.REASON_COLLISION_SUBMIT,
            code=code, idempotency_key=idempotency_key, now=now,
        )
        hot_tags.record_submit(db, code.normalized_tag, now=now)
        code_id = code.id

    logger.info("Code created id=%s owner=%s tag=%s status=%s", code_id, owner_id, prepared.normalized_tag, code.status)
    _run_matcher(db, [code], now)
    return db.get(models.CollisionCode, code_id)


def batch_create(
    db: Session,
    *,
    owner_id: int,
    drafts: List[CodeDraft],
    idempotency_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[models.CollisionCode]:
    """All-or-nothing: every draft is validated and paid for, or none is."""
    now = now or _utcnow()
    if not drafts or len(drafts) > settings.BATCH_SUBMIT_MAX:
        raise ValidationError("ERR_BATCH_SIZE", limit=settings.BATCH_SUBMIT_MAX)
    prepared = [_prepare(d) for d in drafts]
    cost = settings.SUBMIT_COST
    for normalized in sorted({p.normalized_tag for p in prepared}):
        hot_tags.ensure_row(db, normalized, now=now)

    with locks.user_lock(owner_id), atomic(db):
        if idempotency_key:
            previous = ledger.find_by_key_prefix(db, user_id=owner_id, prefix=f"{idempotency_key}#")
            if previous:
                if any(row.reason != ledger.REASON_COLLISION_SUBMIT for row in previous):
                    raise Conflict("ERR_IDEMPOTENCY_REUSED")
                logger.info("Batch submit replay user=%s key=%s", owner_id, idempotency_key)
                return [_replayed_code(db, ledger.load_meta(row), owner_id) for row in previous]

        if cost > 0:
            ledger.ensure_funds(db, user_id=owner_id, amount=cost * len(prepared))

        created = []
        for i, p in enumerate(prepared):
            code = _insert(db, owner_id, p, cost=cost, now=now)
            _charge(
                db, owner_id=owner_id, amount=cost, reason=ledger.REASON_COLLISION_SUBMIT, code=code,
                idempotency_key=(f"{idempotency_key}#{i}" if idempotency_key else None), now=now,
            )
            hot_tags.record_submit(db, code.normalized_tag, now=now)
            created.append(code)
        ids = [c.id for c in created]

    logger.info("Batch created owner=%s count=%s ids=%s", owner_id, len(ids), ids)
    _run_matcher(db, created, now)
    return [db.get(models.CollisionCode, i) for i in ids]


# -------- Renew / resubmit / delete --------

def renew(
    db: Session,
    *,
    owner_id: int,
    code_id: int,
    validity_days: Optional[int] = None,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> models.CollisionCode:
    """Pay renew_collision and push expires_at to max(now, expires_at) + days."""
    now = now or _utcnow()
    days = _validity_days(validity_days)
    cost = settings.RENEW_COST

    with locks.user_lock(owner_id), atomic(db):
        replay = ledger.replayed_meta(
            db, user_id=owner_id, idempotency_key=idempotency_key, reason=ledger.REASON_RENEW_COLLISION,
        )
        if replay is not None:
            return _replayed_code(db, replay, owner_id, code_id)

        code = _owned(db, code_id, owner_id)
        if code.status == models.CODE_REJECTED:
            raise Conflict("ERR_CONFLICT")

        previous = code.expires_at
        code.expires_at = max(now, previous) + timedelta(days=days)
        if code.status not in (models.CODE_MATCHED, models.CODE_PENDING_REVIEW):
            code.status = models.CODE_ACTIVE
        code.cost_coins = (code.cost_coins or 0) + cost
        db.add(code)
        _charge(
            db, owner_id=owner_id, amount=cost, reason=ledger.REASON_RENEW_COLLISION,
            code=code, idempotency_key=idempotency_key, now=now,
        )

    logger.info("Code renewed id=%s owner=%s expires %s -> %s", code_id, owner_id, previous, code.expires_at)
    _run_matcher(db, [code], now)
    return db.get(models.CollisionCode, code_id)


def update(
    db: Session,
    *,
    owner_id: int,
    code_id: int,
    tag: Optional[str] = None,
    validity_days: Optional[int] = None,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> models.CollisionCode:
    """
    Edit a code's tag and/or validity.

    A new tag puts the code back through review (or straight to active) and
    into the new tag's pool. New days cost the renewal fee and make the code
    valid for at least that many days from now; expiry never moves back.
    Rejected codes go through resubmit instead.
    """
    now = now or _utcnow()
    new_tag = clean_tag(tag) if (tag or "").strip() else None
    days = _validity_days(validity_days) if validity_days is not None else None
    if new_tag is None and days is None:
        raise ValidationError("ERR_NO_CHANGES")
    cost = settings.RENEW_COST if days is not None else 0

    current = _owned(db, code_id, owner_id)
    old_tag = current.normalized_tag
    if new_tag is not None:
        hot_tags.ensure_row(db, new_tag[1], now=now)

    # the code leaves the old tag's pool, so hold that tag while it moves
    with locks.tag_lock(old_tag), locks.user_lock(owner_id), atomic(db):
        if days is not None:
            replay = ledger.replayed_meta(
                db, user_id=owner_id, idempotency_key=idempotency_key, reason=ledger.REASON_RENEW_COLLISION,
            )
            if replay is not None:
                return _replayed_code(db, replay, owner_id, code_id)

        code = _owned(db, code_id, owner_id)
        db.refresh(code)
        if code.status == models.CODE_REJECTED:
            raise Conflict("ERR_CODE_REJECTED")

        retagged = new_tag is not None and new_tag[1] != code.normalized_tag
        if new_tag is not None:
            code.tag = new_tag[0]
        if retagged:
            code.normalized_tag = new_tag[1]
            code.status = _initial_status()
            code.reject_reason = None
            hot_tags.record_submit(db, code.normalized_tag, now=now)
        if days is not None:
            code.expires_at = max(code.expires_at, now + timedelta(days=days))
            if code.status not in (models.CODE_MATCHED, models.CODE_PENDING_REVIEW):
                code.status = models.CODE_ACTIVE
            code.cost_coins = (code.cost_coins or 0) + cost
        db.add(code)
        _charge(
            db, owner_id=owner_id, amount=cost, reason=ledger.REASON_RENEW_COLLISION,
            code=code, idempotency_key=idempotency_key, now=now,
        )

    logger.info(
        "Code updated id=%s owner=%s tag %s -> %s days=%s cost=%s",
        code_id, owner_id, old_tag, code.normalized_tag, days, cost,
    )
    _run_matcher(db, [code], now)
    return db.get(models.CollisionCode, code_id)


def resubmit(
    db: Session,
    *,
    owner_id: int,
    code_id: int,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> models.CollisionCode:
    """Put a rejected code back into review (or straight to active) for a fresh fee."""
    now = now or _utcnow()
    cost = settings.RESUBMIT_COST

    with locks.user_lock(owner_id), atomic(db):
        replay = ledger.replayed_meta(
            db, user_id=owner_id, idempotency_key=idempotency_key, reason=ledger.REASON_COLLISION_SUBMIT,
        )
        if replay is not None:
            return _replayed_code(db, replay, owner_id, code_id)

        code = _owned(db, code_id, owner_id)
        if code.status != models.CODE_REJECTED:
            raise Conflict("ERR_CODE_NOT_REJECTED")

        code.status = _initial_status()
        code.reject_reason = None
        code.expires_at = now + timedelta(days=settings.DEFAULT_VALIDITY_DAYS)
        code.cost_coins = (code.cost_coins or 0) + cost
        db.add(code)
        _charge(
            db, owner_id=owner_id, amount=cost, reason=ledger.REASON_COLLISION_SUBMIT,
            code=code, idempotency_key=idempotency_key, now=now,
        )

    logger.info("Code resubmitted id=%s owner=%s status=%s", code_id, owner_id, code.status)
    _run_matcher(db, [code], now)
    return db.get(models.CollisionCode, code_id)


def delete(
    db: Session,
    *,
    owner_id: int,
    code_id: int,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Soft delete. Deleting on the creation day (UTC) returns what was paid
    for the code that day; later deletes refund nothing.
    """
    now = now or _utcnow()

    with locks.user_lock(owner_id), atomic(db):
        code = _owned(db, code_id, owner_id)
        code.deleted_at = now
        db.add(code)

        refunded = 0
        if code.created_at.astimezone(timezone.utc).date() == now.astimezone(timezone.utc).date():
            refunded = ledger.code_net_paid_on_day(
                db, user_id=owner_id, code_id=code.id, day=now.astimezone(timezone.utc).date(),
            )
            if refunded > 0:
                ledger.credit(
                    db,
                    user_id=owner_id,
                    amount=refunded,
                    reason=ledger.REASON_COLLISION_REFUND,
                    meta={"code_id": code.id, "tag": code.normalized_tag},
                    now=now,
                )
        balance = code.owner.coins

    logger.info("Code deleted id=%s owner=%s refunded=%s", code_id, owner_id, refunded)
    return {"id": code_id, "refunded": refunded, "balance": balance}


# -------- Moderation --------

def approve(db: Session, *, code_id: int, now: Optional[datetime] = None) -> models.CollisionCode:
    now = now or _utcnow()
    with atomic(db):
        code = db.get(models.CollisionCode, code_id)
        if code is None or code.deleted_at is not None:
            raise NotFound("ERR_CODE_NOT_FOUND")
        if code.status != models.CODE_PENDING_REVIEW:
            raise Conflict("ERR_CODE_NOT_PENDING")
        code.status = models.CODE_ACTIVE
        code.reject_reason = None
        db.add(code)

    logger.info("Code approved id=%s", code_id)
    _run_matcher(db, [code], now)
    return db.get(models.CollisionCode, code_id)


def reject(db: Session, *, code_id: int, reason: Optional[str] = None, now: Optional[datetime] = None) -> models.CollisionCode:
    """Reject a code under review and refund what it cost."""
    now = now or _utcnow()
    code = db.get(models.CollisionCode, code_id)
    if code is None or code.deleted_at is not None:
        raise NotFound("ERR_CODE_NOT_FOUND")

    with locks.user_lock(code.owner_id), atomic(db):
        db.refresh(code)
        if code.status != models.CODE_PENDING_REVIEW:
            raise Conflict("ERR_CODE_NOT_PENDING")
        refund = code.cost_coins or 0
        code.status = models.CODE_REJECTED
        code.reject_reason = (reason or "").strip()[:200] or None
        code.cost_coins = 0
        db.add(code)
        if refund > 0:
            ledger.credit(
                db,
                user_id=code.owner_id,
                amount=refund,
                reason=ledger.REASON_REFUND,
                meta={"code_id": code.id, "tag": code.normalized_tag},
                now=now,
            )

    logger.info("Code rejected id=%s refund=%s reason=%r", code_id, refund, code.reject_reason)
    return code


# -------- Reads --------

def serialize(code: models.CollisionCode, now: datetime, *, blackholed: bool = False) -> Dict[str, Any]:
    left = int((code.expires_at - now).total_seconds())
    return {
        "id": code.id,
        "owner_id": code.owner_id,
        "tag": code.tag,
        "normalized_tag": code.normalized_tag,
        "country": code.country,
        "province": code.province,
        "city": code.city,
        "district": code.district,
        "gender": code.gender,
        "age_min": code.age_min,
        "age_max": code.age_max,
        "cost_coins": code.cost_coins,
        "status": code.status,
        "display_status": code.display_status(now),
        "is_expired": code.is_expired(now),
        "is_matched": code.status == models.CODE_MATCHED or (code.match_count or 0) > 0,
        "match_count": code.match_count or 0,
        "reject_reason": code.reject_reason,
        "is_blackhole": blackholed,
        "time_left_seconds": max(left, 0),
        "created_at": code.created_at,
        "expires_at": code.expires_at,
    }


def describe(db: Session, code: models.CollisionCode, now: datetime) -> Dict[str, Any]:
    """serialize() plus the owner-facing blackhole flag for the code's tag."""
    holes = hot_tags.blackholed(db, {code.normalized_tag})
    return serialize(code, now, blackholed=code.normalized_tag in holes)


def list_for_owner(db: Session, *, owner_id: int, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    now = now or _utcnow()
    rows = (
        db.query(models.CollisionCode)
        .filter(
            models.CollisionCode.owner_id == owner_id,
            models.CollisionCode.deleted_at.is_(None),
        )
        .order_by(models.CollisionCode.created_at.desc(), models.CollisionCode.id.desc())
        .all()
    )
    holes = hot_tags.blackholed(db, {c.normalized_tag for c in rows})
    return [serialize(c, now, blackholed=c.normalized_tag in holes) for c in rows]


def get(db: Session, *, owner_id: int, code_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or _utcnow()
    code = db.get(models.CollisionCode, code_id)
    if code is None or code.deleted_at is not None:
        raise NotFound("ERR_CODE_NOT_FOUND")
    if code.owner_id != owner_id:
        raise Forbidden("ERR_NOT_OWNER")
    return describe(db, code, now)


def search(db: Session, *, viewer_id: int, keyword: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Other users' live codes (expired included) carrying this tag, newest first."""
    now = now or _utcnow()
    _, normalized = clean_tag(keyword)
    rows = (
        db.query(models.CollisionCode)
        .filter(
            models.CollisionCode.normalized_tag == normalized,
            models.CollisionCode.owner_id != viewer_id,
            models.CollisionCode.deleted_at.is_(None),
            models.CollisionCode.status.in_((models.CODE_ACTIVE, models.CODE_MATCHED)),
        )
        .order_by(models.CollisionCode.created_at.desc(), models.CollisionCode.id.desc())
        .limit(SEARCH_LIMIT)
        .all()
    )

    results = []
    for code in rows:
        owner = code.owner
        item = {
            "id": code.id,
            "user_id": owner.id,
            "nickname": owner.nickname,
            "avatar": owner.avatar,
            "gender": owner.gender,
            "wechat_no": mask_wechat(owner.wechat_no),
            "tag": code.tag,
            "display_status": code.display_status(now),
            "is_expired": code.is_expired(now),
            "created_at": code.created_at,
            "expires_at": code.expires_at,
        }
        if owner.location_visible:
            item.update(LocationSnapshot.of(code).as_dict())
        results.append(item)
    return results
