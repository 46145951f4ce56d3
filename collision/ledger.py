# collision/ledger.py
from __future__ import annotations

import json
import logging
from datetime import date, datetime, timezone
from typing import Optional, List, Dict, Any, Tuple

from sqlalchemy import func, desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from collision import locks, models
from collision.database import atomic
from collision.errors import Conflict, InsufficientBalance, NotFound, ValidationError
from collision.i18n import reason_display

logger = logging.getLogger(__name__)

REASON_COLLISION_SUBMIT = "collision_submit"
REASON_RENEW_COLLISION = "renew_collision"
REASON_COLLISION_REFUND = "collision_refund"
REASON_HAIDILAO = "haidilao"
REASON_FORCE_ADD = "force_add"
REASON_SEND_EMAIL = "send_email"
REASON_RECHARGE = "recharge"
REASON_REFUND = "refund"
REASON_MATCH_REWARD = "match_reward"
REASON_SYSTEM = "system"

REASONS = (
    REASON_COLLISION_SUBMIT,
    REASON_RENEW_COLLISION,
    REASON_COLLISION_REFUND,
    REASON_HAIDILAO,
    REASON_FORCE_ADD,
    REASON_SEND_EMAIL,
    REASON_RECHARGE,
    REASON_REFUND,
    REASON_MATCH_REWARD,
    REASON_SYSTEM,
)

INCOME_REASONS = frozenset(
    {REASON_RECHARGE, REASON_REFUND, REASON_MATCH_REWARD, REASON_SYSTEM, REASON_COLLISION_REFUND}
)

MAX_PAGE_SIZE = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _canonical_json(meta: Dict[str, Any]) -> str:
    # Deterministic JSON so substring marker queries are stable.
    return json.dumps(meta, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


def load_meta(row: models.LedgerEntry) -> Dict[str, Any]:
    if not row.meta:
        return {}
    return json.loads(row.meta)


def _lock_user_row(db: Session, user_id: int) -> models.User:
    # pending changes would be clobbered by populate_existing
    db.flush()
    user = (
        db.query(models.User)
        .filter(models.User.id == user_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if user is None:
        raise NotFound("ERR_NOT_FOUND")
    return user


# -------- Idempotency --------

def find_by_key(db: Session, *, user_id: int, idempotency_key: str) -> Optional[models.LedgerEntry]:
    return (
        db.query(models.LedgerEntry)
        .filter(
            models.LedgerEntry.user_id == user_id,
            models.LedgerEntry.idempotency_key == idempotency_key,
        )
        .first()
    )


def find_by_key_prefix(db: Session, *, user_id: int, prefix: str) -> List[models.LedgerEntry]:
    return (
        db.query(models.LedgerEntry)
        .filter(
            models.LedgerEntry.user_id == user_id,
            models.LedgerEntry.idempotency_key.startswith(prefix, autoescape=True),
        )
        .order_by(models.LedgerEntry.id)
        .all()
    )


def replayed_meta(
    db: Session,
    *,
    user_id: int,
    idempotency_key: Optional[str],
    reason: str,
) -> Optional[Dict[str, Any]]:
    """
    Meta recorded by an earlier call that used this key, or None when the key
    is new. A key already spent on a different kind of operation is a Conflict.
    """
    if not idempotency_key:
        return None
    row = find_by_key(db, user_id=user_id, idempotency_key=idempotency_key)
    if row is None:
        return None
    if row.reason != reason:
        logger.warning(
            "Idempotency key reused user=%s key=%s reason=%s original=%s",
            user_id, idempotency_key, reason, row.reason,
        )
        raise Conflict("ERR_IDEMPOTENCY_REUSED")
    return load_meta(row)


# -------- Entries --------

def _append(
    db: Session,
    user: models.User,
    *,
    delta: int,
    reason: str,
    idempotency_key: Optional[str],
    meta: Optional[Dict[str, Any]],
    now: Optional[datetime],
) -> models.LedgerEntry:
    if reason not in REASONS:
        raise ValueError(f"unknown ledger reason: {reason}")

    # a failed flush expires `user`; keep plain values for logging
    user_id = user.id
    old_balance = user.coins or 0
    row = models.LedgerEntry(
        user_id=user_id,
        delta=delta,
        reason=reason,
        idempotency_key=idempotency_key or None,
        meta=(_canonical_json(meta) if meta else None),
        created_at=now or _utcnow(),
    )
    # cached balance moves in the same flush as its entry
    user.coins = old_balance + delta
    db.add(row)
    db.add(user)
    try:
        db.flush()
    except IntegrityError as exc:
        logger.warning("Ledger entry rejected user=%s key=%s: %s", user_id, idempotency_key, exc.orig)
        raise Conflict("ERR_IDEMPOTENCY_REUSED") from exc

    logger.info(
        "ledger %s user=%s delta=%s reason=%s old=%s new=%s",
        "credit" if delta > 0 else "debit", user_id, delta, reason, old_balance, old_balance + delta,
    )
    return row


def debit(
    db: Session,
    *,
    user_id: int,
    amount: int,
    reason: str,
    idempotency_key: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> models.LedgerEntry:
    """
    Take `amount` coins from the user inside the caller's transaction.

    Callers hold locks.user_lock(user_id) until they commit. Nothing is written
    when the balance is short.
    """
    amount = int(amount)
    if amount <= 0:
        raise ValidationError("ERR_AMOUNT")

    user = _lock_user_row(db, user_id)
    balance = user.coins or 0
    if balance < amount:
        logger.warning("Debit refused user=%s reason=%s balance=%s required=%s", user_id, reason, balance, amount)
        raise InsufficientBalance(balance=balance, required=amount)

    return _append(db, user, delta=-amount, reason=reason, idempotency_key=idempotency_key, meta=meta, now=now)


def ensure_funds(db: Session, *, user_id: int, amount: int) -> int:
    """Lock the user row and check that `amount` can be debited. Returns the balance."""
    user = _lock_user_row(db, user_id)
    balance = user.coins or 0
    if balance < amount:
        logger.warning("Funds check failed user=%s balance=%s required=%s", user_id, balance, amount)
        raise InsufficientBalance(balance=balance, required=amount)
    return balance


def credit(
    db: Session,
    *,
    user_id: int,
    amount: int,
    reason: str,
    idempotency_key: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> models.LedgerEntry:
    amount = int(amount)
    if amount <= 0:
        raise ValidationError("ERR_AMOUNT")

    user = _lock_user_row(db, user_id)
    return _append(db, user, delta=amount, reason=reason, idempotency_key=idempotency_key, meta=meta, now=now)


def recharge(
    db: Session,
    *,
    user_id: int,
    coins: int,
    order_no: str,
    now: Optional[datetime] = None,
) -> Tuple[models.LedgerEntry, bool]:
    """Settle a paid order. Returns (entry, duplicate); a replayed order_no credits nothing."""
    order_no = (order_no or "").strip()
    if not order_no:
        raise ValidationError("ERR_VALIDATION")

    with locks.user_lock(user_id), atomic(db):
        existing = find_by_key(db, user_id=user_id, idempotency_key=order_no)
        if existing is not None:
            if existing.reason != REASON_RECHARGE:
                raise Conflict("ERR_IDEMPOTENCY_REUSED")
            logger.info("Recharge replay user=%s order=%s", user_id, order_no)
            return existing, True
        row = credit(
            db,
            user_id=user_id,
            amount=coins,
            reason=REASON_RECHARGE,
            idempotency_key=order_no,
            meta={"order_no": order_no},
            now=now,
        )
    return row, False


# -------- Reads --------

def get_balance(db: Session, *, user_id: int) -> int:
    total = (
        db.query(func.coalesce(func.sum(models.LedgerEntry.delta), 0))
        .filter(models.LedgerEntry.user_id == user_id)
        .scalar()
    )
    return int(total)


def verify_balance(db: Session, *, user_id: int) -> bool:
    user = db.get(models.User, user_id)
    if user is None:
        raise NotFound("ERR_NOT_FOUND")
    return (user.coins or 0) == get_balance(db, user_id=user_id)


def code_net_paid_on_day(db: Session, *, user_id: int, code_id: int, day: date) -> int:
    """
    Coins paid for one code during the given UTC day: submit and renewal
    debits minus refunds already credited for it that day. Never negative.
    """
    marker = f'"code_id":{int(code_id)}'
    rows = (
        db.query(models.LedgerEntry)
        .filter(
            models.LedgerEntry.user_id == user_id,
            models.LedgerEntry.reason.in_(
                (REASON_COLLISION_SUBMIT, REASON_RENEW_COLLISION, REASON_REFUND, REASON_COLLISION_REFUND)
            ),
            models.LedgerEntry.meta.isnot(None),
            models.LedgerEntry.meta.contains(marker),
        )
        .all()
    )
    total = 0
    for row in rows:
        # the marker also matches code_id 12 when looking for 1
        if load_meta(row).get("code_id") != int(code_id):
            continue
        if row.created_at.astimezone(timezone.utc).date() != day:
            continue
        total -= row.delta
    return max(total, 0)


def statement_item(row: models.LedgerEntry, lang: str | None = None) -> Dict[str, Any]:
    return {
        "id": row.id,
        "amount": abs(row.delta),
        "delta": row.delta,
        "direction": "income" if row.delta > 0 else "expense",
        "type": row.reason,
        "type_display": reason_display(lang, row.reason),
        "created_at": row.created_at,
    }


def get_statement(
    db: Session,
    *,
    user_id: int,
    page: int = 1,
    page_size: int = 10,
    lang: str | None = None,
) -> Dict[str, Any]:
    page = max(int(page or 1), 1)
    page_size = int(page_size or 10)
    if page_size < 1:
        page_size = 10
    page_size = min(page_size, MAX_PAGE_SIZE)

    base = db.query(models.LedgerEntry).filter(models.LedgerEntry.user_id == user_id)
    total = base.count()
    rows = (
        base.order_by(desc(models.LedgerEntry.id))
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return {
        "list": [statement_item(r, lang) for r in rows],
        "total": total,
        "page": page,
        "page_size": page_size,
    }
