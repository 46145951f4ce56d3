# collision/hot_tags.py
"""
Hot collision codes.

Counters live on `HotTag` rows. The row is created up front by ensure_row;
submit and match transactions then only increment it in SQL. A blackholed
tag is hidden from the board and flagged to the owners of its codes.

The public board is read through a small TTL cache because the client polls
it every few seconds.
"""
from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy import case, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from collision import models
from collision.core.config import settings
from collision.errors import ValidationError

logger = logging.getLogger(__name__)

KIND_24H = "24h"
KIND_TOTAL = "total"
KINDS = (KIND_24H, KIND_TOTAL)

STATUS_SHOW = "show"
STATUS_HIDE = "hide"
STATUS_BLACKHOLE = "blackhole"
STATUSES = (STATUS_SHOW, STATUS_HIDE, STATUS_BLACKHOLE)

WINDOW = timedelta(hours=24)


class TTLCache:
    """Thread-safe cache with TTL, read-through via get_or_set."""

    def __init__(self, ttl_seconds: float = 5, clock: Callable[[], float] = time.monotonic):
        self._lock = threading.RLock()
        self._data: Dict[str, Any] = {}
        self._timestamps: Dict[str, float] = {}
        self._ttl = ttl_seconds
        self._clock = clock

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if key not in self._data:
                return default
            if self._is_expired(key):
                del self._data[key]
                del self._timestamps[key]
                return default
            return self._data[key]

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value
            self._timestamps[key] = self._clock()

    def get_or_set(self, key: str, factory: Callable[[], Any]) -> Any:
        """Return the cached value, or compute it with factory() and cache it."""
        with self._lock:
            marker = object()
            value = self.get(key, marker)
            if value is not marker:
                return value
            value = factory()
            self.set(key, value)
            return value

    def invalidate(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._data.clear()
                self._timestamps.clear()
            else:
                self._data.pop(key, None)
                self._timestamps.pop(key, None)

    def _is_expired(self, key: str) -> bool:
        return self._clock() - self._timestamps[key] > self._ttl


_cache = TTLCache(ttl_seconds=settings.HOT_TAG_CACHE_TTL_SECONDS)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _find(db: Session, keyword: str) -> Optional[models.HotTag]:
    return db.query(models.HotTag).filter(models.HotTag.keyword == keyword).first()


def _new_row(keyword: str, now: datetime) -> models.HotTag:
    return models.HotTag(
        keyword=keyword,
        submit_count=0,
        count_24h=0,
        count_total=0,
        status=settings.HOT_TAG_DEFAULT_STATUS,
        created_at=now,
    )


def ensure_row(db: Session, keyword: str, *, now: Optional[datetime] = None) -> None:
    """
    Create the counter row for `keyword` in its own short transaction.

    Call with no pending work on the session. Two first submits of the same
    tag both land here; the loser's IntegrityError is absorbed and the row
    the winner committed is used.
    """
    if _find(db, keyword) is not None:
        return
    db.add(_new_row(keyword, now or _utcnow()))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info("Hot tag %r created by a concurrent request", keyword)


def lock_row(db: Session, keyword: str) -> None:
    """
    Row-lock the tag's counter row for the rest of the transaction. This is
    the cross-worker counterpart of locks.tag_lock; SQLite ignores it and
    serializes writers on its own.
    """
    (
        db.query(models.HotTag.id)
        .filter(models.HotTag.keyword == keyword)
        .with_for_update()
        .first()
    )


def _bump(db: Session, keyword: str, now: datetime, *, submit: bool) -> models.HotTag:
    row = _find(db, keyword)
    if row is None:
        # ensure_row was skipped; insert inside the caller's transaction
        row = _new_row(keyword, now)
        db.add(row)
        db.flush()

    stale = or_(models.HotTag.last_hit_at.is_(None), models.HotTag.last_hit_at < now - WINDOW)
    values = {
        models.HotTag.count_24h: case((stale, 1), else_=models.HotTag.count_24h + 1),
        models.HotTag.count_total: models.HotTag.count_total + 1,
        models.HotTag.last_hit_at: now,
    }
    if submit:
        values[models.HotTag.submit_count] = models.HotTag.submit_count + 1
    # increments run in SQL so concurrent transactions never lose a hit
    db.query(models.HotTag).filter(models.HotTag.id == row.id).update(values, synchronize_session=False)
    db.refresh(row)
    return row


# -------- Counters (inside the caller's transaction) --------

def record_submit(db: Session, keyword: str, *, now: Optional[datetime] = None) -> models.HotTag:
    return _bump(db, keyword, now or _utcnow(), submit=True)


def record_match(db: Session, keyword: str, *, now: Optional[datetime] = None) -> models.HotTag:
    return _bump(db, keyword, now or _utcnow(), submit=False)


def decay_stale_counts(db: Session, *, now: Optional[datetime] = None) -> int:
    """Zero count_24h on tags without a hit in the last 24h. Returns rows touched."""
    now = now or _utcnow()
    touched = (
        db.query(models.HotTag)
        .filter(
            models.HotTag.count_24h > 0,
            models.HotTag.last_hit_at < now - WINDOW,
        )
        .update({models.HotTag.count_24h: 0}, synchronize_session=False)
    )
    if touched:
        logger.info("Hot tags decayed: %s", touched)
    return touched


def set_status(db: Session, keyword: str, status: str) -> models.HotTag:
    if status not in STATUSES:
        raise ValidationError("ERR_VALIDATION")
    ensure_row(db, keyword)
    row = _find(db, keyword)
    row.status = status
    db.commit()
    _cache.invalidate()
    return row


def blackholed(db: Session, keywords) -> Set[str]:
    """The subset of `keywords` an admin has blackholed."""
    keywords = set(keywords)
    if not keywords:
        return set()
    rows = (
        db.query(models.HotTag.keyword)
        .filter(models.HotTag.keyword.in_(keywords), models.HotTag.status == STATUS_BLACKHOLE)
        .all()
    )
    return {keyword for (keyword,) in rows}


# -------- Board --------

def _load_board(db: Session, kind: str, limit: int) -> List[Dict[str, Any]]:
    column = models.HotTag.count_24h if kind == KIND_24H else models.HotTag.count_total
    rows = (
        db.query(models.HotTag)
        .filter(models.HotTag.status == STATUS_SHOW, column > 0)
        .order_by(column.desc(), models.HotTag.id)
        .limit(limit)
        .all()
    )
    return [
        {
            "rank": i + 1,
            "keyword": row.keyword,
            "count": row.count_24h if kind == KIND_24H else row.count_total,
        }
        for i, row in enumerate(rows)
    ]


def list_hot(db: Session, kind: str = KIND_24H, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    if kind not in KINDS:
        raise ValidationError("ERR_VALIDATION")
    limit = limit or settings.HOT_TAG_LIMIT
    return _cache.get_or_set(f"{kind}:{limit}", lambda: _load_board(db, kind, limit))


def invalidate_cache() -> None:
    _cache.invalidate()
