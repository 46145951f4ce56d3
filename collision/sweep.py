# collision/sweep.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from collision import hot_tags, matcher, models
from collision.database import atomic, db_session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepResult:
    processed: int
    matched: int
    skipped: int


def run_sweep(db: Session, *, now: Optional[datetime] = None) -> SweepResult:
    """
    Re-run the matcher over every matchable code, oldest first, so codes
    created earlier pick up partners that arrived later. Expired codes are
    included. One failing code is logged and skipped.
    """
    if now is None:
        now = datetime.now(timezone.utc)

    ids = [
        row[0]
        for row in db.query(models.CollisionCode.id)
        .filter(
            models.CollisionCode.deleted_at.is_(None),
            models.CollisionCode.status.in_(matcher.MATCHABLE),
        )
        .order_by(models.CollisionCode.created_at, models.CollisionCode.id)
        .all()
    ]

    processed = 0
    matched = 0
    skipped = 0

    for code_id in ids:
        processed += 1
        try:
            match = matcher.match_for_code(db, code_id, now=now)
        except Exception:
            logger.exception("Sweep failed on code=%s", code_id)
            skipped += 1
            continue
        if match is None:
            skipped += 1
        else:
            matched += 1

    with atomic(db):
        hot_tags.decay_stale_counts(db, now=now)

    result = SweepResult(processed=processed, matched=matched, skipped=skipped)
    logger.info("Sweep done processed=%s matched=%s skipped=%s", processed, matched, skipped)
    return result


async def sweep_forever(interval_seconds: float) -> None:
    """Background loop started by the app when MATCHER_SWEEP_INTERVAL_SECONDS > 0."""
    logger.info("Matcher sweep every %ss", interval_seconds)
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(_sweep_once)
        except Exception:
            logger.exception("Matcher sweep crashed")


def _sweep_once() -> SweepResult:
    with db_session() as db:
        return run_sweep(db)
