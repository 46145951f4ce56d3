# collision/api.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Query
from sqlalchemy.orm import Session

from collision import codes, crud, hot_tags, ledger, lifecycle, models, notifications
from collision.auth import Identity, get_current_user, require_admin, verify_callback_secret
from collision.database import get_db
from collision.i18n import normalize_lang, t
from collision.schemas import (
    BatchSubmitIn,
    CommonKeywordsIn,
    EmailBindIn,
    EmailVerifyIn,
    Envelope,
    HaidilaoIn,
    HotTagStatusIn,
    MatchActionIn,
    ProfileUpdateIn,
    RejectIn,
    RemarkIn,
    RenewIn,
    SearchIn,
    SendEmailIn,
    SettleIn,
    SubmitCodeIn,
    UpdateCodeIn,
    UserOut,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def get_lang(accept_language: Optional[str] = Header(default=None)) -> str:
    return normalize_lang(accept_language)


def ok(data: Any = None, lang: Optional[str] = None) -> dict:
    return Envelope(data=data, msg=t(lang, "OK")).model_dump()


# -------- Collision codes --------

@router.post("/collision/submit")
def submit_code(
    body: SubmitCodeIn,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
    idempotency_key: Optional[str] = Header(default=None),
):
    now = _now()
    code = codes.create(db, owner_id=user.id, draft=body.to_draft(), idempotency_key=idempotency_key, now=now)
    return ok(codes.describe(db, code, now), lang)


@router.post("/collision/batch-submit")
def batch_submit(
    body: BatchSubmitIn,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
    idempotency_key: Optional[str] = Header(default=None),
):
    now = _now()
    created = codes.batch_create(
        db,
        owner_id=user.id,
        drafts=[item.to_draft() for item in body.items],
        idempotency_key=idempotency_key,
        now=now,
    )
    return ok({"count": len(created), "list": [codes.describe(db, c, now) for c in created]}, lang)


@router.get("/collision/my-codes")
def my_codes(
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
):
    return ok(codes.list_for_owner(db, owner_id=user.id, now=_now()), lang)


@router.get("/collision/my-codes/{code_id}")
def my_code(
    code_id: int,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
):
    return ok(codes.get(db, owner_id=user.id, code_id=code_id, now=_now()), lang)


@router.put("/collision/my-codes/{code_id}")
def update_code(
    code_id: int,
    body: UpdateCodeIn,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
    idempotency_key: Optional[str] = Header(default=None),
):
    now = _now()
    code = codes.update(
        db,
        owner_id=user.id,
        code_id=code_id,
        tag=body.tag,
        validity_days=body.validity_days,
        idempotency_key=idempotency_key,
        now=now,
    )
    return ok(codes.describe(db, code, now), lang)


@router.post("/collision/my-codes/{code_id}/renew")
def renew_code(
    code_id: int,
    body: RenewIn,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
    idempotency_key: Optional[str] = Header(default=None),
):
    now = _now()
    code = codes.renew(
        db,
        owner_id=user.id,
        code_id=code_id,
        validity_days=body.validity_days,
        idempotency_key=idempotency_key,
        now=now,
    )
    return ok(codes.describe(db, code, now), lang)


@router.post("/collision/my-codes/{code_id}/resubmit")
def resubmit_code(
    code_id: int,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
    idempotency_key: Optional[str] = Header(default=None),
):
    now = _now()
    code = codes.resubmit(db, owner_id=user.id, code_id=code_id, idempotency_key=idempotency_key, now=now)
    return ok(codes.describe(db, code, now), lang)


@router.delete("/collision/my-codes/{code_id}")
def delete_code(
    code_id: int,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
):
    return ok(codes.delete(db, owner_id=user.id, code_id=code_id, now=_now()), lang)


@router.post("/collision/search")
def search_codes(
    body: SearchIn,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
):
    return ok(codes.search(db, viewer_id=user.id, keyword=body.keyword, now=_now()), lang)


@router.get("/collision/hot-tags")
def list_hot_tags(
    kind: str = Query(default=hot_tags.KIND_24H),
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
):
    return ok(hot_tags.list_hot(db, kind), lang)


# -------- Matches --------

@router.get("/collision/matches")
def list_matches(
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
):
    return ok(lifecycle.list_matches(db, user_id=user.id, now=_now()), lang)


@router.get("/collision/matches/{match_id}")
def match_detail(
    match_id: int,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
):
    return ok(lifecycle.get_match(db, match_id=match_id, viewer_id=user.id, now=_now()), lang)


@router.put("/collision/matches/{match_id}/remark")
def update_remark(
    match_id: int,
    body: RemarkIn,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
):
    match = lifecycle.set_remark(db, match_id=match_id, actor_id=user.id, remark=body.remark)
    return ok(lifecycle.serialize(match, user.id, _now()), lang)


@router.post("/collision/matches/{match_id}/mark-known")
def mark_known(
    match_id: int,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
):
    match = lifecycle.mark_known(db, match_id=match_id, actor_id=user.id)
    return ok(lifecycle.serialize(match, user.id, _now()), lang)


@router.post("/collision/common-keywords")
def common_keywords(
    body: CommonKeywordsIn,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
):
    keywords = lifecycle.common_keywords(db, user_id=user.id, other_id=body.matched_user_id)
    return ok({"common_keywords": keywords, "total": len(keywords)}, lang)


@router.post("/collision/add-friend")
def add_friend(
    body: MatchActionIn,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
):
    now = _now()
    match = lifecycle.add_friend(db, match_id=body.match_id, actor_id=user.id, now=now)
    return ok(lifecycle.serialize(match, user.id, now), lang)


@router.post("/collision/force-add")
def force_add(
    body: MatchActionIn,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
    idempotency_key: Optional[str] = Header(default=None),
):
    now = _now()
    match = lifecycle.force_add(
        db, match_id=body.match_id, actor_id=user.id, idempotency_key=idempotency_key, now=now,
    )
    return ok(lifecycle.serialize(match, user.id, now), lang)


@router.post("/collision/skip")
def skip_match(
    body: MatchActionIn,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
):
    now = _now()
    match = lifecycle.skip(db, match_id=body.match_id, actor_id=user.id, now=now)
    return ok(lifecycle.serialize(match, user.id, now), lang)


@router.post("/collision/haidilao")
def haidilao(
    body: HaidilaoIn,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
    idempotency_key: Optional[str] = Header(default=None),
):
    now = _now()
    match = lifecycle.haidilao(db, user_id=user.id, tag=body.tag, idempotency_key=idempotency_key, now=now)
    return ok(lifecycle.serialize(match, user.id, now), lang)


@router.post("/collision/send-email")
def send_email(
    body: SendEmailIn,
    background_tasks: BackgroundTasks,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
    idempotency_key: Optional[str] = Header(default=None),
):
    log = lifecycle.send_email(
        db,
        match_id=body.match_id,
        actor_id=user.id,
        content=body.content,
        idempotency_key=idempotency_key,
        lang=lang,
        now=_now(),
    )
    if log.status != notifications.STATUS_SENT:
        background_tasks.add_task(notifications.dispatch_in_background, log.id)
    return ok({"email_log_id": log.id, "status": log.status}, lang)


# -------- User --------

@router.get("/user/balance")
def balance(
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
):
    data = UserOut.model_validate(user).model_dump()
    data["balance"] = ledger.get_balance(db, user_id=user.id)
    return ok(data, lang)


@router.get("/user/consume-records")
def consume_records(
    page: int = Query(default=1),
    page_size: int = Query(default=10),
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
):
    return ok(ledger.get_statement(db, user_id=user.id, page=page, page_size=page_size, lang=lang), lang)


@router.get("/user/profile")
def get_profile(
    user: models.User = Depends(get_current_user),
    lang: str = Depends(get_lang),
):
    return ok(crud.user_profile(user), lang)


@router.put("/user/profile")
def update_profile(
    body: ProfileUpdateIn,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
):
    user = crud.update_profile(db, user, body.model_dump(exclude_unset=True))
    return ok(crud.user_profile(user), lang)


@router.post("/user/email/bind")
def bind_email(
    body: EmailBindIn,
    background_tasks: BackgroundTasks,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
):
    log = crud.bind_email(db, user, body.email, lang=lang, now=_now())
    background_tasks.add_task(notifications.dispatch_in_background, log.id)
    return ok({"email": body.email, "expires_in": int(crud.EMAIL_CODE_TTL.total_seconds())}, lang)


@router.post("/user/email/verify")
def verify_email(
    body: EmailVerifyIn,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
):
    user = crud.verify_email(db, user, body.email, body.code, now=_now())
    return ok(crud.user_profile(user), lang)


# -------- Payments --------

@router.post("/payments/settle", dependencies=[Depends(verify_callback_secret)])
def settle_payment(
    body: SettleIn,
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
):
    user = crud.get_user(db, body.user_id)
    entry, duplicate = ledger.recharge(db, user_id=user.id, coins=body.coins, order_no=body.order_no)
    db.refresh(user)
    return ok({"order_no": body.order_no, "coins": entry.delta, "duplicate": duplicate, "balance": user.coins}, lang)


# -------- Admin --------

@router.post("/admin/codes/{code_id}/approve")
def approve_code(
    code_id: int,
    admin: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
):
    now = _now()
    code = codes.approve(db, code_id=code_id, now=now)
    logger.info("Admin %s approved code=%s", admin.user_id, code_id)
    return ok(codes.describe(db, code, now), lang)


@router.post("/admin/codes/{code_id}/reject")
def reject_code(
    code_id: int,
    body: RejectIn,
    admin: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
):
    now = _now()
    code = codes.reject(db, code_id=code_id, reason=body.reason, now=now)
    logger.info("Admin %s rejected code=%s", admin.user_id, code_id)
    return ok(codes.describe(db, code, now), lang)


@router.put("/admin/hot-tags/{keyword}")
def set_hot_tag_status(
    keyword: str,
    body: HotTagStatusIn,
    admin: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
    lang: str = Depends(get_lang),
):
    row = hot_tags.set_status(db, codes.normalize_tag(keyword), body.status)
    logger.info("Admin %s set hot tag %r -> %s", admin.user_id, row.keyword, row.status)
    return ok({"keyword": row.keyword, "status": row.status}, lang)
