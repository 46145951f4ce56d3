# collision/models.py
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    BigInteger,
    String,
    DateTime,
    Integer,
    Boolean,
    Text,
    Index,
    ForeignKey,
    UniqueConstraint,
    TypeDecorator,
)
from sqlalchemy.orm import declarative_base, relationship


class AwareDateTime(TypeDecorator):
    """DateTime that always comes back UTC-aware (SQLite drops tzinfo)."""

    impl = DateTime
    cache_ok = True

    def __init__(self):
        super().__init__(timezone=True)

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            return value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


Base = declarative_base()


# code status (stored). "expired" is derived on read, never written.
CODE_PENDING_REVIEW = "pending_review"
CODE_ACTIVE = "active"
CODE_MATCHED = "matched"
CODE_REJECTED = "rejected"
CODE_EXPIRED = "expired"

MATCH_MATCHED = "matched"
MATCH_FRIEND_ADDED = "friend_added"
MATCH_MISSED = "missed"


class User(Base):
    __tablename__ = "users"

    # issued by the identity provider (token "sub")
    id = Column(BigInteger, primary_key=True, autoincrement=False)
    nickname = Column(String(100), nullable=True)
    avatar = Column(String(255), nullable=True)

    # cached balance, written only by collision.ledger together with an entry
    coins = Column(Integer, nullable=False, default=0)

    # 0 unknown / 1 male / 2 female
    gender = Column(Integer, nullable=False, default=0)
    age = Column(Integer, nullable=True)

    country = Column(String(50), nullable=True)
    province = Column(String(50), nullable=True)
    city = Column(String(50), nullable=True)
    district = Column(String(50), nullable=True)

    location_visible = Column(Boolean, nullable=False, default=True)
    allow_force_add = Column(Boolean, nullable=False, default=False)
    allow_haidilao = Column(Boolean, nullable=False, default=False)

    wechat_no = Column(String(50), nullable=True)
    phone = Column(String(20), nullable=True)
    phone_verified = Column(Boolean, nullable=False, default=False)
    email = Column(String(191), nullable=True)
    email_verified = Column(Boolean, nullable=False, default=False)
    email_visible = Column(Boolean, nullable=False, default=True)
    pending_email = Column(String(191), nullable=True)
    email_verify_code = Column(String(64), nullable=True)  # sha256 of the code sent
    email_verify_expires_at = Column(AwareDateTime(), nullable=True)

    created_at = Column(AwareDateTime(), default=_utcnow, nullable=True)
    updated_at = Column(AwareDateTime(), onupdate=_utcnow, nullable=True)


class CollisionCode(Base):
    __tablename__ = "collision_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)

    tag = Column(String(50), nullable=False)
    normalized_tag = Column(String(50), nullable=False, index=True)

    # search scope snapshot
    country = Column(String(50), nullable=True)
    province = Column(String(50), nullable=True)
    city = Column(String(50), nullable=True)
    district = Column(String(50), nullable=True)

    # demographic filter snapshot (None = no constraint)
    gender = Column(Integer, nullable=True)
    age_min = Column(Integer, nullable=True)
    age_max = Column(Integer, nullable=True)

    cost_coins = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=CODE_ACTIVE)
    reject_reason = Column(String(200), nullable=True)
    match_count = Column(Integer, nullable=False, default=0)

    created_at = Column(AwareDateTime(), default=_utcnow, nullable=False)
    expires_at = Column(AwareDateTime(), nullable=False, index=True)
    deleted_at = Column(AwareDateTime(), nullable=True)

    owner = relationship("User", lazy="joined")

    __table_args__ = (
        Index("ix_collision_codes_tag_status", "normalized_tag", "status"),
    )

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def display_status(self, now: datetime) -> str:
        if self.status in (CODE_ACTIVE, CODE_MATCHED) and self.is_expired(now):
            return CODE_EXPIRED
        return self.status


class Match(Base):
    __tablename__ = "matches"

    id = Column(Integer, primary_key=True, autoincrement=True)

    code_id_a = Column(Integer, ForeignKey("collision_codes.id"), nullable=False, index=True)
    code_id_b = Column(Integer, ForeignKey("collision_codes.id"), nullable=False, index=True)
    user_id_a = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)
    user_id_b = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)
    # the same two users in ascending order, whichever side submitted first
    user_lo = Column(BigInteger, nullable=False)
    user_hi = Column(BigInteger, nullable=False)
    normalized_tag = Column(String(50), nullable=False, index=True)

    # district / city / province / country; null for a haidilao pull without overlap
    match_tier = Column(String(20), nullable=True)
    source = Column(String(20), nullable=False, default="matcher")  # matcher / haidilao

    matched_at = Column(AwareDateTime(), nullable=False)
    add_friend_deadline = Column(AwareDateTime(), nullable=False)

    status = Column(String(20), nullable=False, default=MATCH_MATCHED)
    contact_revealed_at = Column(AwareDateTime(), nullable=True)

    email_sent = Column(Boolean, nullable=False, default=False)
    email_sent_at = Column(AwareDateTime(), nullable=True)

    # per-side notes; "a" belongs to user_id_a
    remark_a = Column(String(20), nullable=True)
    remark_b = Column(String(20), nullable=True)
    known_a = Column(Boolean, nullable=False, default=False)
    known_b = Column(Boolean, nullable=False, default=False)

    code_a = relationship("CollisionCode", foreign_keys=[code_id_a])
    code_b = relationship("CollisionCode", foreign_keys=[code_id_b])
    user_a = relationship("User", foreign_keys=[user_id_a])
    user_b = relationship("User", foreign_keys=[user_id_b])

    __table_args__ = (
        # one match per pair of users and tag, across all workers
        UniqueConstraint("normalized_tag", "user_lo", "user_hi", name="uq_matches_tag_user_pair"),
    )

    def involves(self, user_id: int) -> bool:
        return user_id in (self.user_id_a, self.user_id_b)

    def partner_of(self, user_id: int) -> User:
        return self.user_b if user_id == self.user_id_a else self.user_a

    def side(self, user_id: int) -> str:
        return "a" if user_id == self.user_id_a else "b"


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False)
    delta = Column(Integer, nullable=False)  # signed
    reason = Column(String(32), nullable=False)
    idempotency_key = Column(String(128), nullable=True)
    meta = Column(Text, nullable=True)

    created_at = Column(AwareDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_ledger_entries_user", "user_id"),
        Index("ix_ledger_entries_reason", "reason"),
        UniqueConstraint("user_id", "idempotency_key", name="uq_ledger_entries_user_key"),
    )


class HotTag(Base):
    __tablename__ = "hot_tags"

    id = Column(Integer, primary_key=True, autoincrement=True)
    keyword = Column(String(50), nullable=False, unique=True)

    submit_count = Column(Integer, nullable=False, default=0)
    count_24h = Column(Integer, nullable=False, default=0)
    count_total = Column(Integer, nullable=False, default=0)

    # show / hide / blackhole
    status = Column(String(20), nullable=False, default="show")
    last_hit_at = Column(AwareDateTime(), nullable=True)
    created_at = Column(AwareDateTime(), default=_utcnow, nullable=True)


class EmailLog(Base):
    __tablename__ = "email_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)
    match_id = Column(Integer, ForeignKey("matches.id"), nullable=True)

    to_email = Column(String(191), nullable=False)
    subject = Column(String(255), nullable=False)
    content = Column(Text, nullable=True)

    # pending / sent / failed
    status = Column(String(20), nullable=False, default="pending", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    error_msg = Column(Text, nullable=True)

    sent_at = Column(AwareDateTime(), nullable=True)
    created_at = Column(AwareDateTime(), default=_utcnow, nullable=False)
