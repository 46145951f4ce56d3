from datetime import timedelta

import pytest

from collision import codes, hot_tags, ledger, models
from collision.core.config import settings
from collision.errors import Conflict, Forbidden, InsufficientBalance, NotFound, ValidationError


def _code_count(db, owner_id):
    return db.query(models.CollisionCode).filter(models.CollisionCode.owner_id == owner_id).count()


class TestTags:
    def test_normalize_collapses_and_casefolds(self):
        assert codes.normalize_tag("  Hiking   CLUB ") == "hiking club"

    @pytest.mark.parametrize("tag", ["", "   ", None])
    def test_empty_tag_rejected(self, tag):
        with pytest.raises(ValidationError) as exc:
            codes.clean_tag(tag)
        assert exc.value.message_key == "ERR_TAG_EMPTY"

    def test_too_long(self):
        with pytest.raises(ValidationError) as exc:
            codes.clean_tag("x" * (codes.TAG_MAX_LENGTH + 1))
        assert exc.value.params == {"limit": codes.TAG_MAX_LENGTH}

    def test_forbidden_keyword(self, monkeypatch):
        monkeypatch.setattr(settings, "FORBIDDEN_KEYWORDS", "spam, scam")
        with pytest.raises(ValidationError) as exc:
            codes.clean_tag("Free SPAM today")
        assert exc.value.message_key == "ERR_TAG_FORBIDDEN"
        assert codes.clean_tag("Hiking") == ("Hiking", "hiking")

    def test_mask_wechat(self):
        assert codes.mask_wechat("wxid_abcdef") == "wx***ef"
        assert codes.mask_wechat("abcd") == "***"
        assert codes.mask_wechat(None) is None


class TestCreate:
    def test_debits_and_inserts(self, db, make_user, draft, now):
        make_user(1, coins=20)
        code = codes.create(db, owner_id=1, draft=draft("  Hiking "), now=now)

        assert code.tag == "Hiking"
        assert code.normalized_tag == "hiking"
        assert code.status == models.CODE_ACTIVE
        assert code.cost_coins == settings.SUBMIT_COST
        assert code.expires_at == now + timedelta(days=settings.DEFAULT_VALIDITY_DAYS)
        assert db.get(models.User, 1).coins == 10
        assert ledger.verify_balance(db, user_id=1)

    def test_whitespace_tag_leaves_balance(self, db, make_user, draft, now):
        make_user(1, coins=20)
        with pytest.raises(ValidationError):
            codes.create(db, owner_id=1, draft=draft("   "), now=now)
        assert db.get(models.User, 1).coins == 20
        assert _code_count(db, 1) == 0

    def test_insufficient_balance_creates_nothing(self, db, make_user, draft, now):
        make_user(1, coins=5)
        with pytest.raises(InsufficientBalance):
            codes.create(db, owner_id=1, draft=draft(), now=now)

        db.expire_all()
        assert db.get(models.User, 1).coins == 5
        assert _code_count(db, 1) == 0
        assert ledger.verify_balance(db, user_id=1)

    def test_age_range_and_validity(self, db, make_user, draft, now):
        make_user(1, coins=100)
        with pytest.raises(ValidationError) as exc:
            codes.create(db, owner_id=1, draft=draft(age_min=30, age_max=20), now=now)
        assert exc.value.message_key == "ERR_AGE_RANGE"
        with pytest.raises(ValidationError):
            codes.create(db, owner_id=1, draft=draft(validity_days=0), now=now)
        with pytest.raises(ValidationError):
            codes.create(db, owner_id=1, draft=draft(gender=7), now=now)
        assert db.get(models.User, 1).coins == 100

    def test_validity_above_limit_is_validation_error(self, db, make_user, draft, now):
        make_user(1, coins=100)
        with pytest.raises(ValidationError) as exc:
            codes.create(db, owner_id=1, draft=draft(validity_days=10_000_000), now=now)
        assert exc.value.message_key == "ERR_VALIDITY_DAYS"
        assert exc.value.params == {"limit": settings.MAX_VALIDITY_DAYS}

        code = codes.create(db, owner_id=1, draft=draft(validity_days=settings.MAX_VALIDITY_DAYS), now=now)
        assert code.expires_at == now + timedelta(days=settings.MAX_VALIDITY_DAYS)
        assert db.get(models.User, 1).coins == 90

    def test_gender_zero_means_any(self, db, make_user, draft, now):
        make_user(1, coins=20)
        code = codes.create(db, owner_id=1, draft=draft(gender=0, age_min=0), now=now)
        assert code.gender is None
        assert code.age_min is None

    def test_audit_mode_starts_pending(self, db, make_user, draft, now, monkeypatch):
        monkeypatch.setattr(settings, "ENABLE_COLLISION_AUDIT", True)
        make_user(1, coins=20)
        code = codes.create(db, owner_id=1, draft=draft(), now=now)
        assert code.status == models.CODE_PENDING_REVIEW

    def test_idempotent_retry_charges_once(self, db, make_user, draft, now):
        make_user(1, coins=30)
        first = codes.create(db, owner_id=1, draft=draft(), idempotency_key="sub-1", now=now)
        again = codes.create(db, owner_id=1, draft=draft(), idempotency_key="sub-1", now=now)

        assert first.id == again.id
        assert db.get(models.User, 1).coins == 20
        assert _code_count(db, 1) == 1


class TestBatchCreate:
    def test_all_or_nothing_on_funds(self, db, make_user, draft, now):
        make_user(1, coins=25)
        with pytest.raises(InsufficientBalance):
            codes.batch_create(db, owner_id=1, drafts=[draft("a"), draft("b"), draft("c")], now=now)
        db.expire_all()
        assert db.get(models.User, 1).coins == 25
        assert _code_count(db, 1) == 0

    def test_all_or_nothing_on_validation(self, db, make_user, draft, now):
        make_user(1, coins=100)
        with pytest.raises(ValidationError):
            codes.batch_create(db, owner_id=1, drafts=[draft("a"), draft(" ")], now=now)
        assert _code_count(db, 1) == 0
        assert db.get(models.User, 1).coins == 100

    def test_one_debit_per_code(self, db, make_user, draft, now):
        make_user(1, coins=100)
        created = codes.batch_create(db, owner_id=1, drafts=[draft("a"), draft("b"), draft("a")], now=now)

        assert [c.normalized_tag for c in created] == ["a", "b", "a"]
        assert db.get(models.User, 1).coins == 70
        debits = (
            db.query(models.LedgerEntry)
            .filter(models.LedgerEntry.reason == ledger.REASON_COLLISION_SUBMIT)
            .count()
        )
        assert debits == 3

    def test_size_limits(self, db, make_user, draft, now, monkeypatch):
        monkeypatch.setattr(settings, "BATCH_SUBMIT_MAX", 2)
        make_user(1, coins=100)
        with pytest.raises(ValidationError):
            codes.batch_create(db, owner_id=1, drafts=[], now=now)
        with pytest.raises(ValidationError) as exc:
            codes.batch_create(db, owner_id=1, drafts=[draft("a"), draft("b"), draft("c")], now=now)
        assert exc.value.params == {"limit": 2}

    def test_replay_returns_same_codes(self, db, make_user, draft, now):
        make_user(1, coins=100)
        first = codes.batch_create(db, owner_id=1, drafts=[draft("a"), draft("b")], idempotency_key="b1", now=now)
        again = codes.batch_create(db, owner_id=1, drafts=[draft("a"), draft("b")], idempotency_key="b1", now=now)

        assert [c.id for c in first] == [c.id for c in again]
        assert db.get(models.User, 1).coins == 80


class TestRenew:
    def test_extends_from_expiry_when_still_live(self, db, make_user, draft, now):
        make_user(1, coins=100)
        code = codes.create(db, owner_id=1, draft=draft(), now=now)
        before = code.expires_at

        renewed = codes.renew(db, owner_id=1, code_id=code.id, validity_days=2, now=now + timedelta(hours=1))
        assert renewed.expires_at == before + timedelta(days=2)
        assert db.get(models.User, 1).coins == 80

    def test_extends_from_now_when_expired(self, db, make_user, draft, now):
        make_user(1, coins=100)
        code = codes.create(db, owner_id=1, draft=draft(), now=now)
        later = now + timedelta(days=5)

        renewed = codes.renew(db, owner_id=1, code_id=code.id, validity_days=1, now=later)
        assert renewed.expires_at == later + timedelta(days=1)
        assert renewed.expires_at > code.created_at + timedelta(days=1)

    def test_never_moves_backwards(self, db, make_user, draft, now):
        make_user(1, coins=100)
        code = codes.create(db, owner_id=1, draft=draft(validity_days=30), now=now)
        before = code.expires_at
        renewed = codes.renew(db, owner_id=1, code_id=code.id, validity_days=1, now=now)
        assert renewed.expires_at >= before

    def test_days_above_limit_charge_nothing(self, db, make_user, draft, now):
        make_user(1, coins=100)
        code = codes.create(db, owner_id=1, draft=draft(), now=now)
        before = code.expires_at
        with pytest.raises(ValidationError):
            codes.renew(db, owner_id=1, code_id=code.id, validity_days=10_000_000, now=now)
        db.expire_all()
        assert db.get(models.CollisionCode, code.id).expires_at == before
        assert db.get(models.User, 1).coins == 90

    def test_owner_only(self, db, make_user, draft, now):
        make_user(1, coins=100)
        make_user(2, coins=100)
        code = codes.create(db, owner_id=1, draft=draft(), now=now)
        with pytest.raises(Forbidden):
            codes.renew(db, owner_id=2, code_id=code.id, now=now)
        with pytest.raises(NotFound):
            codes.renew(db, owner_id=1, code_id=9999, now=now)
        assert db.get(models.User, 2).coins == 100


class TestUpdate:
    def test_retag_moves_code_into_new_pool(self, db, make_user, draft, now):
        make_user(1, coins=100)
        make_user(2, coins=100)
        codes.create(db, owner_id=1, draft=draft("hiking"), now=now)
        mine = codes.create(db, owner_id=2, draft=draft("tennis"), now=now)
        assert db.query(models.Match).count() == 0

        updated = codes.update(db, owner_id=2, code_id=mine.id, tag=" Hiking ", now=now + timedelta(minutes=5))
        assert updated.tag == "Hiking"
        assert updated.normalized_tag == "hiking"
        assert updated.status == models.CODE_MATCHED
        assert db.query(models.Match).one().normalized_tag == "hiking"
        # a tag change alone is free
        assert db.get(models.User, 2).coins == 90
        row = db.query(models.HotTag).filter(models.HotTag.keyword == "hiking").one()
        assert row.submit_count == 2

    def test_days_charge_renewal_from_now(self, db, make_user, draft, now):
        make_user(1, coins=100)
        code = codes.create(db, owner_id=1, draft=draft(), now=now)
        later = now + timedelta(hours=1)

        updated = codes.update(db, owner_id=1, code_id=code.id, validity_days=3, now=later)
        assert updated.expires_at == later + timedelta(days=3)
        assert updated.cost_coins == 20
        assert db.get(models.User, 1).coins == 80
        assert ledger.verify_balance(db, user_id=1)

    def test_days_never_move_expiry_back(self, db, make_user, draft, now):
        make_user(1, coins=100)
        code = codes.create(db, owner_id=1, draft=draft(validity_days=30), now=now)
        before = code.expires_at
        updated = codes.update(db, owner_id=1, code_id=code.id, validity_days=1, now=now)
        assert updated.expires_at == before

    def test_replayed_key_charges_once(self, db, make_user, draft, now):
        make_user(1, coins=100)
        code = codes.create(db, owner_id=1, draft=draft(), now=now)
        first = codes.update(db, owner_id=1, code_id=code.id, validity_days=2, idempotency_key="u1", now=now)
        again = codes.update(db, owner_id=1, code_id=code.id, validity_days=2, idempotency_key="u1", now=now)
        assert first.id == again.id
        assert db.get(models.User, 1).coins == 80

    @pytest.mark.parametrize("changes", [{}, {"tag": "   "}, {"tag": None, "validity_days": None}])
    def test_nothing_to_change(self, db, make_user, draft, now, changes):
        make_user(1, coins=100)
        code = codes.create(db, owner_id=1, draft=draft(), now=now)
        with pytest.raises(ValidationError) as exc:
            codes.update(db, owner_id=1, code_id=code.id, now=now, **changes)
        assert exc.value.message_key == "ERR_NO_CHANGES"

    def test_bad_days_charge_nothing(self, db, make_user, draft, now):
        make_user(1, coins=100)
        code = codes.create(db, owner_id=1, draft=draft(), now=now)
        with pytest.raises(ValidationError):
            codes.update(db, owner_id=1, code_id=code.id, tag="tennis", validity_days=0, now=now)
        db.expire_all()
        assert db.get(models.CollisionCode, code.id).normalized_tag == "hiking"
        assert db.get(models.User, 1).coins == 90

    def test_rejected_code_goes_through_resubmit(self, db, make_user, draft, now, monkeypatch):
        monkeypatch.setattr(settings, "ENABLE_COLLISION_AUDIT", True)
        make_user(1, coins=100)
        code = codes.create(db, owner_id=1, draft=draft(), now=now)
        codes.reject(db, code_id=code.id, now=now)
        with pytest.raises(Conflict) as exc:
            codes.update(db, owner_id=1, code_id=code.id, tag="tennis", now=now)
        assert exc.value.message_key == "ERR_CODE_REJECTED"

    def test_retag_under_audit_waits_for_review(self, db, make_user, draft, now, monkeypatch):
        monkeypatch.setattr(settings, "ENABLE_COLLISION_AUDIT", True)
        make_user(1, coins=100)
        code = codes.create(db, owner_id=1, draft=draft(), now=now)
        codes.approve(db, code_id=code.id, now=now)
        updated = codes.update(db, owner_id=1, code_id=code.id, tag="tennis", now=now)
        assert updated.status == models.CODE_PENDING_REVIEW

    def test_owner_only(self, db, make_user, draft, now):
        make_user(1, coins=100)
        make_user(2, coins=100)
        code = codes.create(db, owner_id=1, draft=draft(), now=now)
        with pytest.raises(Forbidden):
            codes.update(db, owner_id=2, code_id=code.id, validity_days=2, now=now)
        assert db.get(models.User, 2).coins == 100


class TestDelete:
    def test_same_day_refunds_submit_and_renewals(self, db, make_user, draft, now):
        make_user(1, coins=100)
        code = codes.create(db, owner_id=1, draft=draft(), now=now)
        codes.renew(db, owner_id=1, code_id=code.id, validity_days=1, now=now + timedelta(hours=1))

        result = codes.delete(db, owner_id=1, code_id=code.id, now=now + timedelta(hours=2))
        assert result == {"id": code.id, "refunded": 20, "balance": 100}
        assert ledger.verify_balance(db, user_id=1)

    def test_next_day_refunds_nothing(self, db, make_user, draft, now):
        make_user(1, coins=100)
        code = codes.create(db, owner_id=1, draft=draft(), now=now)
        result = codes.delete(db, owner_id=1, code_id=code.id, now=now + timedelta(days=1))
        assert result["refunded"] == 0
        assert db.get(models.User, 1).coins == 90

    def test_deleted_code_is_gone(self, db, make_user, draft, now):
        make_user(1, coins=100)
        code = codes.create(db, owner_id=1, draft=draft(), now=now)
        codes.delete(db, owner_id=1, code_id=code.id, now=now)

        assert codes.list_for_owner(db, owner_id=1, now=now) == []
        with pytest.raises(NotFound):
            codes.get(db, owner_id=1, code_id=code.id, now=now)
        with pytest.raises(Conflict):
            codes.delete(db, owner_id=1, code_id=code.id, now=now)

    def test_rejected_code_not_refunded_twice(self, db, make_user, draft, now, monkeypatch):
        monkeypatch.setattr(settings, "ENABLE_COLLISION_AUDIT", True)
        make_user(1, coins=100)
        code = codes.create(db, owner_id=1, draft=draft(), now=now)
        codes.reject(db, code_id=code.id, reason="spam", now=now)

        result = codes.delete(db, owner_id=1, code_id=code.id, now=now)
        assert result["refunded"] == 0
        assert db.get(models.User, 1).coins == 100


class TestModeration:
    @pytest.fixture(autouse=True)
    def audit_on(self, monkeypatch):
        monkeypatch.setattr(settings, "ENABLE_COLLISION_AUDIT", True)

    def test_reject_refunds_and_resubmit_charges(self, db, make_user, draft, now):
        make_user(1, coins=100)
        code = codes.create(db, owner_id=1, draft=draft(), now=now)

        rejected = codes.reject(db, code_id=code.id, reason=" bad words ", now=now)
        assert rejected.status == models.CODE_REJECTED
        assert rejected.reject_reason == "bad words"
        assert rejected.cost_coins == 0
        assert db.get(models.User, 1).coins == 100

        again = codes.resubmit(db, owner_id=1, code_id=code.id, now=now)
        assert again.status == models.CODE_PENDING_REVIEW
        assert again.reject_reason is None
        assert db.get(models.User, 1).coins == 90

    def test_resubmit_only_from_rejected(self, db, make_user, draft, now):
        make_user(1, coins=100)
        code = codes.create(db, owner_id=1, draft=draft(), now=now)
        with pytest.raises(Conflict):
            codes.resubmit(db, owner_id=1, code_id=code.id, now=now)

    def test_renew_rejected_is_conflict(self, db, make_user, draft, now):
        make_user(1, coins=100)
        code = codes.create(db, owner_id=1, draft=draft(), now=now)
        codes.reject(db, code_id=code.id, now=now)
        with pytest.raises(Conflict):
            codes.renew(db, owner_id=1, code_id=code.id, now=now)

    def test_approve_then_match(self, db, make_user, draft, now):
        make_user(1, coins=100)
        make_user(2, coins=100)
        a = codes.create(db, owner_id=1, draft=draft(), now=now)
        b = codes.create(db, owner_id=2, draft=draft(), now=now)
        codes.approve(db, code_id=a.id, now=now)
        assert db.query(models.Match).count() == 0

        approved = codes.approve(db, code_id=b.id, now=now)
        assert approved.status == models.CODE_MATCHED
        with pytest.raises(Conflict):
            codes.approve(db, code_id=b.id, now=now)


class TestReads:
    def test_serialize_derived_fields(self, db, make_user, draft, now):
        make_user(1, coins=100)
        code = codes.create(db, owner_id=1, draft=draft(), now=now)

        view = codes.get(db, owner_id=1, code_id=code.id, now=now + timedelta(hours=1))
        assert view["display_status"] == models.CODE_ACTIVE
        assert view["is_expired"] is False
        assert view["is_matched"] is False
        assert view["time_left_seconds"] == 23 * 3600

        late = codes.get(db, owner_id=1, code_id=code.id, now=now + timedelta(days=2))
        assert late["display_status"] == models.CODE_EXPIRED
        assert late["status"] == models.CODE_ACTIVE
        assert late["time_left_seconds"] == 0

    def test_get_other_owner_forbidden(self, db, make_user, draft, now):
        make_user(1, coins=100)
        make_user(2)
        code = codes.create(db, owner_id=1, draft=draft(), now=now)
        with pytest.raises(Forbidden):
            codes.get(db, owner_id=2, code_id=code.id, now=now)

    def test_list_newest_first(self, db, make_user, draft, now):
        make_user(1, coins=100)
        first = codes.create(db, owner_id=1, draft=draft("a"), now=now)
        second = codes.create(db, owner_id=1, draft=draft("b"), now=now + timedelta(minutes=1))
        assert [c["id"] for c in codes.list_for_owner(db, owner_id=1, now=now)] == [second.id, first.id]

    def test_search_masks_and_respects_visibility(self, db, make_user, draft, places, now):
        make_user(1, coins=100, wechat_no="wxid_hidden01", location_visible=False)
        make_user(2, coins=100, wechat_no="wxid_public02")
        make_user(3)
        codes.create(db, owner_id=1, draft=draft("Hiking", location=places.xihu), now=now)
        codes.create(db, owner_id=2, draft=draft("hiking", location=places.shanghai), now=now + timedelta(minutes=1))

        results = codes.search(db, viewer_id=3, keyword=" HIKING ", now=now)
        assert [r["user_id"] for r in results] == [2, 1]
        assert results[0]["wechat_no"] == "wx***02"
        assert results[0]["city"] == "Shanghai"
        assert "city" not in results[1]

        own = codes.search(db, viewer_id=2, keyword="hiking", now=now)
        assert [r["user_id"] for r in own] == [1]

    def test_search_includes_expired(self, db, make_user, draft, now):
        make_user(1, coins=100)
        make_user(2)
        codes.create(db, owner_id=1, draft=draft(), now=now)
        results = codes.search(db, viewer_id=2, keyword="hiking", now=now + timedelta(days=3))
        assert len(results) == 1
        assert results[0]["is_expired"] is True

    def test_blackholed_tag_is_flagged_to_owner(self, db, make_user, draft, now):
        make_user(1, coins=100)
        hiking = codes.create(db, owner_id=1, draft=draft("hiking"), now=now)
        codes.create(db, owner_id=1, draft=draft("tennis"), now=now)
        hot_tags.set_status(db, "hiking", hot_tags.STATUS_BLACKHOLE)

        assert codes.get(db, owner_id=1, code_id=hiking.id, now=now)["is_blackhole"] is True
        flags = {c["normalized_tag"]: c["is_blackhole"] for c in codes.list_for_owner(db, owner_id=1, now=now)}
        assert flags == {"hiking": True, "tennis": False}

    def test_hidden_tag_is_not_flagged(self, db, make_user, draft, now):
        make_user(1, coins=100)
        code = codes.create(db, owner_id=1, draft=draft(), now=now)
        hot_tags.set_status(db, "hiking", hot_tags.STATUS_HIDE)
        assert codes.get(db, owner_id=1, code_id=code.id, now=now)["is_blackhole"] is False
