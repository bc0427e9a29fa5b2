"""
tests/test_services.py — Persistence Service Integration Tests
===============================================================
Trust journal writes, earnings/level crediting, referral stats, pagination
and code issuance, and the challenge progress/claim rules.

Uses an in-memory SQLite database via the shared conftest fixtures.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from rewardtrack.database.models import (
    ActivityTransaction,
    ReferralCode,
    ReferralTracking,
    TrustHistory,
    UserChallenge,
    UserRewardsSummary,
)
from rewardtrack.services import (
    challenge_service,
    level_service,
    referral_service,
    trust_service,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _naive(dt: datetime | None) -> datetime | None:
    """SQLite hands datetimes back without tzinfo."""
    return dt.replace(tzinfo=None) if dt is not None else None


def _count(engine, model, *where) -> int:
    with Session(engine) as session:
        return session.scalar(select(func.count()).select_from(model).where(*where))


def _seed_summary(engine, user_id: str = "u1", **values) -> None:
    with Session(engine) as session:
        session.add(UserRewardsSummary(user_id=user_id, **values))
        session.commit()


# ---------------------------------------------------------------------------
# Trust
# ---------------------------------------------------------------------------
class TestTrustService:
    def test_missing_summary_defaults_to_50(self, db_engine):
        snapshot = trust_service.load_trust_snapshot(db_engine, "nobody")
        assert snapshot.current_score == 50
        assert snapshot.history == ()
        assert snapshot.trend == "stable"

    def test_change_writes_score_and_journal(self, db_engine):
        _seed_summary(db_engine, trust_score=48)

        entry = trust_service.apply_score_change(
            db_engine, "u1", 5, "completed_kyc", {"source": "kyc"},
        )

        assert (entry.old_score, entry.new_score) == (48, 53)
        assert entry.metadata == {"source": "kyc"}
        snapshot = trust_service.load_trust_snapshot(db_engine, "u1")
        assert snapshot.current_score == 53
        assert snapshot.trust_level == "medium"
        assert len(snapshot.history) == 1

    def test_change_is_clamped(self, db_engine):
        _seed_summary(db_engine, trust_score=95)
        entry = trust_service.apply_score_change(db_engine, "u1", 20, "bonus")
        assert entry.new_score == 100

        entry = trust_service.apply_score_change(db_engine, "u1", -250, "ban")
        assert entry.new_score == 0

    def test_change_creates_summary_when_missing(self, db_engine):
        entry = trust_service.apply_score_change(db_engine, "fresh", -10, "spam")
        assert (entry.old_score, entry.new_score) == (50, 40)
        assert _count(db_engine, UserRewardsSummary, UserRewardsSummary.user_id == "fresh") == 1

    def test_empty_reason_rejected_and_nothing_written(self, db_engine):
        with pytest.raises(ValueError):
            trust_service.apply_score_change(db_engine, "u1", 5, "  ")
        assert _count(db_engine, TrustHistory) == 0

    def test_history_newest_first_with_limit(self, db_engine):
        for delta in (1, 2, 3):
            trust_service.apply_score_change(db_engine, "u1", delta, f"step-{delta}")

        history = trust_service.load_trust_history(db_engine, "u1")
        assert [h.reason for h in history] == ["step-3", "step-2", "step-1"]
        assert len(trust_service.load_trust_history(db_engine, "u1", limit=2)) == 2


# ---------------------------------------------------------------------------
# Earnings & levels
# ---------------------------------------------------------------------------
class TestLevelService:
    def test_get_or_create_summary_reuses_row_inserted_concurrently(self, db_engine):
        _seed_summary(db_engine, total_earned=10.0)

        real_lookup = level_service._locked_summary
        lookups: list[str] = []

        def lookup_missing_first(session, user_id):
            lookups.append(user_id)
            if len(lookups) == 1:
                return None
            return real_lookup(session, user_id)

        with patch.object(level_service, "_locked_summary", side_effect=lookup_missing_first):
            with Session(db_engine) as session:
                summary = level_service.get_or_create_summary(session, "u1")
                assert summary.total_earned == 10.0

        assert len(lookups) == 2
        assert _count(db_engine, UserRewardsSummary) == 1

    def test_credit_updates_summary_and_level(self, db_engine):
        level_service.record_earning(db_engine, "u1", 120.0, activity_type="post")

        with Session(db_engine) as session:
            summary = session.get(UserRewardsSummary, "u1")
            assert summary.total_earned == 120.0
            assert summary.available_balance == 120.0
            assert summary.level == 2
            assert summary.next_level_threshold == 500

    def test_negative_credit_rejected(self, db_engine):
        with pytest.raises(ValueError):
            level_service.record_earning(db_engine, "u1", -5.0, activity_type="refund")

    def test_level_never_drops(self, db_engine):
        _seed_summary(db_engine, total_earned=50.0, level=3)
        level_service.record_earning(db_engine, "u1", 10.0, activity_type="post")
        with Session(db_engine) as session:
            assert session.get(UserRewardsSummary, "u1").level == 3

    def test_snapshot_velocity_uses_trailing_window(self, db_engine):
        _seed_summary(db_engine, total_earned=300.0)
        with Session(db_engine) as session:
            session.add_all([
                ActivityTransaction(
                    user_id="u1", activity_type="post", amount=70.0,
                    created_at=NOW - timedelta(days=2),
                ),
                ActivityTransaction(
                    user_id="u1", activity_type="post", amount=1000.0,
                    created_at=NOW - timedelta(days=30),
                ),
                ActivityTransaction(
                    user_id="u1", activity_type="post", amount=500.0, status="pending",
                    created_at=NOW - timedelta(days=1),
                ),
            ])
            session.commit()

        snapshot = level_service.load_level_snapshot(db_engine, "u1", now=NOW)

        assert snapshot.current_level == 2
        assert snapshot.daily_velocity == 10.0
        assert snapshot.estimated_days_to_next_level == 20

    def test_snapshot_without_activity_uses_default_velocity(self, db_engine):
        snapshot = level_service.load_level_snapshot(db_engine, "nobody", now=NOW)
        assert snapshot.current_level == 1
        assert snapshot.daily_velocity == 1.0
        assert snapshot.estimated_days_to_next_level == 100


# ---------------------------------------------------------------------------
# Referrals
# ---------------------------------------------------------------------------
class TestReferralService:
    def test_track_creates_pending_referral_with_code(self, db_engine):
        record = referral_service.track_referral(db_engine, "alice", "bob")

        assert record.status == "pending"
        assert record.referral_code.startswith("ALIC")
        assert referral_service.get_referral_code(db_engine, "alice") == record.referral_code

    def test_track_is_idempotent_per_pair(self, db_engine):
        first = referral_service.track_referral(db_engine, "alice", "bob")
        again = referral_service.track_referral(db_engine, "alice", "bob")
        assert first.id == again.id
        assert _count(db_engine, ReferralTracking) == 1

    def test_self_referral_rejected(self, db_engine):
        with pytest.raises(ValueError):
            referral_service.track_referral(db_engine, "alice", "alice")

    def test_stats_aggregate(self, db_engine):
        with Session(db_engine) as session:
            session.add_all([
                ReferralTracking(
                    referrer_id="alice", referred_user_id=f"r{i}", referral_code="X",
                    status="active" if i < 2 else "pending",
                    earnings_total=10.0, earnings_this_month=1.0, auto_share_total=0.5,
                )
                for i in range(5)
            ])
            session.commit()

        stats = referral_service.load_referral_stats(db_engine, "alice")
        assert stats.total_referrals == 5
        assert stats.active_referrals == 2
        assert stats.total_earnings == 50.0
        assert stats.earnings_this_month == 5.0
        assert stats.total_auto_shared == 2.5
        assert stats.tier == "silver"

    def test_pages_are_disjoint_and_newest_first(self, db_engine):
        with Session(db_engine) as session:
            for i in range(5):
                session.add(ReferralTracking(
                    referrer_id="alice", referred_user_id=f"r{i}", referral_code="X",
                    created_at=NOW + timedelta(minutes=i),
                ))
            session.commit()

        first = referral_service.list_referrals(db_engine, "alice", limit=2)
        second = referral_service.list_referrals(db_engine, "alice", limit=2, offset=2)
        assert [r.referred_user_id for r in first] == ["r4", "r3"]
        assert [r.referred_user_id for r in second] == ["r2", "r1"]

    def test_issue_code_is_idempotent_per_request(self, db_engine):
        code = referral_service.issue_referral_code(db_engine, "alice", "req-1")
        retry = referral_service.issue_referral_code(db_engine, "alice", "req-1")
        assert code == retry
        assert _count(db_engine, ReferralCode) == 1

    def test_new_request_retires_previous_code(self, db_engine):
        old = referral_service.issue_referral_code(db_engine, "alice", "req-1")
        new = referral_service.issue_referral_code(db_engine, "alice", "req-2")

        assert new != old
        assert _count(db_engine, ReferralCode, ReferralCode.active.is_(True)) == 1
        assert referral_service.get_referral_code(db_engine, "alice") == new

    def test_verify_active_code(self, db_engine):
        code = referral_service.issue_referral_code(db_engine, "alice", "req-1")
        assert referral_service.verify_referral_code(db_engine, code) == "alice"
        assert referral_service.verify_referral_code(db_engine, f" {code.lower()} ") == "alice"

    def test_verify_unknown_code(self, db_engine):
        assert referral_service.verify_referral_code(db_engine, "NOPE123") is None
        assert referral_service.verify_referral_code(db_engine, "") is None

    def test_verify_falls_back_to_tracked_referrals(self, db_engine):
        old = referral_service.track_referral(db_engine, "alice", "bob").referral_code
        referral_service.issue_referral_code(db_engine, "alice", "req-2")
        assert referral_service.verify_referral_code(db_engine, old) == "alice"

    def test_track_by_code_records_the_shared_code(self, db_engine):
        code = referral_service.issue_referral_code(db_engine, "alice", "req-1")
        record = referral_service.track_referral_by_code(db_engine, code.lower(), "carol")

        assert record.referrer_id == "alice"
        assert record.referred_user_id == "carol"
        assert record.referral_code == code

    def test_track_by_code_rejects_unknown_and_self(self, db_engine):
        code = referral_service.issue_referral_code(db_engine, "alice", "req-1")
        with pytest.raises(LookupError):
            referral_service.track_referral_by_code(db_engine, "NOPE123", "carol")
        with pytest.raises(ValueError):
            referral_service.track_referral_by_code(db_engine, code, "alice")
        assert _count(db_engine, ReferralTracking) == 0

    def test_set_status_validation(self, db_engine):
        record = referral_service.track_referral(db_engine, "alice", "bob")
        with pytest.raises(ValueError):
            referral_service.set_referral_status(db_engine, record.id, "bogus")
        with pytest.raises(LookupError):
            referral_service.set_referral_status(db_engine, 9999, "active")

        updated = referral_service.set_referral_status(db_engine, record.id, "active")
        assert updated.status == "active"

    def test_earning_pays_tier_commission(self, db_engine):
        record = referral_service.track_referral(db_engine, "alice", "bob")

        commission = referral_service.record_referral_earning(
            db_engine, record.id, 200.0, "first purchase",
        )

        assert commission == 10.0  # bronze: 5%
        stats = referral_service.load_referral_stats(db_engine, "alice")
        assert stats.total_earnings == 10.0
        with Session(db_engine) as session:
            assert session.get(UserRewardsSummary, "alice").total_earned == 10.0


# ---------------------------------------------------------------------------
# Challenges
# ---------------------------------------------------------------------------
class TestChallengeService:
    def test_upsert_creates_row(self, db_engine):
        progress = challenge_service.upsert_progress(db_engine, "u1", "weekly-engagement", 40)
        assert progress.status == "active"
        assert progress.target_value == 100
        assert progress.completion_date is None

    def test_reaching_target_completes_once(self, db_engine):
        challenge_service.upsert_progress(db_engine, "u1", "weekly-engagement", 40, now=NOW)
        done = challenge_service.upsert_progress(
            db_engine, "u1", "weekly-engagement", 100, now=NOW,
        )
        assert done.status == "completed"
        assert _naive(done.completion_date) == _naive(NOW)

        later = challenge_service.upsert_progress(
            db_engine, "u1", "weekly-engagement", 120, now=NOW + timedelta(days=1),
        )
        assert later.progress == 120
        assert _naive(later.completion_date) == _naive(NOW)

    def test_unknown_challenge_rejected(self, db_engine):
        with pytest.raises(LookupError):
            challenge_service.upsert_progress(db_engine, "u1", "no-such-challenge", 1)

    def test_negative_progress_rejected(self, db_engine):
        with pytest.raises(ValueError):
            challenge_service.upsert_progress(db_engine, "u1", "daily-post", -1)

    def test_unclaimed_regression_reopens(self, db_engine):
        challenge_service.upsert_progress(db_engine, "u1", "generous-tipper", 10)
        reopened = challenge_service.upsert_progress(db_engine, "u1", "generous-tipper", 4)
        assert reopened.status == "active"
        assert reopened.completion_date is None

    def test_claim_without_row_creates_nothing(self, db_engine):
        progress, message = challenge_service.claim_reward(db_engine, "u1", "daily-post")
        assert progress is None
        assert "not been started" in message
        assert _count(db_engine, UserChallenge) == 0

    def test_claim_requires_completion(self, db_engine):
        challenge_service.upsert_progress(db_engine, "u1", "generous-tipper", 3)
        progress, message = challenge_service.claim_reward(db_engine, "u1", "generous-tipper")
        assert progress is None
        assert "not completed" in message

    def test_claim_once_and_credit_points(self, db_engine):
        challenge_service.upsert_progress(db_engine, "u1", "daily-post", 1)

        progress, _ = challenge_service.claim_reward(db_engine, "u1", "daily-post", now=NOW)
        assert progress.reward_claimed is True
        assert _naive(progress.claim_date) == _naive(NOW)

        again, message = challenge_service.claim_reward(db_engine, "u1", "daily-post")
        assert again is None
        assert "already claimed" in message

        with Session(db_engine) as session:
            assert session.get(UserRewardsSummary, "u1").total_earned == 10.0
        assert _count(
            db_engine, ActivityTransaction,
            ActivityTransaction.activity_type == "challenge_reward",
        ) == 1

    def test_claimed_challenge_cannot_regress(self, db_engine):
        challenge_service.upsert_progress(db_engine, "u1", "daily-post", 1)
        challenge_service.claim_reward(db_engine, "u1", "daily-post")
        with pytest.raises(ValueError):
            challenge_service.upsert_progress(db_engine, "u1", "daily-post", 0)
