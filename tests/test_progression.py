"""
tests/test_progression.py — Pure Calculation Tests
===================================================
Trust classification/clamping/trend, level lookup and progression,
referral tiers and stats, and challenge joins/filters.  No database.
"""

from __future__ import annotations

from dataclasses import FrozenInstanceError

import pytest

from rewardtrack.constants import CHALLENGE_CATALOG, REWARD_LEVELS
from rewardtrack.engine.progression import (
    ChallengeProgress,
    TrustHistoryEntry,
    as_int,
    as_number,
    build_level_progression,
    build_referral_stats,
    build_trust_score,
    challenge_progress_from_mapping,
    clamp_score,
    daily_velocity,
    estimate_days_to_level,
    filter_by_status,
    get_next_tier_info,
    get_trust_level,
    join_challenges,
    level_for_earnings,
    next_trust_threshold,
    progress_to_next_tier,
    referral_from_mapping,
    restat,
    score_breakdown,
    tier_for_referrals,
    total_rewards_available,
    trust_trend,
)


def _entry(old: int, new: int, reason: str = "test") -> TrustHistoryEntry:
    return TrustHistoryEntry(id=None, old_score=old, new_score=new, reason=reason)


def _progress(challenge_id: str, progress: int, target: int, **kw) -> ChallengeProgress:
    status = "completed" if progress >= target else "active"
    return ChallengeProgress(
        id=1, user_id="u1", challenge_id=challenge_id,
        progress=progress, target_value=target, status=status, **kw,
    )


# ---------------------------------------------------------------------------
# Default-value helpers
# ---------------------------------------------------------------------------
class TestDefaults:
    def test_missing_numbers_become_zero(self):
        assert as_number(None) == 0
        assert as_number("not a number") == 0
        assert as_int("12.0") == 12

    def test_referral_mapping_defaults(self):
        rec = referral_from_mapping({"id": 3, "referrer_id": "u1"})
        assert rec.status == "pending"
        assert rec.earnings_total == 0.0
        assert rec.auto_share_total == 0.0

    def test_challenge_mapping_defaults(self):
        p = challenge_progress_from_mapping({"challenge_id": "daily-post"})
        assert p.progress == 0
        assert p.status == "active"
        assert p.reward_claimed is False


# ---------------------------------------------------------------------------
# Trust
# ---------------------------------------------------------------------------
class TestTrustLevel:
    @pytest.mark.parametrize(
        "score, expected",
        [
            (0, "low"),
            (49, "low"),
            (50, "medium"),
            (69, "medium"),
            (70, "high"),
            (84, "high"),
            (85, "excellent"),
            (100, "excellent"),
        ],
    )
    def test_boundaries(self, score, expected):
        assert get_trust_level(score) == expected

    @pytest.mark.parametrize("raw, clamped", [(115, 100), (-7, 0), (53, 53)])
    def test_clamp(self, raw, clamped):
        assert clamp_score(raw) == clamped

    def test_next_threshold(self):
        assert next_trust_threshold(48) == 50
        assert next_trust_threshold(70) == 85
        assert next_trust_threshold(90) is None


class TestTrustTrend:
    def test_no_history_is_stable(self):
        assert trust_trend([]) == "stable"

    def test_improving_and_declining(self):
        assert trust_trend([_entry(50, 55), _entry(48, 50)]) == "improving"
        assert trust_trend([_entry(55, 50), _entry(57, 55)]) == "declining"

    def test_small_average_is_stable(self):
        assert trust_trend([_entry(50, 51), _entry(51, 50)]) == "stable"

    def test_only_newest_five_count(self):
        newest = [_entry(50, 50)] * 5
        older = [_entry(0, 100)] * 10
        assert trust_trend(newest + older) == "stable"


class TestBuildTrustScore:
    def test_derived_fields(self):
        score = build_trust_score(53, [_entry(48, 53, "completed_kyc")])
        assert score.current_score == 53
        assert score.max_score == 100
        assert score.trust_level == "medium"
        assert score.recent_change == 5
        assert score.next_level_threshold == 70
        assert score.points_to_next_level == 17

    def test_snapshot_is_frozen(self):
        score = build_trust_score(50, [])
        with pytest.raises(FrozenInstanceError):
            score.current_score = 10

    def test_breakdown_groups_by_reason(self):
        history = [_entry(50, 55, "kyc"), _entry(55, 52, "report"), _entry(52, 54, "kyc")]
        assert score_breakdown(history) == {"kyc": 7, "report": -3}


# ---------------------------------------------------------------------------
# Levels
# ---------------------------------------------------------------------------
class TestLevelLookup:
    @pytest.mark.parametrize(
        "earnings, level",
        [(0, 1), (99, 1), (100, 2), (499.99, 2), (500, 3), (1500, 4), (3000, 5), (6000, 6), (10**6, 6)],
    )
    def test_threshold_table(self, earnings, level):
        assert level_for_earnings(earnings) == level

    def test_monotonic_in_earnings(self):
        samples = sorted({0, 1, 50, 99, 100, 101, 499, 500, 1499, 1500, 2999, 3000, 5999, 6000, 9000})
        levels = [level_for_earnings(e) for e in samples]
        assert levels == sorted(levels)

    def test_table_has_six_levels(self):
        assert [lv.title for lv in REWARD_LEVELS] == [
            "Starter", "Bronze", "Silver", "Gold", "Platinum", "Diamond",
        ]


class TestLevelProgression:
    def test_mid_level(self):
        p = build_level_progression(300, None, velocity=10)
        assert p.current_level == 2
        assert p.next_level == 3
        assert p.points_to_next_level == 200
        assert p.progress_percentage == 50
        assert p.estimated_days_to_next_level == 20

    def test_stored_level_wins(self):
        p = build_level_progression(50, 2, velocity=1)
        assert p.current_level == 2
        assert p.level_title == "Bronze"

    def test_max_level(self):
        p = build_level_progression(7000, None, velocity=5)
        assert p.is_max_level
        assert p.progress_percentage == 100
        assert p.points_to_next_level == 0
        assert p.estimated_days_to_next_level == 0

    def test_invalid_stored_level_raises(self):
        with pytest.raises(ValueError):
            build_level_progression(0, 42, velocity=1)

    def test_velocity_defaults_when_window_empty(self):
        assert daily_velocity([]) == 1.0
        assert daily_velocity([0.0]) == 1.0
        assert daily_velocity([70.0]) == 10.0

    def test_estimate_scales_by_levels_remaining(self):
        p = build_level_progression(300, None, velocity=10)
        assert estimate_days_to_level(p, 2) == 0
        assert estimate_days_to_level(p, 3) == 20
        assert estimate_days_to_level(p, 5) == 60
        assert estimate_days_to_level(p, 99) is None


# ---------------------------------------------------------------------------
# Referrals
# ---------------------------------------------------------------------------
class TestReferralTiers:
    @pytest.mark.parametrize(
        "count, tier",
        [(0, "bronze"), (4, "bronze"), (5, "silver"), (24, "silver"),
         (25, "gold"), (99, "gold"), (100, "platinum"), (500, "platinum")],
    )
    def test_boundaries(self, count, tier):
        assert tier_for_referrals(count) == tier

    def test_next_tier(self):
        assert get_next_tier_info("bronze").tier == "silver"
        assert get_next_tier_info("platinum") is None

    def test_progress_to_next_tier(self):
        stats = build_referral_stats(3, 1, 2500.0, 0.0, 0.0)
        assert progress_to_next_tier(stats) == 50

    def test_progress_saturates_without_next_tier(self):
        stats = build_referral_stats(150, 10, 1.0, 0.0, 0.0)
        assert progress_to_next_tier(stats) == 100
        assert progress_to_next_tier(None) == 0


class TestReferralStats:
    def test_conversion_rate(self):
        stats = build_referral_stats(4, 1, 0.0, 0.0, 0.0)
        assert stats.conversion_rate == 0.25
        assert build_referral_stats(0, 0, 0.0, 0.0, 0.0).conversion_rate == 0.0

    def test_active_never_exceeds_total(self):
        stats = build_referral_stats(2, 5, 0.0, 0.0, 0.0)
        assert stats.active_referrals == 2

    def test_restat_recomputes_tier(self):
        stats = build_referral_stats(4, 0, 0.0, 0.0, 0.0)
        bumped = restat(stats, total_referrals=5)
        assert bumped.tier == "silver"
        assert stats.tier == "bronze"


# ---------------------------------------------------------------------------
# Challenges
# ---------------------------------------------------------------------------
class TestChallenges:
    def test_join_keeps_catalog_order(self):
        joined = join_challenges([_progress("referral-friend", 1, 1)])
        assert [c.id for c in joined] == [c.id for c in CHALLENGE_CATALOG]
        by_id = {c.id: c for c in joined}
        assert by_id["daily-post"].user_progress is None
        assert by_id["referral-friend"].is_completed

    def test_join_drops_unknown_rows(self):
        joined = join_challenges([_progress("retired-challenge", 1, 1)])
        assert all(c.user_progress is None for c in joined)

    def test_progress_percentage_caps(self):
        joined = join_challenges([_progress("weekly-engagement", 150, 100)])
        weekly = next(c for c in joined if c.id == "weekly-engagement")
        assert weekly.progress_percentage == 100.0

    def test_filter_and_rewards(self):
        joined = join_challenges([
            _progress("daily-post", 1, 1),
            _progress("generous-tipper", 10, 10, reward_claimed=True),
            _progress("weekly-engagement", 40, 100),
        ])
        assert len(filter_by_status(joined, "all")) == len(CHALLENGE_CATALOG)
        assert {c.id for c in filter_by_status(joined, "completed")} == {
            "daily-post", "generous-tipper",
        }
        assert [c.id for c in filter_by_status(joined, "active")] == ["weekly-engagement"]
        # daily-post is the only claimable one (10 points)
        assert total_rewards_available(joined) == 10
