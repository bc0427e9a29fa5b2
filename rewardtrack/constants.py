"""
rewardtrack.constants — Fixed Tables & Shared Constants
========================================================

Single source of truth for the level table, the referral tier table, the
trust level bands and the challenge catalog.  Import from here instead of
duplicating values in trackers and services.
"""

from __future__ import annotations

from dataclasses import dataclass

# ---------------------------------------------------------------------------
# Cache TTLs (seconds), overridable through config.yaml
# ---------------------------------------------------------------------------
TRUST_CACHE_TTL = 60.0
LEVEL_CACHE_TTL = 30.0
REFERRAL_CACHE_TTL = 30.0
CHALLENGE_CACHE_TTL = 60.0


# ---------------------------------------------------------------------------
# Trust score
# ---------------------------------------------------------------------------
TRUST_SCORE_MIN = 0
TRUST_SCORE_MAX = 100
DEFAULT_TRUST_SCORE = 50
TRUST_HISTORY_LIMIT = 100
TREND_WINDOW = 5

# (lower bound inclusive, level name), highest first
TRUST_LEVEL_BANDS: tuple[tuple[int, str], ...] = (
    (85, "excellent"),
    (70, "high"),
    (50, "medium"),
    (0, "low"),
)

TRUST_LEVEL_COLORS: dict[str, str] = {
    "low": "#EF4444",
    "medium": "#F59E0B",
    "high": "#3B82F6",
    "excellent": "#10B981",
}


# ---------------------------------------------------------------------------
# Level progression
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class LevelThreshold:
    """One row of the level table."""

    level: int
    threshold: float
    title: str
    benefits: frozenset[str]
    color: str
    multiplier: float = 1.0


REWARD_LEVELS: tuple[LevelThreshold, ...] = (
    LevelThreshold(
        1, 0, "Starter",
        frozenset({"Basic rewards", "Community access", "Profile creation"}),
        "#6B7280", 1.0,
    ),
    LevelThreshold(
        2, 100, "Bronze",
        frozenset({"Verified badge", "1.1x multiplier", "Early access to features"}),
        "#92400E", 1.1,
    ),
    LevelThreshold(
        3, 500, "Silver",
        frozenset({"1.2x multiplier", "Featured content", "Priority support"}),
        "#C0C7D0", 1.2,
    ),
    LevelThreshold(
        4, 1500, "Gold",
        frozenset({"1.3x multiplier", "Premium support", "Exclusive badges"}),
        "#D97706", 1.3,
    ),
    LevelThreshold(
        5, 3000, "Platinum",
        frozenset({"1.5x multiplier", "VIP access", "Custom profile theme"}),
        "#3B82F6", 1.5,
    ),
    LevelThreshold(
        6, 6000, "Diamond",
        frozenset({"2.0x multiplier", "Exclusive events", "Lifetime premium"}),
        "#8B5CF6", 2.0,
    ),
)

VELOCITY_WINDOW_DAYS = 7
# Used when the trailing window has no completed earnings (no divide-by-zero)
DEFAULT_DAILY_VELOCITY = 1.0


# ---------------------------------------------------------------------------
# Referral tiers
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ReferralTierInfo:
    """Referral program bracket."""

    tier: str
    name: str
    min_referrals: int
    min_earnings: float
    commission_percentage: float
    benefits: tuple[str, ...]
    color: str


REFERRAL_TIERS: tuple[ReferralTierInfo, ...] = (
    ReferralTierInfo(
        "bronze", "Bronze", 0, 0, 5.0,
        (
            "5% commission on referral earnings",
            "Basic referral dashboard",
            "Email support",
        ),
        "#92400E",
    ),
    ReferralTierInfo(
        "silver", "Silver", 5, 5000, 7.5,
        (
            "7.5% commission on referral earnings",
            "Advanced referral analytics",
            "Priority email support",
            "Auto-share enabled",
        ),
        "#C0C7D0",
    ),
    ReferralTierInfo(
        "gold", "Gold", 25, 25000, 10.0,
        (
            "10% commission on referral earnings",
            "Custom referral materials",
            "Phone support",
            "Monthly bonus pool access",
        ),
        "#D97706",
    ),
    ReferralTierInfo(
        "platinum", "Platinum", 100, 100000, 15.0,
        (
            "15% commission on referral earnings",
            "Dedicated account manager",
            "24/7 support",
            "Exclusive events and networking",
            "Premium marketing tools",
        ),
        "#3B82F6",
    ),
)

DEFAULT_REFERRAL_PAGE_SIZE = 20
REFERRAL_CODE_PREFIX_LEN = 4


# ---------------------------------------------------------------------------
# Challenge catalog
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ChallengeDefinition:
    """A predefined challenge users can make progress against."""

    id: str
    title: str
    description: str
    type: str
    target_value: int
    points_reward: int
    difficulty: str
    category: str


CHALLENGE_CATALOG: tuple[ChallengeDefinition, ...] = (
    ChallengeDefinition(
        "daily-post", "Daily Post",
        "Create a post every day to build your streak",
        "daily", 1, 10, "easy", "content",
    ),
    ChallengeDefinition(
        "weekly-engagement", "Weekly Engagement",
        "Get 100+ engagements on your content this week",
        "content", 100, 50, "medium", "content",
    ),
    ChallengeDefinition(
        "referral-friend", "Invite a Friend",
        "Refer a friend who completes signup",
        "referral", 1, 25, "easy", "social",
    ),
    ChallengeDefinition(
        "challenge-champion", "Challenge Champion",
        "Win 5 challenges",
        "challenge", 5, 75, "hard", "challenges",
    ),
    ChallengeDefinition(
        "generous-tipper", "Generous Tipper",
        "Send tips 10 times",
        "engagement", 10, 40, "medium", "engagement",
    ),
    ChallengeDefinition(
        "marketplace-master", "Marketplace Master",
        "Make 3 marketplace sales",
        "marketplace", 3, 60, "medium", "marketplace",
    ),
)

CHALLENGES_BY_ID: dict[str, ChallengeDefinition] = {c.id: c for c in CHALLENGE_CATALOG}
