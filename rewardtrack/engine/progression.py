"""
rewardtrack.engine.progression — Snapshot Types & Derived Calculations
=======================================================================

Pure calculation layer shared by the services and the trackers.
No database I/O, no feed I/O, no notifications.

Every snapshot is a frozen dataclass.  Trackers never mutate a snapshot in
place; a push-event patch reads the current snapshot, builds a new one with
:func:`dataclasses.replace`, and writes it back.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from rewardtrack.constants import (
    CHALLENGE_CATALOG,
    DEFAULT_DAILY_VELOCITY,
    REFERRAL_TIERS,
    REWARD_LEVELS,
    TREND_WINDOW,
    TRUST_LEVEL_BANDS,
    TRUST_SCORE_MAX,
    TRUST_SCORE_MIN,
    VELOCITY_WINDOW_DAYS,
    ChallengeDefinition,
    LevelThreshold,
    ReferralTierInfo,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Default-value helpers for raw rows / feed payloads
# ---------------------------------------------------------------------------
def as_number(value: Any, default: float = 0) -> float:
    """Return *value* as a number, or *default* when it is missing/garbage."""
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def as_int(value: Any, default: int = 0) -> int:
    return int(as_number(value, default))


# ===========================================================================
# Trust score
# ===========================================================================
@dataclass(frozen=True, slots=True)
class TrustHistoryEntry:
    """One row of the trust score journal."""

    id: int | None
    old_score: int
    new_score: int
    reason: str
    metadata: dict = field(default_factory=dict)
    created_at: datetime | None = None

    @property
    def delta(self) -> int:
        return self.new_score - self.old_score


@dataclass(frozen=True, slots=True)
class TrustScore:
    """Trust score snapshot with derived fields."""

    current_score: int
    max_score: int
    percentile: int
    trust_level: str
    history: tuple[TrustHistoryEntry, ...]
    recent_change: int
    trend: str
    next_level_threshold: int | None
    points_to_next_level: int
    last_updated: datetime | None = None


def clamp_score(score: float) -> int:
    """Clamp *score* into ``[TRUST_SCORE_MIN, TRUST_SCORE_MAX]``."""
    return int(max(TRUST_SCORE_MIN, min(TRUST_SCORE_MAX, score)))


def get_trust_level(score: float) -> str:
    """Classify *score*.  Lower bounds are inclusive: 50, 70, 85."""
    for lower, name in TRUST_LEVEL_BANDS:
        if score >= lower:
            return name
    return "low"


def trust_trend(history: Sequence[TrustHistoryEntry]) -> str:
    """Trend from the mean delta of the newest ``TREND_WINDOW`` entries.

    *history* must be newest first.  No history means "stable".
    """
    window = history[:TREND_WINDOW]
    if not window:
        return "stable"
    avg = sum(h.delta for h in window) / len(window)
    if avg > 1:
        return "improving"
    if avg < -1:
        return "declining"
    return "stable"


def next_trust_threshold(score: int) -> int | None:
    """Lower bound of the next trust band above *score*, or None at the top."""
    bounds = sorted(lower for lower, _ in TRUST_LEVEL_BANDS)
    for lower in bounds:
        if lower > score:
            return lower
    return None


def build_trust_score(
    current_score: float,
    history: Iterable[TrustHistoryEntry],
    *,
    now: datetime | None = None,
) -> TrustScore:
    """Assemble a :class:`TrustScore` from the stored score and journal."""
    score = clamp_score(current_score)
    entries = tuple(history)
    nxt = next_trust_threshold(score)
    return TrustScore(
        current_score=score,
        max_score=TRUST_SCORE_MAX,
        percentile=round(score / TRUST_SCORE_MAX * 100),
        trust_level=get_trust_level(score),
        history=entries,
        recent_change=entries[0].delta if entries else 0,
        trend=trust_trend(entries),
        next_level_threshold=nxt,
        points_to_next_level=(nxt - score) if nxt is not None else 0,
        last_updated=now,
    )


def score_breakdown(history: Iterable[TrustHistoryEntry]) -> dict[str, int]:
    """Net score change per change reason."""
    totals: dict[str, int] = {}
    for entry in history:
        totals[entry.reason] = totals.get(entry.reason, 0) + entry.delta
    return totals


# ===========================================================================
# Level progression
# ===========================================================================
@dataclass(frozen=True, slots=True)
class LevelProgression:
    """Level snapshot derived from lifetime earnings."""

    current_level: int
    current_threshold: float
    current_earnings: float
    next_level: int
    next_threshold: float
    earned_towards_next: float
    points_to_next_level: float
    progress_percentage: int
    total_levels: int
    is_max_level: bool
    level_title: str
    benefits: frozenset[str]
    color: str
    multiplier: float
    daily_velocity: float
    estimated_days_to_next_level: int


def get_level_info(level: int) -> LevelThreshold | None:
    for info in REWARD_LEVELS:
        if info.level == level:
            return info
    return None


def level_for_earnings(earnings: float) -> int:
    """Highest level whose threshold is ≤ *earnings* (monotonic in earnings)."""
    current = REWARD_LEVELS[0].level
    for info in REWARD_LEVELS:
        if earnings >= info.threshold:
            current = info.level
    return current


def daily_velocity(
    amounts: Iterable[float], window_days: int = VELOCITY_WINDOW_DAYS,
) -> float:
    """Average daily earnings over the window, floored at the default rate."""
    rate = sum(as_number(a) for a in amounts) / window_days
    if rate <= 0:
        return DEFAULT_DAILY_VELOCITY
    return rate


def build_level_progression(
    earnings: float,
    stored_level: int | None,
    velocity: float,
) -> LevelProgression:
    """Assemble a :class:`LevelProgression`.

    *stored_level* is the level on the summary row; when it is missing the
    level is computed from the table.

    Raises
    ------
    ValueError
        If *stored_level* is not a level in the table.
    """
    current_level = stored_level if stored_level else level_for_earnings(earnings)
    current = get_level_info(current_level)
    if current is None:
        raise ValueError(f"Invalid level configuration: level {current_level}")

    total_levels = len(REWARD_LEVELS)
    is_max = current_level >= total_levels
    next_level = min(current_level + 1, total_levels)

    if is_max:
        next_threshold = current.threshold
        points_to_next = 0.0
        progress = 100
    else:
        next_threshold = get_level_info(next_level).threshold
        span = next_threshold - current.threshold
        points_to_next = max(0.0, next_threshold - earnings)
        progress = round((earnings - current.threshold) / span * 100)
        progress = max(0, min(100, progress))

    velocity = velocity if velocity > 0 else DEFAULT_DAILY_VELOCITY
    estimated_days = math.ceil(points_to_next / velocity) if points_to_next else 0

    return LevelProgression(
        current_level=current_level,
        current_threshold=current.threshold,
        current_earnings=earnings,
        next_level=next_level,
        next_threshold=next_threshold,
        earned_towards_next=max(0.0, earnings - current.threshold),
        points_to_next_level=points_to_next,
        progress_percentage=progress,
        total_levels=total_levels,
        is_max_level=is_max,
        level_title=current.title,
        benefits=current.benefits,
        color=current.color,
        multiplier=current.multiplier,
        daily_velocity=velocity,
        estimated_days_to_next_level=estimated_days,
    )


def estimate_days_to_level(progression: LevelProgression, target_level: int) -> int | None:
    """Scale the single-step estimate by the number of levels remaining."""
    if get_level_info(target_level) is None:
        return None
    if progression.current_level >= target_level:
        return 0
    steps = max(1, progression.next_level - progression.current_level)
    days_per_level = max(1.0, progression.estimated_days_to_next_level / steps)
    return math.ceil(days_per_level * (target_level - progression.current_level))


# ===========================================================================
# Referrals
# ===========================================================================
@dataclass(frozen=True, slots=True)
class ReferralRecord:
    id: int
    referrer_id: str
    referred_user_id: str
    referral_code: str
    status: str
    earnings_total: float = 0.0
    earnings_this_month: float = 0.0
    auto_share_total: float = 0.0
    created_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class ReferralStats:
    total_referrals: int
    active_referrals: int
    total_earnings: float
    earnings_this_month: float
    total_auto_shared: float
    conversion_rate: float
    tier: str


def referral_from_mapping(row: dict) -> ReferralRecord:
    """Build a :class:`ReferralRecord` from a feed payload, defaulting gaps."""
    return ReferralRecord(
        id=as_int(row.get("id")),
        referrer_id=str(row.get("referrer_id") or ""),
        referred_user_id=str(row.get("referred_user_id") or ""),
        referral_code=str(row.get("referral_code") or ""),
        status=str(row.get("status") or "pending"),
        earnings_total=as_number(row.get("earnings_total")),
        earnings_this_month=as_number(row.get("earnings_this_month")),
        auto_share_total=as_number(row.get("auto_share_total")),
        created_at=row.get("created_at"),
    )


def tier_for_referrals(count: int) -> str:
    """Tier bracket for a referral count (bronze 0–4 … platinum 100+)."""
    tier = REFERRAL_TIERS[0].tier
    for info in REFERRAL_TIERS:
        if count >= info.min_referrals:
            tier = info.tier
    return tier


def get_tier_info(tier: str) -> ReferralTierInfo | None:
    for info in REFERRAL_TIERS:
        if info.tier == tier:
            return info
    return None


def get_next_tier_info(tier: str) -> ReferralTierInfo | None:
    names = [t.tier for t in REFERRAL_TIERS]
    try:
        idx = names.index(tier)
    except ValueError:
        idx = 0
    if idx + 1 < len(REFERRAL_TIERS):
        return REFERRAL_TIERS[idx + 1]
    return None


def conversion_rate(active: int, total: int) -> float:
    return active / total if total else 0.0


def build_referral_stats(
    total: int,
    active: int,
    total_earnings: float,
    earnings_this_month: float,
    total_auto_shared: float,
) -> ReferralStats:
    """Assemble :class:`ReferralStats`; tier and conversion are derived."""
    active = min(active, total)
    return ReferralStats(
        total_referrals=total,
        active_referrals=active,
        total_earnings=total_earnings,
        earnings_this_month=earnings_this_month,
        total_auto_shared=total_auto_shared,
        conversion_rate=conversion_rate(active, total),
        tier=tier_for_referrals(total),
    )


def restat(stats: ReferralStats, **changes: Any) -> ReferralStats:
    """Patch *stats* and recompute the derived tier/conversion fields."""
    patched = replace(stats, **changes)
    return build_referral_stats(
        patched.total_referrals,
        patched.active_referrals,
        patched.total_earnings,
        patched.earnings_this_month,
        patched.total_auto_shared,
    )


def progress_to_next_tier(stats: ReferralStats | None) -> int:
    """Percent of the next tier's earnings bar reached; 100 at the top tier."""
    if stats is None:
        return 0
    nxt = get_next_tier_info(stats.tier)
    if nxt is None:
        return 100
    return round(stats.total_earnings / (nxt.min_earnings or 1) * 100)


# ===========================================================================
# Challenges
# ===========================================================================
@dataclass(frozen=True, slots=True)
class ChallengeProgress:
    id: int
    user_id: str
    challenge_id: str
    progress: int
    target_value: int
    status: str
    completion_date: datetime | None = None
    reward_claimed: bool = False
    claim_date: datetime | None = None


@dataclass(frozen=True, slots=True)
class ChallengeWithProgress:
    challenge: ChallengeDefinition
    user_progress: ChallengeProgress | None = None

    @property
    def id(self) -> str:
        return self.challenge.id

    @property
    def type(self) -> str:
        return self.challenge.type

    @property
    def points_reward(self) -> int:
        return self.challenge.points_reward

    @property
    def progress_percentage(self) -> float:
        if self.user_progress is None or not self.challenge.target_value:
            return 0.0
        return min(100.0, self.user_progress.progress / self.challenge.target_value * 100)

    @property
    def is_completed(self) -> bool:
        return self.user_progress is not None and self.user_progress.status == "completed"

    @property
    def is_claimable(self) -> bool:
        return self.is_completed and not self.user_progress.reward_claimed


def challenge_progress_from_mapping(row: dict) -> ChallengeProgress:
    """Build a :class:`ChallengeProgress` from a feed payload."""
    return ChallengeProgress(
        id=as_int(row.get("id")),
        user_id=str(row.get("user_id") or ""),
        challenge_id=str(row.get("challenge_id") or ""),
        progress=as_int(row.get("progress")),
        target_value=as_int(row.get("target_value")),
        status=str(row.get("status") or "active"),
        completion_date=row.get("completion_date"),
        reward_claimed=bool(row.get("reward_claimed") or False),
        claim_date=row.get("claim_date"),
    )


def join_challenges(
    progress_rows: Iterable[ChallengeProgress],
    catalog: Sequence[ChallengeDefinition] = CHALLENGE_CATALOG,
) -> tuple[ChallengeWithProgress, ...]:
    """Attach each user's progress row to its catalog definition.

    Challenges without a row come back with ``user_progress=None``.
    Rows for challenges no longer in the catalog are dropped.
    """
    by_id = {p.challenge_id: p for p in progress_rows}
    return tuple(ChallengeWithProgress(c, by_id.get(c.id)) for c in catalog)


def filter_by_status(
    challenges: Iterable[ChallengeWithProgress], status: str,
) -> list[ChallengeWithProgress]:
    if status == "all":
        return list(challenges)
    return [
        c for c in challenges
        if c.user_progress is not None and c.user_progress.status == status
    ]


def total_rewards_available(challenges: Iterable[ChallengeWithProgress]) -> int:
    return sum(c.points_reward for c in challenges if c.is_claimable)
