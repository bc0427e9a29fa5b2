"""
rewardtrack.database.models — SQLAlchemy 2.0 Data Models
=========================================================

Tables read and written by the four trackers.

Tables:
- user_rewards_summary  — One row per user: lifetime earnings, trust score, level
- trust_history         — Append-only journal of trust score changes
- activity_transactions — Earnings ledger (drives level velocity)
- referral_tracking     — One row per sponsored account
- referral_codes        — Referral codes issued to a user (one active at a time)
- user_challenges       — Per-challenge progress, keyed by (user_id, challenge_id)

Rows are created lazily on the first qualifying action and are never
hard-deleted during normal operation.
"""

from __future__ import annotations

import enum
from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Timezone-aware UTC now (Python-side so ordering keeps microseconds)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all rewardtrack ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class TransactionStatus(enum.StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ReferralStatus(enum.StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"


class ChallengeStatus(enum.StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"


# ---------------------------------------------------------------------------
# UserRewardsSummary — one row per user
# ---------------------------------------------------------------------------
class UserRewardsSummary(Base):
    __tablename__ = "user_rewards_summary"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    total_earned: Mapped[float] = mapped_column(Float, default=0.0)
    available_balance: Mapped[float] = mapped_column(Float, default=0.0)
    trust_score: Mapped[int] = mapped_column(Integer, default=50)
    # NULL means "derive from total_earned against the level table"
    level: Mapped[int | None] = mapped_column(Integer, nullable=True, default=None)
    next_level_threshold: Mapped[float | None] = mapped_column(
        Float, nullable=True, default=None
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<UserRewardsSummary user={self.user_id!r} "
            f"earned={self.total_earned} trust={self.trust_score}>"
        )


# ---------------------------------------------------------------------------
# TrustHistory — append-only trust score journal
# ---------------------------------------------------------------------------
class TrustHistory(Base):
    __tablename__ = "trust_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    old_score: Mapped[int] = mapped_column(Integer, nullable=False)
    new_score: Mapped[int] = mapped_column(Integer, nullable=False)
    change_reason: Mapped[str] = mapped_column(String(200), nullable=False)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )

    __table_args__ = (
        Index("ix_trust_history_user_time", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<TrustHistory id={self.id} user={self.user_id!r} "
            f"{self.old_score}->{self.new_score}>"
        )


# ---------------------------------------------------------------------------
# ActivityTransaction — earnings ledger
# ---------------------------------------------------------------------------
class ActivityTransaction(Base):
    __tablename__ = "activity_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    activity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[float] = mapped_column(Float, default=0.0)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransactionStatus.COMPLETED.value
    )
    source_type: Mapped[str | None] = mapped_column(String(50), default=None)
    source_id: Mapped[str | None] = mapped_column(String(100), default=None)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )

    __table_args__ = (
        Index("ix_activity_tx_user_status_time", "user_id", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ActivityTransaction id={self.id} user={self.user_id!r} "
            f"amount={self.amount} status={self.status}>"
        )


# ---------------------------------------------------------------------------
# ReferralTracking — one row per sponsored account
# ---------------------------------------------------------------------------
class ReferralTracking(Base):
    __tablename__ = "referral_tracking"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    referrer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    referred_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    referral_code: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ReferralStatus.PENDING.value
    )
    earnings_total: Mapped[float] = mapped_column(Float, default=0.0)
    earnings_this_month: Mapped[float] = mapped_column(Float, default=0.0)
    # Maintained by the external auto-share job; read-only here
    auto_share_total: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "referrer_id", "referred_user_id", name="uq_referral_referrer_referred",
        ),
        Index("ix_referral_referrer_time", "referrer_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ReferralTracking id={self.id} referrer={self.referrer_id!r} "
            f"referred={self.referred_user_id!r} status={self.status}>"
        )


# ---------------------------------------------------------------------------
# ReferralCode — codes issued to a referrer
# ---------------------------------------------------------------------------
class ReferralCode(Base):
    __tablename__ = "referral_codes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    code: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)
    # Client-supplied idempotency key; a retried request returns the same code
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )

    __table_args__ = (
        # At most one active code per user
        Index(
            "uq_referral_codes_one_active",
            "user_id",
            unique=True,
            postgresql_where=text("active"),
            sqlite_where=text("active"),
        ),
        UniqueConstraint("user_id", "request_id", name="uq_referral_codes_request"),
    )

    def __repr__(self) -> str:
        return f"<ReferralCode user={self.user_id!r} code={self.code!r} active={self.active}>"


# ---------------------------------------------------------------------------
# UserChallenge — per-challenge progress
# ---------------------------------------------------------------------------
class UserChallenge(Base):
    __tablename__ = "user_challenges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    challenge_id: Mapped[str] = mapped_column(String(64), nullable=False)
    progress: Mapped[int] = mapped_column(Integer, default=0)
    target_value: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ChallengeStatus.ACTIVE.value
    )
    completion_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )
    reward_claimed: Mapped[bool] = mapped_column(Boolean, default=False)
    claim_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("user_id", "challenge_id", name="uq_user_challenges_natural"),
    )

    def __repr__(self) -> str:
        return (
            f"<UserChallenge user={self.user_id!r} challenge={self.challenge_id!r} "
            f"{self.progress}/{self.target_value} {self.status}>"
        )
