"""
rewardtrack.services.level_service — Earnings & Level Persistence
==================================================================

Reads lifetime earnings for the Level Tracker and owns the single write
path that credits earnings (:func:`credit_earnings`), which the challenge
and referral services reuse inside their own transactions.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from rewardtrack.constants import VELOCITY_WINDOW_DAYS
from rewardtrack.database.engine import get_session
from rewardtrack.database.models import (
    ActivityTransaction,
    TransactionStatus,
    UserRewardsSummary,
)
from rewardtrack.engine.progression import (
    LevelProgression,
    build_level_progression,
    daily_velocity,
    get_level_info,
    level_for_earnings,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


def _locked_summary(session: Session, user_id: str) -> UserRewardsSummary | None:
    return session.scalar(
        select(UserRewardsSummary)
        .where(UserRewardsSummary.user_id == user_id)
        .with_for_update()
    )


def get_or_create_summary(session: Session, user_id: str) -> UserRewardsSummary:
    """Fetch or insert the summary row (locked for update where supported)."""
    summary = _locked_summary(session, user_id)
    if summary is not None:
        return summary
    try:
        with session.begin_nested():   # SAVEPOINT
            summary = UserRewardsSummary(user_id=user_id)
            session.add(summary)
            session.flush()
    except IntegrityError:
        # Row created concurrently, lock and use it
        summary = _locked_summary(session, user_id)
        if summary is None:
            raise
    return summary


def recent_earnings(
    session: Session,
    user_id: str,
    *,
    now: datetime,
    window_days: int = VELOCITY_WINDOW_DAYS,
) -> float:
    """Sum of completed transaction amounts in the trailing window."""
    cutoff = now - timedelta(days=window_days)
    total = session.scalar(
        select(func.coalesce(func.sum(ActivityTransaction.amount), 0.0)).where(
            ActivityTransaction.user_id == user_id,
            ActivityTransaction.status == TransactionStatus.COMPLETED.value,
            ActivityTransaction.created_at >= cutoff,
        )
    )
    return float(total or 0.0)


def load_level_snapshot(
    engine: Engine, user_id: str, *, now: datetime | None = None,
) -> LevelProgression:
    """Read earnings + stored level and derive the progression snapshot."""
    now = now or datetime.now(UTC)
    with get_session(engine) as session:
        summary = session.get(UserRewardsSummary, user_id)
        earnings = float(summary.total_earned or 0.0) if summary else 0.0
        stored_level = summary.level if summary else None
        window_total = recent_earnings(session, user_id, now=now)

    return build_level_progression(
        earnings,
        stored_level,
        daily_velocity([window_total]),
    )


def credit_earnings(
    session: Session,
    user_id: str,
    amount: float,
    *,
    activity_type: str,
    source_type: str | None = None,
    source_id: str | None = None,
    description: str | None = None,
) -> ActivityTransaction:
    """Credit *amount* to the user inside the caller's transaction.

    Writes a completed ledger row and bumps the summary's earnings, level and
    next-level threshold so the change feed carries the new level.

    Raises
    ------
    ValueError
        If *amount* is negative.
    """
    if amount < 0:
        raise ValueError(f"Cannot credit a negative amount: {amount}")

    tx = ActivityTransaction(
        user_id=user_id,
        activity_type=activity_type,
        amount=amount,
        status=TransactionStatus.COMPLETED.value,
        source_type=source_type,
        source_id=source_id,
        description=description,
    )
    session.add(tx)

    summary = get_or_create_summary(session, user_id)
    summary.total_earned = float(summary.total_earned or 0.0) + amount
    summary.available_balance = float(summary.available_balance or 0.0) + amount
    new_level = level_for_earnings(summary.total_earned)
    old_level = summary.level or 1
    summary.level = max(old_level, new_level)
    nxt = get_level_info(summary.level + 1)
    summary.next_level_threshold = nxt.threshold if nxt else None
    session.flush()

    if summary.level > old_level:
        logger.info("User %s reached level %d", user_id, summary.level)
    return tx


def record_earning(
    engine: Engine,
    user_id: str,
    amount: float,
    *,
    activity_type: str,
    description: str | None = None,
) -> ActivityTransaction:
    """Credit *amount* in its own transaction."""
    with get_session(engine) as session:
        return credit_earnings(
            session,
            user_id,
            amount,
            activity_type=activity_type,
            description=description,
        )
