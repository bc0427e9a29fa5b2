"""
rewardtrack.services.trust_service — Trust Score Persistence
=============================================================

Synchronous reads/writes for the Trust Tracker (call through ``run_db``).

The score lives on ``user_rewards_summary.trust_score``; every change is
journaled in ``trust_history``.  :func:`apply_score_change` writes both in a
single transaction so the journal and the current score cannot diverge.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import select

from rewardtrack.constants import DEFAULT_TRUST_SCORE, TRUST_HISTORY_LIMIT
from rewardtrack.database.engine import get_session
from rewardtrack.database.models import TrustHistory, UserRewardsSummary
from rewardtrack.engine.progression import (
    TrustHistoryEntry,
    TrustScore,
    build_trust_score,
    clamp_score,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


def _entry(row: TrustHistory) -> TrustHistoryEntry:
    return TrustHistoryEntry(
        id=row.id,
        old_score=row.old_score,
        new_score=row.new_score,
        reason=row.change_reason,
        metadata=dict(row.metadata_ or {}),
        created_at=row.created_at,
    )


def _history(session: Session, user_id: str, limit: int | None) -> list[TrustHistoryEntry]:
    stmt = (
        select(TrustHistory)
        .where(TrustHistory.user_id == user_id)
        .order_by(TrustHistory.created_at.desc(), TrustHistory.id.desc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    return [_entry(r) for r in session.scalars(stmt).all()]


def load_trust_snapshot(
    engine: Engine,
    user_id: str,
    *,
    history_limit: int = TRUST_HISTORY_LIMIT,
) -> TrustScore:
    """Read the current score and newest history entries.

    A user with no summary row yet gets the default score (50).
    """
    with get_session(engine) as session:
        stored = session.scalar(
            select(UserRewardsSummary.trust_score).where(
                UserRewardsSummary.user_id == user_id
            )
        )
        history = _history(session, user_id, history_limit)

    score = DEFAULT_TRUST_SCORE if stored is None else stored
    return build_trust_score(score, history, now=datetime.now(UTC))


def load_trust_history(
    engine: Engine, user_id: str, limit: int | None = None,
) -> list[TrustHistoryEntry]:
    """Full (or *limit*-bounded) trust journal, newest first."""
    with get_session(engine) as session:
        return _history(session, user_id, limit)


def apply_score_change(
    engine: Engine,
    user_id: str,
    delta: int,
    reason: str,
    metadata: dict | None = None,
) -> TrustHistoryEntry:
    """Apply *delta* to the user's trust score and journal it atomically.

    The new score is computed from the row read inside the transaction and
    clamped to 0..100, so the journal entry's ``new_score`` is exactly the
    value stored.

    Raises
    ------
    ValueError
        If *reason* is empty.
    sqlalchemy.exc.SQLAlchemyError
        If the transaction fails (nothing is applied).
    """
    if not reason or not reason.strip():
        raise ValueError("A trust score change needs a reason")

    with get_session(engine) as session:
        summary = session.scalar(
            select(UserRewardsSummary)
            .where(UserRewardsSummary.user_id == user_id)
            .with_for_update()
        )
        if summary is None:
            summary = UserRewardsSummary(user_id=user_id, trust_score=DEFAULT_TRUST_SCORE)
            session.add(summary)
            session.flush()

        old_score = clamp_score(summary.trust_score)
        new_score = clamp_score(old_score + delta)

        row = TrustHistory(
            user_id=user_id,
            old_score=old_score,
            new_score=new_score,
            change_reason=reason,
            metadata_=metadata or {},
        )
        session.add(row)
        summary.trust_score = new_score
        session.flush()
        entry = _entry(row)

    logger.info(
        "Trust score for %s: %d → %d (%s)", user_id, old_score, new_score, reason,
    )
    return entry
