"""
rewardtrack.services.challenge_service — Challenge Progress Persistence
========================================================================

Upserts progress rows keyed by ``(user_id, challenge_id)`` and guards reward
claims so a reward can only ever be issued once:

* ``status`` is ``completed`` exactly when ``progress >= target_value``.
* ``completion_date`` is stamped at the active→completed transition only.
* ``reward_claimed`` flips false→true through a conditional UPDATE, and the
  reward credit is written in the same transaction.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from rewardtrack.constants import CHALLENGES_BY_ID
from rewardtrack.database.engine import get_session
from rewardtrack.database.models import ChallengeStatus, UserChallenge
from rewardtrack.engine.progression import (
    ChallengeProgress,
    ChallengeWithProgress,
    join_challenges,
)
from rewardtrack.services.level_service import credit_earnings

if TYPE_CHECKING:
    from sqlalchemy import Engine
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


def _progress(row: UserChallenge) -> ChallengeProgress:
    return ChallengeProgress(
        id=row.id,
        user_id=row.user_id,
        challenge_id=row.challenge_id,
        progress=row.progress,
        target_value=row.target_value,
        status=row.status,
        completion_date=row.completion_date,
        reward_claimed=bool(row.reward_claimed),
        claim_date=row.claim_date,
    )


def _get_row(session: Session, user_id: str, challenge_id: str) -> UserChallenge | None:
    return session.scalar(
        select(UserChallenge)
        .where(UserChallenge.user_id == user_id, UserChallenge.challenge_id == challenge_id)
        .with_for_update()
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def load_challenge_progress(engine: Engine, user_id: str) -> list[ChallengeProgress]:
    with get_session(engine) as session:
        rows = session.scalars(
            select(UserChallenge).where(UserChallenge.user_id == user_id)
        ).all()
        return [_progress(r) for r in rows]


def load_challenges(engine: Engine, user_id: str) -> tuple[ChallengeWithProgress, ...]:
    """The catalog joined with the user's progress rows."""
    return join_challenges(load_challenge_progress(engine, user_id))


def get_progress(engine: Engine, user_id: str, challenge_id: str) -> ChallengeProgress | None:
    with get_session(engine) as session:
        row = _get_row(session, user_id, challenge_id)
        return _progress(row) if row is not None else None


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------
def _apply_progress(row: UserChallenge, new_progress: int, now: datetime) -> None:
    """Set progress and move status/completion_date across the target."""
    if new_progress >= row.target_value:
        if row.status != ChallengeStatus.COMPLETED.value:
            row.status = ChallengeStatus.COMPLETED.value
            row.completion_date = now
    else:
        if row.reward_claimed:
            raise ValueError(
                f"Challenge {row.challenge_id!r} reward already claimed; "
                "progress cannot drop below the target"
            )
        row.status = ChallengeStatus.ACTIVE.value
        row.completion_date = None
    row.progress = new_progress


def upsert_progress(
    engine: Engine,
    user_id: str,
    challenge_id: str,
    new_progress: int,
    *,
    now: datetime | None = None,
) -> ChallengeProgress:
    """Create or update the user's progress row for *challenge_id*.

    Raises
    ------
    LookupError
        If *challenge_id* is not in the catalog.
    ValueError
        If *new_progress* is negative, or would reopen a claimed challenge.
    """
    definition = CHALLENGES_BY_ID.get(challenge_id)
    if definition is None:
        raise LookupError(f"Challenge {challenge_id!r} not found")
    if new_progress < 0:
        raise ValueError(f"Progress must be non-negative, got {new_progress}")
    now = now or datetime.now(UTC)

    with get_session(engine) as session:
        row = _get_row(session, user_id, challenge_id)
        if row is None:
            row = UserChallenge(
                user_id=user_id,
                challenge_id=challenge_id,
                progress=0,
                target_value=definition.target_value,
                status=ChallengeStatus.ACTIVE.value,
                reward_claimed=False,
            )
            try:
                with session.begin_nested():   # SAVEPOINT
                    _apply_progress(row, new_progress, now)
                    session.add(row)
                    session.flush()
            except IntegrityError:
                # Row created concurrently, update it instead
                row = _get_row(session, user_id, challenge_id)
                if row is None:
                    raise
                _apply_progress(row, new_progress, now)
        else:
            _apply_progress(row, new_progress, now)
        session.flush()
        result = _progress(row)

    logger.info(
        "Challenge %s for %s: %d/%d (%s)",
        challenge_id, user_id, result.progress, result.target_value, result.status,
    )
    return result


def claim_reward(
    engine: Engine,
    user_id: str,
    challenge_id: str,
    *,
    now: datetime | None = None,
) -> tuple[ChallengeProgress | None, str]:
    """Claim the reward for a completed challenge.

    Returns (progress, message).  *progress* is set only when this call
    claimed the reward; a challenge that was never started, is not yet
    completed, or was already claimed returns ``(None, reason)`` and writes
    nothing.
    """
    now = now or datetime.now(UTC)
    with get_session(engine) as session:
        row = _get_row(session, user_id, challenge_id)
        if row is None:
            return None, "Challenge has not been started."

        result = session.execute(
            update(UserChallenge)
            .where(
                UserChallenge.id == row.id,
                UserChallenge.status == ChallengeStatus.COMPLETED.value,
                UserChallenge.reward_claimed.is_(False),
            )
            .values(reward_claimed=True, claim_date=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            if row.reward_claimed:
                return None, "Reward already claimed."
            return None, "Challenge is not completed yet."

        definition = CHALLENGES_BY_ID.get(challenge_id)
        if definition is not None and definition.points_reward:
            credit_earnings(
                session,
                user_id,
                definition.points_reward,
                activity_type="challenge_reward",
                source_type="challenge",
                source_id=challenge_id,
                description=f"Reward for {definition.title}",
            )
        session.refresh(row)
        claimed = _progress(row)

    logger.info("Challenge %s reward claimed by %s", challenge_id, user_id)
    return claimed, "Reward claimed."
