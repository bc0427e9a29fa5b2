"""
rewardtrack.trackers.challenges — Challenge Tracker
===================================================

The challenge catalog joined with the user's progress.  Progress updates
and reward claims go through :mod:`rewardtrack.services.challenge_service`,
which enforces the completion and single-claim rules; this tracker only
mirrors the result and announces completions.
"""

from __future__ import annotations

import logging

from rewardtrack.constants import CHALLENGE_CACHE_TTL, CHALLENGES_BY_ID
from rewardtrack.database.engine import run_db
from rewardtrack.database.models import ChallengeStatus
from rewardtrack.engine.feed import ChangeEvent
from rewardtrack.engine.progression import (
    ChallengeProgress,
    ChallengeWithProgress,
    challenge_progress_from_mapping,
    filter_by_status,
    total_rewards_available,
)
from rewardtrack.services import challenge_service
from rewardtrack.services.embeds import TOAST_ICONS
from rewardtrack.trackers.base import ReactiveTracker, WriteError

logger = logging.getLogger(__name__)

_COMPLETED = ChallengeStatus.COMPLETED.value


class ChallengeTracker(ReactiveTracker[tuple[ChallengeWithProgress, ...]]):
    name = "challenges"
    table = "user_challenges"
    default_ttl = CHALLENGE_CACHE_TTL

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        # (challenge_id, completion_date) pairs already announced
        self._announced: set[tuple[str, str]] = set()

    async def _load(self) -> tuple[ChallengeWithProgress, ...]:
        return await run_db(challenge_service.load_challenges, self.engine, self.user_id)

    @property
    def challenges(self) -> tuple[ChallengeWithProgress, ...]:
        return self._data or ()

    # -------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------
    async def update_progress(self, challenge_id: str, new_progress: int) -> bool:
        with self._updating():
            try:
                progress = await run_db(
                    challenge_service.upsert_progress,
                    self.engine, self.user_id, challenge_id, new_progress,
                )
            except Exception as exc:
                self._write_failed(exc, "Failed to update challenge progress")
                return False

            self._cache.invalidate()
            await self._fetch(skip_cache=True)

        self.notify(
            "Progress Updated",
            f"{challenge_id}: {progress.progress}/{progress.target_value}",
        )
        return True

    async def claim_reward(self, challenge_id: str) -> bool:
        """Claim a completed challenge's reward; False if not claimable."""
        with self._updating():
            try:
                progress, message = await run_db(
                    challenge_service.claim_reward, self.engine, self.user_id, challenge_id,
                )
            except Exception as exc:
                self._write_failed(exc, "Failed to claim reward")
                return False

            if progress is None:
                logger.info("Claim of %s by %s rejected: %s", challenge_id, self.user_id, message)
                self._error = WriteError(message)
                self.notify("Unable to claim reward", message, destructive=True)
                return False

            self._apply_progress(progress)

        definition = CHALLENGES_BY_ID.get(challenge_id)
        points = definition.points_reward if definition else 0
        self.notify("Reward Claimed!", f"You've earned {points} points")
        return True

    def _apply_progress(self, progress: ChallengeProgress) -> None:
        current = self._data
        if current is None:
            self._mark_dirty()
            return
        self._patch(tuple(
            ChallengeWithProgress(c.challenge, progress)
            if c.id == progress.challenge_id else c
            for c in current
        ))

    # -------------------------------------------------------------------
    # Derived views
    # -------------------------------------------------------------------
    def filter_by_status(self, status: str) -> list[ChallengeWithProgress]:
        return filter_by_status(self.challenges, status)

    def filter_by_type(self, challenge_type: str) -> list[ChallengeWithProgress]:
        return [c for c in self.challenges if c.type == challenge_type]

    @property
    def active_challenges(self) -> list[ChallengeWithProgress]:
        return self.filter_by_status(ChallengeStatus.ACTIVE.value)

    @property
    def completed_challenges(self) -> list[ChallengeWithProgress]:
        return self.filter_by_status(_COMPLETED)

    @property
    def unclaimed_challenges(self) -> list[ChallengeWithProgress]:
        return [c for c in self.challenges if c.is_claimable]

    def get_total_rewards_available(self) -> int:
        return total_rewards_available(self.challenges)

    # -------------------------------------------------------------------
    # Push
    # -------------------------------------------------------------------
    async def handle_change(self, event: ChangeEvent) -> None:
        progress = challenge_progress_from_mapping(event.new)
        if progress.challenge_id not in CHALLENGES_BY_ID:
            logger.debug("Ignoring progress for unknown challenge %s", progress.challenge_id)
            return
        self._apply_progress(progress)

        old_status = (event.old or {}).get("status")
        if progress.status != _COMPLETED or old_status == _COMPLETED:
            return
        key = (progress.challenge_id, str(progress.completion_date))
        if key in self._announced:
            return
        self._announced.add(key)
        title = CHALLENGES_BY_ID[progress.challenge_id].title
        self.notify(
            f"{TOAST_ICONS['challenge']} Challenge Completed!",
            f"You completed '{title}'. Claim your reward!",
        )
