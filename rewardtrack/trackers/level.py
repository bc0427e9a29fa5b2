"""
rewardtrack.trackers.level — Level Progression Tracker
======================================================

Derives the user's reward level from lifetime earnings and fires the
level-up toast once per increase.

The toast is driven by a watermark: the highest level this tracker has
observed.  The first snapshot sets the watermark without a toast; any later
snapshot above it raises the watermark and toasts once.
"""

from __future__ import annotations

import logging

from rewardtrack.constants import LEVEL_CACHE_TTL, REWARD_LEVELS, LevelThreshold
from rewardtrack.database.engine import run_db
from rewardtrack.engine.feed import ChangeEvent
from rewardtrack.engine.progression import (
    LevelProgression,
    estimate_days_to_level,
    get_level_info,
)
from rewardtrack.services import level_service
from rewardtrack.services.embeds import TOAST_ICONS
from rewardtrack.trackers.base import ReactiveTracker

logger = logging.getLogger(__name__)

_WATCHED_COLUMNS = ("level", "total_earned", "next_level_threshold")


class LevelTracker(ReactiveTracker[LevelProgression]):
    name = "level progression"
    table = "user_rewards_summary"
    default_ttl = LEVEL_CACHE_TTL

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._level_watermark: int | None = None

    async def _load(self) -> LevelProgression:
        return await run_db(level_service.load_level_snapshot, self.engine, self.user_id)

    def _after_load(self, data: LevelProgression) -> None:
        level = data.current_level
        if self._level_watermark is None:
            self._level_watermark = level
            return
        if level > self._level_watermark:
            self._level_watermark = level
            logger.info("User %s levelled up to %d", self.user_id, level)
            self.notify(
                f"{TOAST_ICONS['level_up']} Level Up!",
                f"You've reached level {level}: {data.level_title}!",
            )

    @property
    def level_watermark(self) -> int | None:
        return self._level_watermark

    # -------------------------------------------------------------------
    # Table lookups
    # -------------------------------------------------------------------
    @staticmethod
    def get_level_info(level: int) -> LevelThreshold | None:
        return get_level_info(level)

    @staticmethod
    def get_all_levels() -> tuple[LevelThreshold, ...]:
        return REWARD_LEVELS

    # -------------------------------------------------------------------
    # Queries against the loaded snapshot
    # -------------------------------------------------------------------
    def get_progress_toward_level(self, target_level: int) -> int:
        data = self._data
        if data is None or get_level_info(target_level) is None:
            return 0
        if data.current_level > target_level:
            return 100
        if data.current_level == target_level:
            return data.progress_percentage
        return 0

    def is_level_unlocked(self, level: int) -> bool:
        return self._data is not None and self._data.current_level >= level

    def estimate_time_to_level(self, target_level: int) -> int | None:
        if self._data is None:
            return None
        return estimate_days_to_level(self._data, target_level)

    def has_benefit(self, benefit: str) -> bool:
        return self._data is not None and benefit in self._data.benefits

    # -------------------------------------------------------------------
    # Push
    # -------------------------------------------------------------------
    async def handle_change(self, event: ChangeEvent) -> None:
        if event.type != "UPDATE":
            return
        old = event.old
        if old is not None and all(old.get(c) == event.new.get(c) for c in _WATCHED_COLUMNS):
            return
        await self.refresh()
