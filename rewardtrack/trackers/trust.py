"""
rewardtrack.trackers.trust — Trust Score Tracker
================================================

Keeps the user's 0–100 trust score and its journal in sync with the store.
A score change pushed by the feed produces one increase/decrease toast and
a cache-bypassing refresh.
"""

from __future__ import annotations

import logging

from rewardtrack.constants import TRUST_CACHE_TTL, TRUST_HISTORY_LIMIT
from rewardtrack.database.engine import run_db
from rewardtrack.engine.feed import ChangeEvent
from rewardtrack.engine.progression import (
    TrustHistoryEntry,
    TrustScore,
    as_int,
    get_trust_level,
    score_breakdown,
)
from rewardtrack.services import trust_service
from rewardtrack.services.embeds import TOAST_ICONS
from rewardtrack.trackers.base import FetchError, ReactiveTracker

logger = logging.getLogger(__name__)


class TrustTracker(ReactiveTracker[TrustScore]):
    name = "trust score"
    table = "user_rewards_summary"
    default_ttl = TRUST_CACHE_TTL

    def __init__(self, *args, history_limit: int = TRUST_HISTORY_LIMIT, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.history_limit = history_limit

    async def _load(self) -> TrustScore:
        return await run_db(
            trust_service.load_trust_snapshot,
            self.engine,
            self.user_id,
            history_limit=self.history_limit,
        )

    # -------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------
    async def update_score(
        self, delta: int, reason: str, metadata: dict | None = None,
    ) -> bool:
        """Apply *delta* and journal it; returns False if nothing was applied."""
        with self._updating():
            try:
                await run_db(
                    trust_service.apply_score_change,
                    self.engine, self.user_id, delta, reason, metadata,
                )
            except Exception as exc:
                self._write_failed(exc, "Failed to update trust score")
                return False

            self._cache.invalidate()
            await self._fetch(skip_cache=True)

        sign = "+" if delta > 0 else ""
        self.notify("Trust Score Updated", f"{reason}. Change: {sign}{delta}")
        return True

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    @staticmethod
    def get_trust_level(score: float) -> str:
        return get_trust_level(score)

    def can_perform_action(self, required_score: float) -> bool:
        data = self._data
        if data is None:
            return False
        return data.current_score >= required_score

    async def get_history(self, limit: int | None = None) -> list[TrustHistoryEntry]:
        """Read the journal straight from the store, newest first."""
        try:
            return await run_db(
                trust_service.load_trust_history, self.engine, self.user_id, limit,
            )
        except Exception as exc:
            logger.exception("Failed to load trust history for %s", self.user_id)
            self._error = FetchError(f"Failed to load trust history: {exc}")
            return []

    def get_score_breakdown(self) -> dict[str, int]:
        if self._data is None:
            return {}
        return score_breakdown(self._data.history)

    # -------------------------------------------------------------------
    # Push
    # -------------------------------------------------------------------
    async def handle_change(self, event: ChangeEvent) -> None:
        if event.type != "UPDATE" or "trust_score" not in event.new:
            return

        new_score = as_int(event.new.get("trust_score"))
        if event.old is not None and "trust_score" in event.old:
            old_score = as_int(event.old.get("trust_score"))
        elif self._data is not None:
            old_score = self._data.current_score
        else:
            old_score = None

        if old_score is not None:
            change = new_score - old_score
            if change == 0:
                return
            if change > 0:
                title = f"{TOAST_ICONS['trust_up']} Trust Score Increased"
            else:
                title = f"{TOAST_ICONS['trust_down']} Trust Score Decreased"
            points = abs(change)
            self.notify(
                title,
                f"Your trust score changed by {points} point{'s' if points != 1 else ''}",
            )

        await self.refresh()
