"""
rewardtrack.trackers.suite — All four trackers for one user
===========================================================

Convenience wiring so callers (the CLI, an app shell) build, start, load
and stop the trackers together.  Each tracker still owns its own cache and
subscription; nothing is shared between them except the engine, the feed
and the notifier.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from rewardtrack.config import RewardTrackConfig
from rewardtrack.trackers.challenges import ChallengeTracker
from rewardtrack.trackers.level import LevelTracker
from rewardtrack.trackers.referral import ClipboardWriter, ReferralTracker
from rewardtrack.trackers.trust import TrustTracker

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from rewardtrack.engine.feed import ChangeFeed
    from rewardtrack.services.notifier import Notifier
    from rewardtrack.trackers.base import ReactiveTracker

logger = logging.getLogger(__name__)


@dataclass
class RewardsSuite:
    trust: TrustTracker
    level: LevelTracker
    referral: ReferralTracker
    challenges: ChallengeTracker

    @classmethod
    def build(
        cls,
        engine: Engine,
        user_id: str,
        *,
        cfg: RewardTrackConfig | None = None,
        feed: ChangeFeed | None = None,
        notifier: Notifier | None = None,
        clipboard: ClipboardWriter | None = None,
    ) -> RewardsSuite:
        cfg = cfg or RewardTrackConfig()
        common = {"feed": feed, "notifier": notifier}
        return cls(
            trust=TrustTracker(
                engine, user_id,
                ttl=cfg.trust_cache_ttl,
                history_limit=cfg.trust_history_limit,
                **common,
            ),
            level=LevelTracker(engine, user_id, ttl=cfg.level_cache_ttl, **common),
            referral=ReferralTracker(
                engine, user_id,
                ttl=cfg.referral_cache_ttl,
                page_size=cfg.referral_page_size,
                base_url=cfg.referral_base_url,
                clipboard=clipboard,
                **common,
            ),
            challenges=ChallengeTracker(
                engine, user_id, ttl=cfg.challenge_cache_ttl, **common,
            ),
        )

    @property
    def trackers(self) -> tuple[ReactiveTracker, ...]:
        return (self.trust, self.level, self.referral, self.challenges)

    def start(self) -> None:
        for tracker in self.trackers:
            tracker.start()

    def stop(self) -> None:
        for tracker in self.trackers:
            tracker.stop()

    async def load(self) -> None:
        """Fetch every tracker (cache permitting) concurrently."""
        await asyncio.gather(*(t.fetch() for t in self.trackers))

    async def refresh_all(self) -> None:
        await asyncio.gather(*(t.refresh() for t in self.trackers))
        failed = [t.name for t in self.trackers if t.error is not None]
        if failed:
            logger.warning("Refresh finished with errors: %s", ", ".join(failed))
