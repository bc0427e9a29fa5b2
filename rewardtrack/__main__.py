"""
rewardtrack.__main__ — Entry point for ``python -m rewardtrack``
================================================================

Wiring:
1. Load .env (secrets).
2. Load config.yaml (tracker tuning); defaults when the file is absent.
3. Create the SQLAlchemy engine and ensure tables + triggers exist.
4. Pick the notifier (Discord webhook when NOTIFY_WEBHOOK_URL is set).
5. Start the PG LISTEN/NOTIFY change feed (PostgreSQL only).
6. Build the four trackers for the user, load them and print a summary.
7. With ``--watch``, keep running and re-print until Ctrl+C.

Run with::

    uv run python -m rewardtrack <user-id> [--watch]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

from rewardtrack.config import RewardTrackConfig, load_config
from rewardtrack.database.engine import create_db_engine, init_db
from rewardtrack.engine.feed import ChangeFeed
from rewardtrack.services.notifier import LogNotifier, Notifier, WebhookNotifier
from rewardtrack.trackers.suite import RewardsSuite

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("rewardtrack")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="rewardtrack",
        description="Show a user's trust score, level, referrals and challenges.",
    )
    parser.add_argument("user_id", help="user whose rewards to track")
    parser.add_argument("--config", default="config.yaml", help="path to config.yaml")
    parser.add_argument(
        "--watch", action="store_true", help="keep running and print live updates",
    )
    parser.add_argument(
        "--interval", type=float, default=10.0,
        help="seconds between summaries in --watch mode (default: 10)",
    )
    return parser.parse_args(argv)


def _load_config(path: str) -> RewardTrackConfig:
    if not Path(path).exists():
        logger.info("No %s found; using default settings", path)
        return RewardTrackConfig()
    return load_config(path)


def _build_notifier(cfg: RewardTrackConfig) -> Notifier:
    url = os.getenv("NOTIFY_WEBHOOK_URL")
    if url:
        return WebhookNotifier(url, username=cfg.webhook_username)
    return LogNotifier()


def _summary(suite: RewardsSuite) -> str:
    lines: list[str] = []

    trust = suite.trust.data
    if trust is not None:
        lines.append(
            f"Trust      {trust.current_score}/{trust.max_score} "
            f"({trust.trust_level}, {trust.trend})"
        )

    level = suite.level.data
    if level is not None:
        eta = (
            "max level" if level.is_max_level
            else f"~{level.estimated_days_to_next_level}d to level {level.next_level}"
        )
        lines.append(
            f"Level      {level.current_level} {level.level_title} "
            f"[{level.progress_percentage}%] {level.current_earnings:g} earned, {eta}"
        )

    stats = suite.referral.stats
    if stats is not None:
        lines.append(
            f"Referrals  {stats.active_referrals}/{stats.total_referrals} active, "
            f"tier {stats.tier}, {stats.total_earnings:g} earned"
        )
        if suite.referral.referral_link:
            lines.append(f"           {suite.referral.referral_link}")

    if suite.challenges.data is not None:
        lines.append(
            f"Challenges {len(suite.challenges.completed_challenges)} completed, "
            f"{suite.challenges.get_total_rewards_available()} points claimable"
        )

    for tracker in suite.trackers:
        if tracker.error is not None:
            lines.append(f"!! {tracker.name}: {tracker.error}")
    return "\n".join(lines)


async def _run(args: argparse.Namespace) -> None:
    cfg = _load_config(args.config)

    engine = create_db_engine()
    init_db(engine)

    notifier = _build_notifier(cfg)
    feed = ChangeFeed(engine)
    if engine.dialect.name == "postgresql":
        feed.start_listener(asyncio.get_running_loop())
    else:
        logger.info("Live updates need PostgreSQL; running without a change feed")

    suite = RewardsSuite.build(engine, args.user_id, cfg=cfg, feed=feed, notifier=notifier)
    suite.start()
    try:
        await suite.load()
        print(_summary(suite))
        while args.watch:
            await asyncio.sleep(args.interval)
            await suite.load()
            print(_summary(suite))
    finally:
        suite.stop()
        feed.stop_listener()
        if isinstance(notifier, WebhookNotifier):
            await notifier.drain()
        engine.dispose()


def main(argv: list[str] | None = None) -> None:
    """Bootstrap and run the tracker CLI."""
    load_dotenv()
    args = _parse_args(argv)
    try:
        asyncio.run(_run(args))
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")


if __name__ == "__main__":
    main()
