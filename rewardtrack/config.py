"""
rewardtrack.config — YAML Configuration Loader
==============================================

Reads ``config.yaml`` for tracker tuning (cache TTLs, page size, history
depth) and the public referral base URL.  Every key is optional; a missing
key keeps its default.

Secrets are **not** read from here: ``DATABASE_URL`` and
``NOTIFY_WEBHOOK_URL`` come from the environment (``.env`` via
python-dotenv).

Usage::

    from rewardtrack.config import load_config

    cfg = load_config()            # reads ./config.yaml by default
    print(cfg.level_cache_ttl)     # 30.0
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path

import yaml

from rewardtrack.constants import (
    CHALLENGE_CACHE_TTL,
    DEFAULT_REFERRAL_PAGE_SIZE,
    LEVEL_CACHE_TTL,
    REFERRAL_CACHE_TTL,
    TRUST_CACHE_TTL,
    TRUST_HISTORY_LIMIT,
)


@dataclass(frozen=True, slots=True)
class RewardTrackConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Cache TTLs (seconds)
    trust_cache_ttl: float = TRUST_CACHE_TTL
    level_cache_ttl: float = LEVEL_CACHE_TTL
    referral_cache_ttl: float = REFERRAL_CACHE_TTL
    challenge_cache_ttl: float = CHALLENGE_CACHE_TTL

    # Referrals
    referral_page_size: int = DEFAULT_REFERRAL_PAGE_SIZE
    referral_base_url: str = "http://localhost:3000"

    # Trust
    trust_history_limit: int = TRUST_HISTORY_LIMIT

    # Notifications
    webhook_username: str = "Rewards"


def load_config(path: str | Path = "config.yaml") -> RewardTrackConfig:
    """Read *path* and return a :class:`RewardTrackConfig` instance.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    ValueError
        If a value has the wrong type or a number is not positive.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example to config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    values: dict = {}
    for f in fields(RewardTrackConfig):
        if raw.get(f.name) is None:
            continue
        caster = type(f.default)
        try:
            values[f.name] = caster(raw[f.name])
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid value for {f.name!r}: {raw[f.name]!r}") from exc
        if caster in (int, float) and values[f.name] <= 0:
            raise ValueError(f"{f.name!r} must be positive, got {values[f.name]!r}")

    return RewardTrackConfig(**values)
