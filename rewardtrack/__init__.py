"""
RewardTrack — Rewards Progression & Tracking Engine
====================================================
Computes a user's trust score, reward level, referral standing and
challenge completion, keeps each snapshot in sync with server-side changes
pushed over PostgreSQL LISTEN/NOTIFY, and guards reward issuance so a
reward can be claimed once only.

Package layout::

    rewardtrack/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Level table, referral tiers, challenge catalog
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine, session helper, NOTIFY triggers
    │   └── models.py      # ORM models (6 tables)
    ├── engine/
    │   ├── progression.py # Snapshot types + pure derived calculations
    │   ├── cache.py       # TTL snapshot cache
    │   └── feed.py        # Row change feed (PG LISTEN/NOTIFY + in-process)
    ├── services/
    │   ├── trust_service.py      # Trust score + journal persistence
    │   ├── level_service.py      # Earnings ledger + level persistence
    │   ├── referral_service.py   # Referral stats, pages, code issuance
    │   ├── challenge_service.py  # Progress upserts + guarded claims
    │   ├── notifier.py           # Toast surface (log / Discord webhook)
    │   └── embeds.py             # Discord embed builders
    └── trackers/
        ├── base.py        # ReactiveTracker + error taxonomy
        ├── trust.py       # TrustTracker
        ├── level.py       # LevelTracker
        ├── referral.py    # ReferralTracker
        ├── challenges.py  # ChallengeTracker
        └── suite.py       # RewardsSuite (all four for one user)
"""

__version__ = "0.1.0"
