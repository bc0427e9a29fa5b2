"""
rewardtrack.database.engine — Database Connection & Async Helper
=================================================================

The trackers run on an ``asyncio`` event loop while SQLAlchemy + psycopg2 is
**synchronous**.  Every query is shipped to a worker thread through
:func:`run_db`, so a slow read never stalls push-event handling:

    1. A tracker method is awaited (async world).
    2. It calls ``await run_db(some_service_function, engine, user_id)``.
    3. ``run_db`` hands the function to ``asyncio.to_thread()``.
    4. The result is awaited back on the loop.

Usage::

    from rewardtrack.database.engine import create_db_engine, init_db, run_db

    engine = create_db_engine()          # reads DATABASE_URL from .env
    init_db(engine)                      # CREATE TABLE IF NOT EXISTS + triggers

    snapshot = await run_db(trust_service.load_trust_snapshot, engine, user_id)
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from contextlib import contextmanager
from typing import ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine, text
from sqlalchemy.orm import Session

from rewardtrack.database.models import Base

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

# PG channel the change triggers publish on; ChangeFeed LISTENs here.
CHANGE_NOTIFY_CHANNEL = "rewardtrack_changes"

# Tables whose row changes are pushed to the trackers.
FEED_TABLES: tuple[str, ...] = (
    "user_rewards_summary",
    "referral_tracking",
    "user_challenges",
)

_NOTIFY_FUNCTION_SQL = f"""
CREATE OR REPLACE FUNCTION rewardtrack_notify_change() RETURNS trigger AS $$
BEGIN
    PERFORM pg_notify(
        '{CHANGE_NOTIFY_CHANNEL}',
        json_build_object(
            'table', TG_TABLE_NAME,
            'type', TG_OP,
            'old', CASE WHEN TG_OP = 'UPDATE' THEN row_to_json(OLD) END,
            'new', row_to_json(NEW)
        )::text
    );
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;
"""


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine(url: str | None = None) -> Engine:
    """Build a SQLAlchemy :class:`Engine` from *url* or ``DATABASE_URL``.

    Raises
    ------
    RuntimeError
        If neither *url* nor ``DATABASE_URL`` is set.
    """
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and set a valid PostgreSQL URL."
        )

    pool_opts: dict = {}
    if not url.startswith("sqlite"):
        pool_opts = {
            "pool_size": 5,
            "max_overflow": 10,
            "pool_timeout": 10,
            "pool_recycle": 3600,
        }
    engine = create_engine(url, echo=False, pool_pre_ping=True, **pool_opts)
    logger.info("Database engine created → %s", engine.url.host)
    return engine


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine) -> None:
    """Create all tables, then install the change-feed triggers.

    Safe to call on every startup.  Triggers are PostgreSQL-only; on any
    other dialect the feed is driven in-process via ``ChangeFeed.dispatch``.
    """
    Base.metadata.create_all(engine)
    logger.info("Database tables verified / created.")

    if engine.dialect.name == "postgresql":
        install_change_triggers(engine)


def install_change_triggers(engine: Engine) -> None:
    """(Re)create the row-change NOTIFY triggers on every feed table."""
    with engine.begin() as conn:
        conn.execute(text(_NOTIFY_FUNCTION_SQL))
        for table in FEED_TABLES:
            trigger = f"{table}_notify_change"
            conn.execute(text(f"DROP TRIGGER IF EXISTS {trigger} ON {table}"))
            conn.execute(text(
                f"CREATE TRIGGER {trigger} AFTER INSERT OR UPDATE ON {table} "
                "FOR EACH ROW EXECUTE FUNCTION rewardtrack_notify_change()"
            ))
    logger.info("Change triggers installed on %d tables", len(FEED_TABLES))


# ---------------------------------------------------------------------------
# Session helper
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine):
    """Yield a :class:`Session` that commits on success and rolls back on error.

    Objects stay usable after the block (``expire_on_commit=False``), which is
    what the service layer relies on when it converts rows to snapshots.
    """
    session = Session(engine, expire_on_commit=False)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a **synchronous** database function on a background thread.

    Every DB call made by a tracker goes through this wrapper::

        result = await run_db(my_sync_db_function, engine, user_id)
    """
    return await asyncio.to_thread(func, *args, **kwargs)
