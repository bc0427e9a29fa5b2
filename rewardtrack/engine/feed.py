"""
rewardtrack.engine.feed — Row Change Feed over PG LISTEN/NOTIFY
================================================================

Delivers ``{table, type, old, new}`` row-change events to subscribers whose
filter matches the row (``new[column] == value``).

Events reach the feed two ways:

* **PostgreSQL** — triggers installed by
  :func:`rewardtrack.database.engine.install_change_triggers` NOTIFY on
  :data:`CHANGE_NOTIFY_CHANNEL`; a background thread LISTENs and hands each
  event to the event loop.
* **In-process** — ``await feed.dispatch(event)``, used on dialects without
  NOTIFY and in tests.

Delivery is at-least-once; subscribers must tolerate duplicates.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import select as _select
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from rewardtrack.database.engine import CHANGE_NOTIFY_CHANNEL

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

ChangeHandler = Callable[["ChangeEvent"], Awaitable[None]]
ErrorHandler = Callable[[Exception], None]

VALID_CHANGE_TYPES: frozenset[str] = frozenset({"INSERT", "UPDATE"})


# ---------------------------------------------------------------------------
# ChangeEvent — one row-level change
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """A row change pushed by the store."""

    table: str
    type: str
    new: dict[str, Any]
    old: dict[str, Any] | None = None

    @property
    def key(self) -> str:
        """Stable identity of this logical event (used for de-duplication)."""
        return json.dumps(
            [self.table, self.type, self.old, self.new],
            sort_keys=True,
            default=str,
        )

    @classmethod
    def from_payload(cls, raw_payload: str) -> ChangeEvent:
        """Parse a NOTIFY payload.

        Raises
        ------
        ValueError
            If the payload is not JSON or is missing ``table``/``type``/``new``.
        """
        try:
            data = json.loads(raw_payload)
        except (json.JSONDecodeError, TypeError) as exc:
            raise ValueError(f"Change payload is not JSON: {raw_payload!r}") from exc

        if not isinstance(data, dict):
            raise ValueError(f"Change payload must be an object: {raw_payload!r}")
        table = data.get("table")
        change_type = str(data.get("type") or "").upper()
        new = data.get("new")
        if not table or change_type not in VALID_CHANGE_TYPES or not isinstance(new, dict):
            raise ValueError(f"Malformed change payload: {raw_payload!r}")
        old = data.get("old")
        return cls(
            table=table,
            type=change_type,
            new=new,
            old=old if isinstance(old, dict) else None,
        )


# ---------------------------------------------------------------------------
# Subscription — handle returned by ChangeFeed.subscribe()
# ---------------------------------------------------------------------------
@dataclass(eq=False)
class Subscription:
    table: str
    column: str
    value: Any
    handler: ChangeHandler
    on_error: ErrorHandler | None = None
    active: bool = True
    _feed: ChangeFeed | None = field(default=None, repr=False)

    def matches(self, event: ChangeEvent) -> bool:
        if not self.active or event.table != self.table:
            return False
        return str(event.new.get(self.column)) == str(self.value)

    def unsubscribe(self) -> None:
        """Stop receiving events.  Idempotent."""
        self.active = False
        if self._feed is not None:
            self._feed._remove(self)
            self._feed = None


# ---------------------------------------------------------------------------
# ChangeFeed
# ---------------------------------------------------------------------------
class ChangeFeed:
    """Publish/subscribe channel of row changes filtered per subscriber.

    Usage::

        feed = ChangeFeed(engine)
        feed.start_listener(asyncio.get_running_loop())

        sub = feed.subscribe("user_challenges", "user_id", user_id, handler)
        ...
        sub.unsubscribe()
        feed.stop_listener()
    """

    def __init__(self, engine: Engine | None = None) -> None:
        self._engine = engine
        self._lock = threading.Lock()
        self._subscriptions: list[Subscription] = []

        self._listener_healthy: bool = False
        self._listener_failed: bool = False
        self._listener_thread: threading.Thread | None = None
        self._shutdown_event = threading.Event()
        self._event_loop: asyncio.AbstractEventLoop | None = None

    # -------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------
    def subscribe(
        self,
        table: str,
        column: str,
        value: Any,
        handler: ChangeHandler,
        *,
        on_error: ErrorHandler | None = None,
    ) -> Subscription:
        """Register *handler* for changes to *table* rows where ``column == value``."""
        sub = Subscription(
            table=table,
            column=column,
            value=value,
            handler=handler,
            on_error=on_error,
            _feed=self,
        )
        with self._lock:
            self._subscriptions.append(sub)
        logger.debug("Subscribed to %s where %s=%s", table, column, value)
        return sub

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    @property
    def subscription_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    # -------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------
    async def dispatch(self, event: ChangeEvent) -> int:
        """Deliver *event* to every matching subscriber.

        Handler exceptions are logged and do not stop delivery to the
        remaining subscribers.  Returns the number of handlers invoked.
        """
        with self._lock:
            targets = [s for s in self._subscriptions if s.matches(event)]

        for sub in targets:
            try:
                await sub.handler(event)
            except Exception:
                logger.exception(
                    "Change handler failed for %s %s", event.type, event.table,
                )
        return len(targets)

    def _dispatch_payload(self, raw_payload: str) -> None:
        """Parse a NOTIFY payload and schedule dispatch on the event loop."""
        try:
            event = ChangeEvent.from_payload(raw_payload)
        except ValueError:
            logger.warning("Ignoring malformed change payload: %s", raw_payload)
            return

        loop = self._event_loop
        if loop is None or loop.is_closed():
            logger.warning(
                "Cannot dispatch %s on %s: no event loop available",
                event.type, event.table,
            )
            return

        asyncio.run_coroutine_threadsafe(self.dispatch(event), loop)

    def _fail_subscriptions(self, exc: Exception) -> None:
        """Tell every subscriber that live updates have stopped."""
        with self._lock:
            targets = list(self._subscriptions)
        for sub in targets:
            sub.unsubscribe()
            if sub.on_error is None:
                continue
            loop = self._event_loop
            if loop is not None and not loop.is_closed():
                loop.call_soon_threadsafe(sub.on_error, exc)
            else:
                sub.on_error(exc)

    # -------------------------------------------------------------------
    # PG LISTEN thread
    # -------------------------------------------------------------------
    @property
    def listener_healthy(self) -> bool:
        """Return True if the LISTEN thread is alive and connected."""
        return self._listener_healthy and not self._listener_failed

    @property
    def listener_failed(self) -> bool:
        """Return True if the listener exhausted reconnect attempts."""
        return self._listener_failed

    def stop_listener(self) -> None:
        """Signal the listener thread to stop and wait for it to exit."""
        self._shutdown_event.set()
        if self._listener_thread is not None and self._listener_thread.is_alive():
            self._listener_thread.join(timeout=5)
            logger.info("PG NOTIFY listener thread stopped")

    def start_listener(self, loop: asyncio.AbstractEventLoop) -> None:
        """Start a background thread that LISTENs on the change channel.

        The thread uses a raw psycopg2 connection + select() so the event
        loop is never blocked, and reconnects with exponential backoff +
        jitter.  After ``max_reconnect_attempts`` failures every subscriber
        receives its ``on_error`` callback and live updates stop.
        """
        if self._engine is None:
            raise RuntimeError("ChangeFeed needs an engine to LISTEN")

        import psycopg2

        self._event_loop = loop
        self._shutdown_event.clear()

        max_backoff = 60.0
        base_backoff = 1.0
        max_reconnect_attempts = 10

        def _listen_thread() -> None:
            # str(engine.url) masks the password; psycopg2 needs the real one.
            raw_url = self._engine.url.render_as_string(hide_password=False)
            dsn = raw_url.replace("postgresql+psycopg2://", "postgresql://")
            attempt = 0

            while not self._shutdown_event.is_set():
                conn = None
                try:
                    conn = psycopg2.connect(dsn)
                    conn.set_isolation_level(0)  # autocommit
                    cur = conn.cursor()
                    cur.execute(f"LISTEN {CHANGE_NOTIFY_CHANNEL};")
                    logger.info("PG LISTEN started on channel '%s'", CHANGE_NOTIFY_CHANNEL)

                    attempt = 0
                    self._listener_healthy = True

                    while not self._shutdown_event.is_set():
                        if _select.select([conn], [], [], 5.0) == ([], [], []):
                            continue
                        conn.poll()
                        while conn.notifies:
                            notify = conn.notifies.pop(0)
                            logger.debug("NOTIFY received: %s", notify.payload)
                            try:
                                self._dispatch_payload(notify.payload or "")
                            except Exception:
                                logger.exception(
                                    "Error handling NOTIFY payload: %s", notify.payload,
                                )

                except Exception as exc:
                    self._listener_healthy = False
                    attempt += 1

                    if attempt >= max_reconnect_attempts:
                        logger.critical(
                            "PG LISTEN exhausted %d retries. "
                            "Live tracker updates disabled.",
                            max_reconnect_attempts,
                        )
                        self._listener_failed = True
                        self._fail_subscriptions(exc)
                        break

                    backoff = min(base_backoff * (2 ** (attempt - 1)), max_backoff)
                    wait = backoff + random.uniform(0, backoff * 0.5)
                    logger.exception(
                        "PG LISTEN connection lost (attempt %d/%d). "
                        "Reconnecting in %.1fs…",
                        attempt, max_reconnect_attempts, wait,
                    )
                    if self._shutdown_event.wait(timeout=wait):
                        break
                finally:
                    if conn is not None:
                        try:
                            conn.close()
                        except Exception:
                            logger.debug("Error closing LISTEN connection", exc_info=True)

        thread = threading.Thread(
            target=_listen_thread, daemon=True, name="pg-change-listener",
        )
        self._listener_thread = thread
        thread.start()
        logger.info("PG change listener thread started")
