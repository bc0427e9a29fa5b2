"""
rewardtrack.trackers.base — Reactive Cached Tracker
====================================================

Shared shape of every tracker:

* an owned :class:`SnapshotCache` with a per-tracker TTL,
* a change-feed subscription filtered to the current user,
* push handlers that patch the **current** snapshot (read, patch, write
  back) and invalidate the cache,
* ``refresh()`` which always bypasses the cache.

State machine::

    UNINITIALIZED ─▶ LOADING ─▶ READY ─▶ LOADING (refresh) ─▶ READY
                        │
                        └──▶ ERROR   (previous snapshot is kept)

Consumers rely on five fields: ``data``, ``is_loading``, ``is_updating``,
``error`` and ``refresh()``.  Reads never raise past the tracker; writes
return ``bool``.
"""

from __future__ import annotations

import enum
import logging
import time
from collections import OrderedDict
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, ClassVar, Generic, TypeVar

from rewardtrack.engine.cache import Clock, SnapshotCache
from rewardtrack.services.notifier import LogNotifier, Notifier

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from rewardtrack.engine.feed import ChangeEvent, ChangeFeed, Subscription

logger = logging.getLogger(__name__)

T = TypeVar("T")

# How many recent event keys a tracker remembers for duplicate suppression
SEEN_EVENTS_CAPACITY = 256

# Extra reads a first load makes when pushes keep landing while it runs
MAX_DIRTY_RELOADS = 2


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------
class TrackerError(Exception):
    """Base class for errors surfaced through ``tracker.error``."""


class FetchError(TrackerError):
    """A read from the store failed; the previous snapshot is still shown."""


class WriteError(TrackerError):
    """A mutation was rejected; nothing was applied."""


class SubscriptionError(TrackerError):
    """The change feed failed; live updates stopped until ``start()``."""


class TrackerState(enum.StrEnum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


# ---------------------------------------------------------------------------
# ReactiveTracker
# ---------------------------------------------------------------------------
class ReactiveTracker(Generic[T]):
    """Base class for the four trackers.

    Subclasses set :attr:`name`, :attr:`table`, :attr:`default_ttl` (and
    :attr:`filter_column` when the user column is not ``user_id``) and
    implement :meth:`_load` and :meth:`handle_change`.
    """

    name: ClassVar[str] = "tracker"
    table: ClassVar[str] = ""
    filter_column: ClassVar[str] = "user_id"
    default_ttl: ClassVar[float] = 30.0

    def __init__(
        self,
        engine: Engine,
        user_id: str,
        *,
        feed: ChangeFeed | None = None,
        notifier: Notifier | None = None,
        ttl: float | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self.engine = engine
        self.user_id = user_id
        self._feed = feed
        self._notifier = notifier or LogNotifier()
        self._cache: SnapshotCache[T] = SnapshotCache(
            self.default_ttl if ttl is None else ttl, clock,
        )

        self._data: T | None = None
        self._state = TrackerState.UNINITIALIZED
        self._is_updating = False
        self._error: TrackerError | None = None

        self._subscription: Subscription | None = None
        self._closed = False
        # Bumped by every observed change; a fetch that overlaps one is not cached
        self._revision = 0
        # Bumped by every read that goes to the store; only the newest is kept
        self._generation = 0
        self._seen_events: OrderedDict[str, None] = OrderedDict()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} user={self.user_id!r} state={self._state}>"

    # -------------------------------------------------------------------
    # Consumer contract
    # -------------------------------------------------------------------
    @property
    def data(self) -> T | None:
        return self._data

    @property
    def state(self) -> TrackerState:
        return self._state

    @property
    def is_loading(self) -> bool:
        return self._state is TrackerState.LOADING

    @property
    def is_updating(self) -> bool:
        return self._is_updating

    @property
    def error(self) -> TrackerError | None:
        return self._error

    @property
    def cache(self) -> SnapshotCache[T]:
        return self._cache

    @property
    def is_subscribed(self) -> bool:
        return self._subscription is not None and self._subscription.active

    async def fetch(self, skip_cache: bool = False) -> T | None:
        """Return the cached snapshot, or load it when stale or skipped.

        On failure returns None, sets :attr:`error` and keeps :attr:`data`.
        """
        return await self._fetch(skip_cache=skip_cache)

    async def refresh(self) -> T | None:
        """Drop the cache entry and re-read from the source of truth."""
        self._cache.invalidate()
        return await self._fetch(skip_cache=True)

    # -------------------------------------------------------------------
    # Fetch
    # -------------------------------------------------------------------
    async def _load(self) -> T:
        raise NotImplementedError

    def _after_load(self, data: T) -> None:
        """Hook run after a successful load from the store."""

    async def _fetch(self, *, skip_cache: bool = False) -> T | None:
        cached = self._cache.get(skip_cache=skip_cache)
        if cached is not None:
            self._data = cached
            self._state = TrackerState.READY
            return cached

        self._state = TrackerState.LOADING
        self._error = None
        self._generation += 1
        generation = self._generation
        reloads = 0
        while True:
            revision = self._revision
            try:
                data = await self._load()
            except Exception as exc:
                logger.exception("Failed to fetch %s for %s", self.name, self.user_id)
                if self._closed or generation != self._generation:
                    return None
                self._error = FetchError(f"Failed to fetch {self.name}: {exc}")
                self._state = TrackerState.ERROR
                return None

            if self._closed:
                logger.debug("Discarding %s fetch for stopped tracker", self.name)
                return None
            if generation != self._generation:
                # A newer read started after this one; it owns the snapshot.
                logger.debug("Discarding superseded %s fetch", self.name)
                return data
            if revision == self._revision:
                break
            if self._data is not None:
                # A push patch landed while the read was in flight; keep the
                # patched snapshot and leave the cache empty so the next read
                # goes back to the store.
                self._state = TrackerState.READY
                logger.debug("%s changed during fetch; result not cached", self.name)
                return data
            if reloads >= MAX_DIRTY_RELOADS:
                self._state = TrackerState.READY
                self._data = data
                self._after_load(data)
                return data
            reloads += 1
            logger.debug("%s changed during first load; reloading", self.name)

        self._state = TrackerState.READY
        self._cache.store(data)
        self._data = data
        self._after_load(data)
        return data

    # -------------------------------------------------------------------
    # Change feed
    # -------------------------------------------------------------------
    def start(self) -> None:
        """Subscribe to the change feed for the current user."""
        self._closed = False
        if self._feed is None or self.is_subscribed:
            return
        self._subscription = self._feed.subscribe(
            self.table,
            self.filter_column,
            self.user_id,
            self._on_change,
            on_error=self._on_feed_error,
        )
        logger.debug("%s subscribed for %s", self.name, self.user_id)

    def stop(self) -> None:
        """Tear down the subscription; in-flight fetch results are dropped."""
        self._closed = True
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    async def __aenter__(self):
        self.start()
        await self._fetch()
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.stop()

    async def _on_change(self, event: ChangeEvent) -> None:
        if self._closed:
            return
        key = event.key
        if key in self._seen_events:
            logger.debug("Duplicate %s event on %s ignored", event.type, event.table)
            return
        self._seen_events[key] = None
        while len(self._seen_events) > SEEN_EVENTS_CAPACITY:
            self._seen_events.popitem(last=False)

        await self.handle_change(event)

    async def handle_change(self, event: ChangeEvent) -> None:
        raise NotImplementedError

    def _on_feed_error(self, exc: Exception) -> None:
        logger.error("Change feed failed for %s (%s): %s", self.name, self.user_id, exc)
        self._error = SubscriptionError(f"Real-time updates stopped: {exc}")
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def _mark_dirty(self) -> None:
        """Record that the store changed; in-flight reads will not be cached."""
        self._revision += 1
        self._cache.invalidate()

    def _patch(self, data: T) -> None:
        """Write back a patched snapshot and invalidate the cache entry."""
        self._data = data
        self._mark_dirty()

    # -------------------------------------------------------------------
    # Writes & notifications
    # -------------------------------------------------------------------
    @contextmanager
    def _updating(self) -> Iterator[None]:
        self._is_updating = True
        self._error = None
        try:
            yield
        finally:
            self._is_updating = False

    def _write_failed(self, exc: Exception, message: str) -> None:
        logger.exception("%s (%s)", message, self.user_id, exc_info=exc)
        detail = str(exc) or message
        self._error = WriteError(detail)
        self.notify("Error", detail, destructive=True)

    def notify(self, title: str, description: str, *, destructive: bool = False) -> None:
        try:
            self._notifier.notify(title, description, destructive=destructive)
        except Exception:
            logger.exception("Notifier failed for %r", title)
