"""
tests/test_feed.py — ChangeFeed Unit Tests
===========================================

Payload parsing, subscription filtering, in-process dispatch, NOTIFY
routing onto the event loop (without a real PG connection), and the
listener failure path.
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import MagicMock

import pytest

from rewardtrack.engine.feed import ChangeEvent, ChangeFeed


def run_async(coro):
    """Helper to run an async function synchronously in tests."""
    return asyncio.get_event_loop_policy().new_event_loop().run_until_complete(coro)


def _payload(**overrides) -> str:
    body = {
        "table": "user_challenges",
        "type": "UPDATE",
        "old": {"user_id": "u1", "progress": 1},
        "new": {"user_id": "u1", "progress": 2},
    }
    body.update(overrides)
    return json.dumps(body)


class Recorder:
    def __init__(self):
        self.events: list[ChangeEvent] = []

    async def __call__(self, event: ChangeEvent) -> None:
        self.events.append(event)


# ---------------------------------------------------------------------------
# ChangeEvent.from_payload
# ---------------------------------------------------------------------------
class TestChangeEventParsing:
    def test_parses_update(self):
        event = ChangeEvent.from_payload(_payload())
        assert event.table == "user_challenges"
        assert event.type == "UPDATE"
        assert event.old == {"user_id": "u1", "progress": 1}
        assert event.new["progress"] == 2

    def test_insert_has_no_old(self):
        event = ChangeEvent.from_payload(_payload(type="insert", old=None))
        assert event.type == "INSERT"
        assert event.old is None

    @pytest.mark.parametrize(
        "raw",
        [
            "not json",
            json.dumps([1, 2, 3]),
            _payload(type="DELETE"),
            _payload(new=None),
            _payload(table=""),
        ],
    )
    def test_malformed_payload_rejected(self, raw):
        with pytest.raises(ValueError):
            ChangeEvent.from_payload(raw)

    def test_identical_events_share_a_key(self):
        a = ChangeEvent.from_payload(_payload())
        b = ChangeEvent.from_payload(_payload())
        c = ChangeEvent.from_payload(_payload(new={"user_id": "u1", "progress": 3}))
        assert a.key == b.key
        assert a.key != c.key


# ---------------------------------------------------------------------------
# Subscriptions & dispatch
# ---------------------------------------------------------------------------
class TestDispatch:
    def test_filter_matches_table_and_column(self, feed):
        mine, other_user, other_table = Recorder(), Recorder(), Recorder()
        feed.subscribe("user_challenges", "user_id", "u1", mine)
        feed.subscribe("user_challenges", "user_id", "u2", other_user)
        feed.subscribe("referral_tracking", "referrer_id", "u1", other_table)

        delivered = run_async(feed.dispatch(ChangeEvent.from_payload(_payload())))

        assert delivered == 1
        assert len(mine.events) == 1
        assert other_user.events == []
        assert other_table.events == []

    def test_filter_compares_as_strings(self, feed):
        rec = Recorder()
        feed.subscribe("user_challenges", "user_id", 42, rec)
        event = ChangeEvent("user_challenges", "INSERT", {"user_id": "42"})
        run_async(feed.dispatch(event))
        assert len(rec.events) == 1

    def test_unsubscribe_stops_delivery(self, feed):
        rec = Recorder()
        sub = feed.subscribe("user_challenges", "user_id", "u1", rec)
        sub.unsubscribe()
        sub.unsubscribe()  # idempotent

        run_async(feed.dispatch(ChangeEvent.from_payload(_payload())))
        assert rec.events == []
        assert feed.subscription_count == 0

    def test_failing_handler_does_not_block_others(self, feed):
        async def boom(event):
            raise RuntimeError("handler exploded")

        rec = Recorder()
        feed.subscribe("user_challenges", "user_id", "u1", boom)
        feed.subscribe("user_challenges", "user_id", "u1", rec)

        delivered = run_async(feed.dispatch(ChangeEvent.from_payload(_payload())))
        assert delivered == 2
        assert len(rec.events) == 1


# ---------------------------------------------------------------------------
# NOTIFY routing (no PG connection)
# ---------------------------------------------------------------------------
class TestNotifyRouting:
    def test_payload_scheduled_on_loop(self, feed):
        rec = Recorder()
        feed.subscribe("user_challenges", "user_id", "u1", rec)
        loop = asyncio.new_event_loop()
        try:
            feed._event_loop = loop
            feed._dispatch_payload(_payload())
            # Let the threadsafe-scheduled dispatch run
            loop.run_until_complete(asyncio.sleep(0.01))
        finally:
            loop.close()
        assert len(rec.events) == 1

    def test_malformed_payload_ignored(self, feed):
        rec = Recorder()
        feed.subscribe("user_challenges", "user_id", "u1", rec)
        feed._event_loop = MagicMock()
        feed._dispatch_payload("{broken")
        feed._event_loop.assert_not_called()
        assert rec.events == []

    def test_no_loop_drops_event(self, feed):
        feed._dispatch_payload(_payload())  # no exception


# ---------------------------------------------------------------------------
# Listener health & failure
# ---------------------------------------------------------------------------
class TestListenerHealth:
    def test_initially_unhealthy(self):
        feed = ChangeFeed(MagicMock())
        assert feed.listener_healthy is False
        assert feed.listener_failed is False

    def test_start_without_engine_raises(self, feed):
        with pytest.raises(RuntimeError):
            feed.start_listener(MagicMock())

    def test_failure_notifies_and_deactivates_subscribers(self, feed):
        errors: list[Exception] = []
        sub = feed.subscribe(
            "user_challenges", "user_id", "u1", Recorder(), on_error=errors.append,
        )
        exc = ConnectionError("listener gave up")

        feed._fail_subscriptions(exc)

        assert errors == [exc]
        assert sub.active is False
        assert feed.subscription_count == 0

    def test_resubscribe_after_failure_counts_once(self, feed):
        feed.subscribe("referral_tracking", "referrer_id", "alice", Recorder())
        feed._fail_subscriptions(ConnectionError("listener gave up"))

        feed.subscribe("referral_tracking", "referrer_id", "alice", Recorder())
        assert feed.subscription_count == 1
