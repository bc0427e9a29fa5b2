"""
rewardtrack.trackers.referral — Referral Tracker
================================================

Aggregate referral stats, the user's active referral code, and a paginated
newest-first list of referrals.

Push INSERT/UPDATE events on ``referral_tracking`` are applied to the
current snapshot as deltas (prepend + counters, replace + counter deltas)
instead of a full reload, and the pagination offset moves with prepends so
``load_more()`` never skips or repeats a row.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import replace

from rewardtrack.constants import (
    DEFAULT_REFERRAL_PAGE_SIZE,
    REFERRAL_CACHE_TTL,
    ReferralTierInfo,
)
from rewardtrack.database.engine import run_db
from rewardtrack.database.models import ReferralStatus
from rewardtrack.engine.feed import ChangeEvent
from rewardtrack.engine.progression import (
    ReferralRecord,
    ReferralStats,
    get_next_tier_info,
    get_tier_info,
    progress_to_next_tier,
    referral_from_mapping,
    restat,
)
from rewardtrack.services import referral_service
from rewardtrack.services.embeds import TOAST_ICONS
from rewardtrack.services.referral_service import ReferralPage
from rewardtrack.trackers.base import FetchError, ReactiveTracker

logger = logging.getLogger(__name__)

ClipboardWriter = Callable[[str], None]

_ACTIVE = ReferralStatus.ACTIVE.value


class ReferralTracker(ReactiveTracker[ReferralPage]):
    name = "referral stats"
    table = "referral_tracking"
    filter_column = "referrer_id"
    default_ttl = REFERRAL_CACHE_TTL

    def __init__(
        self,
        *args,
        page_size: int = DEFAULT_REFERRAL_PAGE_SIZE,
        base_url: str = "",
        clipboard: ClipboardWriter | None = None,
        **kwargs,
    ) -> None:
        super().__init__(*args, **kwargs)
        self.page_size = page_size
        self.base_url = base_url.rstrip("/")
        self._clipboard = clipboard

        self._referrals: list[ReferralRecord] = []
        self._offset = 0
        self._code: str | None = None
        # Reused across retries until a generate request succeeds
        self._code_request_id: str | None = None

    async def _load(self) -> ReferralPage:
        return await run_db(
            referral_service.load_referral_page, self.engine, self.user_id, self.page_size,
        )

    def _after_load(self, data: ReferralPage) -> None:
        self._referrals = list(data.referrals)
        self._offset = len(data.referrals)
        self._code = data.referral_code

    async def fetch(self, skip_cache: bool = False) -> ReferralStats | None:
        page = await self._fetch(skip_cache=skip_cache)
        return page.stats if page is not None else None

    # -------------------------------------------------------------------
    # Snapshot accessors
    # -------------------------------------------------------------------
    @property
    def stats(self) -> ReferralStats | None:
        return self._data.stats if self._data is not None else None

    @property
    def referrals(self) -> list[ReferralRecord]:
        return list(self._referrals)

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def referral_code(self) -> str | None:
        return self._code

    @property
    def referral_link(self) -> str | None:
        if not self._code:
            return None
        return f"{self.base_url}/join?ref={self._code}"

    @property
    def has_more(self) -> bool:
        stats = self.stats
        return stats is not None and self._offset < stats.total_referrals

    @property
    def tier_info(self) -> ReferralTierInfo | None:
        stats = self.stats
        return get_tier_info(stats.tier) if stats is not None else None

    @property
    def next_tier_info(self) -> ReferralTierInfo | None:
        stats = self.stats
        return get_next_tier_info(stats.tier) if stats is not None else None

    @property
    def progress_to_next_tier(self) -> int:
        return progress_to_next_tier(self.stats)

    # -------------------------------------------------------------------
    # Pagination
    # -------------------------------------------------------------------
    async def load_more(self) -> list[ReferralRecord]:
        """Append the next page; returns the records that were added."""
        if not self.has_more or self.is_loading:
            return []
        try:
            page = await run_db(
                referral_service.list_referrals,
                self.engine, self.user_id, self.page_size, self._offset,
            )
        except Exception as exc:
            logger.exception("Failed to load more referrals for %s", self.user_id)
            self._error = FetchError(f"Failed to load more referrals: {exc}")
            return []

        self._offset += len(page)
        known = {r.id for r in self._referrals}
        added = [r for r in page if r.id not in known]
        self._referrals.extend(added)
        return added

    # -------------------------------------------------------------------
    # Code actions
    # -------------------------------------------------------------------
    def copy_referral_code(self) -> bool:
        code = self._code
        if not code:
            return False
        if self._clipboard is None:
            logger.warning("No clipboard available to copy referral code")
            return False
        try:
            self._clipboard(code)
        except Exception:
            logger.exception("Clipboard write failed")
            self.notify("Error", "Could not copy referral code", destructive=True)
            return False
        self.notify("Copied!", "Referral code copied to clipboard")
        return True

    async def generate_new_code(self) -> str | None:
        """Issue a fresh code; safe to retry after a failure."""
        if self._code_request_id is None:
            self._code_request_id = uuid.uuid4().hex

        with self._updating():
            try:
                code = await run_db(
                    referral_service.issue_referral_code,
                    self.engine, self.user_id, self._code_request_id,
                )
            except Exception as exc:
                self._write_failed(exc, "Failed to generate referral code")
                return None

        self._code_request_id = None
        self._code = code
        if self._data is not None:
            self._patch(replace(self._data, referral_code=code))
        else:
            self._mark_dirty()
        self.notify("New Code Generated", f"Your new referral code is {code}")
        return code

    # -------------------------------------------------------------------
    # Push
    # -------------------------------------------------------------------
    async def handle_change(self, event: ChangeEvent) -> None:
        record = referral_from_mapping(event.new)
        if record.referrer_id != str(self.user_id):
            return
        if event.type == "INSERT":
            self._apply_insert(record)
        elif event.type == "UPDATE":
            self._apply_update(record, event.old)

    def _index_of(self, referral_id: int) -> int | None:
        for idx, existing in enumerate(self._referrals):
            if existing.id == referral_id:
                return idx
        return None

    def _apply_insert(self, record: ReferralRecord) -> None:
        if self._index_of(record.id) is not None:
            logger.debug("Referral %d already listed; insert ignored", record.id)
            return

        self._referrals.insert(0, record)
        self._offset += 1

        page = self._data
        if page is not None:
            stats = page.stats
            self._patch(replace(page, stats=restat(
                stats,
                total_referrals=stats.total_referrals + 1,
                active_referrals=stats.active_referrals + (record.status == _ACTIVE),
                total_earnings=stats.total_earnings + record.earnings_total,
                earnings_this_month=stats.earnings_this_month + record.earnings_this_month,
                total_auto_shared=stats.total_auto_shared + record.auto_share_total,
            )))
        else:
            self._mark_dirty()

        self.notify(
            f"{TOAST_ICONS['referral']} New Referral!",
            f"{record.referred_user_id} joined with your referral code",
        )

    def _apply_update(self, record: ReferralRecord, old: dict | None) -> None:
        idx = self._index_of(record.id)
        if idx is not None:
            previous = self._referrals[idx]
            self._referrals[idx] = record
        elif old is not None:
            previous = referral_from_mapping(old)
        else:
            previous = None

        page = self._data
        if previous is None or page is None:
            self._mark_dirty()
            return

        active_delta = (record.status == _ACTIVE) - (previous.status == _ACTIVE)
        earnings_delta = record.earnings_total - previous.earnings_total
        month_delta = record.earnings_this_month - previous.earnings_this_month
        shared_delta = record.auto_share_total - previous.auto_share_total
        if not (active_delta or earnings_delta or month_delta or shared_delta):
            self._mark_dirty()
            return

        stats = page.stats
        self._patch(replace(page, stats=restat(
            stats,
            active_referrals=max(0, stats.active_referrals + active_delta),
            total_earnings=stats.total_earnings + earnings_delta,
            earnings_this_month=stats.earnings_this_month + month_delta,
            total_auto_shared=stats.total_auto_shared + shared_delta,
        )))
