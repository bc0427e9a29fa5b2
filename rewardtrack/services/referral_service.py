"""
rewardtrack.services.referral_service — Referral Persistence
=============================================================

Aggregates, pagination and referral-code issuance for the Referral Tracker,
plus the write paths that create and credit referrals.

Code issuance is idempotent per ``(user_id, request_id)``: a retried request
returns the code it created the first time, and at most one code per user is
active (enforced by a partial unique index).
"""

from __future__ import annotations

import logging
import secrets
import string
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError

from rewardtrack.constants import REFERRAL_CODE_PREFIX_LEN
from rewardtrack.database.engine import get_session
from rewardtrack.database.models import ReferralCode, ReferralStatus, ReferralTracking
from rewardtrack.engine.progression import (
    ReferralRecord,
    ReferralStats,
    build_referral_stats,
    get_tier_info,
    tier_for_referrals,
)
from rewardtrack.services.level_service import credit_earnings

if TYPE_CHECKING:
    from sqlalchemy import Engine
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

_CODE_ALPHABET = string.ascii_uppercase + string.digits


@dataclass(frozen=True, slots=True)
class ReferralPage:
    """Everything a full referral fetch returns in one round trip."""

    stats: ReferralStats
    referral_code: str | None
    referrals: tuple[ReferralRecord, ...]


def _record(row: ReferralTracking) -> ReferralRecord:
    return ReferralRecord(
        id=row.id,
        referrer_id=row.referrer_id,
        referred_user_id=row.referred_user_id,
        referral_code=row.referral_code,
        status=row.status,
        earnings_total=float(row.earnings_total or 0.0),
        earnings_this_month=float(row.earnings_this_month or 0.0),
        auto_share_total=float(row.auto_share_total or 0.0),
        created_at=row.created_at,
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def _stats(session: Session, user_id: str) -> ReferralStats:
    row = session.execute(
        select(
            func.count(ReferralTracking.id),
            func.coalesce(
                func.sum(
                    case((ReferralTracking.status == ReferralStatus.ACTIVE.value, 1), else_=0)
                ),
                0,
            ),
            func.coalesce(func.sum(ReferralTracking.earnings_total), 0.0),
            func.coalesce(func.sum(ReferralTracking.earnings_this_month), 0.0),
            func.coalesce(func.sum(ReferralTracking.auto_share_total), 0.0),
        ).where(ReferralTracking.referrer_id == user_id)
    ).one()
    total, active, earnings, month, auto_shared = row
    return build_referral_stats(
        int(total or 0),
        int(active or 0),
        float(earnings or 0.0),
        float(month or 0.0),
        float(auto_shared or 0.0),
    )


def _list(session: Session, user_id: str, limit: int, offset: int) -> list[ReferralRecord]:
    rows = session.scalars(
        select(ReferralTracking)
        .where(ReferralTracking.referrer_id == user_id)
        .order_by(ReferralTracking.created_at.desc(), ReferralTracking.id.desc())
        .offset(offset)
        .limit(limit)
    ).all()
    return [_record(r) for r in rows]


def _active_code(session: Session, user_id: str) -> str | None:
    code = session.scalar(
        select(ReferralCode.code).where(
            ReferralCode.user_id == user_id, ReferralCode.active.is_(True),
        )
    )
    if code is not None:
        return code
    # Fall back to the code on the newest referral
    return session.scalar(
        select(ReferralTracking.referral_code)
        .where(ReferralTracking.referrer_id == user_id)
        .order_by(ReferralTracking.created_at.desc(), ReferralTracking.id.desc())
        .limit(1)
    )


def load_referral_stats(engine: Engine, user_id: str) -> ReferralStats:
    with get_session(engine) as session:
        return _stats(session, user_id)


def list_referrals(
    engine: Engine, user_id: str, limit: int, offset: int = 0,
) -> list[ReferralRecord]:
    """One page of the user's referrals, newest first."""
    with get_session(engine) as session:
        return _list(session, user_id, limit, offset)


def load_referral_page(engine: Engine, user_id: str, limit: int) -> ReferralPage:
    """Stats, current code and the first page of referrals."""
    with get_session(engine) as session:
        return ReferralPage(
            stats=_stats(session, user_id),
            referral_code=_active_code(session, user_id),
            referrals=tuple(_list(session, user_id, limit, 0)),
        )


def get_referral_code(engine: Engine, user_id: str) -> str | None:
    with get_session(engine) as session:
        return _active_code(session, user_id)


def verify_referral_code(engine: Engine, code: str) -> str | None:
    """Resolve a shared referral code to the referrer who owns it.

    Active issued codes win; otherwise a code already attached to a tracked
    referral still resolves, so retired codes in old links keep working.
    Returns None for unknown codes.
    """
    code = (code or "").strip().upper()
    if not code:
        return None
    with get_session(engine) as session:
        owner = session.scalar(
            select(ReferralCode.user_id).where(
                ReferralCode.code == code, ReferralCode.active.is_(True),
            )
        )
        if owner is None:
            owner = session.scalar(
                select(ReferralTracking.referrer_id)
                .where(ReferralTracking.referral_code == code)
                .limit(1)
            )
    if owner is None:
        logger.warning("Invalid referral code: %s", code)
    return owner


# ---------------------------------------------------------------------------
# Code issuance
# ---------------------------------------------------------------------------
def generate_referral_code(user_id: str) -> str:
    """``<4-char user prefix><base36 ms timestamp><5 random chars>``."""
    prefix = "".join(ch for ch in user_id.upper() if ch.isalnum())[:REFERRAL_CODE_PREFIX_LEN]
    stamp = _base36(int(time.time() * 1000))
    tail = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(5))
    return f"{prefix}{stamp}{tail}"


def _base36(value: int) -> str:
    digits = string.digits + string.ascii_uppercase
    out = ""
    while value:
        value, rem = divmod(value, 36)
        out = digits[rem] + out
    return out or "0"


def issue_referral_code(engine: Engine, user_id: str, request_id: str) -> str:
    """Issue a new active code for *user_id*, idempotent per *request_id*.

    A repeated *request_id* returns the code created by the first call.
    Otherwise the previous active code is retired and a fresh one becomes
    active, all in one transaction.
    """
    with get_session(engine) as session:
        existing = session.scalar(
            select(ReferralCode).where(
                ReferralCode.user_id == user_id,
                ReferralCode.request_id == request_id,
            )
        )
        if existing is not None:
            logger.info("Referral code request %s replayed for %s", request_id, user_id)
            return existing.code

        session.execute(
            update(ReferralCode)
            .where(ReferralCode.user_id == user_id, ReferralCode.active.is_(True))
            .values(active=False)
        )
        code = generate_referral_code(user_id)
        try:
            with session.begin_nested():   # SAVEPOINT
                session.add(ReferralCode(
                    user_id=user_id, code=code, request_id=request_id, active=True,
                ))
                session.flush()
        except IntegrityError:
            # A concurrent call with the same request id won the race
            winner = session.scalar(
                select(ReferralCode.code).where(
                    ReferralCode.user_id == user_id,
                    ReferralCode.request_id == request_id,
                )
            )
            if winner is None:
                raise
            return winner

    logger.info("Issued referral code %s for %s", code, user_id)
    return code


def _ensure_active_code(session: Session, user_id: str) -> str:
    code = session.scalar(
        select(ReferralCode.code).where(
            ReferralCode.user_id == user_id, ReferralCode.active.is_(True),
        )
    )
    if code is None:
        code = generate_referral_code(user_id)
        session.add(ReferralCode(user_id=user_id, code=code, active=True))
        session.flush()
    return code


# ---------------------------------------------------------------------------
# Referral writes
# ---------------------------------------------------------------------------
def track_referral(
    engine: Engine,
    referrer_id: str,
    referred_user_id: str,
    *,
    referral_code: str | None = None,
) -> ReferralRecord:
    """Record that *referrer_id* sponsored *referred_user_id* (pending).

    The row carries *referral_code* when the referred user arrived through
    a specific code, else the referrer's active code.
    Idempotent: tracking the same pair twice returns the existing record.

    Raises
    ------
    ValueError
        If a user tries to refer themselves.
    """
    if referrer_id == referred_user_id:
        raise ValueError("A user cannot refer themselves")

    with get_session(engine) as session:
        existing = session.scalar(
            select(ReferralTracking).where(
                ReferralTracking.referrer_id == referrer_id,
                ReferralTracking.referred_user_id == referred_user_id,
            )
        )
        if existing is not None:
            return _record(existing)

        row = ReferralTracking(
            referrer_id=referrer_id,
            referred_user_id=referred_user_id,
            referral_code=referral_code or _ensure_active_code(session, referrer_id),
            status=ReferralStatus.PENDING.value,
        )
        session.add(row)
        session.flush()
        record = _record(row)

    logger.info("Referral tracked: %s → %s", referrer_id, referred_user_id)
    return record


def track_referral_by_code(engine: Engine, code: str, referred_user_id: str) -> ReferralRecord:
    """Track a sign-up that arrived through a shared code or link.

    Raises
    ------
    LookupError
        If *code* does not resolve to a referrer.
    ValueError
        If the code belongs to *referred_user_id* itself.
    """
    referrer_id = verify_referral_code(engine, code)
    if referrer_id is None:
        raise LookupError(f"Unknown referral code: {code!r}")
    return track_referral(
        engine, referrer_id, referred_user_id, referral_code=code.strip().upper(),
    )


def set_referral_status(engine: Engine, referral_id: int, status: str) -> ReferralRecord:
    """Move a referral to *status*.

    Raises
    ------
    ValueError
        If *status* is unknown.
    LookupError
        If the referral does not exist.
    """
    try:
        status = ReferralStatus(status).value
    except ValueError:
        raise ValueError(f"Unknown referral status: {status!r}") from None

    with get_session(engine) as session:
        row = session.get(ReferralTracking, referral_id)
        if row is None:
            raise LookupError(f"Referral {referral_id} not found")
        row.status = status
        session.flush()
        return _record(row)


def record_referral_earning(
    engine: Engine, referral_id: int, base_amount: float, reason: str,
) -> float:
    """Credit the referrer a commission on *base_amount*.

    The commission rate comes from the referrer's current tier.  Returns the
    commission credited.
    """
    with get_session(engine) as session:
        row = session.get(ReferralTracking, referral_id, with_for_update=True)
        if row is None:
            raise LookupError(f"Referral {referral_id} not found")

        count = session.scalar(
            select(func.count(ReferralTracking.id)).where(
                ReferralTracking.referrer_id == row.referrer_id
            )
        ) or 0
        tier = get_tier_info(tier_for_referrals(count))
        commission = round(base_amount * tier.commission_percentage / 100, 2)

        row.earnings_total = float(row.earnings_total or 0.0) + commission
        row.earnings_this_month = float(row.earnings_this_month or 0.0) + commission
        credit_earnings(
            session,
            row.referrer_id,
            commission,
            activity_type="referral_activity",
            source_type="referral",
            source_id=str(row.id),
            description=f"{reason} ({tier.commission_percentage:g}% commission)",
        )

    logger.info(
        "Referral %d earned %.2f for %s (%s)", referral_id, commission, row.referrer_id, reason,
    )
    return commission
