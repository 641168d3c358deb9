# ═══════════════════════════════════════════════════════════════
# Nova: Revenue Tracking & Admin Stats Cache
# Append-only transaction log + single-row aggregate cache
# ═══════════════════════════════════════════════════════════════
import logging
from datetime import datetime
from sqlalchemy import func, and_, select
from sqlalchemy.orm import Session
from .database import (
    User, Tier, Withdrawal, RevenueTracking, AdminStatsCache,
    PENDING, TX_SUBSCRIPTION, TX_REFERRAL_PAYOUT, TX_COMPLETED
)
from .errors import InvalidArgument, NotFound
from .ledger import atomic, money, retry_on_contention

logger = logging.getLogger(__name__)

TRANSACTION_TYPES = (TX_SUBSCRIPTION, TX_REFERRAL_PAYOUT)
STATS_ROW_ID = 1


# ── Transaction log ───────────────────────────────────────────

def record_transaction(
    db:               Session,
    user_id:          int,
    tier_id:          int,
    amount,
    transaction_type: str,
    status:           str = TX_COMPLETED,
) -> RevenueTracking:
    """Append one log entry inside the caller's transaction."""
    if transaction_type not in TRANSACTION_TYPES:
        raise InvalidArgument(f"Unknown transaction type: {transaction_type}")
    if tier_id is not None and db.get(Tier, tier_id) is None:
        raise InvalidArgument(f"Invalid tier ID: {tier_id}. Tier does not exist.")
    if db.get(User, user_id) is None:
        raise NotFound(f"User {user_id} not found")

    entry = RevenueTracking(
        user_id          = user_id,
        tier_id          = tier_id,
        amount           = money(amount),
        transaction_type = transaction_type,
        status           = status,
    )
    db.add(entry)
    db.flush()
    logger.info(f"Revenue entry #{entry.id}: user={user_id} type={transaction_type} amount={entry.amount}")
    return entry


def remove_user_transactions(db: Session, user_id: int) -> dict:
    """Delete every log row owned by user_id. Runs inside the caller's transaction."""
    revenue = db.query(func.coalesce(func.sum(RevenueTracking.amount), 0)).filter(
        RevenueTracking.user_id          == user_id,
        RevenueTracking.transaction_type == TX_SUBSCRIPTION,
    ).scalar()

    deleted = db.query(RevenueTracking).filter(
        RevenueTracking.user_id == user_id
    ).delete(synchronize_session=False)

    return {"transactionsDeleted": deleted, "revenueRemoved": money(revenue)}


# ── Stats cache ───────────────────────────────────────────────

def _aggregate(db: Session) -> dict:
    completed_subscription = (
        RevenueTracking.transaction_type == TX_SUBSCRIPTION,
        RevenueTracking.status           == TX_COMPLETED,
    )
    total_revenue = db.query(
        func.coalesce(func.sum(RevenueTracking.amount), 0)
    ).filter(*completed_subscription).scalar()

    total_subscriptions = db.query(
        func.count(func.distinct(RevenueTracking.user_id))
    ).filter(*completed_subscription).scalar()

    pending_count, pending_total = db.query(
        func.count(Withdrawal.id),
        func.coalesce(func.sum(Withdrawal.amount), 0),
    ).filter(Withdrawal.status == PENDING).one()

    return {
        "total_revenue":             money(total_revenue),
        "total_tier_subscriptions":  int(total_subscriptions or 0),
        "pending_withdrawals_count": int(pending_count or 0),
        "pending_withdrawals_total": money(pending_total),
    }


def _cached(cache: AdminStatsCache) -> dict:
    return {
        "total_revenue":             money(cache.total_revenue),
        "total_tier_subscriptions":  int(cache.total_tier_subscriptions or 0),
        "pending_withdrawals_count": int(cache.pending_withdrawals_count or 0),
        "pending_withdrawals_total": money(cache.pending_withdrawals_total),
    }


def _snapshot(cache: AdminStatsCache) -> dict:
    values = _cached(cache)
    return {
        "totalRevenue":       values["total_revenue"],
        "totalSubscriptions": values["total_tier_subscriptions"],
        "pendingWithdrawals": {
            "count": values["pending_withdrawals_count"],
            "total": values["pending_withdrawals_total"],
        },
        "lastUpdated":        cache.last_updated,
    }


def refresh_stats_cache(db: Session) -> dict:
    """
    Recompute the aggregates and upsert row 1 inside the caller's transaction.
    last_updated only moves when a value actually changed.
    """
    values = _aggregate(db)
    cache = db.query(AdminStatsCache).filter(
        AdminStatsCache.id == STATS_ROW_ID
    ).with_for_update().first()

    if cache is None:
        cache = AdminStatsCache(id=STATS_ROW_ID, last_updated=datetime.utcnow(), **values)
        db.add(cache)
    elif _cached(cache) != values:
        for field, value in values.items():
            setattr(cache, field, value)
        cache.last_updated = datetime.utcnow()
    db.flush()

    logger.info(
        f"Stats cache: revenue={values['total_revenue']} "
        f"subscriptions={values['total_tier_subscriptions']} "
        f"pending_withdrawals={values['pending_withdrawals_count']}"
    )
    return _snapshot(cache)


@retry_on_contention
def recompute_stats(db: Session) -> dict:
    with atomic(db):
        return refresh_stats_cache(db)


def get_stats(db: Session) -> dict:
    cache = db.get(AdminStatsCache, STATS_ROW_ID)
    if cache is None:
        return recompute_stats(db)
    return _snapshot(cache)


# ── Reporting ─────────────────────────────────────────────────

def get_revenue_breakdown(db: Session) -> list:
    rows = db.query(
        Tier.id,
        Tier.price,
        func.count(RevenueTracking.id),
        func.coalesce(func.sum(RevenueTracking.amount), 0),
    ).outerjoin(
        RevenueTracking,
        and_(
            RevenueTracking.tier_id          == Tier.id,
            RevenueTracking.transaction_type == TX_SUBSCRIPTION,
            RevenueTracking.status           == TX_COMPLETED,
        )
    ).group_by(Tier.id, Tier.price).order_by(Tier.id).all()

    return [
        {
            "tier_id":            tier_id,
            "price":              money(price),
            "subscription_count": count,
            "total_revenue":      money(total),
        }
        for tier_id, price, count, total in rows
    ]


def get_recent_transactions(db: Session, limit: int = 10) -> list:
    rows = db.query(RevenueTracking, User.username, User.email, Tier.price).join(
        User, RevenueTracking.user_id == User.id
    ).outerjoin(
        Tier, RevenueTracking.tier_id == Tier.id
    ).order_by(
        RevenueTracking.created_at.desc(), RevenueTracking.id.desc()
    ).limit(limit).all()

    return [
        {
            "id":               entry.id,
            "user_id":          entry.user_id,
            "tier_id":          entry.tier_id,
            "amount":           money(entry.amount),
            "transaction_type": entry.transaction_type,
            "status":           entry.status,
            "created_at":       entry.created_at,
            "username":         username,
            "email":            email,
            "tier_price":       money(tier_price) if tier_price is not None else None,
        }
        for entry, username, email, tier_price in rows
    ]


def get_user_revenue_stats(db: Session, user_id: int) -> dict:
    entries = db.query(RevenueTracking).filter(RevenueTracking.user_id == user_id).all()
    subscriptions = [e.amount for e in entries if e.transaction_type == TX_SUBSCRIPTION]
    payouts       = [abs(e.amount) for e in entries if e.transaction_type == TX_REFERRAL_PAYOUT]
    return {
        "total_transactions":     len(entries),
        "total_subscriptions":    money(sum(subscriptions, money(0))),
        "total_referral_payouts": money(sum(payouts, money(0))),
        "last_transaction_date":  max((e.created_at for e in entries), default=None),
    }


def get_monthly_revenue(db: Session, year: int = None, month: int = None) -> dict:
    now   = datetime.utcnow()
    year  = year or now.year
    month = month or now.month
    start = datetime(year, month, 1)
    end   = datetime(year + 1, 1, 1) if month == 12 else datetime(year, month + 1, 1)

    entries = db.query(RevenueTracking).filter(
        RevenueTracking.created_at >= start,
        RevenueTracking.created_at <  end,
    ).all()

    return {
        "month":                f"{year}-{month:02d}",
        "transaction_count":    len(entries),
        "subscription_revenue": money(sum(
            (e.amount for e in entries if e.transaction_type == TX_SUBSCRIPTION), money(0)
        )),
        "referral_payouts":     money(sum(
            (abs(e.amount) for e in entries if e.transaction_type == TX_REFERRAL_PAYOUT), money(0)
        )),
        "unique_users":         len({e.user_id for e in entries}),
    }


# ── Integrity ─────────────────────────────────────────────────

def validate_integrity(db: Session) -> dict:
    """Find log rows pointing at deleted users or unknown tiers."""
    orphaned = db.query(RevenueTracking.id).outerjoin(
        User, RevenueTracking.user_id == User.id
    ).filter(User.id.is_(None)).all()

    invalid_tier = db.query(RevenueTracking.id).outerjoin(
        Tier, RevenueTracking.tier_id == Tier.id
    ).filter(
        RevenueTracking.tier_id.isnot(None),
        RevenueTracking.tier_id > 0,
        Tier.id.is_(None),
    ).all()

    issues = [{"id": r.id, "issue": "Missing User"} for r in orphaned]
    issues += [{"id": r.id, "issue": "Invalid Tier"} for r in invalid_tier]
    if issues:
        logger.warning(f"Revenue integrity check found {len(issues)} issues")
    return {
        "valid":         not issues,
        "issues":        issues,
        "orphanedUsers": len(orphaned),
        "invalidTiers":  len(invalid_tier),
    }


@retry_on_contention
def cleanup_invalid_records(db: Session) -> dict:
    with atomic(db):
        users_removed = db.query(RevenueTracking).filter(
            ~RevenueTracking.user_id.in_(select(User.id))
        ).delete(synchronize_session=False)

        tiers_removed = db.query(RevenueTracking).filter(
            RevenueTracking.tier_id.isnot(None),
            RevenueTracking.tier_id > 0,
            ~RevenueTracking.tier_id.in_(select(Tier.id)),
        ).delete(synchronize_session=False)

        refresh_stats_cache(db)

    logger.info(f"Cleaned up {users_removed} orphaned user records and {tiers_removed} invalid tier records")
    return {
        "userRecordsRemoved":  users_removed,
        "tierRecordsRemoved":  tiers_removed,
        "totalRecordsRemoved": users_removed + tiers_removed,
    }
