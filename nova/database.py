import os
import logging
from decimal import Decimal
from dotenv import load_dotenv
from sqlalchemy import (
    create_engine, inspect, Column, Integer, String, ForeignKey, Boolean,
    DateTime, Text, text, Numeric
)
from sqlalchemy.orm import declarative_base, sessionmaker
from datetime import datetime
load_dotenv()

# Precision type for all financial columns: 18 digits, 6 decimal places
Money = Numeric(18, 6)

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./nova.db")
# Railway Postgres URLs use postgres:// but SQLAlchemy requires postgresql://
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

LEDGER_TIMEZONE = os.getenv("LEDGER_TIMEZONE", "Europe/London")

Base = declarative_base()

# ── Reward plan constants ─────────────────────────────────────
REFERRAL_PCT       = Decimal("0.05")     # 5% of an approved deposit → referrer
AD_REWARD_RATE     = Decimal("0.0005")   # 0.05% of (locked + withdrawable) per view
DAILY_AD_LIMIT     = 20                  # views per London calendar day
MIN_WITHDRAWAL     = Decimal("11")       # USDT

DEPOSIT_NETWORKS    = ("TRC20", "BEP20", "ERC20")
WITHDRAWAL_NETWORKS = ("TRC20", "BSC20", "ERC20", "BTC")

# ── Statuses ──────────────────────────────────────────────────
PENDING  = "pending"
APPROVED = "approved"
REJECTED = "rejected"
PAID     = "paid"
DECISIONS = (APPROVED, REJECTED)

TX_SUBSCRIPTION    = "subscription"
TX_REFERRAL_PAYOUT = "referral_payout"
TX_COMPLETED       = "completed"

# Tier prices (USDT)
TIER_PRICES = {
    1: 20,     2: 50,     3: 80,     4: 100,    5: 120,
    6: 150,    7: 200,    8: 250,    9: 300,    10: 400,
    11: 500,   12: 600,   13: 700,   14: 800,   15: 1000,
    16: 1200,  17: 1500,  18: 1800,  19: 2000,  20: 2500,
    21: 3000,  22: 3500,  23: 4000,  24: 4500,  25: 5000,
}

TIER_NAMES = {
    1: "Starter 1",  2: "Starter 2",  3: "Starter 3",
    4: "Trader 1",   5: "Trader 2",   6: "Trader 3",
    7: "Pro Trader 1",  8: "Pro Trader 2",  9: "Pro Trader 3",  10: "Pro Trader 4",
    11: "Elite Trader 1", 12: "Elite Trader 2", 13: "Elite Trader 3", 14: "Elite Trader 4",
    15: "Whale 1", 16: "Whale 2", 17: "Whale 3", 18: "Whale 4",
    19: "Titan 1", 20: "Titan 2", 21: "Titan 3", 22: "Titan 4", 23: "Titan 5", 24: "Titan 6",
    25: "Legendary Investor",
}


class User(Base):
    __tablename__ = "users"
    id                   = Column(Integer, primary_key=True, index=True)
    username             = Column(String, unique=True, index=True, nullable=False)
    email                = Column(String, unique=True, index=True, nullable=False)
    password             = Column(String, nullable=False)
    is_verified          = Column(Boolean, default=False)
    is_admin             = Column(Boolean, default=False)
    tier_id              = Column(Integer, default=0)           # 0 = no tier
    payment_status       = Column(String, default=PENDING)      # pending/paid
    wallet_network       = Column(String, nullable=True)
    wallet_address       = Column(String, nullable=True)
    locked_balance       = Column(Money, default=0)             # current tier principal
    withdrawable_balance = Column(Money, default=0)             # rewards + referral income
    total_earnings       = Column(Money, default=0)             # lifetime rewards + referrals
    total_withdrawal     = Column(Money, default=0)             # lifetime approved withdrawals
    ad_views_today       = Column(Integer, default=0)           # 0-20, reset daily
    daily_earnings       = Column(Money, default=0)             # reset daily
    last_daily_reset     = Column(String, nullable=True)        # YYYY-MM-DD, London
    balance_version      = Column(Integer, default=0, nullable=False)  # bumped by every balance write
    referrer_id          = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at           = Column(DateTime, default=datetime.utcnow)
    updated_at           = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Tier(Base):
    """Static price list, seeded at startup."""
    __tablename__ = "tiers"
    id    = Column(Integer, primary_key=True, autoincrement=False)
    price = Column(Money, nullable=False)


class ManualDeposit(Base):
    """A claimed off-chain tier payment awaiting admin confirmation."""
    __tablename__ = "manual_deposits"
    id             = Column(Integer, primary_key=True, index=True)
    user_id        = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    tier_id        = Column(Integer, ForeignKey("tiers.id"), nullable=False)
    amount         = Column(Money, nullable=False)
    network        = Column(String, nullable=False)
    transaction_id = Column(String, unique=True, nullable=False)
    status         = Column(String, default=PENDING)   # pending/approved/rejected
    admin_notes    = Column(Text, nullable=True)
    approved_by    = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_at    = Column(DateTime, nullable=True)
    created_at     = Column(DateTime, default=datetime.utcnow)
    updated_at     = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Withdrawal(Base):
    """Outgoing withdrawals to member wallets. Amount is reserved at request time."""
    __tablename__ = "withdrawals"
    id               = Column(Integer, primary_key=True, index=True)
    user_id          = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    amount           = Column(Money, nullable=False)
    network          = Column(String, nullable=False)
    wallet_address   = Column(String, nullable=False)
    status           = Column(String, default=PENDING)   # pending/approved/rejected
    rejection_reason = Column(Text, nullable=True)
    created_at       = Column(DateTime, default=datetime.utcnow)
    updated_at       = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class RevenueTracking(Base):
    """Append-only log of every balance-affecting event."""
    __tablename__ = "revenue_tracking"
    id               = Column(Integer, primary_key=True, index=True)
    user_id          = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    tier_id          = Column(Integer, ForeignKey("tiers.id"), nullable=True)
    amount           = Column(Money, nullable=False)    # +income / -payout expense
    transaction_type = Column(String, nullable=False)   # 'subscription','referral_payout'
    status           = Column(String, default=TX_COMPLETED)
    created_at       = Column(DateTime, default=datetime.utcnow)


class AdminStatsCache(Base):
    """Single-row materialised summary of global totals (id is always 1)."""
    __tablename__ = "admin_stats_cache"
    id                        = Column(Integer, primary_key=True, default=1)
    total_revenue             = Column(Money, default=0)
    total_tier_subscriptions  = Column(Integer, default=0)
    pending_withdrawals_count = Column(Integer, default=0)
    pending_withdrawals_total = Column(Money, default=0)
    last_updated              = Column(DateTime, default=datetime.utcnow)


class Announcement(Base):
    __tablename__ = "announcements"
    id         = Column(Integer, primary_key=True, index=True)
    title      = Column(String, nullable=False)
    content    = Column(Text, nullable=False)
    is_active  = Column(Boolean, default=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class AnnouncementView(Base):
    __tablename__ = "user_announcement_views"
    id              = Column(Integer, primary_key=True, index=True)
    user_id         = Column(Integer, ForeignKey("users.id"), nullable=False)
    announcement_id = Column(Integer, ForeignKey("announcements.id"), nullable=False)
    viewed_at       = Column(DateTime, default=datetime.utcnow)


# ── Engine / session factories ────────────────────────────────
def make_engine(url: str = None):
    """Build an engine for the given URL (defaults to DATABASE_URL)."""
    url = url or DATABASE_URL
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(url, pool_pre_ping=True, pool_size=20, max_overflow=40)


def make_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


# ── Migrations ────────────────────────────────────────────────
MIGRATIONS = [
    "CREATE INDEX IF NOT EXISTS idx_revenue_tracking_type_status ON revenue_tracking(transaction_type, status)",
    "CREATE INDEX IF NOT EXISTS idx_withdrawals_status ON withdrawals(status)",
    "CREATE INDEX IF NOT EXISTS idx_manual_deposits_status ON manual_deposits(status)",
    "CREATE INDEX IF NOT EXISTS idx_users_referrer ON users(referrer_id)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_announcement_views_unique ON user_announcement_views(user_id, announcement_id)",
    # at most one active announcement
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_announcements_single_active ON announcements(is_active) WHERE is_active",
]

# columns added after the first release: (table, column, DDL type)
COLUMN_MIGRATIONS = [
    ("users", "wallet_network",  "VARCHAR"),
    ("users", "wallet_address",  "VARCHAR"),
    ("users", "balance_version", "INTEGER NOT NULL DEFAULT 0"),
]

REQUIRED_TABLES = {
    User.__tablename__, Tier.__tablename__, ManualDeposit.__tablename__,
    Withdrawal.__tablename__, RevenueTracking.__tablename__,
    AdminStatsCache.__tablename__, Announcement.__tablename__,
    AnnouncementView.__tablename__,
}


class SchemaError(RuntimeError):
    pass


def run_migrations(engine):
    """Create tables, add late columns, then apply the idempotent index migrations."""
    Base.metadata.create_all(bind=engine)
    inspector = inspect(engine)
    with engine.begin() as conn:
        for table, column, ddl in COLUMN_MIGRATIONS:
            existing = {c["name"] for c in inspector.get_columns(table)}
            if column not in existing:
                conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
                logger.info(f"Added column {table}.{column}")
        for sql in MIGRATIONS:
            conn.execute(text(sql))
    logger.info(f"Schema migrations applied ({len(MIGRATIONS)} statements)")


def check_schema(engine):
    """Fail fast at startup if any ledger table is missing."""
    present = set(inspect(engine).get_table_names())
    missing = REQUIRED_TABLES - present
    if missing:
        raise SchemaError(f"Missing tables: {', '.join(sorted(missing))}")


def seed_tiers(session_factory):
    """Insert any missing tiers. Existing prices are left alone."""
    db = session_factory()
    try:
        existing = {t.id for t in db.query(Tier).all()}
        added = 0
        for tier_id, price in TIER_PRICES.items():
            if tier_id not in existing:
                db.add(Tier(id=tier_id, price=Decimal(price)))
                added += 1
        if db.get(AdminStatsCache, 1) is None:
            db.add(AdminStatsCache(id=1, total_revenue=0, total_tier_subscriptions=0,
                                   pending_withdrawals_count=0, pending_withdrawals_total=0))
        db.commit()
        if added:
            logger.info(f"Seeded {added} tiers")
    finally:
        db.close()


def init_db(engine):
    """Migrate, verify and seed. Returns a session factory bound to engine."""
    run_migrations(engine)
    check_schema(engine)
    session_factory = make_session_factory(engine)
    seed_tiers(session_factory)
    return session_factory
