# ═══════════════════════════════════════════════════════════════
# Nova: Ledger transaction boundary
# One workflow call = one all-or-nothing transaction, retried on contention
# ═══════════════════════════════════════════════════════════════
import time
import logging
import functools
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from .database import User
from .errors import ContentionError, Internal

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_DELAY = 0.1     # seconds, multiplied by attempt number

SIX_DP = Decimal("0.000001")


def money(value) -> Decimal:
    """Quantize any amount to the 6 dp stored by Money columns."""
    if value is None:
        return Decimal("0").quantize(SIX_DP)
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(SIX_DP, rounding=ROUND_HALF_UP)


@contextmanager
def atomic(db: Session):
    """Commit on success, roll everything back on any exception."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


def retry_on_contention(fn=None, *, retries: int = MAX_RETRIES):
    """
    Re-run a workflow whose first argument is the session when the store
    reports lock contention or a compare-and-swap update loses a race.
    After `retries` attempts the failure surfaces as Internal.
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(db: Session, *args, **kwargs):
            for attempt in range(1, retries + 1):
                try:
                    return func(db, *args, **kwargs)
                except (OperationalError, ContentionError) as e:
                    db.rollback()
                    if attempt >= retries:
                        logger.error(f"{func.__name__} failed after {retries} attempts: {e}")
                        raise Internal(f"Ledger unavailable, please retry ({func.__name__})") from e
                    logger.warning(f"{func.__name__} contention, retrying attempt {attempt}/{retries}")
                    time.sleep(RETRY_DELAY * attempt)
        return wrapper

    if fn is not None:
        return decorator(fn)
    return decorator


# ── Balance writes ────────────────────────────────────────────

MONEY_FIELDS = (
    "locked_balance", "withdrawable_balance", "total_earnings",
    "total_withdrawal", "daily_earnings",
)


def lock_user(db: Session, user_id: int):
    """Re-read a user row from the store, row-locked where the backend supports it."""
    return db.query(User).filter(
        User.id == user_id
    ).populate_existing().with_for_update().first()


def update_balances(db: Session, user: User, **values) -> User:
    """
    Store absolute balances computed from the values the caller read.

    Money fields are quantized before they are bound, so the stored value is
    exactly the one later reads report. The write only lands while the row
    still carries the balance_version the caller read; otherwise another
    writer got there first and ContentionError sends the workflow round again.
    """
    for field in MONEY_FIELDS:
        if field in values:
            values[field] = money(values[field])

    version = user.balance_version
    written = db.execute(
        update(User)
        .where(User.id == user.id, User.balance_version == version)
        .values(balance_version=version + 1, updated_at=datetime.utcnow(), **values)
        .execution_options(synchronize_session=False)
    ).rowcount
    if written != 1:
        raise ContentionError(f"Balances of user {user.id} changed underneath us")
    db.refresh(user)
    return user
