"""
Nova Ad Rewards
===============

  - Each ad view pays 0.05% of (locked_balance + withdrawable_balance).
  - The reward lands in withdrawable_balance, so the next view compounds on it.
  - 20 views per calendar day, anchored to Europe/London midnight.
  - The daily counter resets lazily on the first request of a new London day.

Every write goes through update_balances: absolute 6 dp values guarded by the
row's balance_version. A referral credit or a second tab landing at the same
moment makes the loser re-read and retry instead of overwriting.
"""
import logging
from decimal import Decimal
from datetime import datetime, timedelta, time as dtime
import pytz
from sqlalchemy.orm import Session
from .database import User, PAID, AD_REWARD_RATE, DAILY_AD_LIMIT, LEDGER_TIMEZONE
from .errors import NotFound, InvalidArgument, DailyLimitReached
from .ledger import atomic, money, retry_on_contention, lock_user, update_balances

logger = logging.getLogger(__name__)

AD_RETRIES = 5


def get_london_time_info(now: datetime = None) -> dict:
    """Today's date in the ledger timezone and the time left until its midnight."""
    tz = pytz.timezone(LEDGER_TIMEZONE)
    now = now or datetime.now(pytz.utc)
    if now.tzinfo is None:
        now = pytz.utc.localize(now)

    local_now = now.astimezone(tz)
    today = local_now.date()
    next_reset = tz.localize(datetime.combine(today + timedelta(days=1), dtime.min))

    seconds = max(int((next_reset - now).total_seconds()), 0)
    hours, minutes = seconds // 3600, (seconds % 3600) // 60
    return {
        "today":              today.isoformat(),
        "localTime":          local_now,
        "nextReset":          next_reset,
        "secondsUntilReset":  seconds,
        "nextResetFormatted": f"Resets in {hours}h {minutes}m",
    }


def reset_daily_earnings_if_needed(db: Session, user: User, today: str) -> bool:
    """Zero the daily counters when the stored reset date is not today. Idempotent."""
    if user.last_daily_reset == today:
        return False
    update_balances(db, user, ad_views_today=0, daily_earnings=0, last_daily_reset=today)
    logger.info(f"Daily ad counters reset for user {user.id} ({today})")
    return True


def _reward_for(user: User) -> Decimal:
    balance = money(user.locked_balance) + money(user.withdrawable_balance)
    return money(balance * AD_REWARD_RATE)


@retry_on_contention(retries=AD_RETRIES)
def record_ad_view(db: Session, user_id: int, now: datetime = None) -> dict:
    info = get_london_time_info(now)
    today = info["today"]

    with atomic(db):
        user = lock_user(db, user_id)
        if not user:
            raise NotFound(f"User {user_id} not found")
        if user.payment_status != PAID:
            raise InvalidArgument("Paid subscription required to watch ads")

        reset_daily_earnings_if_needed(db, user, today)

        views = user.ad_views_today or 0
        if views >= DAILY_AD_LIMIT:
            logger.warning(f"User {user_id} hit the daily ad limit")
            raise DailyLimitReached(
                f"Daily ad limit reached ({DAILY_AD_LIMIT} clicks). Resets at 00:00 London time."
            )

        reward = _reward_for(user)
        update_balances(
            db, user,
            ad_views_today       = views + 1,
            withdrawable_balance = money(user.withdrawable_balance) + reward,
            total_earnings       = money(user.total_earnings) + reward,
            daily_earnings       = money(user.daily_earnings) + reward,
        )
        clicks = user.ad_views_today
        result = {
            "success":          True,
            "reward":           reward,
            "clicksToday":      clicks,
            "clicksRemaining":  DAILY_AD_LIMIT - clicks,
            "dailyEarnings":    money(user.daily_earnings),
            "newBalance":       money(user.locked_balance) + money(user.withdrawable_balance),
            "currentRate":      f"{AD_REWARD_RATE * 100:.2f}%",
            "nextResetIn":      info["nextResetFormatted"],
            "nextResetSeconds": info["secondsUntilReset"],
        }

    logger.info(f"Ad view {clicks}/{DAILY_AD_LIMIT} for user {user_id}: +{reward}")
    return result


def calculate_compound_earnings(initial_balance, rate=AD_REWARD_RATE, clicks: int = DAILY_AD_LIMIT) -> dict:
    """Project `clicks` compounding views, quantized per step like the real rewards."""
    balance = money(initial_balance)
    rate = Decimal(str(rate))
    first = money(balance * rate)
    for _ in range(clicks):
        balance = money(balance + money(balance * rate))
    return {
        "finalBalance":    balance,
        "totalEarnings":   money(balance - money(initial_balance)),
        "earningsPerClick": first,
    }


@retry_on_contention
def get_ad_stats(db: Session, user_id: int, now: datetime = None) -> dict:
    info = get_london_time_info(now)
    with atomic(db):
        user = lock_user(db, user_id)
        if not user:
            raise NotFound(f"User {user_id} not found")
        reset_daily_earnings_if_needed(db, user, info["today"])

        clicks    = user.ad_views_today or 0
        remaining = max(DAILY_AD_LIMIT - clicks, 0)
        balance   = money(user.locked_balance) + money(user.withdrawable_balance)
        projection = calculate_compound_earnings(balance, AD_REWARD_RATE, remaining)
        result = {
            "clicksToday":        clicks,
            "clicksRemaining":    remaining,
            "dailyLimit":         DAILY_AD_LIMIT,
            "dailyEarnings":      money(user.daily_earnings),
            "currentBalance":     balance,
            "rewardRate":         f"{AD_REWARD_RATE * 100:.2f}%",
            "earningsPerClick":   projection["earningsPerClick"],
            "remainingPotential": projection["totalEarnings"],
            "projectedBalance":   projection["finalBalance"],
            "lastResetDate":      user.last_daily_reset,
            "nextResetIn":        info["nextResetFormatted"],
            "nextResetSeconds":   info["secondsUntilReset"],
        }
    return result
